"""
Session commands: list, status, capture, blocks, send, wait, new-session,
links, kill, cleanup.

The scripting commands print one JSON object on stdout and report errors
as JSON on stderr with exit code 2.
"""

import sys
import time
from typing import Annotated, List, Optional

import typer
from rich import print as rprint
from rich.table import Table

from ._shared import EXIT_TIMEOUT, app, console, emit_json, emit_stderr, fail


def _resolve_or_exit(store, target: str):
    from ..web_control_api import SessionNotFound, resolve_session

    try:
        return resolve_session(store, target)
    except SessionNotFound:
        fail("Session not found", target=target)


def _require_target(record) -> str:
    if not record.tmux_target:
        fail("Session has no tmux target", id=record.id)
    return record.tmux_target


def parse_states(value: str) -> List[str]:
    """'idle, waiting' -> ['idle', 'waiting']; exits on an unknown state."""
    from ..status_constants import ALL_STATES, is_valid_state

    states = [s.strip() for s in value.split(",") if s.strip()]
    for state in states:
        if not is_valid_state(state):
            fail(f"Invalid state: {state}", valid=list(ALL_STATES))
    return states


@app.command("list")
def list_sessions(
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw session list as JSON")] = False,
):
    """List tracked sessions."""
    from ..session_store import SessionStore
    from ..status_constants import get_state_symbol

    records = sorted(SessionStore().list_all(), key=lambda r: r.last_update, reverse=True)
    if as_json:
        emit_json({"sessions": [r.to_dict() for r in records], "count": len(records)})
        return
    if not records:
        rprint("[dim]No sessions tracked[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("")
    table.add_column("Target")
    table.add_column("State")
    table.add_column("Action")
    table.add_column("Directory", overflow="fold")
    for record in records:
        emoji, color = get_state_symbol(record.state)
        table.add_row(
            emoji,
            record.tmux_target or "[dim]-[/dim]",
            f"[{color}]{record.state}[/{color}]",
            record.current_action or "",
            record.cwd,
        )
    console.print(table)


@app.command()
def status(
    target: Annotated[str, typer.Argument(help="Session ID or tmux target")],
):
    """Print a session's current state as JSON."""
    from ..session_store import SessionStore
    from ..web_control_api import status_of

    emit_json(status_of(_resolve_or_exit(SessionStore(), target)))


@app.command()
def capture(
    target: Annotated[str, typer.Argument(help="Session ID or tmux target")],
    lines: Annotated[
        Optional[int], typer.Option("--lines", "-n", help="Last N lines (default: full pane)")
    ] = None,
):
    """Print the pane content, colors included."""
    from ..pane_inspector import PaneInspector
    from ..session_store import SessionStore

    tmux_target = _require_target(_resolve_or_exit(SessionStore(), target))
    output = PaneInspector().capture_text(tmux_target, last_lines=lines, escapes=True)
    if output is None:
        fail("Failed to capture pane", target=tmux_target)
    sys.stdout.write(output)


@app.command()
def blocks(
    target: Annotated[str, typer.Argument(help="Session ID or tmux target")],
    lines: Annotated[int, typer.Option("--lines", "-n", help="Lines to capture")] = 100,
    as_json: Annotated[bool, typer.Option("--json", help="Print blocks as JSON")] = False,
):
    """Show the pane content split into classified blocks."""
    from ..pane_inspector import PaneInspector
    from ..session_store import SessionStore
    from ..terminal_classifier import block_stats, parse_blocks

    tmux_target = _require_target(_resolve_or_exit(SessionStore(), target))
    text = PaneInspector().capture_text(tmux_target, last_lines=lines)
    if text is None:
        fail("Failed to capture pane", target=tmux_target)
    parsed = parse_blocks(text)
    if as_json:
        emit_json({"blocks": [b.to_dict() for b in parsed], "stats": block_stats(parsed)})
        return
    for block in parsed:
        label = block.type.value
        if block.metadata and block.metadata.get("toolName"):
            label += f" {block.metadata['toolName']}"
        console.print(f"[bold cyan]#{block.id} {label}[/bold cyan]")
        console.print(block.content, markup=False, highlight=False)


@app.command()
def send(
    target: Annotated[str, typer.Argument(help="Session ID or tmux target")],
    text: Annotated[Optional[str], typer.Argument(help="Prompt text (read from stdin if omitted)")] = None,
    keys: Annotated[Optional[str], typer.Option("--keys", help="Send raw tmux keys instead of text")] = None,
):
    """Send prompt text or raw keys to a session's pane."""
    from ..pane_inspector import PaneInspector
    from ..session_store import SessionStore
    from ..web_control_api import ControlError, send_to_pane

    tmux_target = _require_target(_resolve_or_exit(SessionStore(), target))
    if not keys:
        if text is None and not sys.stdin.isatty():
            text = sys.stdin.read()
        if not text:
            fail("No text provided and stdin is not piped")
    try:
        send_to_pane(PaneInspector(), tmux_target, text=None if keys else text, keys=keys)
    except ControlError as e:
        fail("Failed to send to tmux", detail=str(e))
    emit_json({"ok": True})


@app.command()
def wait(
    target: Annotated[str, typer.Argument(help="Session ID or tmux target")],
    state: Annotated[
        str, typer.Option("--state", help="Comma-separated states to wait for")
    ] = "idle,waiting,permission",
    timeout: Annotated[float, typer.Option("--timeout", help="Max wait time in seconds")] = 300,
    poll: Annotated[int, typer.Option("--poll", help="Poll interval in milliseconds")] = 500,
):
    """Block until a session reaches one of the given states.

    State transitions are reported on stderr. Exit 0 when reached,
    1 on timeout, 2 on error.
    """
    from ..session_store import SessionStore

    wanted = parse_states(state)
    store = SessionStore()
    record = _resolve_or_exit(store, target)
    started = time.monotonic()
    last_state = record.state

    while True:
        current = store.get(record.id)
        elapsed_ms = int((time.monotonic() - started) * 1000)
        if current is None:
            fail("Session disappeared", id=record.id)

        if current.state != last_state:
            emit_stderr({"transition": True, "from": last_state, "to": current.state, "elapsed_ms": elapsed_ms})
            last_state = current.state

        if current.state in wanted:
            emit_json({"state": current.state, "id": current.id, "elapsed_ms": elapsed_ms})
            return

        if elapsed_ms >= timeout * 1000:
            fail("Timeout", code=EXIT_TIMEOUT, waiting_for=wanted, state=current.state, elapsed_ms=elapsed_ms)

        time.sleep(poll / 1000)


@app.command("new-session")
def new_session(
    cwd: Annotated[str, typer.Option("--cwd", help="Working directory for the agent")],
    name: Annotated[Optional[str], typer.Option("--name", help="tmux session name")] = None,
    skip_permissions: Annotated[
        bool,
        typer.Option(
            "--skip-permissions/--no-skip-permissions",
            help="Start the agent with --dangerously-skip-permissions",
        ),
    ] = True,
    linked_to: Annotated[
        Optional[str], typer.Option("--linked-to", help="Record the new pane as an orchestrator of this pane")
    ] = None,
):
    """Start an agent in a new detached tmux session and track it."""
    from ..implementations import RealTmux
    from ..session_store import SessionStore
    from ..web_control_api import ControlError
    from ..web_control_api import new_session as create_session

    try:
        result = create_session(
            SessionStore(), RealTmux(), cwd, name=name, skip_permissions=skip_permissions, linked_to=linked_to
        )
    except ControlError as e:
        fail(str(e), cwd=cwd)
    emit_json(result)


@app.command()
def links():
    """Print the orchestrator-pane to main-pane links as JSON."""
    from ..session_store import SessionStore

    emit_json({"links": SessionStore().read_links()})


@app.command()
def kill(
    target: Annotated[str, typer.Argument(help="Session ID or tmux target")],
):
    """Kill a session's agent process and pane, and forget it."""
    from ..implementations import RealProcesses, RealTmux
    from ..session_store import SessionStore
    from ..web_control_api import kill_session

    store = SessionStore()
    record = _resolve_or_exit(store, target)
    kill_session(store, RealTmux(), RealProcesses(), record.id)
    rprint(f"[green]✓[/green] Killed session [bold]{record.tmux_target or record.id}[/bold]")


@app.command()
def cleanup():
    """Remove records of agents whose process has exited."""
    from ..session_store import SessionStore

    removed = SessionStore().cleanup_stale()
    if removed:
        rprint(f"[green]✓[/green] Removed {removed} stale session(s)")
    else:
        rprint("[dim]No stale sessions[/dim]")

