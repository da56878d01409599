"""
Hooks commands: install, uninstall, status, and the internal hook-handler.
"""

from typing import Annotated, Optional

import typer
from rich import print as rprint
from rich.markup import escape

from ._shared import app, hooks_app


ProjectOption = Annotated[
    bool,
    typer.Option("--project", "-p", help="Use project-level .claude/settings.json instead of user-level"),
]


def _editor(project: bool):
    from ..claude_config import AgentSettingsEditor

    if project:
        return AgentSettingsEditor.project_level(), "project"
    return AgentSettingsEditor.user_level(), "user"


def _load_or_exit(editor) -> None:
    try:
        editor.load()
    except ValueError as e:
        rprint(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


@hooks_app.command("install")
def hooks_install(project: ProjectOption = False):
    """Install all muxwatch hooks into the agent's settings.

    Every lifecycle event runs 'muxwatch hook-handler'; notification
    subtypes are registered with matchers.
    """
    from ..hook_handler import MUXWATCH_HOOKS

    editor, level = _editor(project)
    _load_or_exit(editor)

    added = editor.install(MUXWATCH_HOOKS)
    if added:
        events = ", ".join(sorted({event for event, _, _ in added}))
        rprint(f"[green]✓[/green] Installed {len(added)} hook(s) in {level} settings")
        rprint(f"  [dim]{editor.path}[/dim]")
        rprint(f"\n  Events: {events}")
    else:
        rprint(f"[green]✓[/green] All {len(MUXWATCH_HOOKS)} hooks already installed in {level} settings")


@hooks_app.command("uninstall")
def hooks_uninstall(project: ProjectOption = False):
    """Remove all muxwatch hooks from the agent's settings."""
    from ..hook_handler import HOOK_COMMAND

    editor, level = _editor(project)
    _load_or_exit(editor)

    removed = editor.uninstall(HOOK_COMMAND)
    if removed:
        rprint(f"[green]✓[/green] Removed {removed} hook(s) from {level} settings")
    else:
        rprint(f"[dim]No muxwatch hooks found in {level} settings[/dim]")


@hooks_app.command("status")
def hooks_status():
    """Show which muxwatch hooks are installed."""
    from ..claude_config import AgentSettingsEditor
    from ..hook_handler import MUXWATCH_HOOKS

    for level_name, editor in [
        ("User-level", AgentSettingsEditor.user_level()),
        ("Project-level", AgentSettingsEditor.project_level()),
    ]:
        rprint(f"\n{level_name} ({editor.path}):")
        try:
            editor.load()
        except ValueError:
            rprint("  [red](invalid JSON)[/red]")
            continue
        if not editor.path.exists():
            rprint("  [dim](no settings file)[/dim]")
            continue

        for event, command, matcher in MUXWATCH_HOOKS:
            label = escape(f"{event}[{matcher}]") if matcher else event
            if editor.has_hook(event, command, matcher):
                rprint(f"  {label:<36} [green]✓[/green]")
            else:
                rprint(f"  {label:<36} [dim]not installed[/dim]")


@app.command("hook-handler", hidden=True)
def hook_handler_cmd(
    event: Annotated[Optional[str], typer.Argument(help="Event name (notification subtypes)")] = None,
):
    """Handle agent hook events (internal).

    Called by the agent's hooks, not by users directly. Reads the event
    JSON from stdin and updates the session store. Always exits 0.
    """
    from ..hook_handler import handle_hook_event

    handle_hook_event(argv_event=event)
