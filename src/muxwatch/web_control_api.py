"""
Control actions shared by the HTTP API and the scripting CLI.

Each function takes its collaborators explicitly, performs one action and
returns a result dict ({"ok": True, ...}) or raises ControlError carrying
the HTTP status the caller should use.
"""

import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from .hook_handler import find_git_root
from .protocols import PaneInspectorProtocol, ProcessControl, TmuxControl
from .session_store import SessionRecord, SessionStore
from .status_constants import STATE_IDLE
from .terminal_classifier import block_stats, parse_blocks


AGENT_COMMAND = "claude"
SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"
DEFAULT_KEYS = "Escape"


class ControlError(Exception):
    """Raised when a control action fails."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


class SessionNotFound(ControlError):
    def __init__(self, target: str):
        super().__init__(f"Session not found: {target}", status=404)
        self.target = target


def _require_directory(path: Optional[str]) -> str:
    if not path:
        raise ControlError("cwd required")
    p = Path(path)
    if not p.exists():
        raise ControlError("Directory does not exist")
    if not p.is_dir():
        raise ControlError("Path is not a directory")
    return str(p)


def resolve_session(store: SessionStore, target: str) -> SessionRecord:
    """Session by id, exact pane target or pane-target prefix."""
    record = store.resolve(target)
    if record is None:
        raise SessionNotFound(target)
    return record


def status_of(record: SessionRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "state": record.state,
        "current_action": record.current_action,
        "tmux_target": record.tmux_target,
        "cwd": record.cwd,
        "pid": record.pid,
        "git_root": record.git_root,
        "beads_enabled": record.beads_enabled,
        "last_update": record.last_update,
    }


# ---------------------------------------------------------------------------
# Session records
# ---------------------------------------------------------------------------


def relocate_session(store: SessionStore, session_id: str, cwd: Optional[str]) -> dict:
    """Point a session at a new working directory and recompute its git root."""
    if store.get(session_id) is None:
        raise SessionNotFound(session_id)
    if not cwd:
        raise ControlError("No valid update fields provided")
    new_cwd = _require_directory(cwd)
    git_root = find_git_root(new_cwd)
    store.update(session_id, {"cwd": new_cwd, "git_root": git_root})
    return {"ok": True, "cwd": new_cwd, "git_root": git_root}


def kill_session(
    store: SessionStore,
    tmux: TmuxControl,
    processes: ProcessControl,
    session_id: str,
    pid: Optional[int] = None,
    tmux_target: Optional[str] = None,
) -> dict:
    """Kill the agent process and its pane, then delete the record.

    pid/tmux_target default to the stored record's values. Kill failures
    are ignored; the record is removed regardless.
    """
    record = store.get(session_id)
    if record is not None:
        pid = pid if pid is not None else record.pid
        tmux_target = tmux_target or record.tmux_target
    if pid and pid > 0:
        processes.kill(pid)
    if tmux_target:
        tmux.kill_pane(tmux_target)
    store.delete(session_id)
    return {"ok": True}


def remove_screenshot(store: SessionStore, session_id: str, path: Optional[str]) -> dict:
    if not path:
        raise ControlError("Screenshot path required")
    if store.get(session_id) is None:
        raise SessionNotFound(session_id)
    if not store.remove_screenshot(session_id, path):
        raise ControlError("Screenshot not found", status=404)
    return {"ok": True}


def new_session(
    store: SessionStore,
    tmux: TmuxControl,
    cwd: Optional[str],
    name: Optional[str] = None,
    skip_permissions: bool = True,
    linked_to: Optional[str] = None,
) -> dict:
    """Start the agent in a detached tmux session and pre-register it.

    The record gets pid 0 so it shows up before the agent's first hook
    fires; the session-start hook then replaces it via pane cleanup.
    With `linked_to` the new pane is recorded in the links file as an
    orchestrator of that pane.
    """
    cwd = _require_directory(cwd)
    session_name = name or f"claude-{int(time.time() * 1000)}"
    command = [AGENT_COMMAND]
    if skip_permissions:
        command.append(SKIP_PERMISSIONS_FLAG)
    tmux_target = tmux.new_session(session_name, cwd, command)
    if not tmux_target:
        raise ControlError("Failed to create session", status=500)
    session_id = str(uuid.uuid4())
    if linked_to:
        store.write_link(tmux_target, linked_to)
    store.upsert(session_id, pid=0, cwd=cwd, tmux_target=tmux_target, state=STATE_IDLE, linked_to=linked_to)
    result = {"ok": True, "sessionName": session_name, "tmuxTarget": tmux_target, "id": session_id}
    if linked_to:
        result["linkedTo"] = linked_to
    return result


# ---------------------------------------------------------------------------
# Pane interaction
# ---------------------------------------------------------------------------


def send_to_pane(
    inspector: PaneInspectorProtocol,
    target: str,
    text: Optional[str] = None,
    keys: Optional[str] = None,
) -> dict:
    """Paste text (followed by Enter) or send raw keys (default Escape)."""
    if text:
        ok = inspector.send_text(target, text)
    else:
        ok = inspector.send_keys(target, keys or DEFAULT_KEYS)
    if not ok:
        raise ControlError("Failed to send keys", status=500)
    return {"ok": True}


def capture_output(inspector: PaneInspectorProtocol, target: str, lines: int = 100) -> dict:
    """Raw pane capture (with colors) plus its classified blocks."""
    output = inspector.capture_text(target, last_lines=lines, escapes=True)
    if output is None:
        raise ControlError("Failed to capture pane", status=500)
    blocks = parse_blocks(inspector.capture_text(target, last_lines=lines) or "")
    return {
        "output": output,
        "blocks": [b.to_dict() for b in blocks],
        "stats": block_stats(blocks),
        "timestamp": int(time.time() * 1000),
    }
