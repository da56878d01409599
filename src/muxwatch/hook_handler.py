"""Unified hook handler for agent lifecycle events.

A single command (`muxwatch hook-handler`) handles all hook events. It
reads the hook JSON from stdin, resolves the lifecycle event, and applies
it to the session store. Notification hooks pass their subtype on the
command line because they all share hook_event_name="Notification".

Hook registrations:
    SessionStart        -> muxwatch hook-handler
    UserPromptSubmit    -> muxwatch hook-handler
    PreToolUse          -> muxwatch hook-handler
    PostToolUse         -> muxwatch hook-handler
    PostToolUseFailure  -> muxwatch hook-handler
    Stop                -> muxwatch hook-handler
    PermissionRequest   -> muxwatch hook-handler
    SessionEnd          -> muxwatch hook-handler
    Notification        -> muxwatch hook-handler notification-<subtype>
"""

import json
import os
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, TextIO

from .lifecycle import apply_event, resolve_event
from .pane_inspector import PaneInspector
from .session_store import SessionStore
from .settings import get_debug_log_path


HOOK_COMMAND = "muxwatch hook-handler"

# (event, command, matcher)
MUXWATCH_HOOKS: list[tuple[str, str, str]] = [
    ("SessionStart", HOOK_COMMAND, ""),
    ("UserPromptSubmit", HOOK_COMMAND, ""),
    ("PreToolUse", HOOK_COMMAND, ""),
    ("PostToolUse", HOOK_COMMAND, ""),
    ("PostToolUseFailure", HOOK_COMMAND, ""),
    ("Stop", HOOK_COMMAND, ""),
    ("PermissionRequest", HOOK_COMMAND, ""),
    ("SessionEnd", HOOK_COMMAND, ""),
    ("Notification", f"{HOOK_COMMAND} notification-idle", "idle_prompt"),
    ("Notification", f"{HOOK_COMMAND} notification-permission", "permission_prompt"),
    ("Notification", f"{HOOK_COMMAND} notification-elicitation", "elicitation_dialog"),
]

_PID_SEARCH_DEPTH = 10


def find_git_root(cwd: str) -> Optional[str]:
    """Top of the git work tree containing cwd, or None."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=cwd or None,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (subprocess.SubprocessError, OSError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def debug_log(message: str, path: Optional[Path] = None) -> None:
    """Append '<iso timestamp> message' to the hook audit log."""
    path = path or get_debug_log_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a") as f:
            f.write(f"{datetime.now(timezone.utc).isoformat()} {message}\n")
    except OSError:
        pass


class HookEnvironment:
    """Discovers pane, repo and agent pid for the process running the hook."""

    def __init__(self, inspector: Optional[PaneInspector] = None):
        self.inspector = inspector if inspector else PaneInspector()

    def pane_target(self) -> Optional[str]:
        return self.inspector.current_pane_target()

    def git_root(self, cwd: str) -> Optional[str]:
        return find_git_root(cwd)

    def beads_enabled(self, git_root: Optional[str]) -> bool:
        if not git_root:
            return False
        return (Path(git_root) / ".beads").exists()

    def agent_pid(self) -> int:
        """Walk up the process tree looking for the agent process.

        The hook is spawned through one or more shells, so the agent is a
        few levels up. Returns 0 when it can't be found.
        """
        pid = os.getppid()
        for level in range(_PID_SEARCH_DEPTH):
            if pid <= 1:
                break
            try:
                result = subprocess.run(
                    ["ps", "-p", str(pid), "-o", "ppid=,comm=,args="],
                    capture_output=True,
                    text=True,
                    timeout=2,
                )
            except (subprocess.SubprocessError, OSError) as e:
                debug_log(f"agent_pid: ps failed at level {level}: {e}")
                break
            line = result.stdout.strip()
            if not line:
                break
            if "claude" in line and "muxwatch" not in line:
                debug_log(f"agent_pid: found agent at pid={pid}")
                return pid
            try:
                pid = int(line.split()[0])
            except (ValueError, IndexError):
                break
        debug_log("agent_pid: not found, using 0")
        return 0


def handle_hook_event(
    argv_event: Optional[str] = None,
    stdin: Optional[TextIO] = None,
    store: Optional[SessionStore] = None,
    env: Optional[HookEnvironment] = None,
) -> bool:
    """Main entry point: read stdin JSON and apply the event to the store.

    Silent return (False) if stdin is empty/invalid or no event resolves;
    a failing hook must never disturb the agent.
    """
    stdin = stdin if stdin else sys.stdin
    try:
        raw = stdin.read()
    except (OSError, ValueError):
        return False
    if not raw.strip():
        return False
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        debug_log("hook: invalid JSON on stdin")
        return False
    if not isinstance(data, dict):
        return False

    hook_event_name = data.get("hook_event_name")
    event = resolve_event(hook_event_name, data.get("notification_type"), argv_event)
    session_id = data.get("session_id")
    debug_log(f"hook: event={event.value if event else None} hook_event_name={hook_event_name} argv={argv_event}")
    debug_log(f"hook: session_id={session_id} cwd={data.get('cwd')}")
    if event is None or not session_id:
        debug_log("hook: nothing to do")
        return False

    tool_input = data.get("tool_input")
    apply_event(
        store if store else SessionStore(),
        env if env else HookEnvironment(),
        event,
        str(session_id),
        data.get("cwd") or "",
        tool_name=data.get("tool_name"),
        tool_input=tool_input if isinstance(tool_input, dict) else None,
    )
    debug_log(f"hook: {event.value} completed")
    return True
