"""
Agent lifecycle events and the state transitions they drive.

Every hook event the agent emits maps to exactly one LifecycleEvent, and
every LifecycleEvent maps to exactly one Transition in `transition_for`.
Applying an event to the store goes through `apply_event`, which also
handles record creation and stale-pane cleanup.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol, assert_never

from .logging_config import get_logger
from .session_store import SessionRecord, SessionStore
from .status_constants import STATE_BUSY, STATE_IDLE, STATE_PERMISSION, STATE_WAITING


log = get_logger("lifecycle")


class LifecycleEvent(str, Enum):
    SESSION_START = "session-start"
    USER_PROMPT_SUBMIT = "user-prompt-submit"
    PRE_TOOL_USE = "pre-tool-use"
    POST_TOOL_USE = "post-tool-use"
    POST_TOOL_USE_FAILURE = "post-tool-use-failure"
    STOP = "stop"
    NOTIFICATION_IDLE = "notification-idle"
    PERMISSION_REQUEST = "permission-request"
    NOTIFICATION_PERMISSION = "notification-permission"
    NOTIFICATION_ELICITATION = "notification-elicitation"
    SESSION_END = "session-end"


# PascalCase hook_event_name -> event. "Notification" is absent on purpose:
# its subtype comes from notification_type or the command line.
_HOOK_EVENT_NAMES = {
    "SessionStart": LifecycleEvent.SESSION_START,
    "UserPromptSubmit": LifecycleEvent.USER_PROMPT_SUBMIT,
    "Stop": LifecycleEvent.STOP,
    "PermissionRequest": LifecycleEvent.PERMISSION_REQUEST,
    "PreToolUse": LifecycleEvent.PRE_TOOL_USE,
    "PostToolUse": LifecycleEvent.POST_TOOL_USE,
    "PostToolUseFailure": LifecycleEvent.POST_TOOL_USE_FAILURE,
    "SessionEnd": LifecycleEvent.SESSION_END,
}

_NOTIFICATION_TYPES = {
    "idle_prompt": LifecycleEvent.NOTIFICATION_IDLE,
    "permission_prompt": LifecycleEvent.NOTIFICATION_PERMISSION,
    "elicitation_dialog": LifecycleEvent.NOTIFICATION_ELICITATION,
}


def resolve_event(
    hook_event_name: Optional[str],
    notification_type: Optional[str] = None,
    fallback: Optional[str] = None,
) -> Optional[LifecycleEvent]:
    """Work out which lifecycle event a hook invocation represents.

    Order: the PascalCase hook_event_name, then the notification subtype,
    then the event name given on the command line.
    """
    if hook_event_name in _HOOK_EVENT_NAMES:
        return _HOOK_EVENT_NAMES[hook_event_name]
    if notification_type in _NOTIFICATION_TYPES:
        return _NOTIFICATION_TYPES[notification_type]
    if fallback:
        try:
            return LifecycleEvent(fallback)
        except ValueError:
            return None
    return None


def format_tool_action(tool_name: str, tool_input: Optional[Dict[str, Any]] = None) -> str:
    """Short human label for the tool the agent is about to run."""
    tool_input = tool_input or {}
    short_name = tool_name
    if tool_name.startswith("mcp__"):
        parts = tool_name.split("__", 2)
        if len(parts) == 3 and parts[2]:
            short_name = parts[2]

    if tool_name == "Bash":
        command = tool_input.get("command")
        if command:
            suffix = "..." if len(command) > 30 else ""
            return f"Bash: {command[:30]}{suffix}"
        return "Running: Bash"
    if tool_name in ("Read", "Edit", "Write"):
        file_path = tool_input.get("file_path")
        if file_path:
            return f"{tool_name}: {file_path.split('/')[-1] or file_path}"
        return f"Running: {tool_name}"
    if tool_name in ("Grep", "Glob"):
        return "Searching..."
    if tool_name == "Task":
        return "Running agent..."
    return f"Running: {short_name}"


@dataclass(frozen=True)
class Transition:
    """Field update produced by one event. delete=True removes the record."""

    state: Optional[str] = None
    current_action: Optional[str] = None
    delete: bool = False


def transition_for(
    event: LifecycleEvent,
    tool_name: Optional[str] = None,
    tool_input: Optional[Dict[str, Any]] = None,
) -> Transition:
    match event:
        case LifecycleEvent.SESSION_START:
            return Transition(STATE_IDLE, None)
        case LifecycleEvent.USER_PROMPT_SUBMIT:
            return Transition(STATE_BUSY, "Thinking...")
        case LifecycleEvent.PRE_TOOL_USE:
            action = format_tool_action(tool_name, tool_input) if tool_name else "Working..."
            return Transition(STATE_BUSY, action)
        case LifecycleEvent.POST_TOOL_USE | LifecycleEvent.POST_TOOL_USE_FAILURE:
            return Transition(STATE_BUSY, None)
        case LifecycleEvent.STOP | LifecycleEvent.NOTIFICATION_IDLE:
            return Transition(STATE_IDLE, None)
        case LifecycleEvent.PERMISSION_REQUEST:
            return Transition(STATE_WAITING, "Waiting...")
        case LifecycleEvent.NOTIFICATION_PERMISSION:
            return Transition(STATE_PERMISSION, "Waiting for permission")
        case LifecycleEvent.NOTIFICATION_ELICITATION:
            return Transition(STATE_WAITING, "Waiting for input")
        case LifecycleEvent.SESSION_END:
            return Transition(delete=True)
        case _:
            assert_never(event)


class SessionEnvironment(Protocol):
    """Where a new record's pane, repo and pid come from."""

    def pane_target(self) -> Optional[str]:
        ...

    def git_root(self, cwd: str) -> Optional[str]:
        ...

    def beads_enabled(self, git_root: Optional[str]) -> bool:
        ...

    def agent_pid(self) -> int:
        ...


def apply_event(
    store: SessionStore,
    env: SessionEnvironment,
    event: LifecycleEvent,
    session_id: str,
    cwd: str,
    tool_name: Optional[str] = None,
    tool_input: Optional[Dict[str, Any]] = None,
) -> Optional[SessionRecord]:
    """Apply one lifecycle event to the store.

    Returns the written record, or None when the event deleted it.
    """
    transition = transition_for(event, tool_name, tool_input)
    if transition.delete:
        store.delete(session_id)
        log.debug(f"Session {session_id} ended")
        return None

    pane_target = env.pane_target()
    existing = None if event is LifecycleEvent.SESSION_START else store.get(session_id)

    if existing is None:
        # Any other record still bound to this pane belongs to a previous
        # agent in the same pane; drop it but keep its link.
        linked_to = None
        if pane_target:
            linked_to = store.delete_by_target(pane_target, exclude_id=session_id)
        git_root = env.git_root(cwd)
        record = SessionRecord(
            id=session_id,
            pid=env.agent_pid(),
            cwd=cwd,
            git_root=git_root,
            beads_enabled=env.beads_enabled(git_root),
            tmux_target=pane_target,
            state=STATE_IDLE,
            linked_to=linked_to,
        )
    else:
        record = existing
        if pane_target:
            record.tmux_target = pane_target

    record.state = transition.state
    record.current_action = transition.current_action

    if (
        event is LifecycleEvent.PRE_TOOL_USE
        and tool_name
        and "take_screenshot" in tool_name
        and tool_input
        and tool_input.get("filePath")
    ):
        store.add_screenshot(record, tool_input["filePath"])

    return store.save(record, previous=existing)
