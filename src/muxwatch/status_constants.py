"""
Session state constants and display mappings for muxwatch.
"""

from typing import Tuple


# =============================================================================
# Session State Values
# =============================================================================

STATE_BUSY = "busy"
STATE_IDLE = "idle"
STATE_WAITING = "waiting"  # Agent asked the user something
STATE_PERMISSION = "permission"  # Agent is blocked on a tool permission prompt

ALL_STATES = [
    STATE_BUSY,
    STATE_IDLE,
    STATE_WAITING,
    STATE_PERMISSION,
]

# States in which the agent needs a human
ATTENTION_STATES = (STATE_WAITING, STATE_PERMISSION)

# Default set `muxwatch wait` blocks for
DEFAULT_WAIT_STATES = [STATE_IDLE, STATE_WAITING, STATE_PERMISSION]


def is_valid_state(state: str) -> bool:
    return state in ALL_STATES


# =============================================================================
# Batch Run Status Values
# =============================================================================

RUN_RUNNING = "running"
RUN_PAUSED = "paused"
RUN_WAITING_FOR_USER = "waiting_for_user"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"

TASK_PENDING = "pending"
TASK_RUNNING = "running"
TASK_COMPLETED = "completed"
TASK_SKIPPED = "skipped"
TASK_FAILED = "failed"


# =============================================================================
# State to Symbol+Color (combined for display)
# =============================================================================

STATE_SYMBOLS = {
    STATE_BUSY: ("🟢", "green"),
    STATE_IDLE: ("⚪", "dim"),
    STATE_WAITING: ("🟠", "orange1"),
    STATE_PERMISSION: ("🔴", "red"),
}


def get_state_symbol(state: str) -> Tuple[str, str]:
    """Get (emoji, color) tuple for a session state."""
    return STATE_SYMBOLS.get(state, ("❔", "dim"))
