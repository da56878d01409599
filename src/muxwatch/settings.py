"""
Paths and timing constants for muxwatch.

All on-disk state lives under a single state directory, ~/.muxwatch by
default. MUXWATCH_STATE_DIR overrides it so tests and parallel installs
never touch the user's real state.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


STATE_DIR_ENV = "MUXWATCH_STATE_DIR"
TMUX_SOCKET_ENV = "MUXWATCH_TMUX_SOCKET"

SCHEMA_VERSION = 1


def get_state_dir() -> Path:
    """Root of all muxwatch state (respects MUXWATCH_STATE_DIR)."""
    state_dir = os.environ.get(STATE_DIR_ENV)
    if state_dir:
        return Path(state_dir)
    return Path.home() / ".muxwatch"


def get_sessions_dir() -> Path:
    """Directory holding one JSON file per session record."""
    return get_state_dir() / "sessions"


def get_session_path(session_id: str) -> Path:
    return get_sessions_dir() / f"{session_id}.json"


def get_links_path() -> Path:
    return get_state_dir() / "links.json"


def get_debug_log_path() -> Path:
    """Audit log appended by every hook invocation."""
    return get_state_dir() / "debug.log"


def get_log_dir() -> Path:
    return get_state_dir() / "logs"


def get_config_path() -> Path:
    return get_state_dir() / "config.yaml"


def get_tmux_socket() -> Optional[str]:
    return os.environ.get(TMUX_SOCKET_ENV) or None


def tmux_base_args() -> List[str]:
    """Leading argv for every tmux invocation (adds -L when a socket is set)."""
    socket = get_tmux_socket()
    if socket:
        return ["tmux", "-L", socket]
    return ["tmux"]


@dataclass(frozen=True)
class Timing:
    """Intervals and delays, in seconds unless noted."""

    watcher_debounce: float = 0.05
    watcher_fallback_poll: float = 0.5
    interruption_resync: float = 0.5
    terminal_poll: float = 0.2
    beads_poll: float = 1.0
    beads_debounce: float = 0.3
    completion_check_delay: float = 2.0
    completion_retry_delay: float = 5.0

    # Subprocess timeouts
    pane_title_timeout: float = 1.0
    pane_capture_timeout: float = 2.0
    resize_timeout: float = 2.0
    tmux_timeout: float = 5.0
    tracker_timeout: float = 5.0
    tracker_show_timeout: float = 10.0


TIMING = Timing()

# Bytes buffered on a client before it is considered slow
BACKPRESSURE_THRESHOLD = 64 * 1024

# Lines of scrollback sent to terminal viewers
TERMINAL_CAPTURE_LINES = 100
