"""
Protocol definitions for external dependencies.

These interfaces allow dependency injection for testing: the broadcast
channels, the batch orchestrator and the HTTP layer only ever see these
shapes, so tests swap in fakes for tmux, the bd tracker and websocket
clients.
"""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


@runtime_checkable
class BroadcastClient(Protocol):
    """One connected observer, owned by exactly one broadcast channel."""

    def send(self, text: str) -> None:
        """Queue a text frame. Raises on a dead connection."""
        ...

    def is_open(self) -> bool:
        ...

    def close(self, code: int = 1000, reason: str = "") -> None:
        ...

    def buffered_amount(self) -> Optional[int]:
        """Bytes queued but not yet written, or None if unknown."""
        ...


@runtime_checkable
class PaneInspectorProtocol(Protocol):
    """Interface for pane probes"""

    def capture_text(self, target: str, last_lines: Optional[int] = None,
                     escapes: bool = False) -> Optional[str]:
        ...

    def capture_for_viewer(self, target: str) -> Optional[str]:
        ...

    def title(self, target: str) -> Optional[str]:
        ...

    def all_titles(self) -> Dict[str, Optional[str]]:
        ...

    def resize(self, target: str, cols: float, rows: float) -> bool:
        ...

    def send_text(self, target: str, text: str, buffer_name: str = "muxwatch-input") -> bool:
        ...

    def send_keys(self, target: str, keys: str) -> bool:
        ...

    def check_for_interruption(self, target: str) -> Optional[Dict[str, Any]]:
        ...


@runtime_checkable
class TrackerProtocol(Protocol):
    """Interface for the bd work-queue tracker"""

    def sync(self, project: str) -> bool:
        ...

    def list_basic(self, project: str) -> List[Dict[str, Any]]:
        """Fast listing, epic grouping only."""
        ...

    def list_enriched(self, project: str) -> List[Dict[str, Any]]:
        """Listing with resolved dependency titles (slower)."""
        ...

    def next_ready(self, project: str, parent_id: str) -> Optional[Dict[str, Any]]:
        ...

    def ready_count(self, project: str, parent_id: str) -> int:
        ...

    def is_closed(self, project: str, issue_id: str) -> bool:
        ...


@runtime_checkable
class TmuxControl(Protocol):
    """Interface for tmux session management"""

    def has_session(self, session: str) -> bool:
        ...

    def new_session(self, name: str, cwd: str, command: List[str]) -> Optional[str]:
        """Create a detached session; returns its first pane target."""
        ...

    def kill_session(self, session: str) -> bool:
        ...

    def kill_pane(self, target: str) -> bool:
        ...


@runtime_checkable
class ProcessControl(Protocol):
    """Interface for signalling agent processes"""

    def kill(self, pid: int) -> bool:
        ...
