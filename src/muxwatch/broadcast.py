"""
Fan-out of live state to connected observers.

Three independent channels, each owning its own pool of clients:

- SessionsChannel: the enriched session list, pushed when the store
  changes (via ChangeWatcher) and on a short re-sync timer that catches
  interruptions the filesystem alone never shows.
- TerminalChannel: per pane target, the last lines of the pane, polled
  while at least one client is watching that target.
- BeadsChannel: per project, the work-item list, pushed on connect (fast
  listing, then an enriched one) and whenever issues.jsonl changes.

Admission is capped per channel; a rejected client is counted, never
queued. Before every push a client that is closed, has more than
BACKPRESSURE_THRESHOLD bytes queued, or raises on send is dropped.
"""

import asyncio
import json
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .change_watcher import ChangeWatcher, FileMtimeWatcher
from .config import DEFAULT_LIMITS, get_broadcast_limits
from .logging_config import get_structured_logger
from .protocols import BroadcastClient, PaneInspectorProtocol, TrackerProtocol
from .scheduling import PeriodicTask
from .session_store import SessionStore
from .settings import BACKPRESSURE_THRESHOLD, TIMING
from .status_constants import STATE_IDLE


log = get_structured_logger("broadcast")

# Policy violation: the client stopped reading
SLOW_CLIENT_CLOSE_CODE = 1008


@dataclass(frozen=True)
class ChannelLimits:
    max_sessions_clients: int = DEFAULT_LIMITS["max_sessions_clients"]
    max_terminal_clients_per_target: int = DEFAULT_LIMITS["max_terminal_clients_per_target"]
    max_terminal_clients_total: int = DEFAULT_LIMITS["max_terminal_clients_total"]
    max_beads_clients: int = DEFAULT_LIMITS["max_beads_clients"]

    @classmethod
    def from_config(cls) -> "ChannelLimits":
        return cls(**get_broadcast_limits())


def now_ms() -> int:
    return int(time.time() * 1000)


def deliver(client: BroadcastClient, data: str) -> bool:
    """Send one frame; False means the client should be dropped."""
    try:
        if not client.is_open():
            return False
        buffered = client.buffered_amount()
        if buffered is not None and buffered > BACKPRESSURE_THRESHOLD:
            log.warning("Client backpressure detected", buffered=buffered)
            return False
        client.send(data)
        return True
    except Exception as e:
        log.error("Failed to send to client", error=e)
        return False


def close_dropped(client: BroadcastClient) -> None:
    """Close a client the channel gave up on; it may already be gone."""
    try:
        client.close(SLOW_CLIENT_CLOSE_CODE, "Client too slow")
    except Exception as e:
        log.debug("Close of dropped client failed", error=e)


def handle_client_message(text: str, on_resize: Optional[Callable[[float, float], Any]] = None) -> Optional[str]:
    """Handle an inbound frame: 'ping' answers 'pong'; resize calls on_resize.

    Anything else (including malformed JSON) is ignored.
    """
    if text == "ping":
        return "pong"
    if on_resize is None:
        return None
    try:
        msg = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(msg, dict) or msg.get("type") != "resize":
        return None
    cols, rows = msg.get("cols"), msg.get("rows")
    numeric = all(
        isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v) for v in (cols, rows)
    )
    if numeric:
        on_resize(cols, rows)
    return None


# =============================================================================
# Session helpers
# =============================================================================


def sync_session_states(store: SessionStore, inspector: PaneInspectorProtocol) -> int:
    """Mark sessions idle whose pane shows an interrupted/declined turn.

    Returns the number of records updated.
    """
    updated = 0
    for record in store.list_all():
        if not record.tmux_target or record.state == STATE_IDLE:
            continue
        fields = inspector.check_for_interruption(record.tmux_target)
        if fields:
            store.update(record.id, fields)
            updated += 1
    return updated


def deduplicate_by_target(sessions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One session per pane target, keeping the greatest last_update.

    Sessions without a target are all kept, after the targeted ones.
    """
    by_target: Dict[str, Dict[str, Any]] = {}
    no_target = []
    for session in sessions:
        target = session.get("tmux_target")
        if not target:
            no_target.append(session)
            continue
        existing = by_target.get(target)
        if existing is None or session.get("last_update", 0) > existing.get("last_update", 0):
            by_target[target] = session
    return list(by_target.values()) + no_target


def enrich_sessions(store: SessionStore, inspector: PaneInspectorProtocol) -> List[Dict[str, Any]]:
    """Store records plus pane titles, re-synced and deduplicated."""
    sync_session_states(store, inspector)
    records = store.list_all()
    titles = inspector.all_titles() if any(r.tmux_target for r in records) else {}
    sessions = []
    for record in records:
        data = record.to_dict()
        data["pane_title"] = titles.get(record.tmux_target) if record.tmux_target else None
        sessions.append(data)
    return deduplicate_by_target(sessions)


# =============================================================================
# Sessions channel
# =============================================================================


class SessionsChannel:
    """One global pool of dashboard clients."""

    def __init__(
        self,
        store: SessionStore,
        inspector: PaneInspectorProtocol,
        watcher: ChangeWatcher,
        limits: Optional[ChannelLimits] = None,
        resync_interval: float = TIMING.interruption_resync,
    ):
        self.store = store
        self.inspector = inspector
        self.watcher = watcher
        self.limits = limits or ChannelLimits()
        self.resync_interval = resync_interval
        self.clients: List[BroadcastClient] = []
        self.dropped_clients = 0
        self.rejected_clients = 0
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._resync: Optional[PeriodicTask] = None
        self._last_hash = ""
        self.log = log.with_context(component="sessions")

    def stats(self) -> Dict[str, int]:
        return {
            "clients": len(self.clients),
            "droppedClients": self.dropped_clients,
            "rejectedClients": self.rejected_clients,
        }

    async def snapshot(self, msg_type: str = "sessions") -> Dict[str, Any]:
        sessions = await asyncio.to_thread(enrich_sessions, self.store, self.inspector)
        return {"type": msg_type, "sessions": sessions, "count": len(sessions), "timestamp": now_ms()}

    async def add_client(self, client: BroadcastClient) -> bool:
        """Admit a client and send it a 'connected' snapshot; False if full."""
        if len(self.clients) >= self.limits.max_sessions_clients:
            self.rejected_clients += 1
            self.log.warning("Max clients reached, rejecting connection",
                             current=len(self.clients), max=self.limits.max_sessions_clients)
            return False
        self.clients.append(client)
        self.log.debug("Client connected", total=len(self.clients))

        if self._unsubscribe is None:
            self.log.info("First client, subscribing to watcher")
            self._unsubscribe = self.watcher.subscribe(self.refresh)
            self._resync = PeriodicTask(self.resync_interval, self.refresh, name="sessions-resync")
            self._resync.start()

        message = await self.snapshot("connected")
        if client in self.clients and not deliver(client, json.dumps(message)):
            self._drop(client)
        return True

    def remove_client(self, client: BroadcastClient) -> None:
        if client in self.clients:
            self.clients.remove(client)
            self.log.debug("Client disconnected", total=len(self.clients))
        if not self.clients:
            self._teardown()

    def _teardown(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._resync is not None:
            self._resync.cancel()
            self._resync = None
        self._last_hash = ""

    def _drop(self, client: BroadcastClient) -> None:
        if client in self.clients:
            self.clients.remove(client)
            self.dropped_clients += 1
            close_dropped(client)
            self.log.warning("Dropped slow client", total=len(self.clients))
        if not self.clients:
            self._teardown()

    def _fan_out(self, data: str) -> None:
        for client in list(self.clients):
            if not deliver(client, data):
                self._drop(client)

    async def refresh(self) -> bool:
        """Recompute the session list and push it if it changed."""
        if not self.clients:
            return False
        message = await self.snapshot("sessions")
        digest = json.dumps(message["sessions"], sort_keys=True)
        if digest == self._last_hash:
            return False
        self._last_hash = digest
        self._fan_out(json.dumps(message))
        return True

    def broadcast(self, message: Dict[str, Any]) -> None:
        """Push an out-of-band message (e.g. batch-run state) to every client."""
        if self.clients:
            self._fan_out(json.dumps(message))

    def close(self) -> None:
        self.clients.clear()
        self._teardown()


# =============================================================================
# Terminal channel
# =============================================================================


class TerminalChannel:
    """Per-pane pools of terminal viewers, each target with its own poll."""

    def __init__(
        self,
        inspector: PaneInspectorProtocol,
        limits: Optional[ChannelLimits] = None,
        poll_interval: float = TIMING.terminal_poll,
    ):
        self.inspector = inspector
        self.limits = limits or ChannelLimits()
        self.poll_interval = poll_interval
        self.clients: Dict[str, List[BroadcastClient]] = {}
        self.total_clients = 0
        self.dropped_clients = 0
        self.rejected_clients = 0
        self._polls: Dict[str, PeriodicTask] = {}
        self._last_output: Dict[str, str] = {}
        self.log = log.with_context(component="terminal")

    def stats(self) -> Dict[str, int]:
        return {
            "totalClients": self.total_clients,
            "targets": len(self.clients),
            "droppedClients": self.dropped_clients,
            "rejectedClients": self.rejected_clients,
        }

    async def capture(self, target: str) -> str:
        return await asyncio.to_thread(self.inspector.capture_for_viewer, target) or ""

    async def add_client(self, client: BroadcastClient, target: str) -> bool:
        if self.total_clients >= self.limits.max_terminal_clients_total:
            self.rejected_clients += 1
            self.log.warning("Max total clients reached",
                             current=self.total_clients, max=self.limits.max_terminal_clients_total)
            return False
        pool = self.clients.get(target)
        if pool is not None and len(pool) >= self.limits.max_terminal_clients_per_target:
            self.rejected_clients += 1
            self.log.warning("Max clients per target reached", target=target,
                             current=len(pool), max=self.limits.max_terminal_clients_per_target)
            return False

        pool = self.clients.setdefault(target, [])
        pool.append(client)
        self.total_clients += 1
        self.log.debug("Client connected", target=target, target_clients=len(pool), total=self.total_clients)
        if target not in self._polls:
            poll = PeriodicTask(self.poll_interval, lambda: self.poll(target), name=f"terminal-poll:{target}")
            self._polls[target] = poll
            poll.start()

        output = await self.capture(target)
        message = {"type": "output", "output": output, "timestamp": now_ms()}
        if client in self.clients.get(target, ()) and not deliver(client, json.dumps(message)):
            self._drop(client, target)
        return True

    def remove_client(self, client: BroadcastClient, target: Optional[str] = None) -> None:
        targets = [target] if target is not None else list(self.clients)
        for t in targets:
            pool = self.clients.get(t)
            if pool and client in pool:
                pool.remove(client)
                self.total_clients -= 1
                self.log.debug("Client disconnected", target=t, target_clients=len(pool), total=self.total_clients)
                self._forget_if_empty(t)
                return

    def _drop(self, client: BroadcastClient, target: str) -> None:
        pool = self.clients.get(target)
        if pool and client in pool:
            pool.remove(client)
            self.total_clients -= 1
            self.dropped_clients += 1
            close_dropped(client)
            self.log.warning("Dropped slow client", target=target, total=self.total_clients)
        self._forget_if_empty(target)

    def _forget_if_empty(self, target: str) -> None:
        if self.clients.get(target):
            return
        self.clients.pop(target, None)
        poll = self._polls.pop(target, None)
        if poll is not None:
            poll.cancel()
        self._last_output.pop(target, None)

    async def poll(self, target: str) -> bool:
        """Capture the pane and push it to the target's clients if it changed."""
        output = await self.capture(target)
        if target not in self.clients:
            return False
        if output == self._last_output.get(target, ""):
            return False
        self._last_output[target] = output
        data = json.dumps({"type": "output", "output": output, "timestamp": now_ms()})
        for client in list(self.clients.get(target, ())):
            if not deliver(client, data):
                self._drop(client, target)
        return True

    async def resize(self, target: str, cols: float, rows: float) -> bool:
        return await asyncio.to_thread(self.inspector.resize, target, cols, rows)

    def close(self) -> None:
        for poll in self._polls.values():
            poll.cancel()
        self._polls.clear()
        self.clients.clear()
        self._last_output.clear()
        self.total_clients = 0


# =============================================================================
# Beads channel
# =============================================================================


def beads_issues_path(project: str) -> Path:
    return Path(project) / ".beads" / "issues.jsonl"


def fetch_basic(tracker: TrackerProtocol, project: str) -> List[Dict[str, Any]]:
    tracker.sync(project)
    return tracker.list_basic(project)


def fetch_enriched(tracker: TrackerProtocol, project: str) -> List[Dict[str, Any]]:
    tracker.sync(project)
    return tracker.list_enriched(project)


class BeadsChannel:
    """Per-project pools of work-queue viewers."""

    def __init__(
        self,
        tracker: TrackerProtocol,
        watcher: Optional[FileMtimeWatcher] = None,
        limits: Optional[ChannelLimits] = None,
    ):
        self.tracker = tracker
        self.watcher = watcher or FileMtimeWatcher(beads_issues_path)
        self.limits = limits or ChannelLimits()
        self.clients: Dict[str, List[BroadcastClient]] = {}
        self.total_clients = 0
        self.dropped_clients = 0
        self.rejected_clients = 0
        self._unsubscribes: Dict[str, Callable[[], None]] = {}
        self._last_hash: Dict[str, str] = {}
        self._tasks: Set[asyncio.Task] = set()
        self.log = log.with_context(component="beads")

    def stats(self) -> Dict[str, int]:
        return {
            "totalClients": self.total_clients,
            "projects": len(self.clients),
            "droppedClients": self.dropped_clients,
            "rejectedClients": self.rejected_clients,
        }

    async def add_client(self, client: BroadcastClient, project: str) -> bool:
        if not project:
            return False
        if self.total_clients >= self.limits.max_beads_clients:
            self.rejected_clients += 1
            self.log.warning("Max clients reached, rejecting connection",
                             current=self.total_clients, max=self.limits.max_beads_clients)
            return False

        pool = self.clients.setdefault(project, [])
        pool.append(client)
        self.total_clients += 1
        self.log.debug("Client connected", project=project, total=self.total_clients)
        if project not in self._unsubscribes:
            self._unsubscribes[project] = self.watcher.subscribe(project, lambda: self.refresh(project))

        issues = await asyncio.to_thread(fetch_basic, self.tracker, project)
        message = {"type": "connected", "issues": issues, "project": project, "timestamp": now_ms()}
        if client in self.clients.get(project, ()) and not deliver(client, json.dumps(message)):
            self._drop(client, project)

        self.refresh(project)
        return True

    def refresh(self, project: str) -> asyncio.Task:
        """Start an enriched fetch in the background; it pushes when done."""
        task = asyncio.create_task(self.enrich_and_broadcast(project), name=f"beads-enrich:{project}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def enrich_and_broadcast(self, project: str) -> bool:
        try:
            issues = await asyncio.to_thread(fetch_enriched, self.tracker, project)
        except Exception as e:
            self.log.exception("Enrichment failed", project=project, error=e)
            return False
        return self.broadcast_issues(project, issues)

    def broadcast_issues(self, project: str, issues: List[Dict[str, Any]]) -> bool:
        if project not in self.clients:
            return False
        digest = json.dumps(issues, sort_keys=True)
        if digest == self._last_hash.get(project):
            return False
        self._last_hash[project] = digest
        data = json.dumps({"type": "issues", "issues": issues, "project": project, "timestamp": now_ms()})
        self.log.debug("Broadcasting", project=project, clients=len(self.clients[project]))
        for client in list(self.clients.get(project, ())):
            if not deliver(client, data):
                self._drop(client, project)
        return True

    def remove_client(self, client: BroadcastClient, project: Optional[str] = None) -> None:
        projects = [project] if project is not None else list(self.clients)
        for p in projects:
            pool = self.clients.get(p)
            if pool and client in pool:
                pool.remove(client)
                self.total_clients -= 1
                self._forget_if_empty(p)
                return

    def _drop(self, client: BroadcastClient, project: str) -> None:
        pool = self.clients.get(project)
        if pool and client in pool:
            pool.remove(client)
            self.total_clients -= 1
            self.dropped_clients += 1
            close_dropped(client)
            self.log.warning("Dropped slow client", project=project, total=self.total_clients)
        self._forget_if_empty(project)

    def _forget_if_empty(self, project: str) -> None:
        if self.clients.get(project):
            return
        self.clients.pop(project, None)
        self._last_hash.pop(project, None)
        unsubscribe = self._unsubscribes.pop(project, None)
        if unsubscribe is not None:
            unsubscribe()

    def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for unsubscribe in self._unsubscribes.values():
            unsubscribe()
        self._unsubscribes.clear()
        self.clients.clear()
        self._last_hash.clear()
        self.total_clients = 0
