"""
File-backed store of agent session records.

One JSON file per session under the sessions directory, named by id.
Writers are the hook handler (one short-lived process per hook event) and
the server, so every write goes through a temp file in the same directory
followed by an atomic rename; readers therefore see either the old or the
new record, never a partial one.
"""

import json
import os
import tempfile
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .logging_config import get_logger
from .settings import SCHEMA_VERSION, get_links_path, get_sessions_dir
from .status_constants import STATE_BUSY


log = get_logger("store")

# Fields `update()` is allowed to touch
UPDATABLE_FIELDS = ("state", "current_action", "prompt_text", "cwd", "git_root")


def now_ms() -> int:
    return int(time.time() * 1000)


def is_pid_alive(pid: int) -> bool:
    """Check whether a process exists (signal 0 probe)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    except OSError:
        return False
    return True


@dataclass
class Screenshot:
    path: str
    timestamp: int


@dataclass
class SessionRecord:
    """Persisted state of one agent session."""

    id: str
    pid: int = 0
    cwd: str = ""
    git_root: Optional[str] = None
    beads_enabled: bool = False
    tmux_target: Optional[str] = None
    state: str = STATE_BUSY
    current_action: Optional[str] = None
    prompt_text: Optional[str] = None
    last_update: int = 0
    screenshots: List[Screenshot] = field(default_factory=list)
    chrome_active: bool = False
    linked_to: Optional[str] = None
    v: int = SCHEMA_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> Optional["SessionRecord"]:
        """Build a record from parsed JSON; None if it isn't a usable record."""
        if not isinstance(data, dict):
            return None
        session_id = data.get("id")
        if not isinstance(session_id, str) or not session_id:
            return None
        screenshots = []
        for shot in data.get("screenshots") or []:
            if isinstance(shot, dict) and isinstance(shot.get("path"), str):
                screenshots.append(Screenshot(path=shot["path"], timestamp=int(shot.get("timestamp") or 0)))
        try:
            pid = int(data.get("pid") or 0)
            last_update = int(data.get("last_update") or 0)
        except (TypeError, ValueError):
            return None
        return cls(
            id=session_id,
            pid=pid,
            cwd=data.get("cwd") or "",
            git_root=data.get("git_root"),
            beads_enabled=bool(data.get("beads_enabled", False)),
            tmux_target=data.get("tmux_target"),
            state=data.get("state") or STATE_BUSY,
            current_action=data.get("current_action"),
            prompt_text=data.get("prompt_text"),
            last_update=last_update,
            screenshots=screenshots,
            chrome_active=bool(data.get("chrome_active", False)),
            linked_to=data.get("linked_to"),
            v=int(data.get("v") or SCHEMA_VERSION),
        )


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON via a unique temp file in the same directory, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise


class SessionStore:
    """CRUD over the per-session JSON files.

    Constructed explicitly and passed to whoever needs it; the directory
    and the process-liveness probe are injectable for tests.
    """

    def __init__(
        self,
        sessions_dir: Optional[Path] = None,
        links_path: Optional[Path] = None,
        pid_alive: Optional[Callable[[int], bool]] = None,
    ):
        self.sessions_dir = Path(sessions_dir) if sessions_dir else get_sessions_dir()
        self.links_path = Path(links_path) if links_path else get_links_path()
        self._pid_alive = pid_alive if pid_alive else is_pid_alive

    def path_for(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def _session_files(self) -> List[Path]:
        try:
            return sorted(p for p in self.sessions_dir.iterdir() if p.suffix == ".json")
        except OSError:
            return []

    @staticmethod
    def _read(path: Path) -> Optional[SessionRecord]:
        try:
            with open(path) as f:
                return SessionRecord.from_dict(json.load(f))
        except (OSError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._read(self.path_for(session_id))

    def save(self, record: SessionRecord, previous: Optional[SessionRecord] = None) -> SessionRecord:
        """Persist a full record, bumping last_update.

        last_update is forced strictly above the previously stored value so
        two writes inside the same millisecond still order correctly. Pass
        `previous` when the caller already read the stored record.
        """
        if previous is None:
            previous = self.get(record.id)
        floor = max(record.last_update, previous.last_update if previous else 0)
        record.last_update = max(now_ms(), floor + 1)
        record.v = SCHEMA_VERSION
        write_json_atomic(self.path_for(record.id), record.to_dict())
        return record

    def upsert(
        self,
        session_id: str,
        pid: int,
        cwd: str,
        git_root: Optional[str] = None,
        beads_enabled: Optional[bool] = None,
        tmux_target: Optional[str] = None,
        state: Optional[str] = None,
        current_action: Optional[str] = None,
        prompt_text: Optional[str] = None,
        linked_to: Optional[str] = None,
    ) -> SessionRecord:
        """Create a record, or merge non-null inputs over the existing one."""
        existing = self.get(session_id)

        def pick(value, attr, default):
            if value is not None:
                return value
            if existing is not None:
                return getattr(existing, attr)
            return default

        record = SessionRecord(
            id=session_id,
            pid=pid,
            cwd=cwd,
            git_root=pick(git_root, "git_root", None),
            beads_enabled=pick(beads_enabled, "beads_enabled", False),
            tmux_target=pick(tmux_target, "tmux_target", None),
            state=pick(state, "state", STATE_BUSY),
            current_action=pick(current_action, "current_action", None),
            prompt_text=pick(prompt_text, "prompt_text", None),
            linked_to=pick(linked_to, "linked_to", None),
            screenshots=list(existing.screenshots) if existing else [],
            chrome_active=existing.chrome_active if existing else False,
        )
        return self.save(record, previous=existing)

    def update(self, session_id: str, fields: Dict[str, Any]) -> Optional[SessionRecord]:
        """Apply a partial update; no-op (returns None) if the record is absent."""
        record = self.get(session_id)
        if record is None:
            return None
        for key, value in fields.items():
            if key in UPDATABLE_FIELDS:
                setattr(record, key, value)
        return self.save(record, previous=record)

    def delete(self, session_id: str) -> None:
        """Remove a record. Deleting a missing record is not an error."""
        try:
            self.path_for(session_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"Failed to delete session {session_id}: {e}")

    def list_all(self) -> List[SessionRecord]:
        """All readable records sorted by id; corrupt files are skipped."""
        records = []
        for path in self._session_files():
            record = self._read(path)
            if record is not None:
                records.append(record)
        records.sort(key=lambda r: r.id)
        return records

    def cleanup_stale(self) -> int:
        """Remove records whose owning process is gone, plus corrupt files.

        Records with pid 0 (pre-registered, not yet attached) are kept;
        only an explicit end event removes those.
        """
        removed = 0
        for path in self._session_files():
            record = self._read(path)
            if record is not None and (record.pid <= 0 or self._pid_alive(record.pid)):
                continue
            try:
                path.unlink()
                removed += 1
            except OSError:
                continue
            if record is None:
                log.info(f"Removed corrupt session file {path.name}")
            else:
                log.info(f"Removed stale session {record.id} (pid {record.pid} gone)")
        return removed

    # ------------------------------------------------------------------
    # Extras
    # ------------------------------------------------------------------

    def delete_by_target(self, tmux_target: str, exclude_id: Optional[str] = None) -> Optional[str]:
        """Delete records bound to a pane, returning a linked_to worth keeping."""
        linked_to = None
        for record in self.list_all():
            if record.id == exclude_id or record.tmux_target != tmux_target:
                continue
            if record.linked_to:
                linked_to = record.linked_to
            log.info(f"Removing stale session {record.id} bound to {tmux_target}")
            self.delete(record.id)
        return linked_to

    def add_screenshot(self, record: SessionRecord, path: str) -> None:
        record.screenshots.append(Screenshot(path=path, timestamp=now_ms()))

    def remove_screenshot(self, session_id: str, screenshot_path: str) -> bool:
        record = self.get(session_id)
        if record is None or not record.screenshots:
            return False
        kept = [s for s in record.screenshots if s.path != screenshot_path]
        if len(kept) == len(record.screenshots):
            return False
        record.screenshots = kept
        self.save(record)
        return True

    def resolve(self, target: str) -> Optional[SessionRecord]:
        """Find a session by id, exact pane target, or pane-target prefix."""
        by_id = self.get(target)
        if by_id is not None:
            return by_id
        records = self.list_all()
        for record in records:
            if record.tmux_target == target:
                return record
        for record in records:
            if record.tmux_target and record.tmux_target.startswith(target):
                return record
        return None

    # ------------------------------------------------------------------
    # Links (orchestrator pane -> main pane), kept outside the session files
    # ------------------------------------------------------------------

    def read_links(self) -> Dict[str, str]:
        try:
            with open(self.links_path) as f:
                data = json.load(f)
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def write_link(self, orchestrator_target: str, main_target: str) -> None:
        links = self.read_links()
        links[orchestrator_target] = main_target
        write_json_atomic(self.links_path, links)
