"""
Test doubles and factories for muxwatch unit tests.

The fakes implement the protocols in muxwatch.protocols without touching
tmux, bd or a real socket.
"""

import inspect
import json
from typing import Any, Callable, Dict, List, Optional


class FakeClient:
    """BroadcastClient that records every frame."""

    def __init__(self, buffered: Optional[int] = 0, fail_send: bool = False):
        self.sent: List[str] = []
        self.open = True
        self.buffered = buffered
        self.fail_send = fail_send
        self.closed_with = None

    def send(self, text: str) -> None:
        if self.fail_send:
            raise ConnectionError("boom")
        self.sent.append(text)

    def is_open(self) -> bool:
        return self.open

    def close(self, code: int = 1000, reason: str = "") -> None:
        self.open = False
        self.closed_with = (code, reason)

    def buffered_amount(self) -> Optional[int]:
        return self.buffered

    def messages(self) -> List[Dict[str, Any]]:
        return [json.loads(s) for s in self.sent]


class FakeInspector:
    """PaneInspectorProtocol backed by dicts."""

    def __init__(self, outputs: Optional[Dict[str, str]] = None, titles: Optional[Dict[str, str]] = None):
        self.outputs = outputs if outputs is not None else {}
        self.titles = titles if titles is not None else {}
        self.interrupted: set = set()
        self.sent_text: List[tuple] = []
        self.sent_keys: List[tuple] = []
        self.resized: List[tuple] = []
        self.send_ok = True
        self.title_calls = 0

    def capture_text(self, target, last_lines=None, escapes=False):
        return self.outputs.get(target)

    def capture_for_viewer(self, target):
        return self.outputs.get(target)

    def title(self, target):
        return self.titles.get(target)

    def all_titles(self):
        self.title_calls += 1
        return dict(self.titles)

    def resize(self, target, cols, rows):
        self.resized.append((target, cols, rows))
        return True

    def send_text(self, target, text, buffer_name="muxwatch-input"):
        self.sent_text.append((target, text, buffer_name))
        return self.send_ok

    def send_keys(self, target, keys):
        self.sent_keys.append((target, keys))
        return self.send_ok

    def check_for_interruption(self, target):
        if target in self.interrupted:
            return {"state": "idle", "current_action": None, "prompt_text": None}
        return None


class FakeTracker:
    """TrackerProtocol over an in-memory list of ready tasks per epic."""

    def __init__(self, ready: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.ready = ready if ready is not None else {}
        self.closed: set = set()
        self.basic: List[Dict[str, Any]] = []
        self.enriched: List[Dict[str, Any]] = []
        self.sync_calls = 0

    def close_issue(self, issue_id: str) -> None:
        """Mark closed and drop from every ready queue."""
        self.closed.add(issue_id)
        for epic, tasks in self.ready.items():
            self.ready[epic] = [t for t in tasks if t["id"] != issue_id]

    def sync(self, project):
        self.sync_calls += 1
        return True

    def list_basic(self, project):
        return list(self.basic)

    def list_enriched(self, project):
        return list(self.enriched)

    def next_ready(self, project, parent_id):
        tasks = self.ready.get(parent_id) or []
        return tasks[0] if tasks else None

    def ready_count(self, project, parent_id):
        return len(self.ready.get(parent_id) or [])

    def is_closed(self, project, issue_id):
        return issue_id in self.closed


class FakeTmux:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.created: List[tuple] = []
        self.killed_panes: List[str] = []

    def has_session(self, session):
        return False

    def new_session(self, name, cwd, command):
        self.created.append((name, cwd, command))
        return None if self.fail else f"{name}:0.0"

    def kill_session(self, session):
        return True

    def kill_pane(self, target):
        self.killed_panes.append(target)
        return True


class FakeProcesses:
    def __init__(self):
        self.killed: List[int] = []

    def kill(self, pid):
        self.killed.append(pid)
        return True


class FakeWatcher:
    """Stand-in for ChangeWatcher: subscribers are fired by hand."""

    def __init__(self):
        self.subscribers: List[Callable] = []

    def subscribe(self, callback):
        self.subscribers.append(callback)

        def unsubscribe():
            if callback in self.subscribers:
                self.subscribers.remove(callback)

        return unsubscribe

    async def fire(self):
        for callback in list(self.subscribers):
            result = callback()
            if inspect.isawaitable(result):
                await result

    def close(self):
        self.subscribers.clear()


class FakeEnvironment:
    """SessionEnvironment with fixed answers."""

    def __init__(self, pane: Optional[str] = "main:0.0", git_root: Optional[str] = None,
                 beads: bool = False, pid: int = 4242):
        self.pane = pane
        self.root = git_root
        self.beads = beads
        self.pid = pid

    def pane_target(self):
        return self.pane

    def git_root(self, cwd):
        return self.root

    def beads_enabled(self, git_root):
        return self.beads

    def agent_pid(self):
        return self.pid
