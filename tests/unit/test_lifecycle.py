"""
Unit tests for lifecycle event resolution and transitions.
"""

import pytest

from muxwatch.lifecycle import (
    LifecycleEvent,
    apply_event,
    format_tool_action,
    resolve_event,
    transition_for,
)
from muxwatch.session_store import SessionStore
from tests.fixtures import FakeEnvironment


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "sessions", tmp_path / "links.json", pid_alive=lambda pid: True)


class TestResolveEvent:

    def test_hook_event_name_wins(self):
        assert resolve_event("Stop", "idle_prompt", "session-start") is LifecycleEvent.STOP

    def test_notification_subtypes(self):
        assert resolve_event("Notification", "idle_prompt") is LifecycleEvent.NOTIFICATION_IDLE
        assert resolve_event("Notification", "permission_prompt") is LifecycleEvent.NOTIFICATION_PERMISSION
        assert resolve_event(None, "elicitation_dialog") is LifecycleEvent.NOTIFICATION_ELICITATION

    def test_fallback_to_argv(self):
        assert resolve_event(None, None, "pre-tool-use") is LifecycleEvent.PRE_TOOL_USE

    def test_unknown(self):
        assert resolve_event("Bogus", "other", "nope") is None
        assert resolve_event(None) is None


class TestFormatToolAction:

    def test_short_bash(self):
        assert format_tool_action("Bash", {"command": "ls -la"}) == "Bash: ls -la"

    def test_long_bash_truncated(self):
        cmd = "x" * 45
        assert format_tool_action("Bash", {"command": cmd}) == f"Bash: {'x' * 30}..."

    def test_bash_without_command(self):
        assert format_tool_action("Bash", {}) == "Running: Bash"

    def test_file_tools_use_basename(self):
        assert format_tool_action("Read", {"file_path": "/a/b/c.py"}) == "Read: c.py"
        assert format_tool_action("Edit", {"file_path": "x.txt"}) == "Edit: x.txt"
        assert format_tool_action("Write", None) == "Running: Write"

    def test_search_and_task(self):
        assert format_tool_action("Grep") == "Searching..."
        assert format_tool_action("Glob") == "Searching..."
        assert format_tool_action("Task") == "Running agent..."

    def test_mcp_short_name(self):
        assert format_tool_action("mcp__chrome__take_screenshot") == "Running: take_screenshot"

    def test_other(self):
        assert format_tool_action("WebFetch") == "Running: WebFetch"


class TestTransitionTable:

    @pytest.mark.parametrize("event,state,action", [
        (LifecycleEvent.SESSION_START, "idle", None),
        (LifecycleEvent.USER_PROMPT_SUBMIT, "busy", "Thinking..."),
        (LifecycleEvent.POST_TOOL_USE, "busy", None),
        (LifecycleEvent.POST_TOOL_USE_FAILURE, "busy", None),
        (LifecycleEvent.STOP, "idle", None),
        (LifecycleEvent.NOTIFICATION_IDLE, "idle", None),
        (LifecycleEvent.PERMISSION_REQUEST, "waiting", "Waiting..."),
        (LifecycleEvent.NOTIFICATION_PERMISSION, "permission", "Waiting for permission"),
        (LifecycleEvent.NOTIFICATION_ELICITATION, "waiting", "Waiting for input"),
    ])
    def test_state_and_action(self, event, state, action):
        t = transition_for(event)
        assert (t.state, t.current_action, t.delete) == (state, action, False)

    def test_pre_tool_use(self):
        assert transition_for(LifecycleEvent.PRE_TOOL_USE).current_action == "Working..."
        t = transition_for(LifecycleEvent.PRE_TOOL_USE, "Bash", {"command": "make"})
        assert (t.state, t.current_action) == ("busy", "Bash: make")

    def test_session_end_deletes(self):
        assert transition_for(LifecycleEvent.SESSION_END).delete

    def test_every_event_has_a_transition(self):
        for event in LifecycleEvent:
            transition_for(event)


class TestApplyEvent:

    def test_start_creates_idle_record(self, store):
        env = FakeEnvironment(pane="main:0.0", git_root="/repo", beads=True, pid=77)
        record = apply_event(store, env, LifecycleEvent.SESSION_START, "s1", "/repo/sub")
        assert record.state == "idle"
        assert record.pid == 77
        assert record.git_root == "/repo"
        assert record.beads_enabled is True
        assert record.tmux_target == "main:0.0"

    def test_prompt_then_stop(self, store):
        env = FakeEnvironment()
        apply_event(store, env, LifecycleEvent.SESSION_START, "s1", "/w")
        apply_event(store, env, LifecycleEvent.USER_PROMPT_SUBMIT, "s1", "/w")
        assert store.get("s1").current_action == "Thinking..."
        apply_event(store, env, LifecycleEvent.STOP, "s1", "/w")
        record = store.get("s1")
        assert (record.state, record.current_action) == ("idle", None)

    def test_event_without_record_creates_one(self, store):
        record = apply_event(store, FakeEnvironment(), LifecycleEvent.PRE_TOOL_USE, "s1", "/w", "Grep", {})
        assert record.state == "busy"
        assert record.current_action == "Searching..."

    def test_end_removes_record(self, store):
        env = FakeEnvironment()
        apply_event(store, env, LifecycleEvent.SESSION_START, "s1", "/w")
        assert apply_event(store, env, LifecycleEvent.SESSION_END, "s1", "/w") is None
        assert store.get("s1") is None

    def test_new_session_in_pane_replaces_old_and_keeps_link(self, store):
        store.upsert("old", pid=1, cwd="/w", tmux_target="main:0.0", linked_to="orch:0.0")
        record = apply_event(store, FakeEnvironment(pane="main:0.0"), LifecycleEvent.SESSION_START, "new", "/w")
        assert store.get("old") is None
        assert record.linked_to == "orch:0.0"

    def test_other_panes_untouched(self, store):
        store.upsert("other", pid=1, cwd="/w", tmux_target="main:1.0")
        apply_event(store, FakeEnvironment(pane="main:0.0"), LifecycleEvent.SESSION_START, "new", "/w")
        assert store.get("other") is not None

    def test_screenshot_recorded(self, store):
        env = FakeEnvironment()
        apply_event(store, env, LifecycleEvent.SESSION_START, "s1", "/w")
        apply_event(
            store, env, LifecycleEvent.PRE_TOOL_USE, "s1", "/w",
            "mcp__chrome__take_screenshot", {"filePath": "/tmp/shot.png"},
        )
        assert [s.path for s in store.get("s1").screenshots] == ["/tmp/shot.png"]

    def test_screenshot_without_path_ignored(self, store):
        env = FakeEnvironment()
        apply_event(store, env, LifecycleEvent.PRE_TOOL_USE, "s1", "/w", "mcp__chrome__take_screenshot", {})
        assert store.get("s1").screenshots == []

    def test_last_update_increases_per_event(self, store):
        env = FakeEnvironment()
        stamps = [
            apply_event(store, env, event, "s1", "/w").last_update
            for event in (
                LifecycleEvent.SESSION_START,
                LifecycleEvent.USER_PROMPT_SUBMIT,
                LifecycleEvent.POST_TOOL_USE,
                LifecycleEvent.STOP,
            )
        ]
        assert stamps == sorted(set(stamps))
