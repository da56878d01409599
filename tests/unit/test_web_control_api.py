"""
Unit tests for control actions.
"""

from unittest.mock import patch

import pytest

from muxwatch.session_store import SessionStore
from muxwatch.web_control_api import (
    SKIP_PERMISSIONS_FLAG,
    ControlError,
    SessionNotFound,
    capture_output,
    kill_session,
    new_session,
    relocate_session,
    remove_screenshot,
    resolve_session,
    send_to_pane,
    status_of,
)
from tests.fixtures import FakeInspector, FakeProcesses, FakeTmux


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "sessions", tmp_path / "links.json", pid_alive=lambda pid: True)


class TestResolve:

    def test_found(self, store):
        store.upsert("s1", pid=5, cwd="/w", tmux_target="main:0.0")
        record = resolve_session(store, "main:0.0")
        assert status_of(record)["id"] == "s1"
        assert status_of(record)["pid"] == 5

    def test_not_found(self, store):
        with pytest.raises(SessionNotFound) as exc:
            resolve_session(store, "ghost")
        assert exc.value.status == 404
        assert str(exc.value) == "Session not found: ghost"


class TestRelocate:

    def test_updates_cwd_and_git_root(self, store, tmp_path):
        store.upsert("s1", pid=1, cwd="/old", git_root="/old")
        with patch("muxwatch.web_control_api.find_git_root", return_value=str(tmp_path)):
            result = relocate_session(store, "s1", str(tmp_path))
        assert result == {"ok": True, "cwd": str(tmp_path), "git_root": str(tmp_path)}
        assert store.get("s1").cwd == str(tmp_path)

    def test_missing_session(self, store, tmp_path):
        with pytest.raises(SessionNotFound):
            relocate_session(store, "nope", str(tmp_path))

    def test_no_fields(self, store):
        store.upsert("s1", pid=1, cwd="/old")
        with pytest.raises(ControlError, match="No valid update fields provided"):
            relocate_session(store, "s1", None)

    def test_bad_directory(self, store, tmp_path):
        store.upsert("s1", pid=1, cwd="/old")
        with pytest.raises(ControlError, match="Directory does not exist"):
            relocate_session(store, "s1", str(tmp_path / "missing"))
        f = tmp_path / "file.txt"
        f.write_text("x")
        with pytest.raises(ControlError, match="Path is not a directory"):
            relocate_session(store, "s1", str(f))


class TestKill:

    def test_uses_record_values(self, store):
        store.upsert("s1", pid=1234, cwd="/w", tmux_target="main:0.0")
        tmux, processes = FakeTmux(), FakeProcesses()
        assert kill_session(store, tmux, processes, "s1") == {"ok": True}
        assert processes.killed == [1234]
        assert tmux.killed_panes == ["main:0.0"]
        assert store.get("s1") is None

    def test_explicit_values_win(self, store):
        store.upsert("s1", pid=1234, cwd="/w", tmux_target="main:0.0")
        tmux, processes = FakeTmux(), FakeProcesses()
        kill_session(store, tmux, processes, "s1", pid=99, tmux_target="other:1.0")
        assert processes.killed == [99]
        assert tmux.killed_panes == ["other:1.0"]

    def test_pending_session_has_no_process(self, store):
        store.upsert("s1", pid=0, cwd="/w", tmux_target="main:0.0")
        tmux, processes = FakeTmux(), FakeProcesses()
        kill_session(store, tmux, processes, "s1")
        assert processes.killed == []
        assert tmux.killed_panes == ["main:0.0"]

    def test_unknown_session_is_ok(self, store):
        assert kill_session(store, FakeTmux(), FakeProcesses(), "ghost") == {"ok": True}


class TestScreenshots:

    def test_remove(self, store):
        record = store.upsert("s1", pid=1, cwd="/w")
        store.add_screenshot(record, "/tmp/a.png")
        store.save(record)
        assert remove_screenshot(store, "s1", "/tmp/a.png") == {"ok": True}

    def test_errors(self, store):
        store.upsert("s1", pid=1, cwd="/w")
        with pytest.raises(ControlError, match="Screenshot path required") as exc:
            remove_screenshot(store, "s1", "")
        assert exc.value.status == 400
        with pytest.raises(SessionNotFound):
            remove_screenshot(store, "ghost", "/tmp/a.png")
        with pytest.raises(ControlError, match="Screenshot not found") as exc:
            remove_screenshot(store, "s1", "/tmp/a.png")
        assert exc.value.status == 404


class TestNewSession:

    def test_creates_and_preregisters(self, store, tmp_path):
        tmux = FakeTmux()
        result = new_session(store, tmux, str(tmp_path), name="work")
        assert result["ok"]
        assert result["sessionName"] == "work"
        assert result["tmuxTarget"] == "work:0.0"
        record = store.get(result["id"])
        assert record.pid == 0
        assert record.state == "idle"
        assert record.tmux_target == "work:0.0"
        assert tmux.created == [("work", str(tmp_path), ["claude", SKIP_PERMISSIONS_FLAG])]

    def test_default_name_and_no_skip(self, store, tmp_path):
        tmux = FakeTmux()
        result = new_session(store, tmux, str(tmp_path), skip_permissions=False)
        assert result["sessionName"].startswith("claude-")
        assert tmux.created[0][2] == ["claude"]

    def test_linked_to_writes_link(self, store, tmp_path):
        result = new_session(store, FakeTmux(), str(tmp_path), name="orch", linked_to="main:0.0")
        assert result["linkedTo"] == "main:0.0"
        assert store.read_links() == {"orch:0.0": "main:0.0"}
        assert store.get(result["id"]).linked_to == "main:0.0"

    def test_unlinked_leaves_links_file_alone(self, store, tmp_path):
        result = new_session(store, FakeTmux(), str(tmp_path))
        assert "linkedTo" not in result
        assert store.read_links() == {}

    def test_tmux_failure(self, store, tmp_path):
        with pytest.raises(ControlError) as exc:
            new_session(store, FakeTmux(fail=True), str(tmp_path))
        assert exc.value.status == 500
        assert store.list_all() == []

    def test_requires_cwd(self, store):
        with pytest.raises(ControlError, match="cwd required"):
            new_session(store, FakeTmux(), None)


class TestSendToPane:

    def test_text(self):
        inspector = FakeInspector()
        send_to_pane(inspector, "main:0.0", text="hello")
        assert inspector.sent_text == [("main:0.0", "hello", "muxwatch-input")]
        assert inspector.sent_keys == []

    def test_keys_default_escape(self):
        inspector = FakeInspector()
        send_to_pane(inspector, "main:0.0")
        send_to_pane(inspector, "main:0.0", keys="C-c")
        assert inspector.sent_keys == [("main:0.0", "Escape"), ("main:0.0", "C-c")]

    def test_failure(self):
        inspector = FakeInspector()
        inspector.send_ok = False
        with pytest.raises(ControlError) as exc:
            send_to_pane(inspector, "main:0.0", text="x")
        assert exc.value.status == 500


class TestCaptureOutput:

    def test_output_and_blocks(self):
        inspector = FakeInspector(outputs={"main:0.0": "❯ hi\n● Bash(ls)\n  ⎿  a.txt"})
        result = capture_output(inspector, "main:0.0")
        assert result["output"].startswith("❯ hi")
        assert [b["type"] for b in result["blocks"]] == ["user-prompt", "tool-call"]
        assert result["stats"]["toolCalls"] == 1
        assert isinstance(result["timestamp"], int)

    def test_missing_pane(self):
        with pytest.raises(ControlError, match="Failed to capture pane"):
            capture_output(FakeInspector(), "gone:0.0")
