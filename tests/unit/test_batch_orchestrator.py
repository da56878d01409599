"""
Unit tests for batch runs.

The tracker, pane and watcher are fakes; timer delays are shrunk so the
completion check and its retry fire within a few event-loop ticks.
"""

import asyncio
import threading
import time

import pytest

from muxwatch import config
from muxwatch.batch_orchestrator import (
    DEFAULT_PROMPT_TEMPLATE,
    NO_DESCRIPTION,
    BatchOrchestrator,
    BatchRunConflict,
    build_prompt,
)
from muxwatch.session_store import SessionStore
from tests.fixtures import FakeInspector, FakeTracker, FakeWatcher


def tasks(*ids):
    return [{"id": i, "title": f"Task {i}", "description": f"Do {i}"} for i in ids]


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.fixture
def store(tmp_path):
    s = SessionStore(tmp_path / "sessions", tmp_path / "links.json", pid_alive=lambda pid: True)
    s.upsert("s1", pid=1, cwd="/proj", tmux_target="main:0.0", state="idle")
    return s


@pytest.fixture
def tracker():
    return FakeTracker({"E1": tasks("T1", "T2", "T3")})


@pytest.fixture
def inspector():
    return FakeInspector()


@pytest.fixture
def watcher():
    return FakeWatcher()


@pytest.fixture
def orchestrator(store, tracker, inspector, watcher):
    orch = BatchOrchestrator(store, tracker, inspector, watcher, check_delay=0.01, retry_delay=0.01)
    yield orch
    orch.close()


class SlowCloseTracker(FakeTracker):
    """is_closed blocks long enough for watcher events to land mid-check."""

    def __init__(self, ready, delay=0.1):
        super().__init__(ready)
        self.delay = delay
        self.checking = threading.Event()

    def is_closed(self, project, issue_id):
        self.checking.set()
        time.sleep(self.delay)
        return super().is_closed(project, issue_id)


def pending_checks():
    return [t for t in asyncio.all_tasks() if t.get_name().startswith("batch-check") and not t.done()]


async def finish_task(store, tracker, watcher, issue_id, close=True):
    """Simulate the agent: work, optionally close the issue, go idle."""
    store.update("s1", {"state": "busy"})
    await watcher.fire()
    if close:
        tracker.close_issue(issue_id)
    store.update("s1", {"state": "idle"})
    await watcher.fire()


class TestBuildPrompt:

    def test_substitutes_all_occurrences(self):
        prompt = build_prompt("{id} {title} {id}\n{description}", {"id": "T1", "title": "Fix", "description": "d"})
        assert prompt == "T1 Fix T1\nd"

    def test_missing_description(self):
        assert NO_DESCRIPTION in build_prompt(DEFAULT_PROMPT_TEMPLATE, {"id": "T1", "title": "Fix"})

    def test_default_template_mentions_close(self):
        assert "bd close T9" in build_prompt(DEFAULT_PROMPT_TEMPLATE, {"id": "T9", "title": "x"})


class TestStart:

    @pytest.mark.asyncio
    async def test_sends_first_task(self, orchestrator, inspector):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        assert run.status == "running"
        assert run.current_task.issue_id == "T1"
        assert run.remaining_count == 2
        target, text, buffer_name = inspector.sent_text[0]
        assert target == "main:0.0"
        assert "Work on beads issue T1: Task T1" in text
        assert buffer_name == "batch-run-input"

    @pytest.mark.asyncio
    async def test_custom_template(self, orchestrator, inspector):
        await orchestrator.start("s1", "main:0.0", "/proj", "E1", prompt_template="Go {id}")
        assert inspector.sent_text[0][1] == "Go T1"

    @pytest.mark.asyncio
    async def test_config_template(self, orchestrator, inspector):
        config.save_config({"batch": {"prompt_template": "Configured {id}"}})
        await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        assert inspector.sent_text[0][1] == "Configured T1"

    @pytest.mark.asyncio
    async def test_empty_epic_completes(self, orchestrator, inspector):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "EMPTY")
        assert run.status == "completed"
        assert run.completed_at is not None
        assert inspector.sent_text == []

    @pytest.mark.asyncio
    async def test_conflict(self, orchestrator):
        await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        with pytest.raises(BatchRunConflict):
            await orchestrator.start("s1", "main:0.0", "/proj", "E1")

    @pytest.mark.asyncio
    async def test_paused_run_does_not_conflict(self, orchestrator):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        orchestrator.pause(run.id)
        second = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        assert second.id != run.id

    @pytest.mark.asyncio
    async def test_failed_send_fails_run(self, orchestrator, inspector):
        inspector.send_ok = False
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        assert run.status == "failed"
        assert run.current_task.status == "failed"
        assert "main:0.0" in run.error
        assert run.to_dict()["currentTask"]["error"] == run.error

    @pytest.mark.asyncio
    async def test_subscribes_to_watcher_lazily(self, store, tracker, inspector, watcher):
        orch = BatchOrchestrator(store, tracker, inspector, watcher)
        assert watcher.subscribers == []
        await orch.start("s1", "main:0.0", "/proj", "E1")
        await orch.start("s2", "main:1.0", "/proj", "E1")
        assert len(watcher.subscribers) == 1
        orch.close()
        assert watcher.subscribers == []


class TestRunLifecycle:

    @pytest.mark.asyncio
    async def test_three_tasks_to_completion(self, orchestrator, store, tracker, inspector, watcher):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        for issue_id, next_id in (("T1", "T2"), ("T2", "T3"), ("T3", None)):
            await finish_task(store, tracker, watcher, issue_id)
            if next_id:
                await wait_for(lambda: run.current_task and run.current_task.issue_id == next_id)
            else:
                await wait_for(lambda: run.status == "completed")

        assert [t.issue_id for t in run.completed_tasks] == ["T1", "T2", "T3"]
        assert all(t.status == "completed" and t.completed_at for t in run.completed_tasks)
        assert run.current_task is None
        assert run.remaining_count == 0
        assert len(inspector.sent_text) == 3

    @pytest.mark.asyncio
    async def test_remaining_count_decreases(self, orchestrator, store, tracker, watcher):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        assert run.remaining_count == 2
        await finish_task(store, tracker, watcher, "T1")
        await wait_for(lambda: run.current_task and run.current_task.issue_id == "T2")
        assert run.remaining_count == 1

    @pytest.mark.asyncio
    async def test_unclosed_task_retries_then_pauses(self, orchestrator, store, tracker, watcher):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        await finish_task(store, tracker, watcher, "T1", close=False)
        await wait_for(lambda: run.status == "paused")
        assert run.current_task.issue_id == "T1"
        assert run.completed_tasks == []

    @pytest.mark.asyncio
    async def test_closed_during_retry_window_advances(self, orchestrator, store, tracker, watcher):
        orchestrator.retry_delay = 0.1
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        await finish_task(store, tracker, watcher, "T1", close=False)
        await asyncio.sleep(0.05)
        tracker.close_issue("T1")
        await wait_for(lambda: run.current_task and run.current_task.issue_id == "T2")
        assert run.status == "running"

    @pytest.mark.asyncio
    async def test_resume_rechecks_current_task(self, orchestrator, store, tracker, watcher):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        await finish_task(store, tracker, watcher, "T1", close=False)
        await wait_for(lambda: run.status == "paused")
        tracker.close_issue("T1")
        assert await orchestrator.resume(run.id) is run
        await wait_for(lambda: run.current_task and run.current_task.issue_id == "T2")

    @pytest.mark.asyncio
    async def test_waiting_for_user_then_back(self, orchestrator, store, tracker, watcher):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        store.update("s1", {"state": "permission"})
        await watcher.fire()
        assert run.status == "waiting_for_user"
        tracker.close_issue("T1")
        store.update("s1", {"state": "idle"})
        await watcher.fire()
        assert run.status == "running"
        await wait_for(lambda: run.current_task and run.current_task.issue_id == "T2")

    @pytest.mark.asyncio
    async def test_busy_session_not_checked(self, orchestrator, store, tracker, watcher):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        store.update("s1", {"state": "busy"})
        await watcher.fire()
        await asyncio.sleep(0.05)
        assert run.status == "running"
        assert run.current_task.issue_id == "T1"

    @pytest.mark.asyncio
    async def test_pause_cancels_pending_check(self, orchestrator, store, tracker, watcher):
        orchestrator.check_delay = 0.05
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        await finish_task(store, tracker, watcher, "T1")
        orchestrator.pause(run.id)
        await asyncio.sleep(0.1)
        assert run.status == "paused"
        assert run.current_task.issue_id == "T1"


class TestControls:

    @pytest.mark.asyncio
    async def test_pause_only_running(self, orchestrator):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        assert orchestrator.pause(run.id) is run
        assert orchestrator.pause(run.id) is None
        assert orchestrator.pause("missing") is None

    @pytest.mark.asyncio
    async def test_resume_only_paused(self, orchestrator):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        assert await orchestrator.resume(run.id) is None

    @pytest.mark.asyncio
    async def test_stop_removes(self, orchestrator):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        assert orchestrator.stop(run.id)
        assert orchestrator.get(run.id) is None
        assert not orchestrator.stop(run.id)

    @pytest.mark.asyncio
    async def test_queries(self, orchestrator):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        assert orchestrator.get_by_session("s1") is run
        assert orchestrator.get_by_session("nope") is None
        assert orchestrator.get_all() == [run]

    @pytest.mark.asyncio
    async def test_listeners_and_message(self, orchestrator):
        calls = []
        unsubscribe = orchestrator.on_change(lambda: calls.append(1))
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        assert calls
        message = orchestrator.create_message()
        assert message["type"] == "batch-run"
        assert message["batchRuns"][0]["id"] == run.id
        assert message["batchRuns"][0]["currentTask"]["issueId"] == "T1"
        unsubscribe()
        count = len(calls)
        orchestrator.pause(run.id)
        assert len(calls) == count

    @pytest.mark.asyncio
    async def test_failing_listener_is_isolated(self, orchestrator):
        calls = []

        def bad():
            raise RuntimeError("x")

        orchestrator.on_change(bad)
        orchestrator.on_change(lambda: calls.append(1))
        await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        assert calls


class TestSerialization:

    @pytest.mark.asyncio
    async def test_run_dict_shape(self, orchestrator):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        data = run.to_dict()
        assert data["sessionId"] == "s1"
        assert data["tmuxTarget"] == "main:0.0"
        assert data["projectPath"] == "/proj"
        assert data["epicId"] == "E1"
        assert data["status"] == "running"
        assert data["completedTasks"] == []
        assert data["remainingCount"] == 2
        assert "completedAt" not in data
        assert "error" not in data
        assert data["id"].startswith("br-")


class TestCompletionTimers:

    @pytest.mark.asyncio
    async def test_event_during_check_leaves_single_timer(self, store, inspector, watcher):
        tracker = SlowCloseTracker({"E1": tasks("T1", "T2")})
        orch = BatchOrchestrator(store, tracker, inspector, watcher, check_delay=0.01, retry_delay=1.0)
        run = await orch.start("s1", "main:0.0", "/proj", "E1")
        await finish_task(store, tracker, watcher, "T1", close=False)
        await wait_for(tracker.checking.is_set)

        # Session reports idle again while is_closed is still running.
        orch.check_delay = 1.0
        await watcher.fire()
        await asyncio.sleep(0.25)

        assert len(pending_checks()) == 1
        assert orch.pause(run.id) is run
        await asyncio.sleep(0.01)
        assert pending_checks() == []
        orch.close()

    @pytest.mark.asyncio
    async def test_schedule_replaces_pending_timer(self, orchestrator):
        run = await orchestrator.start("s1", "main:0.0", "/proj", "E1")
        orchestrator.check_delay = 1.0
        orchestrator.schedule_check(run.id)
        first = orchestrator._timers[run.id]
        orchestrator._schedule(run.id, 1.0, orchestrator.retry_completion)
        assert orchestrator._timers[run.id] is not first
        assert not first.pending
        await asyncio.sleep(0)
        assert len(pending_checks()) == 1
