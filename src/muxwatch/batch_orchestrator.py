"""
Batch runs: work through an epic's ready issues one at a time on a session.

For each run the orchestrator asks the tracker for the next ready child
of the epic, pastes the task prompt into the session's pane, and waits.
Completion is event driven: when the ChangeWatcher reports the session
went idle, a check is scheduled after a short delay; if the tracker says
the issue is closed the run advances, otherwise it retries once and then
pauses for a human to look.

State machine:
    running -> paused | waiting_for_user | completed | failed
    paused -> running            (resume)
    waiting_for_user -> running  (session observed idle again)
stop() removes a run in any state.
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .change_watcher import ChangeWatcher
from .config import get_batch_prompt_template
from .logging_config import get_structured_logger
from .protocols import PaneInspectorProtocol, TrackerProtocol
from .scheduling import DelayedTask
from .session_store import SessionStore
from .settings import TIMING
from .status_constants import (
    ATTENTION_STATES,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_PAUSED,
    RUN_RUNNING,
    RUN_WAITING_FOR_USER,
    STATE_IDLE,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_RUNNING,
)


log = get_structured_logger("batch").with_context(component="batch-run")

DEFAULT_PROMPT_TEMPLATE = """Work on beads issue {id}: {title}

{description}

When you're done:
1. Commit your changes
2. Close the issue: bd close {id}
3. Stop and wait"""

NO_DESCRIPTION = "No description provided."
PROMPT_BUFFER = "batch-run-input"

_run_counter = itertools.count(1)


class BatchRunConflict(Exception):
    """The session already has a running batch."""


def now_ms() -> int:
    return int(time.time() * 1000)


def build_prompt(template: str, task: Dict[str, Any]) -> str:
    return (
        template.replace("{id}", str(task.get("id", "")))
        .replace("{title}", str(task.get("title", "")))
        .replace("{description}", task.get("description") or NO_DESCRIPTION)
    )


@dataclass
class BatchTask:
    issue_id: str
    title: str
    status: str = TASK_RUNNING
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"issueId": self.issue_id, "title": self.title, "status": self.status}
        if self.started_at is not None:
            data["startedAt"] = self.started_at
        if self.completed_at is not None:
            data["completedAt"] = self.completed_at
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class BatchRun:
    id: str
    session_id: str
    tmux_target: str
    project_path: str
    epic_id: str
    prompt_template: str
    status: str = RUN_RUNNING
    completed_tasks: List[BatchTask] = field(default_factory=list)
    current_task: Optional[BatchTask] = None
    remaining_count: int = 0
    started_at: int = field(default_factory=now_ms)
    completed_at: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "sessionId": self.session_id,
            "tmuxTarget": self.tmux_target,
            "projectPath": self.project_path,
            "epicId": self.epic_id,
            "status": self.status,
            "completedTasks": [t.to_dict() for t in self.completed_tasks],
            "currentTask": self.current_task.to_dict() if self.current_task else None,
            "remainingCount": self.remaining_count,
            "startedAt": self.started_at,
            "promptTemplate": self.prompt_template,
        }
        if self.completed_at is not None:
            data["completedAt"] = self.completed_at
        if self.error is not None:
            data["error"] = self.error
        return data


class BatchOrchestrator:
    """Owns every batch run on this server, at most one running per session."""

    def __init__(
        self,
        store: SessionStore,
        tracker: TrackerProtocol,
        inspector: PaneInspectorProtocol,
        watcher: Optional[ChangeWatcher] = None,
        check_delay: float = TIMING.completion_check_delay,
        retry_delay: float = TIMING.completion_retry_delay,
    ):
        self.store = store
        self.tracker = tracker
        self.inspector = inspector
        self.watcher = watcher
        self.check_delay = check_delay
        self.retry_delay = retry_delay
        self.runs: Dict[str, BatchRun] = {}
        self._timers: Dict[str, DelayedTask] = {}
        self._listeners: List[Callable[[], Any]] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_change(self, listener: Callable[[], Any]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                log.exception("Listener failed", error=e)

    def create_message(self) -> Dict[str, Any]:
        return {"type": "batch-run", "batchRuns": [r.to_dict() for r in self.get_all()], "timestamp": now_ms()}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, run_id: str) -> Optional[BatchRun]:
        return self.runs.get(run_id)

    def get_all(self) -> List[BatchRun]:
        return list(self.runs.values())

    def get_by_session(self, session_id: str) -> Optional[BatchRun]:
        for run in self.runs.values():
            if run.session_id == session_id:
                return run
        return None

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    async def start(
        self,
        session_id: str,
        tmux_target: str,
        project_path: str,
        epic_id: str,
        prompt_template: Optional[str] = None,
    ) -> BatchRun:
        """Create a run and send its first task.

        Raises BatchRunConflict if the session already has a running batch.
        """
        for run in self.runs.values():
            if run.session_id == session_id and run.status == RUN_RUNNING:
                raise BatchRunConflict(f"Session {session_id} already has an active batch run")

        if self.watcher is not None and self._unsubscribe is None:
            self._unsubscribe = self.watcher.subscribe(self.on_session_change)

        run = BatchRun(
            id=f"br-{next(_run_counter)}-{now_ms()}",
            session_id=session_id,
            tmux_target=tmux_target,
            project_path=project_path,
            epic_id=epic_id,
            prompt_template=prompt_template or get_batch_prompt_template() or DEFAULT_PROMPT_TEMPLATE,
        )
        self.runs[run.id] = run
        log.info("Started", run=run.id, epic=epic_id, session=session_id)
        await self.advance(run.id)
        self._notify()
        return run

    def pause(self, run_id: str) -> Optional[BatchRun]:
        run = self.runs.get(run_id)
        if run is None or run.status != RUN_RUNNING:
            return None
        run.status = RUN_PAUSED
        self._clear_timer(run_id)
        log.info("Paused", run=run_id)
        self._notify()
        return run

    async def resume(self, run_id: str) -> Optional[BatchRun]:
        run = self.runs.get(run_id)
        if run is None or run.status != RUN_PAUSED:
            return None
        run.status = RUN_RUNNING
        log.info("Resumed", run=run_id)
        if run.current_task is not None:
            self.schedule_check(run_id)
        else:
            await self.advance(run_id)
        self._notify()
        return run

    def stop(self, run_id: str) -> bool:
        if run_id not in self.runs:
            return False
        self._clear_timer(run_id)
        del self.runs[run_id]
        log.info("Stopped", run=run_id)
        self._notify()
        return True

    def close(self) -> None:
        for run_id in list(self._timers):
            self._clear_timer(run_id)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()

    # ------------------------------------------------------------------
    # Session state monitoring
    # ------------------------------------------------------------------

    async def on_session_change(self) -> None:
        """React to store changes: idle schedules a check, attention waits."""
        if not self.runs:
            return
        records = await asyncio.to_thread(self.store.list_all)
        states = {r.id: r.state for r in records}

        for run_id, run in list(self.runs.items()):
            if run.status != RUN_RUNNING or run.current_task is None:
                continue
            state = states.get(run.session_id)
            if state == STATE_IDLE:
                self.schedule_check(run_id)
            elif state in ATTENTION_STATES:
                run.status = RUN_WAITING_FOR_USER
                log.info("Waiting for user", run=run_id, state=state)
                self._notify()

        for run_id, run in list(self.runs.items()):
            if run.status != RUN_WAITING_FOR_USER:
                continue
            if states.get(run.session_id) == STATE_IDLE:
                run.status = RUN_RUNNING
                log.info("Resuming after user intervention", run=run_id)
                self.schedule_check(run_id)
                self._notify()

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    def _schedule(self, run_id: str, delay: float, callback) -> None:
        """Replace any pending timer for the run; at most one exists at a time."""
        self._clear_timer(run_id)

        async def fire() -> None:
            if self._timers.get(run_id) is timer:
                del self._timers[run_id]
            await callback(run_id)

        timer = DelayedTask(delay, fire, name=f"batch-check:{run_id}")
        self._timers[run_id] = timer
        timer.start()

    def schedule_check(self, run_id: str) -> None:
        """Check completion after the settle delay; no-op if a timer is pending."""
        if run_id in self._timers:
            return
        self._schedule(run_id, self.check_delay, self.check_completion)

    def _clear_timer(self, run_id: str) -> None:
        timer = self._timers.pop(run_id, None)
        if timer is not None:
            timer.cancel()

    def _is_active(self, run_id: str) -> Optional[BatchRun]:
        run = self.runs.get(run_id)
        if run is None or run.status != RUN_RUNNING or run.current_task is None:
            return None
        return run

    async def _complete_current(self, run: BatchRun) -> None:
        task = run.current_task
        task.status = TASK_COMPLETED
        task.completed_at = now_ms()
        run.completed_tasks.append(task)
        run.current_task = None
        log.info("Task completed", run=run.id, issue=task.issue_id)
        await self.advance(run.id)
        self._notify()

    async def check_completion(self, run_id: str) -> None:
        run = self._is_active(run_id)
        if run is None:
            return
        issue_id = run.current_task.issue_id
        closed = await asyncio.to_thread(self.tracker.is_closed, run.project_path, issue_id)
        if closed:
            await self._complete_current(run)
            return
        record = await asyncio.to_thread(self.store.get, run.session_id)
        if record is not None and record.state == STATE_IDLE:
            log.info("Session idle but task not closed, retrying", run=run_id, issue=issue_id,
                     delay=self.retry_delay)
            self._schedule(run_id, self.retry_delay, self.retry_completion)
        # Otherwise the session is busy again; the watcher brings us back.

    async def retry_completion(self, run_id: str) -> None:
        run = self._is_active(run_id)
        if run is None:
            return
        closed = await asyncio.to_thread(self.tracker.is_closed, run.project_path, run.current_task.issue_id)
        if closed:
            await self._complete_current(run)
            return
        run.status = RUN_PAUSED
        log.info("Paused: task not closed after session idle", run=run_id, issue=run.current_task.issue_id)
        self._notify()

    async def advance(self, run_id: str) -> None:
        """Send the next ready task, or complete the run if there is none."""
        run = self.runs.get(run_id)
        if run is None or run.status != RUN_RUNNING:
            return

        task = await asyncio.to_thread(self.tracker.next_ready, run.project_path, run.epic_id)
        if not task:
            run.status = RUN_COMPLETED
            run.completed_at = now_ms()
            run.remaining_count = 0
            log.info("Completed", run=run_id, tasks=len(run.completed_tasks))
            self._notify()
            return

        run.current_task = BatchTask(issue_id=str(task.get("id")), title=task.get("title") or "", started_at=now_ms())
        ready = await asyncio.to_thread(self.tracker.ready_count, run.project_path, run.epic_id)
        run.remaining_count = max(0, ready - 1)

        prompt = build_prompt(run.prompt_template, task)
        sent = await asyncio.to_thread(self.inspector.send_text, run.tmux_target, prompt, PROMPT_BUFFER)
        if not sent:
            error = f"Failed to send task prompt to {run.tmux_target}"
            run.current_task.status = TASK_FAILED
            run.current_task.error = error
            run.status = RUN_FAILED
            run.error = error
            log.error("Failed to send task", run=run_id, issue=run.current_task.issue_id, target=run.tmux_target)
            self._notify()
            return

        log.info("Sent task", run=run_id, issue=run.current_task.issue_id, title=run.current_task.title)
        self._notify()
