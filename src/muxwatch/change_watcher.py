"""
File-change notification for the session store and beads projects.

ChangeWatcher watches the sessions directory with watchdog and tells its
subscribers "something changed" at most once per debounce window. If the
observer can't be started, or dies later (the directory is deleted, an
emitter thread exits), it falls back to notifying on a fixed poll.

FileMtimeWatcher polls one file's mtime per key (the beads issues.jsonl of
each project) and notifies that key's subscribers on change.

Subscriber callbacks run on the asyncio loop that was current when the
first subscriber arrived; they may be plain functions or coroutines.
"""

import asyncio
import inspect
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .logging_config import get_structured_logger
from .scheduling import DelayedTask, PeriodicTask
from .settings import TIMING, get_sessions_dir


log = get_structured_logger("watcher").with_context(component="watcher")

Subscriber = Callable[[], object]
Unsubscribe = Callable[[], None]


async def _notify_all(subscribers) -> None:
    for callback in list(subscribers):
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.exception("Subscriber failed", error=e)


class _SessionFileHandler(FileSystemEventHandler):
    """Forward *.json creations/changes/deletions/renames to the loop.

    Atomic writes show up as a move from a .tmp file onto the .json name.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_change: Callable[[], None],
        directory: Optional[Path] = None,
        on_lost: Optional[Callable[[], None]] = None,
    ):
        self.loop = loop
        self.on_change = on_change
        self.directory = str(directory) if directory else None
        self.on_lost = on_lost

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type == "deleted" and self.on_lost and str(event.src_path) == self.directory:
            self.loop.call_soon_threadsafe(self.on_lost)
            return
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        if not any(str(p).endswith(".json") for p in paths):
            return
        self.loop.call_soon_threadsafe(self.on_change)


class ChangeWatcher:
    """Debounced change notifications for the sessions directory."""

    def __init__(
        self,
        directory: Optional[Path] = None,
        debounce: float = TIMING.watcher_debounce,
        fallback_interval: float = TIMING.watcher_fallback_poll,
    ):
        self.directory = Path(directory) if directory else get_sessions_dir()
        self.debounce = debounce
        self.fallback_interval = fallback_interval
        self._subscribers: List[Subscriber] = []
        self._observer = None
        self._debounce_timer: Optional[DelayedTask] = None
        self._poll: Optional[PeriodicTask] = None
        self._health: Optional[PeriodicTask] = None

    @property
    def active(self) -> bool:
        return self._observer is not None or self._poll is not None

    @property
    def polling(self) -> bool:
        return self._poll is not None

    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        """Register a callback; the first subscriber starts watching."""
        self._subscribers.append(callback)
        if len(self._subscribers) == 1:
            self._start()

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)
                if not self._subscribers:
                    self._stop()

        return unsubscribe

    def notify_change(self) -> None:
        """Restart the debounce window; subscribers run when it expires."""
        if self._debounce_timer is None:
            self._debounce_timer = DelayedTask(self.debounce, self._notify_subscribers, name="watcher-debounce")
        self._debounce_timer.cancel()
        self._debounce_timer.start()

    async def _notify_subscribers(self) -> None:
        await _notify_all(self._subscribers)

    def _start(self) -> None:
        if self.active:
            return
        loop = asyncio.get_running_loop()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            observer = Observer()
            handler = _SessionFileHandler(loop, self.notify_change, self.directory, self._backend_lost)
            observer.schedule(handler, str(self.directory), recursive=False)
            observer.start()
        except Exception as e:
            log.warning("File watch unavailable, polling instead", directory=self.directory, error=e)
            self._start_polling()
            return
        self._observer = observer
        self._health = PeriodicTask(self.fallback_interval, self._check_backend, name="watcher-health")
        self._health.start()
        log.info("Started watching", directory=self.directory)

    def _observer_alive(self) -> bool:
        observer = self._observer
        if observer is None or not observer.is_alive():
            return False
        return self.directory.is_dir() and all(e.is_alive() for e in observer.emitters)

    def _check_backend(self) -> None:
        if self._observer is not None and not self._observer_alive():
            self._backend_lost()

    def _backend_lost(self) -> None:
        """Swap the dead observer for polling; subscribers are kept."""
        if self._observer is None:
            return
        log.warning("File watch failed, polling instead", directory=self.directory)
        self._stop_observer()
        self._start_polling()
        self.notify_change()

    def _start_polling(self) -> None:
        self._poll = PeriodicTask(self.fallback_interval, self._notify_subscribers, name="watcher-poll")
        self._poll.start()

    def _stop_observer(self) -> None:
        if self._health is not None:
            self._health.cancel()
            self._health = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=1)
            self._observer = None

    def _stop(self) -> None:
        self._stop_observer()
        if self._poll is not None:
            self._poll.cancel()
            self._poll = None
        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
            self._debounce_timer = None
        log.info("Stopped watching", directory=self.directory)

    def close(self) -> None:
        self._subscribers.clear()
        self._stop()


class FileMtimeWatcher:
    """Per-key mtime polling with a debounce, one poll timer per key.

    The first poll only records the current mtime; later polls notify when
    it changes or the file disappears.
    """

    def __init__(
        self,
        path_for: Callable[[str], Path],
        interval: float = TIMING.beads_poll,
        debounce: float = TIMING.beads_debounce,
    ):
        self.path_for = path_for
        self.interval = interval
        self.debounce = debounce
        self._subscribers: Dict[str, Set[Subscriber]] = {}
        self._polls: Dict[str, PeriodicTask] = {}
        self._debounces: Dict[str, DelayedTask] = {}
        self._mtimes: Dict[str, float] = {}

    def watching(self, key: str) -> bool:
        return key in self._polls

    def subscribe(self, key: str, callback: Subscriber) -> Unsubscribe:
        subs = self._subscribers.setdefault(key, set())
        subs.add(callback)
        if len(subs) == 1:
            self._start(key)

        def unsubscribe() -> None:
            subs = self._subscribers.get(key)
            if subs is None:
                return
            subs.discard(callback)
            if not subs:
                self._stop(key)
                del self._subscribers[key]

        return unsubscribe

    def _mtime(self, key: str) -> Optional[float]:
        try:
            return self.path_for(key).stat().st_mtime
        except OSError:
            return None

    def _start(self, key: str) -> None:
        mtime = self._mtime(key)
        if mtime is not None:
            self._mtimes[key] = mtime
        poll = PeriodicTask(self.interval, lambda: self.check(key), name=f"mtime-poll:{key}")
        self._polls[key] = poll
        poll.start()
        log.info("Started mtime watch", key=key)

    def _stop(self, key: str) -> None:
        poll = self._polls.pop(key, None)
        if poll is not None:
            poll.cancel()
        debounce = self._debounces.pop(key, None)
        if debounce is not None:
            debounce.cancel()
        self._mtimes.pop(key, None)
        log.info("Stopped mtime watch", key=key)

    def check(self, key: str) -> bool:
        """Compare the current mtime to the last one; True if a notify was queued."""
        mtime = self._mtime(key)
        last = self._mtimes.get(key)
        if mtime is None:
            if last is None:
                return False
            del self._mtimes[key]
            self._queue_notify(key)
            return True
        if last == mtime:
            return False
        self._mtimes[key] = mtime
        if last is None:
            return False
        log.debug("File changed", key=key)
        self._queue_notify(key)
        return True

    def _queue_notify(self, key: str) -> None:
        timer = self._debounces.get(key)
        if timer is None:
            timer = DelayedTask(self.debounce, lambda: self._notify(key), name=f"mtime-debounce:{key}")
            self._debounces[key] = timer
        timer.cancel()
        timer.start()

    async def _notify(self, key: str) -> None:
        self._debounces.pop(key, None)
        await _notify_all(self._subscribers.get(key, ()))

    def close(self) -> None:
        for key in list(self._polls):
            self._stop(key)
        self._subscribers.clear()
