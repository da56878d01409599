"""
Cancellable timers on the running asyncio loop.

PeriodicTask runs a callback every `interval` seconds; DelayedTask runs
one once after `delay` seconds. Callbacks may be plain functions or
coroutine functions. Both are owned by whoever created them and must be
cancelled by that owner; cancelling twice is harmless.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from .logging_config import get_logger


log = get_logger("scheduling")

Callback = Callable[[], Union[None, Awaitable[Any]]]


async def _invoke(callback: Callback, name: str) -> None:
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log.exception(f"Timer callback {name} failed: {e}")


class PeriodicTask:
    """Run `callback` every `interval` seconds until cancelled.

    The first run happens one interval after start(). A slow callback
    delays the next tick rather than overlapping it.
    """

    def __init__(self, interval: float, callback: Callback, name: str = "periodic"):
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await _invoke(self.callback, self.name)

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


class DelayedTask:
    """Run `callback` once after `delay` seconds unless cancelled first."""

    def __init__(self, delay: float, callback: Callback, name: str = "delayed"):
        self.delay = delay
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        """True from start() until the callback begins or cancel() is called."""
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.pending:
            return
        self._task = asyncio.create_task(self._fire(), name=self.name)

    async def _fire(self) -> None:
        await asyncio.sleep(self.delay)
        # Let the callback reschedule this same timer.
        self._task = None
        await _invoke(self.callback, self.name)

    def cancel(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
