"""
Timer capability — the only place heartbeat scheduling touches the clock.

HeartbeatScheduler receives a TimerFactory so production code runs on the
asyncio loop while tests advance a virtual clock deterministically.
"""
from __future__ import annotations

import abc
import asyncio
import structlog
from typing import Awaitable, Callable, Optional

logger = structlog.get_logger()

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle(abc.ABC):
    @abc.abstractmethod
    def cancel(self) -> None:
        """Prevent the callback from firing. No-op once it has fired."""


class TimerFactory(abc.ABC):
    @abc.abstractmethod
    def call_later(self, delay_s: float, callback: TimerCallback) -> TimerHandle:
        ...

    async def close(self) -> None:
        """Release any in-flight callback tasks."""


# ──────────────────────────────────────────────────────────────
#  asyncio implementation
# ──────────────────────────────────────────────────────────────

class _LoopTimer(TimerHandle):
    def __init__(self):
        self._handle: Optional[asyncio.TimerHandle] = None
        self.fired = False

    def cancel(self) -> None:
        if self._handle is not None and not self.fired:
            self._handle.cancel()


class AsyncioTimerFactory(TimerFactory):
    """Schedules callbacks with loop.call_later and runs each as a tracked task."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def call_later(self, delay_s: float, callback: TimerCallback) -> TimerHandle:
        loop = asyncio.get_running_loop()
        timer = _LoopTimer()
        timer._handle = loop.call_later(max(delay_s, 0), self._spawn, timer, callback)
        return timer

    def _spawn(self, timer: _LoopTimer, callback: TimerCallback) -> None:
        timer.fired = True
        task = asyncio.get_running_loop().create_task(callback())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("timer_task_error_on_close", error=str(e))
        self._tasks.clear()
