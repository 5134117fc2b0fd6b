"""Periodic timers for the tracking engine.

``AsyncioScheduler`` runs on the live event loop. ``VirtualScheduler`` keeps
its own clock so tests can step through hours of polling instantly.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[None]]


class TimerHandle:
    """Cancellation token for one periodic timer."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


class Scheduler(Protocol):
    def now(self) -> float:
        ...

    def every(self, interval: float, callback: TickCallback, *, delay: float | None = None) -> TimerHandle:
        ...


class _LoopTimer(TimerHandle):
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        interval: float,
        callback: TickCallback,
        inflight: set[asyncio.Task],
    ) -> None:
        super().__init__()
        self._loop = loop
        self._interval = interval
        self._callback = callback
        self._inflight = inflight
        self._next: asyncio.TimerHandle | None = None

    def start(self, delay: float) -> None:
        self._next = self._loop.call_later(delay, self._fire)

    def _fire(self) -> None:
        if self._cancelled:
            return
        # Ticks are fire-and-forget: a slow poll never holds back the next one.
        task = self._loop.create_task(self._callback())
        self._inflight.add(task)
        task.add_done_callback(self._finished)
        self._next = self._loop.call_later(self._interval, self._fire)

    def _finished(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Scheduled callback failed", exc_info=task.exception())

    def cancel(self) -> None:
        super().cancel()
        if self._next is not None:
            self._next.cancel()
            self._next = None


class AsyncioScheduler:
    """Schedule fixed-rate callbacks on the running asyncio loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop
        self._inflight: set[asyncio.Task] = set()

    def now(self) -> float:
        return time.monotonic()

    def every(self, interval: float, callback: TickCallback, *, delay: float | None = None) -> TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        timer = _LoopTimer(loop, interval, callback, self._inflight)
        timer.start(interval if delay is None else delay)
        return timer

    @property
    def inflight(self) -> int:
        return len(self._inflight)


class _VirtualTimer(TimerHandle):
    def __init__(self, interval: float, callback: TickCallback, due: float, order: int) -> None:
        super().__init__()
        self.interval = interval
        self.callback = callback
        self.due = due
        self.order = order


class VirtualScheduler:
    """Deterministic scheduler driven by :meth:`advance`."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._timers: list[_VirtualTimer] = []
        self._order = itertools.count()

    def now(self) -> float:
        return self._now

    def every(self, interval: float, callback: TickCallback, *, delay: float | None = None) -> TimerHandle:
        first = interval if delay is None else delay
        timer = _VirtualTimer(interval, callback, self._now + first, next(self._order))
        self._timers.append(timer)
        return timer

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, awaiting every callback that falls due."""

        target = self._now + seconds
        while True:
            due = [timer for timer in self._timers if not timer.cancelled and timer.due <= target]
            if not due:
                break
            timer = min(due, key=lambda item: (item.due, item.order))
            self._now = timer.due
            timer.due += timer.interval
            await timer.callback()
        self._now = target
        self._timers = [timer for timer in self._timers if not timer.cancelled]

    @property
    def active_timers(self) -> int:
        return sum(1 for timer in self._timers if not timer.cancelled)


__all__ = ["AsyncioScheduler", "Scheduler", "TimerHandle", "VirtualScheduler"]
