"""Time sources and timer scheduling.

The detector and the state machine never touch the event loop's timers
directly. They take a :class:`Clock`, so production code runs on
:class:`AsyncioClock` while tests and simulations drive a
:class:`ManualClock` forward explicitly.
"""

import asyncio
import heapq
import itertools
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable


@runtime_checkable
class TimerHandle(Protocol):
    """A scheduled callback that can be cancelled."""

    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


@runtime_checkable
class Clock(Protocol):
    """Protocol for time and timer scheduling."""

    def now(self) -> datetime:
        """Current time, timezone-aware."""
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""
        ...

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` every ``interval`` seconds until cancelled."""
        ...

    async def sleep(self, delay: float) -> None:
        """Suspend the current coroutine."""
        ...


class _RepeatingTimer:
    """Re-schedules itself on an asyncio loop after every run."""

    def __init__(
        self, loop: asyncio.AbstractEventLoop, interval: float, callback: Callable[[], None]
    ) -> None:
        self._loop = loop
        self._interval = interval
        self._callback = callback
        self._cancelled = False
        self._handle = loop.call_later(interval, self._run)

    def _run(self) -> None:
        if self._cancelled:
            return
        self._handle = self._loop.call_later(self._interval, self._run)
        self._callback()

    def cancel(self) -> None:
        self._cancelled = True
        self._handle.cancel()

    def cancelled(self) -> bool:
        return self._cancelled


class AsyncioClock:
    """Clock backed by the running asyncio event loop."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        return _RepeatingTimer(asyncio.get_running_loop(), interval, callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)


class _ManualTimer:
    def __init__(self, clock: "ManualClock", interval: float | None) -> None:
        self._clock = clock
        self.interval = interval
        self._cancelled = False

    def cancel(self) -> None:
        if not self._cancelled:
            self._cancelled = True
            self._clock._live -= 1

    def cancelled(self) -> bool:
        return self._cancelled


class ManualClock:
    """Deterministic clock advanced by hand.

    Timers fire synchronously inside :meth:`advance`, in due-time order.
    Timers scheduled while advancing fire in the same call when they fall
    inside the advanced window.

    Args:
        start: Initial time. Defaults to 2024-01-01T00:00:00Z.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=UTC)
        self._elapsed = 0.0
        self._queue: list[tuple[float, int, _ManualTimer, Callable[[], None]]] = []
        self._seq = itertools.count()
        self._live = 0

    def now(self) -> datetime:
        return self._now + timedelta(seconds=self._elapsed)

    @property
    def pending(self) -> int:
        """Number of timers that are scheduled and not cancelled."""
        return self._live

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self, None)
        self._push(self._elapsed + max(delay, 0.0), timer, callback)
        return timer

    def call_every(self, interval: float, callback: Callable[[], None]) -> TimerHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")
        timer = _ManualTimer(self, interval)
        self._push(self._elapsed + interval, timer, callback)
        return timer

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        """Move time forward, firing every timer that falls due."""
        target = self._elapsed + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, timer, callback = heapq.heappop(self._queue)
            if timer.cancelled():
                continue
            self._elapsed = due
            if timer.interval is None:
                timer.cancel()
            else:
                heapq.heappush(self._queue, (due + timer.interval, next(self._seq), timer, callback))
            callback()
        self._elapsed = target

    def _push(self, due: float, timer: _ManualTimer, callback: Callable[[], None]) -> None:
        self._live += 1
        heapq.heappush(self._queue, (due, next(self._seq), timer, callback))
