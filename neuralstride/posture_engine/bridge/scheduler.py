# neuralstride/posture_engine/bridge/scheduler.py
"""
Cooperative timer scheduling with explicit cancellation handles.

Every periodic job in the engine (bridge reconnection checks, heartbeats,
announce retries, health ticks, session statistics) is created through a
Scheduler and stopped through the TaskHandle it returns.
"""
import asyncio
import heapq
import itertools
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Tuple

class TaskHandle:
    """Cancellation handle for a one-shot or repeating scheduled callback."""

    def __init__(self, on_cancel: Optional[Callable[[], None]] = None):
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()

class Scheduler(ABC):
    @abstractmethod
    def now(self) -> float:
        """Current time in seconds."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TaskHandle:
        """Runs `callback(*args)` once after `delay` seconds."""

    def call_every(self, interval: float, callback: Callable[..., Any], *args: Any) -> TaskHandle:
        """Runs `callback(*args)` every `interval` seconds until the handle is cancelled."""
        if interval <= 0:
            raise ValueError(f"Repeat interval must be positive, got {interval}")
        handle = TaskHandle()
        current: List[TaskHandle] = []

        def _fire() -> None:
            if handle.cancelled:
                return
            current[:] = [self.call_later(interval, _fire)]
            callback(*args)

        def _cancel() -> None:
            for pending in current:
                pending.cancel()

        handle._on_cancel = _cancel
        current.append(self.call_later(interval, _fire))
        return handle

class ManualScheduler(Scheduler):
    """
    Virtual-time scheduler. Time only moves through `advance`, and due callbacks
    run in (due time, submission order). Used for replay and tests.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: List[Tuple[float, int, TaskHandle, Callable[..., Any], Tuple[Any, ...]]] = []
        self._counter = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TaskHandle:
        handle = TaskHandle()
        heapq.heappush(self._queue, (self._now + max(0.0, delay), next(self._counter), handle, callback, args))
        return handle

    def pending(self) -> int:
        return sum(1 for entry in self._queue if not entry[2].cancelled)

    def advance(self, seconds: float) -> None:
        """Moves the clock forward, running every callback that falls due on the way."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback, args = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, due)
            callback(*args)
        self._now = target

    def advance_to(self, when: float) -> None:
        if when > self._now:
            self.advance(when - self._now)

    def run_pending(self) -> None:
        """Runs callbacks due at the current instant (zero-delay work)."""
        self.advance(0.0)

class AsyncioScheduler(Scheduler):
    """Scheduler backed by an asyncio event loop, for live use. Build it inside the running loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self._loop.time()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TaskHandle:
        timer = self._loop.call_later(max(0.0, delay), callback, *args)
        return TaskHandle(on_cancel=timer.cancel)
