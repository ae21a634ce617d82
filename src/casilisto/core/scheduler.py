"""Cancellable timers for the sync client.

The orchestrator never sleeps or spawns timers on its own. Every debounce,
poll and retry is a TimerHandle owned by a Scheduler, so it can be cancelled
explicitly on disconnect or shutdown.

Two schedulers are provided:

- ManualScheduler: virtual clock advanced by the embedder. Use it to drive
  the engine from an existing event loop (call advance() from your loop
  tick) and in tests.
- ThreadScheduler: real clock; runs every callback on one worker thread,
  one at a time.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

__all__ = ["TimerHandle", "Scheduler", "ManualScheduler", "ThreadScheduler"]


class TimerHandle:
    """A scheduled callback that can be cancelled."""

    def __init__(self, when: float, callback: Callable[[], None], name: str = "") -> None:
        self.when = when
        self.callback = callback
        self.name = name or getattr(callback, "__name__", "timer")
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else f"at {self.when:.3f}"
        return f"TimerHandle({self.name}, {state})"


class Scheduler:
    """Base scheduler: a heap of timers plus a clock."""

    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._heap: List[Tuple[float, int, TimerHandle]] = []
        self._counter = itertools.count()
        self._lock = threading.RLock()

    def time(self) -> float:
        return self._clock()

    def call_later(
        self, delay: float, callback: Callable[[], None], name: str = ""
    ) -> TimerHandle:
        """Schedule callback to run after delay seconds."""
        handle = TimerHandle(self.time() + max(0.0, delay), callback, name)
        with self._lock:
            heapq.heappush(self._heap, (handle.when, next(self._counter), handle))
        self._wakeup()
        return handle

    def call_soon(self, callback: Callable[[], None], name: str = "") -> TimerHandle:
        return self.call_later(0.0, callback, name)

    def cancel_all(self) -> None:
        """Cancel every pending timer."""
        with self._lock:
            for _, _, handle in self._heap:
                handle.cancel()
            self._heap.clear()

    def pending(self) -> int:
        """Number of timers that have not run and are not cancelled."""
        with self._lock:
            return sum(1 for _, _, h in self._heap if not h.cancelled)

    def next_due(self) -> Optional[float]:
        """Time of the earliest live timer, or None."""
        with self._lock:
            while self._heap and self._heap[0][2].cancelled:
                heapq.heappop(self._heap)
            return self._heap[0][0] if self._heap else None

    def _pop_due(self, now: float) -> Optional[TimerHandle]:
        with self._lock:
            while self._heap:
                when, _, handle = self._heap[0]
                if handle.cancelled:
                    heapq.heappop(self._heap)
                    continue
                if when > now:
                    return None
                heapq.heappop(self._heap)
                return handle
        return None

    def run_due(self) -> int:
        """Run every timer due at the current time. Returns how many ran."""
        ran = 0
        while True:
            handle = self._pop_due(self.time())
            if handle is None:
                return ran
            self._run(handle)
            ran += 1

    def _run(self, handle: TimerHandle) -> None:
        try:
            handle.callback()
        except Exception as e:
            logger.exception(f"Timer {handle.name} failed: {e}")

    def _wakeup(self) -> None:
        """Hook for schedulers that wait on the next timer."""


class ManualScheduler(Scheduler):
    """Scheduler driven by a virtual clock."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        super().__init__(lambda: self._now)

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running timers in due order.

        Timers scheduled by callbacks during the advance also run if they
        fall due before the end of the window.

        Returns:
            Number of callbacks run
        """
        target = self._now + seconds
        ran = 0
        while True:
            handle = self._pop_due(target)
            if handle is None:
                break
            self._now = max(self._now, handle.when)
            self._run(handle)
            ran += 1
        self._now = target
        return ran


class ThreadScheduler(Scheduler):
    """Real-time scheduler running callbacks on a single worker thread."""

    def __init__(self) -> None:
        super().__init__(time.monotonic)
        self._condition = threading.Condition(self._lock)
        self._stopped = False
        self._thread = threading.Thread(
            target=self._loop, name="sync-scheduler", daemon=True
        )
        self._thread.start()

    def _wakeup(self) -> None:
        with self._condition:
            self._condition.notify()

    def _loop(self) -> None:
        while True:
            with self._condition:
                if self._stopped:
                    return
                due = self.next_due()
                now = self.time()
                if due is None:
                    self._condition.wait()
                    continue
                if due > now:
                    self._condition.wait(due - now)
                    continue
            self.run_due()

    def stop(self) -> None:
        """Cancel pending timers and stop the worker thread."""
        self.cancel_all()
        with self._condition:
            self._stopped = True
            self._condition.notify()
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=5)
