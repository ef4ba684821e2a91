"""
Purpose: Cancelable scheduled work for search sessions and sweeps.
What it does:
Every wait in dispatch (radius expansion, decline delay, cooldown, countdown,
periodic sweeps) is a scheduled task, never a sleep loop. A scheduler exposes:

- now()                            -> timezone-aware current time
- call_later(delay, callback)      -> ScheduledTask
- call_every(interval, callback)   -> ScheduledTask (repeats until cancelled)

Two implementations:
- ThreadingScheduler: production, threading.Timer based
- ManualScheduler: virtual clock driven by advance(); used by tests and simulations
  so a 100 km ladder can be walked in microseconds and deterministically.

Cancellation only prevents future firings; callbacks must still check that their
owner is alive (the session does this with a liveness flag).
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class ScheduledTask:
    """
    Handle for a scheduled callback. cancel() is idempotent and thread-safe.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()


def _run_safely(task: ScheduledTask, callback: Callback) -> None:
    if task.cancelled:
        return
    try:
        callback()
    except Exception:
        # A failing timer must not kill the scheduler thread or the virtual clock.
        logger.exception("Scheduled task %r failed", task.name)


class ThreadingScheduler:
    """
    Real-time scheduler backed by daemon threading.Timer objects.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_later(self, delay_seconds: float, callback: Callback, name: str = "") -> ScheduledTask:
        task = _ThreadTask(name)
        timer = threading.Timer(max(0.0, delay_seconds), _run_safely, args=(task, callback))
        timer.daemon = True
        task.attach(timer)
        timer.start()
        return task

    def call_every(self, interval_seconds: float, callback: Callback, name: str = "") -> ScheduledTask:
        task = _ThreadTask(name)

        def tick() -> None:
            if task.cancelled:
                return
            _run_safely(task, callback)
            if not task.cancelled:
                task.attach(self._start_timer(interval_seconds, tick))

        task.attach(self._start_timer(interval_seconds, tick))
        return task

    @staticmethod
    def _start_timer(delay_seconds: float, fn: Callback) -> threading.Timer:
        timer = threading.Timer(delay_seconds, fn)
        timer.daemon = True
        timer.start()
        return timer


class _ThreadTask(ScheduledTask):
    def __init__(self, name: str = ""):
        super().__init__(name)
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def attach(self, timer: threading.Timer) -> None:
        with self._lock:
            self._timer = timer
            if self.cancelled:
                timer.cancel()

    def cancel(self) -> None:
        super().cancel()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()


class ManualScheduler:
    """
    Virtual clock. Nothing fires until advance()/run_until() moves time forward;
    due callbacks then run in (due time, insertion order) on the calling thread.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._queue: List[Tuple[datetime, int, ScheduledTask, Callback]] = []
        self._sequence = itertools.count()
        self._lock = threading.RLock()

    def now(self) -> datetime:
        return self._now

    def call_later(self, delay_seconds: float, callback: Callback, name: str = "") -> ScheduledTask:
        task = ScheduledTask(name)
        self._push(self._now + timedelta(seconds=max(0.0, delay_seconds)), task, callback)
        return task

    def call_every(self, interval_seconds: float, callback: Callback, name: str = "") -> ScheduledTask:
        task = ScheduledTask(name)

        def tick() -> None:
            callback()
            if not task.cancelled:
                self._push(self._now + timedelta(seconds=interval_seconds), task, tick)

        self._push(self._now + timedelta(seconds=interval_seconds), task, tick)
        return task

    def _push(self, due: datetime, task: ScheduledTask, callback: Callback) -> None:
        with self._lock:
            heapq.heappush(self._queue, (due, next(self._sequence), task, callback))

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for _, _, task, _ in self._queue if not task.cancelled)

    def advance(self, seconds: float) -> None:
        self.run_until(self._now + timedelta(seconds=seconds))

    def run_until(self, target: datetime) -> None:
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > target:
                    break
                due, _, task, callback = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            _run_safely(task, callback)
        self._now = max(self._now, target)
