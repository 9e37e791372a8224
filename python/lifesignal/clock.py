"""
Clock collaborators and per-user cancellable timers.

SystemClock uses wall time and a single scheduler thread draining a heap of
due callbacks. ManualClock keeps the same queue but only moves when told to,
which keeps timer-driven behaviour deterministic in tests and in the
simulator.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class TimerHandle:
    """Cancellable handle for a scheduled callback."""

    def __init__(self, when: float, fn: Callback) -> None:
        self.when = when
        self.fn = fn
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def _run(self) -> None:
        if self.cancelled:
            return
        try:
            self.fn()
        except Exception:
            logger.exception("timer callback failed")


class SystemClock:
    """
    Wall clock with one daemon scheduler thread.

    Callbacks run one at a time on that thread, in due order, however many
    are pending. Cancelled handles stay queued and are skipped when reached.
    """

    def __init__(self) -> None:
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._stopped = False

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, fn: Callback) -> TimerHandle:
        handle = TimerHandle(self.now() + max(delay, 0.0), fn)
        with self._cond:
            heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
            if self._thread is None:
                self._thread = threading.Thread(
                    target=self._run, name="lifesignal-clock", daemon=True,
                )
                self._thread.start()
            self._cond.notify()
        return handle

    def pending(self) -> int:
        with self._cond:
            return sum(1 for _, _, h in self._queue if not h.cancelled)

    def stop(self) -> None:
        """Stop the scheduler thread; callbacks still queued never run."""
        with self._cond:
            self._stopped = True
            self._cond.notify()

    def _next_due(self) -> Optional[TimerHandle]:
        with self._cond:
            while not self._stopped:
                if not self._queue:
                    self._cond.wait()
                    continue
                when, _, handle = self._queue[0]
                if handle.cancelled:
                    heapq.heappop(self._queue)
                    continue
                wait = when - self.now()
                if wait <= 0:
                    heapq.heappop(self._queue)
                    return handle
                self._cond.wait(wait)
            return None

    def _run(self) -> None:
        while True:
            handle = self._next_due()
            if handle is None:
                return
            handle._run()


class ManualClock:
    """Deterministic clock. advance() fires due callbacks in time order."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._lock = threading.RLock()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, fn: Callback) -> TimerHandle:
        with self._lock:
            handle = TimerHandle(self._now + max(delay, 0.0), fn)
            heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
            return handle

    def set(self, when: float) -> None:
        """Jump to an absolute time, firing anything due on the way."""
        self.advance(when - self._now)

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            with self._lock:
                if not self._queue or self._queue[0][0] > target:
                    break
                when, _, handle = heapq.heappop(self._queue)
                self._now = max(self._now, when)
            handle._run()
        self._now = target

    def pending(self) -> int:
        with self._lock:
            return sum(1 for _, _, h in self._queue if not h.cancelled)


class TimerRegistry:
    """
    Timers keyed by (user, kind).

    Starting a timer cancels any earlier timer with the same key, so the last
    writer always wins.
    """

    def __init__(self, clock) -> None:
        self.clock = clock
        self._timers: Dict[Tuple[str, str], TimerHandle] = {}
        self._lock = threading.Lock()

    def start(self, user_id: str, kind: str, delay: float, fn: Callback) -> TimerHandle:
        key = (user_id, kind)
        holder: Dict[str, TimerHandle] = {}

        def fire() -> None:
            with self._lock:
                if self._timers.get(key) is holder.get("handle"):
                    del self._timers[key]
            fn()

        with self._lock:
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous.cancel()
            handle = self.clock.call_later(delay, fire)
            holder["handle"] = handle
            self._timers[key] = handle
        return handle

    def cancel(self, user_id: str, kind: str) -> bool:
        with self._lock:
            handle = self._timers.pop((user_id, kind), None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_prefix(self, user_id: str, kind_prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._timers if k[0] == user_id and k[1].startswith(kind_prefix)]
            handles = [self._timers.pop(k) for k in keys]
        for h in handles:
            h.cancel()
        return len(handles)

    def active(self, user_id: str, kind: str) -> bool:
        with self._lock:
            handle = self._timers.get((user_id, kind))
            return handle is not None and not handle.cancelled
