from __future__ import annotations

import heapq
import threading
import time
from collections.abc import Callable

from clustermanager.src.metrics import METRICS


class ReconcileQueue:
    """Work queue of ClusterManager names with single-flight processing.

    A name is handed to at most one worker at a time.  Adding a name while it
    is being processed marks it dirty, and :meth:`done` puts it back so the
    change is picked up by a fresh pass instead of an overlapping one.

    Failed passes are retried through :meth:`retry` with bounded exponential
    backoff (1 s doubling to 30 s) tracked per name until :meth:`forget`.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: list[str] = []
        self._queued: set[str] = set()
        self._processing: set[str] = set()
        self._dirty: set[str] = set()
        self._delayed: list[tuple[float, str]] = []
        self._failures: dict[str, int] = {}
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _update_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue))

    def add(self, name: str) -> None:
        with self._cond:
            if self._shutdown:
                return
            if name in self._processing:
                self._dirty.add(name)
                return
            if name in self._queued:
                return
            self._queued.add(name)
            self._queue.append(name)
            self._update_depth()
            self._cond.notify()

    def add_after(self, name: str, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(name)
            return
        with self._cond:
            if self._shutdown:
                return
            heapq.heappush(self._delayed, (self._clock() + delay_seconds, name))
            self._cond.notify()

    def retry(self, name: str) -> float:
        """Schedule ``name`` again after its next backoff delay and return the delay."""
        with self._cond:
            attempt = self._failures.get(name, 0) + 1
            self._failures[name] = attempt
        delay_seconds = min(30.0, float(2 ** (attempt - 1)))
        METRICS.retry_total.inc()
        self.add_after(name, delay_seconds)
        return delay_seconds

    def forget(self, name: str) -> None:
        with self._cond:
            self._failures.pop(name, None)

    def failures(self, name: str) -> int:
        with self._cond:
            return self._failures.get(name, 0)

    def _promote_due(self) -> float | None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, name = heapq.heappop(self._delayed)
            if name in self._processing:
                self._dirty.add(name)
            elif name not in self._queued:
                self._queued.add(name)
                self._queue.append(name)
        self._update_depth()
        if self._delayed:
            return max(0.0, self._delayed[0][0] - now)
        return None

    def get(self, timeout: float | None = None) -> str | None:
        """Block until a name is ready, the queue shuts down, or ``timeout`` passes."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due()
                if self._queue:
                    name = self._queue.pop(0)
                    self._queued.discard(name)
                    self._processing.add(name)
                    self._update_depth()
                    return name
                if self._shutdown:
                    return None
                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, name: str) -> None:
        with self._cond:
            self._processing.discard(name)
            if name in self._dirty:
                self._dirty.discard(name)
                if name not in self._queued:
                    self._queued.add(name)
                    self._queue.append(name)
                    self._update_depth()
                    self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()
