"""Per-worker minimum-interval pacing for upstream calls."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable


class RateLimiter:
    """Keep each worker's consecutive upstream calls ``interval`` seconds apart.

    Pacing is tracked per worker, so the aggregate call rate is at most
    ``concurrency / interval``. Waiting happens outside the lock; one worker
    sleeping never delays another.
    """

    def __init__(
        self,
        interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], object] = time.sleep,
    ) -> None:
        if interval < 0:
            raise ValueError("interval cannot be negative")
        self.interval = float(interval)
        self._clock = clock
        self._sleep = sleep
        self._last: dict[Hashable, float] = {}
        self._lock = threading.Lock()

    def acquire(self, worker_id: Hashable, sleep: Callable[[float], object] | None = None) -> float:
        """Block until ``worker_id`` may issue its next call; return the time waited."""

        with self._lock:
            previous = self._last.get(worker_id)
        waited = 0.0
        if previous is not None:
            wait = previous + self.interval - self._clock()
            if wait > 0:
                (sleep or self._sleep)(wait)
                waited = wait
        with self._lock:
            self._last[worker_id] = self._clock()
        return waited

    def forget(self, worker_id: Hashable) -> None:
        with self._lock:
            self._last.pop(worker_id, None)


__all__ = ["RateLimiter"]
