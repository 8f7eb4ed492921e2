"""Progress snapshots for observers of a sync run.

Publishers never block: each subscriber owns a bounded ``deque`` and the
oldest buffered snapshot is dropped when a slow consumer falls behind.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import asdict, dataclass
from typing import Any

from place_mirror.models import STATUS_DEFERRED, STATUS_FAILED, STATUS_SUCCESS, SyncOutcome
from place_mirror.quota import QuotaLedger
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "progress"})

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_PAUSED = "paused"
STATE_CANCELLING = "cancelling"
STATE_FINISHED = "finished"


@dataclass(frozen=True)
class ProgressSnapshot:
    """Point-in-time view of a sync run."""

    run_id: str | None
    state: str
    total: int
    completed: int
    succeeded: int
    deferred: int
    failed: int
    current_place_id: str | None
    in_flight: tuple[str, ...]
    elapsed_seconds: float
    estimated_remaining_seconds: float | None
    quota_used: int | None
    quota_remaining: int | None
    storage_bytes: int | None
    emitted_at: float

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["in_flight"] = list(self.in_flight)
        return payload


class _Channel:
    """Single-subscriber bounded buffer with drop-oldest semantics."""

    def __init__(self, maxlen: int) -> None:
        self._items: deque[ProgressSnapshot] = deque(maxlen=max(1, maxlen))
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0

    def put(self, snapshot: ProgressSnapshot) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._items) == self._items.maxlen:
                self.dropped += 1
            self._items.append(snapshot)
            self._cond.notify()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def get(self, timeout: float | None = None) -> ProgressSnapshot | None:
        """Return the next snapshot, or ``None`` once closed and drained or on timeout."""

        with self._cond:
            if not self._items and not self._closed:
                self._cond.wait(timeout)
            if self._items:
                return self._items.popleft()
            return None


@dataclass
class Subscription:
    """Lazy, restartable sequence of progress snapshots.

    Nothing is buffered until iteration starts; every ``iter()`` opens a fresh
    channel that begins with the reporter's current snapshot.
    """

    reporter: "ProgressReporter"
    buffer_size: int
    stop_when_finished: bool = False
    idle_timeout: float | None = None

    def __iter__(self) -> Iterator[ProgressSnapshot]:
        channel = _Channel(self.buffer_size)
        self.reporter._attach(channel)
        try:
            while True:
                snapshot = channel.get(self.idle_timeout)
                if snapshot is None:
                    return
                yield snapshot
                if self.stop_when_finished and snapshot.state == STATE_FINISHED:
                    return
        finally:
            self.reporter._detach(channel)


class ProgressReporter:
    """Aggregate scheduler state and fan snapshots out to subscribers."""

    def __init__(
        self,
        *,
        quota: QuotaLedger | None = None,
        storage_bytes: Callable[[], int] | None = None,
        heartbeat_interval: float = 2.0,
        buffer_size: int = 32,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self._quota = quota
        self._storage_bytes = storage_bytes
        self.heartbeat_interval = heartbeat_interval
        self.buffer_size = buffer_size
        self._clock = clock
        self._wall_clock = wall_clock

        self._lock = threading.Lock()
        self._channels: list[_Channel] = []
        self._closed = False

        self._run_id: str | None = None
        self._state = STATE_IDLE
        self._total = 0
        self._counts = {STATUS_SUCCESS: 0, STATUS_DEFERRED: 0, STATUS_FAILED: 0}
        self._in_flight: dict[str, float] = {}
        self._current: str | None = None
        self._started_at: float | None = None
        self._finished_at: float | None = None
        self._storage_value: int | None = None

        self._heartbeat_stop = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None

    # --- subscription ------------------------------------------------------------

    def subscribe(
        self,
        buffer_size: int | None = None,
        *,
        stop_when_finished: bool = False,
        idle_timeout: float | None = None,
    ) -> Subscription:
        return Subscription(
            reporter=self,
            buffer_size=buffer_size or self.buffer_size,
            stop_when_finished=stop_when_finished,
            idle_timeout=idle_timeout,
        )

    def _attach(self, channel: _Channel) -> None:
        snapshot = self.snapshot()
        with self._lock:
            if self._closed:
                channel.close()
                return
            self._channels.append(channel)
        channel.put(snapshot)

    def _detach(self, channel: _Channel) -> None:
        with self._lock:
            if channel in self._channels:
                self._channels.remove(channel)
        if channel.dropped:
            LOGGER.debug("progress_subscriber_dropped", extra={"dropped": channel.dropped})

    # --- state updates -----------------------------------------------------------

    def start_run(self, run_id: str, total: int) -> None:
        with self._lock:
            self._run_id = run_id
            self._state = STATE_RUNNING
            self._total = total
            self._counts = {STATUS_SUCCESS: 0, STATUS_DEFERRED: 0, STATUS_FAILED: 0}
            self._in_flight = {}
            self._current = None
            self._started_at = self._clock()
            self._finished_at = None
        self.refresh_storage()
        self._start_heartbeat()
        self.publish()

    def set_state(self, state: str) -> None:
        with self._lock:
            if self._state == STATE_FINISHED:
                return
            self._state = state
        self.publish()

    def item_started(self, place_id: str) -> None:
        with self._lock:
            self._in_flight[place_id] = self._clock()
            self._current = place_id
        self.publish()

    def item_finished(self, outcome: SyncOutcome) -> None:
        with self._lock:
            self._in_flight.pop(outcome.place_id, None)
            if outcome.status in self._counts:
                self._counts[outcome.status] += 1
            if self._current == outcome.place_id:
                self._current = next(reversed(self._in_flight), None)
        self.publish()

    def finish_run(self) -> None:
        self._stop_heartbeat()
        with self._lock:
            self._state = STATE_FINISHED
            self._in_flight = {}
            self._current = None
            self._finished_at = self._clock()
        self.refresh_storage()
        self.publish()

    def close(self) -> None:
        """Stop the heartbeat and end every subscriber's sequence."""

        self._stop_heartbeat()
        with self._lock:
            self._closed = True
            channels, self._channels = self._channels, []
        for channel in channels:
            channel.close()

    # --- snapshots ---------------------------------------------------------------

    def refresh_storage(self) -> int | None:
        """Measure storage and cache the result for later snapshots.

        Runs on the heartbeat thread and at run boundaries only; worker
        progress calls read the cached value.
        """

        if self._storage_bytes is None:
            return None
        value = self._storage_bytes()
        with self._lock:
            self._storage_value = value
        return value

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            now = self._clock()
            completed = sum(self._counts.values())
            if self._started_at is None:
                elapsed = 0.0
            else:
                elapsed = (self._finished_at or now) - self._started_at
            remaining_items = max(0, self._total - completed)
            if self._state == STATE_FINISHED:
                eta: float | None = 0.0
            elif completed and elapsed > 0:
                eta = elapsed / completed * remaining_items
            else:
                eta = None
            base = {
                "run_id": self._run_id,
                "state": self._state,
                "total": self._total,
                "completed": completed,
                "succeeded": self._counts[STATUS_SUCCESS],
                "deferred": self._counts[STATUS_DEFERRED],
                "failed": self._counts[STATUS_FAILED],
                "current_place_id": self._current,
                "in_flight": tuple(self._in_flight),
                "elapsed_seconds": elapsed,
                "estimated_remaining_seconds": eta,
            }
            storage = self._storage_value

        quota_used = self._quota.used() if self._quota is not None else None
        quota_remaining = self._quota.remaining() if self._quota is not None else None
        return ProgressSnapshot(
            **base,
            quota_used=quota_used,
            quota_remaining=quota_remaining,
            storage_bytes=storage,
            emitted_at=self._wall_clock(),
        )

    def publish(self) -> ProgressSnapshot:
        snapshot = self.snapshot()
        with self._lock:
            channels = list(self._channels)
        for channel in channels:
            channel.put(snapshot)
        return snapshot

    # --- heartbeat ---------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_stop = threading.Event()
        stop = self._heartbeat_stop

        def _beat() -> None:
            while not stop.wait(self.heartbeat_interval):
                self.refresh_storage()
                self.publish()

        self._heartbeat_thread = threading.Thread(target=_beat, name="progress-heartbeat", daemon=True)
        self._heartbeat_thread.start()

    def _stop_heartbeat(self) -> None:
        self._heartbeat_stop.set()
        thread = self._heartbeat_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(1.0, self.heartbeat_interval * 2))
        self._heartbeat_thread = None


__all__ = [
    "ProgressReporter",
    "ProgressSnapshot",
    "STATE_CANCELLING",
    "STATE_FINISHED",
    "STATE_IDLE",
    "STATE_PAUSED",
    "STATE_RUNNING",
    "Subscription",
]
