"""Tests for progress snapshots and subscriber buffering."""

from __future__ import annotations

import threading
import time
from datetime import date

from place_mirror.models import STATUS_DEFERRED, STATUS_SUCCESS, SyncOutcome
from place_mirror.progress import (
    STATE_FINISHED,
    STATE_IDLE,
    STATE_RUNNING,
    ProgressReporter,
    _Channel,
)
from place_mirror.quota import QuotaLedger


def _reporter(**kwargs) -> ProgressReporter:
    kwargs.setdefault("heartbeat_interval", 60.0)
    return ProgressReporter(**kwargs)


def _outcome(place_id: str, status: str = STATUS_SUCCESS) -> SyncOutcome:
    return SyncOutcome(place_id=place_id, status=status, finished_at=0.0, run_id="run")


def test_channel_drops_oldest_when_full() -> None:
    reporter = _reporter()
    channel = _Channel(2)
    snapshots = [reporter.snapshot() for _ in range(3)]
    for snapshot in snapshots:
        channel.put(snapshot)

    assert channel.dropped == 1
    assert channel.get(0) is snapshots[1]
    assert channel.get(0) is snapshots[2]
    assert channel.get(0) is None


def test_subscription_starts_with_current_snapshot_and_ends_on_close() -> None:
    reporter = _reporter()
    received: list[str] = []
    subscription = reporter.subscribe()
    ready = threading.Event()

    def _consume() -> None:
        for snapshot in subscription:
            received.append(snapshot.state)
            ready.set()

    consumer = threading.Thread(target=_consume)
    consumer.start()
    assert ready.wait(2.0)
    reporter.close()
    consumer.join(2.0)

    assert not consumer.is_alive()
    assert received[0] == STATE_IDLE


def test_subscription_is_restartable() -> None:
    clock = {"t": 0.0}
    reporter = _reporter(clock=lambda: clock["t"])
    subscription = reporter.subscribe(idle_timeout=0.01)

    first = [snapshot.state for snapshot in subscription]
    reporter.start_run("run", 1)
    second = [snapshot.state for snapshot in subscription]
    reporter.finish_run()

    assert first == [STATE_IDLE]
    assert second == [STATE_RUNNING]


def test_counts_and_eta_follow_outcomes() -> None:
    clock = {"t": 0.0}
    quota = QuotaLedger(10, today=lambda: date(2024, 5, 1))
    quota.try_admit(4)
    reporter = _reporter(clock=lambda: clock["t"], quota=quota, storage_bytes=lambda: 1234)

    reporter.start_run("run", 4)
    reporter.item_started("a")
    reporter.item_started("b")
    clock["t"] = 10.0
    reporter.item_finished(_outcome("a"))
    reporter.item_finished(_outcome("b", STATUS_DEFERRED))

    snapshot = reporter.snapshot()
    assert (snapshot.completed, snapshot.succeeded, snapshot.deferred, snapshot.failed) == (2, 1, 1, 0)
    assert snapshot.in_flight == ()
    assert snapshot.elapsed_seconds == 10.0
    assert snapshot.estimated_remaining_seconds == 10.0
    assert (snapshot.quota_used, snapshot.quota_remaining) == (4, 6)
    assert snapshot.storage_bytes == 1234

    reporter.finish_run()
    final = reporter.snapshot()
    assert final.state == STATE_FINISHED
    assert final.estimated_remaining_seconds == 0.0
    assert final.to_dict()["in_flight"] == []


def test_stop_when_finished_ends_iteration() -> None:
    reporter = _reporter()
    subscription = reporter.subscribe(stop_when_finished=True, idle_timeout=2.0)
    states: list[str] = []

    def _consume() -> None:
        for snapshot in subscription:
            states.append(snapshot.state)

    consumer = threading.Thread(target=_consume)
    consumer.start()
    reporter.start_run("run", 0)
    reporter.finish_run()
    consumer.join(3.0)

    assert not consumer.is_alive()
    assert states[-1] == STATE_FINISHED


def test_heartbeat_publishes_while_running() -> None:
    reporter = ProgressReporter(heartbeat_interval=0.02)
    subscription = reporter.subscribe(idle_timeout=0.5)
    seen: list[str] = []
    done = threading.Event()

    def _consume() -> None:
        for snapshot in subscription:
            seen.append(snapshot.state)
            if len(seen) >= 5:
                break
        done.set()

    consumer = threading.Thread(target=_consume)
    consumer.start()
    reporter.start_run("run", 3)

    assert done.wait(2.0)
    reporter.finish_run()
    consumer.join(2.0)
    assert seen.count(STATE_RUNNING) >= 3


def test_worker_updates_do_not_wait_on_storage_measurement() -> None:
    calls: list[float] = []

    def _slow_storage() -> int:
        calls.append(time.monotonic())
        time.sleep(0.5)
        return 42

    reporter = ProgressReporter(storage_bytes=_slow_storage, heartbeat_interval=0.01)
    reporter.start_run("run", 2)
    assert reporter.snapshot().storage_bytes == 42

    started = time.monotonic()
    reporter.item_started("p1")
    reporter.item_finished(_outcome("p1"))
    elapsed = time.monotonic() - started

    reporter.finish_run()
    assert elapsed < 0.1
    assert len(calls) >= 2
