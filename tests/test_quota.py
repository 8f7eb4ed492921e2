"""Tests for the per-day quota ledger."""

from __future__ import annotations

import threading
from datetime import date

import pytest

from place_mirror.quota import QuotaLedger


class _MemoryBackend:
    def __init__(self) -> None:
        self.rows: dict[str, tuple[int, int]] = {}

    def load_quota_used(self, day: str) -> int | None:
        row = self.rows.get(day)
        return row[0] if row else None

    def save_quota(self, day: str, used: int, ceiling: int) -> None:
        self.rows[day] = (used, ceiling)


def test_try_admit_denies_past_ceiling() -> None:
    ledger = QuotaLedger(3, today=lambda: date(2024, 5, 1))

    assert [ledger.try_admit() for _ in range(4)] == [True, True, True, False]
    assert ledger.used() == 3
    assert ledger.remaining() == 0
    assert ledger.try_admit(0) is True


def test_try_admit_never_overshoots_under_contention() -> None:
    ledger = QuotaLedger(100, today=lambda: date(2024, 5, 1))
    admitted: list[bool] = []
    lock = threading.Lock()
    start = threading.Barrier(8)

    def _hammer() -> None:
        start.wait()
        for _ in range(50):
            result = ledger.try_admit()
            with lock:
                admitted.append(result)

    threads = [threading.Thread(target=_hammer) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert admitted.count(True) == 100
    assert ledger.used() == 100


def test_day_rollover_resets_once_and_keeps_history() -> None:
    backend = _MemoryBackend()
    current = {"day": date(2024, 5, 1)}
    ledger = QuotaLedger(2, backend, today=lambda: current["day"])

    assert ledger.try_admit()
    assert ledger.try_admit()
    assert not ledger.try_admit()

    current["day"] = date(2024, 5, 2)
    assert ledger.remaining() == 2
    assert ledger.day == "2024-05-02"
    assert ledger.try_admit()

    assert backend.rows["2024-05-01"] == (2, 2)
    assert backend.rows["2024-05-02"] == (1, 2)


def test_restarted_ledger_continues_todays_count() -> None:
    backend = _MemoryBackend()
    first = QuotaLedger(5, backend, today=lambda: date(2024, 5, 1))
    for _ in range(3):
        first.try_admit()

    second = QuotaLedger(5, backend, today=lambda: date(2024, 5, 1))

    assert second.used() == 3
    assert second.remaining() == 2


def test_ledger_persists_through_store(store) -> None:
    ledger = QuotaLedger(10, store, today=lambda: date(2024, 5, 1))
    ledger.try_admit()
    ledger.try_admit()

    record = store.get_quota_record("2024-05-01")

    assert record is not None
    assert (record.used, record.ceiling) == (2, 10)


def test_negative_values_are_rejected() -> None:
    with pytest.raises(ValueError):
        QuotaLedger(-1)
    with pytest.raises(ValueError):
        QuotaLedger(1).try_admit(-1)
