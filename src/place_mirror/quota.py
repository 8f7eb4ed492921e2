"""Per-day admission control for external API calls."""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import date, datetime
from typing import Protocol
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError

from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "quota"})


class QuotaBackend(Protocol):
    """Durable home of the per-day counters."""

    def load_quota_used(self, day: str) -> int | None: ...

    def save_quota(self, day: str, used: int, ceiling: int) -> None: ...


def _today_in(tz_name: str) -> Callable[[], date]:
    zone = ZoneInfo(tz_name)

    def _today() -> date:
        return datetime.now(zone).date()

    return _today


class QuotaLedger:
    """Counter of external calls consumed today against a fixed ceiling.

    Admission and reset are serialized by one lock, so concurrent workers can
    never both take the last remaining unit. Every admitted call is written
    through to ``backend`` so a restarted process resumes the same day's count.
    """

    def __init__(
        self,
        ceiling: int,
        backend: QuotaBackend | None = None,
        *,
        timezone: str = "UTC",
        today: Callable[[], date] | None = None,
    ) -> None:
        if ceiling < 0:
            raise ValueError("quota ceiling cannot be negative")
        self._ceiling = int(ceiling)
        self._backend = backend
        self._today = today or _today_in(timezone)
        self._lock = threading.Lock()
        self._day = self._today()
        self._used = self._load(self._day)

    @property
    def ceiling(self) -> int:
        return self._ceiling

    @property
    def day(self) -> str:
        with self._lock:
            return self._day.isoformat()

    def _load(self, day: date) -> int:
        if self._backend is None:
            return 0
        stored = self._backend.load_quota_used(day.isoformat())
        return int(stored or 0)

    def _persist(self) -> None:
        if self._backend is None:
            return
        try:
            self._backend.save_quota(self._day.isoformat(), self._used, self._ceiling)
        except SQLAlchemyError as exc:
            # The in-memory counter stays authoritative for this process.
            LOGGER.error(
                "quota_persist_error",
                extra={"day": self._day.isoformat(), "used": self._used, "error": str(exc)},
            )

    def _roll_over_locked(self) -> None:
        today = self._today()
        if today == self._day:
            return
        previous, previous_used = self._day, self._used
        self._day = today
        self._used = self._load(today)
        LOGGER.info(
            "quota_day_reset",
            extra={"previous_day": previous.isoformat(), "previous_used": previous_used, "day": today.isoformat()},
        )

    def reset_if_new_day(self) -> None:
        """Start a fresh counter when the calendar day has changed."""

        with self._lock:
            self._roll_over_locked()

    def try_admit(self, cost: int = 1) -> bool:
        """Consume ``cost`` units if they fit under the ceiling; never blocks."""

        if cost < 0:
            raise ValueError("cost cannot be negative")
        with self._lock:
            self._roll_over_locked()
            if self._used + cost > self._ceiling:
                return False
            self._used += cost
            self._persist()
            return True

    def used(self) -> int:
        with self._lock:
            self._roll_over_locked()
            return self._used

    def remaining(self) -> int:
        with self._lock:
            self._roll_over_locked()
            return max(0, self._ceiling - self._used)


__all__ = ["QuotaBackend", "QuotaLedger"]
