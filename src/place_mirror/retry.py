"""Retry logic with exponential backoff and jitter for upstream calls."""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from place_mirror.config import RetryConfig
from place_mirror.errors import TransientError
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "retry"})

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``base_delay * 2**n`` plus up to ``jitter`` of that, capped.

    With ``jitter <= 1`` the jittered delay for retry ``n`` never exceeds the
    un-jittered delay for retry ``n + 1``, so successive waits never shrink.
    """

    base_delay: float = 1.0
    max_delay: float = 60.0
    max_attempts: int = 4
    jitter: float = 0.5

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            max_attempts=config.max_attempts,
            jitter=config.jitter,
        )

    def delay_for(self, retry_index: int, rand: Callable[[], float] = random.random) -> float:
        """Return the wait before retry ``retry_index`` (0 for the first retry)."""

        base = self.base_delay * (2 ** retry_index)
        jitter = min(1.0, max(0.0, self.jitter))
        return min(self.max_delay, base + base * jitter * rand())


def run_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], object] = time.sleep,
    rand: Callable[[], float] = random.random,
    description: str = "upstream_call",
) -> T:
    """Call ``func`` until it succeeds or the policy gives up.

    Only :class:`TransientError` is retried; every other exception, including
    quota denials and permanent failures, propagates from the first attempt.
    The last transient error is re-raised once ``max_attempts`` is reached.
    """

    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return func()
        except TransientError as exc:
            if attempt + 1 >= attempts:
                LOGGER.warning(
                    "retry_exhausted",
                    extra={"call": description, "attempts": attempt + 1, "error": str(exc)},
                )
                raise
            delay = policy.delay_for(attempt, rand)
            LOGGER.info(
                "retry_scheduled",
                extra={
                    "call": description,
                    "attempt": attempt + 1,
                    "max_attempts": attempts,
                    "delay_seconds": round(delay, 3),
                    "error": str(exc),
                },
            )
            sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["RetryPolicy", "run_with_retry"]
