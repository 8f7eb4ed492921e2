"""Tests for the exponential backoff retry policy."""

from __future__ import annotations

import pytest

from place_mirror.errors import PermanentError, QuotaExhausted, TransientError
from place_mirror.retry import RetryPolicy, run_with_retry


def _flaky(failures: int, calls: list[int]):
    def _call() -> str:
        calls.append(1)
        if len(calls) <= failures:
            raise TransientError("upstream timeout", reason="timeout")
        return "ok"

    return _call


@pytest.mark.parametrize("failures", [0, 1, 3])
def test_k_transient_failures_then_success_takes_k_plus_one_attempts(failures: int) -> None:
    calls: list[int] = []
    delays: list[float] = []
    policy = RetryPolicy(base_delay=0.5, max_delay=30.0, max_attempts=4, jitter=1.0)

    result = run_with_retry(_flaky(failures, calls), policy, sleep=delays.append, rand=lambda: 0.9)

    assert result == "ok"
    assert len(calls) == failures + 1
    assert len(delays) == failures
    assert delays == sorted(delays)


def test_delays_never_decrease_with_extreme_jitter() -> None:
    policy = RetryPolicy(base_delay=1.0, max_delay=100.0, max_attempts=8, jitter=1.0)

    # Worst case: maximal jitter on retry n, none on retry n + 1.
    for index in range(6):
        assert policy.delay_for(index, rand=lambda: 1.0) <= policy.delay_for(index + 1, rand=lambda: 0.0)


def test_delay_is_capped() -> None:
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, max_attempts=10, jitter=0.5)

    assert policy.delay_for(8, rand=lambda: 1.0) == 5.0


def test_exhausted_retries_reraise_last_transient_error() -> None:
    calls: list[int] = []
    delays: list[float] = []
    policy = RetryPolicy(base_delay=1.0, max_delay=60.0, max_attempts=3, jitter=0.0)

    with pytest.raises(TransientError):
        run_with_retry(_flaky(10, calls), policy, sleep=delays.append, rand=lambda: 0.0)

    assert len(calls) == 3
    assert delays == [1.0, 2.0]


@pytest.mark.parametrize("error", [PermanentError("gone", reason="not_found"), QuotaExhausted("no quota")])
def test_non_transient_errors_are_not_retried(error: Exception) -> None:
    calls: list[int] = []

    def _call() -> None:
        calls.append(1)
        raise error

    with pytest.raises(type(error)):
        run_with_retry(_call, RetryPolicy(), sleep=lambda _: None)

    assert calls == [1]
