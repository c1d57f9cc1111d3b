from __future__ import annotations

import pytest

from feed_sync.config import RetryConfig
from feed_sync.engine.retry import RetryPolicy, run_with_retry
from feed_sync.errors import FeedFormatError, NetworkError


def test_delay_doubles_and_caps() -> None:
    policy = RetryPolicy(base_delay=1.0, max_delay=3.0)
    assert [policy.delay_for(n) for n in range(4)] == [1.0, 2.0, 3.0, 3.0]


def test_retryable_errors_are_retried_with_backoff() -> None:
    sleeps: list[float] = []
    policy = RetryPolicy.from_config(RetryConfig(max_attempts=3, base_delay=1.0), sleep=sleeps.append)
    calls = {"count": 0}

    def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise NetworkError("timeout")
        return "ok"

    assert run_with_retry(flaky, policy) == ("ok", 3)
    assert sleeps == [1.0, 2.0]


def test_non_retryable_errors_fail_immediately() -> None:
    sleeps: list[float] = []
    policy = RetryPolicy(sleep=sleeps.append)
    calls = {"count": 0}

    def broken() -> None:
        calls["count"] += 1
        raise FeedFormatError("not xml")

    with pytest.raises(FeedFormatError):
        run_with_retry(broken, policy)
    assert calls["count"] == 1
    assert sleeps == []


def test_last_error_is_raised_when_attempts_exhausted() -> None:
    policy = RetryPolicy(max_attempts=2, sleep=lambda _: None)

    def always_down() -> None:
        raise NetworkError("HTTP 503", status_code=503)

    with pytest.raises(NetworkError) as excinfo:
        run_with_retry(always_down, policy)
    assert excinfo.value.status_code == 503
