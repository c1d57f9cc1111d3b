"""Exponential-backoff retry for per-source fetch tasks."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import structlog

from ..config import RetryConfig
from ..errors import is_retryable

T = TypeVar("T")


@dataclass(slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_config(cls, config: RetryConfig, sleep: Callable[[float], None] | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            sleep=sleep or time.sleep,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the zero-based ``attempt`` failed: 1s, 2s, 4s ... capped."""

        return min(self.base_delay * (2**attempt), self.max_delay)


def run_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    logger: structlog.BoundLogger | None = None,
    label: str = "",
) -> tuple[T, int]:
    """Call ``func`` until it succeeds or a non-retryable error occurs.

    Returns the successful result together with the number of attempts used.
    The last error is re-raised once attempts are exhausted.
    """

    log = logger or structlog.get_logger("feed_sync.retry")
    attempt = 0
    while True:
        try:
            return func(), attempt + 1
        except Exception as exc:
            if not is_retryable(exc) or attempt + 1 >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            log.info(
                "task_retry_scheduled",
                task=label,
                attempt=attempt + 1,
                delay=delay,
                error=str(exc),
            )
            policy.sleep(delay)
            attempt += 1


__all__ = ["RetryPolicy", "run_with_retry"]
