"""Explicit retry policy for calls that cross a process boundary."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

R = TypeVar("R")

BackoffFunction = Callable[[int], float]
SleepFunction = Callable[[float], Awaitable[None]]
RetryablePredicate = Callable[[BaseException], bool]

_LOGGER = logging.getLogger("commerce_sync.retry")


def exponential_backoff(
    base_seconds: float = 0.5,
    *,
    max_seconds: float = 30.0,
) -> BackoffFunction:
    """Return a backoff function producing ``base * 2**attempt`` capped at max."""

    if base_seconds < 0:
        raise ValueError("base_seconds must be zero or greater")
    if max_seconds < 0:
        raise ValueError("max_seconds must be zero or greater")

    def backoff(attempt_index: int) -> float:
        return float(min(base_seconds * (2**attempt_index), max_seconds))

    return backoff


def _never_retry(_: BaseException) -> bool:
    return False


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Bounded retries with a pluggable backoff and sleep.

    ``max_attempts`` counts the first call, so ``max_attempts=1`` disables
    retries. When a raised exception carries ``retry_after_seconds`` the
    policy waits at least that long before the next attempt.
    """

    max_attempts: int = 3
    backoff: BackoffFunction = field(default_factory=exponential_backoff)
    sleep: SleepFunction = asyncio.sleep

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be greater than zero")

    def delay_for(self, attempt_index: int, error: BaseException) -> float:
        delay = self.backoff(attempt_index)
        retry_after = getattr(error, "retry_after_seconds", None)
        if isinstance(retry_after, (int, float)) and retry_after > delay:
            return float(retry_after)
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[R]],
        *,
        is_retryable: RetryablePredicate = _never_retry,
        operation_name: str = "operation",
    ) -> R:
        for attempt_index in range(self.max_attempts):
            try:
                return await operation()
            except Exception as error:
                is_last_attempt = attempt_index + 1 >= self.max_attempts
                if is_last_attempt or not is_retryable(error):
                    raise
                delay = self.delay_for(attempt_index, error)
                _LOGGER.warning(
                    "operation_retrying",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt_index + 1,
                        "max_attempts": self.max_attempts,
                        "delay_seconds": delay,
                        "error": str(error),
                    },
                )
                await self.sleep(delay)

        raise RuntimeError("retry loop exited unexpectedly")


NO_RETRY = RetryPolicy(max_attempts=1)


__all__ = [
    "BackoffFunction",
    "NO_RETRY",
    "RetryPolicy",
    "RetryablePredicate",
    "exponential_backoff",
]
