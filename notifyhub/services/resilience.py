from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from notifyhub.core.errors import is_permanent


logger = logging.getLogger(__name__)


SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize retry behavior so send, bulk and consumer paths differ only in numbers.
    max_attempts: int
    base_delay_ms: int
    backoff: str = "exponential"
    max_delay_ms: int | None = None
    jitter: bool = False

    def delay_ms(self, attempt: int) -> float:
        # Delay after the given (1-based) failed attempt.
        if self.backoff == "linear":
            delay = float(self.base_delay_ms * attempt)
        else:
            delay = float(self.base_delay_ms * (2 ** (attempt - 1)))
        if self.max_delay_ms is not None:
            delay = min(delay, float(self.max_delay_ms))
        if self.jitter:
            delay *= random.uniform(0.5, 1.5)
        return delay


def _default_retryable(exc: Exception) -> bool:
    return not is_permanent(exc)


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: SleepFn | None = None,
    on_retry: Callable[[int, Exception], None] | None = None,
) -> Any:
    """Run ``operation`` up to ``policy.max_attempts`` times.

    Permanent errors (and anything ``retryable`` rejects) propagate on the
    first occurrence. Once attempts are exhausted the last error is re-raised
    unchanged.
    """
    retryable = retryable or _default_retryable
    sleep = sleep or asyncio.sleep
    max_attempts = max(policy.max_attempts, 1)
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001 - re-raised unless classified transient
            if attempt >= max_attempts or not retryable(exc):
                raise
            delay_ms = policy.delay_ms(attempt)
            logger.info(
                "retry_scheduled attempt=%s max_attempts=%s delay_ms=%.0f error=%s",
                attempt,
                max_attempts,
                delay_ms,
                type(exc).__name__,
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            await sleep(delay_ms / 1000.0)
            attempt += 1


class Bulkhead:
    def __init__(self, name: str, limit: int) -> None:
        # Use asyncio semaphores to cap concurrency for expensive operations.
        self._name = name
        self._limit = max(1, limit)
        self._sem = asyncio.Semaphore(self._limit)
        self._in_flight = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def __aenter__(self) -> "Bulkhead":
        # Wait for a slot rather than rejecting so inline sends queue up under load.
        await self._sem.acquire()
        self._in_flight += 1
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self._in_flight -= 1
        self._sem.release()
