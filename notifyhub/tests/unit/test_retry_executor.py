from __future__ import annotations

import asyncio

import pytest

from notifyhub.core.errors import InvalidTokenError, TransientDeliveryError
from notifyhub.services.resilience import Bulkhead, RetryPolicy, with_retry
from notifyhub.tests.utils.settings import RecordingSleep


class _Flaky:
    # Fails the first `failures` calls, then returns "ok".
    def __init__(self, failures: int, exc_type: type[Exception] = TransientDeliveryError) -> None:
        self.failures = failures
        self.exc_type = exc_type
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_type(f"attempt {self.calls} failed")
        return "ok"


def test_exponential_and_linear_delays() -> None:
    exponential = RetryPolicy(max_attempts=4, base_delay_ms=100)
    assert [exponential.delay_ms(attempt) for attempt in (1, 2, 3)] == [100.0, 200.0, 400.0]

    linear = RetryPolicy(max_attempts=4, base_delay_ms=100, backoff="linear")
    assert [linear.delay_ms(attempt) for attempt in (1, 2, 3)] == [100.0, 200.0, 300.0]

    capped = RetryPolicy(max_attempts=10, base_delay_ms=1000, max_delay_ms=3000)
    assert capped.delay_ms(5) == 3000.0


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures_with_backoff() -> None:
    sleep = RecordingSleep()
    operation = _Flaky(failures=2)

    result = await with_retry(operation, policy=RetryPolicy(max_attempts=3, base_delay_ms=1000), sleep=sleep)

    assert result == "ok"
    assert operation.calls == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_reraises_last_error_when_attempts_exhausted() -> None:
    sleep = RecordingSleep()
    operation = _Flaky(failures=5)

    with pytest.raises(TransientDeliveryError, match="attempt 3 failed"):
        await with_retry(operation, policy=RetryPolicy(max_attempts=3, base_delay_ms=10), sleep=sleep)

    assert operation.calls == 3
    assert len(sleep.delays) == 2


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried() -> None:
    sleep = RecordingSleep()
    operation = _Flaky(failures=1, exc_type=InvalidTokenError)

    with pytest.raises(InvalidTokenError):
        await with_retry(operation, policy=RetryPolicy(max_attempts=5, base_delay_ms=10), sleep=sleep)

    assert operation.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_custom_retryable_and_on_retry_hook() -> None:
    sleep = RecordingSleep()
    seen: list[int] = []
    operation = _Flaky(failures=1, exc_type=ValueError)

    result = await with_retry(
        operation,
        policy=RetryPolicy(max_attempts=2, base_delay_ms=5),
        retryable=lambda exc: isinstance(exc, ValueError),
        sleep=sleep,
        on_retry=lambda attempt, exc: seen.append(attempt),
    )

    assert result == "ok"
    assert seen == [1]


@pytest.mark.asyncio
async def test_single_attempt_policy_never_sleeps() -> None:
    sleep = RecordingSleep()
    operation = _Flaky(failures=1)

    with pytest.raises(TransientDeliveryError):
        await with_retry(operation, policy=RetryPolicy(max_attempts=1, base_delay_ms=10), sleep=sleep)

    assert sleep.delays == []


@pytest.mark.asyncio
async def test_bulkhead_caps_concurrency() -> None:
    bulkhead = Bulkhead("test", 2)
    peak = 0

    async def _work() -> None:
        nonlocal peak
        async with bulkhead:
            peak = max(peak, bulkhead.in_flight)
            await asyncio.sleep(0.01)

    await asyncio.gather(*(_work() for _ in range(6)))

    assert peak == 2
    assert bulkhead.in_flight == 0
