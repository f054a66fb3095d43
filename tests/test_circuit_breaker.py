import asyncio

import pytest

from onboarding.circuit_breaker import CircuitBreaker, CircuitState
from onboarding.errors import CircuitOpenError


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _fail() -> None:
    raise ConnectionError("connection reset")


async def _succeed() -> str:
    return "ok"


def _trip(breaker: CircuitBreaker, failures: int) -> None:
    for _ in range(failures):
        with pytest.raises(ConnectionError):
            asyncio.run(breaker.call(_fail))


def test_opens_after_max_failures_and_rejects_without_calling() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("accounts", max_failures=3, reset_timeout=30, clock=clock)
    _trip(breaker, 3)

    assert breaker.state is CircuitState.OPEN
    calls = {"count": 0}

    async def counted() -> str:
        calls["count"] += 1
        return "ok"

    with pytest.raises(CircuitOpenError) as exc_info:
        asyncio.run(breaker.call(counted))

    assert calls["count"] == 0
    assert exc_info.value.retryable is True


def test_half_open_trial_success_closes_breaker() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("accounts", max_failures=2, reset_timeout=30, clock=clock)
    _trip(breaker, 2)

    clock.now += 31
    assert asyncio.run(breaker.call(_succeed)) == "ok"
    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 0


def test_half_open_trial_failure_reopens() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("accounts", max_failures=2, reset_timeout=30, clock=clock)
    _trip(breaker, 2)

    clock.now += 31
    _trip(breaker, 1)
    assert breaker.state is CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        asyncio.run(breaker.call(_succeed))


def test_success_in_closed_resets_consecutive_failures() -> None:
    breaker = CircuitBreaker("linkage", max_failures=3, reset_timeout=30)
    _trip(breaker, 2)
    asyncio.run(breaker.call(_succeed))
    _trip(breaker, 2)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 2


def test_half_open_admits_single_trial() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker("accounts", max_failures=1, reset_timeout=10, clock=clock)
    _trip(breaker, 1)
    clock.now += 11

    async def scenario() -> list[object]:
        release = asyncio.Event()

        async def slow_trial() -> str:
            await release.wait()
            return "trial"

        first = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)
        second = asyncio.create_task(breaker.call(_succeed))
        await asyncio.sleep(0)
        release.set()
        return await asyncio.gather(first, second, return_exceptions=True)

    first_result, second_result = asyncio.run(scenario())
    assert first_result == "trial"
    assert isinstance(second_result, CircuitOpenError)
    assert breaker.state is CircuitState.CLOSED


def test_cancelled_call_is_not_counted_as_failure() -> None:
    breaker = CircuitBreaker("accounts", max_failures=1, reset_timeout=10)

    async def scenario() -> None:
        task = asyncio.create_task(breaker.call(lambda: asyncio.sleep(10)))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 0
