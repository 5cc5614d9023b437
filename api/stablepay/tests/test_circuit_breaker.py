from __future__ import annotations

import pytest

from stablepay.core.errors import CircuitBreakerError
from stablepay.safety.circuit_breaker import BreakerConfig, CircuitBreaker, CircuitState


class Flaky:
    def __init__(self) -> None:
        self.calls = 0
        self.fail = True

    async def __call__(self) -> str:
        self.calls += 1
        if self.fail:
            raise ConnectionError("upstream down")
        return "ok"


async def _trip(breaker: CircuitBreaker, operation: Flaky, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.execute(operation)


@pytest.mark.asyncio
async def test_opens_after_threshold_and_rejects_without_calling(ticker):
    breaker = CircuitBreaker("GAS_ORACLE", BreakerConfig(failure_threshold=3, recovery_timeout=30), clock=ticker)
    operation = Flaky()

    await _trip(breaker, operation, 3)
    assert breaker.state is CircuitState.OPEN
    assert operation.calls == 3

    with pytest.raises(CircuitBreakerError) as excinfo:
        await breaker.execute(operation)
    assert operation.calls == 3
    assert excinfo.value.metrics["state"] == "OPEN"
    assert excinfo.value.service == "GAS_ORACLE"


@pytest.mark.asyncio
async def test_half_open_success_closes_and_resets_failures(ticker):
    breaker = CircuitBreaker("FX_ORACLE", BreakerConfig(failure_threshold=2, recovery_timeout=60), clock=ticker)
    operation = Flaky()
    await _trip(breaker, operation, 2)

    ticker.advance(59)
    with pytest.raises(CircuitBreakerError):
        await breaker.execute(operation)

    ticker.advance(1)
    operation.fail = False
    assert await breaker.execute(operation) == "ok"
    assert breaker.state is CircuitState.CLOSED
    assert breaker.failures == 0
    assert operation.calls == 3


@pytest.mark.asyncio
async def test_half_open_failure_reopens_immediately(ticker):
    breaker = CircuitBreaker("CIRCLE_API", BreakerConfig(failure_threshold=5, recovery_timeout=120), clock=ticker)
    operation = Flaky()
    await _trip(breaker, operation, 5)

    ticker.advance(120)
    await _trip(breaker, operation, 1)
    assert breaker.state is CircuitState.OPEN
    assert breaker.next_attempt == ticker.now + 120


@pytest.mark.asyncio
async def test_success_resets_streak_but_not_failure_rate(ticker):
    breaker = CircuitBreaker("LLM_SERVICE", BreakerConfig(failure_threshold=3, recovery_timeout=45), clock=ticker)
    operation = Flaky()
    await _trip(breaker, operation, 2)
    operation.fail = False
    await breaker.execute(operation)
    operation.fail = True
    await _trip(breaker, operation, 2)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.failures == 2
    assert breaker.failure_rate() == 80.0


@pytest.mark.asyncio
async def test_reset_clears_state(ticker):
    breaker = CircuitBreaker("SECRETS_MANAGER", BreakerConfig(failure_threshold=2, recovery_timeout=15), clock=ticker)
    await _trip(breaker, Flaky(), 2)
    breaker.reset()
    metrics = breaker.metrics()
    assert metrics["state"] == "CLOSED"
    assert metrics["total_requests"] == 0
    assert metrics["failure_rate"] == 0.0
