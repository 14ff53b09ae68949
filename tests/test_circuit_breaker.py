"""Test circuit breaker state machine."""
import asyncio

import pytest

from core.errors import CircuitOpenError, GatewayTimeoutError, GatewayTransientError
from core.resilience.circuit_breaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _fail():
    raise GatewayTransientError("boom", provider="test", status=503)


async def _ok():
    return "ok"


def test_circuit_breaker_initial_state():
    cb = CircuitBreaker()
    assert cb.state == CircuitState.CLOSED
    assert cb.failure_count == 0


@pytest.mark.asyncio
async def test_circuit_breaker_success():
    cb = CircuitBreaker()
    result = await cb.execute(_ok)
    assert result == "ok"
    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_circuit_breaker_opens_and_rejects_without_calling():
    cb = CircuitBreaker(name="phonepe", failure_threshold=2)
    calls = 0

    async def counted():
        nonlocal calls
        calls += 1
        raise GatewayTransientError("down", provider="phonepe", status=502)

    for _ in range(2):
        with pytest.raises(GatewayTransientError):
            await cb.execute(counted)
    assert cb.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError) as exc_info:
        await cb.execute(counted)
    assert calls == 2
    assert exc_info.value.status_code == 503
    assert exc_info.value.details["breaker"] == "phonepe"


@pytest.mark.asyncio
async def test_success_resets_failure_count():
    cb = CircuitBreaker(failure_threshold=3)
    with pytest.raises(GatewayTransientError):
        await cb.execute(_fail)
    assert cb.failure_count == 1
    await cb.execute(_ok)
    assert cb.failure_count == 0
    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_closes_after_successes():
    clock = FakeClock()
    cb = CircuitBreaker(failure_threshold=1, success_threshold=2, reset_timeout=30.0, clock=clock)
    with pytest.raises(GatewayTransientError):
        await cb.execute(_fail)
    assert cb.state == CircuitState.OPEN

    clock.now += 31
    await cb.execute(_ok)
    assert cb.state == CircuitState.HALF_OPEN
    await cb.execute(_ok)
    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_failure_reopens():
    clock = FakeClock()
    cb = CircuitBreaker(failure_threshold=1, reset_timeout=10.0, clock=clock)
    with pytest.raises(GatewayTransientError):
        await cb.execute(_fail)

    clock.now += 11
    with pytest.raises(GatewayTransientError):
        await cb.execute(_fail)
    assert cb.state == CircuitState.OPEN
    assert cb.snapshot()["retry_after_seconds"] == 10.0


@pytest.mark.asyncio
async def test_timeout_counts_as_failure():
    cb = CircuitBreaker(failure_threshold=1, timeout=0.01)

    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(GatewayTimeoutError):
        await cb.execute(slow)
    assert cb.state == CircuitState.OPEN


def test_snapshot_of_fresh_breaker():
    cb = CircuitBreaker(name="razorpay")
    snap = cb.snapshot()
    assert snap["name"] == "razorpay"
    assert snap["state"] == "closed"
    assert snap["failure_count"] == 0
    assert snap["retry_after_seconds"] is None
