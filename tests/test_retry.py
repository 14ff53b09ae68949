"""Test retry policy and its nesting inside the provider registry."""
import pytest

from core.errors import CircuitOpenError, GatewayRejected, GatewayTransientError
from core.resilience.circuit_breaker import CircuitBreaker, CircuitState
from core.resilience.retry import RetryPolicy
from verticals.bookstore.payments import ProviderRegistry
from verticals.bookstore.payments.fake import FakeProvider


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_delay_exponential_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
    assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]


def test_delay_constant():
    policy = RetryPolicy(base_delay=2.0, exponential=False)
    assert policy.delay_for(1) == policy.delay_for(4) == 2.0


@pytest.mark.asyncio
async def test_retries_transient_then_succeeds():
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=3, base_delay=0.5, retry_on=(GatewayTransientError,), sleep=sleep)
    attempt = 0

    async def flaky():
        nonlocal attempt
        attempt += 1
        if attempt < 3:
            raise GatewayTransientError("503", provider="p", status=503)
        return "success"

    assert await policy.run(flaky) == "success"
    assert attempt == 3
    assert sleep.delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_does_not_retry_rejection():
    sleep = RecordingSleep()
    policy = RetryPolicy(max_attempts=3, retry_on=(GatewayTransientError,), sleep=sleep)
    attempt = 0

    async def rejected():
        nonlocal attempt
        attempt += 1
        raise GatewayRejected("bad request", provider="p", status=400)

    with pytest.raises(GatewayRejected) as exc_info:
        await policy.run(rejected)
    assert attempt == 1
    assert exc_info.value.attempts == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_exhausted_attaches_attempts():
    policy = RetryPolicy(max_attempts=2, base_delay=0, sleep=RecordingSleep())

    async def always():
        raise GatewayTransientError("down", provider="p")

    with pytest.raises(GatewayTransientError) as exc_info:
        await policy.run(always)
    assert exc_info.value.attempts == 2


@pytest.mark.asyncio
async def test_wrap_passes_arguments():
    policy = RetryPolicy(max_attempts=1)

    async def add(a, b):
        return a + b

    guarded = policy.wrap(add)
    assert guarded.__name__ == "add"
    assert await guarded(2, 3) == 5


@pytest.mark.asyncio
async def test_registry_counts_one_breaker_failure_per_retried_call():
    provider = FakeProvider(name="phonepe")
    breaker = CircuitBreaker(name="phonepe", failure_threshold=2)
    registry = ProviderRegistry(
        retry=RetryPolicy(max_attempts=3, base_delay=0, retry_on=(GatewayTransientError,), sleep=RecordingSleep())
    )
    registry.register(provider, breaker)

    provider.configure(transient_failures=10)

    async def op(p):
        return await p._simulate()

    with pytest.raises(GatewayTransientError):
        await registry.call("phonepe", op)
    assert provider.transient_failures == 7
    assert breaker.failure_count == 1

    with pytest.raises(GatewayTransientError):
        await registry.call("phonepe", op)
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        await registry.call("PHONEPE", op)
    assert provider.transient_failures == 4
