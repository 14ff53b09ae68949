"""Payment provider registry.

Holds one provider and one circuit breaker per provider name, and runs every
provider call as ``breaker.execute(lambda: retry.run(call))``: the breaker
counts one logical external call and its timeout caps the total retry time.
Only GatewayTransientError (network, 5xx, timeouts) is retried.
"""

from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from core.errors import GatewayTransientError, ValidationError
from core.resilience.circuit_breaker import CircuitBreaker
from core.resilience.retry import RetryPolicy
from patterns.domain_config import CommerceConfig
from verticals.bookstore.payments.base import PaymentMethod, PaymentProvider
from verticals.bookstore.payments.fake import FakeProvider
from verticals.bookstore.payments.phonepe import PhonePeProvider
from verticals.bookstore.payments.razorpay import RazorpayProvider

logger = structlog.get_logger(__name__)

T = TypeVar("T")

__all__ = [
    "PaymentMethod",
    "PaymentProvider",
    "ProviderRegistry",
    "build_registry",
]


class ProviderRegistry:
    def __init__(self, retry: Optional[RetryPolicy] = None, breaker_factory: Optional[Callable[[str], CircuitBreaker]] = None):
        self._providers: dict[str, PaymentProvider] = {}
        self._breakers: dict[str, CircuitBreaker] = {}
        self.retry = retry or RetryPolicy(retry_on=(GatewayTransientError,))
        self._breaker_factory = breaker_factory or (lambda name: CircuitBreaker(name=name))

    def register(self, provider: PaymentProvider, breaker: Optional[CircuitBreaker] = None) -> None:
        self._providers[provider.name] = provider
        self._breakers[provider.name] = breaker or self._breaker_factory(provider.name)

    def get(self, name: str) -> PaymentProvider:
        provider = self._providers.get(name.lower())
        if provider is None:
            raise ValidationError(f"Unknown payment provider: {name}", {"provider": name})
        return provider

    def has(self, name: str) -> bool:
        return name.lower() in self._providers

    def breaker(self, name: str) -> CircuitBreaker:
        return self._breakers[name.lower()]

    async def call(self, name: str, operation: Callable[[PaymentProvider], Awaitable[T]]) -> T:
        """Run ``operation(provider)`` under the provider's breaker wrapping the retry policy."""
        provider = self.get(name)
        breaker = self.breaker(provider.name)
        guarded = self.retry.wrap(operation)
        return await breaker.execute(lambda: guarded(provider))

    def snapshot(self) -> dict[str, Any]:
        return {
            name: {
                "breaker": self._breakers[name].snapshot(),
                "adapter": provider.health(),
            }
            for name, provider in self._providers.items()
        }


def build_registry(config: CommerceConfig) -> ProviderRegistry:
    """Register PhonePe and Razorpay, or fakes under the same names in dev mode."""
    cb = config.circuit_breaker
    retry = RetryPolicy(
        max_attempts=config.retry.max_attempts,
        base_delay=config.retry.base_delay_seconds,
        max_delay=config.retry.max_delay_seconds,
        exponential=config.retry.exponential,
        retry_on=(GatewayTransientError,),
    )
    registry = ProviderRegistry(
        retry=retry,
        breaker_factory=lambda name: CircuitBreaker(
            name=name,
            failure_threshold=cb.failure_threshold,
            success_threshold=cb.success_threshold,
            timeout=cb.timeout_seconds,
            reset_timeout=cb.reset_timeout_seconds,
        ),
    )

    payments = config.payments
    if payments.use_fake_providers:
        for method in PaymentMethod:
            registry.register(FakeProvider(name=method.provider_name))
        logger.warning("fake_payment_providers_enabled")
        return registry

    registry.register(PhonePeProvider(payments.phonepe, timeout=payments.request_timeout_seconds))
    registry.register(RazorpayProvider(payments.razorpay, timeout=payments.request_timeout_seconds))
    return registry
