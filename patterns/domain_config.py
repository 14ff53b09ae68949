"""Dataclass-based domain configuration pattern.

The commerce pipeline defines its thresholds, timeouts and provider
credentials as frozen dataclasses. This gives you:
- Type safety (IDE autocompletion, mypy checking)
- Default values (sensible out-of-the-box)
- Immutability (frozen=True prevents accidental mutation)
- Easy overrides (from env vars)
"""

import os
from dataclasses import dataclass, field, replace
from typing import Any


# ---------------------------------------------------------------------------
# Nested config sections
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Per-provider breaker thresholds."""

    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 60.0
    reset_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy for provider calls (transient errors only)."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    exponential: bool = True


@dataclass(frozen=True)
class CartConfig:
    """Cart and reservation limits."""

    reservation_ttl_minutes: int = 15
    price_tolerance_cents: int = 0
    max_quantity_per_item: int = 99
    merge_idempotency_ttl_seconds: int = 600


@dataclass(frozen=True)
class CheckoutConfig:
    """Checkout and order lifecycle settings."""

    currency: str = "INR"
    order_timeout_minutes: int = 15
    reconcile_after_minutes: int = 5
    idempotency_ttl_seconds: int = 86400
    in_flight_wait_seconds: float = 5.0


@dataclass(frozen=True)
class PhonePeConfig:
    merchant_id: str = ""
    salt_key: str = ""
    salt_index: str = "1"
    environment: str = "sandbox"  # sandbox | production

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return "https://api.phonepe.com/apis/hermes"
        return "https://api-preprod.phonepe.com/apis/pg-sandbox"


@dataclass(frozen=True)
class RazorpayConfig:
    key_id: str = ""
    key_secret: str = ""
    webhook_secret: str = ""
    base_url: str = "https://api.razorpay.com/v1"


@dataclass(frozen=True)
class PaymentProvidersConfig:
    """Provider credentials and callback URLs."""

    phonepe: PhonePeConfig = field(default_factory=PhonePeConfig)
    razorpay: RazorpayConfig = field(default_factory=RazorpayConfig)
    app_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"
    request_timeout_seconds: float = 30.0
    # Fallback to the in-process fake provider when credentials are missing.
    use_fake_providers: bool = False


# ---------------------------------------------------------------------------
# Top-level domain config
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommerceConfig:
    """Complete configuration for the cart-to-order pipeline.

    Usage::

        config = CommerceConfig.from_env()
        breaker = CircuitBreaker(
            name="phonepe",
            failure_threshold=config.circuit_breaker.failure_threshold,
        )
    """

    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cart: CartConfig = field(default_factory=CartConfig)
    checkout: CheckoutConfig = field(default_factory=CheckoutConfig)
    payments: PaymentProvidersConfig = field(default_factory=PaymentProvidersConfig)

    # Feature flags
    maintenance_enabled: bool = False
    maintenance_interval_seconds: int = 60

    @classmethod
    def default(cls) -> "CommerceConfig":
        """Create config with all defaults."""
        return cls()

    @classmethod
    def from_env(cls, prefix: str = "BOOKSTORE_") -> "CommerceConfig":
        """Create config from environment variables.

        Example: BOOKSTORE_BREAKER_FAILURE_THRESHOLD=3, PHONEPE_SALT_KEY=...
        Provider credentials use their conventional unprefixed names.
        """
        base = cls()

        def env(name: str, cast: Any = str, default: Any = None, prefixed: bool = True) -> Any:
            raw = os.getenv(f"{prefix}{name}" if prefixed else name)
            if raw is None or raw == "":
                return default
            if cast is bool:
                return raw.lower() in ("1", "true", "yes", "on")
            return cast(raw)

        breaker = replace(
            base.circuit_breaker,
            failure_threshold=env("BREAKER_FAILURE_THRESHOLD", int, base.circuit_breaker.failure_threshold),
            success_threshold=env("BREAKER_SUCCESS_THRESHOLD", int, base.circuit_breaker.success_threshold),
            timeout_seconds=env("BREAKER_TIMEOUT_SECONDS", float, base.circuit_breaker.timeout_seconds),
            reset_timeout_seconds=env(
                "BREAKER_RESET_TIMEOUT_SECONDS", float, base.circuit_breaker.reset_timeout_seconds
            ),
        )
        retry = replace(
            base.retry,
            max_attempts=env("RETRY_MAX_ATTEMPTS", int, base.retry.max_attempts),
            base_delay_seconds=env("RETRY_BASE_DELAY_SECONDS", float, base.retry.base_delay_seconds),
            max_delay_seconds=env("RETRY_MAX_DELAY_SECONDS", float, base.retry.max_delay_seconds),
        )
        cart = replace(
            base.cart,
            reservation_ttl_minutes=env("RESERVATION_TTL_MINUTES", int, base.cart.reservation_ttl_minutes),
            price_tolerance_cents=env("PRICE_TOLERANCE_CENTS", int, base.cart.price_tolerance_cents),
            max_quantity_per_item=env("MAX_QUANTITY_PER_ITEM", int, base.cart.max_quantity_per_item),
        )
        checkout = replace(
            base.checkout,
            currency=env("CURRENCY", str, base.checkout.currency),
            order_timeout_minutes=env("ORDER_TIMEOUT_MINUTES", int, base.checkout.order_timeout_minutes),
            reconcile_after_minutes=env("RECONCILE_AFTER_MINUTES", int, base.checkout.reconcile_after_minutes),
            idempotency_ttl_seconds=env("IDEMPOTENCY_TTL_SECONDS", int, base.checkout.idempotency_ttl_seconds),
        )
        payments = PaymentProvidersConfig(
            phonepe=PhonePeConfig(
                merchant_id=env("PHONEPE_MERCHANT_ID", default="", prefixed=False),
                salt_key=env("PHONEPE_SALT_KEY", default="", prefixed=False),
                salt_index=env("PHONEPE_SALT_INDEX", default="1", prefixed=False),
                environment=env("PHONEPE_ENV", default="sandbox", prefixed=False),
            ),
            razorpay=RazorpayConfig(
                key_id=env("RAZORPAY_KEY_ID", default="", prefixed=False),
                key_secret=env("RAZORPAY_KEY_SECRET", default="", prefixed=False),
                webhook_secret=env("RAZORPAY_WEBHOOK_SECRET", default="", prefixed=False),
            ),
            app_url=env("APP_URL", default=base.payments.app_url, prefixed=False),
            frontend_url=env("FRONTEND_URL", default=base.payments.frontend_url, prefixed=False),
            use_fake_providers=env("FAKE_PAYMENTS", bool, False),
        )

        return cls(
            circuit_breaker=breaker,
            retry=retry,
            cart=cart,
            checkout=checkout,
            payments=payments,
            maintenance_enabled=env("MAINTENANCE_ENABLED", bool, False),
            maintenance_interval_seconds=env(
                "MAINTENANCE_INTERVAL_SECONDS", int, base.maintenance_interval_seconds
            ),
        )
