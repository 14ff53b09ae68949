"""Error taxonomy shared by the cart, checkout and payment layers.

Every error carries an HTTP status and a stable machine-readable code so
the API layer can render them with a single exception handler:

- ValidationError: malformed input (never retried)
- NotFoundError: missing cart / item / variant / order / transaction
- StockConflict: insufficient availability (surfaced, never retried)
- PriceConflict: advisory only, reported inside merge results
- GatewayTransientError / GatewayTimeoutError: network, 5xx, timeouts (retryable)
- GatewayRejected: 4xx from a provider (not retryable)
- CircuitOpenError: breaker is open, fail fast
- IdempotencyInProgress: same key is still being processed
- SignatureInvalid: webhook signature mismatch
- InvalidStateTransition: illegal status change on an aggregate
"""
from __future__ import annotations
from typing import Any


class CommerceError(Exception):
    """Base exception for all bookstore commerce errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(CommerceError):
    """Raised for malformed or semantically invalid input."""

    status_code = 400
    code = "validation_error"


class NotFoundError(CommerceError):
    """Raised when a cart, item, variant, order or transaction is missing."""

    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, identifier: Any):
        self.entity = entity
        self.identifier = identifier
        super().__init__(
            f"{entity} not found: {identifier}",
            {"entity": entity, "id": str(identifier)},
        )


class StockConflict(CommerceError):
    """Raised when a variant does not have enough available stock."""

    status_code = 409
    code = "insufficient_stock"

    def __init__(self, variant_id: int, requested: int, available: int):
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Only {max(available, 0)} items available for variant {variant_id}",
            {"variantId": variant_id, "requested": requested, "available": max(available, 0)},
        )


class PriceConflict(CommerceError):
    """Advisory price drift between a client snapshot and the live price.

    Never raised on the request path: merge reports it as a conflict entry.
    """

    status_code = 200
    code = "price_changed"

    def __init__(self, variant_id: int, old_price_cents: int, new_price_cents: int):
        self.variant_id = variant_id
        self.old_price_cents = old_price_cents
        self.new_price_cents = new_price_cents
        super().__init__(
            f"Price has changed from {old_price_cents / 100:.2f} to {new_price_cents / 100:.2f}",
            {"oldPrice": old_price_cents, "newPrice": new_price_cents},
        )


class GatewayError(CommerceError):
    """Base class for payment provider failures."""

    status_code = 502
    code = "gateway_error"

    def __init__(
        self,
        message: str,
        provider: str = "",
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.provider = provider
        self.status = status
        self.attempts = 1
        merged = {"provider": provider, **(details or {})}
        if status is not None:
            merged["providerStatus"] = status
        super().__init__(message, merged)


class GatewayTransientError(GatewayError):
    """Network failure or 5xx from a provider. Safe to retry."""

    code = "gateway_unavailable"


class GatewayTimeoutError(GatewayTransientError):
    """The provider call exceeded its hard timeout."""

    status_code = 504
    code = "gateway_timeout"


class GatewayRejected(GatewayError):
    """4xx from a provider: the request itself was refused."""

    status_code = 402
    code = "payment_rejected"


class CircuitOpenError(CommerceError):
    """Raised without calling the dependency while a breaker is open."""

    status_code = 503
    code = "circuit_open"

    def __init__(self, name: str, retry_after: float):
        self.name = name
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker [{name}] is OPEN. Try again later.",
            {"breaker": name, "retryAfterSeconds": round(max(retry_after, 0.0), 1)},
        )


class IdempotencyInProgress(CommerceError):
    """A request with the same idempotency key is still running."""

    status_code = 409
    code = "idempotency_in_progress"

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            "A request with this idempotency key is already in progress",
            {"idempotencyKey": key},
        )


class SignatureInvalid(CommerceError):
    """Webhook signature or checksum did not match."""

    status_code = 401
    code = "signature_invalid"


class InvalidStateTransition(CommerceError):
    """An aggregate was asked to move to a state its machine does not allow."""

    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, machine: str, current: str, target: str, allowed: list[str]):
        self.machine = machine
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot transition {machine} from {current} to {target}. Allowed: {allowed}",
            {"machine": machine, "from": current, "to": target, "allowed": allowed},
        )
