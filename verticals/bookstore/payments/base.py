"""Payment provider port (abstract interface).

Defines the contract every payment provider adapter implements:
initiate a payment, verify an inbound webhook, look up a payment status,
refund a captured payment.
Swapping PhonePe, Razorpay or the fake provider never changes checkout code.

Provider methods raise the gateway error taxonomy
(GatewayTransientError / GatewayRejected); they never retry on their own.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Optional

from core.integrations.webhooks import WebhookVerification
from verticals.bookstore.rules import to_cents


class PaymentMethod(str, Enum):
    PHONEPE = "PHONEPE"
    RAZORPAY = "RAZORPAY"

    @property
    def provider_name(self) -> str:
        return self.value.lower()


@dataclass(frozen=True)
class PaymentInitiation:
    """Everything a provider needs to start collecting money for one transaction."""

    transaction_id: str
    order_id: str
    amount: Decimal
    currency: str
    user_ref: str
    callback_url: str
    redirect_url: str
    idempotency_key: str


@dataclass(frozen=True)
class PaymentInitiationResult:
    gateway_ref_id: str
    action: str  # REDIRECT | MODAL
    redirect_url: Optional[str] = None
    client_payload: dict[str, Any] = field(default_factory=dict)
    raw_request: dict[str, Any] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


class ProviderPaymentState(str, Enum):
    """What the provider reports for a payment when asked directly."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


@dataclass(frozen=True)
class PaymentStatusResult:
    gateway_ref_id: str
    state: ProviderPaymentState
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundRequest:
    refund_id: str
    transaction_id: str
    gateway_ref_id: str
    amount: Decimal
    reason: str = ""


@dataclass(frozen=True)
class RefundResult:
    gateway_refund_id: str
    raw_response: dict[str, Any] = field(default_factory=dict)


class PaymentProvider(ABC):
    """Abstract payment provider interface."""

    name: str

    @abstractmethod
    async def initiate(self, request: PaymentInitiation) -> PaymentInitiationResult:
        """Create the payment on the provider side."""
        ...

    @abstractmethod
    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookVerification:
        """Recompute the signature over the raw body and decode the event."""
        ...

    @abstractmethod
    async def refund(self, request: RefundRequest) -> RefundResult:
        """Refund a previously captured payment."""
        ...

    @abstractmethod
    async def get_payment_status(self, gateway_ref_id: str) -> PaymentStatusResult:
        """Ask the provider where a payment stands (used when a webhook never arrived)."""
        ...

    def health(self) -> Optional[dict[str, Any]]:
        return None


def to_minor_units(amount: Decimal) -> int:
    """Paise for an INR amount (any 2-decimal currency)."""
    return to_cents(amount)
