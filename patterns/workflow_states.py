"""Enum-based workflow state machine pattern.

Defines workflow states as Python enums with explicit transition validation.
The state definitions are independent of persistence: the ORM models store
these enums and services call ``machine.validate(current, target)`` before
assigning a new status.

Machines defined here:
- PAYMENT_MACHINE: order payment lifecycle
- FULFILLMENT_MACHINE: order fulfillment lifecycle (gated on payment)
- TRANSACTION_MACHINE: one money-movement attempt
- REFUND_MACHINE: refund of a successful transaction
- CART_MACHINE: cart lifecycle
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

from core.errors import InvalidStateTransition


# ---------------------------------------------------------------------------
# State definitions
# ---------------------------------------------------------------------------

class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class FulfillmentStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class RefundStatus(str, Enum):
    INITIATED = "INITIATED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class CartStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CHECKOUT = "CHECKOUT"
    COMPLETED = "COMPLETED"
    ABANDONED = "ABANDONED"


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

S = TypeVar("S", bound=Enum)


@dataclass(frozen=True)
class StateMachine(Generic[S]):
    """Transition table for one status field.

    Usage::

        PAYMENT_MACHINE.validate(order.payment_status, PaymentStatus.PAID)
        order.payment_status = PaymentStatus.PAID
    """

    name: str
    transitions: dict[S, list[S]]

    def allowed(self, current: S) -> list[S]:
        return list(self.transitions.get(current, []))

    def can_transition(self, current: S, target: S) -> bool:
        """Check if a transition is allowed from the current state."""
        return target in self.transitions.get(current, [])

    def validate(self, current: S, target: S) -> None:
        """Raise InvalidStateTransition if ``current -> target`` is not allowed."""
        if not self.can_transition(current, target):
            raise InvalidStateTransition(
                self.name,
                current.value,
                target.value,
                [s.value for s in self.allowed(current)],
            )

    def is_terminal(self, state: S) -> bool:
        return len(self.transitions.get(state, [])) == 0


# ---------------------------------------------------------------------------
# Transition rules
# ---------------------------------------------------------------------------

PAYMENT_MACHINE: StateMachine[PaymentStatus] = StateMachine(
    "payment",
    {
        PaymentStatus.PENDING: [PaymentStatus.PAID, PaymentStatus.FAILED],
        PaymentStatus.PAID: [PaymentStatus.REFUNDED],
        PaymentStatus.FAILED: [],    # terminal
        PaymentStatus.REFUNDED: [],  # terminal
    },
)

FULFILLMENT_MACHINE: StateMachine[FulfillmentStatus] = StateMachine(
    "fulfillment",
    {
        FulfillmentStatus.NOT_STARTED: [FulfillmentStatus.PROCESSING, FulfillmentStatus.CANCELLED],
        FulfillmentStatus.PROCESSING: [FulfillmentStatus.SHIPPED, FulfillmentStatus.CANCELLED],
        FulfillmentStatus.SHIPPED: [FulfillmentStatus.DELIVERED],
        FulfillmentStatus.DELIVERED: [],  # terminal
        FulfillmentStatus.CANCELLED: [],  # terminal
    },
)

TRANSACTION_MACHINE: StateMachine[TransactionStatus] = StateMachine(
    "transaction",
    {
        TransactionStatus.PENDING: [TransactionStatus.SUCCESS, TransactionStatus.FAILED],
        TransactionStatus.SUCCESS: [],
        TransactionStatus.FAILED: [],
    },
)

REFUND_MACHINE: StateMachine[RefundStatus] = StateMachine(
    "refund",
    {
        RefundStatus.INITIATED: [RefundStatus.SUCCESS, RefundStatus.FAILED],
        RefundStatus.SUCCESS: [],
        RefundStatus.FAILED: [],
    },
)

CART_MACHINE: StateMachine[CartStatus] = StateMachine(
    "cart",
    {
        CartStatus.ACTIVE: [CartStatus.CHECKOUT, CartStatus.ABANDONED],
        CartStatus.CHECKOUT: [CartStatus.COMPLETED, CartStatus.ABANDONED, CartStatus.ACTIVE],
        CartStatus.COMPLETED: [],
        CartStatus.ABANDONED: [],
    },
)


def validate_fulfillment_change(
    payment_status: PaymentStatus,
    current: FulfillmentStatus,
    target: FulfillmentStatus,
) -> None:
    """Fulfillment work cannot start until the order is paid.

    Cancelling an unstarted order is always allowed.
    """
    FULFILLMENT_MACHINE.validate(current, target)
    if (
        current == FulfillmentStatus.NOT_STARTED
        and target != FulfillmentStatus.CANCELLED
        and payment_status != PaymentStatus.PAID
    ):
        raise InvalidStateTransition(
            FULFILLMENT_MACHINE.name,
            current.value,
            target.value,
            [FulfillmentStatus.CANCELLED.value],
        )

