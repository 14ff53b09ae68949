"""Pure-function rules engine pattern.

Rules are stateless functions: (values, context) -> RuleResult.
No database, no side effects. The cart ledger, merge engine and checkout
call these against values they have already loaded under a row lock.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class RuleResult:
    """Outcome of a single rule evaluation."""

    passed: bool
    rule_name: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Commerce rules
# ---------------------------------------------------------------------------

def check_stock_availability(
    stock_quantity: int,
    reserved_quantity: int,
    requested: int,
) -> RuleResult:
    """Check that ``stock - reserved`` covers the requested quantity.

    Availability is clamped at zero.
    """
    available = max(stock_quantity - reserved_quantity, 0)
    passed = available >= requested

    return RuleResult(
        passed=passed,
        rule_name="stock_availability",
        message=(
            f"In stock: {available} available"
            if passed
            else f"Only {available} items available"
        ),
        details={"available": available, "requested": requested},
    )


def check_price_drift(
    local_price_cents: int | None,
    live_price_cents: int,
    tolerance_cents: int = 0,
) -> RuleResult:
    """Compare a client-side price snapshot with the live price.

    A missing snapshot always passes.
    """
    if local_price_cents is None:
        return RuleResult(True, "price_drift", "No local price to compare")

    drift = abs(live_price_cents - local_price_cents)
    passed = drift <= tolerance_cents
    return RuleResult(
        passed=passed,
        rule_name="price_drift",
        message=(
            "Price unchanged"
            if passed
            else f"Price has changed from {Decimal(local_price_cents) / 100:.2f} "
                 f"to {Decimal(live_price_cents) / 100:.2f}"
        ),
        details={"oldPrice": local_price_cents, "newPrice": live_price_cents},
    )


def check_quantity_limit(quantity: int, max_quantity: int) -> RuleResult:
    passed = 0 < quantity <= max_quantity
    return RuleResult(
        passed=passed,
        rule_name="quantity_limit",
        message=(
            "Quantity accepted"
            if passed
            else f"Quantity must be between 1 and {max_quantity}"
        ),
        details={"quantity": quantity, "max": max_quantity},
    )


def check_refund_amount(
    amount: Decimal,
    transaction_amount: Decimal,
    already_refunded: bool = False,
) -> RuleResult:
    """A transaction may be refunded once, for at most its captured amount."""
    reasons = []
    if already_refunded:
        reasons.append("Transaction already has a refund")
    if amount <= 0:
        reasons.append("Refund amount must be positive")
    if amount > transaction_amount:
        reasons.append(f"Refund amount {amount} exceeds transaction amount {transaction_amount}")

    return RuleResult(
        passed=not reasons,
        rule_name="refund_amount",
        message="Refund allowed" if not reasons else "; ".join(reasons),
        details={"amount": str(amount), "transactionAmount": str(transaction_amount)},
    )
