"""Bookstore business rules — pure functions.

Re-exports the rules engine pattern and adds bookstore money helpers.
"""

from decimal import ROUND_HALF_UP, Decimal

from patterns.rules_engine import (
    RuleResult,
    check_price_drift,
    check_quantity_limit,
    check_refund_amount,
    check_stock_availability,
)

__all__ = [
    "RuleResult",
    "check_price_drift",
    "check_quantity_limit",
    "check_refund_amount",
    "check_stock_availability",
    "to_cents",
    "quantize_money",
]


def to_cents(amount: Decimal) -> int:
    """Minor units (cents / paise) for a decimal amount."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def quantize_money(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
