"""Pydantic schemas for API request validation.

The wire format is camelCase; fields are snake_case in Python and accept
either spelling on input.
"""

from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from patterns.workflow_states import FulfillmentStatus
from verticals.bookstore.payments.base import PaymentMethod


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------

class AddItemRequest(CamelModel):
    book_format_variant_id: int = Field(..., ge=1)
    qty: int = Field(1, ge=1)


class UpdateItemRequest(CamelModel):
    qty: int = Field(..., ge=0)


class MergeItem(CamelModel):
    book_format_variant_id: int = Field(..., ge=1)
    qty: int = Field(..., ge=1)
    local_price_cents: Optional[int] = Field(None, ge=0)


class MergeRequest(CamelModel):
    session_id: str = Field(..., min_length=1, max_length=255)
    items: list[MergeItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Checkout & orders
# ---------------------------------------------------------------------------

class CheckoutRequest(CamelModel):
    payment_method: PaymentMethod
    shipping_address: Optional[dict[str, Any]] = None


class RefundCreate(CamelModel):
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=10, decimal_places=2)
    reason: str = Field("", max_length=500)


class FulfillmentUpdate(CamelModel):
    status: FulfillmentStatus
    comment: Optional[str] = Field(None, max_length=1000)
