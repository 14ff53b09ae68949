"""SQLAlchemy models for the bookstore cart-to-order pipeline.

Every model inherits from Base. Relationships that are read after a flush
use ``lazy="selectin"`` because async sessions cannot lazy-load. The
to_dict() method provides a standard serialisation interface used by
services and routers (money is rendered as strings, never floats).
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow
from patterns.workflow_states import (
    CartStatus,
    FulfillmentStatus,
    PaymentStatus,
    RefundStatus,
    TransactionStatus,
)


def _enum(enum_cls: type[enum.Enum]) -> SAEnum:
    return SAEnum(enum_cls, native_enum=False, length=32, validate_strings=True)


def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else f"{Decimal(value):.2f}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class BookFormat(str, enum.Enum):
    HARDCOVER = "HARDCOVER"
    PAPERBACK = "PAPERBACK"
    PHYSICAL = "PHYSICAL"
    EBOOK = "EBOOK"
    PDF = "PDF"
    EPUB = "EPUB"
    AUDIOBOOK = "AUDIOBOOK"
    DOCX = "DOCX"
    WORKSHEET = "WORKSHEET"

    @property
    def is_physical(self) -> bool:
        return self in (BookFormat.HARDCOVER, BookFormat.PAPERBACK, BookFormat.PHYSICAL)


# ---------------------------------------------------------------------------
# Catalog (consumed, owned by the catalog service)
# ---------------------------------------------------------------------------

class BookFormatVariant(TimestampMixin, Base):
    """A purchasable format of a book with its shared stock pool."""

    __tablename__ = "book_format_variants"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_variant_stock_nonnegative"),
        CheckConstraint("reserved_quantity >= 0", name="ck_variant_reserved_nonnegative"),
        CheckConstraint("reserved_quantity <= stock_quantity", name="ck_variant_reserved_le_stock"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    book_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    format: Mapped[BookFormat] = mapped_column(_enum(BookFormat), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    price_map: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    isbn: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    @property
    def available_quantity(self) -> int:
        return max(self.stock_quantity - self.reserved_quantity, 0)

    @property
    def is_physical(self) -> bool:
        return self.format.is_physical

    def price_for(self, currency: str) -> Decimal:
        """Price in ``currency`` from price_map, falling back on the base price."""
        if self.price_map and currency in self.price_map:
            return Decimal(str(self.price_map[currency]))
        return Decimal(self.price)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "title": self.title,
            "format": self.format.value,
            "price": _money(self.price),
            "stockQuantity": self.stock_quantity,
            "reservedQuantity": self.reserved_quantity,
            "availableQuantity": self.available_quantity,
            "isActive": self.is_active,
        }


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------

class Cart(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A shopping cart owned by exactly one of a user or a guest session."""

    __tablename__ = "carts"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_cart_identity_xor",
        ),
        Index(
            "uq_carts_active_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE' AND user_id IS NOT NULL"),
            sqlite_where=text("status = 'ACTIVE' AND user_id IS NOT NULL"),
        ),
        Index(
            "uq_carts_active_session",
            "session_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE' AND session_id IS NOT NULL"),
            sqlite_where=text("status = 'ACTIVE' AND session_id IS NOT NULL"),
        ),
    )

    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    status: Mapped[CartStatus] = mapped_column(_enum(CartStatus), nullable=False, default=CartStatus.ACTIVE)
    checkout_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["CartItem"]] = relationship(
        back_populates="cart",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CartItem.created_at",
    )

    @property
    def subtotal(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0.00"))

    @property
    def item_count(self) -> int:
        return sum(item.qty for item in self.items)

    def item_for_variant(self, variant_id: int) -> Optional["CartItem"]:
        for item in self.items:
            if item.variant_id == variant_id:
                return item
        return None

    def to_dict(self) -> dict:
        subtotal = self.subtotal
        return {
            "id": str(self.id),
            "userId": self.user_id,
            "sessionId": self.session_id,
            "status": self.status.value,
            "items": [item.to_dict() for item in self.items],
            "itemCount": self.item_count,
            "subtotal": _money(subtotal),
            "total": _money(subtotal),
            "checkoutStartedAt": _iso(self.checkout_started_at),
            "updatedAt": _iso(self.updated_at),
        }


class CartItem(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One variant line in a cart; repeated adds increment ``qty``."""

    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("cart_id", "variant_id", name="uq_cart_items_cart_variant"),
        CheckConstraint("qty > 0", name="ck_cart_item_qty_positive"),
    )

    cart_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("book_format_variants.id", ondelete="RESTRICT"), nullable=False
    )
    qty: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_stock_reserved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    cart: Mapped["Cart"] = relationship(back_populates="items")

    @property
    def line_total(self) -> Decimal:
        return Decimal(self.unit_price) * self.qty

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "bookFormatVariantId": self.variant_id,
            "title": self.title,
            "qty": self.qty,
            "unitPrice": _money(self.unit_price),
            "lineTotal": _money(self.line_total),
            "isStockReserved": self.is_stock_reserved,
        }


class CartHistory(UUIDPrimaryKeyMixin, Base):
    """Archive row written when a cart is COMPLETED or ABANDONED."""

    __tablename__ = "cart_history"

    cart_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[CartStatus] = mapped_column(_enum(CartStatus), nullable=False)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=Decimal("0"))
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    archived_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "cartId": str(self.cart_id),
            "status": self.status.value,
            "itemCount": self.item_count,
            "totalAmount": _money(self.total_amount),
            "items": self.items,
            "archivedAt": _iso(self.archived_at),
        }


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class Order(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Point-in-time snapshot of a cart with independent payment/fulfillment status."""

    __tablename__ = "orders"

    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    cart_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("carts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True
    )
    fulfillment_status: Mapped[FulfillmentStatus] = mapped_column(
        _enum(FulfillmentStatus), nullable=False, default=FulfillmentStatus.NOT_STARTED
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    shipping_address: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", cascade="all, delete-orphan", lazy="selectin"
    )
    status_logs: Mapped[list["OrderStatusLog"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderStatusLog.changed_at",
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        back_populates="order", lazy="selectin", order_by="Transaction.created_at"
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "userId": self.user_id,
            "cartId": str(self.cart_id) if self.cart_id else None,
            "paymentStatus": self.payment_status.value,
            "fulfillmentStatus": self.fulfillment_status.value,
            "totalAmount": _money(self.total_amount),
            "currency": self.currency,
            "shippingAddress": self.shipping_address,
            "items": [item.to_dict() for item in self.items],
            "statusLog": [log.to_dict() for log in self.status_logs],
            "createdAt": _iso(self.created_at),
        }


class OrderItem(UUIDPrimaryKeyMixin, Base):
    __tablename__ = "order_items"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    variant_id: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    order: Mapped["Order"] = relationship(back_populates="items")

    def to_dict(self) -> dict:
        return {
            "bookFormatVariantId": self.variant_id,
            "title": self.title,
            "quantity": self.quantity,
            "unitPrice": _money(self.unit_price),
            "totalPrice": _money(self.total_price),
        }


class OrderStatusLog(UUIDPrimaryKeyMixin, Base):
    """Append-only audit trail of order status changes."""

    __tablename__ = "order_status_logs"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    payment_status: Mapped[Optional[PaymentStatus]] = mapped_column(_enum(PaymentStatus), nullable=True)
    fulfillment_status: Mapped[Optional[FulfillmentStatus]] = mapped_column(
        _enum(FulfillmentStatus), nullable=True
    )
    changed_by: Mapped[str] = mapped_column(String(255), nullable=False, default="system")
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    order: Mapped["Order"] = relationship(back_populates="status_logs")

    def to_dict(self) -> dict:
        return {
            "paymentStatus": self.payment_status.value if self.payment_status else None,
            "fulfillmentStatus": self.fulfillment_status.value if self.fulfillment_status else None,
            "changedBy": self.changed_by,
            "comment": self.comment,
            "changedAt": _iso(self.changed_at),
        }


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

class Transaction(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One money-movement attempt through a named provider."""

    __tablename__ = "transactions"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[TransactionStatus] = mapped_column(
        _enum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING, index=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    gateway_ref_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    raw_request: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    raw_response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    order: Mapped["Order"] = relationship(back_populates="transactions", lazy="selectin")
    refunds: Mapped[list["Refund"]] = relationship(
        back_populates="transaction", cascade="all, delete-orphan", lazy="selectin"
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "orderId": str(self.order_id),
            "provider": self.provider,
            "amount": _money(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "idempotencyKey": self.idempotency_key,
            "gatewayRefId": self.gateway_ref_id,
            "errorMessage": self.error_message,
            "refunds": [refund.to_dict() for refund in self.refunds],
            "createdAt": _iso(self.created_at),
        }


class Refund(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "refunds"

    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[RefundStatus] = mapped_column(
        _enum(RefundStatus), nullable=False, default=RefundStatus.INITIATED
    )
    gateway_refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    acquirer_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    transaction: Mapped["Transaction"] = relationship(back_populates="refunds")

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "transactionId": str(self.transaction_id),
            "amount": _money(self.amount),
            "reason": self.reason,
            "status": self.status.value,
            "gatewayRefundId": self.gateway_refund_id,
            "createdAt": _iso(self.created_at),
        }
