"""Bookstore repositories — async database access for the commerce pipeline.

Extends BaseRepository with locking reads and the atomic stock counter
updates. Every method runs on the caller's session; the caller owns the
transaction.
"""

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import case, select, update

from patterns.repository import BaseRepository
from patterns.workflow_states import CartStatus, PaymentStatus, TransactionStatus
from verticals.bookstore.models.db_models import (
    BookFormatVariant,
    Cart,
    CartHistory,
    Order,
    Transaction,
)


# ---------------------------------------------------------------------------
# Variant repository
# ---------------------------------------------------------------------------

class VariantRepository(BaseRepository[BookFormatVariant]):
    """Stock counters on book format variants.

    ``try_reserve`` is the only way reserved_quantity grows: a single
    conditional UPDATE, so availability can never go negative even if two
    transactions race past their own checks.
    """

    model = BookFormatVariant

    async def try_reserve(self, variant_id: int, qty: int) -> bool:
        stmt = (
            update(BookFormatVariant)
            .where(
                BookFormatVariant.id == variant_id,
                BookFormatVariant.stock_quantity - BookFormatVariant.reserved_quantity >= qty,
            )
            .values(reserved_quantity=BookFormatVariant.reserved_quantity + qty)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def release(self, variant_id: int, qty: int) -> None:
        """Give back ``qty`` reserved units, clamping at zero."""
        stmt = (
            update(BookFormatVariant)
            .where(BookFormatVariant.id == variant_id)
            .values(
                reserved_quantity=case(
                    (BookFormatVariant.reserved_quantity >= qty, BookFormatVariant.reserved_quantity - qty),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def commit_stock(self, variant_id: int, qty: int) -> None:
        """Convert a reservation into a sale: stock and reserved both drop by ``qty``."""
        stmt = (
            update(BookFormatVariant)
            .where(BookFormatVariant.id == variant_id)
            .values(
                stock_quantity=BookFormatVariant.stock_quantity - qty,
                reserved_quantity=case(
                    (BookFormatVariant.reserved_quantity >= qty, BookFormatVariant.reserved_quantity - qty),
                    else_=0,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)


# ---------------------------------------------------------------------------
# Cart repository
# ---------------------------------------------------------------------------

class CartRepository(BaseRepository[Cart]):
    model = Cart

    async def get_active(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        for_update: bool = False,
    ) -> Optional[Cart]:
        """Get the single ACTIVE cart for a user or a guest session."""
        stmt = select(Cart).where(Cart.status == CartStatus.ACTIVE)
        if user_id is not None:
            stmt = stmt.where(Cart.user_id == user_id)
        else:
            stmt = stmt.where(Cart.session_id == session_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_stale_active(self, older_than: datetime, limit: int = 100) -> list[uuid.UUID]:
        stmt = (
            select(Cart.id)
            .where(Cart.status == CartStatus.ACTIVE, Cart.updated_at < older_than)
            .order_by(Cart.updated_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def archive(self, history: CartHistory) -> CartHistory:
        self.session.add(history)
        await self.session.flush()
        return history


# ---------------------------------------------------------------------------
# Order / transaction repositories
# ---------------------------------------------------------------------------

class OrderRepository(BaseRepository[Order]):
    model = Order

    async def find_timed_out(self, created_before: datetime, limit: int = 100) -> list[uuid.UUID]:
        stmt = (
            select(Order.id)
            .where(Order.payment_status == PaymentStatus.PENDING, Order.created_at < created_before)
            .order_by(Order.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class TransactionRepository(BaseRepository[Transaction]):
    model = Transaction

    async def get_by_gateway_ref(self, gateway_ref_id: str, *, for_update: bool = False) -> Optional[Transaction]:
        stmt = select(Transaction).where(Transaction.gateway_ref_id == gateway_ref_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def pending_for_order(self, order_id: uuid.UUID, *, for_update: bool = False) -> list[Transaction]:
        stmt = select(Transaction).where(
            Transaction.order_id == order_id,
            Transaction.status == TransactionStatus.PENDING,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def find_pending_before(self, created_before: datetime, limit: int = 50) -> list[uuid.UUID]:
        """PENDING transactions the provider already knows about, oldest first."""
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.status == TransactionStatus.PENDING,
                Transaction.gateway_ref_id.is_not(None),
                Transaction.created_at < created_before,
            )
            .order_by(Transaction.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
