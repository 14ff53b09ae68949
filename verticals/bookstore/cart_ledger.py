"""Cart & stock ledger.

Owns the Cart/CartItem aggregates and the reservation counters on
BookFormatVariant. Every public operation runs in one transaction and every
change to ``reserved_quantity`` happens together with the CartItem quantity
change that explains it, so the reserved counter of a variant always equals
the reserved quantity held by live carts.

Lock order is cart row first, then variant rows. Physical formats reserve
stock on add; digital formats never touch stock.

The session-level primitives (``reserve``, ``release``, ``put_item``,
``set_item_quantity``, ``drop_item``, ``archive_cart``) take an open session
and are reused by the merge engine, checkout and maintenance jobs.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar
import uuid

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from core.errors import NotFoundError, StockConflict, ValidationError
from core.models.base import utcnow
from core.transaction import run_in_transaction
from patterns.domain_config import CartConfig
from patterns.workflow_states import CART_MACHINE, CartStatus
from verticals.bookstore.models.db_models import (
    BookFormatVariant,
    Cart,
    CartHistory,
    CartItem,
)
from verticals.bookstore.repository import CartRepository, VariantRepository
from verticals.bookstore.rules import check_quantity_limit, check_stock_availability

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CartIdentity:
    """Owner of a cart: exactly one of an authenticated user or a guest session."""

    user_id: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        if bool(self.user_id) == bool(self.session_id):
            raise ValidationError(
                "Cart identity requires exactly one of user id or session id",
                {"userId": self.user_id, "sessionId": self.session_id},
            )

    @classmethod
    def for_user(cls, user_id: str) -> "CartIdentity":
        return cls(user_id=user_id)

    @classmethod
    def for_session(cls, session_id: str) -> "CartIdentity":
        return cls(session_id=session_id)

    @property
    def is_guest(self) -> bool:
        return self.session_id is not None

    def as_filters(self) -> dict[str, Optional[str]]:
        return {"user_id": self.user_id, "session_id": self.session_id}

    def log_fields(self) -> dict[str, Optional[str]]:
        return {"user_id": self.user_id} if self.user_id else {"session_id": self.session_id}


class CartLedger:
    """Transactional cart operations plus the reservation primitives."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: Optional[CartConfig] = None,
        currency: str = "INR",
    ):
        self._session_factory = session_factory
        self.config = config or CartConfig()
        self.currency = currency

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def add_item(
        self,
        identity: CartIdentity,
        variant_id: int,
        qty: int,
        *,
        session: Optional[AsyncSession] = None,
    ) -> Cart:
        """Add ``qty`` of a variant, reserving stock for physical formats."""
        self._check_quantity(qty)

        async def op(s: AsyncSession) -> Cart:
            cart = await self.get_or_create_active_cart(s, identity)
            existing = cart.item_for_variant(variant_id)
            self._check_quantity(qty + (existing.qty if existing else 0))

            variant = await self.lock_variant(s, variant_id)
            reserved = False
            if variant.is_physical:
                await self.reserve(s, variant, qty)
                reserved = True
            await self.put_item(s, cart, variant, qty, reserved=reserved)
            logger.info(
                "cart_item_added",
                cart_id=str(cart.id),
                variant_id=variant_id,
                qty=qty,
                reserved=reserved,
                **identity.log_fields(),
            )
            return cart

        return await self._run(op, session)

    async def update_item(
        self,
        identity: CartIdentity,
        item_id: uuid.UUID,
        new_qty: int,
        *,
        session: Optional[AsyncSession] = None,
    ) -> Cart:
        """Set an item's quantity; only the delta touches the reservation."""
        if new_qty < 0:
            raise ValidationError("Quantity cannot be negative", {"qty": new_qty})
        if new_qty > 0:
            self._check_quantity(new_qty)

        async def op(s: AsyncSession) -> Cart:
            cart = await self._require_active_cart(s, identity)
            item = self._require_item(cart, item_id)
            if new_qty == 0:
                await self.drop_item(s, cart, item)
            else:
                await self.set_item_quantity(s, cart, item, new_qty)
            logger.info(
                "cart_item_updated",
                cart_id=str(cart.id),
                item_id=str(item_id),
                qty=new_qty,
            )
            return cart

        return await self._run(op, session)

    async def remove_item(
        self,
        identity: CartIdentity,
        item_id: uuid.UUID,
        *,
        session: Optional[AsyncSession] = None,
    ) -> Cart:
        async def op(s: AsyncSession) -> Cart:
            cart = await self._require_active_cart(s, identity)
            item = self._require_item(cart, item_id)
            await self.drop_item(s, cart, item)
            logger.info("cart_item_removed", cart_id=str(cart.id), item_id=str(item_id))
            return cart

        return await self._run(op, session)

    async def clear_cart(
        self,
        identity: CartIdentity,
        *,
        session: Optional[AsyncSession] = None,
    ) -> Optional[Cart]:
        async def op(s: AsyncSession) -> Optional[Cart]:
            cart = await CartRepository(s).get_active(**identity.as_filters(), for_update=True)
            if cart is None:
                return None
            for item in list(cart.items):
                await self.drop_item(s, cart, item)
            logger.info("cart_cleared", cart_id=str(cart.id), **identity.log_fields())
            return cart

        return await self._run(op, session)

    async def expire_cart(
        self,
        cart_id: uuid.UUID,
        *,
        session: Optional[AsyncSession] = None,
    ) -> Optional[Cart]:
        """Release every reservation, archive, delete items and mark ABANDONED.

        Returns None when the cart is gone or no longer ACTIVE.
        """

        async def op(s: AsyncSession) -> Optional[Cart]:
            cart = await CartRepository(s).get(cart_id, for_update=True)
            if cart is None or cart.status != CartStatus.ACTIVE:
                return None
            await self.abandon_cart(s, cart)
            logger.info("cart_expired", cart_id=str(cart.id))
            return cart

        return await run_in_transaction(self._session_factory, op, session=session)

    async def get_cart(self, identity: CartIdentity) -> Optional[Cart]:
        async with self._session_factory() as s:
            return await CartRepository(s).get_active(**identity.as_filters())

    async def get_variant(self, variant_id: int) -> BookFormatVariant:
        async with self._session_factory() as s:
            variant = await VariantRepository(s).get(variant_id)
        if variant is None:
            raise NotFoundError("BookFormatVariant", variant_id)
        return variant

    # ------------------------------------------------------------------
    # Session-level primitives
    # ------------------------------------------------------------------

    async def get_or_create_active_cart(self, s: AsyncSession, identity: CartIdentity) -> Cart:
        carts = CartRepository(s)
        cart = await carts.get_active(**identity.as_filters(), for_update=True)
        if cart is None:
            cart = Cart(
                user_id=identity.user_id,
                session_id=identity.session_id,
                status=CartStatus.ACTIVE,
                items=[],
            )
            await carts.add(cart)
            logger.debug("cart_created", cart_id=str(cart.id), **identity.log_fields())
        return cart

    async def lock_variant(self, s: AsyncSession, variant_id: int) -> BookFormatVariant:
        """Row-lock a purchasable variant; unknown or discontinued is NotFound."""
        variant = await VariantRepository(s).get(variant_id, for_update=True)
        if variant is None or not variant.is_active:
            raise NotFoundError("BookFormatVariant", variant_id)
        return variant

    async def reserve(self, s: AsyncSession, variant: BookFormatVariant, qty: int) -> None:
        """Reserve ``qty`` units or raise StockConflict.

        ``variant`` must have been loaded with :meth:`lock_variant`.
        """
        check = check_stock_availability(variant.stock_quantity, variant.reserved_quantity, qty)
        if not check.passed or not await VariantRepository(s).try_reserve(variant.id, qty):
            logger.info(
                "stock_reservation_rejected",
                variant_id=variant.id,
                requested=qty,
                available=check.details["available"],
            )
            raise StockConflict(variant.id, qty, check.details["available"])
        set_committed_value(variant, "reserved_quantity", variant.reserved_quantity + qty)

    async def release(self, s: AsyncSession, variant_id: int, qty: int) -> None:
        if qty <= 0:
            return
        await VariantRepository(s).release(variant_id, qty)

    async def put_item(
        self,
        s: AsyncSession,
        cart: Cart,
        variant: BookFormatVariant,
        qty: int,
        *,
        reserved: bool,
    ) -> CartItem:
        """Insert a line or increment the existing one, snapshotting the live price."""
        unit_price = variant.price_for(self.currency)
        item = cart.item_for_variant(variant.id)
        if item is None:
            item = CartItem(
                variant_id=variant.id,
                qty=qty,
                unit_price=unit_price,
                title=variant.title,
                is_stock_reserved=reserved,
            )
            cart.items.append(item)
        else:
            if reserved and not item.is_stock_reserved:
                # The line now holds stock, so its earlier quantity must too.
                await self.reserve(s, variant, item.qty)
                item.is_stock_reserved = True
            item.qty += qty
            item.unit_price = unit_price
        cart.updated_at = utcnow()
        await s.flush()
        return item

    async def set_item_quantity(self, s: AsyncSession, cart: Cart, item: CartItem, new_qty: int) -> CartItem:
        delta = new_qty - item.qty
        if delta == 0:
            return item
        if item.is_stock_reserved:
            if delta > 0:
                variant = await self.lock_variant(s, item.variant_id)
                await self.reserve(s, variant, delta)
            else:
                await self.release(s, item.variant_id, -delta)
        item.qty = new_qty
        cart.updated_at = utcnow()
        await s.flush()
        return item

    async def drop_item(self, s: AsyncSession, cart: Cart, item: CartItem) -> None:
        if item.is_stock_reserved:
            await self.release(s, item.variant_id, item.qty)
        cart.items.remove(item)
        cart.updated_at = utcnow()
        await s.flush()

    async def archive_cart(
        self,
        s: AsyncSession,
        cart: Cart,
        status: CartStatus,
        order_id: Optional[uuid.UUID] = None,
    ) -> CartHistory:
        history = CartHistory(
            cart_id=cart.id,
            user_id=cart.user_id,
            session_id=cart.session_id,
            status=status,
            item_count=cart.item_count,
            total_amount=cart.subtotal,
            items=[item.to_dict() for item in cart.items],
            order_id=order_id,
        )
        return await CartRepository(s).archive(history)

    async def abandon_cart(self, s: AsyncSession, cart: Cart, order_id: Optional[uuid.UUID] = None) -> None:
        """Release reservations, archive, delete items and mark the cart ABANDONED."""
        CART_MACHINE.validate(cart.status, CartStatus.ABANDONED)
        for item in cart.items:
            if item.is_stock_reserved:
                await self.release(s, item.variant_id, item.qty)
        await self.archive_cart(s, cart, CartStatus.ABANDONED, order_id=order_id)
        cart.items.clear()
        cart.status = CartStatus.ABANDONED
        await s.flush()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(
        self,
        op: Callable[[AsyncSession], Awaitable[T]],
        session: Optional[AsyncSession],
    ) -> T:
        try:
            return await run_in_transaction(self._session_factory, op, session=session)
        except IntegrityError:
            # Lost the race to create the ACTIVE cart; the retry loads the winner.
            if session is not None:
                raise
            logger.info("cart_create_conflict_retry")
            return await run_in_transaction(self._session_factory, op)

    async def _require_active_cart(self, s: AsyncSession, identity: CartIdentity) -> Cart:
        cart = await CartRepository(s).get_active(**identity.as_filters(), for_update=True)
        if cart is None:
            raise NotFoundError("Cart", identity.user_id or identity.session_id)
        return cart

    @staticmethod
    def _require_item(cart: Cart, item_id: uuid.UUID) -> CartItem:
        for item in cart.items:
            if item.id == item_id:
                return item
        raise NotFoundError("CartItem", item_id)

    def _check_quantity(self, qty: int) -> None:
        result = check_quantity_limit(qty, self.config.max_quantity_per_item)
        if not result.passed:
            raise ValidationError(result.message, result.details)
