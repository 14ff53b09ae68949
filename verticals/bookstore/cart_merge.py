"""Cart merge engine — reconcile a guest cart into the user's cart at login.

One transaction drains the server-side guest cart (reservations released
together with its items), then merges each guest line into the user's
ACTIVE cart:

1. missing or discontinued variant  -> ``unavailable`` conflict, skipped
2. client price snapshot drifted    -> ``price_changed`` conflict, merged at the live price
3. not enough stock                 -> ``out_of_stock`` conflict, ``min(requested, available)`` merged
4. line already in the user cart    -> quantities add

The emptied guest cart row is deleted after the merge commits. Repeating a
merge for the same user, session and guest contents replays the cached
result; anything added to the guest cart since then is merged afresh.
"""

from dataclasses import dataclass, field
from typing import Any, Optional
import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import NotFoundError, PriceConflict
from core.resilience.idempotency import IdempotencyStore, generate_idempotency_key, hash_request
from core.transaction import transaction
from patterns.domain_config import CartConfig
from verticals.bookstore.cart_ledger import CartIdentity, CartLedger
from verticals.bookstore.models.db_models import Cart
from verticals.bookstore.repository import CartRepository
from verticals.bookstore.rules import check_price_drift, to_cents

logger = structlog.get_logger(__name__)

MERGE_ROUTE = "POST /cart/merge"


@dataclass(frozen=True)
class GuestCartItem:
    variant_id: int
    qty: int
    local_price_cents: Optional[int] = None


@dataclass
class MergeConflict:
    variant_id: int
    reason: str  # unavailable | price_changed | out_of_stock | quantity_limit
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "bookFormatVariantId": self.variant_id,
            "reason": self.reason,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


@dataclass
class MergeSummary:
    item_count: int = 0
    total_added: int = 0


@dataclass
class MergeResult:
    cart: dict[str, Any]
    summary: MergeSummary = field(default_factory=MergeSummary)
    conflicts: list[MergeConflict] = field(default_factory=list)
    replayed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "cart": self.cart,
            "merged": {
                "itemCount": self.summary.item_count,
                "totalAdded": self.summary.total_added,
            },
            "conflicts": [c.to_dict() for c in self.conflicts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], replayed: bool = False) -> "MergeResult":
        merged = data.get("merged", {})
        return cls(
            cart=data.get("cart", {}),
            summary=MergeSummary(merged.get("itemCount", 0), merged.get("totalAdded", 0)),
            conflicts=[
                MergeConflict(
                    variant_id=c["bookFormatVariantId"],
                    reason=c["reason"],
                    message=c["message"],
                    details=c.get("details", {}),
                )
                for c in data.get("conflicts", [])
            ],
            replayed=replayed,
        )


class CartMergeEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CartLedger,
        idempotency: IdempotencyStore,
        config: Optional[CartConfig] = None,
    ):
        self._session_factory = session_factory
        self.ledger = ledger
        self.idempotency = idempotency
        self.config = config or ledger.config

    async def merge_guest_cart(
        self,
        user_id: str,
        session_id: str,
        guest_items: list[GuestCartItem],
    ) -> MergeResult:
        """Merge ``guest_items`` (or the server-side guest cart) into the user's cart."""
        user = CartIdentity.for_user(user_id)
        guest = CartIdentity.for_session(session_id)
        contents = await self._merge_contents(guest, guest_items)
        key = generate_idempotency_key(
            "cart_merge", user_id=user_id, session_id=session_id, contents=hash_request(contents)
        )

        replay = await self.idempotency.claim(
            key,
            MERGE_ROUTE,
            user_id=user_id,
            ttl_seconds=self.config.merge_idempotency_ttl_seconds,
        )
        if replay is not None:
            return MergeResult.from_dict(replay.response, replayed=True)

        try:
            result, guest_cart_id = await self._merge(user, guest, guest_items)
        except Exception:
            await self.idempotency.release(key)
            raise

        if guest_cart_id is not None:
            await self._delete_guest_cart(guest_cart_id)

        await self.idempotency.complete(key, result.to_dict(), 200)
        logger.info(
            "cart_merged",
            user_id=user_id,
            session_id=session_id,
            item_count=result.summary.item_count,
            total_added=result.summary.total_added,
            conflicts=len(result.conflicts),
        )
        return result

    async def _merge_contents(
        self, guest: CartIdentity, guest_items: list[GuestCartItem]
    ) -> dict[str, Any]:
        """What this merge would move; a changed guest cart means a new merge."""
        async with self._session_factory() as s:
            guest_cart = await CartRepository(s).get_active(**guest.as_filters())
            held = sorted((item.variant_id, item.qty) for item in guest_cart.items) if guest_cart else []
        return {
            "items": [(i.variant_id, i.qty, i.local_price_cents) for i in guest_items],
            "guestCart": held,
        }

    async def _merge(
        self,
        user: CartIdentity,
        guest: CartIdentity,
        guest_items: list[GuestCartItem],
    ) -> tuple[MergeResult, Optional[uuid.UUID]]:
        async with transaction(self._session_factory) as s:
            guest_cart = await CartRepository(s).get_active(**guest.as_filters(), for_update=True)
            drained: list[GuestCartItem] = []
            if guest_cart is not None:
                drained = await self._drain(s, guest_cart)

            items = guest_items or drained
            cart = await self.ledger.get_or_create_active_cart(s, user)
            result = MergeResult(cart={})
            for guest_item in items:
                await self._merge_item(s, cart, guest_item, result)

            result.cart = cart.to_dict()
            return result, guest_cart.id if guest_cart is not None else None

    async def _drain(self, s: AsyncSession, guest_cart: Cart) -> list[GuestCartItem]:
        drained = [
            GuestCartItem(item.variant_id, item.qty, to_cents(item.unit_price))
            for item in guest_cart.items
        ]
        for item in list(guest_cart.items):
            await self.ledger.drop_item(s, guest_cart, item)
        logger.debug("guest_cart_drained", cart_id=str(guest_cart.id), items=len(drained))
        return drained

    async def _merge_item(
        self,
        s: AsyncSession,
        cart: Cart,
        guest_item: GuestCartItem,
        result: MergeResult,
    ) -> None:
        variant_id = guest_item.variant_id
        try:
            variant = await self.ledger.lock_variant(s, variant_id)
        except NotFoundError:
            result.conflicts.append(
                MergeConflict(variant_id, "unavailable", "This item is no longer available")
            )
            return

        live_cents = to_cents(variant.price_for(self.ledger.currency))
        drift = check_price_drift(
            guest_item.local_price_cents, live_cents, self.config.price_tolerance_cents
        )
        if not drift.passed:
            advisory = PriceConflict(variant_id, guest_item.local_price_cents, live_cents)
            result.conflicts.append(
                MergeConflict(variant_id, advisory.code, advisory.message, advisory.details)
            )

        qty = guest_item.qty
        existing = cart.item_for_variant(variant_id)
        headroom = self.config.max_quantity_per_item - (existing.qty if existing else 0)
        if qty > headroom:
            result.conflicts.append(
                MergeConflict(
                    variant_id,
                    "quantity_limit",
                    f"Only {max(headroom, 0)} more can be added",
                    {"requested": qty, "max": self.config.max_quantity_per_item},
                )
            )
            qty = max(headroom, 0)

        reserved = False
        if variant.is_physical:
            available = variant.available_quantity
            if available < qty:
                result.conflicts.append(
                    MergeConflict(
                        variant_id,
                        "out_of_stock",
                        f"Only {available} items available",
                        {"requested": guest_item.qty, "available": available},
                    )
                )
                qty = available
            if qty > 0:
                await self.ledger.reserve(s, variant, qty)
                reserved = True

        if qty <= 0:
            return
        await self.ledger.put_item(s, cart, variant, qty, reserved=reserved)
        result.summary.item_count += 1
        result.summary.total_added += qty

    async def _delete_guest_cart(self, cart_id: uuid.UUID) -> None:
        async with transaction(self._session_factory) as s:
            carts = CartRepository(s)
            cart = await carts.get(cart_id, for_update=True)
            if cart is not None and not cart.items:
                await carts.delete(cart)
