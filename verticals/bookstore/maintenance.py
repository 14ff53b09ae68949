"""Periodic maintenance — payment reconciliation, stale reservations and timed-out orders.

Three sweeps, each one transaction per row so a single bad row never blocks
the rest of the batch:

- PENDING transactions older than the reconcile age are checked with their
  provider; a definite SUCCESS or FAILED is applied like a webhook. This runs
  first so a paid order is never timed out for a lost webhook.
- ACTIVE carts untouched for the reservation TTL are expired: reservations
  released, cart archived and marked ABANDONED.
- PENDING orders older than the order timeout are failed: their pending
  transactions fail, reservations are released and the cart is abandoned.

:class:`MaintenanceRunner` runs the sweeps (plus idempotency key cleanup)
on an interval; the API lifespan starts it when maintenance is enabled.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import CommerceError
from core.resilience.idempotency import IdempotencyStore
from verticals.bookstore.cart_ledger import CartLedger
from verticals.bookstore.checkout import CheckoutService
from verticals.bookstore.payments.base import ProviderPaymentState
from verticals.bookstore.repository import CartRepository, OrderRepository, TransactionRepository

logger = structlog.get_logger(__name__)


async def reconcile_pending_payments(
    checkout: CheckoutService,
    session_factory: async_sessionmaker[AsyncSession],
    age_minutes: int,
    as_of: Optional[datetime] = None,
    batch_size: int = 50,
) -> int:
    """Ask providers about PENDING transactions older than ``age_minutes``.

    Returns transactions settled either way.
    """
    cutoff = (as_of or datetime.now(timezone.utc)) - timedelta(minutes=age_minutes)
    async with session_factory() as s:
        transaction_ids = await TransactionRepository(s).find_pending_before(cutoff, limit=batch_size)

    if not transaction_ids:
        return 0

    settled = 0
    for transaction_id in transaction_ids:
        try:
            state = await checkout.reconcile_transaction(transaction_id)
        except (CommerceError, SQLAlchemyError) as exc:
            logger.warning("payment_reconciliation_failed", transaction_id=str(transaction_id), error=str(exc))
            continue
        if state is not None and state != ProviderPaymentState.PENDING:
            settled += 1

    logger.info("pending_payments_reconciled", checked=len(transaction_ids), settled=settled)
    return settled


async def release_stale_reservations(
    ledger: CartLedger,
    session_factory: async_sessionmaker[AsyncSession],
    ttl_minutes: int,
    as_of: Optional[datetime] = None,
    batch_size: int = 100,
) -> int:
    """Expire ACTIVE carts idle for longer than ``ttl_minutes``. Returns carts expired."""
    cutoff = (as_of or datetime.now(timezone.utc)) - timedelta(minutes=ttl_minutes)
    async with session_factory() as s:
        cart_ids = await CartRepository(s).find_stale_active(cutoff, limit=batch_size)

    if not cart_ids:
        return 0

    expired = 0
    for cart_id in cart_ids:
        try:
            if await ledger.expire_cart(cart_id) is not None:
                expired += 1
        except (CommerceError, SQLAlchemyError) as exc:
            logger.warning("cart_expiry_failed", cart_id=str(cart_id), error=str(exc))

    logger.info("stale_reservations_released", carts=expired, cutoff=cutoff.isoformat())
    return expired


async def cancel_timed_out_orders(
    checkout: CheckoutService,
    session_factory: async_sessionmaker[AsyncSession],
    timeout_minutes: int,
    as_of: Optional[datetime] = None,
    batch_size: int = 100,
) -> int:
    """Fail PENDING orders older than ``timeout_minutes``. Returns orders failed."""
    cutoff = (as_of or datetime.now(timezone.utc)) - timedelta(minutes=timeout_minutes)
    async with session_factory() as s:
        order_ids = await OrderRepository(s).find_timed_out(cutoff, limit=batch_size)

    if not order_ids:
        return 0

    failed = 0
    for order_id in order_ids:
        try:
            if await checkout.expire_order(order_id):
                failed += 1
        except (CommerceError, SQLAlchemyError) as exc:
            logger.warning("order_timeout_failed", order_id=str(order_id), error=str(exc))

    logger.info("timed_out_orders_failed", orders=failed, cutoff=cutoff.isoformat())
    return failed


@dataclass
class MaintenanceReport:
    payments_reconciled: int = 0
    carts_expired: int = 0
    orders_failed: int = 0
    idempotency_keys_removed: int = 0


class MaintenanceRunner:
    """Runs the maintenance sweeps every ``interval_seconds``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CartLedger,
        checkout: CheckoutService,
        idempotency: IdempotencyStore,
        reservation_ttl_minutes: int = 15,
        order_timeout_minutes: int = 15,
        reconcile_after_minutes: int = 5,
        interval_seconds: float = 60.0,
    ):
        self._session_factory = session_factory
        self.ledger = ledger
        self.checkout = checkout
        self.idempotency = idempotency
        self.reservation_ttl_minutes = reservation_ttl_minutes
        self.order_timeout_minutes = order_timeout_minutes
        self.reconcile_after_minutes = reconcile_after_minutes
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, as_of: Optional[datetime] = None) -> MaintenanceReport:
        report = MaintenanceReport()
        report.payments_reconciled = await reconcile_pending_payments(
            self.checkout, self._session_factory, self.reconcile_after_minutes, as_of=as_of
        )
        report.orders_failed = await cancel_timed_out_orders(
            self.checkout, self._session_factory, self.order_timeout_minutes, as_of=as_of
        )
        report.carts_expired = await release_stale_reservations(
            self.ledger, self._session_factory, self.reservation_ttl_minutes, as_of=as_of
        )
        report.idempotency_keys_removed = await self.idempotency.cleanup_expired()
        return report

    async def _loop(self) -> None:
        while True:
            try:
                report = await self.run_once()
                logger.debug(
                    "maintenance_cycle_complete",
                    payments_reconciled=report.payments_reconciled,
                    carts_expired=report.carts_expired,
                    orders_failed=report.orders_failed,
                    idempotency_keys_removed=report.idempotency_keys_removed,
                )
            except (CommerceError, SQLAlchemyError) as exc:
                logger.error("maintenance_cycle_failed", error=str(exc), error_type=type(exc).__name__)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="bookstore-maintenance")
            logger.info("maintenance_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("maintenance_stopped")
