"""Checkout orchestrator — cart to order to payment, and back via webhooks.

Flow of one checkout:

1. Claim the idempotency key (replay or wait if it is already known).
2. In one transaction: lock the ACTIVE cart, re-reserve stock that is not
   held yet, snapshot the cart into an Order, move the cart to CHECKOUT and
   open a PENDING Transaction.
3. Call the provider through the registry (breaker + retry), outside any
   database transaction.
4. Persist the provider response, or fail the Transaction and Order and hand
   the cart back, then complete the idempotency key with the response.

Steps 2-4 run in a shielded task so a client disconnect never leaves an
order half way through payment initiation.

A Transaction only becomes SUCCESS when its provider says so. Each webhook is
verified, applied inside a single transaction and is a no-op once the
Transaction has left PENDING, so provider retries are harmless.

A Transaction whose webhook never arrives is reconciled by asking the
provider for its status; a definite answer is applied the same way.

Lock order everywhere: transaction row, order row, cart row, variant rows.
"""

import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Mapping, Optional
import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import CommerceError, NotFoundError, SignatureInvalid, StockConflict, ValidationError
from core.models.base import utcnow
from core.resilience.idempotency import IdempotencyStore, generate_idempotency_key, hash_request
from core.transaction import run_in_transaction
from patterns.domain_config import CommerceConfig
from patterns.workflow_states import (
    CART_MACHINE,
    PAYMENT_MACHINE,
    REFUND_MACHINE,
    TRANSACTION_MACHINE,
    CartStatus,
    FulfillmentStatus,
    PaymentStatus,
    RefundStatus,
    TransactionStatus,
    validate_fulfillment_change,
)
from verticals.bookstore.cart_ledger import CartIdentity, CartLedger
from verticals.bookstore.models.db_models import (
    Cart,
    Order,
    OrderItem,
    OrderStatusLog,
    Refund,
    Transaction,
)
from verticals.bookstore.payments import PaymentMethod, ProviderRegistry
from verticals.bookstore.payments.base import (
    PaymentInitiation,
    PaymentInitiationResult,
    ProviderPaymentState,
    RefundRequest,
)
from verticals.bookstore.repository import (
    CartRepository,
    OrderRepository,
    TransactionRepository,
    VariantRepository,
)
from verticals.bookstore.rules import check_refund_amount, quantize_money

logger = structlog.get_logger(__name__)

CHECKOUT_ROUTE = "POST /checkout"
WEBHOOK_PATH = "/api/bookstore/payments/webhook/{provider}"


@dataclass
class CheckoutResult:
    """Response of a checkout call; ``replayed`` when served from the idempotency cache."""

    body: dict[str, Any]
    status_code: int = 201
    replayed: bool = False

    @property
    def order_id(self) -> Optional[str]:
        return self.body.get("orderId")

    @property
    def transaction_id(self) -> Optional[str]:
        return self.body.get("transactionId")


@dataclass
class WebhookOutcome:
    provider: str
    is_valid: bool
    processed: bool = False
    event: Optional[str] = None
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "isValid": self.is_valid,
            "processed": self.processed,
            "event": self.event,
            "transactionId": self.transaction_id,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class _PendingPayment:
    key: str
    provider: str
    initiation: PaymentInitiation
    details: dict[str, Any] = field(default_factory=dict)


class CheckoutService:
    """Order placement, payment webhooks, refunds and fulfillment changes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CartLedger,
        registry: ProviderRegistry,
        idempotency: IdempotencyStore,
        config: Optional[CommerceConfig] = None,
    ):
        self._session_factory = session_factory
        self.ledger = ledger
        self.registry = registry
        self.idempotency = idempotency
        self.config = config or CommerceConfig.default()
        self._inflight: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def initiate_checkout(
        self,
        identity: CartIdentity,
        payment_method: PaymentMethod,
        idempotency_key: str,
        shipping_address: Optional[dict[str, Any]] = None,
    ) -> CheckoutResult:
        """Turn the identity's ACTIVE cart into a PENDING order and start payment.

        The same ``idempotency_key`` always yields the same order: a finished
        request is replayed, a running one is awaited briefly and then
        reported as in progress.
        """
        if not idempotency_key:
            raise ValidationError("Idempotency-Key is required")
        provider_name = payment_method.provider_name
        self.registry.get(provider_name)

        owner = identity.user_id or f"guest:{identity.session_id}"
        key = generate_idempotency_key("checkout", owner=owner, key=idempotency_key)
        request_hash = hash_request(
            {"paymentMethod": payment_method.value, "shippingAddress": shipping_address}
        )
        replay = await self.idempotency.claim(
            key,
            CHECKOUT_ROUTE,
            user_id=identity.user_id,
            request_hash=request_hash,
            ttl_seconds=self.config.checkout.idempotency_ttl_seconds,
        )
        if replay is not None:
            return CheckoutResult(replay.response, replay.status_code, replayed=True)

        return await self._shielded(self._place_order(identity, provider_name, key, shipping_address))

    async def _place_order(
        self,
        identity: CartIdentity,
        provider_name: str,
        key: str,
        shipping_address: Optional[dict[str, Any]],
    ) -> CheckoutResult:
        try:
            pending = await run_in_transaction(
                self._session_factory,
                lambda s: self._open_order(s, identity, provider_name, key, shipping_address),
            )
        except Exception:
            # Nothing durable happened; the client may retry with the same key.
            await self.idempotency.release(key)
            raise

        logger.info(
            "checkout_order_created",
            order_id=pending.initiation.order_id,
            transaction_id=pending.initiation.transaction_id,
            provider=provider_name,
            amount=str(pending.initiation.amount),
            **identity.log_fields(),
        )
        return await self._collect_payment(pending)

    async def _open_order(
        self,
        s: AsyncSession,
        identity: CartIdentity,
        provider_name: str,
        key: str,
        shipping_address: Optional[dict[str, Any]],
    ) -> _PendingPayment:
        cart = await CartRepository(s).get_active(**identity.as_filters(), for_update=True)
        if cart is None or not cart.items:
            raise ValidationError("Cart is empty", identity.log_fields())

        # Re-validate stock just in time; items added before a reservation
        # expired are reserved again here.
        for item in sorted(cart.items, key=lambda i: i.variant_id):
            variant = await self.ledger.lock_variant(s, item.variant_id)
            if not variant.is_physical:
                continue
            if not item.is_stock_reserved:
                await self.ledger.reserve(s, variant, item.qty)
                item.is_stock_reserved = True
            elif variant.stock_quantity < item.qty:
                raise StockConflict(variant.id, item.qty, variant.stock_quantity)

        total = quantize_money(sum((item.line_total for item in cart.items), Decimal("0")))
        if total <= 0:
            raise ValidationError("Order total must be positive", {"total": str(total)})

        currency = self.config.checkout.currency
        order = Order(
            user_id=cart.user_id,
            session_id=cart.session_id,
            cart_id=cart.id,
            payment_status=PaymentStatus.PENDING,
            fulfillment_status=FulfillmentStatus.NOT_STARTED,
            total_amount=total,
            currency=currency,
            shipping_address=shipping_address,
            items=[
                OrderItem(
                    variant_id=item.variant_id,
                    title=item.title,
                    quantity=item.qty,
                    unit_price=item.unit_price,
                    total_price=item.line_total,
                )
                for item in cart.items
            ],
            status_logs=[
                OrderStatusLog(
                    payment_status=PaymentStatus.PENDING,
                    fulfillment_status=FulfillmentStatus.NOT_STARTED,
                    changed_by="system",
                    comment="Order created",
                )
            ],
        )
        txn = Transaction(
            provider=provider_name,
            amount=total,
            currency=currency,
            status=TransactionStatus.PENDING,
            idempotency_key=key,
        )
        order.transactions.append(txn)
        s.add(order)

        CART_MACHINE.validate(cart.status, CartStatus.CHECKOUT)
        cart.status = CartStatus.CHECKOUT
        cart.checkout_started_at = utcnow()
        await s.flush()

        payments = self.config.payments
        initiation = PaymentInitiation(
            transaction_id=str(txn.id),
            order_id=str(order.id),
            amount=total,
            currency=currency,
            user_ref=identity.user_id or identity.session_id,
            callback_url=payments.app_url.rstrip("/") + WEBHOOK_PATH.format(provider=provider_name),
            redirect_url=f"{payments.frontend_url.rstrip('/')}/payment/return?orderId={order.id}",
            idempotency_key=key,
        )
        return _PendingPayment(key=key, provider=provider_name, initiation=initiation)

    async def _collect_payment(self, pending: _PendingPayment) -> CheckoutResult:
        initiation = pending.initiation
        try:
            result = await self.registry.call(pending.provider, lambda p: p.initiate(initiation))
        except CommerceError as exc:
            await self._record_or_fail_key(pending.key, self._record_initiation_failure(initiation, exc))
            body = {
                **exc.to_dict(),
                "orderId": initiation.order_id,
                "transactionId": initiation.transaction_id,
            }
            await self.idempotency.complete(pending.key, body, exc.status_code)
            raise
        except Exception as exc:
            await self._record_or_fail_key(pending.key, self._record_initiation_failure(initiation, exc))
            await self.idempotency.fail(pending.key)
            raise

        await self._record_or_fail_key(
            pending.key,
            run_in_transaction(
                self._session_factory,
                lambda s: self._record_initiation_success(s, initiation, result),
            ),
        )
        body = {
            "orderId": initiation.order_id,
            "transactionId": initiation.transaction_id,
            "status": TransactionStatus.PENDING.value,
            "provider": pending.provider,
            "amount": str(initiation.amount),
            "currency": initiation.currency,
            "payment": {
                "action": result.action,
                "redirectUrl": result.redirect_url,
                **result.client_payload,
            },
        }
        await self.idempotency.complete(pending.key, body, 201)
        logger.info(
            "payment_initiated",
            order_id=initiation.order_id,
            transaction_id=initiation.transaction_id,
            gateway_ref_id=result.gateway_ref_id,
        )
        return CheckoutResult(body, 201)

    async def _record_or_fail_key(self, key: str, recording: Awaitable[None]) -> None:
        """Run ``recording``; if it fails, mark ``key`` FAILED so the client can retry."""
        try:
            await recording
        except Exception as exc:
            logger.error(
                "payment_outcome_not_recorded",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self.idempotency.fail(key)
            raise

    async def _record_initiation_success(
        self,
        s: AsyncSession,
        initiation: PaymentInitiation,
        result: PaymentInitiationResult,
    ) -> None:
        txn = await TransactionRepository(s).get(uuid.UUID(initiation.transaction_id), for_update=True)
        txn.gateway_ref_id = result.gateway_ref_id
        txn.raw_request = result.raw_request
        txn.raw_response = {**(txn.raw_response or {}), **result.raw_response}

    async def _record_initiation_failure(self, initiation: PaymentInitiation, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__

        async def op(s: AsyncSession) -> None:
            txn = await TransactionRepository(s).get(uuid.UUID(initiation.transaction_id), for_update=True)
            if txn is None or txn.status != TransactionStatus.PENDING:
                return
            self._settle_transaction(txn, TransactionStatus.FAILED, message)
            if isinstance(exc, CommerceError):
                txn.raw_response = exc.to_dict()
            order = await OrderRepository(s).get(txn.order_id, for_update=True)
            self._set_payment_status(order, PaymentStatus.FAILED, comment=f"Payment initiation failed: {message}")
            await self._release_checkout_cart(s, order, reopen=True)

        await run_in_transaction(self._session_factory, op)
        logger.warning(
            "payment_initiation_failed",
            order_id=initiation.order_id,
            transaction_id=initiation.transaction_id,
            error=message,
            error_type=type(exc).__name__,
            attempts=getattr(exc, "attempts", None),
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook(
        self,
        provider_name: str,
        headers: Mapping[str, str],
        body: bytes,
    ) -> WebhookOutcome:
        """Verify and apply one provider callback. Safe to call repeatedly."""
        provider = self.registry.get(provider_name)
        verification = provider.verify_webhook({k.lower(): v for k, v in headers.items()}, body)
        outcome = WebhookOutcome(
            provider=provider.name,
            is_valid=verification.is_valid,
            event=verification.event,
            error=verification.error,
        )
        if not verification.is_valid:
            rejected = SignatureInvalid(verification.error or "Invalid webhook signature", {"provider": provider.name})
            logger.warning("webhook_rejected", provider=provider.name, error=rejected.code, message=rejected.message)
            outcome.error = rejected.message
            return outcome
        if verification.success is None or not verification.reference:
            logger.info("webhook_ignored", provider=provider.name, event=verification.event)
            return outcome

        async def op(s: AsyncSession) -> WebhookOutcome:
            txn = await self._find_transaction(s, verification.reference)
            if txn is None:
                logger.warning(
                    "webhook_unknown_reference",
                    provider=provider.name,
                    reference=verification.reference,
                )
                return outcome

            outcome.transaction_id = str(txn.id)
            if txn.status != TransactionStatus.PENDING:
                outcome.status = txn.status.value
                if verification.success and txn.status == TransactionStatus.FAILED:
                    logger.error(
                        "payment_captured_for_failed_transaction",
                        transaction_id=str(txn.id),
                        reference=verification.reference,
                    )
                else:
                    logger.info("webhook_duplicate_ignored", transaction_id=str(txn.id), status=txn.status.value)
                return outcome

            txn.raw_response = {**(txn.raw_response or {}), "webhook": verification.payload}
            order = await OrderRepository(s).get(txn.order_id, for_update=True)
            if verification.success:
                await self._apply_payment_success(s, txn, order)
            else:
                await self._apply_payment_failure(s, txn, order, f"Payment failed ({verification.event})")
            outcome.processed = True
            outcome.status = txn.status.value
            return outcome

        result = await run_in_transaction(self._session_factory, op)
        if result.processed:
            logger.info(
                "webhook_processed",
                provider=provider.name,
                transaction_id=result.transaction_id,
                status=result.status,
            )
        return result

    async def _find_transaction(self, s: AsyncSession, reference: str) -> Optional[Transaction]:
        repo = TransactionRepository(s)
        txn = await repo.get_by_gateway_ref(reference, for_update=True)
        if txn is not None:
            return txn
        # Some providers echo our transaction id before we stored their reference.
        try:
            txn_id = uuid.UUID(reference)
        except ValueError:
            return None
        return await repo.get(txn_id, for_update=True)

    async def _apply_payment_success(self, s: AsyncSession, txn: Transaction, order: Order) -> None:
        self._settle_transaction(txn, TransactionStatus.SUCCESS)
        self._set_payment_status(order, PaymentStatus.PAID, comment=f"Payment confirmed by {txn.provider}")

        cart = await self._checkout_cart(s, order)
        if cart is None:
            logger.warning("paid_order_without_checkout_cart", order_id=str(order.id))
            return
        CART_MACHINE.validate(cart.status, CartStatus.COMPLETED)
        variants = VariantRepository(s)
        for item in sorted(cart.items, key=lambda i: i.variant_id):
            if item.is_stock_reserved:
                await variants.commit_stock(item.variant_id, item.qty)
        await self.ledger.archive_cart(s, cart, CartStatus.COMPLETED, order_id=order.id)
        cart.items.clear()
        cart.status = CartStatus.COMPLETED
        await s.flush()

    async def _apply_payment_failure(self, s: AsyncSession, txn: Transaction, order: Order, reason: str) -> None:
        self._settle_transaction(txn, TransactionStatus.FAILED, reason)
        self._set_payment_status(order, PaymentStatus.FAILED, comment=reason)
        await self._release_checkout_cart(s, order, reopen=False)

    # ------------------------------------------------------------------
    # Timeouts
    # ------------------------------------------------------------------

    async def expire_order(self, order_id: uuid.UUID) -> bool:
        """Fail a PENDING order whose payment never completed.

        Returns False when the order already left PENDING.
        """

        async def op(s: AsyncSession) -> bool:
            pending = await TransactionRepository(s).pending_for_order(order_id, for_update=True)
            order = await OrderRepository(s).get(order_id, for_update=True)
            if order is None or order.payment_status != PaymentStatus.PENDING:
                return False
            for txn in pending:
                self._settle_transaction(txn, TransactionStatus.FAILED, "Payment timed out")
            self._set_payment_status(order, PaymentStatus.FAILED, comment="Payment timed out")
            await self._release_checkout_cart(s, order, reopen=False)
            return True

        expired = await run_in_transaction(self._session_factory, op)
        if expired:
            logger.info("order_payment_timed_out", order_id=str(order_id))
        return expired

    async def reconcile_transaction(self, transaction_id: uuid.UUID) -> Optional[ProviderPaymentState]:
        """Ask the provider about a PENDING transaction whose webhook never came.

        A definite answer is applied exactly like a webhook; PENDING leaves
        everything as it is. Returns None when there was nothing to ask.
        """
        async with self._session_factory() as s:
            txn = await TransactionRepository(s).get(transaction_id)
        if txn is None or txn.status != TransactionStatus.PENDING or not txn.gateway_ref_id:
            return None
        reference = txn.gateway_ref_id
        status = await self.registry.call(txn.provider, lambda p: p.get_payment_status(reference))
        if status.state == ProviderPaymentState.PENDING:
            logger.info("reconciliation_still_pending", transaction_id=str(transaction_id))
            return status.state

        async def op(s: AsyncSession) -> bool:
            locked = await TransactionRepository(s).get(transaction_id, for_update=True)
            if locked is None or locked.status != TransactionStatus.PENDING:
                return False
            locked.raw_response = {**(locked.raw_response or {}), "reconciliation": status.raw_response}
            order = await OrderRepository(s).get(locked.order_id, for_update=True)
            if status.state == ProviderPaymentState.SUCCESS:
                await self._apply_payment_success(s, locked, order)
            else:
                await self._apply_payment_failure(s, locked, order, "Payment failed (reconciliation)")
            return True

        if await run_in_transaction(self._session_factory, op):
            logger.info("payment_reconciled", transaction_id=str(transaction_id), state=status.state.value)
        return status.state

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund(
        self,
        transaction_id: uuid.UUID,
        amount: Optional[Decimal] = None,
        reason: str = "",
        actor: str = "system",
    ) -> Refund:
        """Refund a successful transaction once, fully or partially."""

        async def start(s: AsyncSession) -> tuple[str, RefundRequest]:
            txn = await TransactionRepository(s).get(transaction_id, for_update=True)
            if txn is None:
                raise NotFoundError("Transaction", transaction_id)
            if txn.status != TransactionStatus.SUCCESS:
                raise ValidationError(
                    "Only successful transactions can be refunded",
                    {"transactionId": str(txn.id), "status": txn.status.value},
                )
            if not txn.gateway_ref_id:
                raise ValidationError("Transaction has no gateway reference", {"transactionId": str(txn.id)})
            order = await OrderRepository(s).get(txn.order_id, for_update=True)
            PAYMENT_MACHINE.validate(order.payment_status, PaymentStatus.REFUNDED)

            refund_amount = quantize_money(amount) if amount is not None else txn.amount
            check = check_refund_amount(
                refund_amount,
                txn.amount,
                already_refunded=any(r.status != RefundStatus.FAILED for r in txn.refunds),
            )
            if not check.passed:
                raise ValidationError(check.message, check.details)

            refund = Refund(amount=refund_amount, reason=reason, status=RefundStatus.INITIATED)
            txn.refunds.append(refund)
            await s.flush()
            return txn.provider, RefundRequest(
                refund_id=str(refund.id),
                transaction_id=str(txn.id),
                gateway_ref_id=txn.gateway_ref_id,
                amount=refund_amount,
                reason=reason,
            )

        provider_name, request = await run_in_transaction(self._session_factory, start)
        logger.info(
            "refund_initiated",
            refund_id=request.refund_id,
            transaction_id=request.transaction_id,
            amount=str(request.amount),
            actor=actor,
        )
        return await self._shielded(self._execute_refund(provider_name, request, actor))

    async def _execute_refund(self, provider_name: str, request: RefundRequest, actor: str) -> Refund:
        refund_id = uuid.UUID(request.refund_id)
        try:
            result = await self.registry.call(provider_name, lambda p: p.refund(request))
        except Exception as exc:
            message = str(exc) or type(exc).__name__

            async def mark_failed(s: AsyncSession) -> None:
                refund = await s.get(Refund, refund_id, with_for_update=True)
                REFUND_MACHINE.validate(refund.status, RefundStatus.FAILED)
                refund.status = RefundStatus.FAILED
                refund.error_message = message

            await run_in_transaction(self._session_factory, mark_failed)
            logger.warning("refund_failed", refund_id=request.refund_id, error=message)
            raise

        async def mark_succeeded(s: AsyncSession) -> Refund:
            txn = await TransactionRepository(s).get(uuid.UUID(request.transaction_id), for_update=True)
            order = await OrderRepository(s).get(txn.order_id, for_update=True)
            refund = next(r for r in txn.refunds if r.id == refund_id)
            REFUND_MACHINE.validate(refund.status, RefundStatus.SUCCESS)
            refund.status = RefundStatus.SUCCESS
            refund.gateway_refund_id = result.gateway_refund_id
            refund.acquirer_data = result.raw_response
            self._set_payment_status(
                order,
                PaymentStatus.REFUNDED,
                actor=actor,
                comment=f"Refunded {request.amount}" + (f": {request.reason}" if request.reason else ""),
            )
            await s.flush()
            return refund

        refund = await run_in_transaction(self._session_factory, mark_succeeded)
        logger.info("refund_succeeded", refund_id=request.refund_id, gateway_refund_id=result.gateway_refund_id)
        return refund

    # ------------------------------------------------------------------
    # Fulfillment and read models
    # ------------------------------------------------------------------

    async def advance_fulfillment(
        self,
        order_id: uuid.UUID,
        target: FulfillmentStatus,
        actor: str = "system",
        comment: Optional[str] = None,
    ) -> Order:
        async def op(s: AsyncSession) -> Order:
            order = await OrderRepository(s).get(order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order", order_id)
            validate_fulfillment_change(order.payment_status, order.fulfillment_status, target)
            order.fulfillment_status = target
            order.status_logs.append(
                OrderStatusLog(
                    payment_status=order.payment_status,
                    fulfillment_status=target,
                    changed_by=actor,
                    comment=comment,
                )
            )
            await s.flush()
            return order

        order = await run_in_transaction(self._session_factory, op)
        logger.info("fulfillment_changed", order_id=str(order_id), status=target.value, actor=actor)
        return order

    async def get_order(self, order_id: uuid.UUID, identity: Optional[CartIdentity] = None) -> Order:
        """Load an order; with ``identity`` it must belong to that user or session."""
        async with self._session_factory() as s:
            order = await OrderRepository(s).get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if identity is not None and (order.user_id, order.session_id) != (identity.user_id, identity.session_id):
            raise NotFoundError("Order", order_id)
        return order

    async def get_transaction(self, transaction_id: uuid.UUID) -> Transaction:
        async with self._session_factory() as s:
            txn = await TransactionRepository(s).get(transaction_id)
        if txn is None:
            raise NotFoundError("Transaction", transaction_id)
        return txn

    async def drain(self) -> None:
        """Wait for shielded payment work that outlived its request."""
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _shielded(self, coro: Awaitable[Any]) -> Any:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    @staticmethod
    def _settle_transaction(txn: Transaction, target: TransactionStatus, error_message: Optional[str] = None) -> None:
        TRANSACTION_MACHINE.validate(txn.status, target)
        txn.status = target
        if error_message:
            txn.error_message = error_message

    @staticmethod
    def _set_payment_status(
        order: Order,
        target: PaymentStatus,
        actor: str = "system",
        comment: Optional[str] = None,
    ) -> None:
        PAYMENT_MACHINE.validate(order.payment_status, target)
        order.payment_status = target
        order.status_logs.append(
            OrderStatusLog(
                payment_status=target,
                fulfillment_status=order.fulfillment_status,
                changed_by=actor,
                comment=comment,
            )
        )

    async def _checkout_cart(self, s: AsyncSession, order: Order) -> Optional[Cart]:
        if order.cart_id is None:
            return None
        cart = await CartRepository(s).get(order.cart_id, for_update=True)
        if cart is None or cart.status != CartStatus.CHECKOUT:
            return None
        return cart

    async def _release_checkout_cart(self, s: AsyncSession, order: Order, *, reopen: bool) -> None:
        """Hand a CHECKOUT cart back to its owner, or abandon it.

        Reopening keeps the reservations; it is only possible while the
        owner has no other ACTIVE cart.
        """
        cart = await self._checkout_cart(s, order)
        if cart is None:
            return
        if reopen:
            active = await CartRepository(s).get_active(user_id=cart.user_id, session_id=cart.session_id)
            if active is None:
                CART_MACHINE.validate(cart.status, CartStatus.ACTIVE)
                cart.status = CartStatus.ACTIVE
                cart.checkout_started_at = None
                cart.updated_at = utcnow()
                await s.flush()
                logger.info("cart_reopened", cart_id=str(cart.id), order_id=str(order.id))
                return
        await self.ledger.abandon_cart(s, cart, order_id=order.id)
        logger.info("cart_abandoned", cart_id=str(cart.id), order_id=str(order.id))
