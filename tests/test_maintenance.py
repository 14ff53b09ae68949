"""Test the reconciliation, reservation and order-timeout sweeps."""
import asyncio
from datetime import datetime, timedelta, timezone
import uuid

import pytest

from conftest import HARDCOVER, PAPERBACK, variant_state
from patterns.workflow_states import CartStatus, PaymentStatus, TransactionStatus
from verticals.bookstore.cart_ledger import CartIdentity
from verticals.bookstore.maintenance import (
    cancel_timed_out_orders,
    reconcile_pending_payments,
    release_stale_reservations,
)
from verticals.bookstore.payments import PaymentMethod
from verticals.bookstore.payments.base import ProviderPaymentState


def later(minutes=60):
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


@pytest.mark.asyncio
async def test_stale_carts_release_reservations(services, session_factory):
    guest = CartIdentity.for_session("guest-1")
    await services.ledger.add_item(guest, HARDCOVER, 2)

    assert await release_stale_reservations(services.ledger, session_factory, 15) == 0
    assert await variant_state(session_factory, HARDCOVER) == (2, 2)

    expired = await release_stale_reservations(services.ledger, session_factory, 15, as_of=later())

    assert expired == 1
    assert await variant_state(session_factory, HARDCOVER) == (2, 0)
    assert await services.ledger.get_cart(guest) is None

    cart = await services.ledger.add_item(CartIdentity.for_user("u2"), HARDCOVER, 2)
    assert cart.status == CartStatus.ACTIVE


@pytest.mark.asyncio
async def test_carts_in_checkout_are_not_expired(services, session_factory):
    user = CartIdentity.for_user("u1")
    await services.ledger.add_item(user, PAPERBACK, 2)
    await services.checkout.initiate_checkout(user, PaymentMethod.PHONEPE, "k")

    assert await release_stale_reservations(services.ledger, session_factory, 15, as_of=later()) == 0
    assert await variant_state(session_factory, PAPERBACK) == (6, 2)


@pytest.mark.asyncio
async def test_timed_out_orders_fail_and_release_stock(services, session_factory):
    user = CartIdentity.for_user("u1")
    await services.ledger.add_item(user, PAPERBACK, 2)
    result = await services.checkout.initiate_checkout(user, PaymentMethod.PHONEPE, "k")

    assert await cancel_timed_out_orders(services.checkout, session_factory, 15) == 0

    failed = await cancel_timed_out_orders(services.checkout, session_factory, 15, as_of=later())

    assert failed == 1
    order = await services.checkout.get_order(uuid.UUID(result.order_id))
    assert order.payment_status == PaymentStatus.FAILED
    assert order.status_logs[-1].comment == "Payment timed out"
    txn = await services.checkout.get_transaction(uuid.UUID(result.transaction_id))
    assert txn.status == TransactionStatus.FAILED
    assert await variant_state(session_factory, PAPERBACK) == (6, 0)


@pytest.mark.asyncio
async def test_expire_order_skips_settled_orders(services, providers):
    user = CartIdentity.for_user("u1")
    await services.ledger.add_item(user, PAPERBACK, 1)
    result = await services.checkout.initiate_checkout(user, PaymentMethod.PHONEPE, "k")
    txn = await services.checkout.get_transaction(uuid.UUID(result.transaction_id))
    headers, body = providers["phonepe"].build_webhook(txn.gateway_ref_id)
    await services.checkout.handle_webhook("phonepe", headers, body)

    assert await services.checkout.expire_order(txn.order_id) is False
    order = await services.checkout.get_order(txn.order_id)
    assert order.payment_status == PaymentStatus.PAID


@pytest.mark.asyncio
async def test_runner_reports_each_sweep(services, session_factory):
    await services.ledger.add_item(CartIdentity.for_session("idle"), HARDCOVER, 1)
    user = CartIdentity.for_user("u1")
    await services.ledger.add_item(user, PAPERBACK, 1)
    await services.checkout.initiate_checkout(user, PaymentMethod.PHONEPE, "k")

    report = await services.maintenance.run_once(as_of=later())

    assert report.payments_reconciled == 0
    assert report.carts_expired == 1
    assert report.orders_failed == 1
    assert await variant_state(session_factory, HARDCOVER) == (2, 0)
    assert await variant_state(session_factory, PAPERBACK) == (6, 0)


@pytest.mark.asyncio
async def test_runner_start_and_stop(services):
    services.maintenance.interval_seconds = 0.01
    services.maintenance.start()
    await asyncio.sleep(0.05)
    await services.maintenance.stop()
    assert services.maintenance._task is None


async def pending_transaction(services, qty=2):
    user = CartIdentity.for_user("u1")
    await services.ledger.add_item(user, PAPERBACK, qty)
    result = await services.checkout.initiate_checkout(user, PaymentMethod.PHONEPE, "k")
    return await services.checkout.get_transaction(uuid.UUID(result.transaction_id))


@pytest.mark.asyncio
async def test_lost_webhook_is_reconciled_before_the_timeout(services, providers, session_factory):
    txn = await pending_transaction(services)
    providers["phonepe"].payment_states[txn.gateway_ref_id] = ProviderPaymentState.SUCCESS

    report = await services.maintenance.run_once(as_of=later())

    assert report.payments_reconciled == 1
    assert report.orders_failed == 0
    order = await services.checkout.get_order(txn.order_id)
    assert order.payment_status == PaymentStatus.PAID
    paid = await services.checkout.get_transaction(txn.id)
    assert paid.status == TransactionStatus.SUCCESS
    assert paid.raw_response["reconciliation"]["state"] == "SUCCESS"
    assert await variant_state(session_factory, PAPERBACK) == (4, 0)


@pytest.mark.asyncio
async def test_reconciled_failure_fails_the_order(services, providers, session_factory):
    txn = await pending_transaction(services)
    providers["phonepe"].payment_states[txn.gateway_ref_id] = ProviderPaymentState.FAILED

    settled = await reconcile_pending_payments(services.checkout, session_factory, 5, as_of=later())

    assert settled == 1
    failed = await services.checkout.get_transaction(txn.id)
    assert failed.status == TransactionStatus.FAILED
    assert failed.error_message == "Payment failed (reconciliation)"
    order = await services.checkout.get_order(txn.order_id)
    assert order.payment_status == PaymentStatus.FAILED
    assert await variant_state(session_factory, PAPERBACK) == (6, 0)


@pytest.mark.asyncio
async def test_recent_transactions_are_not_reconciled(services, providers, session_factory):
    await pending_transaction(services)

    assert await reconcile_pending_payments(services.checkout, session_factory, 5) == 0
    assert providers["phonepe"].calls_for("status") == []


@pytest.mark.asyncio
async def test_still_pending_payment_is_left_for_the_timeout(services, providers, session_factory):
    txn = await pending_transaction(services)

    assert await reconcile_pending_payments(services.checkout, session_factory, 5, as_of=later()) == 0
    assert len(providers["phonepe"].calls_for("status")) == 1
    assert (await services.checkout.get_transaction(txn.id)).status == TransactionStatus.PENDING

    assert await cancel_timed_out_orders(services.checkout, session_factory, 15, as_of=later()) == 1
    assert (await services.checkout.get_transaction(txn.id)).status == TransactionStatus.FAILED


@pytest.mark.asyncio
async def test_reconciliation_skips_settled_transactions(services, providers):
    txn = await pending_transaction(services)
    headers, body = providers["phonepe"].build_webhook(txn.gateway_ref_id)
    await services.checkout.handle_webhook("phonepe", headers, body)

    assert await services.checkout.reconcile_transaction(txn.id) is None
    assert providers["phonepe"].calls_for("status") == []


@pytest.mark.asyncio
async def test_unreachable_provider_does_not_stop_the_sweep(services, providers, session_factory):
    txn = await pending_transaction(services)
    providers["phonepe"].configure(transient_failures=5)

    assert await reconcile_pending_payments(services.checkout, session_factory, 5, as_of=later()) == 0
    assert (await services.checkout.get_transaction(txn.id)).status == TransactionStatus.PENDING
