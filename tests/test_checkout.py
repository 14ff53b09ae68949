"""Test checkout orchestration: order placement, idempotency, provider failures."""
import asyncio
import uuid

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from conftest import EBOOK, HARDCOVER, PAPERBACK, variant_state
from core.errors import GatewayRejected, StockConflict, ValidationError
from core.models.idempotency import IdempotencyKey, IdempotencyState
from patterns.workflow_states import CartStatus, FulfillmentStatus, PaymentStatus, TransactionStatus
from verticals.bookstore.cart_ledger import CartIdentity
from verticals.bookstore.models.db_models import BookFormatVariant, CartItem, Order, Transaction
from verticals.bookstore.payments import PaymentMethod

USER = CartIdentity.for_user("u1")


async def count(session_factory, model):
    async with session_factory() as s:
        return (await s.execute(select(func.count()).select_from(model))).scalar_one()


async def checkout(services, key="key-1", identity=USER, method=PaymentMethod.PHONEPE):
    return await services.checkout.initiate_checkout(
        identity, method, key, shipping_address={"city": "Pune", "pincode": "411001"}
    )


@pytest.mark.asyncio
async def test_checkout_creates_pending_order(services, providers, session_factory):
    await services.ledger.add_item(USER, PAPERBACK, 2)
    await services.ledger.add_item(USER, EBOOK, 1)

    result = await checkout(services)

    assert result.status_code == 201
    assert not result.replayed
    assert result.body["amount"] == "1197.00"
    assert result.body["provider"] == "phonepe"
    assert result.body["payment"]["action"] == "REDIRECT"

    order = await services.checkout.get_order(uuid.UUID(result.order_id))
    assert order.payment_status == PaymentStatus.PENDING
    assert order.fulfillment_status == FulfillmentStatus.NOT_STARTED
    assert order.shipping_address["city"] == "Pune"
    assert sorted((i.variant_id, i.quantity) for i in order.items) == [(PAPERBACK, 2), (EBOOK, 1)]
    assert [log.comment for log in order.status_logs] == ["Order created"]

    txn = await services.checkout.get_transaction(uuid.UUID(result.transaction_id))
    assert txn.status == TransactionStatus.PENDING
    assert txn.gateway_ref_id.startswith("fake_order_")
    assert txn.raw_request["amountMinor"] == 119700

    call = providers["phonepe"].calls_for("initiate")[0]
    assert call["order_id"] == result.order_id

    assert await services.ledger.get_cart(USER) is None
    assert await variant_state(session_factory, PAPERBACK) == (6, 2)


@pytest.mark.asyncio
async def test_same_key_creates_one_transaction(services, providers, session_factory):
    await services.ledger.add_item(USER, PAPERBACK, 1)

    first = await checkout(services, key="same")
    second = await checkout(services, key="same")

    assert second.replayed
    assert second.body == first.body
    assert await count(session_factory, Transaction) == 1
    assert await count(session_factory, Order) == 1
    assert len(providers["phonepe"].calls_for("initiate")) == 1


@pytest.mark.asyncio
async def test_key_is_scoped_to_the_caller(services, session_factory):
    await services.ledger.add_item(USER, PAPERBACK, 1)
    other = CartIdentity.for_user("u2")
    await services.ledger.add_item(other, PAPERBACK, 1)

    a = await checkout(services, key="shared")
    b = await checkout(services, key="shared", identity=other)

    assert a.order_id != b.order_id
    assert await count(session_factory, Transaction) == 2


@pytest.mark.asyncio
async def test_empty_cart_rejected_and_key_released(services, session_factory):
    with pytest.raises(ValidationError):
        await checkout(services, key="k")

    await services.ledger.add_item(USER, PAPERBACK, 1)
    result = await checkout(services, key="k")
    assert result.status_code == 201
    assert not result.replayed


@pytest.mark.asyncio
async def test_reusing_key_with_different_payload_rejected(services):
    await services.ledger.add_item(USER, PAPERBACK, 1)
    await checkout(services, key="k")
    with pytest.raises(ValidationError):
        await checkout(services, key="k", method=PaymentMethod.RAZORPAY)


@pytest.mark.asyncio
async def test_transient_provider_errors_are_retried(services, providers, session_factory):
    await services.ledger.add_item(USER, PAPERBACK, 1)
    providers["phonepe"].configure(transient_failures=2)

    result = await checkout(services)

    assert result.status_code == 201
    assert len(providers["phonepe"].calls_for("initiate")) == 3
    assert await count(session_factory, Transaction) == 1


@pytest.mark.asyncio
async def test_rejected_payment_fails_order_and_reopens_cart(services, providers, session_factory):
    await services.ledger.add_item(USER, PAPERBACK, 2)
    providers["phonepe"].configure(should_succeed=False, failure_reason="Card declined")

    with pytest.raises(GatewayRejected):
        await checkout(services, key="k")

    assert len(providers["phonepe"].calls_for("initiate")) == 1
    async with session_factory() as s:
        txn = (await s.execute(select(Transaction))).scalars().one()
        order = await s.get(Order, txn.order_id)
    assert txn.status == TransactionStatus.FAILED
    assert txn.error_message == "Card declined"
    assert order.payment_status == PaymentStatus.FAILED
    assert [log.payment_status for log in order.status_logs] == [PaymentStatus.PENDING, PaymentStatus.FAILED]

    cart = await services.ledger.get_cart(USER)
    assert cart.status == CartStatus.ACTIVE
    assert cart.checkout_started_at is None
    assert cart.items[0].qty == 2
    assert await variant_state(session_factory, PAPERBACK) == (6, 2)

    replay = await checkout(services, key="k")
    assert replay.replayed
    assert replay.status_code == 402
    assert replay.body["error"] == "payment_rejected"
    assert replay.body["orderId"] == str(order.id)


@pytest.mark.asyncio
async def test_checkout_re_reserves_released_items(services, session_factory):
    await services.ledger.add_item(USER, HARDCOVER, 2)
    async with session_factory() as s:
        async with s.begin():
            await s.execute(update(CartItem).values(is_stock_reserved=False))
            await s.execute(update(BookFormatVariant).where(BookFormatVariant.id == HARDCOVER).values(reserved_quantity=0))

    await checkout(services)

    assert await variant_state(session_factory, HARDCOVER) == (2, 2)


@pytest.mark.asyncio
async def test_checkout_conflict_when_stock_gone(services, session_factory):
    await services.ledger.add_item(USER, HARDCOVER, 2)
    async with session_factory() as s:
        async with s.begin():
            await s.execute(update(CartItem).values(is_stock_reserved=False))
            await s.execute(
                update(BookFormatVariant)
                .where(BookFormatVariant.id == HARDCOVER)
                .values(reserved_quantity=1)
            )

    with pytest.raises(StockConflict) as exc_info:
        await checkout(services)
    assert exc_info.value.available == 1
    assert await count(session_factory, Order) == 0
    assert (await services.ledger.get_cart(USER)).status == CartStatus.ACTIVE


@pytest.mark.asyncio
async def test_provider_call_survives_caller_cancellation(services, providers, session_factory):
    await services.ledger.add_item(USER, PAPERBACK, 1)
    provider = providers["phonepe"]
    provider.configure(delay_seconds=0.2)

    task = asyncio.create_task(checkout(services, key="cancel-me"))
    while not provider.calls:
        await asyncio.sleep(0.005)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await services.checkout.drain()

    async with session_factory() as s:
        txn = (await s.execute(select(Transaction))).scalars().one()
        record = (await s.execute(select(IdempotencyKey))).scalars().one()
    assert txn.gateway_ref_id is not None
    assert txn.status == TransactionStatus.PENDING
    assert record.status == IdempotencyState.COMPLETED


@pytest.mark.asyncio
async def test_order_visible_only_to_owner(services):
    from core.errors import NotFoundError

    await services.ledger.add_item(USER, PAPERBACK, 1)
    result = await checkout(services)

    order = await services.checkout.get_order(uuid.UUID(result.order_id), USER)
    assert str(order.id) == result.order_id
    with pytest.raises(NotFoundError):
        await services.checkout.get_order(uuid.UUID(result.order_id), CartIdentity.for_user("intruder"))


async def key_states(session_factory):
    async with session_factory() as s:
        return [record.status for record in (await s.execute(select(IdempotencyKey))).scalars()]


async def database_down(*args, **kwargs):
    raise OperationalError("UPDATE transactions", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_unrecorded_initiation_does_not_hold_the_key(services, session_factory, monkeypatch):
    await services.ledger.add_item(USER, PAPERBACK, 1)
    monkeypatch.setattr(services.checkout, "_record_initiation_success", database_down)

    with pytest.raises(OperationalError):
        await checkout(services)

    assert await key_states(session_factory) == [IdempotencyState.FAILED]

    # The retry owns the key again; the cart is already in checkout.
    monkeypatch.undo()
    with pytest.raises(ValidationError):
        await checkout(services)


@pytest.mark.asyncio
async def test_unrecorded_rejection_does_not_hold_the_key(services, providers, session_factory, monkeypatch):
    await services.ledger.add_item(USER, PAPERBACK, 1)
    providers["phonepe"].configure(should_succeed=False)
    monkeypatch.setattr(services.checkout, "_record_initiation_failure", database_down)

    with pytest.raises(OperationalError):
        await checkout(services)

    assert await key_states(session_factory) == [IdempotencyState.FAILED]


@pytest.mark.asyncio
async def test_concurrent_checkouts_with_one_key_place_one_order(pooled_services, providers, pooled_session_factory):
    await pooled_services.ledger.add_item(USER, PAPERBACK, 1)
    providers["phonepe"].configure(delay_seconds=0.05)

    first, second = await asyncio.gather(
        checkout(pooled_services, key="same"),
        checkout(pooled_services, key="same"),
    )

    assert sorted([first.replayed, second.replayed]) == [False, True]
    assert first.order_id == second.order_id
    assert await count(pooled_session_factory, Transaction) == 1
    assert await count(pooled_session_factory, Order) == 1
    assert len(providers["phonepe"].calls_for("initiate")) == 1
