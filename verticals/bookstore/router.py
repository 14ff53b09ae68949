"""Bookstore API router — cart, merge, checkout, webhooks, orders.

Standard router pattern:
- Services injected via FastAPI Depends (built once in the API lifespan)
- Caller identity from RequestContext (``X-User-Id`` / ``X-Session-Id``)
- Domain errors propagate to the app-level CommerceError handler
"""

from typing import Optional
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.middleware import RequestContext, get_request_context
from verticals.bookstore.cart_ledger import CartIdentity
from verticals.bookstore.cart_merge import GuestCartItem
from verticals.bookstore.models.db_models import Cart
from verticals.bookstore.models.schemas import (
    AddItemRequest,
    CheckoutRequest,
    FulfillmentUpdate,
    MergeRequest,
    RefundCreate,
    UpdateItemRequest,
)
from verticals.bookstore.services import BookstoreServices, get_services

router = APIRouter()


def _identity(ctx: RequestContext) -> CartIdentity:
    if ctx.user_id:
        return CartIdentity.for_user(ctx.user_id)
    if ctx.session_id:
        return CartIdentity.for_session(ctx.session_id)
    raise HTTPException(status_code=401, detail="X-User-Id or X-Session-Id header is required")


def _cart_body(cart: Optional[Cart], identity: CartIdentity) -> dict:
    if cart is not None:
        return cart.to_dict()
    return {
        "id": None,
        "userId": identity.user_id,
        "sessionId": identity.session_id,
        "status": "ACTIVE",
        "items": [],
        "itemCount": 0,
        "subtotal": "0.00",
        "total": "0.00",
        "checkoutStartedAt": None,
        "updatedAt": None,
    }


# ============================================================================
# Cart Endpoints
# ============================================================================

@router.get("/cart")
async def get_cart(
    ctx: RequestContext = Depends(get_request_context),
    services: BookstoreServices = Depends(get_services),
):
    """Get the caller's ACTIVE cart (an empty one if none exists yet)."""
    identity = _identity(ctx)
    cart = await services.ledger.get_cart(identity)
    return _cart_body(cart, identity)


@router.post("/cart/items", status_code=201)
async def add_cart_item(
    request: AddItemRequest,
    ctx: RequestContext = Depends(get_request_context),
    services: BookstoreServices = Depends(get_services),
):
    """Add a variant to the cart, reserving stock for physical formats."""
    identity = _identity(ctx)
    cart = await services.ledger.add_item(identity, request.book_format_variant_id, request.qty)
    return cart.to_dict()


@router.put("/cart/items/{item_id}")
async def update_cart_item(
    item_id: uuid.UUID,
    request: UpdateItemRequest,
    ctx: RequestContext = Depends(get_request_context),
    services: BookstoreServices = Depends(get_services),
):
    """Set a line's quantity; zero removes the line."""
    identity = _identity(ctx)
    cart = await services.ledger.update_item(identity, item_id, request.qty)
    return cart.to_dict()


@router.delete("/cart/items/{item_id}")
async def remove_cart_item(
    item_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    services: BookstoreServices = Depends(get_services),
):
    identity = _identity(ctx)
    cart = await services.ledger.remove_item(identity, item_id)
    return cart.to_dict()


@router.post("/cart/clear")
async def clear_cart(
    ctx: RequestContext = Depends(get_request_context),
    services: BookstoreServices = Depends(get_services),
):
    identity = _identity(ctx)
    cart = await services.ledger.clear_cart(identity)
    return _cart_body(cart, identity)


@router.post("/cart/merge")
async def merge_cart(
    request: MergeRequest,
    ctx: RequestContext = Depends(get_request_context),
    services: BookstoreServices = Depends(get_services),
):
    """Merge a guest cart into the signed-in user's cart after login."""
    if not ctx.user_id:
        raise HTTPException(status_code=401, detail="Sign in required to merge carts")
    result = await services.merge.merge_guest_cart(
        ctx.user_id,
        request.session_id,
        [
            GuestCartItem(
                variant_id=item.book_format_variant_id,
                qty=item.qty,
                local_price_cents=item.local_price_cents,
            )
            for item in request.items
        ],
    )
    return result.to_dict()


# ============================================================================
# Checkout & Webhooks
# ============================================================================

@router.post("/checkout", status_code=201)
async def checkout(
    request: CheckoutRequest,
    ctx: RequestContext = Depends(get_request_context),
    services: BookstoreServices = Depends(get_services),
):
    """Place an order from the ACTIVE cart and initiate payment.

    Retrying with the same ``Idempotency-Key`` returns the original result.
    """
    identity = _identity(ctx)
    key = ctx.idempotency_key or uuid.uuid4().hex
    if len(key) > 255:
        raise HTTPException(status_code=400, detail="Idempotency-Key is too long")

    result = await services.checkout.initiate_checkout(
        identity,
        request.payment_method,
        key,
        shipping_address=request.shipping_address,
    )
    headers = {"Idempotency-Key": key}
    if result.replayed:
        headers["Idempotent-Replayed"] = "true"
    return JSONResponse(result.body, status_code=result.status_code, headers=headers)


@router.post("/payments/webhook/{provider}")
async def payment_webhook(
    provider: str,
    request: Request,
    services: BookstoreServices = Depends(get_services),
):
    """Provider callback. Always 200 for a known provider; the outcome is logged."""
    if not services.registry.has(provider):
        raise HTTPException(status_code=404, detail=f"Unknown payment provider: {provider}")
    body = await request.body()
    outcome = await services.checkout.handle_webhook(provider, request.headers, body)
    return outcome.to_dict()


# ============================================================================
# Orders & Transactions
# ============================================================================

@router.get("/orders/{order_id}")
async def get_order(
    order_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    services: BookstoreServices = Depends(get_services),
):
    """Get one of the caller's orders with items and status history."""
    order = await services.checkout.get_order(order_id, _identity(ctx))
    return {
        **order.to_dict(),
        "transactions": [txn.to_dict() for txn in order.transactions],
    }


@router.patch("/orders/{order_id}/fulfillment")
async def update_fulfillment(
    order_id: uuid.UUID,
    request: FulfillmentUpdate,
    ctx: RequestContext = Depends(get_request_context),
    services: BookstoreServices = Depends(get_services),
):
    """Advance fulfillment (back-office)."""
    order = await services.checkout.advance_fulfillment(
        order_id,
        request.status,
        actor=ctx.user_id or "system",
        comment=request.comment,
    )
    return order.to_dict()


@router.get("/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: uuid.UUID,
    services: BookstoreServices = Depends(get_services),
):
    txn = await services.checkout.get_transaction(transaction_id)
    return txn.to_dict()


@router.post("/transactions/{transaction_id}/refund", status_code=201)
async def refund_transaction(
    transaction_id: uuid.UUID,
    request: RefundCreate,
    ctx: RequestContext = Depends(get_request_context),
    services: BookstoreServices = Depends(get_services),
):
    """Refund a successful transaction (back-office)."""
    refund = await services.checkout.refund(
        transaction_id,
        amount=request.amount,
        reason=request.reason,
        actor=ctx.user_id or "system",
    )
    return refund.to_dict()


# ============================================================================
# Catalog
# ============================================================================

@router.get("/variants/{variant_id}")
async def get_variant(
    variant_id: int,
    services: BookstoreServices = Depends(get_services),
):
    """Price and live availability of one book format."""
    variant = await services.ledger.get_variant(variant_id)
    return variant.to_dict()
