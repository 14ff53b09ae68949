"""Service wiring for the bookstore vertical.

Builds the ledger, merge engine, checkout orchestrator, provider registry
and maintenance runner from one CommerceConfig and one session factory.
The API lifespan stores the result on ``app.state.services``; route
handlers receive it through :func:`get_services`.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.resilience.idempotency import IdempotencyStore
from patterns.domain_config import CommerceConfig
from verticals.bookstore.cart_ledger import CartLedger
from verticals.bookstore.cart_merge import CartMergeEngine
from verticals.bookstore.checkout import CheckoutService
from verticals.bookstore.maintenance import MaintenanceRunner
from verticals.bookstore.payments import ProviderRegistry, build_registry


@dataclass
class BookstoreServices:
    config: CommerceConfig
    session_factory: async_sessionmaker[AsyncSession]
    registry: ProviderRegistry
    idempotency: IdempotencyStore
    ledger: CartLedger
    merge: CartMergeEngine
    checkout: CheckoutService
    maintenance: MaintenanceRunner


def build_services(
    config: CommerceConfig,
    session_factory: async_sessionmaker[AsyncSession],
    registry: Optional[ProviderRegistry] = None,
) -> BookstoreServices:
    registry = registry or build_registry(config)
    idempotency = IdempotencyStore(
        session_factory,
        default_ttl_seconds=config.checkout.idempotency_ttl_seconds,
        in_flight_wait_seconds=config.checkout.in_flight_wait_seconds,
    )
    ledger = CartLedger(session_factory, config.cart, currency=config.checkout.currency)
    merge = CartMergeEngine(session_factory, ledger, idempotency, config.cart)
    checkout = CheckoutService(session_factory, ledger, registry, idempotency, config)
    maintenance = MaintenanceRunner(
        session_factory,
        ledger,
        checkout,
        idempotency,
        reservation_ttl_minutes=config.cart.reservation_ttl_minutes,
        order_timeout_minutes=config.checkout.order_timeout_minutes,
        reconcile_after_minutes=config.checkout.reconcile_after_minutes,
        interval_seconds=config.maintenance_interval_seconds,
    )
    return BookstoreServices(
        config=config,
        session_factory=session_factory,
        registry=registry,
        idempotency=idempotency,
        ledger=ledger,
        merge=merge,
        checkout=checkout,
        maintenance=maintenance,
    )


def get_services(request: Request) -> BookstoreServices:
    """FastAPI dependency returning the services built at startup."""
    return request.app.state.services
