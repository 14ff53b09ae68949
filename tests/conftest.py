"""Shared fixtures: in-memory SQLite schema, seeded catalog, wired services."""
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool

from core.database import build_engine, build_session_factory, init_db
from core.errors import GatewayTransientError
from core.resilience.circuit_breaker import CircuitBreaker
from core.resilience.retry import RetryPolicy
from patterns.domain_config import CommerceConfig, PaymentProvidersConfig
from verticals.bookstore.models.db_models import BookFormat, BookFormatVariant
from verticals.bookstore.payments import ProviderRegistry
from verticals.bookstore.payments.fake import FakeProvider
from verticals.bookstore.services import build_services

PAPERBACK = 1
HARDCOVER = 2
EBOOK = 3
SOLD_OUT = 4
DISCONTINUED = 5


async def _no_sleep(_delay: float) -> None:
    return None


async def seed_catalog(factory):
    async with factory() as s:
        async with s.begin():
            s.add_all(
                [
                    BookFormatVariant(
                        id=PAPERBACK, book_id=1, title="Dune (Paperback)",
                        format=BookFormat.PAPERBACK, price=Decimal("499.00"), stock_quantity=6,
                    ),
                    BookFormatVariant(
                        id=HARDCOVER, book_id=1, title="Dune (Hardcover)",
                        format=BookFormat.HARDCOVER, price=Decimal("899.00"), stock_quantity=2,
                    ),
                    BookFormatVariant(
                        id=EBOOK, book_id=1, title="Dune (eBook)",
                        format=BookFormat.EBOOK, price=Decimal("199.00"), stock_quantity=0,
                    ),
                    BookFormatVariant(
                        id=SOLD_OUT, book_id=2, title="Emma (Paperback)",
                        format=BookFormat.PAPERBACK, price=Decimal("250.00"), stock_quantity=0,
                    ),
                    BookFormatVariant(
                        id=DISCONTINUED, book_id=3, title="Old Atlas",
                        format=BookFormat.HARDCOVER, price=Decimal("100.00"), stock_quantity=5,
                        is_active=False,
                    ),
                ]
            )
    return factory


@pytest_asyncio.fixture
async def engine():
    engine = build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return await seed_catalog(build_session_factory(engine))


@pytest_asyncio.fixture
async def pooled_session_factory(tmp_path):
    """File database behind a single-connection pool.

    Concurrent tasks each get their own session and wait for the connection,
    so transactions interleave one at a time as they would under row locks.
    """
    engine = build_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'bookstore.db'}",
        poolclass=AsyncAdaptedQueuePool,
        pool_size=1,
        max_overflow=0,
    )
    await init_db(engine)
    yield await seed_catalog(build_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def config():
    return CommerceConfig(payments=PaymentProvidersConfig(use_fake_providers=True))


@pytest.fixture
def providers():
    return {"phonepe": FakeProvider(name="phonepe"), "razorpay": FakeProvider(name="razorpay")}


@pytest.fixture
def registry(providers):
    registry = ProviderRegistry(
        retry=RetryPolicy(max_attempts=3, base_delay=0, retry_on=(GatewayTransientError,), sleep=_no_sleep),
        breaker_factory=lambda name: CircuitBreaker(name=name, failure_threshold=5, timeout=5.0),
    )
    for provider in providers.values():
        registry.register(provider)
    return registry


@pytest.fixture
def services(config, session_factory, registry):
    services = build_services(config, session_factory, registry=registry)
    services.idempotency.in_flight_wait = 0.05
    services.idempotency.poll_interval = 0.01
    return services


@pytest.fixture
def pooled_services(config, pooled_session_factory, registry):
    services = build_services(config, pooled_session_factory, registry=registry)
    services.idempotency.in_flight_wait = 5.0
    services.idempotency.poll_interval = 0.01
    return services


async def variant_state(session_factory, variant_id):
    """(stock_quantity, reserved_quantity) as committed in the database."""
    async with session_factory() as s:
        variant = await s.get(BookFormatVariant, variant_id)
        return variant.stock_quantity, variant.reserved_quantity
