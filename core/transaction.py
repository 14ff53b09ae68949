"""Transactional boundary for multi-row mutations.

Stock counters, cart items, orders and idempotency rows are only ever
mutated inside one of these blocks: commit on success, rollback and
re-raise on any exception, session always closed. Passing an existing
session that is already inside a transaction reuses it, so nested service
calls never open a second transaction or commit half of the work.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
    session: Optional[AsyncSession] = None,
) -> AsyncIterator[AsyncSession]:
    """Yield a session bound to a single database transaction."""
    if session is not None and session.in_transaction():
        yield session
        return

    if session is not None:
        async with session.begin():
            yield session
        return

    async with session_factory() as new_session:
        try:
            async with new_session.begin():
                yield new_session
        except Exception as e:
            logger.debug("transaction_rolled_back", error=str(e), error_type=type(e).__name__)
            raise


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    fn: Callable[[AsyncSession], Awaitable[T]],
    *,
    session: Optional[AsyncSession] = None,
) -> T:
    """Run ``fn(session)`` inside :func:`transaction` and return its result."""
    async with transaction(session_factory, session=session) as active:
        return await fn(active)
