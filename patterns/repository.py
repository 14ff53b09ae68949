"""Async repository pattern for database access.

Provides a generic base repository bound to a caller-owned session. The
caller controls the transaction (see ``core.transaction``); repositories
only add, flush and query. Verticals subclass this to add locking reads
and domain-specific queries.
"""

from typing import Any, Generic, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.models.base import Base

# ---------------------------------------------------------------------------
# Type variable for model classes
# ---------------------------------------------------------------------------

ModelT = TypeVar("ModelT", bound=Base)


# ---------------------------------------------------------------------------
# Base repository
# ---------------------------------------------------------------------------

class BaseRepository(Generic[ModelT]):
    """Generic async repository.

    Subclass and set `model` to your SQLAlchemy model::

        class OrderRepository(BaseRepository[Order]):
            model = Order

            async def for_user(self, user_id: str):
                stmt = select(self.model).where(self.model.user_id == user_id)
                result = await self.session.execute(stmt)
                return list(result.scalars().all())
    """

    model: type[ModelT]

    def __init__(self, session: AsyncSession):
        self.session = session

    # -- Get by ID --

    async def get(self, item_id: Any, *, for_update: bool = False) -> Optional[ModelT]:
        """Get a single row by primary key, optionally with a row lock."""
        stmt = select(self.model).where(self.model.id == item_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # -- Create --

    async def add(self, item: ModelT) -> ModelT:
        self.session.add(item)
        await self.session.flush()
        return item

    # -- Delete --

    async def delete(self, item: ModelT) -> None:
        await self.session.delete(item)
        await self.session.flush()
