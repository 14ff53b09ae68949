"""Persistent idempotency ledger row.

The unique ``key`` column is what makes a claim atomic: two concurrent
requests with the same key race on the INSERT and exactly one wins.
"""

import enum
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Enum as SAEnum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from core.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class IdempotencyState(str, enum.Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class IdempotencyKey(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    route: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    request_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[IdempotencyState] = mapped_column(
        SAEnum(IdempotencyState, native_enum=False, length=20),
        nullable=False,
        default=IdempotencyState.IN_PROGRESS,
    )
    response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    status_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<IdempotencyKey(key='{self.key}', status='{self.status.value}')>"
