"""
Bookstore Idempotency Store — Prevent Duplicate Processing.

Ensures operations are executed at most once, even with client retries.
Keys live in the ``idempotency_keys`` table; a claim is a single INSERT on
the unique ``key`` column, so concurrent requests with the same key cannot
both proceed.

Outcomes of :meth:`IdempotencyStore.claim`:
- ``None``: the caller owns the key and must ``complete`` or ``release`` it
- ``IdempotencyReplay``: the key already completed, replay the cached response
- ``IdempotencyInProgress`` raised: another request still holds the key
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
import asyncio
import hashlib
import json

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import IdempotencyInProgress, ValidationError
from core.models.base import as_utc
from core.models.idempotency import IdempotencyKey, IdempotencyState
from core.transaction import transaction

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IdempotencyReplay:
    """Cached outcome of a request that already completed under the same key."""
    key: str
    response: dict[str, Any]
    status_code: int


def generate_idempotency_key(operation: str, **kwargs: Any) -> str:
    """
    Generate a deterministic idempotency key from operation + params.
    Same inputs always produce the same key.
    """
    data = json.dumps({"op": operation, **kwargs}, sort_keys=True, default=str)
    return hashlib.sha256(data.encode()).hexdigest()[:32]


def hash_request(payload: Any) -> str:
    data = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(data.encode()).hexdigest()


class IdempotencyStore:
    """Database-backed idempotency ledger."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        default_ttl_seconds: int = 86400,
        in_flight_wait_seconds: float = 5.0,
        poll_interval_seconds: float = 0.1,
    ):
        self._session_factory = session_factory
        self.default_ttl = default_ttl_seconds
        self.in_flight_wait = in_flight_wait_seconds
        self.poll_interval = poll_interval_seconds

    async def claim(
        self,
        key: str,
        route: str,
        user_id: Optional[str] = None,
        request_hash: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> Optional[IdempotencyReplay]:
        """Atomically claim ``key`` before any side effect."""
        if await self._insert(key, route, user_id, request_hash, ttl_seconds):
            logger.debug("idempotency_key_claimed", key=key, route=route)
            return None

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.in_flight_wait
        while True:
            record = await self.get(key)
            if record is None or _is_expired(record):
                # Expired or released between our INSERT and SELECT.
                await self._delete_if_expired(key)
                if await self._insert(key, route, user_id, request_hash, ttl_seconds):
                    return None
            elif request_hash and record.request_hash and record.request_hash != request_hash:
                raise ValidationError(
                    "Idempotency key was already used with a different request",
                    {"idempotencyKey": key},
                )
            elif record.status == IdempotencyState.COMPLETED:
                logger.info("idempotency_replay", key=key, route=route)
                return IdempotencyReplay(
                    key=key,
                    response=record.response or {},
                    status_code=record.status_code or 200,
                )
            elif record.status == IdempotencyState.FAILED:
                if await self._reclaim_failed(key):
                    return None

            if loop.time() >= deadline:
                logger.warning("idempotency_key_in_progress", key=key, route=route)
                raise IdempotencyInProgress(key)
            await asyncio.sleep(self.poll_interval)

    async def complete(self, key: str, response: dict[str, Any], status_code: int = 200) -> None:
        """Mark ``key`` as completed and cache the response for replays."""
        async with transaction(self._session_factory) as session:
            await session.execute(
                update(IdempotencyKey)
                .where(IdempotencyKey.key == key)
                .values(
                    status=IdempotencyState.COMPLETED,
                    response=response,
                    status_code=status_code,
                )
                .execution_options(synchronize_session=False)
            )

    async def fail(self, key: str) -> None:
        """Mark ``key`` as failed so a later request may reclaim it."""
        async with transaction(self._session_factory) as session:
            await session.execute(
                update(IdempotencyKey)
                .where(IdempotencyKey.key == key)
                .values(status=IdempotencyState.FAILED)
                .execution_options(synchronize_session=False)
            )

    async def release(self, key: str) -> None:
        """Delete ``key`` entirely (nothing durable happened under it)."""
        async with transaction(self._session_factory) as session:
            await session.execute(delete(IdempotencyKey).where(IdempotencyKey.key == key))

    async def get(self, key: str) -> Optional[IdempotencyKey]:
        async with self._session_factory() as session:
            result = await session.execute(select(IdempotencyKey).where(IdempotencyKey.key == key))
            return result.scalar_one_or_none()

    async def cleanup_expired(self) -> int:
        """Remove all expired records. Returns count removed."""
        now = datetime.now(timezone.utc)
        async with transaction(self._session_factory) as session:
            result = await session.execute(
                delete(IdempotencyKey).where(
                    IdempotencyKey.expires_at.is_not(None),
                    IdempotencyKey.expires_at <= now,
                    IdempotencyKey.status != IdempotencyState.IN_PROGRESS,
                )
            )
        return result.rowcount or 0

    # -- internals ------------------------------------------------------------

    async def _insert(
        self,
        key: str,
        route: str,
        user_id: Optional[str],
        request_hash: Optional[str],
        ttl_seconds: Optional[int],
    ) -> bool:
        ttl = ttl_seconds or self.default_ttl
        try:
            async with transaction(self._session_factory) as session:
                session.add(
                    IdempotencyKey(
                        key=key,
                        route=route,
                        user_id=user_id,
                        request_hash=request_hash,
                        status=IdempotencyState.IN_PROGRESS,
                        expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl),
                    )
                )
        except IntegrityError:
            return False
        return True

    async def _reclaim_failed(self, key: str) -> bool:
        async with transaction(self._session_factory) as session:
            result = await session.execute(
                update(IdempotencyKey)
                .where(
                    IdempotencyKey.key == key,
                    IdempotencyKey.status == IdempotencyState.FAILED,
                )
                .values(status=IdempotencyState.IN_PROGRESS, response=None, status_code=None)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def _delete_if_expired(self, key: str) -> None:
        now = datetime.now(timezone.utc)
        async with transaction(self._session_factory) as session:
            await session.execute(
                delete(IdempotencyKey).where(
                    IdempotencyKey.key == key,
                    IdempotencyKey.expires_at.is_not(None),
                    IdempotencyKey.expires_at <= now,
                )
            )


def _is_expired(record: IdempotencyKey) -> bool:
    expires_at = as_utc(record.expires_at)
    return expires_at is not None and datetime.now(timezone.utc) >= expires_at
