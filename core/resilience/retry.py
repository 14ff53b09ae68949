"""
Bookstore Retry Policy — Bounded Retries with Backoff.

Retries an async operation for whitelisted error types only. Delays grow
exponentially (``base_delay * 2^(attempt-1)``, capped at ``max_delay``) or
stay constant at ``base_delay``. The last error is re-raised with the number
of attempts attached as ``error.attempts``.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar
import asyncio

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential: bool = True
    # Empty tuple means every exception is retryable.
    retry_on: tuple[type[BaseException], ...] = ()
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt following ``attempt`` (1-based)."""
        if not self.exponential:
            return self.base_delay
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def is_retryable(self, error: BaseException) -> bool:
        if not self.retry_on:
            return True
        return isinstance(error, self.retry_on)

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as e:
                if not self.is_retryable(e) or attempt >= self.max_attempts:
                    _attach_attempts(e, attempt)
                    if attempt >= self.max_attempts and self.is_retryable(e):
                        logger.error(
                            "retry_exhausted",
                            attempts=attempt,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "retry_attempt_failed",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self.sleep(delay)

    def wrap(self, operation: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        """Return a callable that runs ``operation`` under this policy."""

        async def guarded(*args, **kwargs) -> T:
            return await self.run(lambda: operation(*args, **kwargs))

        guarded.__name__ = getattr(operation, "__name__", "guarded")
        return guarded


def _attach_attempts(error: BaseException, attempts: int) -> None:
    error.attempts = attempts  # type: ignore[attr-defined]
