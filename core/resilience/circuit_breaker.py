"""
Bookstore Circuit Breaker — Fail Fast on Unhealthy Dependencies

Protects against:
- Cascading failures (OPEN state rejects calls without invoking them)
- Slow responses (hard timeout per call, counted as a failure)
- Flapping recovery (HALF_OPEN needs several successes to close)

One breaker is kept per payment provider. Retries belong to RetryPolicy and
run inside the breaker's timeout window.
"""
from __future__ import annotations
from typing import Any, Awaitable, Callable, Optional, TypeVar
from enum import Enum
import asyncio
import time

import structlog

from core.errors import CircuitOpenError, GatewayTimeoutError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing — reject calls
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """
    Three-state circuit breaker with a per-call timeout.

    CLOSED: failures accumulate; reaching failure_threshold opens the circuit.
    OPEN: calls fail with CircuitOpenError until reset_timeout has elapsed,
          then the next call is let through and the state becomes HALF_OPEN.
    HALF_OPEN: success_threshold successes close the circuit, any failure
               reopens it.
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        success_threshold: int = 2,
        timeout: float = 60.0,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt: float = 0.0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under breaker protection."""
        if self._state == CircuitState.OPEN:
            now = self._clock()
            if now < self._next_attempt:
                raise CircuitOpenError(self.name, self._next_attempt - now)
            self._transition(CircuitState.HALF_OPEN)

        try:
            result = await asyncio.wait_for(operation(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._on_failure()
            raise GatewayTimeoutError(
                f"Operation timed out after {self.timeout}s",
                provider=self.name,
            ) from None
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def snapshot(self) -> dict[str, Any]:
        retry_after: Optional[float] = None
        if self._state == CircuitState.OPEN:
            retry_after = round(max(self._next_attempt - self._clock(), 0.0), 1)
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "retry_after_seconds": retry_after,
        }

    # -- internals ------------------------------------------------------------

    def _on_success(self) -> None:
        self._failure_count = 0
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._next_attempt = self._clock() + self.reset_timeout
            self._transition(CircuitState.OPEN)

    def _transition(self, target: CircuitState) -> None:
        if target == self._state:
            return
        previous = self._state
        self._state = target
        self._success_count = 0
        if target == CircuitState.CLOSED:
            self._failure_count = 0
        log = logger.warning if target == CircuitState.OPEN else logger.info
        log(
            "circuit_breaker_transition",
            breaker=self.name,
            previous=previous.value,
            state=target.value,
            failures=self._failure_count,
        )
