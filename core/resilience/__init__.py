"""
Bookstore Core Resilience — Fault Tolerance Primitives.

Provides reliability patterns for external calls and duplicate requests:
- CircuitBreaker: Fail fast while a dependency is unhealthy
- RetryPolicy: Bounded retries with exponential backoff
- IdempotencyStore: Prevent duplicate processing
"""
from core.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitState,
)
from core.resilience.idempotency import (
    IdempotencyReplay,
    IdempotencyStore,
    generate_idempotency_key,
    hash_request,
)
from core.resilience.retry import RetryPolicy

__all__ = [
    # Circuit breaker
    "CircuitBreaker",
    "CircuitState",
    # Retry
    "RetryPolicy",
    # Idempotency
    "IdempotencyReplay",
    "IdempotencyStore",
    "generate_idempotency_key",
    "hash_request",
]
