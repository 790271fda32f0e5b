"""
Rental core resilience: fault tolerance primitives.

Provides reliability patterns for the engine's shared state and outbound calls:
- CircuitBreaker: Timeout + retry with backoff for collaborators
- DeadLetterQueue: Capture and redeliver failed notifications
- KeyedLock: Per-record serialization without a global lock
"""
from core.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
)
from core.resilience.dlq import (
    DeadLetter,
    DeadLetterQueue,
    DLQStats,
    DLQStatus,
)
from core.resilience.locks import KeyedLock

__all__ = [
    # Circuit breaker
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    # DLQ
    "DeadLetter",
    "DeadLetterQueue",
    "DLQStats",
    "DLQStatus",
    # Locks
    "KeyedLock",
]
