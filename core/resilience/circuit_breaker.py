"""
Rental core circuit breaker for outbound calls.

Protects the engine from a misbehaving collaborator (SMS/email gateway):
- Slow responses (per-attempt timeout)
- Transient failures (retry with exponential backoff)
- Cascading failures (circuit opens after repeated exhausted calls)
"""
from __future__ import annotations
from typing import Awaitable, Callable, Optional, Any
from datetime import datetime, timezone
from enum import Enum
import asyncio
import logging

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject calls
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitOpenError(RuntimeError):
    """Raised without calling the collaborator while the circuit is open."""


class CircuitBreaker:
    """
    Circuit breaker with per-attempt timeout and exponential backoff.
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        timeout: Optional[float] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure: Optional[datetime] = None

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN:
            if self._last_failure and (
                datetime.now(timezone.utc) - self._last_failure
            ).total_seconds() > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def backoff_for(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** attempt), self.backoff_max)

    async def call(
        self,
        func: Callable[..., Awaitable[Any]],
        *args,
        **kwargs,
    ) -> Any:
        """Await ``func`` with timeout, retry and circuit protection."""
        if self.state == CircuitState.OPEN:
            raise CircuitOpenError(
                f"Circuit {self.name} OPEN. Retry after {self.recovery_timeout}s"
            )

        last_error: Optional[BaseException] = None
        for attempt in range(self.max_retries + 1):
            try:
                if self.timeout is not None:
                    result = await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)
                else:
                    result = await func(*args, **kwargs)

                # Success resets the circuit
                self._failure_count = 0
                self._state = CircuitState.CLOSED
                return result

            except Exception as e:
                last_error = e
                logger.warning(
                    "%s attempt %d/%d failed: %r",
                    self.name, attempt + 1, self.max_retries + 1, e,
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.backoff_for(attempt))

        # All retries failed
        self._failure_count += 1
        self._last_failure = datetime.now(timezone.utc)

        if self._failure_count >= self.failure_threshold:
            logger.error("Circuit %s opened after %d exhausted calls", self.name, self._failure_count)
            self._state = CircuitState.OPEN

        raise last_error
