"""
Circuit breaker for upstream calls.

States:
  CLOSED    normal operation, requests pass through
  OPEN      too many failures, requests fail fast without calling upstream
  HALF_OPEN after the recovery period, a single probe request tests recovery
"""
from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from shared.errors import FetchError
from shared.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(FetchError):
    """Raised when the circuit is open and calls are being rejected."""

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(f"Circuit '{name}' is OPEN. Retry after {retry_after:.0f}s.")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """
    Async circuit breaker.

    Args:
        name: Identifier for logging.
        failure_threshold: Consecutive counted failures before opening.
        recovery_timeout_s: Seconds to stay OPEN before probing.
        counts_as_failure: Predicate selecting which exceptions count;
            defaults to every exception.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout_s: float = 60.0,
        counts_as_failure: Optional[Callable[[BaseException], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout_s = recovery_timeout_s
        self._counts_as_failure = counts_as_failure or (lambda exc: True)
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.recovery_timeout_s:
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
        }

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        current = self.state

        if current == CircuitState.OPEN:
            retry_after = self.recovery_timeout_s - (self._clock() - self._opened_at)
            raise CircuitOpenError(self.name, max(retry_after, 1.0))

        if current == CircuitState.HALF_OPEN:
            async with self._lock:
                if self._probe_in_flight:
                    raise CircuitOpenError(self.name, 5.0)
                self._probe_in_flight = True

        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            await self._on_failure(exc)
            raise
        await self._on_success()
        return result

    async def _on_success(self) -> None:
        async with self._lock:
            if self._state == CircuitState.OPEN:
                logger.info("circuit_breaker_closed", name=self.name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._probe_in_flight = False

    async def _on_failure(self, exc: Exception) -> None:
        async with self._lock:
            probing = self._probe_in_flight
            self._probe_in_flight = False
            if not self._counts_as_failure(exc):
                return
            self._failure_count += 1

            if probing:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning("circuit_breaker_reopened", name=self.name, error=str(exc))
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning(
                    "circuit_breaker_opened",
                    name=self.name,
                    failures=self._failure_count,
                    error=str(exc),
                )
