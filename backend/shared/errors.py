"""
Typed error taxonomy shared by every component.

Each error carries a ``retryable`` flag so callers decide on retry/skip
without inspecting messages.
"""
from __future__ import annotations

from typing import Any, Optional


class MatchThreadError(Exception):
    """Base class for all service errors."""

    retryable: bool = False

    def __init__(self, message: str = "", *, retryable: Optional[bool] = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


# ── Source ──────────────────────────────────────────────────────────────
class FetchError(MatchThreadError):
    """Upstream match source failed to answer (timeout, 5xx, circuit open)."""

    retryable = True


class MatchNotFoundError(FetchError):
    """Upstream answered but does not know the match."""

    retryable = False


# ── Data validation ─────────────────────────────────────────────────────
class ValidationError(MatchThreadError):
    """Malformed or inconsistent data. Resolves to a skip, never retried blindly."""

    def __init__(self, reason: str, message: str = "", **context: Any) -> None:
        super().__init__(message or reason, retryable=False)
        self.reason = reason
        self.context = context


class StaleDataError(ValidationError):
    """Data outside the acceptable freshness/retention window."""


# ── Locks ───────────────────────────────────────────────────────────────
class LockTimeoutError(MatchThreadError):
    """Waited longer than the configured timeout for a mutation lock."""

    def __init__(self, resource_key: str, timeout_s: float) -> None:
        super().__init__(f"Lock wait for '{resource_key}' exceeded {timeout_s:.1f}s", retryable=True)
        self.resource_key = resource_key
        self.timeout_s = timeout_s


class NestedLockError(MatchThreadError, RuntimeError):
    """A task holding a mutation lock tried to acquire another one."""


class RetryExhaustedError(MatchThreadError):
    """A retryable operation kept failing until the attempt cap."""

    def __init__(self, resource_key: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"Operation on '{resource_key}' failed after {attempts} attempts: {last_error}",
            retryable=False,
        )
        self.resource_key = resource_key
        self.attempts = attempts
        self.last_error = last_error


# ── Persistence ─────────────────────────────────────────────────────────
class StoreError(MatchThreadError):
    """Persistent store failure."""


class StoreBusyError(StoreError):
    """Transient contention in the persistent store (busy / locked / serialization)."""

    retryable = True


class DuplicateDetectedError(MatchThreadError):
    """An artifact already exists; callers short-circuit to a no-op."""

    def __init__(self, message: str = "", *, existing: Any = None) -> None:
        super().__init__(message, retryable=False)
        self.existing = existing


# ── Thread platform ─────────────────────────────────────────────────────
class ThreadPlatformError(MatchThreadError):
    """Chat platform request failed."""

    retryable = True

    def __init__(self, message: str = "", *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ThreadRateLimitedError(ThreadPlatformError):
    def __init__(self, retry_after: float, message: str = "") -> None:
        super().__init__(message or f"Rate limited, retry after {retry_after:.1f}s", status=429)
        self.retry_after = retry_after


class ThreadLockedError(ThreadPlatformError):
    """Thread is locked/archived and refuses writes."""

    retryable = False
