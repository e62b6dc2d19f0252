"""
Per-resource mutation locks.

At most one critical section runs per resource key. Waiters are served in
arrival order and ownership is handed directly to the next waiter on
release, so a late arrival can never overtake the queue.
"""
from __future__ import annotations

import asyncio
import contextvars
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from shared.config import Settings, get_settings
from shared.errors import LockTimeoutError, NestedLockError, RetryExhaustedError, StoreBusyError
from shared.utils.logging import get_logger
from shared.utils.metrics import LOCK_WAIT

logger = get_logger(__name__)

T = TypeVar("T")

_held_key: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("mutation_lock_held", default=None)


@dataclass
class _KeyState:
    locked: bool = False
    waiters: deque[asyncio.Future[None]] = field(default_factory=deque)


class MutationLockManager:
    def __init__(
        self,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings or get_settings()
        self._sleep = sleep
        self._keys: dict[str, _KeyState] = {}

    def backoff(self, attempt: int) -> float:
        s = self._settings
        return min(s.lock_backoff_cap_s, s.lock_backoff_base_s * (2 ** (attempt - 1)))

    async def with_lock(
        self,
        resource_key: str,
        fn: Callable[[], Awaitable[T]],
        *,
        timeout_s: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> T:
        """
        Run ``fn`` while holding the lock for ``resource_key``.

        Raises:
            NestedLockError: the calling task already holds a lock.
            LockTimeoutError: the lock was not acquired within ``timeout_s``.
            RetryExhaustedError: ``fn`` kept failing with ``StoreBusyError``.
        """
        held = _held_key.get()
        if held is not None:
            raise NestedLockError(f"Lock '{resource_key}' requested while holding '{held}'")

        timeout = self._settings.lock_timeout_s if timeout_s is None else timeout_s
        attempts = max_attempts or self._settings.lock_max_attempts
        last_error: Optional[StoreBusyError] = None

        for attempt in range(1, attempts + 1):
            await self._acquire(resource_key, timeout)
            token = _held_key.set(resource_key)
            try:
                return await fn()
            except StoreBusyError as exc:
                last_error = exc
            finally:
                _held_key.reset(token)
                self._release(resource_key)

            if attempt < attempts:
                delay = self.backoff(attempt)
                logger.warning(
                    "lock_operation_busy_retry",
                    resource_key=resource_key,
                    attempt=attempt,
                    delay_s=delay,
                    error=str(last_error),
                )
                await self._sleep(delay)

        logger.error("lock_operation_retries_exhausted", resource_key=resource_key, attempts=attempts)
        raise RetryExhaustedError(resource_key, attempts, last_error or StoreBusyError(resource_key))

    async def _acquire(self, key: str, timeout: float) -> None:
        state = self._keys.setdefault(key, _KeyState())
        if not state.locked and not state.waiters:
            state.locked = True
            LOCK_WAIT.observe(0.0)
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        state.waiters.append(waiter)
        started = time.perf_counter()
        try:
            await asyncio.wait_for(waiter, timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as exc:
            if waiter.done() and not waiter.cancelled():
                # Ownership arrived together with the timeout; pass it on
                self._release(key)
            else:
                try:
                    state.waiters.remove(waiter)
                except ValueError:
                    pass
            if isinstance(exc, asyncio.CancelledError):
                raise
            logger.warning("lock_timeout", resource_key=key, timeout_s=timeout, queued=len(state.waiters))
            raise LockTimeoutError(key, timeout) from None
        finally:
            LOCK_WAIT.observe(time.perf_counter() - started)

    def _release(self, key: str) -> None:
        state = self._keys.get(key)
        if state is None:
            return
        while state.waiters:
            nxt = state.waiters.popleft()
            if not nxt.done():
                nxt.set_result(None)
                return
        state.locked = False
        del self._keys[key]

    def status(self) -> dict[str, dict[str, Any]]:
        return {
            key: {"held": state.locked, "queued": sum(1 for w in state.waiters if not w.done())}
            for key, state in self._keys.items()
        }
