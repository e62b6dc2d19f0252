"""
Two-tier adaptive cache: in-process memory in front of the persistent store's
cache table. Lifetimes follow the current cache phase, recomputed on every
write from the tracked matches.
"""
from __future__ import annotations

import json
import time
from collections import Counter as Tally
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from pydantic import TypeAdapter

from cache.phase import TTL, compute_phase, ttl_for
from shared.config import Settings, get_settings
from shared.errors import DuplicateDetectedError, StoreError
from shared.models.domain import Match
from shared.models.enums import CachePhase, DataClass, InvalidationEvent
from shared.utils.logging import get_logger
from shared.utils.metrics import CACHE_LOOKUPS, CACHE_PHASE
from store.persistent import PersistentStore

logger = get_logger(__name__)

T = TypeVar("T")

# Persistent-tier failures the cache logs and bypasses
_STORE_ERRORS = (StoreError, DuplicateDetectedError)

# ── Keys ────────────────────────────────────────────────────────────────
UPCOMING_KEY = "matches:upcoming"
FINISHED_PREFIX = "matches:finished:"
MATCH_PREFIX = "match:"
THREADS_KEY = "threads:listing"


def finished_key(limit: int) -> str:
    return f"{FINISHED_PREFIX}{limit}"


def match_key(match_id: str) -> str:
    return f"{MATCH_PREFIX}{match_id}"


def roster_key(team_id: str) -> str:
    return f"roster:{team_id}"


class AdaptiveCache:
    """
    Read-through cache with phase-dependent TTLs.

    Lookup order is memory, then persistent, then the loader. Entries are
    never served past expiry. Persistent-tier failures are logged and
    bypassed; loader errors propagate to the caller.
    """

    def __init__(
        self,
        store: PersistentStore,
        tracked_matches: Callable[[], Iterable[Match]],
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._tracked = tracked_matches
        self._settings = settings or get_settings()
        self._clock = clock
        self._memory: dict[str, tuple[Any, float]] = {}
        self._stats: Tally[str] = Tally()
        self._last_phase: Optional[CachePhase] = None

    # ── Phase ───────────────────────────────────────────────────────────
    def phase(self) -> CachePhase:
        phase = compute_phase(self._clock(), self._tracked(), self._settings)
        if phase != self._last_phase:
            for p in CachePhase:
                CACHE_PHASE.labels(phase=p.value).set(1 if p == phase else 0)
            if self._last_phase is not None:
                logger.info("cache_phase_changed", previous=self._last_phase.value, phase=phase.value)
            self._last_phase = phase
        return phase

    def ttl(self, data_class: DataClass) -> TTL:
        return ttl_for(self.phase(), data_class)

    # ── Serialization ───────────────────────────────────────────────────
    @staticmethod
    def _dump(value: Any, adapter: Optional[TypeAdapter[Any]]) -> str:
        if adapter is not None:
            return adapter.dump_json(value).decode()
        return json.dumps(value)

    @staticmethod
    def _load(payload: str, adapter: Optional[TypeAdapter[Any]]) -> Any:
        if adapter is not None:
            return adapter.validate_json(payload)
        return json.loads(payload)

    def _count(self, tier: str, result: str) -> None:
        self._stats[f"{tier}_{result}"] += 1
        CACHE_LOOKUPS.labels(tier=tier, result=result).inc()

    # ── Read-through ────────────────────────────────────────────────────
    async def get(
        self,
        key: str,
        loader: Callable[[], Awaitable[T]],
        data_class: DataClass,
        *,
        adapter: Optional[TypeAdapter[Any]] = None,
        force_refresh: bool = False,
    ) -> T:
        now = self._clock()
        ttl = self.ttl(data_class)

        if not force_refresh:
            cached = self._memory.get(key)
            if cached is not None:
                value, expires_at = cached
                if expires_at > now:
                    self._count("memory", "hit")
                    return value
                del self._memory[key]
            self._count("memory", "miss")

            try:
                row = await self._store.cache_get(key, now)
            except _STORE_ERRORS as exc:
                logger.warning("cache_persistent_read_failed", key=key, error=str(exc))
                row = None
            if row is not None:
                payload, expires_at = row
                try:
                    value = self._load(payload, adapter)
                except ValueError as exc:
                    logger.warning("cache_payload_invalid", key=key, error=str(exc))
                else:
                    self._count("persistent", "hit")
                    if ttl.memory > 0:
                        self._memory[key] = (value, min(expires_at, now + ttl.memory))
                    return value
            self._count("persistent", "miss")

        value = await loader()
        await self.put(key, value, data_class, adapter=adapter, ttl=ttl)
        return value

    async def put(
        self,
        key: str,
        value: Any,
        data_class: DataClass,
        *,
        adapter: Optional[TypeAdapter[Any]] = None,
        ttl: Optional[TTL] = None,
    ) -> None:
        now = self._clock()
        ttl = ttl or self.ttl(data_class)
        if ttl.memory > 0:
            self._memory[key] = (value, now + ttl.memory)
        else:
            self._memory.pop(key, None)
        try:
            await self._store.cache_set(key, self._dump(value, adapter), now + ttl.persistent)
        except _STORE_ERRORS as exc:
            logger.warning("cache_persistent_write_failed", key=key, error=str(exc))

    # ── Invalidation ────────────────────────────────────────────────────
    async def invalidate(self, key: str) -> None:
        self._memory.pop(key, None)
        try:
            await self._store.cache_delete(key)
        except _STORE_ERRORS as exc:
            logger.warning("cache_persistent_delete_failed", key=key, error=str(exc))

    async def invalidate_prefix(self, prefix: str) -> None:
        for key in [k for k in self._memory if k.startswith(prefix)]:
            del self._memory[key]
        try:
            await self._store.cache_delete_prefix(prefix)
        except _STORE_ERRORS as exc:
            logger.warning("cache_persistent_delete_failed", prefix=prefix, error=str(exc))

    async def invalidate_for_event(self, event: InvalidationEvent, match_id: Optional[str] = None) -> None:
        """Drop exactly the keys the event makes stale."""
        if event == InvalidationEvent.THREAD_CREATED:
            await self.invalidate(THREADS_KEY)
        else:
            await self.invalidate(UPCOMING_KEY)
            if event == InvalidationEvent.MATCH_FINISHED:
                await self.invalidate_prefix(FINISHED_PREFIX)
            if match_id:
                await self.invalidate(match_key(match_id))
        logger.debug("cache_invalidated", cache_event=event.value, match_id=match_id)

    async def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (_, exp) in self._memory.items() if exp <= now]
        for key in expired:
            del self._memory[key]
        removed = len(expired)
        try:
            removed += await self._store.cache_cleanup_expired(now)
        except _STORE_ERRORS as exc:
            logger.warning("cache_cleanup_failed", error=str(exc))
        return removed

    def status(self) -> dict[str, Any]:
        phase = self.phase()
        return {
            "phase": phase.value,
            "ttls": {
                dc.value: {"memory": t.memory, "persistent": t.persistent}
                for dc, t in ((dc, ttl_for(phase, dc)) for dc in DataClass)
            },
            "memory_entries": len(self._memory),
            "stats": dict(self._stats),
        }
