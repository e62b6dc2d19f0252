"""
Match thread service: the surface driven by the scheduler loops and by
user interactions.
"""
from __future__ import annotations

import time
from collections import Counter as Tally
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import TypeAdapter

from cache.layer import UPCOMING_KEY, AdaptiveCache, finished_key
from locks.manager import MutationLockManager
from reconciler.engine import ReconciliationEngine
from rsvp.service import RsvpResult, RsvpService
from rsvp.synchronizer import RsvpSynchronizer
from shared.config import Settings, get_settings
from shared.errors import FetchError, MatchThreadError, ValidationError
from shared.models.domain import Match
from shared.models.enums import Action, DataClass, InvalidationEvent, MatchStatus, RsvpResponse, ThreadType
from shared.utils.logging import get_logger
from shared.utils.metrics import CHECK_DURATION, TRACKED_MATCHES, atrack_latency
from sources.base import MatchSource
from store.repository import PurgeReport, StateRepository
from threads.lifecycle import ThreadLifecycleManager
from threads.platform import ThreadPlatform

logger = get_logger(__name__)

_MATCHES = TypeAdapter(list[Match])


@dataclass
class CheckReport:
    actions: dict[str, int] = field(default_factory=dict)
    rsvp: dict[str, int] = field(default_factory=dict)
    locked: int = 0
    errors: int = 0


@dataclass
class CleanupReport:
    stale_references: int = 0
    cache_entries: int = 0
    purge: PurgeReport = field(default_factory=PurgeReport)


class MatchThreadService:
    def __init__(
        self,
        repo: StateRepository,
        source: MatchSource,
        platform: ThreadPlatform,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        locks: Optional[MutationLockManager] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        self.repo = repo
        self.source = source
        self.platform = platform
        self.cache = AdaptiveCache(repo.store, repo.matches, self._settings, clock)
        self.locks = locks or MutationLockManager(self._settings)
        self.lifecycle = ThreadLifecycleManager(repo, platform, self.cache, self._settings, clock)
        self.synchronizer = RsvpSynchronizer(repo, source, platform, self.cache, self._settings)
        self.engine = ReconciliationEngine(
            repo, source, self.lifecycle, self.cache, self._settings, clock, synchronizer=self.synchronizer
        )
        self.rsvp = RsvpService(repo, self.locks, self.synchronizer, clock)
        self._check_running = False
        self._cleanup_running = False

    # ── Cached reads ────────────────────────────────────────────────────
    async def upcoming_matches(self, force_refresh: bool = False) -> list[Match]:
        return await self.cache.get(
            UPCOMING_KEY,
            self.source.fetch_upcoming,
            DataClass.UPCOMING_MATCHES,
            adapter=_MATCHES,
            force_refresh=force_refresh,
        )

    async def finished_matches(self, limit: Optional[int] = None, force_refresh: bool = False) -> list[Match]:
        limit = limit or self._settings.finished_fetch_limit
        return await self.cache.get(
            finished_key(limit),
            lambda: self.source.fetch_finished(limit),
            DataClass.FINISHED_MATCHES,
            adapter=_MATCHES,
            force_refresh=force_refresh,
        )

    def _candidate_ids(self, upcoming: list[Match], finished: list[Match]) -> list[str]:
        """Listed matches first, then everything stored that may still move."""
        ids: dict[str, None] = {}
        for match in upcoming + finished:
            ids.setdefault(match.match_id, None)
        for match in self.repo.matches():
            if not match.status.is_terminal:
                ids.setdefault(match.match_id, None)
        for assoc in self.repo.associations(ThreadType.UPCOMING):
            stored = self.repo.get_match(assoc.match_id)
            if stored is not None and stored.status == MatchStatus.CANCELLED:
                continue
            ids.setdefault(assoc.match_id, None)
        return list(ids)

    # ── Scheduler surface ───────────────────────────────────────────────
    async def reconcile(self, match_id: str) -> Action:
        """Reconcile one match; serialized with any other mutation of that match."""
        return await self.locks.with_lock(f"match:{match_id}", lambda: self.engine.reconcile(match_id))

    async def check_matches(self) -> Optional[CheckReport]:
        """
        One full pass: list matches, reconcile each, refresh RSVP views and
        lock aged finished threads. Returns None when skipped.
        """
        if self._check_running:
            logger.info("check_already_running")
            return None
        if not self.platform.is_ready():
            logger.info("check_skipped_platform_not_ready")
            return None

        self._check_running = True
        report = CheckReport()
        try:
            async with atrack_latency(CHECK_DURATION):
                upcoming: list[Match] = []
                finished: list[Match] = []
                try:
                    upcoming = await self.upcoming_matches()
                    finished = await self.finished_matches()
                except (FetchError, ValidationError) as exc:
                    logger.warning("match_list_unavailable", error=str(exc))

                ids = self._candidate_ids(upcoming, finished)
                TRACKED_MATCHES.set(len(ids))
                actions: Tally[str] = Tally()
                for match_id in ids:
                    try:
                        action = await self.reconcile(match_id)
                    except MatchThreadError as exc:
                        report.errors += 1
                        logger.error("reconcile_failed", match_id=match_id, error=str(exc), error_type=type(exc).__name__)
                        continue
                    actions[action.value] += 1
                report.actions = dict(actions)

                report.rsvp = await self.synchronizer.sync_all()
                report.locked = await self.lifecycle.lock_aged_threads()
        finally:
            self._check_running = False

        logger.info(
            "check_completed",
            matches=sum(report.actions.values()),
            actions=report.actions,
            rsvp=report.rsvp,
            locked=report.locked,
            errors=report.errors,
        )
        return report

    async def run_cleanup(self) -> Optional[CleanupReport]:
        """Drop stale thread references, expired cache rows and data past retention."""
        if self._cleanup_running:
            logger.info("cleanup_already_running")
            return None
        self._cleanup_running = True
        report = CleanupReport()
        try:
            if self.platform.is_ready():
                report.stale_references = await self.lifecycle.cleanup_stale_references()
            report.cache_entries = await self.cache.cleanup_expired()
            report.purge = await self.repo.purge(
                self._clock(),
                rsvp_retention_s=self._settings.stale_window_s,
                match_retention_s=self._settings.purge_after_s,
            )
        finally:
            self._cleanup_running = False
        logger.info(
            "cleanup_completed",
            stale_references=report.stale_references,
            cache_entries=report.cache_entries,
            purged_matches=report.purge.matches,
            purged_rsvp_matches=report.purge.rsvp_matches,
        )
        return report

    def get_cache_status(self) -> dict[str, Any]:
        status = self.cache.status()
        status["locks"] = self.locks.status()
        status["tracked_matches"] = len(self.repo.matches())
        return status

    async def invalidate_for_event(
        self, event_type: str | InvalidationEvent, match_id: Optional[str] = None
    ) -> None:
        await self.cache.invalidate_for_event(InvalidationEvent(event_type), match_id)

    # ── User surface ────────────────────────────────────────────────────
    async def submit_rsvp(
        self,
        match_id: str,
        user_id: str,
        response: str | RsvpResponse,
        display_name: Optional[str] = None,
        responded_at: Optional[float] = None,
    ) -> RsvpResult:
        return await self.rsvp.submit(match_id, user_id, response, display_name, responded_at)
