"""
Reconciliation engine.

Resolves the match source, the state repository and the chat platform into
exactly one action per match. ``decide`` only reads; ``apply`` performs the
side effects of a decision.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from cache.layer import AdaptiveCache
from reconciler.validation import is_overdue, is_regression, validate_finished
from rsvp.synchronizer import RsvpSynchronizer
from shared.config import Settings, get_settings
from shared.errors import FetchError, MatchThreadError, ThreadPlatformError, ValidationError
from shared.models.domain import Match, ThreadAssociation, ThreadInfo
from shared.models.enums import Action, InvalidationEvent, MatchStatus, ThreadType
from shared.utils.logging import get_logger
from shared.utils.metrics import RECONCILE_ACTIONS
from sources.base import MatchSource
from store.repository import StateRepository
from threads.lifecycle import ThreadLifecycleManager

logger = get_logger(__name__)


@dataclass
class Decision:
    match_id: str
    action: Action
    reason: str = ""
    fresh: Optional[Match] = None
    stored: Optional[Match] = None
    association: Optional[ThreadAssociation] = None
    thread: Optional[ThreadInfo] = None


class ReconciliationEngine:
    def __init__(
        self,
        repo: StateRepository,
        source: MatchSource,
        lifecycle: ThreadLifecycleManager,
        cache: AdaptiveCache,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        synchronizer: Optional[RsvpSynchronizer] = None,
    ) -> None:
        self._repo = repo
        self._source = source
        self._lifecycle = lifecycle
        self._cache = cache
        self._settings = settings or get_settings()
        self._clock = clock
        self._synchronizer = synchronizer

    async def _fetch_fresh(self, match_id: str) -> Match:
        """Authoritative record, never from cache, bounded by the fetch timeout."""
        try:
            return await asyncio.wait_for(
                self._source.fetch_match(match_id), self._settings.reconcile_fetch_timeout_s
            )
        except asyncio.TimeoutError as exc:
            raise FetchError(f"fetch_match({match_id}) timed out") from exc

    async def decide(self, match_id: str) -> Decision:
        now = self._clock()
        stored = self._repo.get_match(match_id)
        assoc = self._repo.get_association(match_id)

        def decision(
            action: Action,
            reason: str = "",
            fresh: Optional[Match] = None,
            thread: Optional[ThreadInfo] = None,
        ) -> Decision:
            return Decision(match_id, action, reason, fresh, stored, assoc, thread)

        # 1. Authoritative fetch
        try:
            fresh = await self._fetch_fresh(match_id)
        except ValidationError as exc:
            logger.warning("reconcile_invalid_data", **{**exc.context, "match_id": match_id, "reason": exc.reason})
            return decision(Action.SKIP, exc.reason)
        except FetchError as exc:
            if is_overdue(stored, now, self._settings):
                logger.warning(
                    "match_unconfirmed_overdue",
                    match_id=match_id,
                    status=stored.status.value,
                    scheduled_at=stored.scheduled_at,
                    overdue_s=int(now - stored.scheduled_at),
                )
            logger.info("reconcile_fetch_failed", match_id=match_id, error=str(exc), retryable=exc.retryable)
            return decision(Action.SKIP_UNVALIDATED, "fetch_failed")

        # 2. Lifecycle regression
        if is_regression(stored, fresh):
            logger.warning(
                "status_regression",
                match_id=match_id,
                stored_status=stored.status.value,
                fresh_status=fresh.status.value,
            )
            return decision(Action.SKIP_UNVALIDATED, "status_regression", fresh=fresh)

        # 3. Finish time sanity
        try:
            validate_finished(fresh, now, self._settings)
        except ValidationError as exc:
            logger.info("reconcile_finished_rejected", **{**exc.context, "match_id": match_id, "reason": exc.reason})
            return decision(Action.SKIP, exc.reason, fresh=fresh)

        # 4. Thread presence, verified against the platform
        if assoc is not None:
            try:
                thread = await self._lifecycle.get_thread(assoc.thread_id)
            except ThreadPlatformError as exc:
                logger.warning("thread_check_failed", match_id=match_id, thread_id=assoc.thread_id, error=str(exc))
                return decision(Action.SKIP_UNVALIDATED, "platform_error", fresh=fresh)
            if thread is None:
                return decision(Action.CLEANUP_STALE, "thread_gone", fresh=fresh)
            if fresh.status == MatchStatus.FINISHED and assoc.thread_type == ThreadType.UPCOMING:
                return decision(Action.CONVERT_TO_FINISHED, fresh=fresh, thread=thread)
            return decision(Action.NO_ACTION, fresh=fresh, thread=thread)

        try:
            found = await self._lifecycle.discover(match_id)
        except ThreadPlatformError as exc:
            logger.warning("thread_discovery_failed", match_id=match_id, error=str(exc))
            return decision(Action.SKIP_UNVALIDATED, "platform_error", fresh=fresh)
        if found is not None:
            return decision(Action.RESTORE_REFERENCE, "tagged_thread_found", fresh=fresh, thread=found)

        if fresh.status == MatchStatus.FINISHED:
            return decision(Action.CREATE_FINISHED, fresh=fresh)
        if fresh.status == MatchStatus.CANCELLED:
            return decision(Action.NO_ACTION, "cancelled", fresh=fresh)
        return decision(Action.CREATE_UPCOMING, fresh=fresh)

    async def apply(self, decision: Decision) -> Action:
        action = decision.action
        fresh, stored = decision.fresh, decision.stored
        if action.is_skip or fresh is None:
            return action

        events: list[InvalidationEvent] = []
        if stored is not None and stored.status in (MatchStatus.SCHEDULED, MatchStatus.READY) \
                and fresh.status == MatchStatus.LIVE:
            events.append(InvalidationEvent.MATCH_STARTED)
        rescheduled = (
            stored is not None
            and stored.scheduled_at != fresh.scheduled_at
            and not fresh.status.is_terminal
        )

        if action in (Action.CREATE_UPCOMING, Action.CREATE_FINISHED):
            _, created = await self._lifecycle.ensure_thread(fresh)
            if fresh.status == MatchStatus.FINISHED:
                events.append(InvalidationEvent.MATCH_FINISHED)
            if not created:
                # A stale cached listing hid a thread that the fresh lookup found
                action = Action.RESTORE_REFERENCE
                decision.reason = "found_on_create"
        elif action == Action.CONVERT_TO_FINISHED:
            await self._lifecycle.convert_to_finished(fresh, decision.thread)
            events.append(InvalidationEvent.MATCH_FINISHED)
        elif action == Action.RESTORE_REFERENCE and decision.thread is not None:
            await self._lifecycle.restore_reference(fresh, decision.thread)
        elif action == Action.CLEANUP_STALE:
            logger.info(
                "stale_reference_removed",
                match_id=decision.match_id,
                thread_id=decision.association.thread_id if decision.association else None,
            )
            await self._lifecycle.forget(decision.match_id)

        if rescheduled and action not in (Action.CREATE_UPCOMING, Action.CLEANUP_STALE):
            if await self._lifecycle.refresh_upcoming(fresh, stored.scheduled_at):
                logger.info(
                    "match_rescheduled",
                    match_id=fresh.match_id,
                    previous=stored.scheduled_at,
                    scheduled_at=fresh.scheduled_at,
                )
                if self._synchronizer is not None:
                    try:
                        await self._synchronizer.sync_match(fresh.match_id)
                    except MatchThreadError as exc:
                        logger.warning("rsvp_sync_failed", match_id=fresh.match_id, error=str(exc))
            events.append(InvalidationEvent.MATCH_RESCHEDULED)

        if not fresh.same_state(self._repo.get_match(fresh.match_id)):
            await self._repo.save_match(fresh, self._clock())

        for event in events:
            await self._cache.invalidate_for_event(event, fresh.match_id)
        return action

    async def reconcile(self, match_id: str) -> Action:
        decision = await self.decide(match_id)
        action = await self.apply(decision)
        RECONCILE_ACTIONS.labels(action=action.value).inc()
        if action != Action.NO_ACTION:
            logger.info("reconciled", match_id=match_id, action=action.value, reason=decision.reason)
        return action
