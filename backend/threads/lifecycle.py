"""
Thread lifecycle manager.

Per match: NONE → UPCOMING_THREAD → FINISHED_THREAD → LOCKED.

Every mutating operation first looks at what already exists (stored
association, direct platform lookup, tag discovery) and short-circuits when
the desired end state is already there, so any operation can be retried
after a partial failure.
"""
from __future__ import annotations

import time
from typing import Callable, Optional

from pydantic import TypeAdapter

from cache.layer import THREADS_KEY, AdaptiveCache
from shared.config import Settings, get_settings
from shared.errors import DuplicateDetectedError, ThreadLockedError, ThreadPlatformError
from shared.models.domain import Match, ThreadAssociation, ThreadInfo
from shared.models.enums import DataClass, InvalidationEvent, MatchStatus, ThreadType
from shared.utils.logging import get_logger
from shared.utils.metrics import THREAD_OPERATIONS
from store.repository import StateRepository
from threads import naming
from threads.platform import ThreadPlatform

logger = get_logger(__name__)

_THREAD_LIST = TypeAdapter(list[ThreadInfo])


class ThreadLifecycleManager:
    def __init__(
        self,
        repo: StateRepository,
        platform: ThreadPlatform,
        cache: AdaptiveCache,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repo = repo
        self._platform = platform
        self._cache = cache
        self._settings = settings or get_settings()
        self._clock = clock

    # ── Lookup ──────────────────────────────────────────────────────────
    async def get_thread(self, thread_id: str) -> Optional[ThreadInfo]:
        """Direct platform lookup; ``None`` means gone or inaccessible."""
        return await self._platform.get_thread(thread_id)

    async def discover(self, match_id: str, *, fresh: bool = False) -> Optional[ThreadInfo]:
        """Find a thread carrying the match tag. ``fresh`` bypasses the cached listing."""
        tag = naming.match_tag(match_id)
        if fresh:
            threads = await self._platform.list_threads(tag)
        else:
            listing = await self._cache.get(
                THREADS_KEY, self._platform.list_threads, DataClass.SEARCH, adapter=_THREAD_LIST
            )
            threads = [t for t in listing if naming.has_tag(t.name, match_id)]
        if not threads:
            return None
        if len(threads) > 1:
            logger.warning(
                "duplicate_tagged_threads",
                match_id=match_id,
                thread_ids=[t.thread_id for t in threads],
            )
        # Prefer an open thread, then the oldest (Discord ids are time-ordered)
        threads.sort(key=lambda t: (t.locked or t.archived, int(t.thread_id) if t.thread_id.isdigit() else 0))
        return threads[0]

    async def _ensure_absent(self, match: Match) -> None:
        """Raise ``DuplicateDetectedError`` when any thread for the match already exists."""
        assoc = self._repo.get_association(match.match_id)
        if assoc is not None:
            existing = await self._platform.get_thread(assoc.thread_id)
            if existing is not None:
                raise DuplicateDetectedError(
                    f"match {match.match_id} already has thread {assoc.thread_id}", existing=existing
                )
            logger.info("stale_reference_dropped", match_id=match.match_id, thread_id=assoc.thread_id)
            await self._repo.remove_association(match.match_id)

        found = await self.discover(match.match_id, fresh=True)
        if found is not None:
            raise DuplicateDetectedError(
                f"tagged thread {found.thread_id} found for match {match.match_id}", existing=found
            )

    async def _record(self, match: Match, thread: ThreadInfo, thread_type: ThreadType) -> None:
        now = self._clock()
        try:
            async with self._repo.transaction():
                await self._repo.save_match(match, now)
                await self._repo.add_association(ThreadAssociation(
                    match_id=match.match_id,
                    thread_id=thread.thread_id,
                    thread_type=thread_type,
                    created_at=now,
                ))
                if thread_type == ThreadType.UPCOMING:
                    await self._repo.mark_processed(match.match_id, now)
        except DuplicateDetectedError as exc:
            logger.warning("association_conflict", match_id=match.match_id, thread_id=thread.thread_id, error=str(exc))
        await self._cache.invalidate_for_event(InvalidationEvent.THREAD_CREATED, match.match_id)

    # ── Creation ────────────────────────────────────────────────────────
    async def create(self, match: Match) -> ThreadInfo:
        """Create the upcoming thread, or adopt the one that already exists."""
        thread, _ = await self.ensure_thread(match)
        return thread

    async def create_finished(self, match: Match) -> ThreadInfo:
        """Create a result thread directly for a match first seen after it finished."""
        thread, _ = await self._ensure_finished(match)
        return thread

    async def ensure_thread(self, match: Match) -> tuple[ThreadInfo, bool]:
        """
        Make sure the match has a thread of the right kind.

        Returns the thread and whether it was created here; ``False`` means an
        existing thread was found on the platform and its reference restored.
        """
        if match.status == MatchStatus.FINISHED:
            return await self._ensure_finished(match)
        try:
            await self._ensure_absent(match)
        except DuplicateDetectedError as dup:
            logger.info("thread_create_short_circuit", match_id=match.match_id, thread_id=dup.existing.thread_id)
            await self.restore_reference(match, dup.existing)
            return dup.existing, False

        first_time = not self._repo.is_processed(match.match_id)
        thread = await self._platform.create_thread(
            naming.upcoming_name(match),
            naming.upcoming_message(match, self._settings.faceit_room_url),
        )
        await self._record(match, thread, ThreadType.UPCOMING)
        THREAD_OPERATIONS.labels(op="create_upcoming").inc()
        logger.info(
            "thread_created",
            match_id=match.match_id,
            thread_id=thread.thread_id,
            thread_type=ThreadType.UPCOMING.value,
            new_match=first_time,
        )
        return thread, True

    async def _ensure_finished(self, match: Match) -> tuple[ThreadInfo, bool]:
        try:
            await self._ensure_absent(match)
        except DuplicateDetectedError as dup:
            logger.info("thread_create_short_circuit", match_id=match.match_id, thread_id=dup.existing.thread_id)
            await self.restore_reference(match, dup.existing)
            await self.convert_to_finished(match, dup.existing)
            return dup.existing, False

        thread = await self._platform.create_thread(
            naming.finished_name(match),
            naming.summary_message(match, self._settings.faceit_room_url),
        )
        await self._record(match, thread, ThreadType.FINISHED)
        THREAD_OPERATIONS.labels(op="create_finished").inc()
        logger.info(
            "thread_created",
            match_id=match.match_id,
            thread_id=thread.thread_id,
            thread_type=ThreadType.FINISHED.value,
        )
        return thread, True

    # ── Transitions ─────────────────────────────────────────────────────
    async def convert_to_finished(self, match: Match, thread: Optional[ThreadInfo] = None) -> bool:
        """
        Turn the match's upcoming thread into its result thread.

        Each step (rename, type change, summary message) is skipped when it
        is already done. Returns False when there is nothing to convert.
        """
        assoc = self._repo.get_association(match.match_id)
        if assoc is None:
            return False
        if thread is None or thread.thread_id != assoc.thread_id:
            thread = await self._platform.get_thread(assoc.thread_id)
        if thread is None:
            logger.info("convert_thread_gone", match_id=match.match_id, thread_id=assoc.thread_id)
            await self.forget(match.match_id)
            return False

        changed = False
        if not thread.locked and not thread.name.startswith(naming.FINISHED_PREFIX):
            await self._platform.rename_thread(thread.thread_id, naming.finished_name(match))
            changed = True

        if not thread.locked:
            header = naming.summary_header(match)
            recent = await self._platform.fetch_messages(
                thread.thread_id, self._settings.thread_message_scan_limit
            )
            if not any(m.from_self and header in m.content for m in recent):
                await self._platform.post_message(
                    thread.thread_id, naming.summary_message(match, self._settings.faceit_room_url)
                )
                changed = True

        if assoc.thread_type != ThreadType.FINISHED:
            await self._repo.set_thread_type(match.match_id, ThreadType.FINISHED)
            changed = True

        if changed:
            THREAD_OPERATIONS.labels(op="convert").inc()
            logger.info("thread_converted", match_id=match.match_id, thread_id=thread.thread_id)
        return changed

    async def restore_reference(self, match: Match, thread: ThreadInfo) -> None:
        """Re-store the association for a thread found on the platform."""
        thread_type = naming.thread_type_from_name(thread.name) or ThreadType.UPCOMING
        current = self._repo.get_association(match.match_id)
        if current is not None:
            if current.thread_id == thread.thread_id:
                return
            await self._repo.remove_association(match.match_id)

        other = self._repo.association_for_thread(thread.thread_id)
        if other is not None:
            logger.warning(
                "thread_claimed_by_other_match",
                match_id=match.match_id,
                thread_id=thread.thread_id,
                other_match_id=other.match_id,
            )
            return

        await self._repo.add_association(ThreadAssociation(
            match_id=match.match_id,
            thread_id=thread.thread_id,
            thread_type=thread_type,
            created_at=self._clock(),
        ))
        THREAD_OPERATIONS.labels(op="restore").inc()
        logger.info(
            "thread_reference_restored",
            match_id=match.match_id,
            thread_id=thread.thread_id,
            thread_type=thread_type.value,
        )

    async def refresh_upcoming(self, match: Match, previous_at: Optional[int] = None) -> bool:
        """
        Bring the upcoming thread in line with a changed schedule.

        Renames the thread and, when ``previous_at`` is given, posts a
        rescheduled notice with the old and new times. The notice is not
        posted again while an identical one is among the recent messages.
        """
        assoc = self._repo.get_association(match.match_id)
        if assoc is None or assoc.thread_type != ThreadType.UPCOMING:
            return False
        thread = await self._platform.get_thread(assoc.thread_id)
        if thread is None or thread.locked:
            return False

        changed = False
        name = naming.upcoming_name(match)
        if thread.name != name:
            await self._platform.rename_thread(thread.thread_id, name)
            THREAD_OPERATIONS.labels(op="rename").inc()
            logger.info("thread_renamed", match_id=match.match_id, thread_id=thread.thread_id, name=name)
            changed = True

        if previous_at is not None and previous_at != match.scheduled_at:
            notice = naming.reschedule_message(match, previous_at, self._settings.faceit_room_url)
            recent = await self._platform.fetch_messages(
                thread.thread_id, self._settings.thread_message_scan_limit
            )
            if not any(m.from_self and m.content == notice for m in recent):
                await self._platform.post_message(thread.thread_id, notice)
                THREAD_OPERATIONS.labels(op="reschedule_notice").inc()
                changed = True
        return changed

    async def forget(self, match_id: str) -> None:
        """Drop the stored reference to a thread the platform no longer has."""
        await self._repo.remove_association(match_id)
        THREAD_OPERATIONS.labels(op="cleanup").inc()

    # ── Locking ─────────────────────────────────────────────────────────
    async def lock(self, thread_id: str) -> bool:
        """Lock a thread with a notice. Returns False when already locked or gone."""
        thread = await self._platform.get_thread(thread_id)
        if thread is None or thread.locked:
            return False
        hours = self._settings.thread_lock_after_s // 3600
        try:
            await self._platform.post_message(thread_id, naming.LOCK_NOTICE.format(hours=hours))
        except ThreadLockedError:
            logger.debug("lock_notice_skipped", thread_id=thread_id)
        await self._platform.lock_thread(thread_id)
        THREAD_OPERATIONS.labels(op="lock").inc()
        logger.info("thread_locked", thread_id=thread_id)
        return True

    async def lock_aged_threads(self) -> int:
        """Lock finished threads whose match ended longer ago than the lock threshold."""
        cutoff = self._clock() - self._settings.thread_lock_after_s
        locked = 0
        for assoc in self._repo.associations(ThreadType.FINISHED):
            match = self._repo.get_match(assoc.match_id)
            if match is None or match.finished_at is None or match.finished_at > cutoff:
                continue
            try:
                if await self.lock(assoc.thread_id):
                    locked += 1
            except ThreadPlatformError as exc:
                logger.warning("thread_lock_failed", match_id=assoc.match_id, thread_id=assoc.thread_id, error=str(exc))
        return locked

    async def cleanup_stale_references(self) -> int:
        """Remove associations whose thread the platform confirms gone."""
        removed = 0
        for assoc in self._repo.associations():
            try:
                thread = await self._platform.get_thread(assoc.thread_id)
            except ThreadPlatformError as exc:
                logger.warning("stale_check_failed", match_id=assoc.match_id, thread_id=assoc.thread_id, error=str(exc))
                continue
            if thread is None:
                await self.forget(assoc.match_id)
                removed += 1
                logger.info("stale_reference_removed", match_id=assoc.match_id, thread_id=assoc.thread_id)
        return removed
