"""
In-memory state repository.

Holds the working set (matches, thread associations, RSVP rows, user
mappings, processed markers) loaded once from the persistent store. Every
mutation is written through to the store first; the in-memory copy changes
only after the write succeeded. Inside ``transaction()`` the in-memory
updates are deferred until the store transaction commits.
"""
from __future__ import annotations

import contextvars
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

from shared.models.domain import Match, RsvpEntry, ThreadAssociation, UserMapping
from shared.models.enums import MatchStatus, ThreadType
from shared.utils.logging import get_logger
from store.persistent import PersistentStore

logger = get_logger(__name__)


@dataclass
class PurgeReport:
    rsvp_matches: int = 0
    matches: int = 0
    processed: int = 0


def _retired(match: Match, cutoff: float) -> bool:
    if match.status == MatchStatus.FINISHED:
        return (match.finished_at or 0) < cutoff
    if match.status == MatchStatus.CANCELLED:
        return match.scheduled_at < cutoff
    return False


class StateRepository:
    def __init__(self, store: PersistentStore) -> None:
        self.store = store
        self._matches: dict[str, Match] = {}
        self._associations: dict[str, ThreadAssociation] = {}
        self._by_thread: dict[str, str] = {}
        self._rsvps: dict[str, dict[str, RsvpEntry]] = {}
        self._mappings: dict[str, UserMapping] = {}
        self._processed: dict[str, float] = {}
        self._pending: contextvars.ContextVar[Optional[list[Callable[[], None]]]] = contextvars.ContextVar(
            f"repo_pending_{id(self)}", default=None
        )

    async def load(self) -> None:
        """Populate the working set from the persistent store."""
        self._matches = {m.match_id: m for m in await self.store.list_matches()}
        self._associations = {a.match_id: a for a in await self.store.list_thread_associations()}
        self._by_thread = {a.thread_id: a.match_id for a in self._associations.values()}
        self._rsvps = {}
        for entry in await self.store.list_rsvps():
            self._rsvps.setdefault(entry.match_id, {})[entry.user_id] = entry
        self._mappings = {m.user_id: m for m in await self.store.list_user_mappings()}
        self._processed = await self.store.list_processed()
        logger.info(
            "state_loaded",
            matches=len(self._matches),
            threads=len(self._associations),
            rsvp_matches=len(self._rsvps),
            mappings=len(self._mappings),
        )

    # ── Transactions ────────────────────────────────────────────────────
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Group several writes; memory reflects them only after commit."""
        if self._pending.get() is not None:
            yield
            return
        pending: list[Callable[[], None]] = []
        token = self._pending.set(pending)
        try:
            async with self.store.transaction():
                yield
        finally:
            self._pending.reset(token)
        for apply in pending:
            apply()

    def _apply(self, fn: Callable[[], None]) -> None:
        pending = self._pending.get()
        if pending is None:
            fn()
        else:
            pending.append(fn)

    # ── Matches ─────────────────────────────────────────────────────────
    def get_match(self, match_id: str) -> Optional[Match]:
        return self._matches.get(match_id)

    def matches(self) -> list[Match]:
        return list(self._matches.values())

    async def save_match(self, match: Match, now: float) -> None:
        await self.store.upsert_match(match, updated_at=now)
        self._apply(lambda: self._matches.__setitem__(match.match_id, match))

    # ── Thread associations ─────────────────────────────────────────────
    def get_association(self, match_id: str) -> Optional[ThreadAssociation]:
        return self._associations.get(match_id)

    def association_for_thread(self, thread_id: str) -> Optional[ThreadAssociation]:
        match_id = self._by_thread.get(thread_id)
        return self._associations.get(match_id) if match_id else None

    def associations(self, thread_type: Optional[ThreadType] = None) -> list[ThreadAssociation]:
        return [
            a for a in self._associations.values()
            if thread_type is None or a.thread_type == thread_type
        ]

    async def add_association(self, assoc: ThreadAssociation) -> None:
        await self.store.add_thread_association(assoc)

        def apply() -> None:
            self._associations[assoc.match_id] = assoc
            self._by_thread[assoc.thread_id] = assoc.match_id

        self._apply(apply)

    async def set_thread_type(self, match_id: str, thread_type: ThreadType) -> None:
        await self.store.update_thread_type(match_id, thread_type)

        def apply() -> None:
            current = self._associations.get(match_id)
            if current is not None:
                self._associations[match_id] = current.model_copy(update={"thread_type": thread_type})

        self._apply(apply)

    async def remove_association(self, match_id: str) -> None:
        await self.store.remove_thread_association(match_id)

        def apply() -> None:
            removed = self._associations.pop(match_id, None)
            if removed is not None:
                self._by_thread.pop(removed.thread_id, None)

        self._apply(apply)

    # ── RSVP ────────────────────────────────────────────────────────────
    def rsvps(self, match_id: str) -> list[RsvpEntry]:
        return list(self._rsvps.get(match_id, {}).values())

    async def add_rsvp(self, entry: RsvpEntry) -> RsvpEntry:
        """Last-write-wins by ``responded_at``; returns the winning row."""
        stored = await self.store.add_rsvp(entry)
        self._apply(lambda: self._rsvps.setdefault(stored.match_id, {}).__setitem__(stored.user_id, stored))
        return stored

    # ── User mappings ───────────────────────────────────────────────────
    def get_mapping(self, user_id: str) -> Optional[UserMapping]:
        return self._mappings.get(user_id)

    def mappings(self) -> list[UserMapping]:
        return list(self._mappings.values())

    async def add_mapping(self, mapping: UserMapping) -> None:
        await self.store.add_user_mapping(mapping)
        self._apply(lambda: self._mappings.__setitem__(mapping.user_id, mapping))

    # ── Processed markers ───────────────────────────────────────────────
    def is_processed(self, match_id: str) -> bool:
        return match_id in self._processed

    async def mark_processed(self, match_id: str, now: float) -> None:
        if match_id in self._processed:
            return
        await self.store.mark_processed(match_id, processed_at=now)
        self._apply(lambda: self._processed.setdefault(match_id, now))

    # ── Retention ───────────────────────────────────────────────────────
    async def purge(self, now: float, rsvp_retention_s: int, match_retention_s: int) -> PurgeReport:
        """
        Apply data retention.

        RSVP rows go once their match finished more than ``rsvp_retention_s``
        ago (or, for matches no longer stored, once the newest response is that
        old). Finished matches (by finish time) and cancelled matches (by
        scheduled time) go after ``match_retention_s``, together with their
        thread associations, RSVP rows and processed markers.
        """
        report = PurgeReport()
        rsvp_cutoff = now - rsvp_retention_s
        match_cutoff = now - match_retention_s

        rsvp_ids: list[str] = []
        for match_id, entries in self._rsvps.items():
            match = self._matches.get(match_id)
            if match is not None:
                if match.status == MatchStatus.FINISHED and (match.finished_at or 0) < rsvp_cutoff:
                    rsvp_ids.append(match_id)
            elif entries and max(e.responded_at for e in entries.values()) < rsvp_cutoff:
                rsvp_ids.append(match_id)

        match_ids = [m.match_id for m in self._matches.values() if _retired(m, match_cutoff)]
        rsvp_ids += [mid for mid in match_ids if mid in self._rsvps and mid not in rsvp_ids]
        processed_ids = [
            mid for mid, at in self._processed.items()
            if mid in match_ids or (mid not in self._matches and at < match_cutoff)
        ]

        async with self.transaction():
            await self.store.delete_rsvps(rsvp_ids)
            await self.store.delete_matches(match_ids)
            await self.store.remove_processed(processed_ids)

            def apply() -> None:
                for mid in rsvp_ids:
                    self._rsvps.pop(mid, None)
                for mid in match_ids:
                    self._matches.pop(mid, None)
                    assoc = self._associations.pop(mid, None)
                    if assoc is not None:
                        self._by_thread.pop(assoc.thread_id, None)
                for mid in processed_ids:
                    self._processed.pop(mid, None)

            self._apply(apply)

        report.rsvp_matches = len(rsvp_ids)
        report.matches = len(match_ids)
        report.processed = len(processed_ids)
        if rsvp_ids or match_ids or processed_ids:
            logger.info(
                "retention_purged",
                rsvp_matches=report.rsvp_matches,
                matches=report.matches,
                processed=report.processed,
            )
        return report
