"""
Persistent store: durable rows for matches, RSVP entries, thread associations,
user mappings, processed markers and generic cache entries.

Every operation runs in its own committed session unless it is called inside
``transaction()``, in which case it joins the open session and commits or
rolls back with it.
"""
from __future__ import annotations

import contextvars
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import DuplicateDetectedError, StoreBusyError, StoreError
from shared.models.domain import (
    Match,
    MatchResult,
    RsvpEntry,
    Side,
    ThreadAssociation,
    UserMapping,
)
from shared.models.enums import MatchStatus, RsvpResponse, ThreadType
from shared.models.orm import (
    CacheEntryORM,
    MatchORM,
    ProcessedMatchORM,
    RsvpORM,
    ThreadAssociationORM,
    UserMappingORM,
)
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# SQLite primary result codes for contention
_SQLITE_BUSY_CODES = {5, 6}  # SQLITE_BUSY, SQLITE_LOCKED
# PostgreSQL SQLSTATEs for contention
_PG_BUSY_STATES = {"40001", "40P01", "55P03"}  # serialization_failure, deadlock, lock_not_available


def _is_busy(exc: BaseException) -> bool:
    """Walk the driver exception chain looking for a contention error code."""
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        code = getattr(current, "sqlite_errorcode", None)
        if isinstance(code, int) and (code & 0xFF) in _SQLITE_BUSY_CODES:
            return True
        state = getattr(current, "sqlstate", None) or getattr(current, "pgcode", None)
        if isinstance(state, str) and state in _PG_BUSY_STATES:
            return True
        current = getattr(current, "orig", None) or current.__cause__
    return False


def _translate(exc: SQLAlchemyError, operation: str) -> Exception:
    if isinstance(exc, IntegrityError):
        return DuplicateDetectedError(f"{operation}: integrity violation ({exc.orig})")
    if isinstance(exc, DBAPIError) and _is_busy(exc):
        return StoreBusyError(f"{operation}: store busy ({exc.orig})")
    return StoreError(f"{operation}: {exc}")


def _match_from_row(row: MatchORM) -> Match:
    return Match(
        match_id=row.match_id,
        side_a=Side(team_id=row.side_a_id, name=row.side_a_name),
        side_b=Side(team_id=row.side_b_id, name=row.side_b_name),
        scheduled_at=row.scheduled_at,
        status=MatchStatus(row.status),
        finished_at=row.finished_at,
        result=MatchResult.model_validate(row.result) if row.result else None,
        competition_name=row.competition_name or "",
    )


def _assoc_from_row(row: ThreadAssociationORM) -> ThreadAssociation:
    return ThreadAssociation(
        match_id=row.match_id,
        thread_id=row.thread_id,
        thread_type=ThreadType(row.thread_type),
        created_at=row.created_at,
    )


def _rsvp_from_row(row: RsvpORM) -> RsvpEntry:
    return RsvpEntry(
        match_id=row.match_id,
        user_id=row.user_id,
        response=RsvpResponse(row.response),
        display_name=row.display_name,
        responded_at=row.responded_at,
    )


class PersistentStore:
    """Operation contract over the SQL database."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db
        self._current: contextvars.ContextVar[Optional[AsyncSession]] = contextvars.ContextVar(
            f"store_session_{id(self)}", default=None
        )

    # ── Session plumbing ────────────────────────────────────────────────
    def _insert(self, model: Any) -> Any:
        """Dialect INSERT with ON CONFLICT support (SQLite or PostgreSQL)."""
        if self._db.engine.dialect.name == "sqlite":
            return sqlite_insert(model)
        return pg_insert(model)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Run a block of store operations as one transaction."""
        if self._current.get() is not None:
            yield
            return
        try:
            async with self._db.write_session() as session:
                token = self._current.set(session)
                try:
                    yield
                finally:
                    self._current.reset(token)
        except SQLAlchemyError as exc:
            raise _translate(exc, "transaction") from exc

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        session = self._current.get()
        try:
            if session is not None:
                yield session
                await session.flush()
                return
            async with self._db.write_session() as own:
                yield own
        except SQLAlchemyError as exc:
            raise _translate(exc, operation) from exc

    # ── Matches ─────────────────────────────────────────────────────────
    async def get_match(self, match_id: str) -> Optional[Match]:
        async with self._session("get_match") as session:
            row = await session.get(MatchORM, match_id)
            return _match_from_row(row) if row else None

    async def upsert_match(self, match: Match, updated_at: float) -> None:
        async with self._session("upsert_match") as session:
            row = await session.get(MatchORM, match.match_id)
            if row is None:
                row = MatchORM(match_id=match.match_id)
                session.add(row)
            row.side_a_id = match.side_a.team_id
            row.side_a_name = match.side_a.name
            row.side_b_id = match.side_b.team_id
            row.side_b_name = match.side_b.name
            row.scheduled_at = match.scheduled_at
            row.status = match.status.value
            row.finished_at = match.finished_at
            row.result = match.result.model_dump() if match.result else None
            row.competition_name = match.competition_name
            row.updated_at = updated_at

    async def list_matches(self) -> list[Match]:
        async with self._session("list_matches") as session:
            rows = (await session.execute(select(MatchORM))).scalars().all()
            return [_match_from_row(r) for r in rows]

    async def delete_matches(self, match_ids: Iterable[str]) -> None:
        """Delete match rows together with their thread associations."""
        ids = list(match_ids)
        if not ids:
            return
        async with self._session("delete_matches") as session:
            await session.execute(
                delete(ThreadAssociationORM).where(ThreadAssociationORM.match_id.in_(ids))
            )
            await session.execute(delete(MatchORM).where(MatchORM.match_id.in_(ids)))

    # ── RSVP ────────────────────────────────────────────────────────────
    async def add_rsvp(self, entry: RsvpEntry) -> RsvpEntry:
        """Last-write-wins upsert. Returns the row that is stored afterwards."""
        async with self._session("add_rsvp") as session:
            row = await session.get(RsvpORM, (entry.match_id, entry.user_id))
            if row is None:
                session.add(RsvpORM(
                    match_id=entry.match_id,
                    user_id=entry.user_id,
                    response=entry.response.value,
                    display_name=entry.display_name,
                    responded_at=entry.responded_at,
                ))
                return entry
            if entry.responded_at < row.responded_at:
                return _rsvp_from_row(row)
            row.response = entry.response.value
            row.display_name = entry.display_name
            row.responded_at = entry.responded_at
            return entry

    async def get_rsvps(self, match_id: str) -> list[RsvpEntry]:
        async with self._session("get_rsvps") as session:
            stmt = select(RsvpORM).where(RsvpORM.match_id == match_id)
            return [_rsvp_from_row(r) for r in (await session.execute(stmt)).scalars().all()]

    async def list_rsvps(self) -> list[RsvpEntry]:
        async with self._session("list_rsvps") as session:
            return [_rsvp_from_row(r) for r in (await session.execute(select(RsvpORM))).scalars().all()]

    async def delete_rsvps(self, match_ids: Iterable[str]) -> None:
        ids = list(match_ids)
        if not ids:
            return
        async with self._session("delete_rsvps") as session:
            await session.execute(delete(RsvpORM).where(RsvpORM.match_id.in_(ids)))

    # ── Thread associations ─────────────────────────────────────────────
    async def add_thread_association(self, assoc: ThreadAssociation) -> None:
        async with self._session("add_thread_association") as session:
            existing = await session.get(ThreadAssociationORM, assoc.match_id)
            if existing is not None:
                raise DuplicateDetectedError(
                    f"match {assoc.match_id} already associated with thread {existing.thread_id}",
                    existing=_assoc_from_row(existing),
                )
            session.add(ThreadAssociationORM(
                match_id=assoc.match_id,
                thread_id=assoc.thread_id,
                thread_type=assoc.thread_type.value,
                created_at=assoc.created_at,
            ))

    async def update_thread_type(self, match_id: str, thread_type: ThreadType) -> None:
        async with self._session("update_thread_type") as session:
            row = await session.get(ThreadAssociationORM, match_id)
            if row is None:
                raise StoreError(f"no thread association for match {match_id}")
            row.thread_type = thread_type.value

    async def get_thread_association(self, match_id: str) -> Optional[ThreadAssociation]:
        async with self._session("get_thread_association") as session:
            row = await session.get(ThreadAssociationORM, match_id)
            return _assoc_from_row(row) if row else None

    async def get_thread_association_by_thread(self, thread_id: str) -> Optional[ThreadAssociation]:
        async with self._session("get_thread_association_by_thread") as session:
            stmt = select(ThreadAssociationORM).where(ThreadAssociationORM.thread_id == thread_id)
            row = (await session.execute(stmt)).scalars().first()
            return _assoc_from_row(row) if row else None

    async def list_thread_associations(
        self, thread_type: Optional[ThreadType] = None
    ) -> list[ThreadAssociation]:
        async with self._session("list_thread_associations") as session:
            stmt = select(ThreadAssociationORM)
            if thread_type is not None:
                stmt = stmt.where(ThreadAssociationORM.thread_type == thread_type.value)
            return [_assoc_from_row(r) for r in (await session.execute(stmt)).scalars().all()]

    async def remove_thread_association(self, match_id: str) -> None:
        async with self._session("remove_thread_association") as session:
            await session.execute(
                delete(ThreadAssociationORM).where(ThreadAssociationORM.match_id == match_id)
            )

    # ── User mappings ───────────────────────────────────────────────────
    async def add_user_mapping(self, mapping: UserMapping) -> None:
        stmt = self._insert(UserMappingORM).values(**mapping.model_dump()).on_conflict_do_update(
            index_elements=[UserMappingORM.user_id],
            set_={"player_id": mapping.player_id, "nickname": mapping.nickname},
        )
        async with self._session("add_user_mapping") as session:
            await session.execute(stmt)

    async def get_user_mapping(self, user_id: str) -> Optional[UserMapping]:
        async with self._session("get_user_mapping") as session:
            row = await session.get(UserMappingORM, user_id)
            return UserMapping.model_validate(row) if row else None

    async def list_user_mappings(self) -> list[UserMapping]:
        async with self._session("list_user_mappings") as session:
            rows = (await session.execute(select(UserMappingORM))).scalars().all()
            return [UserMapping.model_validate(r) for r in rows]

    # ── Processed markers ───────────────────────────────────────────────
    async def mark_processed(self, match_id: str, processed_at: float) -> None:
        """First marker wins; later calls keep the original timestamp."""
        stmt = self._insert(ProcessedMatchORM).values(
            match_id=match_id, processed_at=processed_at
        ).on_conflict_do_nothing(index_elements=[ProcessedMatchORM.match_id])
        async with self._session("mark_processed") as session:
            await session.execute(stmt)

    async def is_processed(self, match_id: str) -> bool:
        async with self._session("is_processed") as session:
            return await session.get(ProcessedMatchORM, match_id) is not None

    async def list_processed(self) -> dict[str, float]:
        """Processed match ids mapped to when they were first announced."""
        async with self._session("list_processed") as session:
            rows = (await session.execute(select(ProcessedMatchORM))).scalars().all()
            return {r.match_id: r.processed_at for r in rows}

    async def remove_processed(self, match_ids: Iterable[str]) -> None:
        ids = list(match_ids)
        if not ids:
            return
        async with self._session("remove_processed") as session:
            await session.execute(delete(ProcessedMatchORM).where(ProcessedMatchORM.match_id.in_(ids)))

    # ── Generic cache ───────────────────────────────────────────────────
    async def cache_get(self, key: str, now: float) -> Optional[tuple[str, float]]:
        """Return (payload, expires_at) for an unexpired entry."""
        async with self._session("cache_get") as session:
            row = await session.get(CacheEntryORM, key)
            if row is None or row.expires_at <= now:
                return None
            return row.payload, row.expires_at

    async def cache_set(self, key: str, payload: str, expires_at: float) -> None:
        stmt = self._insert(CacheEntryORM).values(
            key=key, payload=payload, expires_at=expires_at
        ).on_conflict_do_update(
            index_elements=[CacheEntryORM.key],
            set_={"payload": payload, "expires_at": expires_at},
        )
        async with self._session("cache_set") as session:
            await session.execute(stmt)

    async def cache_delete(self, key: str) -> None:
        async with self._session("cache_delete") as session:
            await session.execute(delete(CacheEntryORM).where(CacheEntryORM.key == key))

    async def cache_delete_prefix(self, prefix: str) -> None:
        async with self._session("cache_delete_prefix") as session:
            await session.execute(delete(CacheEntryORM).where(CacheEntryORM.key.startswith(prefix)))

    async def cache_cleanup_expired(self, now: float) -> int:
        async with self._session("cache_cleanup_expired") as session:
            result = await session.execute(delete(CacheEntryORM).where(CacheEntryORM.expires_at <= now))
            return result.rowcount or 0
