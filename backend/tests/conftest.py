"""
Shared fixtures: an in-memory SQLite store, fake match source and chat
platform, and a controllable clock.
"""
from __future__ import annotations

import itertools
from typing import AsyncIterator, Optional

import pytest
import pytest_asyncio

from reconciler.service import MatchThreadService
from shared.config import Settings
from shared.errors import FetchError, MatchNotFoundError, ThreadPlatformError
from shared.models.domain import Match, MatchResult, RosterMember, Side, ThreadInfo, ThreadMessage
from shared.models.enums import MatchStatus
from shared.utils.database import DatabaseManager
from sources.base import MatchSource
from store.persistent import PersistentStore
from store.repository import StateRepository
from threads.platform import ThreadPlatform

NOW = 1_700_000_000
TEAM_ID = "team-us"


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_match(
    match_id: str = "m1",
    status: MatchStatus = MatchStatus.SCHEDULED,
    scheduled_at: int = NOW + 86400,
    finished_at: Optional[int] = None,
    score: Optional[tuple[int, int]] = None,
) -> Match:
    result = None
    if score is not None:
        winner = TEAM_ID if score[0] > score[1] else "team-them"
        result = MatchResult(score_a=score[0], score_b=score[1], winner=winner)
    return Match(
        match_id=match_id,
        side_a=Side(team_id=TEAM_ID, name="Us"),
        side_b=Side(team_id="team-them", name="Them"),
        scheduled_at=scheduled_at,
        status=status,
        finished_at=finished_at,
        result=result,
        competition_name="League",
    )


class FakeSource(MatchSource):
    def __init__(self) -> None:
        self.matches: dict[str, Match] = {}
        self.roster: list[RosterMember] = []
        self.down = False
        self.fetch_match_calls = 0
        self.roster_calls = 0

    @property
    def source_name(self) -> str:
        return "fake"

    @property
    def team_id(self) -> str:
        return TEAM_ID

    def put(self, match: Match) -> Match:
        self.matches[match.match_id] = match
        return match

    def _check(self) -> None:
        if self.down:
            raise FetchError("source down")

    async def fetch_upcoming(self) -> list[Match]:
        self._check()
        return sorted(
            (m for m in self.matches.values() if not m.status.is_terminal),
            key=lambda m: m.scheduled_at,
        )

    async def fetch_finished(self, limit: int) -> list[Match]:
        self._check()
        done = [m for m in self.matches.values() if m.status == MatchStatus.FINISHED]
        return sorted(done, key=lambda m: m.finished_at or 0, reverse=True)[:limit]

    async def fetch_match(self, match_id: str) -> Match:
        self.fetch_match_calls += 1
        self._check()
        if match_id not in self.matches:
            raise MatchNotFoundError(match_id)
        return self.matches[match_id]

    async def fetch_roster(self) -> list[RosterMember]:
        self.roster_calls += 1
        self._check()
        return list(self.roster)


class FakePlatform(ThreadPlatform):
    def __init__(self) -> None:
        self.threads: dict[str, ThreadInfo] = {}
        self.messages: dict[str, list[ThreadMessage]] = {}
        self.ready = True
        self.fail_with: Optional[ThreadPlatformError] = None
        self.created: list[str] = []
        self.renamed: list[tuple[str, str]] = []
        self.edits = 0
        self._ids = itertools.count(1000)

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def is_ready(self) -> bool:
        return self.ready

    def add_thread(self, name: str, locked: bool = False) -> ThreadInfo:
        thread = ThreadInfo(thread_id=str(next(self._ids)), name=name, parent_id="chan", locked=locked)
        self.threads[thread.thread_id] = thread
        self.messages[thread.thread_id] = []
        return thread

    async def create_thread(self, name: str, content: str) -> ThreadInfo:
        self._maybe_fail()
        thread = self.add_thread(name)
        self.created.append(thread.thread_id)
        if content:
            await self.post_message(thread.thread_id, content)
        return thread

    async def get_thread(self, thread_id: str) -> Optional[ThreadInfo]:
        self._maybe_fail()
        return self.threads.get(thread_id)

    async def list_threads(self, pattern: Optional[str] = None) -> list[ThreadInfo]:
        self._maybe_fail()
        return [t for t in self.threads.values() if not pattern or pattern in t.name]

    async def rename_thread(self, thread_id: str, name: str) -> None:
        self._maybe_fail()
        self.threads[thread_id] = self.threads[thread_id].model_copy(update={"name": name})
        self.renamed.append((thread_id, name))

    async def lock_thread(self, thread_id: str) -> None:
        self._maybe_fail()
        self.threads[thread_id] = self.threads[thread_id].model_copy(update={"locked": True})

    async def post_message(self, thread_id: str, content: str) -> ThreadMessage:
        self._maybe_fail()
        msg = ThreadMessage(message_id=str(next(self._ids)), content=content, from_self=True)
        self.messages.setdefault(thread_id, []).insert(0, msg)
        return msg

    async def edit_message(self, thread_id: str, message_id: str, content: str) -> None:
        self._maybe_fail()
        self.edits += 1
        self.messages[thread_id] = [
            m.model_copy(update={"content": content}) if m.message_id == message_id else m
            for m in self.messages[thread_id]
        ]

    async def fetch_messages(self, thread_id: str, limit: int = 20) -> list[ThreadMessage]:
        self._maybe_fail()
        return self.messages.get(thread_id, [])[:limit]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        metrics_enabled=False,
        lock_timeout_s=2.0,
        lock_backoff_base_s=0.001,
        lock_backoff_cap_s=0.01,
        reconcile_fetch_timeout_s=2.0,
        faceit_room_url="",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncIterator[DatabaseManager]:
    manager = DatabaseManager(settings)
    await manager.connect()
    await manager.create_tables()
    yield manager
    await manager.disconnect()


@pytest_asyncio.fixture
async def store(db: DatabaseManager) -> PersistentStore:
    return PersistentStore(db)


@pytest_asyncio.fixture
async def repo(store: PersistentStore) -> StateRepository:
    repository = StateRepository(store)
    await repository.load()
    return repository


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def service(
    repo: StateRepository,
    source: FakeSource,
    platform: FakePlatform,
    settings: Settings,
    clock: FakeClock,
) -> MatchThreadService:
    return MatchThreadService(repo, source, platform, settings, clock)
