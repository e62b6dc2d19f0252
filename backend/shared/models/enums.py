"""Domain enumerations for the match thread service."""
from __future__ import annotations

from enum import Enum


class MatchStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    READY = "READY"
    LIVE = "LIVE"
    FINISHED = "FINISHED"
    CANCELLED = "CANCELLED"

    @property
    def rank(self) -> int:
        """Position in the lifecycle progression; terminal states share the last rank."""
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (MatchStatus.FINISHED, MatchStatus.CANCELLED)


_STATUS_RANK: dict[MatchStatus, int] = {
    MatchStatus.SCHEDULED: 0,
    MatchStatus.READY: 1,
    MatchStatus.LIVE: 2,
    MatchStatus.FINISHED: 3,
    MatchStatus.CANCELLED: 3,
}


class ThreadType(str, Enum):
    UPCOMING = "upcoming"
    FINISHED = "finished"


class RsvpResponse(str, Enum):
    YES = "yes"
    NO = "no"


class Action(str, Enum):
    """Single required action produced by reconciliation."""
    CREATE_UPCOMING = "create_upcoming"
    CREATE_FINISHED = "create_finished"
    CONVERT_TO_FINISHED = "convert_to_finished"
    RESTORE_REFERENCE = "restore_reference"
    CLEANUP_STALE = "cleanup_stale"
    NO_ACTION = "no_action"
    SKIP_UNVALIDATED = "skip_unvalidated"
    SKIP = "skip"

    @property
    def is_skip(self) -> bool:
        return self in (Action.SKIP, Action.SKIP_UNVALIDATED)


class CachePhase(str, Enum):
    NORMAL = "normal"
    APPROACHING = "approaching"
    ACTIVE = "active"
    COOLDOWN = "cooldown"

    @property
    def urgency(self) -> int:
        return _PHASE_URGENCY[self]


_PHASE_URGENCY: dict[CachePhase, int] = {
    CachePhase.NORMAL: 0,
    CachePhase.COOLDOWN: 1,
    CachePhase.APPROACHING: 2,
    CachePhase.ACTIVE: 3,
}


class DataClass(str, Enum):
    """Cached data classes; each gets its own TTL row per phase."""
    FINISHED_MATCHES = "finished_matches"
    UPCOMING_MATCHES = "upcoming_matches"
    ROSTER = "roster"
    PLAYER = "player"
    SEARCH = "search"


class InvalidationEvent(str, Enum):
    MATCH_STARTED = "match_started"
    MATCH_FINISHED = "match_finished"
    MATCH_RESCHEDULED = "match_rescheduled"
    THREAD_CREATED = "thread_created"


class SyncOutcome(str, Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    RECREATED = "recreated"
    SKIPPED = "skipped"
