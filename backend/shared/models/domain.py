"""
Pydantic v2 domain models shared by every component.
These are the canonical internal representations; ORM rows live in orm.py.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from shared.models.enums import MatchStatus, RsvpResponse, ThreadType


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Match ───────────────────────────────────────────────────────────────
class Side(DomainModel):
    team_id: str
    name: str


class MatchResult(DomainModel):
    score_a: int = 0
    score_b: int = 0
    winner: Optional[str] = None  # team_id of the winning side


class Match(DomainModel):
    match_id: str
    side_a: Side
    side_b: Side
    scheduled_at: int
    status: MatchStatus = MatchStatus.SCHEDULED
    finished_at: Optional[int] = None
    result: Optional[MatchResult] = None
    competition_name: str = ""

    @model_validator(mode="after")
    def finished_at_iff_finished(self) -> "Match":
        if self.status == MatchStatus.FINISHED and self.finished_at is None:
            raise ValueError("FINISHED match requires finished_at")
        if self.status != MatchStatus.FINISHED and self.finished_at is not None:
            raise ValueError(f"{self.status.value} match must not carry finished_at")
        return self

    @property
    def title(self) -> str:
        return f"{self.side_a.name} vs {self.side_b.name}"

    def same_state(self, other: Optional["Match"]) -> bool:
        """True when nothing a reconciliation pass cares about differs."""
        return other is not None and self.model_dump() == other.model_dump()


# ── Roster / users ──────────────────────────────────────────────────────
class RosterMember(DomainModel):
    player_id: str
    nickname: str


class UserMapping(DomainModel):
    user_id: str
    player_id: str
    nickname: str


# ── RSVP ────────────────────────────────────────────────────────────────
class RsvpEntry(DomainModel):
    match_id: str
    user_id: str
    response: RsvpResponse
    display_name: str
    responded_at: float


class RsvpBuckets(DomainModel):
    """Rendered attendance view; every list is already in display order."""
    attending: list[str] = Field(default_factory=list)
    declined: list[str] = Field(default_factory=list)
    no_response: list[str] = Field(default_factory=list)


# ── Threads ─────────────────────────────────────────────────────────────
class ThreadAssociation(DomainModel):
    match_id: str
    thread_id: str
    thread_type: ThreadType = ThreadType.UPCOMING
    created_at: float = 0.0


class ThreadInfo(DomainModel):
    thread_id: str
    name: str
    parent_id: Optional[str] = None
    locked: bool = False
    archived: bool = False


class ThreadMessage(DomainModel):
    message_id: str
    content: str
    from_self: bool = False
