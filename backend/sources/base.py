"""
Base match source interface.
All sources normalize to the domain ``Match`` / ``RosterMember`` models.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from shared.models.domain import Match, RosterMember


class MatchSource(ABC):
    """Authoritative upstream for match records and the team roster."""

    @property
    @abstractmethod
    def source_name(self) -> str:
        pass

    @property
    @abstractmethod
    def team_id(self) -> str:
        """The tracked team; roster cache keys are scoped by it."""
        pass

    async def start(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def fetch_upcoming(self) -> list[Match]:
        """Unfinished, uncancelled matches of the tracked team, soonest first."""

    @abstractmethod
    async def fetch_finished(self, limit: int) -> list[Match]:
        """Most recently finished matches of the tracked team, newest first."""

    @abstractmethod
    async def fetch_match(self, match_id: str) -> Match:
        """
        Fresh authoritative record for one match.

        Raises:
            MatchNotFoundError: upstream does not know the match.
            FetchError: upstream unreachable, timing out, or failing.
            ValidationError: upstream answered with malformed data.
        """

    @abstractmethod
    async def fetch_roster(self) -> list[RosterMember]:
        """Players eligible to RSVP."""
