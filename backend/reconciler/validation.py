"""
Freshness and transition checks applied to authoritative match records
before anything is acted upon.
"""
from __future__ import annotations

from typing import Optional

from shared.config import Settings, get_settings
from shared.errors import StaleDataError, ValidationError
from shared.models.domain import Match
from shared.models.enums import MatchStatus


def is_regression(stored: Optional[Match], fresh: Match) -> bool:
    """
    True when ``fresh`` moves the lifecycle backwards from ``stored``.
    A switch between the two terminal statuses also counts.
    """
    if stored is None:
        return False
    if fresh.status.rank < stored.status.rank:
        return True
    return stored.status.is_terminal and fresh.status != stored.status


def validate_finished(match: Match, now: float, settings: Settings | None = None) -> None:
    """
    Check the finish time of a FINISHED record.

    Raises:
        ValidationError: ``missing_finished_at`` or ``finished_in_future``.
        StaleDataError: ``too_old``, finished before the stale window.
    """
    if match.status != MatchStatus.FINISHED:
        return
    s = settings or get_settings()
    if match.finished_at is None:
        raise ValidationError("missing_finished_at", match_id=match.match_id)
    if match.finished_at > now + s.clock_skew_allowance_s:
        raise ValidationError(
            "finished_in_future", match_id=match.match_id, finished_at=match.finished_at, now=int(now)
        )
    if now - match.finished_at > s.stale_window_s:
        raise StaleDataError(
            "too_old",
            match_id=match.match_id,
            finished_at=match.finished_at,
            age_s=int(now - match.finished_at),
        )


def is_overdue(stored: Optional[Match], now: float, settings: Settings | None = None) -> bool:
    """A stored non-terminal match whose start lies further back than the overdue threshold."""
    if stored is None or stored.status.is_terminal:
        return False
    s = settings or get_settings()
    return now - stored.scheduled_at > s.overdue_threshold_s
