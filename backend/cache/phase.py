"""
Cache phase classification and TTL table.
The phase follows the most urgent tracked match and selects how long each
data class may be served from cache.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from shared.config import Settings, get_settings
from shared.models.domain import Match
from shared.models.enums import CachePhase, DataClass, MatchStatus

MINUTE = 60
HOUR = 60 * MINUTE


@dataclass(frozen=True)
class TTL:
    """Lifetimes in seconds. ``memory`` 0 means the persistent tier only."""
    memory: int
    persistent: int


# ── TTL table (phase x data class) ──────────────────────────────────────
# ACTIVE is the shortest row, NORMAL the longest.
TTL_TABLE: dict[CachePhase, dict[DataClass, TTL]] = {
    CachePhase.NORMAL: {
        DataClass.FINISHED_MATCHES: TTL(30 * MINUTE, 6 * HOUR),
        DataClass.UPCOMING_MATCHES: TTL(8 * MINUTE, 20 * MINUTE),
    },
    CachePhase.APPROACHING: {
        DataClass.FINISHED_MATCHES: TTL(15 * MINUTE, 1 * HOUR),
        DataClass.UPCOMING_MATCHES: TTL(5 * MINUTE, 20 * MINUTE),
    },
    CachePhase.ACTIVE: {
        DataClass.FINISHED_MATCHES: TTL(1 * MINUTE, 3 * MINUTE),
        DataClass.UPCOMING_MATCHES: TTL(2 * MINUTE, 5 * MINUTE),
    },
    CachePhase.COOLDOWN: {
        DataClass.FINISHED_MATCHES: TTL(5 * MINUTE, 15 * MINUTE),
        DataClass.UPCOMING_MATCHES: TTL(5 * MINUTE, 15 * MINUTE),
    },
}

# Phase-independent rows
_STATIC_TTLS: dict[DataClass, TTL] = {
    DataClass.ROSTER: TTL(0, 8 * HOUR),
    DataClass.PLAYER: TTL(5 * MINUTE, 30 * MINUTE),
    DataClass.SEARCH: TTL(2 * MINUTE, 10 * MINUTE),
}
for _row in TTL_TABLE.values():
    _row.update(_STATIC_TTLS)


def ttl_for(phase: CachePhase, data_class: DataClass) -> TTL:
    return TTL_TABLE[phase][data_class]


def match_phase(now: float, match: Match, settings: Settings | None = None) -> CachePhase:
    """Phase contributed by a single match."""
    s = settings or get_settings()
    start = match.scheduled_at

    if match.status == MatchStatus.CANCELLED:
        return CachePhase.NORMAL
    if match.status == MatchStatus.LIVE:
        return CachePhase.ACTIVE

    if match.finished_at is not None:
        since_finish = now - match.finished_at
        if 0 <= since_finish < s.active_window_s:
            return CachePhase.ACTIVE
        if s.active_window_s <= since_finish < s.cooldown_end_s:
            return CachePhase.COOLDOWN
        return CachePhase.NORMAL

    until_start = start - now
    if 0 < until_start <= s.approaching_window_s:
        return CachePhase.APPROACHING
    since_start = now - start
    if 0 <= since_start < s.active_window_s:
        return CachePhase.ACTIVE
    if s.active_window_s <= since_start < s.cooldown_end_s:
        return CachePhase.COOLDOWN
    return CachePhase.NORMAL


def compute_phase(
    now: float, matches: Iterable[Match], settings: Settings | None = None
) -> CachePhase:
    """Most urgent phase across ``matches`` (ACTIVE > APPROACHING > COOLDOWN > NORMAL)."""
    best: Optional[CachePhase] = None
    for match in matches:
        phase = match_phase(now, match, settings)
        if best is None or phase.urgency > best.urgency:
            best = phase
            if best == CachePhase.ACTIVE:
                break
    return best or CachePhase.NORMAL
