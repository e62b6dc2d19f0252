"""
Deterministic thread names and plain-text thread messages.

Every name and bot message carries the match tag ``[xxxxxxxx]`` (first 8 hex
chars of SHA-1 over the match id) so threads can be rediscovered on the
platform without any stored reference.
"""
from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Optional

from shared.models.domain import Match
from shared.models.enums import ThreadType

UPCOMING_PREFIX = "INCOMING:"
FINISHED_PREFIX = "RESULT:"
SUMMARY_HEADER = "🏁 Match Result"
RESCHEDULE_HEADER = "🔄 Match Rescheduled"
LOCK_NOTICE = "🔒 This match thread has been locked {hours} hours after the match ended."

# Discord rejects thread names above 100 characters
MAX_NAME_LENGTH = 100

TAG_RE = re.compile(r"\[([0-9a-f]{8})\]")


def match_tag(match_id: str) -> str:
    return "[" + hashlib.sha1(match_id.encode("utf-8")).hexdigest()[:8] + "]"


def format_time(epoch_s: int) -> str:
    return datetime.fromtimestamp(epoch_s, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def _fit(head: str, title: str, tail: str) -> str:
    budget = MAX_NAME_LENGTH - len(head) - len(tail)
    if len(title) > budget:
        title = title[: max(budget - 1, 0)] + "…"
    return f"{head}{title}{tail}"


def upcoming_name(match: Match) -> str:
    return _fit(
        f"{UPCOMING_PREFIX} {format_time(match.scheduled_at)} - ",
        match.title,
        f" {match_tag(match.match_id)}",
    )


def finished_name(match: Match) -> str:
    score = ""
    if match.result is not None:
        score = f" ({match.result.score_a}-{match.result.score_b})"
    return _fit(f"{FINISHED_PREFIX} ", match.title, f"{score} {match_tag(match.match_id)}")


def thread_type_from_name(name: str) -> Optional[ThreadType]:
    if name.startswith(FINISHED_PREFIX):
        return ThreadType.FINISHED
    if name.startswith(UPCOMING_PREFIX):
        return ThreadType.UPCOMING
    return None


def has_tag(text: str, match_id: str) -> bool:
    return match_tag(match_id) in text


def summary_header(match: Match) -> str:
    return f"{SUMMARY_HEADER} {match_tag(match.match_id)}"


def summary_message(match: Match, room_url: str = "") -> str:
    lines = [summary_header(match), match.title]
    if match.result is not None:
        lines.append(f"Score: {match.result.score_a} - {match.result.score_b}")
        winner = next(
            (s.name for s in (match.side_a, match.side_b) if s.team_id == match.result.winner),
            None,
        )
        if winner:
            lines.append(f"Winner: {winner}")
    if match.finished_at is not None:
        lines.append(f"Finished: {format_time(match.finished_at)}")
    if room_url:
        lines.append(room_url.format(match_id=match.match_id))
    return "\n".join(lines)


def upcoming_message(match: Match, room_url: str = "") -> str:
    lines = [
        f"🎮 {match.title} {match_tag(match.match_id)}",
        f"⏰ {format_time(match.scheduled_at)}",
    ]
    if match.competition_name:
        lines.append(f"🏆 {match.competition_name}")
    if room_url:
        lines.append(room_url.format(match_id=match.match_id))
    return "\n".join(lines)


def reschedule_message(match: Match, previous_at: int, room_url: str = "") -> str:
    lines = [
        f"{RESCHEDULE_HEADER} {match_tag(match.match_id)}",
        match.title,
        f"Old time: {format_time(previous_at)}",
        f"New time: {format_time(match.scheduled_at)}",
    ]
    if room_url:
        lines.append(room_url.format(match_id=match.match_id))
    return "\n".join(lines)
