"""
RSVP view synchronizer.

Keeps one plain-text attendance message per upcoming thread in line with the
roster, the user mappings and the stored RSVP rows. The message is found
again by its tagged header and parsed back, so an unchanged view is never
re-posted or edited.
"""
from __future__ import annotations

from collections import Counter as Tally
from typing import Iterable, Optional

from pydantic import TypeAdapter

from cache.layer import AdaptiveCache, roster_key
from shared.config import Settings, get_settings
from shared.errors import FetchError, MatchThreadError, ThreadLockedError, ValidationError
from shared.models.domain import RosterMember, RsvpBuckets, RsvpEntry, ThreadMessage, UserMapping
from shared.models.enums import DataClass, RsvpResponse, SyncOutcome, ThreadType
from shared.utils.logging import get_logger
from shared.utils.metrics import RSVP_SYNC
from sources.base import MatchSource
from store.repository import StateRepository
from threads.naming import match_tag
from threads.platform import ThreadPlatform

logger = get_logger(__name__)

RSVP_HEADER = "📋 RSVP Status"
ATTENDING_LABEL = "✅ Attending"
DECLINED_LABEL = "❌ Not Attending"
NO_RESPONSE_LABEL = "⏳ No Response"
EMPTY = "-"

_ROSTER = TypeAdapter(list[RosterMember])


def _sorted(names: Iterable[str]) -> list[str]:
    return sorted(names, key=lambda n: (n.casefold(), n))


def compute_buckets(
    roster: Iterable[RosterMember],
    mappings: Iterable[UserMapping],
    rsvps: Iterable[RsvpEntry],
) -> RsvpBuckets:
    """
    Join roster, mappings and RSVP rows into attendance buckets.

    Roster members without a response land in ``no_response``; responders who
    are not on the roster still appear in their response bucket.
    """
    by_player = {m.player_id: m for m in mappings}
    by_user = {e.user_id: e for e in rsvps}
    attending: list[str] = []
    declined: list[str] = []
    no_response: list[str] = []
    seen_users: set[str] = set()

    for member in roster:
        mapping = by_player.get(member.player_id)
        entry = by_user.get(mapping.user_id) if mapping else None
        name = mapping.nickname if mapping else member.nickname
        if entry is None:
            no_response.append(name)
            continue
        seen_users.add(entry.user_id)
        (attending if entry.response == RsvpResponse.YES else declined).append(name)

    for entry in by_user.values():
        if entry.user_id in seen_users:
            continue
        (attending if entry.response == RsvpResponse.YES else declined).append(entry.display_name)

    return RsvpBuckets(
        attending=_sorted(attending),
        declined=_sorted(declined),
        no_response=_sorted(no_response),
    )


def header_for(match_id: str) -> str:
    return f"{RSVP_HEADER} {match_tag(match_id)}"


def render(match_id: str, buckets: RsvpBuckets) -> str:
    def line(label: str, names: list[str]) -> str:
        return f"{label} ({len(names)}): {', '.join(names) if names else EMPTY}"

    return "\n".join([
        header_for(match_id),
        line(ATTENDING_LABEL, buckets.attending),
        line(DECLINED_LABEL, buckets.declined),
        line(NO_RESPONSE_LABEL, buckets.no_response),
    ])


def parse(content: str) -> Optional[RsvpBuckets]:
    """Read buckets back from a rendered message; ``None`` if it is not one."""
    lines = content.splitlines()
    if not lines or not lines[0].startswith(RSVP_HEADER):
        return None
    found: dict[str, list[str]] = {}
    for raw in lines[1:]:
        for label in (ATTENDING_LABEL, DECLINED_LABEL, NO_RESPONSE_LABEL):
            if raw.startswith(label):
                _, _, rest = raw.partition(": ")
                rest = rest.strip()
                found[label] = [] if rest in ("", EMPTY) else [n.strip() for n in rest.split(", ")]
    if len(found) != 3:
        return None
    return RsvpBuckets(
        attending=found[ATTENDING_LABEL],
        declined=found[DECLINED_LABEL],
        no_response=found[NO_RESPONSE_LABEL],
    )


class RsvpSynchronizer:
    def __init__(
        self,
        repo: StateRepository,
        source: MatchSource,
        platform: ThreadPlatform,
        cache: AdaptiveCache,
        settings: Settings | None = None,
    ) -> None:
        self._repo = repo
        self._source = source
        self._platform = platform
        self._cache = cache
        self._settings = settings or get_settings()

    async def roster(self) -> list[RosterMember]:
        return await self._cache.get(
            roster_key(self._source.team_id),
            self._source.fetch_roster,
            DataClass.ROSTER,
            adapter=_ROSTER,
        )

    def buckets_for(self, match_id: str, roster: list[RosterMember]) -> RsvpBuckets:
        return compute_buckets(roster, self._repo.mappings(), self._repo.rsvps(match_id))

    async def _find_view(self, thread_id: str, match_id: str) -> Optional[ThreadMessage]:
        header = header_for(match_id)
        recent = await self._platform.fetch_messages(thread_id, self._settings.thread_message_scan_limit)
        for message in recent:
            if message.from_self and message.content.startswith(header):
                return message
        return None

    async def sync_match(self, match_id: str) -> SyncOutcome:
        outcome = await self._sync(match_id)
        RSVP_SYNC.labels(outcome=outcome.value).inc()
        return outcome

    async def _sync(self, match_id: str) -> SyncOutcome:
        assoc = self._repo.get_association(match_id)
        if assoc is None or assoc.thread_type != ThreadType.UPCOMING:
            return SyncOutcome.SKIPPED
        match = self._repo.get_match(match_id)
        if match is None or match.status.is_terminal:
            return SyncOutcome.SKIPPED

        thread = await self._platform.get_thread(assoc.thread_id)
        if thread is None or thread.locked:
            return SyncOutcome.SKIPPED

        try:
            roster = await self.roster()
        except (FetchError, ValidationError) as exc:
            logger.warning("rsvp_roster_unavailable", match_id=match_id, error=str(exc))
            return SyncOutcome.SKIPPED

        desired = render(match_id, self.buckets_for(match_id, roster))
        try:
            existing = await self._find_view(thread.thread_id, match_id)
            if existing is None:
                await self._platform.post_message(thread.thread_id, desired)
                logger.info("rsvp_view_posted", match_id=match_id, thread_id=thread.thread_id)
                return SyncOutcome.RECREATED
            if parse(existing.content) == parse(desired):
                return SyncOutcome.UNCHANGED
            await self._platform.edit_message(thread.thread_id, existing.message_id, desired)
        except ThreadLockedError:
            logger.info("rsvp_view_thread_locked", match_id=match_id, thread_id=thread.thread_id)
            return SyncOutcome.SKIPPED
        logger.info("rsvp_view_updated", match_id=match_id, thread_id=thread.thread_id)
        return SyncOutcome.UPDATED

    async def sync_all(self) -> dict[str, int]:
        """Sync every upcoming thread; per-match failures are logged and skipped."""
        outcomes: Tally[str] = Tally()
        for assoc in self._repo.associations(ThreadType.UPCOMING):
            try:
                outcome = await self.sync_match(assoc.match_id)
            except MatchThreadError as exc:
                logger.warning("rsvp_sync_failed", match_id=assoc.match_id, error=str(exc))
                outcome = SyncOutcome.SKIPPED
            outcomes[outcome.value] += 1
        return dict(outcomes)
