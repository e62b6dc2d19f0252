"""
RSVP submission flow: validate, write under the per-match lock with
last-write-wins, then refresh the rendered view of that match.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from locks.manager import MutationLockManager
from rsvp.synchronizer import RsvpSynchronizer
from shared.errors import MatchThreadError
from shared.models.domain import RsvpEntry
from shared.models.enums import RsvpResponse
from shared.utils.logging import get_logger
from shared.utils.metrics import RSVP_SUBMISSIONS
from store.repository import StateRepository

logger = get_logger(__name__)

GENERIC_FAILURE = "Something went wrong while saving your RSVP. Please try again."


@dataclass(frozen=True)
class RsvpResult:
    ok: bool
    message: str


class RsvpService:
    def __init__(
        self,
        repo: StateRepository,
        locks: MutationLockManager,
        synchronizer: RsvpSynchronizer,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repo = repo
        self._locks = locks
        self._sync = synchronizer
        self._clock = clock

    def resolve_display_name(self, user_id: str, display_name: Optional[str] = None) -> str:
        mapping = self._repo.get_mapping(user_id)
        if mapping is not None and mapping.nickname:
            return mapping.nickname
        return display_name or user_id

    async def submit(
        self,
        match_id: str,
        user_id: str,
        response: str | RsvpResponse,
        display_name: Optional[str] = None,
        responded_at: Optional[float] = None,
    ) -> RsvpResult:
        try:
            parsed = RsvpResponse(response)
        except ValueError:
            RSVP_SUBMISSIONS.labels(result="invalid").inc()
            return RsvpResult(False, "Unknown response, use yes or no.")

        match = self._repo.get_match(match_id)
        if match is None:
            RSVP_SUBMISSIONS.labels(result="unknown_match").inc()
            return RsvpResult(False, "This match is not tracked.")
        if match.status.is_terminal:
            RSVP_SUBMISSIONS.labels(result="closed").inc()
            return RsvpResult(False, "RSVP is closed for this match.")

        entry = RsvpEntry(
            match_id=match_id,
            user_id=user_id,
            response=parsed,
            display_name=self.resolve_display_name(user_id, display_name),
            responded_at=self._clock() if responded_at is None else responded_at,
        )
        try:
            stored = await self._locks.with_lock(f"rsvp:{match_id}", lambda: self._repo.add_rsvp(entry))
        except Exception:
            logger.exception("rsvp_submit_failed", match_id=match_id, user_id=user_id)
            RSVP_SUBMISSIONS.labels(result="error").inc()
            return RsvpResult(False, GENERIC_FAILURE)

        if stored != entry:
            logger.info(
                "rsvp_superseded",
                match_id=match_id,
                user_id=user_id,
                submitted_at=entry.responded_at,
                stored_at=stored.responded_at,
            )
            RSVP_SUBMISSIONS.labels(result="superseded").inc()
        else:
            logger.info("rsvp_recorded", match_id=match_id, user_id=user_id, response=parsed.value)
            RSVP_SUBMISSIONS.labels(result="recorded").inc()

        try:
            await self._sync.sync_match(match_id)
        except MatchThreadError as exc:
            logger.warning("rsvp_view_refresh_failed", match_id=match_id, error=str(exc))

        label = "attending" if stored.response == RsvpResponse.YES else "not attending"
        return RsvpResult(True, f"You are marked as {label}.")
