"""
FACEIT Data API v4 match source.

Upcoming and finished matches come from the configured championship,
filtered to the tracked team. Without a championship the first roster
member's match history is used instead.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import pydantic
from pydantic import BaseModel, ConfigDict, Field

from shared.config import Settings, get_settings
from shared.errors import FetchError, MatchNotFoundError, ValidationError
from shared.models.domain import Match, MatchResult, RosterMember, Side
from shared.models.enums import MatchStatus
from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.http_client import JsonHTTPClient
from shared.utils.logging import get_logger
from sources.base import MatchSource

logger = get_logger(__name__)

# FACEIT lifecycle states → domain status
STATUS_MAP: dict[str, MatchStatus] = {
    "SCHEDULED": MatchStatus.SCHEDULED,
    "CHECK_IN": MatchStatus.READY,
    "CONFIGURING": MatchStatus.READY,
    "VOTING": MatchStatus.READY,
    "READY": MatchStatus.READY,
    "ONGOING": MatchStatus.LIVE,
    "PAUSED": MatchStatus.LIVE,
    "MANUAL_RESULT": MatchStatus.LIVE,
    "FINISHED": MatchStatus.FINISHED,
    "CANCELLED": MatchStatus.CANCELLED,
    "ABORTED": MatchStatus.CANCELLED,
}

HISTORY_SCAN_LIMIT = 20
CHAMPIONSHIP_PAGE_SIZE = 100


# ── Raw payload models ──────────────────────────────────────────────────
class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _Faction(_Payload):
    faction_id: str
    name: str


class _Teams(_Payload):
    faction1: _Faction
    faction2: _Faction


class _Score(_Payload):
    faction1: int = 0
    faction2: int = 0


class _Results(_Payload):
    winner: Optional[str] = None
    score: _Score = Field(default_factory=_Score)


class _FaceitMatch(_Payload):
    match_id: str
    status: str
    teams: _Teams
    scheduled_at: Optional[int] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    results: Optional[_Results] = None
    competition_name: str = ""


class _Member(_Payload):
    user_id: str
    nickname: str


def normalize_match(raw: dict[str, Any]) -> Match:
    """
    Convert a FACEIT match payload into a domain ``Match``.

    Raises:
        ValidationError: malformed payload, unknown status, or a finished
            match without a finish time.
    """
    try:
        payload = _FaceitMatch.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "malformed_payload", f"FACEIT match payload invalid: {exc.error_count()} errors",
            match_id=raw.get("match_id") if isinstance(raw, dict) else None,
        ) from exc

    status = STATUS_MAP.get(payload.status.upper())
    if status is None:
        raise ValidationError("unknown_status", match_id=payload.match_id, status=payload.status)

    scheduled_at = payload.scheduled_at or payload.started_at
    if scheduled_at is None:
        raise ValidationError("missing_scheduled_at", match_id=payload.match_id)

    f1, f2 = payload.teams.faction1, payload.teams.faction2
    finished_at: Optional[int] = None
    result: Optional[MatchResult] = None
    if status == MatchStatus.FINISHED:
        if not payload.finished_at:
            raise ValidationError("missing_finished_at", match_id=payload.match_id)
        finished_at = payload.finished_at
        if payload.results is not None:
            winner = payload.results.winner
            result = MatchResult(
                score_a=payload.results.score.faction1,
                score_b=payload.results.score.faction2,
                winner={"faction1": f1.faction_id, "faction2": f2.faction_id}.get(winner or "", winner),
            )

    return Match(
        match_id=payload.match_id,
        side_a=Side(team_id=f1.faction_id, name=f1.name),
        side_b=Side(team_id=f2.faction_id, name=f2.name),
        scheduled_at=scheduled_at,
        status=status,
        finished_at=finished_at,
        result=result,
        competition_name=payload.competition_name,
    )


def _upstream_fault(exc: BaseException) -> bool:
    """Only upstream-side failures count towards opening the circuit."""
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    return isinstance(exc, httpx.TransportError)


class FaceitMatchSource(MatchSource):
    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = s = settings or get_settings()
        self._http = JsonHTTPClient(
            "faceit",
            s.faceit_base_url,
            headers={"Authorization": f"Bearer {s.faceit_api_key}", "Accept": "application/json"},
            timeout_s=s.source_request_timeout_s,
            max_retries=s.source_max_retries,
            retry_base_delay_s=s.source_retry_base_delay_s,
            transport=transport,
        )
        self._breaker = CircuitBreaker(
            "faceit",
            failure_threshold=s.source_circuit_failure_threshold,
            recovery_timeout_s=s.source_circuit_recovery_s,
            counts_as_failure=_upstream_fault,
        )

    @property
    def source_name(self) -> str:
        return "faceit"

    @property
    def team_id(self) -> str:
        return self._settings.faceit_team_id

    async def start(self) -> None:
        await self._http.start()

    async def close(self) -> None:
        await self._http.close()

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        try:
            return await self._breaker.call(self._http.get_json, path, params)
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            if code == 404:
                raise MatchNotFoundError(f"FACEIT {path}: not found") from exc
            raise FetchError(f"FACEIT {path}: HTTP {code}", retryable=code == 429 or code >= 500) from exc
        except httpx.TransportError as exc:
            raise FetchError(f"FACEIT {path}: {type(exc).__name__}") from exc
        except ValueError as exc:
            raise ValidationError("malformed_payload", f"FACEIT {path}: body is not JSON") from exc

    def _involves_team(self, raw: dict[str, Any]) -> bool:
        teams = raw.get("teams") or {}
        ids = {(teams.get(f) or {}).get("faction_id") for f in ("faction1", "faction2")}
        return self.team_id in ids

    def _normalize_many(self, items: list[dict[str, Any]]) -> list[Match]:
        out: list[Match] = []
        for raw in items:
            try:
                out.append(normalize_match(raw))
            except ValidationError as exc:
                logger.warning("faceit_match_skipped", reason=exc.reason, **exc.context)
        return out

    async def _team_matches(self) -> list[dict[str, Any]]:
        """Raw payloads of every known match of the tracked team."""
        s = self._settings
        if s.faceit_competition_id:
            data = await self._get(
                f"/championships/{s.faceit_competition_id}/matches",
                {"limit": CHAMPIONSHIP_PAGE_SIZE},
            )
            return [m for m in (data or {}).get("items", []) if self._involves_team(m)]

        roster = await self.fetch_roster()
        if not roster:
            return []
        history = await self._get(
            f"/players/{roster[0].player_id}/history",
            {"game": "cs2", "limit": HISTORY_SCAN_LIMIT},
        )
        found: list[dict[str, Any]] = []
        for item in (history or {}).get("items", []):
            try:
                full = await self._get(f"/matches/{item['match_id']}")
            except MatchNotFoundError:
                continue
            if self._involves_team(full):
                found.append(full)
        return found

    async def fetch_upcoming(self) -> list[Match]:
        matches = [
            m for m in self._normalize_many(await self._team_matches())
            if not m.status.is_terminal
        ]
        matches.sort(key=lambda m: m.scheduled_at)
        logger.info("faceit_upcoming_fetched", count=len(matches))
        return matches

    async def fetch_finished(self, limit: int) -> list[Match]:
        matches = [
            m for m in self._normalize_many(await self._team_matches())
            if m.status == MatchStatus.FINISHED
        ]
        matches.sort(key=lambda m: m.finished_at or 0, reverse=True)
        logger.info("faceit_finished_fetched", count=len(matches), limit=limit)
        return matches[:limit]

    async def fetch_match(self, match_id: str) -> Match:
        return normalize_match(await self._get(f"/matches/{match_id}"))

    async def fetch_roster(self) -> list[RosterMember]:
        data = await self._get(f"/teams/{self.team_id}")
        try:
            members = [_Member.model_validate(m) for m in (data or {}).get("members", [])]
        except pydantic.ValidationError as exc:
            raise ValidationError("malformed_payload", "FACEIT team members invalid", team_id=self.team_id) from exc
        return [RosterMember(player_id=m.user_id, nickname=m.nickname) for m in members]
