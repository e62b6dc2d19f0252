"""
Match thread service surface: the check pass, the cleanup pass, cache
status and event invalidation.

Run: pytest backend/tests/test_service.py -v
"""
from __future__ import annotations

import asyncio

import pytest

from cache.layer import THREADS_KEY
from conftest import NOW, TEAM_ID, FakePlatform, FakeSource, make_match
from reconciler.service import MatchThreadService
from shared.models.enums import Action, DataClass, MatchStatus, SyncOutcome
from shared.utils.logging import static_context

DAY = 86400


@pytest.mark.asyncio
async def test_check_pass_creates_threads_and_views(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    source.put(make_match("m1"))
    source.put(make_match("m2", scheduled_at=NOW + 2 * DAY))

    report = await service.check_matches()
    assert report is not None
    assert report.actions == {Action.CREATE_UPCOMING.value: 2}
    assert report.rsvp == {SyncOutcome.RECREATED.value: 2}
    assert report.errors == 0
    assert len(platform.created) == 2

    again = await service.check_matches()
    assert again is not None
    assert again.actions == {Action.NO_ACTION.value: 2}
    assert again.rsvp == {SyncOutcome.UNCHANGED.value: 2}
    assert len(platform.created) == 2


@pytest.mark.asyncio
async def test_check_pass_noops_when_platform_not_ready(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    source.put(make_match("m1"))
    platform.ready = False
    assert await service.check_matches() is None
    assert source.fetch_match_calls == 0


@pytest.mark.asyncio
async def test_overlapping_check_passes_run_once(service: MatchThreadService, source: FakeSource) -> None:
    source.put(make_match("m1"))
    first, second = await asyncio.gather(service.check_matches(), service.check_matches())
    assert (first is None) != (second is None)
    assert service.repo.get_association("m1") is not None


@pytest.mark.asyncio
async def test_check_pass_reconciles_stored_matches_when_listing_fails(
    service: MatchThreadService, source: FakeSource
) -> None:
    await service.repo.save_match(make_match("m1"), NOW)
    source.down = True
    report = await service.check_matches()
    assert report is not None
    assert report.actions == {Action.SKIP_UNVALIDATED.value: 1}
    assert service.repo.get_association("m1") is None


@pytest.mark.asyncio
async def test_cleanup_pass(service: MatchThreadService, platform: FakePlatform) -> None:
    await service.lifecycle.create(make_match("live-one"))
    await service.lifecycle.create(make_match("vanished"))
    del platform.threads[service.repo.get_association("vanished").thread_id]

    ancient = make_match("ancient", status=MatchStatus.FINISHED, scheduled_at=NOW - 40 * DAY, finished_at=NOW - 40 * DAY)
    await service.repo.save_match(ancient, NOW - 40 * DAY)

    report = await service.run_cleanup()
    assert report is not None
    assert report.stale_references == 1
    assert report.purge.matches == 1
    assert service.repo.get_match("ancient") is None
    assert service.repo.get_association("live-one") is not None


@pytest.mark.asyncio
async def test_cache_status_reports_phase_and_locks(service: MatchThreadService) -> None:
    status = service.get_cache_status()
    assert status["phase"] == "normal"
    assert set(status["ttls"]) == {dc.value for dc in DataClass}
    assert status["locks"] == {}
    assert status["tracked_matches"] == 0


@pytest.mark.asyncio
async def test_invalidate_for_event_accepts_event_names(service: MatchThreadService) -> None:
    await service.cache.put(THREADS_KEY, ["t1"], DataClass.SEARCH)
    await service.invalidate_for_event("thread_created", "m1")

    calls = 0

    async def loader() -> list[str]:
        nonlocal calls
        calls += 1
        return []

    await service.cache.get(THREADS_KEY, loader, DataClass.SEARCH)
    assert calls == 1

    with pytest.raises(ValueError):
        await service.invalidate_for_event("not_an_event")


@pytest.mark.asyncio
async def test_cancelled_match_is_retired(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform, clock
) -> None:
    source.put(make_match("m2", scheduled_at=NOW + DAY))
    await service.check_matches()
    thread_id = service.repo.get_association("m2").thread_id
    posted = len(platform.messages[thread_id])

    source.put(make_match("m2", status=MatchStatus.CANCELLED, scheduled_at=NOW + DAY))
    report = await service.check_matches()
    assert report.rsvp == {SyncOutcome.SKIPPED.value: 1}
    assert service.repo.get_match("m2").status == MatchStatus.CANCELLED

    clock.advance(90 * DAY)
    calls = source.fetch_match_calls
    report = await service.check_matches()
    assert report.actions == {}
    assert source.fetch_match_calls == calls
    assert len(platform.messages[thread_id]) == posted

    cleanup = await service.run_cleanup()
    assert cleanup.purge.matches == 1
    assert service.repo.get_match("m2") is None
    assert service.repo.get_association("m2") is None
    assert await service.repo.store.get_thread_association("m2") is None


def test_log_context_carries_tracked_team(settings) -> None:
    tracked = settings.model_copy(update={"faceit_team_id": TEAM_ID, "instance_id": "worker-1"})
    assert static_context("matchthreads", tracked) == {
        "service": "matchthreads",
        "instance_id": "worker-1",
        "team_id": TEAM_ID,
    }
    assert "team_id" not in static_context("matchthreads", settings.model_copy(update={"faceit_team_id": ""}))
