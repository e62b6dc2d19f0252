"""
Reconciliation engine decisions and side effects.

Run: pytest backend/tests/test_reconciliation.py -v
"""
from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

from cache.layer import UPCOMING_KEY, match_key
from conftest import NOW, FakeClock, FakePlatform, FakeSource, make_match
from reconciler.service import MatchThreadService
from reconciler.validation import is_regression
from shared.errors import ThreadPlatformError, ValidationError
from shared.models.enums import Action, DataClass, MatchStatus, ThreadType
from threads.naming import RESCHEDULE_HEADER, format_time, match_tag, reschedule_message, upcoming_name

HOUR = 3600
DAY = 86400


# ── Transition checks ───────────────────────────────────────────────────

def test_is_regression_backwards_status() -> None:
    stored = make_match(status=MatchStatus.LIVE)
    assert is_regression(stored, make_match(status=MatchStatus.SCHEDULED)) is True


def test_is_regression_terminal_switch() -> None:
    stored = make_match(status=MatchStatus.FINISHED, finished_at=NOW)
    assert is_regression(stored, make_match(status=MatchStatus.CANCELLED)) is True


def test_is_regression_forward_or_first_sight() -> None:
    assert is_regression(None, make_match(status=MatchStatus.LIVE)) is False
    assert is_regression(make_match(status=MatchStatus.READY), make_match(status=MatchStatus.LIVE)) is False


# ── Lifecycle walk-through ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_full_lifecycle_walkthrough(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform, clock: FakeClock
) -> None:
    # 1. new scheduled match → upcoming thread
    source.put(make_match("m1", scheduled_at=NOW + 600))
    assert await service.reconcile("m1") == Action.CREATE_UPCOMING
    assoc = service.repo.get_association("m1")
    assert assoc is not None and assoc.thread_type == ThreadType.UPCOMING
    assert len(platform.created) == 1

    # 2. unchanged five minutes later
    clock.advance(300)
    assert await service.reconcile("m1") == Action.NO_ACTION
    assert len(platform.created) == 1

    # 3. finished → converted exactly once
    clock.now = NOW + 3700
    source.put(make_match("m1", status=MatchStatus.FINISHED, scheduled_at=NOW + 600,
                          finished_at=NOW + 3700, score=(13, 7)))
    assert await service.reconcile("m1") == Action.CONVERT_TO_FINISHED
    assert service.repo.get_association("m1").thread_type == ThreadType.FINISHED
    assert await service.reconcile("m1") == Action.NO_ACTION
    thread = platform.threads[assoc.thread_id]
    assert thread.name.startswith("RESULT: Us vs Them (13-7)")
    summaries = [m for m in platform.messages[assoc.thread_id] if m.content.startswith("🏁 Match Result")]
    assert len(summaries) == 1

    # 4. eight days after finish → stale skip, repeatedly, without mutation
    clock.now = NOW + 3700 + 8 * DAY
    renames_before = len(platform.renamed)
    for _ in range(2):
        assert await service.reconcile("m1") == Action.SKIP
    assert len(platform.renamed) == renames_before
    assert service.repo.get_association("m1").thread_type == ThreadType.FINISHED


@pytest.mark.asyncio
async def test_reconcile_is_idempotent(service: MatchThreadService, source: FakeSource, platform: FakePlatform) -> None:
    source.put(make_match("m1"))
    actions = [await service.reconcile("m1") for _ in range(4)]
    assert actions == [Action.CREATE_UPCOMING] + [Action.NO_ACTION] * 3
    assert len(platform.created) == 1
    assert len(service.repo.associations()) == 1


@pytest.mark.asyncio
async def test_concurrent_reconcile_creates_one_thread(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    source.put(make_match("m1"))
    results = await asyncio.gather(*(service.reconcile("m1") for _ in range(5)))
    assert results.count(Action.CREATE_UPCOMING) == 1
    assert len(platform.created) == 1


@pytest.mark.asyncio
async def test_processed_marker_set_once(service: MatchThreadService, source: FakeSource) -> None:
    source.put(make_match("m1"))
    await service.reconcile("m1")
    assert service.repo.is_processed("m1")
    assert await service.repo.store.is_processed("m1")


# ── Skips ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_source_unreachable_skips_without_mutation(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    source.put(make_match("m1"))
    source.down = True
    assert await service.reconcile("m1") == Action.SKIP_UNVALIDATED
    assert platform.created == []
    assert service.repo.get_association("m1") is None


@pytest.mark.asyncio
async def test_overdue_unconfirmed_match_warns(
    service: MatchThreadService, source: FakeSource, clock: FakeClock
) -> None:
    source.put(make_match("m1", scheduled_at=NOW + 60))
    await service.reconcile("m1")
    clock.advance(5 * HOUR)
    source.down = True
    with capture_logs() as logs:
        assert await service.reconcile("m1") == Action.SKIP_UNVALIDATED
    assert any(e["event"] == "match_unconfirmed_overdue" for e in logs)


@pytest.mark.asyncio
async def test_fetch_timeout_skips(service: MatchThreadService, source: FakeSource, settings) -> None:
    settings.reconcile_fetch_timeout_s = 0.05

    async def slow(match_id: str):
        await asyncio.sleep(1)

    source.fetch_match = slow  # type: ignore[method-assign]
    assert await service.reconcile("m1") == Action.SKIP_UNVALIDATED


@pytest.mark.asyncio
async def test_malformed_data_skips(service: MatchThreadService, source: FakeSource) -> None:
    async def malformed(match_id: str):
        raise ValidationError("malformed_payload", match_id=match_id)

    source.fetch_match = malformed  # type: ignore[method-assign]
    with capture_logs() as logs:
        assert await service.reconcile("m1") == Action.SKIP
    assert any(e.get("reason") == "malformed_payload" for e in logs)


@pytest.mark.asyncio
async def test_finished_too_old_is_skipped(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    source.put(make_match("m1", status=MatchStatus.FINISHED, scheduled_at=NOW - 10 * DAY,
                          finished_at=NOW - 10 * DAY + 3600))
    decision = await service.engine.decide("m1")
    assert decision.action == Action.SKIP
    assert decision.reason == "too_old"
    assert await service.reconcile("m1") == Action.SKIP
    assert await service.reconcile("m1") == Action.SKIP
    assert platform.created == []


@pytest.mark.asyncio
async def test_finished_in_future_is_skipped(service: MatchThreadService, source: FakeSource) -> None:
    source.put(make_match("m1", status=MatchStatus.FINISHED, scheduled_at=NOW - HOUR, finished_at=NOW + HOUR))
    decision = await service.engine.decide("m1")
    assert decision.action == Action.SKIP
    assert decision.reason == "finished_in_future"


@pytest.mark.asyncio
async def test_finished_within_skew_is_accepted(service: MatchThreadService, source: FakeSource) -> None:
    source.put(make_match("m1", status=MatchStatus.FINISHED, scheduled_at=NOW - HOUR, finished_at=NOW + 120))
    assert (await service.engine.decide("m1")).action == Action.CREATE_FINISHED


@pytest.mark.asyncio
async def test_status_regression_is_not_applied(
    service: MatchThreadService, source: FakeSource
) -> None:
    source.put(make_match("m1", status=MatchStatus.LIVE, scheduled_at=NOW - 600))
    await service.reconcile("m1")
    source.put(make_match("m1", status=MatchStatus.SCHEDULED, scheduled_at=NOW - 600))
    with capture_logs() as logs:
        assert await service.reconcile("m1") == Action.SKIP_UNVALIDATED
    assert any(e["event"] == "status_regression" for e in logs)
    assert service.repo.get_match("m1").status == MatchStatus.LIVE


# ── Thread presence ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_deleted_thread_is_cleaned_then_recreated(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    source.put(make_match("m1"))
    await service.reconcile("m1")
    thread_id = service.repo.get_association("m1").thread_id
    del platform.threads[thread_id]

    assert await service.reconcile("m1") == Action.CLEANUP_STALE
    assert service.repo.get_association("m1") is None
    assert await service.reconcile("m1") == Action.CREATE_UPCOMING
    assert service.repo.get_association("m1").thread_id != thread_id


@pytest.mark.asyncio
async def test_platform_error_during_check_skips(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    source.put(make_match("m1"))
    await service.reconcile("m1")
    platform.fail_with = ThreadPlatformError("boom", status=502)
    assert await service.reconcile("m1") == Action.SKIP_UNVALIDATED
    assert service.repo.get_association("m1") is not None


@pytest.mark.asyncio
async def test_tagged_thread_restores_reference(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    match = source.put(make_match("m1"))
    existing = platform.add_thread(upcoming_name(match))

    assert await service.reconcile("m1") == Action.RESTORE_REFERENCE
    assoc = service.repo.get_association("m1")
    assert assoc.thread_id == existing.thread_id
    assert assoc.thread_type == ThreadType.UPCOMING
    assert platform.created == []
    assert await service.reconcile("m1") == Action.NO_ACTION


@pytest.mark.asyncio
async def test_restore_infers_finished_type(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    source.put(make_match("m1", status=MatchStatus.FINISHED, scheduled_at=NOW - 2 * HOUR, finished_at=NOW - HOUR))
    platform.add_thread(f"RESULT: Us vs Them (1-0) {match_tag('m1')}")
    assert await service.reconcile("m1") == Action.RESTORE_REFERENCE
    assert service.repo.get_association("m1").thread_type == ThreadType.FINISHED


@pytest.mark.asyncio
async def test_first_seen_finished_creates_result_thread(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    source.put(make_match("m1", status=MatchStatus.FINISHED, scheduled_at=NOW - 2 * HOUR,
                          finished_at=NOW - HOUR, score=(2, 0)))
    assert await service.reconcile("m1") == Action.CREATE_FINISHED
    thread = platform.threads[platform.created[0]]
    assert thread.name.startswith("RESULT:")
    assert service.repo.get_association("m1").thread_type == ThreadType.FINISHED
    assert not service.repo.is_processed("m1")


@pytest.mark.asyncio
async def test_cancelled_without_thread_is_no_action(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    source.put(make_match("m1", status=MatchStatus.CANCELLED))
    assert await service.reconcile("m1") == Action.NO_ACTION
    assert platform.created == []


# ── Side effects ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reschedule_renames_thread(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    source.put(make_match("m1", scheduled_at=NOW + DAY))
    await service.reconcile("m1")
    moved = source.put(make_match("m1", scheduled_at=NOW + 2 * DAY))

    assert await service.reconcile("m1") == Action.NO_ACTION
    thread_id = service.repo.get_association("m1").thread_id
    assert platform.threads[thread_id].name == upcoming_name(moved)
    assert service.repo.get_match("m1").scheduled_at == NOW + 2 * DAY

    notices = [m for m in platform.messages[thread_id] if m.content.startswith(RESCHEDULE_HEADER)]
    assert [m.content for m in notices] == [reschedule_message(moved, NOW + DAY)]
    assert format_time(NOW + DAY) in notices[0].content
    assert format_time(NOW + 2 * DAY) in notices[0].content
    # The RSVP view is brought up to date in the same step
    assert platform.messages[thread_id][0].content.startswith("📋")

    # Repeating the step after a partial failure posts nothing new
    posted = len(platform.messages[thread_id])
    assert await service.lifecycle.refresh_upcoming(moved, NOW + DAY) is False
    assert await service.reconcile("m1") == Action.NO_ACTION
    assert len(platform.messages[thread_id]) == posted


@pytest.mark.asyncio
async def test_stale_thread_listing_reports_restore(
    service: MatchThreadService, source: FakeSource, platform: FakePlatform
) -> None:
    match = source.put(make_match("m1"))
    # Prime the cached listing before the thread shows up on the platform
    await service.lifecycle.discover("m1")
    existing = platform.add_thread(upcoming_name(match))

    assert await service.reconcile("m1") == Action.RESTORE_REFERENCE
    assert platform.created == []
    assert service.repo.get_association("m1").thread_id == existing.thread_id


@pytest.mark.asyncio
async def test_match_start_invalidates_upcoming_list(
    service: MatchThreadService, source: FakeSource
) -> None:
    source.put(make_match("m1", scheduled_at=NOW + 60))
    await service.reconcile("m1")
    await service.cache.put(UPCOMING_KEY, [], DataClass.UPCOMING_MATCHES)
    await service.cache.put(match_key("m1"), {"x": 1}, DataClass.SEARCH)

    source.put(make_match("m1", status=MatchStatus.LIVE, scheduled_at=NOW + 60))
    await service.reconcile("m1")
    assert await service.repo.store.cache_get(UPCOMING_KEY, NOW) is None
    assert await service.repo.store.cache_get(match_key("m1"), NOW) is None
