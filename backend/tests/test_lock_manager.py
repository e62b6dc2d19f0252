"""
Mutation lock manager: serialization, ordering, timeouts and busy retries.

Run: pytest backend/tests/test_lock_manager.py -v
"""
from __future__ import annotations

import asyncio

import pytest

from locks.manager import MutationLockManager
from shared.config import Settings
from shared.errors import LockTimeoutError, NestedLockError, RetryExhaustedError, StoreBusyError


@pytest.fixture
def locks(settings: Settings) -> MutationLockManager:
    return MutationLockManager(settings)


@pytest.mark.asyncio
async def test_concurrent_sections_never_overlap(locks: MutationLockManager) -> None:
    counter = 0
    active = 0
    max_active = 0

    async def bump() -> None:
        nonlocal counter, active, max_active
        active += 1
        max_active = max(max_active, active)
        value = counter
        await asyncio.sleep(0.001)
        counter = value + 1
        active -= 1

    await asyncio.gather(*(locks.with_lock("m1", bump) for _ in range(25)))
    assert counter == 25
    assert max_active == 1
    assert locks.status() == {}


@pytest.mark.asyncio
async def test_different_keys_run_in_parallel(locks: MutationLockManager) -> None:
    both_inside = asyncio.Event()
    inside = 0

    async def section() -> None:
        nonlocal inside
        inside += 1
        if inside == 2:
            both_inside.set()
        await asyncio.wait_for(both_inside.wait(), 1)

    await asyncio.gather(locks.with_lock("a", section), locks.with_lock("b", section))


@pytest.mark.asyncio
async def test_waiters_served_in_arrival_order(locks: MutationLockManager) -> None:
    release = asyncio.Event()
    order: list[int] = []

    async def holder() -> None:
        await release.wait()

    def worker(n: int):
        async def run() -> None:
            order.append(n)
        return run

    first = asyncio.create_task(locks.with_lock("k", holder))
    await asyncio.sleep(0)
    waiters = []
    for n in range(5):
        waiters.append(asyncio.create_task(locks.with_lock("k", worker(n))))
        await asyncio.sleep(0)
    assert locks.status()["k"] == {"held": True, "queued": 5}

    release.set()
    await asyncio.gather(first, *waiters)
    assert order == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_nested_acquisition_is_rejected(locks: MutationLockManager) -> None:
    async def inner() -> None:
        return None

    async def outer() -> None:
        await locks.with_lock("other", inner)

    with pytest.raises(NestedLockError):
        await locks.with_lock("m1", outer)
    assert locks.status() == {}


@pytest.mark.asyncio
async def test_acquisition_timeout(locks: MutationLockManager) -> None:
    release = asyncio.Event()

    async def holder() -> None:
        await release.wait()

    task = asyncio.create_task(locks.with_lock("k", holder))
    await asyncio.sleep(0)

    async def never() -> None:
        raise AssertionError("must not run")

    with pytest.raises(LockTimeoutError) as err:
        await locks.with_lock("k", never, timeout_s=0.05)
    assert err.value.resource_key == "k"
    assert locks.status()["k"]["queued"] == 0

    release.set()
    await task
    assert locks.status() == {}


@pytest.mark.asyncio
async def test_lock_released_on_error(locks: MutationLockManager) -> None:
    async def boom() -> None:
        raise ValueError("nope")

    with pytest.raises(ValueError):
        await locks.with_lock("k", boom)

    async def ok() -> str:
        return "done"

    assert await locks.with_lock("k", ok, timeout_s=0.1) == "done"


@pytest.mark.asyncio
async def test_lock_released_on_cancellation(locks: MutationLockManager) -> None:
    started = asyncio.Event()

    async def hang() -> None:
        started.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(locks.with_lock("k", hang))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    async def ok() -> int:
        return 1

    assert await locks.with_lock("k", ok, timeout_s=0.1) == 1


@pytest.mark.asyncio
async def test_busy_store_is_retried(locks: MutationLockManager) -> None:
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise StoreBusyError("database is locked")
        return "saved"

    assert await locks.with_lock("k", flaky) == "saved"
    assert calls == 3


@pytest.mark.asyncio
async def test_busy_store_retries_exhausted(locks: MutationLockManager) -> None:
    calls = 0

    async def always_busy() -> None:
        nonlocal calls
        calls += 1
        raise StoreBusyError("database is locked")

    with pytest.raises(RetryExhaustedError) as err:
        await locks.with_lock("k", always_busy)
    assert calls == 3
    assert err.value.attempts == 3
    assert isinstance(err.value.last_error, StoreBusyError)


def test_backoff_is_capped() -> None:
    manager = MutationLockManager(Settings(lock_backoff_base_s=0.1, lock_backoff_cap_s=5.0))
    assert manager.backoff(1) == pytest.approx(0.1)
    assert manager.backoff(2) == pytest.approx(0.2)
    assert manager.backoff(10) == 5.0
