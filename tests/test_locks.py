from __future__ import annotations

import pytest

from taskq.queue.exceptions import LockBatchClosedError
from taskq.queue.locks import LockBatch, LockManager
from taskq.services.cache import InMemoryCacheProvider


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.asyncio
async def test_acquire_is_exclusive_until_released():
    manager = LockManager(InMemoryCacheProvider(), prefix="task_lock_")

    assert await manager.acquire("t-1") is True
    assert await manager.acquire("t-1") is False
    assert await manager.is_locked("t-1") is True

    await manager.release("t-1")

    assert await manager.is_locked("t-1") is False
    assert await manager.acquire("t-1") is True


@pytest.mark.asyncio
async def test_lock_expires_after_ttl():
    clock = FakeClock()
    manager = LockManager(InMemoryCacheProvider(clock=clock), prefix="task_lock_", default_timeout=20)

    await manager.acquire("t-1")
    clock.now += 21

    assert await manager.is_locked("t-1") is False


@pytest.mark.asyncio
async def test_filter_locked_returns_free_items_only():
    manager = LockManager(InMemoryCacheProvider(), prefix="task_lock_")
    await manager.acquire("b")

    free = await manager.filter_locked(["a", "b", "c"], lambda item: item)

    assert free == ["a", "c"]


@pytest.mark.asyncio
async def test_lock_batch_releases_everything_on_exit_even_when_raising():
    manager = LockManager(InMemoryCacheProvider(), prefix="task_lock_")

    with pytest.raises(RuntimeError):
        async with LockBatch(manager) as batch:
            await batch.acquire("a")
            await batch.acquire("b")
            assert len(batch) == 2
            raise RuntimeError("executor blew up")

    assert await manager.is_locked("a") is False
    assert await manager.is_locked("b") is False


@pytest.mark.asyncio
async def test_lock_batch_rejects_acquire_after_release():
    manager = LockManager(InMemoryCacheProvider(), prefix="task_lock_")
    batch = LockBatch(manager)
    await batch.release_all()

    with pytest.raises(LockBatchClosedError):
        await batch.acquire("late")


@pytest.mark.asyncio
async def test_lock_batch_reports_release_failures_and_keeps_going():
    class FlakyCache(InMemoryCacheProvider):
        async def delete(self, key: str) -> None:
            if key.endswith("a"):
                raise ConnectionError("lost connection")
            await super().delete(key)

    manager = LockManager(FlakyCache(), prefix="task_lock_")
    errors: list[str] = []

    async with LockBatch(manager, on_release_error=lambda lock_id, exc: errors.append(lock_id)) as batch:
        await batch.acquire("a")
        await batch.acquire("b")

    assert errors == ["a"]
    assert await manager.is_locked("b") is False
