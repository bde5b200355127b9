from __future__ import annotations

import asyncio
from typing import Callable, Iterable, TypeVar

from ..core.logging import get_logger
from ..services.cache import CacheProvider
from .exceptions import LockBatchClosedError

logger = get_logger(name=__name__)

T = TypeVar("T")


class LockManager:
    """Cooperative distributed locks stored as cache keys with a TTL backstop."""

    def __init__(
        self,
        cache: CacheProvider,
        *,
        prefix: str,
        default_timeout: int = 30 * 60,
        owner: str = "locked",
    ) -> None:
        self._cache = cache
        self._prefix = prefix
        self._default_timeout = default_timeout
        self._owner = owner

    def _key(self, lock_id: str) -> str:
        return f"{self._prefix}{lock_id}"

    async def is_locked(self, lock_id: str) -> bool:
        return await self._cache.get(self._key(lock_id)) is not None

    async def filter_locked(self, items: Iterable[T], key_fn: Callable[[T], str]) -> list[T]:
        """Return the items whose lock is currently free."""
        candidates = list(items)
        if not candidates:
            return []
        held = await self._cache.mget([self._key(key_fn(item)) for item in candidates])
        return [item for item, owner in zip(candidates, held) if owner is None]

    async def acquire(self, lock_id: str, timeout: int | None = None) -> bool:
        ttl = timeout or self._default_timeout
        return await self._cache.set(self._key(lock_id), self._owner, ttl=ttl, only_if_missing=True)

    async def release(self, lock_id: str) -> None:
        await self._cache.delete(self._key(lock_id))


class LockBatch:
    """Scoped guard releasing every lock it acquired when the ``async with`` block exits."""

    def __init__(
        self,
        manager: LockManager,
        *,
        on_release_error: Callable[[str, BaseException], None] | None = None,
    ) -> None:
        self._manager = manager
        self._on_release_error = on_release_error
        self._held: list[str] = []
        self._closed = False

    @property
    def held_locks(self) -> tuple[str, ...]:
        return tuple(self._held)

    def __len__(self) -> int:
        return len(self._held)

    async def acquire(self, lock_id: str, timeout: int | None = None) -> bool:
        if self._closed:
            raise LockBatchClosedError(f"Cannot acquire {lock_id!r} through a released lock batch")
        acquired = await self._manager.acquire(lock_id, timeout)
        if acquired:
            self._held.append(lock_id)
        return acquired

    async def release_all(self) -> None:
        if self._closed:
            return
        self._closed = True
        held, self._held = self._held, []
        outcomes = await asyncio.gather(
            *(self._manager.release(lock_id) for lock_id in held),
            return_exceptions=True,
        )
        for lock_id, outcome in zip(held, outcomes):
            if isinstance(outcome, BaseException):
                if self._on_release_error is not None:
                    self._on_release_error(lock_id, outcome)
                else:
                    logger.error("task_lock_release_failed", lock_id=lock_id, error=str(outcome))

    async def __aenter__(self) -> "LockBatch":
        return self

    async def __aexit__(self, *exc_info: object) -> bool:
        await self.release_all()
        return False
