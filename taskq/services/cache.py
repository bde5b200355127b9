from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Mapping, Sequence

from redis.asyncio import Redis

from ..core.config import Settings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class CacheProvider:
    """Key/value backend for locks, dedup keys and discarded-task counters."""

    async def get(self, key: str) -> str | None:
        raise NotImplementedError

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl: int | None = None,
        only_if_missing: bool = False,
    ) -> bool:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def mget(self, keys: Sequence[str]) -> list[str | None]:
        raise NotImplementedError

    async def set_many(self, items: Mapping[str, str], *, ttl: int | None = None) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["CacheProvider"]:
        try:
            yield self
        finally:
            await self.close()


class RedisCacheProvider(CacheProvider):
    def __init__(self, client: Any, *, namespace: str) -> None:
        self._client = client
        self._namespace = namespace

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisCacheProvider":
        client = Redis.from_url(str(settings.redis.url), db=settings.redis.cache_db)
        return cls(client, namespace=settings.redis.namespace)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> str | None:
        return _decode(await self._client.get(self._key(key)))

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl: int | None = None,
        only_if_missing: bool = False,
    ) -> bool:
        stored = await self._client.set(self._key(key), value, ex=ttl, nx=only_if_missing)
        return bool(stored)

    async def delete(self, key: str) -> None:
        await self._client.delete(self._key(key))

    async def mget(self, keys: Sequence[str]) -> list[str | None]:
        if not keys:
            return []
        values = await self._client.mget([self._key(key) for key in keys])
        return [_decode(value) for value in values]

    async def set_many(self, items: Mapping[str, str], *, ttl: int | None = None) -> None:
        if not items:
            return
        async with self._client.pipeline(transaction=False) as pipeline:
            for key, value in items.items():
                pipeline.set(self._key(key), value, ex=ttl)
            await pipeline.execute()

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except Exception as exc:  # pragma: no cover - shutdown best effort
            logger.warning("cache_close_failed", error=str(exc))


class InMemoryCacheProvider(CacheProvider):
    """Process-local cache with TTL support, for tests and single-worker setups."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[str, float | None]] = {}

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(
        self,
        key: str,
        value: str,
        *,
        ttl: int | None = None,
        only_if_missing: bool = False,
    ) -> bool:
        if only_if_missing and await self.get(key) is not None:
            return False
        expires_at = self._clock() + ttl if ttl else None
        self._entries[key] = (value, expires_at)
        return True

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def mget(self, keys: Sequence[str]) -> list[str | None]:
        return [await self.get(key) for key in keys]

    async def set_many(self, items: Mapping[str, str], *, ttl: int | None = None) -> None:
        for key, value in items.items():
            await self.set(key, value, ttl=ttl)

    def keys(self) -> list[str]:
        return list(self._entries)


def _decode(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        return value.decode("utf-8")
    return str(value)
