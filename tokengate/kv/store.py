"""
Key-Value Store - Narrow port over the networked store.

Only the rate limiter and the cache talk to this store. Errors from the
backend are propagated unchanged; degrade-or-fail policy belongs to the
caller.
"""

from __future__ import annotations

from typing import Protocol

import redis.asyncio as aioredis

from tokengate.config import settings


class KeyValueStore(Protocol):
    """Primitives consumed by the rate limiter and the cache."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def mget(self, keys: list[str]) -> list[str | None]: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def expire(self, key: str, seconds: int) -> None: ...

    async def scan(self, pattern: str) -> list[str]: ...

    async def set_many(self, entries: list[tuple[str, str, int | None]]) -> None: ...

    async def sadd(self, key: str, *members: str) -> None: ...

    async def smembers(self, key: str) -> set[str]: ...

    async def sliding_window_add(
        self, key: str, member: str, now_ms: int, window_ms: int, ttl: int
    ) -> int: ...

    async def zrem(self, key: str, member: str) -> int: ...

    async def zcount(self, key: str, min_score: float, max_score: float) -> int: ...


class RedisKeyValueStore:
    """KeyValueStore backed by `redis.asyncio`."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_url(cls, url: str | None = None) -> "RedisKeyValueStore":
        client = aioredis.from_url(
            url or settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_connections,
        )
        return cls(client)

    async def close(self) -> None:
        await self.client.aclose()

    async def get(self, key: str) -> str | None:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: int | None = None) -> None:
        if ttl:
            await self.client.setex(key, ttl, value)
        else:
            await self.client.set(key, value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*keys))

    async def mget(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        return list(await self.client.mget(keys))

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def ttl(self, key: str) -> int:
        return int(await self.client.ttl(key))

    async def expire(self, key: str, seconds: int) -> None:
        await self.client.expire(key, seconds)

    async def scan(self, pattern: str) -> list[str]:
        return [key async for key in self.client.scan_iter(match=pattern, count=500)]

    async def set_many(self, entries: list[tuple[str, str, int | None]]) -> None:
        """Write (key, value, ttl) entries in one MULTI/EXEC."""
        if not entries:
            return
        async with self.client.pipeline(transaction=True) as pipe:
            for key, value, ttl in entries:
                if ttl:
                    pipe.setex(key, ttl, value)
                else:
                    pipe.set(key, value)
            await pipe.execute()

    async def sadd(self, key: str, *members: str) -> None:
        if members:
            await self.client.sadd(key, *members)

    async def smembers(self, key: str) -> set[str]:
        return set(await self.client.smembers(key))

    async def sliding_window_add(
        self, key: str, member: str, now_ms: int, window_ms: int, ttl: int
    ) -> int:
        """
        Trim, count and record one event atomically.

        Returns:
            Number of events in the window before this one was added
        """
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now_ms - window_ms)
            pipe.zcard(key)
            pipe.zadd(key, {member: now_ms})
            pipe.expire(key, ttl)
            results = await pipe.execute()
        return int(results[1])

    async def zrem(self, key: str, member: str) -> int:
        return int(await self.client.zrem(key, member))

    async def zcount(self, key: str, min_score: float, max_score: float) -> int:
        return int(await self.client.zcount(key, min_score, max_score))
