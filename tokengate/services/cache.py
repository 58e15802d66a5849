"""
Cache Manager - Namespaced read/write-through cache with tag invalidation.

The cache is never the system of record. Every store failure is logged and
degraded: reads become misses, writes become no-ops.
"""

import json
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from structlog import get_logger

from tokengate.config import settings
from tokengate.kv.store import KeyValueStore
from tokengate.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")

# Tag index outlives its longest member so stale sets expire on their own
TAG_TTL_GRACE_SECONDS = 60


class CacheManager:
    """JSON cache over a KeyValueStore, keyed `{prefix}:{key}`."""

    def __init__(
        self,
        store: KeyValueStore,
        key_prefix: str | None = None,
        default_ttl: int | None = None,
    ) -> None:
        self.store = store
        self.key_prefix = key_prefix or settings.cache_key_prefix
        self.default_ttl = default_ttl or settings.cache_default_ttl

    def build_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def build_tag_key(self, tag: str) -> str:
        return f"{self.key_prefix}:tag:{tag}"

    def _degrade(self, operation: str, error: Exception, **context: Any) -> None:
        logger.warning("cache_degraded", operation=operation, error=str(error), **context)
        metrics.record_cache_error(operation)

    # ========================================================================
    # Single-key operations
    # ========================================================================

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or None on miss or store failure."""
        try:
            data = await self.store.get(self.build_key(key))
        except Exception as e:
            self._degrade("get", e, key=key)
            return None

        if data is None:
            metrics.record_cache_lookup(hit=False)
            return None

        try:
            value = json.loads(data)
        except ValueError:
            logger.warning("cache_entry_corrupt", key=key)
            return None

        metrics.record_cache_lookup(hit=True)
        return value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
    ) -> None:
        ttl = ttl or self.default_ttl
        store_key = self.build_key(key)
        try:
            await self.store.set(store_key, json.dumps(value), ttl=ttl)
            if tags:
                await self._add_to_tags(store_key, tags, ttl)
        except Exception as e:
            self._degrade("set", e, key=key)

    async def get_or_set(
        self,
        key: str,
        fetcher: Callable[[], Awaitable[T]],
        ttl: int | None = None,
        tags: Iterable[str] | None = None,
    ) -> T:
        """
        Return the cached value, or fetch, cache and return it.

        Fetcher errors propagate; store errors only turn into a miss.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached  # type: ignore[no-any-return]

        value = await fetcher()
        await self.set(key, value, ttl=ttl, tags=tags)
        return value

    async def delete(self, key: str) -> None:
        try:
            await self.store.delete(self.build_key(key))
        except Exception as e:
            self._degrade("delete", e, key=key)

    async def delete_many(self, keys: list[str]) -> None:
        if not keys:
            return
        try:
            await self.store.delete(*(self.build_key(k) for k in keys))
        except Exception as e:
            self._degrade("delete_many", e, count=len(keys))

    async def invalidate_by_tag(self, tag: str) -> None:
        """Delete every key registered under a tag, then the tag index."""
        tag_key = self.build_tag_key(tag)
        try:
            members = await self.store.smembers(tag_key)
            if members:
                await self.store.delete(*members)
            await self.store.delete(tag_key)
        except Exception as e:
            self._degrade("invalidate_by_tag", e, tag=tag)
            return

        logger.debug("cache_tag_invalidated", tag=tag, keys=len(members))

    async def exists(self, key: str) -> bool:
        try:
            return await self.store.exists(self.build_key(key))
        except Exception as e:
            self._degrade("exists", e, key=key)
            return False

    async def ttl(self, key: str) -> int:
        """Remaining TTL in seconds; -2 when missing or unknown."""
        try:
            return await self.store.ttl(self.build_key(key))
        except Exception as e:
            self._degrade("ttl", e, key=key)
            return -2

    async def clear(self) -> None:
        """Delete every key under this cache's prefix."""
        try:
            keys = await self.store.scan(f"{self.key_prefix}:*")
            if keys:
                await self.store.delete(*keys)
        except Exception as e:
            self._degrade("clear", e)

    # ========================================================================
    # Batch operations
    # ========================================================================

    async def get_many(self, keys: list[str]) -> dict[str, Any]:
        """Return the hits among `keys`; undecodable entries are skipped."""
        if not keys:
            return {}
        try:
            values = await self.store.mget([self.build_key(k) for k in keys])
        except Exception as e:
            self._degrade("get_many", e, count=len(keys))
            return {}

        result: dict[str, Any] = {}
        for key, raw in zip(keys, values):
            if raw is None:
                continue
            try:
                result[key] = json.loads(raw)
            except ValueError:
                continue
        return result

    async def set_many(
        self,
        entries: Iterable[tuple[str, Any, int | None]],
        tags: Iterable[str] | None = None,
    ) -> None:
        """
        Atomically write (key, value, ttl) entries; ttl None uses the default.

        Every written key is registered under each of `tags`.
        """
        entries = list(entries)
        if not entries:
            return
        tags = list(tags or ())
        try:
            batch = [
                (self.build_key(key), json.dumps(value), ttl or self.default_ttl)
                for key, value, ttl in entries
            ]
            await self.store.set_many(batch)
            for store_key, _, ttl in batch:
                await self._add_to_tags(store_key, tags, ttl)
        except Exception as e:
            self._degrade("set_many", e, count=len(entries))

    async def warm_cache(
        self,
        entries: Iterable[tuple[str, Any, int | None]],
        tags: Iterable[str] | None = None,
    ) -> None:
        """Bulk-load entries, e.g. after a deploy or a user login."""
        await self.set_many(entries, tags=tags)

    async def _add_to_tags(self, store_key: str, tags: Iterable[str], ttl: int) -> None:
        wanted = ttl + TAG_TTL_GRACE_SECONDS
        for tag in tags:
            tag_key = self.build_tag_key(tag)
            await self.store.sadd(tag_key, store_key)
            # Only ever extend; a shorter entry must not shrink the index
            if await self.store.ttl(tag_key) < wanted:
                await self.store.expire(tag_key, wanted)
