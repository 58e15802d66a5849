"""
Tests for CacheManager.

Namespacing, TTLs, tag invalidation, batch operations and degradation when
the store is unreachable.
"""

from unittest.mock import AsyncMock

import pytest

from tests.fakes import FailingKeyValueStore
from tokengate.services.cache import TAG_TTL_GRACE_SECONDS, CacheManager


class TestSingleKey:
    """Tests for get/set/delete."""

    async def test_set_then_get(self, cache):
        await cache.set("k", {"a": 1, "b": [1, 2]})

        assert await cache.get("k") == {"a": 1, "b": [1, 2]}

    async def test_keys_are_namespaced(self, cache, kv_store):
        await cache.set("k", 1)

        assert await kv_store.get("test:k") == "1"

    async def test_default_and_explicit_ttl(self, kv_store):
        cache = CacheManager(kv_store, key_prefix="test", default_ttl=300)

        await cache.set("default", 1)
        await cache.set("short", 1, ttl=60)

        assert await cache.ttl("default") == 300
        assert await cache.ttl("short") == 60

    async def test_entry_expires(self, cache, clock):
        await cache.set("k", "v", ttl=10)

        clock.advance(11)

        assert await cache.get("k") is None
        assert not await cache.exists("k")
        assert await cache.ttl("k") == -2

    async def test_corrupt_entry_is_a_miss(self, cache, kv_store):
        await kv_store.set("test:k", "{not json")

        assert await cache.get("k") is None

    async def test_delete(self, cache):
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("c", 3)

        await cache.delete("a")
        await cache.delete_many(["b", "missing"])

        assert await cache.get("a") is None
        assert await cache.get("b") is None
        assert await cache.get("c") == 3


class TestGetOrSet:
    """Tests for get_or_set."""

    async def test_fetcher_called_once(self, cache):
        """Two calls within the TTL invoke the fetcher exactly once."""
        fetcher = AsyncMock(return_value={"balance": 100})

        first = await cache.get_or_set("user:1", fetcher, ttl=60)
        second = await cache.get_or_set("user:1", fetcher, ttl=60)

        assert first == second == {"balance": 100}
        fetcher.assert_awaited_once()

    async def test_fetcher_error_propagates(self, cache):
        fetcher = AsyncMock(side_effect=LookupError("db down"))

        with pytest.raises(LookupError):
            await cache.get_or_set("k", fetcher)

        assert await cache.get("k") is None

    async def test_store_failure_falls_through_to_fetcher(self):
        """With the store unreachable every call is a miss and the value is still returned."""
        cache = CacheManager(FailingKeyValueStore(), key_prefix="test")
        fetcher = AsyncMock(return_value=7)

        assert await cache.get_or_set("k", fetcher) == 7
        assert await cache.get_or_set("k", fetcher) == 7
        assert fetcher.await_count == 2


class TestTags:
    """Tests for tag invalidation."""

    async def test_invalidate_by_tag_removes_only_tagged_keys(self, cache):
        await cache.set("a", 1, tags=["t"])
        await cache.set("b", 2, tags=["t"])
        await cache.set("c", 3, tags=["other"])

        await cache.invalidate_by_tag("t")

        assert await cache.get("a") is None
        assert await cache.get("b") is None
        assert await cache.get("c") == 3
        assert not await cache.exists("tag:t")

    async def test_tag_index_outlives_members(self, cache):
        await cache.set("a", 1, ttl=120, tags=["t"])

        assert await cache.ttl("tag:t") == 120 + TAG_TTL_GRACE_SECONDS

    async def test_shorter_entry_does_not_shrink_tag_index(self, cache, clock):
        await cache.set("long", 1, ttl=600, tags=["t"])
        await cache.set("short", 2, ttl=60, tags=["t"])

        assert await cache.ttl("tag:t") == 600 + TAG_TTL_GRACE_SECONDS

        clock.advance(200)
        await cache.invalidate_by_tag("t")

        assert await cache.get("long") is None

    async def test_invalidate_unknown_tag_is_noop(self, cache):
        await cache.set("a", 1)

        await cache.invalidate_by_tag("nothing")

        assert await cache.get("a") == 1


class TestBatch:
    """Tests for batch operations and clear."""

    async def test_set_many_get_many(self, cache):
        await cache.set_many([("a", 1, None), ("b", {"x": 2}, 30)])

        assert await cache.get_many(["a", "b", "missing"]) == {"a": 1, "b": {"x": 2}}
        assert await cache.ttl("b") == 30

    async def test_get_many_empty(self, cache):
        assert await cache.get_many([]) == {}

    async def test_warm_cache(self, cache):
        await cache.warm_cache([("w", "warm", None)])

        assert await cache.get("w") == "warm"

    async def test_set_many_registers_tags(self, cache):
        await cache.set_many([("a", 1, 30), ("b", 2, 300)], tags=["t"])
        await cache.set("c", 3)

        assert await cache.ttl("tag:t") == 300 + TAG_TTL_GRACE_SECONDS

        await cache.invalidate_by_tag("t")

        assert await cache.get_many(["a", "b", "c"]) == {"c": 3}

    async def test_clear_only_touches_own_prefix(self, cache, kv_store):
        await kv_store.set("elsewhere:k", "1")
        await cache.set("a", 1, tags=["t"])

        await cache.clear()

        assert await kv_store.scan("test:*") == []
        assert await kv_store.get("elsewhere:k") == "1"


class TestDegradation:
    """Store failures never raise out of the cache."""

    @pytest.fixture
    def failing(self):
        return FailingKeyValueStore()

    async def test_every_operation_degrades(self, failing):
        cache = CacheManager(failing, key_prefix="test")

        assert await cache.get("k") is None
        await cache.set("k", 1, tags=["t"])
        await cache.delete("k")
        await cache.delete_many(["k"])
        await cache.invalidate_by_tag("t")
        assert await cache.exists("k") is False
        assert await cache.ttl("k") == -2
        await cache.clear()
        assert await cache.get_many(["k"]) == {}
        await cache.set_many([("k", 1, None)])

        assert "get" in failing.calls
        assert "set_many" in failing.calls

    async def test_unserializable_values_degrade_alike(self, cache):
        await cache.set("single", object())
        await cache.set_many([("batch", object(), None)])

        assert await cache.get("single") is None
        assert await cache.get("batch") is None
