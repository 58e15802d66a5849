"""
Key-value store access for the rate limiter and cache.
"""

from tokengate.kv.store import KeyValueStore, RedisKeyValueStore

__all__ = ["KeyValueStore", "RedisKeyValueStore"]
