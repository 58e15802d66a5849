"""
Rate Limiter - Per (user, operation) admission control.

Two checks run concurrently and are AND-combined:
- a sliding window log over the trailing minute (sorted set of event times)
- a token bucket over one second for burst control

Store failures raise RateLimitStoreError. Admission control fails closed.
"""

import asyncio
import math
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

from redis.exceptions import RedisError
from structlog import get_logger

from tokengate.config import TIER_CONFIGS, settings
from tokengate.exceptions import RateLimitStoreError
from tokengate.kv.store import KeyValueStore
from tokengate.models.api import SubscriptionTier
from tokengate.models.domain import RateLimitResult, RateLimitStats
from tokengate.observability.metrics import metrics

logger = get_logger(__name__)

MINUTE_WINDOW_SECONDS = 60
BURST_WINDOW_SECONDS = 1
DEFAULT_OPERATION = "default"


def _from_ms(ms: float) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=UTC)


class RateLimiter:
    """Sliding window + token bucket limiter over a KeyValueStore."""

    def __init__(
        self,
        store: KeyValueStore,
        key_prefix: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.key_prefix = key_prefix or settings.rate_limit_key_prefix
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def minute_key(self, user_id: UUID | str, operation: str) -> str:
        return f"{self.key_prefix}:{user_id}:{operation}:minute"

    def second_key(self, user_id: UUID | str, operation: str) -> str:
        return f"{self.key_prefix}:{user_id}:{operation}:second"

    async def check_limit(
        self,
        user_id: UUID | str,
        tier: SubscriptionTier,
        operation: str = DEFAULT_OPERATION,
    ) -> RateLimitResult:
        """
        Decide whether one request may proceed.

        A window denial takes precedence over a bucket denial; when both
        allow, the window result is returned.

        Raises:
            RateLimitStoreError: Backing store unreachable
        """
        config = TIER_CONFIGS[tier]
        now_ms = self._now_ms()
        started = time.perf_counter()

        try:
            window, bucket = await asyncio.gather(
                self._check_sliding_window(
                    self.minute_key(user_id, operation),
                    config.requests_per_minute,
                    MINUTE_WINDOW_SECONDS,
                    now_ms,
                ),
                self._check_token_bucket(
                    self.second_key(user_id, operation),
                    config.burst_per_second,
                    BURST_WINDOW_SECONDS,
                    now_ms,
                ),
            )
        except (RedisError, OSError) as e:
            logger.error(
                "rate_limit_store_error",
                user_id=str(user_id),
                operation=operation,
                error=str(e),
            )
            metrics.record_error("rate_limit_store_error", operation)
            raise RateLimitStoreError(str(e)) from e

        if not window.allowed:
            result = window
        elif not bucket.allowed:
            result = bucket
        else:
            result = window

        metrics.record_rate_limit(
            tier.value, operation, result.allowed, time.perf_counter() - started
        )
        if not result.allowed:
            logger.info(
                "rate_limit_denied",
                user_id=str(user_id),
                tier=tier.value,
                operation=operation,
                retry_after=result.retry_after,
            )
        return result

    async def _check_sliding_window(
        self, key: str, limit: int, window_seconds: int, now_ms: int
    ) -> RateLimitResult:
        member = f"{now_ms}-{uuid4().hex}"
        count = await self.store.sliding_window_add(
            key, member, now_ms, window_seconds * 1000, window_seconds + 1
        )

        allowed = count < limit
        if not allowed:
            # Denied requests do not occupy a slot in the window
            await self.store.zrem(key, member)

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count - 1),
            reset_at=_from_ms(now_ms + window_seconds * 1000),
            retry_after=None if allowed else math.ceil(window_seconds),
        )

    async def _check_token_bucket(
        self, key: str, capacity: int, window_seconds: int, now_ms: int
    ) -> RateLimitResult:
        bucket_key = f"{key}:bucket"
        timestamp_key = f"{key}:timestamp"

        stored_tokens, stored_timestamp = await self.store.mget([bucket_key, timestamp_key])
        tokens = float(stored_tokens) if stored_tokens is not None else float(capacity)
        last_ms = int(stored_timestamp) if stored_timestamp is not None else now_ms

        elapsed = max(0, now_ms - last_ms) / 1000
        refill_rate = capacity / window_seconds
        tokens = min(float(capacity), tokens + elapsed * refill_rate)

        if tokens >= 1:
            tokens -= 1
            ttl = window_seconds + 1
            await self.store.set_many(
                [(bucket_key, repr(tokens), ttl), (timestamp_key, str(now_ms), ttl)]
            )
            return RateLimitResult(
                allowed=True,
                remaining=math.floor(tokens),
                reset_at=_from_ms(now_ms + window_seconds * 1000),
            )

        wait_seconds = (1 - tokens) * (window_seconds / capacity)
        return RateLimitResult(
            allowed=False,
            remaining=0,
            reset_at=_from_ms(now_ms) + timedelta(seconds=wait_seconds),
            retry_after=math.ceil(wait_seconds),
        )

    async def get_remaining_limit(
        self,
        user_id: UUID | str,
        tier: SubscriptionTier,
        operation: str = DEFAULT_OPERATION,
    ) -> int:
        """Requests left in the current minute window."""
        limit = TIER_CONFIGS[tier].requests_per_minute
        key = self.minute_key(user_id, operation)
        window_start = self._now_ms() - MINUTE_WINDOW_SECONDS * 1000
        try:
            count = await self.store.zcount(key, window_start + 1, float("inf"))
        except (RedisError, OSError) as e:
            raise RateLimitStoreError(str(e)) from e
        return max(0, limit - count)

    async def reset_limit(self, user_id: UUID | str, operation: str = DEFAULT_OPERATION) -> None:
        """Clear both the window and the bucket (admin override)."""
        second_key = self.second_key(user_id, operation)
        try:
            await self.store.delete(
                self.minute_key(user_id, operation),
                second_key,
                f"{second_key}:bucket",
                f"{second_key}:timestamp",
            )
        except (RedisError, OSError) as e:
            raise RateLimitStoreError(str(e)) from e
        logger.info("rate_limit_reset", user_id=str(user_id), operation=operation)

    async def get_user_stats(
        self, user_id: UUID | str, operation: str = DEFAULT_OPERATION
    ) -> RateLimitStats:
        """
        Raw counters for observability.

        `second_tokens` is the stored bucket level, 0.0 when no bucket exists.
        """
        key = self.minute_key(user_id, operation)
        window_start = self._now_ms() - MINUTE_WINDOW_SECONDS * 1000
        try:
            minute_count, tokens = await asyncio.gather(
                self.store.zcount(key, window_start + 1, float("inf")),
                self.store.get(f"{self.second_key(user_id, operation)}:bucket"),
            )
        except (RedisError, OSError) as e:
            raise RateLimitStoreError(str(e)) from e
        return RateLimitStats(
            minute_count=minute_count,
            second_tokens=float(tokens) if tokens is not None else 0.0,
        )
