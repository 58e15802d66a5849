"""
User Cache - Per-user cached views with group invalidation.

Every view is tagged `user:{id}` so one tag invalidation drops all of a
user's cached data after a balance change.
"""

from collections.abc import Awaitable, Callable
from dataclasses import asdict
from typing import Any
from uuid import UUID

from structlog import get_logger

from tokengate.models.api import ChannelSubscription, UserProfile
from tokengate.models.domain import CachedTokenBalance, TokenOperationResult
from tokengate.services.cache import CacheManager

logger = get_logger(__name__)

PROFILE_TTL = 300
TOKEN_BALANCE_TTL = 60
CHANNEL_SUBSCRIPTION_TTL = 600


def user_tag(user_id: UUID | str) -> str:
    return f"user:{user_id}"


def profile_key(user_id: UUID | str) -> str:
    return f"user:profile:{user_id}"


def tokens_key(user_id: UUID | str) -> str:
    return f"user:tokens:{user_id}"


def channel_key(user_id: UUID | str) -> str:
    return f"user:channel:{user_id}"


class UserCache:
    """Typed accessors for the profile, balance and channel views."""

    def __init__(self, cache: CacheManager) -> None:
        self.cache = cache

    # ========================================================================
    # Profile
    # ========================================================================

    async def get_user_profile(self, user_id: UUID) -> UserProfile | None:
        data = await self.cache.get(profile_key(user_id))
        return UserProfile.model_validate(data) if data is not None else None

    async def set_user_profile(self, user_id: UUID, profile: UserProfile) -> None:
        await self.cache.set(
            profile_key(user_id),
            profile.model_dump(mode="json"),
            ttl=PROFILE_TTL,
            tags=[user_tag(user_id)],
        )

    async def get_or_fetch_user_profile(
        self, user_id: UUID, fetcher: Callable[[], Awaitable[UserProfile]]
    ) -> UserProfile:
        async def fetch() -> dict[str, Any]:
            return (await fetcher()).model_dump(mode="json")

        data = await self.cache.get_or_set(
            profile_key(user_id), fetch, ttl=PROFILE_TTL, tags=[user_tag(user_id)]
        )
        return UserProfile.model_validate(data)

    async def invalidate_user_profile(self, user_id: UUID) -> None:
        await self.cache.delete(profile_key(user_id))

    # ========================================================================
    # Token balance
    # ========================================================================

    async def get_token_balance(self, user_id: UUID) -> CachedTokenBalance | None:
        data = await self.cache.get(tokens_key(user_id))
        return CachedTokenBalance(**data) if data is not None else None

    async def set_token_balance(self, user_id: UUID, balance: CachedTokenBalance) -> None:
        await self.cache.set(
            tokens_key(user_id),
            asdict(balance),
            ttl=TOKEN_BALANCE_TTL,
            tags=[user_tag(user_id)],
        )

    async def get_or_fetch_token_balance(
        self, user_id: UUID, fetcher: Callable[[], Awaitable[CachedTokenBalance]]
    ) -> CachedTokenBalance:
        async def fetch() -> dict[str, Any]:
            return asdict(await fetcher())

        data = await self.cache.get_or_set(
            tokens_key(user_id), fetch, ttl=TOKEN_BALANCE_TTL, tags=[user_tag(user_id)]
        )
        return CachedTokenBalance(**data)

    async def invalidate_token_balance(self, user_id: UUID) -> None:
        await self.cache.delete(tokens_key(user_id))

    # ========================================================================
    # Channel subscription
    # ========================================================================

    async def get_channel_subscription(self, user_id: UUID) -> ChannelSubscription | None:
        data = await self.cache.get(channel_key(user_id))
        return ChannelSubscription.model_validate(data) if data is not None else None

    async def set_channel_subscription(self, user_id: UUID, status: ChannelSubscription) -> None:
        await self.cache.set(
            channel_key(user_id),
            status.model_dump(mode="json"),
            ttl=CHANNEL_SUBSCRIPTION_TTL,
            tags=[user_tag(user_id)],
        )

    async def get_or_fetch_channel_subscription(
        self, user_id: UUID, fetcher: Callable[[], Awaitable[ChannelSubscription]]
    ) -> ChannelSubscription:
        async def fetch() -> dict[str, Any]:
            return (await fetcher()).model_dump(mode="json")

        data = await self.cache.get_or_set(
            channel_key(user_id), fetch, ttl=CHANNEL_SUBSCRIPTION_TTL, tags=[user_tag(user_id)]
        )
        return ChannelSubscription.model_validate(data)

    async def invalidate_channel_subscription(self, user_id: UUID) -> None:
        await self.cache.delete(channel_key(user_id))

    # ========================================================================
    # Whole-user operations
    # ========================================================================

    async def invalidate_all_user_data(self, user_id: UUID) -> None:
        await self.cache.invalidate_by_tag(user_tag(user_id))

    async def warm_user_cache(
        self,
        user_id: UUID,
        profile: UserProfile | None = None,
        token_balance: CachedTokenBalance | None = None,
        channel_subscription: ChannelSubscription | None = None,
    ) -> None:
        """Preload whichever views are given in one tagged batch write."""
        entries: list[tuple[str, Any, int | None]] = []
        if profile is not None:
            entries.append((profile_key(user_id), profile.model_dump(mode="json"), PROFILE_TTL))
        if token_balance is not None:
            entries.append((tokens_key(user_id), asdict(token_balance), TOKEN_BALANCE_TTL))
        if channel_subscription is not None:
            entries.append(
                (
                    channel_key(user_id),
                    channel_subscription.model_dump(mode="json"),
                    CHANNEL_SUBSCRIPTION_TTL,
                )
            )
        await self.cache.warm_cache(entries, tags=[user_tag(user_id)])

    async def batch_get_profiles(self, user_ids: list[UUID]) -> dict[UUID, UserProfile]:
        keys = {profile_key(user_id): user_id for user_id in user_ids}
        hits = await self.cache.get_many(list(keys))
        return {keys[key]: UserProfile.model_validate(data) for key, data in hits.items()}

    async def batch_set_profiles(self, profiles: list[UserProfile]) -> None:
        await self.cache.set_many(
            (profile_key(p.id), p.model_dump(mode="json"), PROFILE_TTL) for p in profiles
        )


class CacheInvalidationObserver:
    """Balance observer that drops a user's cached views after a mutation."""

    def __init__(self, user_cache: UserCache) -> None:
        self.user_cache = user_cache

    async def on_balance_changed(self, result: TokenOperationResult) -> None:
        if result.user_id is None:
            return
        await self.user_cache.invalidate_all_user_data(result.user_id)
        logger.debug("user_cache_invalidated", user_id=str(result.user_id))
