"""
Tests for UserCache and the cache invalidation observer.
"""

from datetime import UTC, datetime
from unittest.mock import AsyncMock
from uuid import uuid4

from tokengate.models.api import (
    ChannelSubscription,
    OperationType,
    SubscriptionTier,
    UserProfile,
)
from tokengate.models.domain import (
    CachedTokenBalance,
    TokenCreditOptions,
    TokenDebitOptions,
)
from tokengate.services.token_service import TokenService
from tokengate.services.user_cache import (
    CHANNEL_SUBSCRIPTION_TTL,
    PROFILE_TTL,
    TOKEN_BALANCE_TTL,
    CacheInvalidationObserver,
    channel_key,
    profile_key,
    tokens_key,
)

CREATED = datetime(2026, 1, 1, tzinfo=UTC)


def make_profile(user_id=None, balance=100):
    return UserProfile(
        id=user_id or uuid4(),
        telegram_id="tg-1",
        username="alice",
        tier=SubscriptionTier.GIFT,
        tokens_balance=balance,
        tokens_spent=0,
        created_at=CREATED,
        updated_at=CREATED,
    )


class TestViews:
    """Tests for the typed per-user views."""

    async def test_profile_round_trip_and_ttl(self, user_cache, cache):
        profile = make_profile()

        await user_cache.set_user_profile(profile.id, profile)

        assert await user_cache.get_user_profile(profile.id) == profile
        assert await cache.ttl(profile_key(profile.id)) == PROFILE_TTL

    async def test_token_balance_ttl(self, user_cache, cache):
        user_id = uuid4()

        await user_cache.set_token_balance(user_id, CachedTokenBalance(100, 0))

        assert await user_cache.get_token_balance(user_id) == CachedTokenBalance(100, 0)
        assert await cache.ttl(tokens_key(user_id)) == TOKEN_BALANCE_TTL

    async def test_channel_subscription(self, user_cache, cache):
        user_id = uuid4()
        status = ChannelSubscription(is_subscribed=True, subscribed_at=CREATED)

        await user_cache.set_channel_subscription(user_id, status)

        assert await user_cache.get_channel_subscription(user_id) == status
        assert await cache.ttl(channel_key(user_id)) == CHANNEL_SUBSCRIPTION_TTL

    async def test_get_or_fetch_profile_fetches_once(self, user_cache):
        profile = make_profile()
        fetcher = AsyncMock(return_value=profile)

        assert await user_cache.get_or_fetch_user_profile(profile.id, fetcher) == profile
        assert await user_cache.get_or_fetch_user_profile(profile.id, fetcher) == profile
        fetcher.assert_awaited_once()

    async def test_get_or_fetch_token_balance(self, user_cache):
        user_id = uuid4()
        fetcher = AsyncMock(return_value=CachedTokenBalance(5, 95))

        result = await user_cache.get_or_fetch_token_balance(user_id, fetcher)

        assert result == CachedTokenBalance(5, 95)
        assert await user_cache.get_token_balance(user_id) == result

    async def test_get_or_fetch_channel_subscription(self, user_cache):
        user_id = uuid4()
        fetcher = AsyncMock(return_value=ChannelSubscription(is_subscribed=True))

        first = await user_cache.get_or_fetch_channel_subscription(user_id, fetcher)
        second = await user_cache.get_or_fetch_channel_subscription(user_id, fetcher)

        assert first == second
        assert first.is_subscribed
        fetcher.assert_awaited_once()

    async def test_invalidate_profile_and_channel(self, user_cache):
        user_id = uuid4()
        await user_cache.set_user_profile(user_id, make_profile(user_id))
        await user_cache.set_channel_subscription(user_id, ChannelSubscription(is_subscribed=True))

        await user_cache.invalidate_user_profile(user_id)
        await user_cache.invalidate_channel_subscription(user_id)

        assert await user_cache.get_user_profile(user_id) is None
        assert await user_cache.get_channel_subscription(user_id) is None

    async def test_single_view_invalidation(self, user_cache):
        user_id = uuid4()
        await user_cache.set_token_balance(user_id, CachedTokenBalance(1, 0))
        await user_cache.set_user_profile(user_id, make_profile(user_id))

        await user_cache.invalidate_token_balance(user_id)

        assert await user_cache.get_token_balance(user_id) is None
        assert await user_cache.get_user_profile(user_id) is not None


class TestWholeUser:
    """Tests for whole-user invalidation, warming and batches."""

    async def test_invalidate_all_user_data(self, user_cache):
        user_id = uuid4()
        other = uuid4()
        await user_cache.set_user_profile(user_id, make_profile(user_id))
        await user_cache.set_token_balance(user_id, CachedTokenBalance(1, 0))
        await user_cache.set_channel_subscription(user_id, ChannelSubscription(is_subscribed=False))
        await user_cache.set_token_balance(other, CachedTokenBalance(2, 0))

        await user_cache.invalidate_all_user_data(user_id)

        assert await user_cache.get_user_profile(user_id) is None
        assert await user_cache.get_token_balance(user_id) is None
        assert await user_cache.get_channel_subscription(user_id) is None
        assert await user_cache.get_token_balance(other) == CachedTokenBalance(2, 0)

    async def test_warm_user_cache(self, user_cache):
        user_id = uuid4()
        profile = make_profile(user_id)

        await user_cache.warm_user_cache(
            user_id, profile=profile, token_balance=CachedTokenBalance(100, 0)
        )

        assert await user_cache.get_user_profile(user_id) == profile
        assert await user_cache.get_token_balance(user_id) == CachedTokenBalance(100, 0)
        assert await user_cache.get_channel_subscription(user_id) is None

    async def test_warmed_views_are_dropped_with_the_user(self, user_cache):
        user_id = uuid4()
        await user_cache.warm_user_cache(
            user_id, profile=make_profile(user_id), token_balance=CachedTokenBalance(100, 0)
        )

        await user_cache.invalidate_all_user_data(user_id)

        assert await user_cache.get_user_profile(user_id) is None
        assert await user_cache.get_token_balance(user_id) is None

    async def test_batch_profiles(self, user_cache):
        profiles = [make_profile(), make_profile()]
        missing = uuid4()

        await user_cache.batch_set_profiles(profiles)
        found = await user_cache.batch_get_profiles([p.id for p in profiles] + [missing])

        assert set(found) == {p.id for p in profiles}
        assert missing not in found


class TestInvalidationObserver:
    """Balance changes drop the cached views."""

    async def test_credit_invalidates_cached_balance(
        self, session_factory, user_cache, make_user
    ):
        user = await make_user(tokens_balance=100)
        service = TokenService(
            session_factory, balance_observers=[CacheInvalidationObserver(user_cache)]
        )
        await user_cache.set_token_balance(user.id, CachedTokenBalance(100, 0))

        await service.credit(
            user.id, TokenCreditOptions(operation_type=OperationType.PURCHASE, amount=50)
        )

        assert await user_cache.get_token_balance(user.id) is None

    async def test_debit_drops_warmed_balance(self, session_factory, user_cache, make_user):
        user = await make_user(tokens_balance=100)
        service = TokenService(
            session_factory, balance_observers=[CacheInvalidationObserver(user_cache)]
        )
        await user_cache.warm_user_cache(user.id, token_balance=CachedTokenBalance(100, 0))

        result = await service.debit(
            user.id, TokenDebitOptions(operation_type=OperationType.CHATGPT_MESSAGE, amount=5)
        )

        assert result.success
        assert await user_cache.get_token_balance(user.id) is None
