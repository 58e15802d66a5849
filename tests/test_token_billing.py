"""
Tests for TokenBilling.

Cache-backed checks and charges, with and without the ledger behind them.
"""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import select

from tokengate.db.models import TokenOperation
from tokengate.models.api import OperationType, SubscriptionTier
from tokengate.models.domain import CachedTokenBalance
from tokengate.services.token_billing import TokenBilling


@pytest.fixture
def cache_only(user_cache):
    return TokenBilling(user_cache)


@pytest.fixture
def write_through(user_cache, token_service):
    return TokenBilling(user_cache, token_service=token_service)


class TestStaticLookups:
    def test_costs_and_allocations(self, cache_only):
        assert cache_only.get_operation_cost(OperationType.CHATGPT_MESSAGE) == 5
        assert cache_only.get_operation_cost(OperationType.SORA_IMAGE) == 10
        assert cache_only.get_tier_allocation(SubscriptionTier.GIFT) == 100
        assert cache_only.get_tier_allocation(SubscriptionTier.BUSINESS) == 10000
        assert cache_only.get_tier_price(SubscriptionTier.PROFESSIONAL) == 1990
        assert cache_only.get_tier_price(SubscriptionTier.GIFT) is None


class TestCacheOnly:
    """Without a TokenService only the cached view changes."""

    async def test_deduct(self, cache_only, user_cache):
        user_id = uuid4()
        await cache_only.set_token_balance(user_id, CachedTokenBalance(100, 0))

        result = await cache_only.deduct_tokens(user_id, OperationType.CHATGPT_MESSAGE)

        assert result.success
        assert result.new_balance == 95
        assert await user_cache.get_token_balance(user_id) == CachedTokenBalance(95, 5)

    async def test_deduct_insufficient(self, cache_only):
        user_id = uuid4()
        await cache_only.set_token_balance(user_id, CachedTokenBalance(4, 0))

        result = await cache_only.deduct_tokens(user_id, OperationType.CHATGPT_MESSAGE)

        assert not result.success
        assert result.deficit == 1
        assert "You need 5 tokens but have 4" in result.error

    async def test_unknown_balance(self, cache_only):
        result = await cache_only.deduct_tokens(uuid4(), OperationType.CHATGPT_MESSAGE)

        assert not result.success
        assert result.error == "User balance not found. Please try again."

    async def test_add_tokens(self, cache_only):
        user_id = uuid4()
        await cache_only.set_token_balance(user_id, CachedTokenBalance(10, 3))

        result = await cache_only.add_tokens(user_id, 50)

        assert result.new_balance == 60
        assert result.tokens_spent == 3

    async def test_reset_monthly_preserves_spent(self, cache_only, user_cache):
        user_id = uuid4()
        await cache_only.set_token_balance(user_id, CachedTokenBalance(20, 80))

        result = await cache_only.reset_monthly_tokens(user_id, SubscriptionTier.GIFT)

        assert result.new_balance == 100
        assert await user_cache.get_token_balance(user_id) == CachedTokenBalance(100, 80)

    async def test_checks_and_estimates(self, cache_only):
        user_id = uuid4()
        await cache_only.set_token_balance(user_id, CachedTokenBalance(27, 0))

        assert await cache_only.check_balance(user_id, OperationType.IMAGE_GENERATION)
        assert await cache_only.estimate_operations(user_id, OperationType.IMAGE_GENERATION) == 2
        assert await cache_only.estimate_operations(user_id, OperationType.PURCHASE) == 0
        check = await cache_only.can_afford_operation(user_id, OperationType.SORA_IMAGE)
        assert check.can_afford and check.deficit is None

    async def test_observers_notified(self, user_cache):
        observer = MagicMock()
        observer.on_balance_changed = AsyncMock()
        billing = TokenBilling(user_cache, balance_observers=[observer])
        user_id = uuid4()
        await billing.set_token_balance(user_id, CachedTokenBalance(100, 0))

        result = await billing.deduct_tokens(user_id, OperationType.CHATGPT_MESSAGE)

        observer.on_balance_changed.assert_awaited_once_with(result)


class TestWriteThrough:
    """With a TokenService every mutation lands in the ledger."""

    async def test_deduct_writes_ledger(
        self, write_through, make_user, load_user, session_factory, user_cache
    ):
        user = await make_user(tokens_balance=100)
        await write_through.set_token_balance(user.id, CachedTokenBalance(100, 0))

        result = await write_through.deduct_tokens(user.id, OperationType.CHATGPT_MESSAGE)

        assert result.success
        assert result.new_balance == 95
        assert (await load_user(user.id)).tokens_balance == 95
        assert await user_cache.get_token_balance(user.id) == CachedTokenBalance(95, 5)
        async with session_factory() as session:
            amounts = (
                await session.scalars(
                    select(TokenOperation.tokens_amount).where(TokenOperation.user_id == user.id)
                )
            ).all()
        assert amounts == [-5]

    async def test_cache_miss_loads_from_store(self, write_through, make_user, user_cache):
        user = await make_user(tokens_balance=30, tokens_spent=70)

        balance = await write_through.get_balance(user.id)

        assert balance == CachedTokenBalance(30, 70)
        assert await user_cache.get_token_balance(user.id) == balance

    async def test_reset_monthly_through_ledger(self, write_through, make_user, load_user):
        user = await make_user(tokens_balance=12, tokens_spent=88)

        result = await write_through.reset_monthly_tokens(user.id, SubscriptionTier.GIFT)

        assert result.success
        stored = await load_user(user.id)
        assert stored.tokens_balance == 100
        assert stored.tokens_spent == 88

    async def test_add_tokens_through_ledger(self, write_through, make_user, load_user):
        user = await make_user(tokens_balance=0)

        result = await write_through.add_tokens(user.id, 2000)

        assert result.success
        assert (await load_user(user.id)).tokens_balance == 2000
