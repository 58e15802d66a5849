"""
Token Billing - Cache-backed fast path for balance checks and charges.

Reads come from the per-user cached balance view. When a TokenService is
configured, mutations are written through to the ledger and the cache is
refreshed from the authoritative result; without one, only the cached
view changes.
"""

from collections.abc import Iterable
from uuid import UUID

from structlog import get_logger

from tokengate.config import TIER_CONFIGS, TOKEN_COSTS
from tokengate.models.api import OperationType, SubscriptionTier
from tokengate.models.domain import (
    AffordabilityCheck,
    CachedTokenBalance,
    TokenCreditOptions,
    TokenOperationResult,
)
from tokengate.services.token_service import BalanceObserver, TokenService
from tokengate.services.user_cache import UserCache

logger = get_logger(__name__)


class TokenBilling:
    """Balance checks and charges served from the user cache."""

    def __init__(
        self,
        user_cache: UserCache,
        token_service: TokenService | None = None,
        balance_observers: Iterable[BalanceObserver] = (),
    ) -> None:
        self.user_cache = user_cache
        self.token_service = token_service
        self.balance_observers = list(balance_observers)

    # ========================================================================
    # Static lookups
    # ========================================================================

    def get_operation_cost(self, operation: OperationType) -> int:
        return TOKEN_COSTS[operation]

    def get_tier_allocation(self, tier: SubscriptionTier) -> int:
        return TIER_CONFIGS[tier].monthly_tokens

    def get_tier_price(self, tier: SubscriptionTier) -> int | None:
        return TIER_CONFIGS[tier].price_rubles

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_balance(self, user_id: UUID) -> CachedTokenBalance | None:
        """Cached balance, loaded from the authoritative store on a miss when possible."""
        cached = await self.user_cache.get_token_balance(user_id)
        if cached is not None or self.token_service is None:
            return cached

        balance = await self.token_service.get_balance(user_id)
        if balance is None:
            return None
        view = CachedTokenBalance(
            tokens_balance=balance.tokens_balance, tokens_spent=balance.tokens_spent
        )
        await self.user_cache.set_token_balance(user_id, view)
        return view

    async def check_balance(self, user_id: UUID, operation: OperationType) -> bool:
        balance = await self.get_balance(user_id)
        if balance is None:
            return False
        return balance.tokens_balance >= self.get_operation_cost(operation)

    async def can_afford_operation(
        self, user_id: UUID, operation: OperationType
    ) -> AffordabilityCheck:
        cost = self.get_operation_cost(operation)
        balance = await self.get_balance(user_id)
        if balance is None:
            return AffordabilityCheck(can_afford=False, balance=0, cost=cost, deficit=cost)

        can_afford = balance.tokens_balance >= cost
        return AffordabilityCheck(
            can_afford=can_afford,
            balance=balance.tokens_balance,
            cost=cost,
            deficit=None if can_afford else cost - balance.tokens_balance,
        )

    async def estimate_operations(self, user_id: UUID, operation: OperationType) -> int:
        """How many operations of this type the balance covers."""
        cost = self.get_operation_cost(operation)
        balance = await self.get_balance(user_id)
        if balance is None or cost == 0:
            return 0
        return max(0, balance.tokens_balance // cost)

    # ========================================================================
    # Mutations
    # ========================================================================

    async def set_token_balance(self, user_id: UUID, balance: CachedTokenBalance) -> None:
        """Seed the cached view (e.g. right after loading the user)."""
        await self.user_cache.set_token_balance(user_id, balance)

    async def deduct_tokens(self, user_id: UUID, operation: OperationType) -> TokenOperationResult:
        cost = self.get_operation_cost(operation)
        balance = await self.get_balance(user_id)

        if balance is None:
            return TokenOperationResult(
                success=False,
                new_balance=0,
                tokens_spent=0,
                user_id=user_id,
                error="User balance not found. Please try again.",
            )

        if balance.tokens_balance < cost:
            return TokenOperationResult(
                success=False,
                new_balance=balance.tokens_balance,
                tokens_spent=balance.tokens_spent,
                user_id=user_id,
                error=(
                    f"Insufficient tokens. You need {cost} tokens "
                    f"but have {balance.tokens_balance}."
                ),
                deficit=cost - balance.tokens_balance,
            )

        if self.token_service is not None:
            result = await self.token_service.charge_for_operation(user_id, operation)
        else:
            result = TokenOperationResult(
                success=True,
                new_balance=balance.tokens_balance - cost,
                tokens_spent=balance.tokens_spent + cost,
                user_id=user_id,
            )

        return await self._apply(user_id, result)

    async def add_tokens(
        self,
        user_id: UUID,
        amount: int,
        operation_type: OperationType = OperationType.PURCHASE,
    ) -> TokenOperationResult:
        if self.token_service is not None:
            result = await self.token_service.credit(
                user_id, TokenCreditOptions(operation_type=operation_type, amount=amount)
            )
            return await self._apply(user_id, result)

        balance = await self.get_balance(user_id)
        if balance is None:
            return TokenOperationResult(
                success=False,
                new_balance=0,
                tokens_spent=0,
                user_id=user_id,
                error="User balance not found.",
            )
        return await self._apply(
            user_id,
            TokenOperationResult(
                success=True,
                new_balance=balance.tokens_balance + amount,
                tokens_spent=balance.tokens_spent,
                user_id=user_id,
            ),
        )

    async def reset_monthly_tokens(
        self, user_id: UUID, tier: SubscriptionTier
    ) -> TokenOperationResult:
        """Set the balance to the tier allocation; `tokens_spent` is preserved."""
        allocation = self.get_tier_allocation(tier)

        if self.token_service is not None:
            result = await self.token_service.reset_balance(
                user_id,
                allocation,
                OperationType.MONTHLY_RESET,
                metadata={"tier": tier.value},
            )
            return await self._apply(user_id, result)

        balance = await self.user_cache.get_token_balance(user_id)
        return await self._apply(
            user_id,
            TokenOperationResult(
                success=True,
                new_balance=allocation,
                tokens_spent=balance.tokens_spent if balance else 0,
                user_id=user_id,
            ),
        )

    async def _apply(self, user_id: UUID, result: TokenOperationResult) -> TokenOperationResult:
        """Refresh the cached view from a successful result and notify observers."""
        if not result.success:
            return result

        await self.user_cache.set_token_balance(
            user_id,
            CachedTokenBalance(tokens_balance=result.new_balance, tokens_spent=result.tokens_spent),
        )
        for observer in self.balance_observers:
            try:
                await observer.on_balance_changed(result)
            except Exception as e:
                logger.warning(
                    "balance_observer_failed",
                    observer=type(observer).__name__,
                    user_id=str(user_id),
                    error=str(e),
                )
        return result
