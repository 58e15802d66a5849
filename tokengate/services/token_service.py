"""
Token Service - Atomic balance mutations paired with ledger entries.

Every mutation follows the same pattern:
1. Validate the amount (no storage access on failure)
2. Lock the user row (SELECT FOR UPDATE)
3. Check business rules against the locked balance
4. Write the user row and exactly one ledger row
5. Commit, then notify observers

Business-rule and storage failures never cross this boundary as
exceptions; callers receive `TokenOperationResult(success=False, error=...)`.
"""

import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from tokengate.config import TOKEN_COSTS
from tokengate.db.models import User
from tokengate.db.session import SessionFactory, transaction
from tokengate.exceptions import (
    InsufficientTokensError,
    InvalidAmountError,
    TokenGateError,
    UserNotFoundError,
)
from tokengate.models.api import OperationType, SubscriptionTier
from tokengate.models.domain import (
    AffordabilityCheck,
    TokenBalance,
    TokenCreditOptions,
    TokenDebitOptions,
    TokenOperationMetrics,
    TokenOperationResult,
)
from tokengate.observability.metrics import metrics
from tokengate.observability.tracing import trace_operation
from tokengate.services.token_ledger import TokenLedger

logger = get_logger(__name__)


class BalanceObserver(Protocol):
    """Notified after a committed balance change (e.g. cache invalidation)."""

    async def on_balance_changed(self, result: TokenOperationResult) -> None: ...


class MetricsObserver(Protocol):
    """Receives one event per mutation attempt, successful or not."""

    def record(self, event: TokenOperationMetrics) -> None: ...


def _failure(
    error: str, user_id: UUID | None = None, balance: int = 0, deficit: int | None = None
) -> TokenOperationResult:
    return TokenOperationResult(
        success=False,
        new_balance=balance,
        tokens_spent=0,
        user_id=user_id,
        error=error,
        deficit=deficit,
    )


class TokenService:
    """
    Token accounting over the relational store.

    Mutations open their own transaction, or join the caller's when a
    `session` is passed. In the latter case the caller owns the commit and
    must call `notify(result)` once it has committed.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        balance_observers: Iterable[BalanceObserver] = (),
        metrics_observers: Iterable[MetricsObserver] = (),
    ) -> None:
        self.session_factory = session_factory
        self.balance_observers = list(balance_observers)
        self.metrics_observers = list(metrics_observers)

    # ========================================================================
    # Mutations
    # ========================================================================

    async def debit(
        self,
        user_id: UUID,
        options: TokenDebitOptions,
        session: AsyncSession | None = None,
    ) -> TokenOperationResult:
        """
        Remove tokens from a balance.

        Fails with the exact deficit when the balance is short and
        overdraft is not allowed; the balance is left untouched.
        """
        if options.amount <= 0:
            return self._reject(
                "debit", user_id, options.amount, InvalidAmountError("debit", options.amount)
            )

        async def apply(tx: AsyncSession) -> TokenOperationResult:
            user = await self._lock_user(tx, user_id)
            balance_before = user.tokens_balance
            if not options.allow_overdraft and balance_before < options.amount:
                raise InsufficientTokensError(balance_before, options.amount)

            new_balance = balance_before - options.amount
            new_spent = user.tokens_spent + options.amount
            user.tokens_balance = new_balance
            user.tokens_spent = new_spent

            entry = await TokenLedger(tx).create_entry(
                user_id=user.id,
                operation_type=options.operation_type,
                tokens_amount=-options.amount,
                balance_before=balance_before,
                balance_after=new_balance,
                metadata=options.metadata,
            )
            return TokenOperationResult(
                success=True,
                new_balance=new_balance,
                tokens_spent=new_spent,
                user_id=user.id,
                ledger_entry_id=entry.id,
            )

        return await self._run("debit", user_id, options.amount, apply, session)

    async def credit(
        self,
        user_id: UUID,
        options: TokenCreditOptions,
        session: AsyncSession | None = None,
    ) -> TokenOperationResult:
        """Add tokens to a balance. `tokens_spent` is not changed."""
        if options.amount <= 0:
            return self._reject(
                "credit", user_id, options.amount, InvalidAmountError("credit", options.amount)
            )

        async def apply(tx: AsyncSession) -> TokenOperationResult:
            user = await self._lock_user(tx, user_id)
            balance_before = user.tokens_balance
            new_balance = balance_before + options.amount
            user.tokens_balance = new_balance

            entry = await TokenLedger(tx).create_entry(
                user_id=user.id,
                operation_type=options.operation_type,
                tokens_amount=options.amount,
                balance_before=balance_before,
                balance_after=new_balance,
                metadata=options.metadata,
            )
            return TokenOperationResult(
                success=True,
                new_balance=new_balance,
                tokens_spent=user.tokens_spent,
                user_id=user.id,
                ledger_entry_id=entry.id,
            )

        return await self._run("credit", user_id, options.amount, apply, session)

    async def reset_balance(
        self,
        user_id: UUID,
        new_balance: int,
        operation_type: OperationType = OperationType.MONTHLY_RESET,
        metadata: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> TokenOperationResult:
        """Set a balance outright; the ledger records the signed difference."""
        if new_balance < 0:
            return self._reject(
                "reset_balance", user_id, new_balance, TokenGateError("Balance cannot be negative")
            )

        async def apply(tx: AsyncSession) -> TokenOperationResult:
            user = await self._lock_user(tx, user_id)
            balance_before = user.tokens_balance
            user.tokens_balance = new_balance

            entry = await TokenLedger(tx).create_entry(
                user_id=user.id,
                operation_type=operation_type,
                tokens_amount=new_balance - balance_before,
                balance_before=balance_before,
                balance_after=new_balance,
                metadata=metadata,
            )
            return TokenOperationResult(
                success=True,
                new_balance=new_balance,
                tokens_spent=user.tokens_spent,
                user_id=user.id,
                ledger_entry_id=entry.id,
            )

        return await self._run("reset_balance", user_id, new_balance, apply, session)

    async def refund(
        self,
        user_id: UUID,
        amount: int,
        metadata: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> TokenOperationResult:
        """Give tokens back to a user (credit tagged `refund`)."""
        return await self.credit(
            user_id,
            TokenCreditOptions(
                operation_type=OperationType.REFUND, amount=amount, metadata=metadata
            ),
            session=session,
        )

    async def charge_for_operation(
        self,
        user_id: UUID,
        operation_type: OperationType,
        metadata: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> TokenOperationResult:
        """Debit the table cost of an operation, overdraft disallowed."""
        cost = self.get_operation_cost(operation_type)
        if cost == 0:
            return _failure("Operation type does not have a cost", user_id=user_id)

        return await self.debit(
            user_id,
            TokenDebitOptions(
                operation_type=operation_type,
                amount=cost,
                allow_overdraft=False,
                metadata=metadata,
            ),
            session=session,
        )

    # ========================================================================
    # Reads
    # ========================================================================

    def get_operation_cost(self, operation_type: OperationType) -> int:
        return TOKEN_COSTS[operation_type]

    async def get_balance(self, user_id: UUID) -> TokenBalance | None:
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                return None
            return TokenBalance(
                user_id=user.id,
                tokens_balance=user.tokens_balance,
                tokens_spent=user.tokens_spent,
                tier=SubscriptionTier(user.tier),
                last_renewal_at=user.last_renewal_at,
            )

    async def can_afford(self, user_id: UUID, operation_type: OperationType) -> AffordabilityCheck:
        """Read-only affordability check; an unknown user cannot afford anything."""
        cost = self.get_operation_cost(operation_type)
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

    def get_ledger(self, session: AsyncSession) -> TokenLedger:
        """Ledger bound to a session, for history and statistics queries."""
        return TokenLedger(session)

    # ========================================================================
    # Observers
    # ========================================================================

    async def notify(self, result: TokenOperationResult) -> None:
        """Run balance observers for a committed result. Observer errors are logged only."""
        if not result.success:
            return
        for observer in self.balance_observers:
            try:
                await observer.on_balance_changed(result)
            except Exception as e:
                logger.warning(
                    "balance_observer_failed",
                    observer=type(observer).__name__,
                    user_id=str(result.user_id),
                    error=str(e),
                )

    def _emit_metrics(self, event: TokenOperationMetrics) -> None:
        for observer in self.metrics_observers:
            try:
                observer.record(event)
            except Exception as e:
                logger.warning(
                    "metrics_observer_failed",
                    observer=type(observer).__name__,
                    error=str(e),
                )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _lock_user(self, session: AsyncSession, user_id: UUID) -> User:
        """Lock user row for update (SELECT FOR UPDATE)."""
        stmt = select(User).where(User.id == user_id).with_for_update()
        user = (await session.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    def _reject(
        self, operation: str, user_id: UUID, amount: int, error: TokenGateError
    ) -> TokenOperationResult:
        """Fail validation without touching storage."""
        logger.warning(
            "token_operation_rejected",
            operation=operation,
            user_id=str(user_id),
            amount=amount,
            error=str(error),
        )
        self._emit_metrics(
            TokenOperationMetrics(
                operation=operation,
                user_id=user_id,
                amount=amount,
                success=False,
                duration=0.0,
                error=str(error),
            )
        )
        return _failure(str(error), user_id=user_id)

    async def _run(
        self,
        operation: str,
        user_id: UUID,
        amount: int,
        apply: Callable[[AsyncSession], Awaitable[TokenOperationResult]],
        session: AsyncSession | None,
    ) -> TokenOperationResult:
        started = time.perf_counter()
        error: str | None = None

        with trace_operation(f"token_{operation}", user_id=user_id, amount=amount):
            try:
                if session is None:
                    async with transaction(self.session_factory) as tx:
                        result = await apply(tx)
                else:
                    result = await apply(session)
            except InsufficientTokensError as e:
                error = str(e)
                result = _failure(error, user_id=user_id, balance=e.balance, deficit=e.deficit)
                logger.info(
                    "token_operation_declined",
                    operation=operation,
                    user_id=str(user_id),
                    amount=amount,
                    deficit=e.deficit,
                )
            except TokenGateError as e:
                error = str(e)
                result = _failure(error, user_id=user_id)
                logger.warning(
                    "token_operation_failed",
                    operation=operation,
                    user_id=str(user_id),
                    amount=amount,
                    error=error,
                )
            except (SQLAlchemyError, OSError) as e:
                error = str(e)
                result = _failure(error, user_id=user_id)
                logger.error(
                    "token_transaction_failed",
                    operation=operation,
                    user_id=str(user_id),
                    amount=amount,
                    error=error,
                )
                metrics.record_error("token_transaction_failed", operation)

        self._emit_metrics(
            TokenOperationMetrics(
                operation=operation,
                user_id=user_id,
                amount=amount,
                success=result.success,
                duration=time.perf_counter() - started,
                error=error,
            )
        )

        if result.success:
            logger.info(
                "token_operation_committed" if session is None else "token_operation_staged",
                operation=operation,
                user_id=str(user_id),
                amount=amount,
                new_balance=result.new_balance,
                ledger_entry_id=str(result.ledger_entry_id),
            )
            if session is None:
                await self.notify(result)

        return result
