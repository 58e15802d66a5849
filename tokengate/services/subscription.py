"""
Subscription Service - Tier activation, cancellation and expiry.

Each change updates the user row and the subscription history in one
transaction. Activation and cancellation can join a caller's session so a
payment settles atomically with the subscription it buys.
"""

import math
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from tokengate.config import SUBSCRIPTION_DURATION_DAYS
from tokengate.db.models import SubscriptionHistory, User, utc_now
from tokengate.db.session import SessionFactory, transaction
from tokengate.exceptions import SubscriptionError, TokenGateError, UserNotFoundError
from tokengate.models.api import SubscriptionTier
from tokengate.models.domain import (
    BatchExpirationResult,
    ExpirationCheckResult,
    SubscriptionChangeResult,
    SubscriptionStatus,
)

logger = get_logger(__name__)


class SubscriptionService:
    """Subscription lifecycle over the user row and its history."""

    def __init__(
        self,
        session_factory: SessionFactory,
        grace_period_days: int = 0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.grace_period_days = grace_period_days
        self.clock = clock

    def is_active(self, tier: SubscriptionTier, expires_at: datetime | None, now: datetime) -> bool:
        """Gift never expires; paid tiers are active until expiry plus grace."""
        if tier == SubscriptionTier.GIFT:
            return True
        if expires_at is None:
            return False
        return expires_at + timedelta(days=self.grace_period_days) > now

    def _status(self, user: User, now: datetime) -> SubscriptionStatus:
        tier = SubscriptionTier(user.tier)
        expires_at = user.subscription_expires_at
        days_remaining = None
        if expires_at is not None:
            days_remaining = math.ceil((expires_at - now).total_seconds() / 86400)
        return SubscriptionStatus(
            user_id=user.id,
            tier=tier,
            is_active=self.is_active(tier, expires_at, now),
            expires_at=expires_at,
            auto_renew=user.auto_renew,
            days_remaining=days_remaining,
        )

    async def get_status(self, user_id: UUID) -> SubscriptionStatus:
        """
        Raises:
            UserNotFoundError: User doesn't exist
        """
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFoundError(user_id)
            return self._status(user, self.clock())

    async def activate_subscription(
        self,
        user_id: UUID,
        tier: SubscriptionTier,
        duration_days: int = SUBSCRIPTION_DURATION_DAYS,
        auto_renew: bool = False,
        price_rubles: int | None = None,
        payment_method: str | None = None,
        metadata: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> SubscriptionChangeResult:
        """Set the tier and expiry and open a history row."""
        now = self.clock()

        async def apply(tx: AsyncSession) -> SubscriptionChangeResult:
            user = await self._lock_user(tx, user_id)
            expires_at = now + timedelta(days=duration_days)
            user.tier = tier
            user.subscription_expires_at = expires_at
            user.auto_renew = auto_renew

            history = SubscriptionHistory(
                user_id=user_id,
                tier=tier,
                price_rubles=price_rubles,
                payment_method=payment_method,
                started_at=now,
                expires_at=expires_at,
                auto_renew=auto_renew,
                metadata_=metadata,
            )
            tx.add(history)
            await tx.flush()
            return SubscriptionChangeResult(
                success=True, status=self._status(user, now), history_id=history.id
            )

        result = await self._run("activate", user_id, apply, session)
        if result.success:
            logger.info(
                "subscription_activated",
                user_id=str(user_id),
                tier=tier.value,
                expires_at=result.status.expires_at.isoformat() if result.status else None,
            )
        return result

    async def cancel_subscription(
        self,
        user_id: UUID,
        reason: str | None = None,
        immediate: bool = False,
        metadata: dict[str, Any] | None = None,
        session: AsyncSession | None = None,
    ) -> SubscriptionChangeResult:
        """
        Turn off auto-renew and close the open history row.

        With `immediate` the user drops to Gift and the expiry is cleared;
        otherwise the paid tier runs until its expiry.
        """
        now = self.clock()

        async def apply(tx: AsyncSession) -> SubscriptionChangeResult:
            user = await self._lock_user(tx, user_id)
            user.auto_renew = False
            if immediate:
                user.tier = SubscriptionTier.GIFT
                user.subscription_expires_at = None

            stmt = (
                select(SubscriptionHistory)
                .where(SubscriptionHistory.user_id == user_id)
                .order_by(SubscriptionHistory.created_at.desc())
                .limit(1)
            )
            latest = (await tx.execute(stmt)).scalar_one_or_none()
            if latest is not None and latest.canceled_at is None:
                latest.canceled_at = now
                latest.cancel_reason = reason
                latest.auto_renew = False
                if metadata:
                    latest.metadata_ = {**(latest.metadata_ or {}), **metadata}

            await tx.flush()
            return SubscriptionChangeResult(success=True, status=self._status(user, now))

        result = await self._run("cancel", user_id, apply, session)
        if result.success:
            logger.info(
                "subscription_canceled",
                user_id=str(user_id),
                immediate=immediate,
                reason=reason,
            )
        return result

    async def check_expirations(self, limit: int = 100) -> BatchExpirationResult:
        """Downgrade paid subscriptions whose expiry has passed to Gift."""
        now = self.clock()
        async with self.session_factory() as session:
            stmt = (
                select(User.id)
                .where(
                    User.tier != SubscriptionTier.GIFT,
                    User.subscription_expires_at < now,
                )
                .limit(limit)
            )
            expired_ids = list((await session.execute(stmt)).scalars())

        batch = BatchExpirationResult(total_checked=len(expired_ids))
        for user_id in expired_ids:
            try:
                async with transaction(self.session_factory) as tx:
                    user = await self._lock_user(tx, user_id)
                    previous_tier = SubscriptionTier(user.tier)
                    user.tier = SubscriptionTier.GIFT
                    user.auto_renew = False
            except (TokenGateError, SQLAlchemyError) as e:
                logger.error("subscription_expiry_failed", user_id=str(user_id), error=str(e))
                batch.results.append(
                    ExpirationCheckResult(user_id=user_id, was_expired=False, error=str(e))
                )
                continue

            batch.total_expired += 1
            batch.results.append(
                ExpirationCheckResult(
                    user_id=user_id,
                    was_expired=True,
                    previous_tier=previous_tier,
                    new_tier=SubscriptionTier.GIFT,
                )
            )
            logger.info(
                "subscription_expired", user_id=str(user_id), previous_tier=previous_tier.value
            )
        return batch

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

    async def _run(
        self,
        action: str,
        user_id: UUID,
        apply: Callable[[AsyncSession], Awaitable[SubscriptionChangeResult]],
        session: AsyncSession | None,
    ) -> SubscriptionChangeResult:
        try:
            if session is None:
                async with transaction(self.session_factory) as tx:
                    return await apply(tx)
            return await apply(session)
        except (TokenGateError, SQLAlchemyError) as e:
            error = SubscriptionError(action, str(e))
            logger.error(
                "subscription_change_failed", action=action, user_id=str(user_id), error=str(e)
            )
            return SubscriptionChangeResult(success=False, error=str(error))
