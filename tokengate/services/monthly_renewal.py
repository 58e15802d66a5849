"""
Monthly Renewal Service - Periodic tier allocation grants.

A user is due once RENEWAL_PERIOD_DAYS have passed since the last renewal
(or immediately if never renewed). Paid tiers must have an unexpired
subscription. Eligibility is re-checked under the row lock, so concurrent
runs cannot renew the same user twice.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from tokengate.config import RENEWAL_PERIOD_DAYS, TIER_CONFIGS
from tokengate.db.models import User, utc_now
from tokengate.db.session import SessionFactory, transaction
from tokengate.exceptions import TokenGateError
from tokengate.models.api import OperationType, SubscriptionTier
from tokengate.models.domain import (
    BatchRenewalResult,
    MonthlyRenewalResult,
    RenewalEligibility,
    TokenCreditOptions,
)
from tokengate.services.token_service import TokenService

logger = get_logger(__name__)

# Daily at 02:00 UTC
CRON_EXPRESSION = "0 2 * * *"


class MonthlyRenewalService:
    """Grants each tier's monthly allocation through the TokenService."""

    def __init__(
        self,
        session_factory: SessionFactory,
        token_service: TokenService,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.token_service = token_service
        self.clock = clock

    def get_cron_expression(self) -> str:
        return CRON_EXPRESSION

    def _eligibility(self, user: User, now: datetime) -> RenewalEligibility:
        tier = SubscriptionTier(user.tier)

        if tier != SubscriptionTier.GIFT:
            if user.subscription_expires_at and user.subscription_expires_at < now:
                return RenewalEligibility(
                    user_id=user.id, eligible=False, reason="Subscription expired"
                )

        if user.last_renewal_at is None:
            return RenewalEligibility(user_id=user.id, eligible=True)

        period = RENEWAL_PERIOD_DAYS[tier]
        days_since = (now - user.last_renewal_at).days
        if days_since >= period:
            return RenewalEligibility(user_id=user.id, eligible=True)

        days_until = period - days_since
        return RenewalEligibility(
            user_id=user.id,
            eligible=False,
            reason=f"Next renewal in {days_until} days",
            next_renewal_date=user.last_renewal_at + timedelta(days=period),
            days_until_renewal=days_until,
        )

    async def check_eligibility(self, user_id: UUID) -> RenewalEligibility:
        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                return RenewalEligibility(user_id=user_id, eligible=False, reason="User not found")
            return self._eligibility(user, self.clock())

    async def renew_user(self, user_id: UUID) -> MonthlyRenewalResult:
        """
        Credit the tier allocation and stamp `last_renewal_at` in one transaction.

        The ledger entry is tagged `monthly_reset` with the tier.
        """
        now = self.clock()
        try:
            async with transaction(self.session_factory) as session:
                stmt = select(User).where(User.id == user_id).with_for_update()
                user = (await session.execute(stmt)).scalar_one_or_none()
                if user is None:
                    return self._error_result(user_id, "User not found", now)

                tier = SubscriptionTier(user.tier)
                previous_balance = user.tokens_balance
                eligibility = self._eligibility(user, now)
                if not eligibility.eligible:
                    return MonthlyRenewalResult(
                        user_id=user_id,
                        tier=tier,
                        tokens_added=0,
                        new_balance=previous_balance,
                        previous_balance=previous_balance,
                        renewal_date=now,
                        success=False,
                        error=eligibility.reason or "Not eligible for renewal",
                    )

                tokens_to_add = TIER_CONFIGS[tier].monthly_tokens
                credit = await self.token_service.credit(
                    user_id,
                    TokenCreditOptions(
                        operation_type=OperationType.MONTHLY_RESET,
                        amount=tokens_to_add,
                        metadata={"tier": tier.value, "renewal_type": "monthly"},
                    ),
                    session=session,
                )
                if not credit.success:
                    raise TokenGateError(credit.error or "Renewal credit failed")

                user.last_renewal_at = now
        except (TokenGateError, SQLAlchemyError) as e:
            logger.error("monthly_renewal_failed", user_id=str(user_id), error=str(e))
            return self._error_result(user_id, str(e), now)

        await self.token_service.notify(credit)
        logger.info(
            "monthly_renewal_completed",
            user_id=str(user_id),
            tier=tier.value,
            tokens_added=tokens_to_add,
            new_balance=credit.new_balance,
        )
        return MonthlyRenewalResult(
            user_id=user_id,
            tier=tier,
            tokens_added=tokens_to_add,
            new_balance=credit.new_balance,
            previous_balance=previous_balance,
            renewal_date=now,
            success=True,
        )

    async def renew_all_eligible(
        self,
        tier: SubscriptionTier | None = None,
        limit: int | None = None,
        dry_run: bool = False,
        continue_on_error: bool = False,
    ) -> BatchRenewalResult:
        """
        Renew every eligible user, optionally filtered by tier.

        Ineligible users are skipped. Without `continue_on_error` the batch
        stops at the first failed renewal.
        """
        result = BatchRenewalResult()
        now = self.clock()

        async with self.session_factory() as session:
            stmt = select(User).order_by(User.created_at)
            if tier is not None:
                stmt = stmt.where(User.tier == tier)
            if limit is not None:
                stmt = stmt.limit(limit)
            users = list((await session.execute(stmt)).scalars())
            candidates = [(user, self._eligibility(user, now)) for user in users]

        result.total_processed = len(users)

        for user, eligibility in candidates:
            if not eligibility.eligible:
                continue

            if dry_run:
                user_tier = SubscriptionTier(user.tier)
                tokens_to_add = TIER_CONFIGS[user_tier].monthly_tokens
                result.renewals.append(
                    MonthlyRenewalResult(
                        user_id=user.id,
                        tier=user_tier,
                        tokens_added=tokens_to_add,
                        new_balance=user.tokens_balance + tokens_to_add,
                        previous_balance=user.tokens_balance,
                        renewal_date=now,
                        success=True,
                    )
                )
                result.successful += 1
                continue

            renewal = await self.renew_user(user.id)
            result.renewals.append(renewal)
            if renewal.success:
                result.successful += 1
                continue

            result.failed += 1
            result.errors.append((str(user.id), renewal.error or "Unknown error"))
            if not continue_on_error:
                break

        logger.info(
            "monthly_renewal_batch_completed",
            tier=tier.value if tier else None,
            dry_run=dry_run,
            total=result.total_processed,
            successful=result.successful,
            failed=result.failed,
        )
        return result

    async def get_users_due_for_renewal(self, tier: SubscriptionTier | None = None) -> list[UUID]:
        now = self.clock()
        async with self.session_factory() as session:
            stmt = select(User)
            if tier is not None:
                stmt = stmt.where(User.tier == tier)
            users = (await session.execute(stmt)).scalars()
            return [user.id for user in users if self._eligibility(user, now).eligible]

    def _error_result(self, user_id: UUID, error: str, now: datetime) -> MonthlyRenewalResult:
        return MonthlyRenewalResult(
            user_id=user_id,
            tier=SubscriptionTier.GIFT,
            tokens_added=0,
            new_balance=0,
            previous_balance=0,
            renewal_date=now,
            success=False,
            error=error,
        )
