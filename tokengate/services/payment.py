"""
Payment Service - Idempotent settlement of payment provider events.

The payment row, keyed by the provider's external id, is the only
idempotency guard. It is locked (SELECT FOR UPDATE) for the whole
settlement, so concurrent duplicate events serialize and the second one
observes the terminal status written by the first.

Status transitions are monotonic:
    pending -> succeeded | canceled | failed
    succeeded -> refunded
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from tokengate.config import SUBSCRIPTION_DURATION_DAYS, TIER_CONFIGS, TierConfig
from tokengate.db.models import Payment, SubscriptionTierConfig, utc_now
from tokengate.db.session import SessionFactory, transaction
from tokengate.exceptions import (
    InvalidStatusTransitionError,
    PaymentNotFoundError,
    TierConfigNotFoundError,
    TokenGateError,
)
from tokengate.models.api import (
    TERMINAL_PAYMENT_STATUSES,
    OperationType,
    PaymentStatus,
    SubscriptionTier,
    WebhookPayload,
)
from tokengate.models.domain import (
    PaymentProcessingResult,
    ProcessPaymentOptions,
    TokenCreditOptions,
    TokenDebitOptions,
    TokenOperationResult,
)
from tokengate.observability.alerts import AlertManager
from tokengate.observability.metrics import metrics
from tokengate.observability.tracing import trace_operation
from tokengate.services.subscription import SubscriptionService
from tokengate.services.token_service import TokenService

logger = get_logger(__name__)


class PaymentService:
    """Settles payments, granting tokens and subscriptions exactly once."""

    def __init__(
        self,
        session_factory: SessionFactory,
        token_service: TokenService,
        subscription_service: SubscriptionService,
        alerts: AlertManager | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_factory = session_factory
        self.token_service = token_service
        self.subscription_service = subscription_service
        self.alerts = alerts
        self.clock = clock

    # ========================================================================
    # Settlement
    # ========================================================================

    async def process_successful_payment(
        self, options: ProcessPaymentOptions
    ) -> PaymentProcessingResult:
        """
        Mark a payment succeeded and grant what it bought.

        A payment already `succeeded` is re-acknowledged with
        `already_processed=True` and nothing is credited. For a paid tier the
        subscription is activated and the tier's monthly allocation credited
        in the same transaction as the status change.
        """
        now = self.clock()
        credit: TokenOperationResult | None = None
        granted_tier: SubscriptionTier | None = None
        tokens_granted = 0
        subscription_activated = False

        with trace_operation("payment_succeeded", payment_id=options.payment_id):
            try:
                async with transaction(self.session_factory) as session:
                    payment = await self._lock_payment(session, options.payment_id)

                    if payment.status == PaymentStatus.SUCCEEDED:
                        logger.info(
                            "payment_already_processed",
                            payment_id=options.payment_id,
                            user_id=str(payment.user_id),
                        )
                        metrics.record_payment(PaymentStatus.SUCCEEDED.value, "already_processed")
                        return PaymentProcessingResult(success=True, already_processed=True)

                    if payment.status in TERMINAL_PAYMENT_STATUSES:
                        raise InvalidStatusTransitionError(
                            payment.id, payment.status.value, PaymentStatus.SUCCEEDED.value
                        )

                    if payment.user_id != options.user_id:
                        logger.warning(
                            "payment_user_mismatch",
                            payment_id=options.payment_id,
                            payment_user_id=str(payment.user_id),
                            event_user_id=str(options.user_id),
                        )

                    payment.status = PaymentStatus.SUCCEEDED
                    payment.confirmed_at = now
                    if options.metadata:
                        payment.metadata_ = {**(payment.metadata_ or {}), **options.metadata}

                    tier = payment.subscription_tier or options.subscription_tier
                    if tier is not None and tier != SubscriptionTier.GIFT:
                        tier_config = await self._get_tier_config(session, tier)

                        activation = await self.subscription_service.activate_subscription(
                            payment.user_id,
                            tier,
                            duration_days=SUBSCRIPTION_DURATION_DAYS,
                            auto_renew=True,
                            price_rubles=options.amount,
                            payment_method=payment.provider.value,
                            metadata={
                                "payment_id": str(payment.id),
                                "external_id": payment.external_id,
                            },
                            session=session,
                        )
                        if not activation.success:
                            raise TokenGateError(
                                activation.error or "Subscription activation failed"
                            )
                        subscription_activated = True

                        credit = await self.token_service.credit(
                            payment.user_id,
                            TokenCreditOptions(
                                operation_type=OperationType.PURCHASE,
                                amount=tier_config.monthly_tokens,
                                metadata={
                                    "payment_id": payment.external_id,
                                    "subscription_tier": tier.value,
                                    "history_id": str(activation.history_id),
                                },
                            ),
                            session=session,
                        )
                        if not credit.success:
                            raise TokenGateError(f"Token credit failed: {credit.error}")
                        tokens_granted = tier_config.monthly_tokens
                        granted_tier = tier
            except (TokenGateError, SQLAlchemyError) as e:
                return await self._failed(
                    "process_successful_payment", PaymentStatus.SUCCEEDED, options.payment_id, e
                )

        if credit is not None and granted_tier is not None:
            await self.token_service.notify(credit)
            metrics.record_tokens_granted(granted_tier.value, tokens_granted)

        metrics.record_payment(PaymentStatus.SUCCEEDED.value, "processed")
        logger.info(
            "payment_succeeded",
            payment_id=options.payment_id,
            user_id=str(options.user_id),
            tokens_granted=tokens_granted,
            subscription_activated=subscription_activated,
            new_balance=credit.new_balance if credit else None,
        )
        return PaymentProcessingResult(
            success=True,
            tokens_granted=tokens_granted,
            subscription_activated=subscription_activated,
        )

    async def process_failed_payment(
        self, payment_id: str, reason: str | None = None
    ) -> PaymentProcessingResult:
        """Mark a pending payment failed; terminal payments are left as they are."""
        return await self._close_pending(payment_id, PaymentStatus.FAILED, reason)

    async def process_canceled_payment(
        self, payment_id: str, reason: str | None = None
    ) -> PaymentProcessingResult:
        """Mark a pending payment canceled; terminal payments are left as they are."""
        return await self._close_pending(payment_id, PaymentStatus.CANCELED, reason)

    async def process_refund(self, payment_id: str, refund_amount: int) -> PaymentProcessingResult:
        """
        Reverse a succeeded payment.

        For a paid tier the monthly allocation is debited with overdraft
        allowed, so the balance may go negative, and the subscription is
        canceled immediately.
        """
        debit: TokenOperationResult | None = None

        with trace_operation("payment_refund", payment_id=payment_id):
            try:
                async with transaction(self.session_factory) as session:
                    payment = await self._lock_payment(session, payment_id)

                    if payment.status == PaymentStatus.REFUNDED:
                        logger.info("refund_already_processed", payment_id=payment_id)
                        return PaymentProcessingResult(success=True, already_processed=True)

                    if payment.status != PaymentStatus.SUCCEEDED:
                        raise InvalidStatusTransitionError(
                            payment.id, payment.status.value, PaymentStatus.REFUNDED.value
                        )

                    payment.status = PaymentStatus.REFUNDED
                    payment.metadata_ = {
                        **(payment.metadata_ or {}),
                        "refund_amount": refund_amount,
                    }

                    tier = payment.subscription_tier
                    if tier is not None and tier != SubscriptionTier.GIFT:
                        tier_config = await self._get_tier_config(session, tier)

                        debit = await self.token_service.debit(
                            payment.user_id,
                            TokenDebitOptions(
                                operation_type=OperationType.REFUND,
                                amount=tier_config.monthly_tokens,
                                allow_overdraft=True,
                                metadata={
                                    "payment_id": payment.external_id,
                                    "refund_amount": refund_amount,
                                },
                            ),
                            session=session,
                        )
                        if not debit.success:
                            raise TokenGateError(f"Token debit failed: {debit.error}")

                        cancellation = await self.subscription_service.cancel_subscription(
                            payment.user_id,
                            reason="Payment refunded",
                            immediate=True,
                            session=session,
                        )
                        if not cancellation.success:
                            raise TokenGateError(
                                cancellation.error or "Subscription cancellation failed"
                            )
            except (TokenGateError, SQLAlchemyError) as e:
                return await self._failed("process_refund", PaymentStatus.REFUNDED, payment_id, e)

        if debit is not None:
            await self.token_service.notify(debit)

        metrics.record_payment(PaymentStatus.REFUNDED.value, "processed")
        logger.info(
            "payment_refunded",
            payment_id=payment_id,
            refund_amount=refund_amount,
            new_balance=debit.new_balance if debit else None,
        )
        return PaymentProcessingResult(success=True)

    # ========================================================================
    # Webhook dispatch
    # ========================================================================

    async def handle_webhook(self, payload: WebhookPayload) -> PaymentProcessingResult | None:
        """
        Route an authenticated provider notification.

        Returns None for events that need no processing.
        """
        event = payload.event
        obj = payload.object
        logger.info("webhook_received", webhook_event=event, object_id=obj.id)

        if event == "payment.succeeded":
            raw_user_id = obj.metadata.user_id
            if not raw_user_id:
                logger.warning("payment_metadata_missing_user_id", payment_id=obj.id)
                return PaymentProcessingResult(
                    success=False, error="Payment metadata missing userId"
                )
            try:
                user_id = UUID(raw_user_id)
            except ValueError:
                logger.warning("payment_metadata_invalid_user_id", payment_id=obj.id)
                return PaymentProcessingResult(success=False, error="Invalid userId in metadata")

            return await self.process_successful_payment(
                ProcessPaymentOptions(
                    payment_id=obj.id,
                    user_id=user_id,
                    status=PaymentStatus.SUCCEEDED,
                    amount=obj.amount_value,
                    subscription_tier=obj.metadata.subscription_tier,
                    metadata={"webhook_processed_at": self.clock().isoformat()},
                )
            )

        if event == "payment.canceled":
            return await self.process_canceled_payment(obj.id, obj.cancellation_reason)

        if event == "refund.succeeded":
            return await self.process_refund(obj.payment_id or obj.id, obj.amount_value)

        if event == "payment.waiting_for_capture":
            logger.info("webhook_ignored", webhook_event=event, object_id=obj.id)
            return None

        logger.warning("unknown_webhook_event", webhook_event=event, object_id=obj.id)
        return None

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _close_pending(
        self, payment_id: str, status: PaymentStatus, reason: str | None
    ) -> PaymentProcessingResult:
        now = self.clock()
        try:
            async with transaction(self.session_factory) as session:
                payment = await self._lock_payment(session, payment_id)

                if payment.status in TERMINAL_PAYMENT_STATUSES:
                    logger.info(
                        "payment_already_terminal",
                        payment_id=payment_id,
                        current=payment.status.value,
                        requested=status.value,
                    )
                    return PaymentProcessingResult(success=True, already_processed=True)

                payment.status = status
                payment.failure_reason = reason
                if status == PaymentStatus.FAILED:
                    payment.failed_at = now
                else:
                    payment.metadata_ = {
                        **(payment.metadata_ or {}),
                        "cancellation_reason": reason,
                    }
        except (TokenGateError, SQLAlchemyError) as e:
            return await self._failed(f"process_{status.value}_payment", status, payment_id, e)

        metrics.record_payment(status.value, "processed")
        logger.info(f"payment_{status.value}", payment_id=payment_id, reason=reason)
        return PaymentProcessingResult(success=True)

    async def _lock_payment(self, session: AsyncSession, external_id: str) -> Payment:
        """Lock payment row for update (SELECT FOR UPDATE)."""
        stmt = select(Payment).where(Payment.external_id == external_id).with_for_update()
        payment = (await session.execute(stmt)).scalar_one_or_none()
        if payment is None:
            raise PaymentNotFoundError(external_id)
        return payment

    async def _get_tier_config(self, session: AsyncSession, tier: SubscriptionTier) -> TierConfig:
        """Tier config from the database, falling back to the static table."""
        stmt = select(SubscriptionTierConfig).where(
            SubscriptionTierConfig.tier == tier, SubscriptionTierConfig.is_active.is_(True)
        )
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is not None:
            return TierConfig(
                monthly_tokens=row.monthly_tokens,
                price_rubles=row.price_rubles,
                requests_per_minute=row.requests_per_minute,
                burst_per_second=row.burst_per_second,
            )
        if tier in TIER_CONFIGS:
            return TIER_CONFIGS[tier]
        raise TierConfigNotFoundError(tier.value)

    async def _failed(
        self, context: str, status: PaymentStatus, payment_id: str, error: Exception
    ) -> PaymentProcessingResult:
        logger.error(
            "payment_processing_failed", context=context, payment_id=payment_id, error=str(error)
        )
        metrics.record_payment(status.value, "failed")
        metrics.record_error(type(error).__name__, context)
        if self.alerts is not None:
            await self.alerts.alert_payment_failure(payment_id, error, {"context": context})
        return PaymentProcessingResult(success=False, error=str(error))
