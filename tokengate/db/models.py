"""
Database Models - SQLAlchemy ORM models with strict typing.

The relational store is the only system of record for balances, ledger
rows, payments and generation records.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tokengate.models.api import (
    GenerationStatus,
    OperationType,
    PaymentProvider,
    PaymentStatus,
    SubscriptionTier,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp that always loads as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_column(enum_cls: type[Enum], name: str, length: int = 20) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=length,
        values_callable=lambda x: [e.value for e in x],
    )


class User(Base):
    """
    ORM model for users table.

    Owns the token balance; mutated only by TokenService.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Identity
    telegram_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    username: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Subscription
    tier: Mapped[SubscriptionTier] = mapped_column(
        _enum_column(SubscriptionTier, "subscription_tier"),
        nullable=False,
        default=SubscriptionTier.GIFT,
    )
    subscription_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Balance (may go negative under explicit overdraft)
    tokens_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_renewal_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    channel_subscribed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_spent >= 0", name="ck_tokens_spent_non_negative"),
        Index("idx_users_tier", "tier"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<User(id={self.id}, tier={self.tier}, "
            f"balance={self.tokens_balance}, spent={self.tokens_spent})>"
        )


class TokenOperation(Base):
    """
    ORM model for token_operations table.

    Append-only ledger of every balance change.
    """

    __tablename__ = "token_operations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )

    operation_type: Mapped[OperationType] = mapped_column(
        _enum_column(OperationType, "operation_type", length=30), nullable=False
    )

    # Signed amount: negative for debits, positive for credits
    tokens_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    # Balance snapshots (denormalized for auditing)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "balance_after = balance_before + tokens_amount",
            name="ck_token_operation_balance_consistency",
        ),
        Index("idx_token_operations_user_created", "user_id", "created_at"),
        Index("idx_token_operations_type", "operation_type"),
        Index("idx_token_operations_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TokenOperation(id={self.id}, user_id={self.user_id}, "
            f"type={self.operation_type}, amount={self.tokens_amount})>"
        )


class Payment(Base):
    """
    ORM model for payments table.

    Created when a payment session starts; settled by provider events.
    """

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    provider: Mapped[PaymentProvider] = mapped_column(
        _enum_column(PaymentProvider, "payment_provider"),
        nullable=False,
        default=PaymentProvider.YOOKASSA,
    )
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    amount_rubles: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="RUB")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Provider's payment id - the idempotency key for event processing
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    subscription_tier: Mapped[SubscriptionTier | None] = mapped_column(
        _enum_column(SubscriptionTier, "subscription_tier"), nullable=True
    )

    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount_rubles >= 0", name="ck_payment_amount_non_negative"),
        Index("idx_payments_status", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Payment(id={self.id}, external_id={self.external_id}, "
            f"status={self.status}, tier={self.subscription_tier})>"
        )


class Generation(Base):
    """
    ORM model for generations table.

    Mirrors the progress of one queued unit of paid work.
    """

    __tablename__ = "generations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )

    operation_type: Mapped[OperationType] = mapped_column(
        _enum_column(OperationType, "operation_type", length=30), nullable=False
    )
    status: Mapped[GenerationStatus] = mapped_column(
        _enum_column(GenerationStatus, "generation_status"),
        nullable=False,
        default=GenerationStatus.PENDING,
    )

    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_urls: Mapped[list[str] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    dead_lettered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="ck_generation_retry_count_non_negative"),
        Index("idx_generations_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<Generation(id={self.id}, user_id={self.user_id}, status={self.status})>"


class SubscriptionTierConfig(Base):
    """
    ORM model for subscription_tier_config table.

    Operator-editable copy of the static tier table.
    """

    __tablename__ = "subscription_tier_config"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tier: Mapped[SubscriptionTier] = mapped_column(
        _enum_column(SubscriptionTier, "subscription_tier"), nullable=False, unique=True
    )
    monthly_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    price_rubles: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requests_per_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    burst_per_second: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("monthly_tokens >= 0", name="ck_tier_monthly_tokens_non_negative"),
    )


class SubscriptionHistory(Base):
    """
    ORM model for subscription_history table.

    One row per activation; cancellation stamps the open row.
    """

    __tablename__ = "subscription_history"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    tier: Mapped[SubscriptionTier] = mapped_column(
        _enum_column(SubscriptionTier, "subscription_tier"), nullable=False
    )
    price_rubles: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    metadata_: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
