"""
API Models - Enumerations and payload models shared across services.

Webhook payloads are validated with pydantic; everything else in the
token economy uses the enums defined here.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class SubscriptionTier(str, Enum):
    """Subscription tier enumeration."""

    GIFT = "Gift"
    PROFESSIONAL = "Professional"
    BUSINESS = "Business"


class OperationType(str, Enum):
    """Token operation type enumeration (ledger entry type)."""

    IMAGE_GENERATION = "image_generation"
    SORA_IMAGE = "sora_image"
    PRODUCT_CARD = "product_card"
    CHATGPT_MESSAGE = "chatgpt_message"
    REFUND = "refund"
    PURCHASE = "purchase"
    MONTHLY_RESET = "monthly_reset"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"
    FAILED = "failed"
    REFUNDED = "refunded"


TERMINAL_PAYMENT_STATUSES = frozenset(
    {
        PaymentStatus.SUCCEEDED,
        PaymentStatus.CANCELED,
        PaymentStatus.FAILED,
        PaymentStatus.REFUNDED,
    }
)


class PaymentProvider(str, Enum):
    """Payment provider enumeration."""

    YOOKASSA = "yookassa"
    STRIPE = "stripe"
    MANUAL = "manual"


class GenerationStatus(str, Enum):
    """Generation record status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookAmount(BaseModel):
    """Amount block of a payment provider notification."""

    value: str
    currency: str = "RUB"


class WebhookMetadata(BaseModel):
    """Metadata we attach to a payment when the session is created."""

    user_id: str | None = Field(None, alias="userId")
    subscription_tier: SubscriptionTier | None = Field(None, alias="subscriptionTier")

    model_config = {"populate_by_name": True, "extra": "allow"}


class WebhookObject(BaseModel):
    """Payment object carried by a notification."""

    id: str = Field(..., min_length=1, max_length=255)
    status: str
    amount: WebhookAmount
    metadata: WebhookMetadata = Field(default_factory=WebhookMetadata)
    payment_id: str | None = None
    cancellation_details: dict[str, Any] | None = None

    model_config = {"extra": "allow"}

    @property
    def amount_value(self) -> int:
        """Amount in whole currency units, rounded."""
        return round(float(self.amount.value))

    @property
    def cancellation_reason(self) -> str | None:
        if not self.cancellation_details:
            return None
        reason = self.cancellation_details.get("reason")
        return str(reason) if reason is not None else None


class WebhookPayload(BaseModel):
    """Payment provider notification, already authenticated by the caller."""

    event: str
    object: WebhookObject

    def metadata_dict(self) -> dict[str, Any]:
        """Full metadata including provider-specific extras."""
        return self.object.metadata.model_dump(by_alias=True, exclude_none=True)


# ============================================================================
# Cached Views
# ============================================================================


class UserProfile(BaseModel):
    """User profile view served from the cache."""

    id: UUID
    telegram_id: str
    username: str | None = None
    tier: SubscriptionTier
    subscription_expires_at: datetime | None = None
    tokens_balance: int
    tokens_spent: int
    channel_subscribed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ChannelSubscription(BaseModel):
    """Whether a user has joined the promotional channel."""

    is_subscribed: bool
    subscribed_at: datetime | None = None
