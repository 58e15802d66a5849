"""
Domain Models - Internal business logic models using dataclasses.

All results crossing a service boundary are immutable dataclasses. Failures
are values (`success=False` plus `error`), never exceptions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from tokengate.models.api import OperationType, PaymentStatus, SubscriptionTier

# ============================================================================
# Admission Control
# ============================================================================


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one admission-control check."""

    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: int | None = None


@dataclass(frozen=True)
class RateLimitStats:
    """Raw counters for one (user, operation) pair."""

    minute_count: int
    second_tokens: float


# ============================================================================
# Token Accounting
# ============================================================================


@dataclass(frozen=True)
class TokenDebitOptions:
    """Debit request. `amount` is validated by the service, not here."""

    operation_type: OperationType
    amount: int
    allow_overdraft: bool = False
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class TokenCreditOptions:
    """Credit request. `amount` is validated by the service, not here."""

    operation_type: OperationType
    amount: int
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class TokenOperationResult:
    """Result of a debit, credit or reset."""

    success: bool
    new_balance: int
    tokens_spent: int
    user_id: UUID | None = None
    ledger_entry_id: UUID | None = None
    error: str | None = None
    deficit: int | None = None


@dataclass(frozen=True)
class TokenBalance:
    """Authoritative balance snapshot read from the user record."""

    user_id: UUID
    tokens_balance: int
    tokens_spent: int
    tier: SubscriptionTier
    last_renewal_at: datetime | None = None


@dataclass(frozen=True)
class AffordabilityCheck:
    """Read-only answer to "can this user pay for this operation"."""

    can_afford: bool
    balance: int
    cost: int
    deficit: int | None = None


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one signed balance change."""

    id: UUID
    user_id: UUID
    operation_type: OperationType
    tokens_amount: int
    balance_before: int
    balance_after: int
    created_at: datetime
    metadata: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        """Validate snapshot consistency."""
        if self.balance_after != self.balance_before + self.tokens_amount:
            raise ValueError(
                f"balance_after {self.balance_after} != "
                f"balance_before {self.balance_before} + amount {self.tokens_amount}"
            )


@dataclass(frozen=True)
class LedgerStatistics:
    """Aggregate ledger figures for a user over a period."""

    total_spent: int
    total_earned: int
    net_change: int
    operation_count: int


@dataclass(frozen=True)
class TokenOperationMetrics:
    """Metrics event published after every token mutation attempt."""

    operation: str
    user_id: UUID
    amount: int
    success: bool
    duration: float
    error: str | None = None


@dataclass(frozen=True)
class CachedTokenBalance:
    """Non-authoritative balance view kept in the cache."""

    tokens_balance: int
    tokens_spent: int


# ============================================================================
# Renewal
# ============================================================================


@dataclass(frozen=True)
class RenewalEligibility:
    """Whether a user is due for the monthly allocation."""

    user_id: UUID
    eligible: bool
    reason: str | None = None
    next_renewal_date: datetime | None = None
    days_until_renewal: int | None = None


@dataclass(frozen=True)
class MonthlyRenewalResult:
    """Outcome of renewing one user."""

    user_id: UUID
    tier: SubscriptionTier
    tokens_added: int
    new_balance: int
    previous_balance: int
    renewal_date: datetime
    success: bool
    error: str | None = None


@dataclass
class BatchRenewalResult:
    """Accumulated outcome of a renewal batch."""

    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    renewals: list[MonthlyRenewalResult] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)


# ============================================================================
# Subscriptions and Payments
# ============================================================================


@dataclass(frozen=True)
class SubscriptionStatus:
    """Current subscription state of a user."""

    user_id: UUID
    tier: SubscriptionTier
    is_active: bool
    expires_at: datetime | None
    auto_renew: bool
    days_remaining: int | None


@dataclass(frozen=True)
class SubscriptionChangeResult:
    """Result of an activation or cancellation."""

    success: bool
    status: SubscriptionStatus | None = None
    history_id: UUID | None = None
    error: str | None = None


@dataclass(frozen=True)
class ExpirationCheckResult:
    """Outcome of downgrading one expired subscription."""

    user_id: UUID
    was_expired: bool
    previous_tier: SubscriptionTier | None = None
    new_tier: SubscriptionTier | None = None
    error: str | None = None


@dataclass
class BatchExpirationResult:
    """Accumulated outcome of an expiration sweep."""

    total_checked: int = 0
    total_expired: int = 0
    results: list[ExpirationCheckResult] = field(default_factory=list)


@dataclass(frozen=True)
class ProcessPaymentOptions:
    """Provider event data needed to settle a payment."""

    payment_id: str
    user_id: UUID
    status: PaymentStatus
    amount: int
    subscription_tier: SubscriptionTier | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class PaymentProcessingResult:
    """Result of settling one payment event."""

    success: bool
    tokens_granted: int | None = None
    subscription_activated: bool | None = None
    already_processed: bool = False
    error: str | None = None
