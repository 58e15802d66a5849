"""
Exception Classes - Strongly typed exception hierarchy.

Business-rule failures are raised inside a transaction and converted to a
`success=False` result at the service boundary. Infrastructure failures
keep their original exception chained as `__cause__`.
"""

from uuid import UUID


class TokenGateError(Exception):
    """Base exception for all token economy errors."""

    pass


class UserNotFoundError(TokenGateError):
    """Raised when the user record doesn't exist."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__("User not found")


class InvalidAmountError(TokenGateError):
    """Raised when a token amount is not strictly positive."""

    def __init__(self, operation: str, amount: int) -> None:
        self.operation = operation
        self.amount = amount
        super().__init__(f"{operation.capitalize()} amount must be positive")


class InsufficientTokensError(TokenGateError):
    """Raised when a debit would overdraw a balance that forbids overdraft."""

    def __init__(self, balance: int, required: int) -> None:
        self.balance = balance
        self.required = required
        self.deficit = required - balance
        super().__init__(
            f"Insufficient tokens. Required: {required}, Available: {balance}, "
            f"Deficit: {self.deficit}"
        )


class LedgerIntegrityError(TokenGateError):
    """Raised when a ledger entry's snapshots disagree with its amount."""

    def __init__(self, balance_before: int, tokens_amount: int, balance_after: int) -> None:
        self.balance_before = balance_before
        self.tokens_amount = tokens_amount
        self.balance_after = balance_after
        super().__init__(
            f"Ledger integrity error: {balance_before} + {tokens_amount} != {balance_after}"
        )


class PaymentNotFoundError(TokenGateError):
    """Raised when no payment row matches the external payment id."""

    def __init__(self, external_id: str) -> None:
        self.external_id = external_id
        super().__init__(f"Payment not found: {external_id}")


class TierConfigNotFoundError(TokenGateError):
    """Raised when a subscription tier has no configuration."""

    def __init__(self, tier: str) -> None:
        self.tier = tier
        super().__init__(f"Tier config not found: {tier}")


class SubscriptionError(TokenGateError):
    """Raised when subscription activation or cancellation fails."""

    def __init__(self, action: str, message: str) -> None:
        self.action = action
        self.message = message
        super().__init__(f"Subscription {action} failed: {message}")


class TokenChargeError(TokenGateError):
    """Raised when post-success token deduction for a job is refused."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Token deduction failed: {message}")


class RollbackFailedError(TokenGateError):
    """Raised when a compensating credit could not be written.

    This is a financial inconsistency that needs manual reconciliation.
    """

    def __init__(self, user_id: UUID, amount: int, original_ledger_entry_id: UUID, message: str):
        self.user_id = user_id
        self.amount = amount
        self.original_ledger_entry_id = original_ledger_entry_id
        self.message = message
        super().__init__(
            f"Token rollback failed for ledger entry {original_ledger_entry_id}: {message}"
        )


class InvalidStatusTransitionError(TokenGateError):
    """Raised when a record is moved along an edge its state machine forbids."""

    def __init__(self, record_id: UUID, current: str, requested: str) -> None:
        self.record_id = record_id
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid status transition for {record_id}: {current} -> {requested}")


class RecordNotFoundError(TokenGateError):
    """Raised when a generation record doesn't exist."""

    def __init__(self, record_id: UUID) -> None:
        self.record_id = record_id
        super().__init__(f"Generation not found: {record_id}")


class RateLimitStoreError(TokenGateError):
    """Raised when the rate limit store cannot be reached (fail-closed)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Rate limit store error: {message}")


class RetryRequested(TokenGateError):
    """Raised from a queue actor so the broker re-delivers with backoff."""

    def __init__(self, job_id: str, message: str) -> None:
        self.job_id = job_id
        self.message = message
        super().__init__(f"Job {job_id} will be retried: {message}")
