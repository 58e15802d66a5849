"""
Hypothesis Property-Based Tests for domain and webhook models.
"""

from datetime import UTC, datetime
from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from tokengate.models.api import OperationType, SubscriptionTier, WebhookPayload
from tokengate.models.domain import LedgerEntry

# ============================================================================
# Hypothesis Strategies
# ============================================================================

balances = st.integers(min_value=-1_000_000, max_value=1_000_000)
amounts = st.integers(min_value=-100_000, max_value=100_000)
operation_types = st.sampled_from(list(OperationType))


class TestLedgerEntry:
    """LedgerEntry snapshot consistency."""

    @given(before=balances, amount=amounts, operation_type=operation_types)
    def test_consistent_entries_accepted(self, before, amount, operation_type):
        entry = LedgerEntry(
            id=uuid4(),
            user_id=uuid4(),
            operation_type=operation_type,
            tokens_amount=amount,
            balance_before=before,
            balance_after=before + amount,
            created_at=datetime.now(UTC),
        )

        assert entry.balance_after - entry.balance_before == entry.tokens_amount

    @given(before=balances, amount=amounts, drift=st.integers(min_value=1, max_value=50))
    def test_inconsistent_entries_rejected(self, before, amount, drift):
        with pytest.raises(ValueError):
            LedgerEntry(
                id=uuid4(),
                user_id=uuid4(),
                operation_type=OperationType.REFUND,
                tokens_amount=amount,
                balance_before=before,
                balance_after=before + amount + drift,
                created_at=datetime.now(UTC),
            )


class TestWebhookPayload:
    """Provider notification parsing."""

    def payload(self, **object_fields):
        return {
            "event": "payment.succeeded",
            "object": {
                "id": "P1",
                "status": "succeeded",
                "amount": {"value": "1990.00", "currency": "RUB"},
                **object_fields,
            },
        }

    def test_metadata_aliases(self):
        user_id = str(uuid4())
        payload = WebhookPayload.model_validate(
            self.payload(
                metadata={"userId": user_id, "subscriptionTier": "Business", "orderId": "o-9"}
            )
        )

        assert payload.object.metadata.user_id == user_id
        assert payload.object.metadata.subscription_tier == SubscriptionTier.BUSINESS
        assert payload.metadata_dict()["orderId"] == "o-9"

    @pytest.mark.parametrize("value,expected", [("1990.00", 1990), ("99.50", 100), ("0", 0)])
    def test_amount_value_rounds(self, value, expected):
        payload = WebhookPayload.model_validate(self.payload(amount={"value": value}))

        assert payload.object.amount_value == expected

    def test_cancellation_reason(self):
        payload = WebhookPayload.model_validate(
            self.payload(cancellation_details={"party": "merchant", "reason": "expired"})
        )

        assert payload.object.cancellation_reason == "expired"

    def test_missing_cancellation_details(self):
        payload = WebhookPayload.model_validate(self.payload())

        assert payload.object.cancellation_reason is None
        assert payload.object.metadata.user_id is None

    def test_unknown_tier_rejected(self):
        with pytest.raises(ValidationError):
            WebhookPayload.model_validate(self.payload(metadata={"subscriptionTier": "Platinum"}))

    def test_empty_id_rejected(self):
        with pytest.raises(ValidationError):
            WebhookPayload.model_validate(self.payload(id=""))
