"""
Token Policy - Per-queue charging rules for job processing.
"""

from dataclasses import dataclass

from tokengate.config import TOKEN_COSTS
from tokengate.models.api import OperationType


@dataclass(frozen=True)
class TokenPolicy:
    """
    How a queue charges for its jobs.

    Tokens are debited only after the job succeeds. With `charge_on_failure`
    a failed job is charged too, best effort.
    """

    enabled: bool
    operation_type: OperationType
    amount: int | None = None
    charge_on_failure: bool = False

    def cost(self) -> int:
        """Explicit amount, or the operation's table cost."""
        if self.amount is not None:
            return self.amount
        return TOKEN_COSTS[self.operation_type]


NO_CHARGE = TokenPolicy(enabled=False, operation_type=OperationType.IMAGE_GENERATION)

QUEUE_TOKEN_POLICIES: dict[str, TokenPolicy] = {
    "image-generation": TokenPolicy(enabled=True, operation_type=OperationType.IMAGE_GENERATION),
    "chat-processing": TokenPolicy(enabled=True, operation_type=OperationType.CHATGPT_MESSAGE),
    "product-card-generation": TokenPolicy(
        enabled=True, operation_type=OperationType.PRODUCT_CARD
    ),
    "sora-generation": TokenPolicy(enabled=True, operation_type=OperationType.SORA_IMAGE),
    "image-processing": NO_CHARGE,
    "payment-processing": NO_CHARGE,
    "subscription-renewal": NO_CHARGE,
}


def get_token_policy(queue_name: str) -> TokenPolicy:
    """Token policy for a queue; unknown queues are not charged."""
    return QUEUE_TOKEN_POLICIES.get(queue_name, NO_CHARGE)
