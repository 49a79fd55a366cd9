"""
Token budget estimation.

Translates a raw token balance into an estimated number of remaining
operations of a given kind.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from kakeru_coach.storage.models import TokenUsage


class OperationKind(Enum):
    """Remote operations that spend tokens."""
    GENERATE_PROMPT = "generate_prompt"
    GRADE_WRITING = "grade_writing"
    CHAT = "chat"


@dataclass(frozen=True)
class CostTable:
    """Fixed average token cost per operation kind."""
    costs: Dict[OperationKind, int]

    def get_cost(self, operation: OperationKind) -> int:
        """Get the average cost of an operation.

        Raises:
            ValueError: If the operation kind has no cost
        """
        if operation not in self.costs:
            raise ValueError(f"Unknown operation kind: {operation}")
        return self.costs[operation]


# Averages observed per call; grading is by far the most expensive
OPERATION_COSTS = CostTable({
    OperationKind.GENERATE_PROMPT: 1100,
    OperationKind.GRADE_WRITING: 2500,
    OperationKind.CHAT: 800,
})


def estimate_remaining(
    tokens_remaining: int,
    operation: OperationKind,
    table: CostTable = OPERATION_COSTS
) -> int:
    """Estimate how many more operations the balance pays for.

    Args:
        tokens_remaining: Token balance, negative when over the limit
        operation: Kind of operation being estimated
        table: Average cost table

    Returns:
        Floor of balance / cost, never negative
    """
    cost = table.get_cost(operation)
    if tokens_remaining <= 0:
        return 0
    return tokens_remaining // cost


def format_tokens(tokens: int) -> str:
    """Format a token count for display (9,999 / 12.5K / 2M)."""
    sign = "-" if tokens < 0 else ""
    n = abs(tokens)
    if n >= 1_000_000:
        value = f"{n / 1_000_000:.1f}".rstrip("0").rstrip(".")
        return f"{sign}{value}M"
    if n >= 10_000:
        value = f"{n / 1_000:.1f}".rstrip("0").rstrip(".")
        return f"{sign}{value}K"
    return f"{sign}{n:,}"


@dataclass(frozen=True)
class BudgetView:
    """Read-only view over the cached token usage.

    A missing usage means "not loaded yet", which is treated as
    unconstrained rather than exhausted.
    """
    usage: Optional[TokenUsage]
    table: CostTable = OPERATION_COSTS

    @property
    def loaded(self) -> bool:
        return self.usage is not None

    @property
    def tokens_remaining(self) -> Optional[int]:
        if self.usage is None:
            return None
        return self.usage.tokens_remaining

    def estimate(self, operation: OperationKind) -> Optional[int]:
        if self.usage is None:
            return None
        return estimate_remaining(self.usage.tokens_remaining, operation, self.table)

    def allows(self, operation: OperationKind) -> bool:
        estimate = self.estimate(operation)
        return estimate is None or estimate > 0
