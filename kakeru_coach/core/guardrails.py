"""
Submission guardrails.

Pre-flight checks that decide whether an answer may be sent for grading.

Enforcement Order:
1. Prompt readiness - A prompt must be attached and not being regenerated
2. Answer length - Non-empty, at least the minimum word count, within the cap
3. Budget - The remaining-gradings estimate must be positive (or unknown)
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

from kakeru_coach.storage.models import Prompt
from .token_budget import BudgetView, OperationKind


MIN_WORD_COUNT = 5
MAX_ANSWER_CHARS = 5000


class BlockReason(Enum):
    """Why a submission was refused before any remote call."""
    NO_PROMPT = auto()
    GENERATING = auto()
    EMPTY_ANSWER = auto()
    TOO_SHORT = auto()
    TOO_LONG = auto()
    BUDGET_EXHAUSTED = auto()
    IN_PROGRESS = auto()


class SubmissionBlocked(Exception):
    """Raised when a guardrail refuses a submission."""
    def __init__(self, message: str, reason: BlockReason):
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class SubmissionLimits:
    min_word_count: int = MIN_WORD_COUNT
    max_answer_chars: int = MAX_ANSWER_CHARS


def count_words(text: str) -> int:
    """Count whitespace-delimited words."""
    return len(text.split())


def check_submission(
    prompt: Optional[Prompt],
    answer: str,
    budget: BudgetView,
    generating: bool = False,
    limits: SubmissionLimits = SubmissionLimits()
) -> int:
    """
    Check every guardrail in order of precedence.

    Args:
        prompt: Prompt currently attached to the session, if any
        answer: The learner's answer text
        budget: Cached budget view
        generating: Whether a prompt (re)generation is in flight
        limits: Length limits

    Returns:
        int: The answer's word count

    Raises:
        SubmissionBlocked: With the first guardrail that failed
    """
    if prompt is None:
        raise SubmissionBlocked("No prompt is attached yet", BlockReason.NO_PROMPT)
    if generating:
        raise SubmissionBlocked("A new prompt is being generated", BlockReason.GENERATING)

    if not answer.strip():
        raise SubmissionBlocked("The answer is empty", BlockReason.EMPTY_ANSWER)
    words = count_words(answer)
    if words < limits.min_word_count:
        raise SubmissionBlocked(
            f"Write at least {limits.min_word_count} words (currently {words})",
            BlockReason.TOO_SHORT,
        )
    if len(answer) > limits.max_answer_chars:
        raise SubmissionBlocked(
            f"The answer exceeds {limits.max_answer_chars} characters",
            BlockReason.TOO_LONG,
        )

    if not budget.allows(OperationKind.GRADE_WRITING):
        raise SubmissionBlocked(
            "No gradings remain in this month's token budget",
            BlockReason.BUDGET_EXHAUSTED,
        )

    return words
