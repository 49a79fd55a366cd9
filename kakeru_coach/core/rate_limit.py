"""
Rate-limit classification.

Tells quota and rate-limit rejections apart from transient failures so the
caller can show a wait message and refresh the cached budget.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import openai


RATE_LIMIT_CODES = frozenset({
    "resource-exhausted",
    "functions/resource-exhausted",
    "rate_limit_exceeded",
    "insufficient_quota",
})


class QuotaExceededError(Exception):
    """Raised by the accounting service when the period's tokens are spent."""

    def __init__(self, message: str, resets_at: Optional[datetime] = None):
        super().__init__(message)
        self.resets_at = resets_at


@dataclass(frozen=True)
class RateLimitInfo:
    """A classified rate-limit rejection."""
    message: str
    retry_after_seconds: Optional[float] = None
    exhausted: bool = False


def classify(error: BaseException) -> Optional[RateLimitInfo]:
    """Classify an error raised by a remote call.

    Args:
        error: Exception raised by a remote call

    Returns:
        RateLimitInfo when the error is a quota or rate-limit rejection,
        None for anything else (network, validation, malformed output)
    """
    if isinstance(error, QuotaExceededError):
        if error.resets_at is not None:
            message = (
                "You have used this month's token allowance. "
                f"It resets on {error.resets_at:%Y-%m-%d}."
            )
        else:
            message = "You have used this month's token allowance."
        return RateLimitInfo(message=message, exhausted=True)

    code = _error_code(error)
    status = _status_code(error)
    if not (isinstance(error, openai.RateLimitError) or status == 429
            or code in RATE_LIMIT_CODES):
        return None

    if code == "insufficient_quota":
        return RateLimitInfo(
            message="The AI service quota is exhausted. Please try again later.",
            exhausted=True,
        )

    retry_after = _retry_after(error)
    if retry_after is not None:
        message = (
            "Too many requests. Please wait about "
            f"{_format_wait(retry_after)} and try again."
        )
    else:
        message = "Too many requests. Please wait a moment and try again."
    return RateLimitInfo(message=message, retry_after_seconds=retry_after)


def _error_code(error: BaseException) -> Optional[str]:
    code = getattr(error, "code", None)
    if isinstance(code, str):
        return code
    return None


def _status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    return None


def _retry_after(error: BaseException) -> Optional[float]:
    raw: Any = getattr(error, "retry_after", None)
    if raw is None:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
        if headers is not None:
            raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        seconds = float(raw)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def _format_wait(seconds: float) -> str:
    if seconds < 60:
        return f"{max(1, round(seconds))} seconds"
    minutes = round(seconds / 60)
    return "1 minute" if minutes == 1 else f"{minutes} minutes"
