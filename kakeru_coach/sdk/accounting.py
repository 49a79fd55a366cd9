"""
Token accounting service.

Owns the learner's token usage: the append-only ledger is the only thing
that mutates it, and every client-side copy is a cached read.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from kakeru_coach.config.loader import CoachConfig
from kakeru_coach.core.rate_limit import QuotaExceededError
from kakeru_coach.storage.models import LearnerProfile, TokenUsage, UsageEvent
from kakeru_coach.storage.repository import insert_usage_event, sum_usage_tokens


def period_start(now: Optional[datetime] = None) -> datetime:
    """Start of the monthly budget period (first of the month, UTC)."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_period_start(now: Optional[datetime] = None) -> datetime:
    start = period_start(now)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


class TokenAccountant:
    """Monthly token ledger backed by the durable store."""

    def __init__(self, config: CoachConfig, db_path: Optional[str] = None):
        self.config = config
        self.db_path = db_path or config.storage.db_path

    def usage_for(self, profile: LearnerProfile, now: Optional[datetime] = None) -> TokenUsage:
        start = period_start(now)
        used = sum_usage_tokens(profile.uid, start, self.db_path)
        return TokenUsage(
            tokens_used=used,
            token_limit=self.config.get_plan(profile.plan).token_limit,
            period_start=start,
        )

    async def get_token_usage(self, profile: LearnerProfile) -> TokenUsage:
        return await asyncio.to_thread(self.usage_for, profile)

    async def ensure_available(self, profile: LearnerProfile) -> TokenUsage:
        """Refuse a spending call once the period's allowance is used up.

        The call that crosses the limit is allowed to finish, so usage can
        overshoot the limit by one operation.

        Raises:
            QuotaExceededError: If no tokens remain this period
        """
        usage = await self.get_token_usage(profile)
        if usage.tokens_remaining <= 0:
            raise QuotaExceededError(
                f"Token limit of {usage.token_limit} reached for {profile.uid}",
                resets_at=next_period_start(),
            )
        return usage

    async def record(self, event: UsageEvent) -> None:
        await asyncio.to_thread(insert_usage_event, event, self.db_path)
