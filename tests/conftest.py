"""
Shared fixtures for session, storage and flow tests.
"""

import os
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from kakeru_coach.config.loader import default_config
from kakeru_coach.session.context import SessionContext
from kakeru_coach.storage.fallback import PersistenceFallbackLayer
from kakeru_coach.storage.local_cache import LocalCache
from kakeru_coach.storage.models import (
    Feedback,
    Improvement,
    LearnerProfile,
    Prompt,
    TokenUsage,
    VocabType,
    VocabularyItem,
)
from kakeru_coach.storage.repository import DurableStore, initialize_schema


PERIOD_START = datetime(2026, 10, 1, tzinfo=timezone.utc)


def make_feedback(**overrides) -> Feedback:
    """Build a complete Feedback with sensible defaults."""
    values = dict(
        overall_rank="B",
        grammar_rank="B",
        vocabulary_rank="A",
        structure_rank="B",
        content_rank="C",
        summary="Clear answer with a few grammar slips.",
        improvements=(
            Improvement(
                original="I go to school yesterday",
                suggestion="I went to school yesterday",
                explanation="Use the past tense for finished actions.",
                category="grammar",
            ),
        ),
        vocabulary_items=(
            VocabularyItem(term="commute", meaning="通勤する", example="I commute by train."),
            VocabularyItem(term="in my opinion", meaning="私の意見では", type=VocabType.EXPRESSION),
        ),
        model_answer="I went to school yesterday and met my friends.",
        structure_analysis="Introduction, one body paragraph, no conclusion.",
    )
    values.update(overrides)
    return Feedback(**values)


def make_prompt(**overrides) -> Prompt:
    values = dict(
        text="Describe your favourite place in your town.",
        hint="Say where it is and why you like it.",
        recommended_word_count=100,
        example_translation="私のお気に入りの場所は駅前の公園です。",
    )
    values.update(overrides)
    return Prompt(**values)


def make_usage(tokens_used: int = 0, token_limit: int = 10_000) -> TokenUsage:
    return TokenUsage(tokens_used=tokens_used, token_limit=token_limit, period_start=PERIOD_START)


@pytest.fixture
def profile():
    return LearnerProfile(uid="user-1", level="B1", goal="Pass IELTS", hobbies=("music",))


@pytest.fixture
def store(tmp_path):
    """Fallback layer over a fresh SQLite store and cache."""
    db_path = os.path.join(tmp_path, "test.db")
    initialize_schema(db_path)
    return PersistenceFallbackLayer(
        DurableStore(db_path),
        LocalCache(os.path.join(tmp_path, "cache.db")),
    )


@pytest.fixture
def client():
    """Mock of the metered remote client."""
    mock_client = Mock()
    mock_client.generate_prompt = AsyncMock(return_value=make_prompt())
    mock_client.grade_writing = AsyncMock(return_value=make_feedback())
    mock_client.reply_to_chat = AsyncMock(return_value="Because the action is finished.")
    mock_client.aclose = AsyncMock()
    return mock_client


@pytest.fixture
def accountant():
    mock_accountant = Mock()
    mock_accountant.get_token_usage = AsyncMock(return_value=make_usage())
    return mock_accountant


@pytest.fixture
def context(profile, client, store, accountant):
    """Session context whose token usage has not been loaded yet."""
    return SessionContext(
        profile=profile,
        client=client,
        store=store,
        accountant=accountant,
        config=default_config(),
    )
