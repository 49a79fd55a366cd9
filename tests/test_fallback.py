"""
Unit tests for the persistence fallback layer.

Tests that durable failures degrade to the local cache, that local ids are
distinguishable, and that a double failure is reported.
"""

import asyncio
import os
import sqlite3
from unittest.mock import Mock

import pytest

from kakeru_coach.storage.fallback import (
    LOCAL_ID_PREFIX,
    PersistenceError,
    PersistenceFallbackLayer,
    StoreStatus,
)
from kakeru_coach.storage.local_cache import LocalCache
from kakeru_coach.storage.models import VocabType, VocabularyDraft, WritingDraft, WritingMode
from kakeru_coach.storage.repository import DurableStore, initialize_schema
from conftest import make_feedback


def _writing_draft(owner_id="user-1"):
    return WritingDraft(
        owner_id=owner_id,
        mode=WritingMode.CUSTOM,
        prompt="Write an email to your manager about next week's trip.",
        prompt_hint="",
        recommended_word_count=80,
        user_answer="Dear manager, I will visit Osaka next week for the client meeting.",
        feedback=make_feedback(),
        word_count=12,
    )


def _vocab_draft(term="commute", owner_id="user-1"):
    return VocabularyDraft(owner_id=owner_id, type=VocabType.WORD, term=term, meaning="通勤する")


def _broken_durable():
    durable = Mock(spec=DurableStore)
    error = sqlite3.OperationalError("database is locked")
    for name in ("create_writing", "get_writing", "list_writings",
                 "create_vocabulary", "list_vocabulary", "delete_vocabulary"):
        getattr(durable, name).side_effect = error
    return durable


@pytest.fixture
def cache(tmp_path):
    return LocalCache(os.path.join(tmp_path, "cache.db"))


@pytest.fixture
def degraded(cache):
    """Fallback layer whose durable store always fails."""
    return PersistenceFallbackLayer(_broken_durable(), cache)


class TestDurablePath:
    """Operations served by the durable store."""

    def test_save_and_read_writing(self, store):
        writing = asyncio.run(store.save_writing(_writing_draft()))

        assert not store.is_local_id(writing.id)
        assert store.status == StoreStatus.DURABLE
        assert asyncio.run(store.get_writing("user-1", writing.id)) == writing
        assert asyncio.run(store.list_writings("user-1")) == [writing]

    def test_vocabulary_round_trip(self, store):
        entry = asyncio.run(store.save_vocabulary(_vocab_draft()))
        assert asyncio.run(store.list_vocabulary("user-1")) == [entry]

        asyncio.run(store.delete_vocabulary("user-1", entry.id))
        assert asyncio.run(store.list_vocabulary("user-1")) == []

    def test_missing_writing_is_none_not_fallback(self, store):
        assert asyncio.run(store.get_writing("user-1", "nope")) is None
        assert store.status == StoreStatus.DURABLE


class TestFallbackPath:
    """Operations that degrade to the local cache."""

    def test_failed_durable_write_creates_local_record(self, degraded):
        """The fallback record carries the local prefix and reads back by id."""
        writing = asyncio.run(degraded.save_writing(_writing_draft()))

        assert writing.id.startswith(LOCAL_ID_PREFIX)
        assert degraded.is_local_id(writing.id)
        assert degraded.status == StoreStatus.LOCAL_ONLY

        loaded = asyncio.run(degraded.get_writing("user-1", writing.id))
        assert loaded == writing
        assert loaded.feedback == make_feedback()

    def test_local_ids_bypass_durable_store(self, cache):
        """Reading a local id never asks the durable store."""
        durable = _broken_durable()
        layer = PersistenceFallbackLayer(durable, cache)
        writing = asyncio.run(layer.save_writing(_writing_draft()))
        durable.get_writing.reset_mock()

        assert asyncio.run(layer.get_writing("user-1", writing.id)) == writing
        durable.get_writing.assert_not_called()

    def test_local_ids_are_unique(self, degraded):
        ids = {asyncio.run(degraded.save_writing(_writing_draft())).id for _ in range(5)}
        assert len(ids) == 5

    def test_read_falls_back_silently(self, degraded):
        """Durable read failure returns the cached list without raising."""
        first = asyncio.run(degraded.save_writing(_writing_draft()))
        second = asyncio.run(degraded.save_writing(_writing_draft()))
        asyncio.run(degraded.save_writing(_writing_draft(owner_id="user-2")))

        writings = asyncio.run(degraded.list_writings("user-1"))
        assert [w.id for w in writings] == [second.id, first.id]

    def test_unknown_durable_id_reads_none_when_degraded(self, degraded):
        assert asyncio.run(degraded.get_writing("user-1", "abc123")) is None

    def test_vocabulary_fallback(self, degraded):
        first = asyncio.run(degraded.save_vocabulary(_vocab_draft("commute")))
        second = asyncio.run(degraded.save_vocabulary(_vocab_draft("in my opinion")))
        assert first.id.startswith(LOCAL_ID_PREFIX)

        entries = asyncio.run(degraded.list_vocabulary("user-1"))
        assert [e.term for e in entries] == ["in my opinion", "commute"]

        asyncio.run(degraded.delete_vocabulary("user-1", first.id))
        entries = asyncio.run(degraded.list_vocabulary("user-1"))
        assert [e.id for e in entries] == [second.id]

    def test_local_vocabulary_delete_skips_durable(self, cache):
        durable = _broken_durable()
        layer = PersistenceFallbackLayer(durable, cache)
        entry = asyncio.run(layer.save_vocabulary(_vocab_draft()))

        asyncio.run(layer.delete_vocabulary("user-1", entry.id))
        durable.delete_vocabulary.assert_not_called()
        assert asyncio.run(layer.list_vocabulary("user-1")) == []

    def test_status_recovers_when_durable_returns(self, cache, tmp_path):
        db_path = os.path.join(tmp_path, "late.db")
        layer = PersistenceFallbackLayer(DurableStore(db_path), cache)

        asyncio.run(layer.save_writing(_writing_draft()))
        assert layer.status == StoreStatus.LOCAL_ONLY

        initialize_schema(db_path)
        asyncio.run(layer.save_writing(_writing_draft()))
        assert layer.status == StoreStatus.DURABLE

    def test_custom_prefix(self, cache):
        layer = PersistenceFallbackLayer(_broken_durable(), cache, local_id_prefix="offline-")
        writing = asyncio.run(layer.save_writing(_writing_draft()))
        assert writing.id.startswith("offline-")


class TestDoubleFailure:
    """Both tiers failing is a hard failure."""

    def test_write_raises_persistence_error(self):
        cache = Mock(spec=LocalCache)
        cache.get.side_effect = OSError("disk full")
        cache.set.side_effect = OSError("disk full")
        layer = PersistenceFallbackLayer(_broken_durable(), cache)

        with pytest.raises(PersistenceError, match="both failed"):
            asyncio.run(layer.save_writing(_writing_draft()))

    def test_read_raises_persistence_error(self):
        cache = Mock(spec=LocalCache)
        cache.get.side_effect = OSError("disk full")
        layer = PersistenceFallbackLayer(_broken_durable(), cache)

        with pytest.raises(PersistenceError):
            asyncio.run(layer.list_vocabulary("user-1"))
