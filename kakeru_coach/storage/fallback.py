"""
Persistence with local fallback.

Every durable read and write is attempted first; on any failure the
operation is served by the on-device cache instead, so a session survives
backend outages.

Guarantees:
1. Writes succeed from the caller's view unless both tiers fail
2. Reads return the durable result when available, else the cached one
3. Cached records carry a reserved id prefix and are never synced back
"""

import asyncio
import json
import logging
import time
import uuid
from enum import Enum
from typing import Any, Callable, List, Optional, TypeVar

from .local_cache import LocalCache
from .models import (
    VocabularyDraft,
    VocabularyEntry,
    Writing,
    WritingDraft,
)
from .repository import DurableStore


logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCAL_ID_PREFIX = "local-"
VOCAB_KEY = "kakeru-vocab:{owner}"
WRITING_KEY = "writing-{id}"
WRITING_INDEX_KEY = "kakeru-writings:{owner}"


class StoreStatus(Enum):
    """Which tier served the most recent operation."""
    DURABLE = "durable"
    LOCAL_ONLY = "local_only"


class PersistenceError(Exception):
    """Raised when both the durable store and the local cache fail."""


class PersistenceFallbackLayer:
    """Durable store with a transparent local-cache fallback.

    `status` exposes the tier that handled the latest operation so callers
    can tell degraded mode apart if they care to.
    """

    def __init__(
        self,
        durable: DurableStore,
        cache: LocalCache,
        local_id_prefix: str = LOCAL_ID_PREFIX
    ):
        self.durable = durable
        self.cache = cache
        self.local_id_prefix = local_id_prefix
        self.status = StoreStatus.DURABLE

    def is_local_id(self, record_id: str) -> bool:
        """Whether a record only ever lived in the local cache."""
        return record_id.startswith(self.local_id_prefix)

    def _new_local_id(self) -> str:
        return f"{self.local_id_prefix}{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"

    async def _durable(self, fn: Callable[..., T], *args: Any) -> T:
        result = await asyncio.to_thread(fn, *args)
        self.status = StoreStatus.DURABLE
        return result

    def _local(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            result = fn(*args)
        except Exception as e:
            raise PersistenceError(f"Durable store and local cache both failed: {e}") from e
        self.status = StoreStatus.LOCAL_ONLY
        return result

    # -- writings -----------------------------------------------------------

    async def save_writing(self, draft: WritingDraft) -> Writing:
        """Persist a new writing, durably if possible."""
        try:
            return await self._durable(self.durable.create_writing, draft)
        except Exception as e:
            logger.warning("Durable write of writing failed, caching locally: %s", e)
        return self._local(self._cache_writing, draft)

    def _cache_writing(self, draft: WritingDraft) -> Writing:
        writing = Writing.from_draft(self._new_local_id(), draft)
        self.cache.set(
            WRITING_KEY.format(id=writing.id),
            json.dumps(writing.to_dict(), ensure_ascii=False),
        )
        index_key = WRITING_INDEX_KEY.format(owner=draft.owner_id)
        ids = json.loads(self.cache.get(index_key) or "[]")
        ids.insert(0, writing.id)
        self.cache.set(index_key, json.dumps(ids))
        return writing

    async def get_writing(self, owner_id: str, writing_id: str) -> Optional[Writing]:
        """Read a writing by id; local ids go straight to the cache."""
        if not self.is_local_id(writing_id):
            try:
                return await self._durable(self.durable.get_writing, owner_id, writing_id)
            except Exception as e:
                logger.warning("Durable read of writing %s failed, using cache: %s", writing_id, e)
        return self._local(self._cached_writing, writing_id)

    def _cached_writing(self, writing_id: str) -> Optional[Writing]:
        stored = self.cache.get(WRITING_KEY.format(id=writing_id))
        if stored is None:
            return None
        return Writing.from_dict(json.loads(stored))

    async def list_writings(self, owner_id: str) -> List[Writing]:
        try:
            return await self._durable(self.durable.list_writings, owner_id)
        except Exception as e:
            logger.warning("Durable listing of writings failed, using cache: %s", e)
        return self._local(self._cached_writings, owner_id)

    def _cached_writings(self, owner_id: str) -> List[Writing]:
        ids = json.loads(self.cache.get(WRITING_INDEX_KEY.format(owner=owner_id)) or "[]")
        writings = []
        for writing_id in ids:
            writing = self._cached_writing(writing_id)
            if writing is not None:
                writings.append(writing)
        return writings

    # -- vocabulary ---------------------------------------------------------

    async def save_vocabulary(self, draft: VocabularyDraft) -> VocabularyEntry:
        try:
            return await self._durable(self.durable.create_vocabulary, draft)
        except Exception as e:
            logger.warning("Durable write of vocabulary failed, caching locally: %s", e)
        return self._local(self._cache_vocabulary, draft)

    def _cache_vocabulary(self, draft: VocabularyDraft) -> VocabularyEntry:
        entry = VocabularyEntry.from_draft(self._new_local_id(), draft)
        key = VOCAB_KEY.format(owner=draft.owner_id)
        stored = json.loads(self.cache.get(key) or "[]")
        stored.insert(0, entry.to_dict())
        self.cache.set(key, json.dumps(stored, ensure_ascii=False))
        return entry

    async def delete_vocabulary(self, owner_id: str, entry_id: str) -> None:
        """Delete an entry; local ids are removed from the cache directly."""
        if not self.is_local_id(entry_id):
            try:
                await self._durable(self.durable.delete_vocabulary, owner_id, entry_id)
                return
            except Exception as e:
                logger.warning("Durable delete of vocabulary %s failed, using cache: %s", entry_id, e)
        self._local(self._uncache_vocabulary, owner_id, entry_id)

    def _uncache_vocabulary(self, owner_id: str, entry_id: str) -> None:
        key = VOCAB_KEY.format(owner=owner_id)
        stored = json.loads(self.cache.get(key) or "[]")
        filtered = [e for e in stored if e.get("id") != entry_id]
        self.cache.set(key, json.dumps(filtered, ensure_ascii=False))

    async def list_vocabulary(self, owner_id: str) -> List[VocabularyEntry]:
        try:
            return await self._durable(self.durable.list_vocabulary, owner_id)
        except Exception as e:
            logger.warning("Durable listing of vocabulary failed, using cache: %s", e)
        return self._local(self._cached_vocabulary, owner_id)

    def _cached_vocabulary(self, owner_id: str) -> List[VocabularyEntry]:
        stored = json.loads(self.cache.get(VOCAB_KEY.format(owner=owner_id)) or "[]")
        return [VocabularyEntry.from_dict(e) for e in stored]
