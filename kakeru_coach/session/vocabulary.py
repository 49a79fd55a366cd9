"""
Vocabulary book.

The learner's saved words and expressions: added by hand or promoted from
the items a grader suggested.
"""

from typing import Dict, List, Optional

from kakeru_coach.storage.models import (
    VocabType,
    VocabularyDraft,
    VocabularyEntry,
    VocabularyItem,
)
from .context import SessionContext


TABS = ("all", "word", "expression")


class VocabularyLimitReached(Exception):
    """Raised when the plan's vocabulary allowance is full."""


class VocabularyBook:
    """In-session view of the learner's vocabulary entries, newest first."""

    def __init__(self, context: SessionContext):
        self.context = context
        self.entries: List[VocabularyEntry] = []

    @property
    def owner_id(self) -> str:
        return self.context.profile.uid

    async def load(self) -> List[VocabularyEntry]:
        self.entries = await self.context.store.list_vocabulary(self.owner_id)
        return self.entries

    def _check_limit(self) -> None:
        plan = self.context.config.get_plan(self.context.profile.plan)
        if plan.vocabulary_limit is not None and len(self.entries) >= plan.vocabulary_limit:
            raise VocabularyLimitReached(
                f"The {self.context.profile.plan} plan holds up to {plan.vocabulary_limit} entries"
            )

    async def add(
        self,
        vocab_type: VocabType,
        term: str,
        meaning: str = "",
        example: Optional[str] = None,
        source: Optional[str] = None
    ) -> VocabularyEntry:
        """Save a new entry.

        Raises:
            ValueError: If term is empty
            VocabularyLimitReached: If the plan's allowance is full
            PersistenceError: If neither tier could store it
        """
        term = term.strip()
        if not term:
            raise ValueError("term is required and cannot be empty")
        self._check_limit()

        entry = await self.context.store.save_vocabulary(VocabularyDraft(
            owner_id=self.owner_id,
            type=vocab_type,
            term=term,
            meaning=meaning.strip(),
            example=(example or "").strip() or None,
            source=source,
        ))
        self.entries.insert(0, entry)
        return entry

    async def promote(self, item: VocabularyItem, source: Optional[str] = None) -> VocabularyEntry:
        """Copy a grader-suggested item into the book; no link is kept."""
        return await self.add(item.type, item.term, item.meaning, item.example, source)

    async def delete(self, entry_id: str) -> None:
        await self.context.store.delete_vocabulary(self.owner_id, entry_id)
        self.entries = [e for e in self.entries if e.id != entry_id]

    def filter(self, tab: str = "all", query: str = "") -> List[VocabularyEntry]:
        """Entries on a tab whose term or meaning contains the query."""
        if tab not in TABS:
            raise ValueError(f"tab must be one of: {list(TABS)}")
        needle = query.strip().lower()
        results = []
        for entry in self.entries:
            if tab != "all" and entry.type.value != tab:
                continue
            if needle and needle not in entry.term.lower() and needle not in entry.meaning.lower():
                continue
            results.append(entry)
        return results

    def counts(self) -> Dict[str, int]:
        words = sum(1 for e in self.entries if e.type == VocabType.WORD)
        return {
            "all": len(self.entries),
            "word": words,
            "expression": len(self.entries) - words,
        }
