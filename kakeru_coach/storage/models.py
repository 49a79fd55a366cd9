"""
Data models for storage layer.

Defines the learner's records and the JSON shapes they are stored in.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


RANKS = ("S", "A", "B", "C", "D")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class WritingMode(Enum):
    """Fixed categories of writing exercise."""
    GOAL = "goal"
    HOBBY = "hobby"
    BUSINESS = "business"
    DAILY = "daily"
    SOCIAL = "social"
    EXPRESSION = "expression"
    CUSTOM = "custom"


@dataclass(frozen=True)
class ModeInfo:
    """Presentation and behavior metadata for a writing mode."""
    label: str
    word_range: Optional[Tuple[int, int]]
    default_word_count: int
    regenerable: bool = True
    manual_entry: bool = False


MODE_INFO: Dict[WritingMode, ModeInfo] = {
    WritingMode.GOAL: ModeInfo("Goal", (80, 120), 100),
    WritingMode.HOBBY: ModeInfo("Hobby", (60, 100), 80),
    WritingMode.BUSINESS: ModeInfo("Business", (150, 250), 200),
    WritingMode.DAILY: ModeInfo("Daily life", (80, 120), 100),
    WritingMode.SOCIAL: ModeInfo("Social issues", (200, 300), 250),
    WritingMode.EXPRESSION: ModeInfo("Expression", (60, 80), 60, manual_entry=True),
    WritingMode.CUSTOM: ModeInfo("Custom", None, 80, regenerable=False, manual_entry=True),
}


class VocabType(Enum):
    WORD = "word"
    EXPRESSION = "expression"


@dataclass(frozen=True)
class LearnerProfile:
    """What the remote capabilities need to know about the learner."""
    uid: str
    level: str = "B1"
    goal: str = ""
    hobbies: Tuple[str, ...] = ()
    explanation_lang: str = "ja"
    plan: str = "free"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uid": self.uid,
            "level": self.level,
            "goal": self.goal,
            "hobbies": list(self.hobbies),
            "explanation_lang": self.explanation_lang,
            "plan": self.plan,
        }


@dataclass(frozen=True)
class TokenUsage:
    """Cached copy of the learner's token usage for the current period.

    tokens_used may exceed token_limit (soft overage), so tokens_remaining
    can be negative.
    """
    tokens_used: int
    token_limit: int
    period_start: datetime

    def __post_init__(self):
        if self.tokens_used < 0:
            raise ValueError("tokens_used must be >= 0")
        if self.token_limit <= 0:
            raise ValueError("token_limit must be > 0")

    @property
    def tokens_remaining(self) -> int:
        return self.token_limit - self.tokens_used


@dataclass(frozen=True)
class Prompt:
    """A writing prompt. Regenerating replaces it, never mutates it."""
    text: str
    hint: str
    recommended_word_count: int
    example_translation: Optional[str] = None

    def __post_init__(self):
        if self.recommended_word_count <= 0:
            raise ValueError("recommended_word_count must be > 0")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Prompt":
        return cls(
            text=str(data["prompt"]).strip(),
            hint=str(data.get("hint") or ""),
            recommended_word_count=int(data["recommended_words"]),
            example_translation=data.get("example_translation") or None,
        )


@dataclass(frozen=True)
class Improvement:
    """A located correction within the learner's answer."""
    original: str
    suggestion: str
    explanation: str
    category: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original": self.original,
            "suggestion": self.suggestion,
            "explanation": self.explanation,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Improvement":
        return cls(
            original=str(data["original"]),
            suggestion=str(data["suggestion"]),
            explanation=str(data["explanation"]),
            category=str(data.get("category") or "grammar"),
        )


@dataclass(frozen=True)
class VocabularyItem:
    """A word or expression suggested by the grader."""
    term: str
    meaning: str
    example: Optional[str] = None
    type: VocabType = VocabType.WORD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "term": self.term,
            "meaning": self.meaning,
            "example": self.example,
            "type": self.type.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VocabularyItem":
        return cls(
            term=str(data["term"]),
            meaning=str(data["meaning"]),
            example=data.get("example") or None,
            type=VocabType(data.get("type") or "word"),
        )


@dataclass(frozen=True)
class Feedback:
    """Complete grading result. Never partially built."""
    overall_rank: str
    grammar_rank: str
    vocabulary_rank: str
    structure_rank: str
    content_rank: str
    summary: str
    improvements: Tuple[Improvement, ...]
    vocabulary_items: Tuple[VocabularyItem, ...]
    model_answer: str
    structure_analysis: Optional[str] = None

    def __post_init__(self):
        for name in ("overall_rank", "grammar_rank", "vocabulary_rank",
                     "structure_rank", "content_rank"):
            if getattr(self, name) not in RANKS:
                raise ValueError(f"{name} must be one of {RANKS}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_rank": self.overall_rank,
            "grammar_rank": self.grammar_rank,
            "vocabulary_rank": self.vocabulary_rank,
            "structure_rank": self.structure_rank,
            "content_rank": self.content_rank,
            "summary": self.summary,
            "improvements": [i.to_dict() for i in self.improvements],
            "structure_analysis": self.structure_analysis,
            "vocabulary_items": [v.to_dict() for v in self.vocabulary_items],
            "model_answer": self.model_answer,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Feedback":
        """Build a Feedback from a grader payload.

        Raises:
            ValueError: If any required field is missing or malformed
        """
        try:
            return cls(
                overall_rank=str(data["overall_rank"]).upper(),
                grammar_rank=str(data["grammar_rank"]).upper(),
                vocabulary_rank=str(data["vocabulary_rank"]).upper(),
                structure_rank=str(data["structure_rank"]).upper(),
                content_rank=str(data["content_rank"]).upper(),
                summary=str(data["summary"]),
                improvements=tuple(Improvement.from_dict(i) for i in data["improvements"]),
                vocabulary_items=tuple(
                    VocabularyItem.from_dict(v) for v in data.get("vocabulary_items") or []
                ),
                model_answer=str(data["model_answer"]),
                structure_analysis=data.get("structure_analysis") or None,
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Incomplete feedback payload: {e}") from e


@dataclass(frozen=True)
class WritingDraft:
    """Everything needed to create a Writing; the store assigns id and time."""
    owner_id: str
    mode: WritingMode
    prompt: str
    prompt_hint: str
    recommended_word_count: int
    user_answer: str
    feedback: Feedback
    word_count: int


@dataclass(frozen=True)
class Writing:
    """A graded submission. Append-only once created."""
    id: str
    owner_id: str
    mode: WritingMode
    prompt: str
    prompt_hint: str
    recommended_word_count: int
    user_answer: str
    feedback: Feedback
    word_count: int
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_draft(cls, writing_id: str, draft: WritingDraft) -> "Writing":
        return cls(
            id=writing_id,
            owner_id=draft.owner_id,
            mode=draft.mode,
            prompt=draft.prompt,
            prompt_hint=draft.prompt_hint,
            recommended_word_count=draft.recommended_word_count,
            user_answer=draft.user_answer,
            feedback=draft.feedback,
            word_count=draft.word_count,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "mode": self.mode.value,
            "prompt": self.prompt,
            "prompt_hint": self.prompt_hint,
            "recommended_word_count": self.recommended_word_count,
            "user_answer": self.user_answer,
            "feedback": self.feedback.to_dict(),
            "word_count": self.word_count,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Writing":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            mode=WritingMode(data["mode"]),
            prompt=data["prompt"],
            prompt_hint=data.get("prompt_hint") or "",
            recommended_word_count=int(data["recommended_word_count"]),
            user_answer=data["user_answer"],
            feedback=Feedback.from_dict(data["feedback"]),
            word_count=int(data["word_count"]),
            created_at=_parse_timestamp(data["created_at"]),
        )


@dataclass(frozen=True)
class VocabularyDraft:
    owner_id: str
    type: VocabType
    term: str
    meaning: str
    example: Optional[str] = None
    source: Optional[str] = None
    tags: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class VocabularyEntry:
    """A word or expression saved to the learner's vocabulary book."""
    id: str
    owner_id: str
    type: VocabType
    term: str
    meaning: str
    example: Optional[str] = None
    source: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    review_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_draft(cls, entry_id: str, draft: VocabularyDraft) -> "VocabularyEntry":
        return cls(
            id=entry_id,
            owner_id=draft.owner_id,
            type=draft.type,
            term=draft.term,
            meaning=draft.meaning,
            example=draft.example,
            source=draft.source,
            tags=draft.tags,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "type": self.type.value,
            "term": self.term,
            "meaning": self.meaning,
            "example": self.example,
            "source": self.source,
            "tags": sorted(self.tags),
            "review_count": self.review_count,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VocabularyEntry":
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            type=VocabType(data["type"]),
            term=data["term"],
            meaning=data.get("meaning") or "",
            example=data.get("example") or None,
            source=data.get("source") or None,
            tags=frozenset(data.get("tags") or ()),
            review_count=int(data.get("review_count") or 0),
            created_at=_parse_timestamp(data["created_at"]),
        )


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of tokens spent by one remote call.

    Append-only events that make up the learner's token ledger.
    """
    timestamp: datetime
    learner_id: str
    operation: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    request_id: Optional[str] = None


@dataclass
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


def messages_to_dicts(messages: List[ChatMessage]) -> List[Dict[str, str]]:
    return [m.to_dict() for m in messages]
