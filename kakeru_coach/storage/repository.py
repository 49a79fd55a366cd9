"""
Repository pattern for data access.

The durable store for writings and vocabulary, keyed by learner, and the
append-only token usage ledger.
"""

import json
import uuid
from datetime import datetime
from typing import List, Optional

from .db import get_connection
from .models import (
    Feedback,
    UsageEvent,
    VocabularyDraft,
    VocabularyEntry,
    Writing,
    WritingDraft,
    WritingMode,
    VocabType,
)


DEFAULT_DB_PATH = "kakeru.db"


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the writing, vocabulary and usage tables if they don't exist.

    usage_event is an append-only ledger. No UPDATE or DELETE is ever
    performed on it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS writing (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                mode TEXT NOT NULL,
                prompt TEXT NOT NULL,
                prompt_hint TEXT NOT NULL DEFAULT '',
                recommended_word_count INTEGER NOT NULL,
                user_answer TEXT NOT NULL,
                feedback_json TEXT NOT NULL,
                word_count INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_writing_owner ON writing(owner_id, created_at);

            CREATE TABLE IF NOT EXISTS vocabulary_entry (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                type TEXT NOT NULL,
                term TEXT NOT NULL,
                meaning TEXT NOT NULL DEFAULT '',
                example TEXT,
                source TEXT,
                tags_json TEXT NOT NULL DEFAULT '[]',
                review_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_vocab_owner ON vocabulary_entry(owner_id, created_at);

            CREATE TABLE IF NOT EXISTS usage_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                learner_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                model TEXT NOT NULL,
                prompt_tokens INTEGER NOT NULL,
                completion_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                request_id TEXT
            );
        """)
        conn.commit()
    finally:
        conn.close()


class DurableStore:
    """SQLite-backed durable store for writings and vocabulary entries.

    Every method opens its own connection, so an instance can be shared
    across worker threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def create_writing(self, draft: WritingDraft) -> Writing:
        """Insert a new writing and return it with its assigned id."""
        writing = Writing.from_draft(uuid.uuid4().hex, draft)
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO writing
                (id, owner_id, mode, prompt, prompt_hint, recommended_word_count,
                 user_answer, feedback_json, word_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                writing.id,
                writing.owner_id,
                writing.mode.value,
                writing.prompt,
                writing.prompt_hint,
                writing.recommended_word_count,
                writing.user_answer,
                json.dumps(writing.feedback.to_dict(), ensure_ascii=False),
                writing.word_count,
                writing.created_at.isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()
        return writing

    def get_writing(self, owner_id: str, writing_id: str) -> Optional[Writing]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM writing WHERE owner_id = ? AND id = ?",
                (owner_id, writing_id),
            ).fetchone()
        finally:
            conn.close()
        return _row_to_writing(row) if row is not None else None

    def list_writings(self, owner_id: str, limit: int = 100) -> List[Writing]:
        """List a learner's writings, newest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM writing WHERE owner_id = ? "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (owner_id, limit),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_writing(row) for row in rows]

    def create_vocabulary(self, draft: VocabularyDraft) -> VocabularyEntry:
        entry = VocabularyEntry.from_draft(uuid.uuid4().hex, draft)
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO vocabulary_entry
                (id, owner_id, type, term, meaning, example, source,
                 tags_json, review_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.id,
                entry.owner_id,
                entry.type.value,
                entry.term,
                entry.meaning,
                entry.example,
                entry.source,
                json.dumps(sorted(entry.tags)),
                entry.review_count,
                entry.created_at.isoformat(),
            ))
            conn.commit()
        finally:
            conn.close()
        return entry

    def list_vocabulary(self, owner_id: str) -> List[VocabularyEntry]:
        """List a learner's vocabulary entries, newest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM vocabulary_entry WHERE owner_id = ? "
                "ORDER BY created_at DESC, rowid DESC",
                (owner_id,),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_vocabulary(row) for row in rows]

    def delete_vocabulary(self, owner_id: str, entry_id: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "DELETE FROM vocabulary_entry WHERE owner_id = ? AND id = ?",
                (owner_id, entry_id),
            )
            conn.commit()
        finally:
            conn.close()


def _row_to_writing(row) -> Writing:
    return Writing(
        id=row["id"],
        owner_id=row["owner_id"],
        mode=WritingMode(row["mode"]),
        prompt=row["prompt"],
        prompt_hint=row["prompt_hint"],
        recommended_word_count=row["recommended_word_count"],
        user_answer=row["user_answer"],
        feedback=Feedback.from_dict(json.loads(row["feedback_json"])),
        word_count=row["word_count"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_vocabulary(row) -> VocabularyEntry:
    return VocabularyEntry(
        id=row["id"],
        owner_id=row["owner_id"],
        type=VocabType(row["type"]),
        term=row["term"],
        meaning=row["meaning"],
        example=row["example"],
        source=row["source"],
        tags=frozenset(json.loads(row["tags_json"])),
        review_count=row["review_count"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def insert_usage_event(event: UsageEvent, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single usage event to the ledger.

    Args:
        event: The usage event to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO usage_event
            (timestamp, learner_id, operation, model, prompt_tokens,
             completion_tokens, total_tokens, request_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            event.timestamp.isoformat(),
            event.learner_id,
            event.operation,
            event.model,
            event.prompt_tokens,
            event.completion_tokens,
            event.total_tokens,
            event.request_id
        ))
        conn.commit()
    finally:
        conn.close()


def sum_usage_tokens(
    learner_id: str,
    since: datetime,
    db_path: str = DEFAULT_DB_PATH
) -> int:
    """Total tokens a learner has spent since a point in time.

    Args:
        learner_id: Learner whose ledger is summed
        since: Inclusive lower bound on event timestamps
        db_path: Path to SQLite database file

    Returns:
        Sum of total_tokens, 0 when there are no events
    """
    conn = get_connection(db_path)
    try:
        row = conn.execute(
            "SELECT SUM(total_tokens) FROM usage_event "
            "WHERE learner_id = ? AND timestamp >= ?",
            (learner_id, since.isoformat()),
        ).fetchone()
        return int(row[0] or 0)
    finally:
        conn.close()


def fetch_recent_usage_events(
    learner_id: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[UsageEvent]:
    """Fetch recent usage events, newest first.

    Args:
        learner_id: Optional filter for a specific learner
        limit: Maximum number of events to return
        db_path: Path to SQLite database file

    Returns:
        List of usage events ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = (
            "SELECT timestamp, learner_id, operation, model, prompt_tokens, "
            "completion_tokens, total_tokens, request_id FROM usage_event"
        )
        params: list = []
        if learner_id:
            query += " WHERE learner_id = ?"
            params.append(learner_id)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        events = []
        for row in conn.execute(query, params).fetchall():
            events.append(UsageEvent(
                timestamp=datetime.fromisoformat(row[0]),
                learner_id=row[1],
                operation=row[2],
                model=row[3],
                prompt_tokens=row[4],
                completion_tokens=row[5],
                total_tokens=row[6],
                request_id=row[7]
            ))
        return events
    finally:
        conn.close()
