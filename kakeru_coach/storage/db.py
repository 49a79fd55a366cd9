"""
Database connection management.

Provides SQLite connections for the durable store and the on-device cache.
Connections are short-lived: each repository call opens one inside the
worker thread that runs it.
"""

import sqlite3
from pathlib import Path


def get_connection(db_path: str = "kakeru.db") -> sqlite3.Connection:
    """Open a SQLite connection whose rows can be read by column name.

    Args:
        db_path: Path to SQLite database file, created with its parent
            directory if missing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    if str(db_path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
