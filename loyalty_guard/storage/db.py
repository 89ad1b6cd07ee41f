"""
Database connection management.

Provides SQLite connection for the loyalty data store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "loyalty_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection in autocommit mode.

    Transactions are opened explicitly with ``BEGIN IMMEDIATE`` so that a
    conditional update holds the write lock from its read to its write.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), isolation_level=None, timeout=5.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
