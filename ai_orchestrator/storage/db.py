"""
Database connection management.

Provides SQLite connections for the job store, dead-letter store and cost ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_orchestrator.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection with foreign keys enabled.

    The busy timeout lets concurrent workers wait for a write lock instead of
    failing immediately with ``database is locked``.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=30.0)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
