"""
Database connection management.

Provides SQLite connections for the persistent store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "abuse_guard.db"

# Seconds a writer waits on a locked database before giving up.
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection with foreign keys enabled.

    Rows come back as ``sqlite3.Row`` so callers can address columns by
    name. The busy timeout lets concurrent writers queue on ``BEGIN
    IMMEDIATE`` instead of failing.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
