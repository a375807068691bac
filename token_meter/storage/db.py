"""
Database connection management.

Provides SQLite connections for the durable storage backend.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "token_meter.db"
BUSY_TIMEOUT_SECONDS = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    Connections are opened per operation, in autocommit mode so callers
    control transactions explicitly with ``BEGIN IMMEDIATE``.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with WAL journaling enabled
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
    conn.execute("PRAGMA journal_mode = WAL")
    return conn
