"""
Database connection management.

Provides the SQLite connection backing the snapshot store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "quota_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection to the snapshot database.

    ``~`` is expanded and missing parent directories are created, so a
    configured path such as ``~/.local/share/quota-guard/snapshots.db``
    works on first use.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with a busy timeout for concurrent readers
    """
    path = Path(db_path).expanduser()
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=5.0)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
