"""
Database connection management.

Provides SQLite connection for usage record persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "usage_guard.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Connections run in autocommit mode (isolation_level=None) so that each
    usage write is a single explicit transaction controlled by the caller.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
