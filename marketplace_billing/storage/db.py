"""
Database connection management.

Provides the SQLite connection behind the billing repository.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "marketplace_billing.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode; multi-row writes are grouped
    explicitly with BEGIN IMMEDIATE by the repository.

    Args:
        db_path: Path to SQLite database file (":memory:" for a private database)

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
