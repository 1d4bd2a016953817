"""
Database connection management.

Provides SQLite connections for the account ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_cost_proxy.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 30.0) -> sqlite3.Connection:
    """Create and return a SQLite connection in autocommit mode.

    Transactions are opened explicitly by callers (BEGIN IMMEDIATE) so the
    write lock is taken before any conditional check runs.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a competing writer's lock

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
