"""Database connection manager with FK enforcement and WAL mode."""

import os
import sqlite3
from contextlib import contextmanager
from typing import Generator

DEFAULT_DB_PATH = './data/mentions.db'


@contextmanager
def get_connection(db_path: str = None, timeout: float = 5.0) -> Generator[sqlite3.Connection, None, None]:
    """
    Context manager that yields an SQLite connection with FK enforcement and WAL mode.

    Args:
        db_path: Path to the SQLite database file. If None, reads from DB_PATH
                 environment variable, falling back to './data/mentions.db'.
        timeout: Seconds to wait on a locked database before sqlite3 raises
                 "database is locked" (bounds how long a write can block).

    Yields:
        sqlite3.Connection: Database connection with foreign keys enabled,
                           WAL mode active, and row_factory set to sqlite3.Row.

    Example:
        with get_connection() as conn:
            rows = conn.execute("SELECT id, symbol FROM tokens").fetchall()
    """
    if db_path is None:
        db_path = os.environ.get('DB_PATH', DEFAULT_DB_PATH)

    conn = None
    try:
        # Connect with cross-thread compatibility
        conn = sqlite3.connect(db_path, timeout=timeout, check_same_thread=False)

        # Enable dict-like row access
        conn.row_factory = sqlite3.Row

        # Enable foreign key constraints
        conn.execute("PRAGMA foreign_keys = ON")

        conn.execute("PRAGMA journal_mode = WAL")

        yield conn

    finally:
        if conn is not None:
            conn.close()
