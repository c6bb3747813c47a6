"""Schema initialization for the SQLite datastore and run-progress database."""

import os
from pathlib import Path

from mention_ingest.backend.db.connection import DEFAULT_DB_PATH, get_connection

SCHEMA_SQL_PATH = Path(__file__).parent / "schema.sql"


def initialize_schema(db_path: str = None) -> None:
    """Create all tables from schema.sql if they do not exist yet.

    PRAGMA lines are skipped because executescript() resets per-connection
    PRAGMAs; get_connection() applies them on every connection instead.

    Args:
        db_path: Database file path (default: $DB_PATH or ./data/mentions.db).
                 Parent directories are created as needed.
    """
    if db_path is None:
        db_path = os.environ.get('DB_PATH', DEFAULT_DB_PATH)
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

    sql = SCHEMA_SQL_PATH.read_text()
    lines = [line for line in sql.splitlines()
             if not line.strip().upper().startswith("PRAGMA")]

    with get_connection(db_path) as conn:
        conn.executescript("\n".join(lines))
        conn.commit()
