"""SQLite datastore for videos, mentions, and token reference data.

This module handles all database reads and writes for the ingestion pipeline
when it runs against a local SQLite database (development, tests, and
single-host deployments). It exposes the same three operations as the REST
datastore so the chunked writer does not care which backend it talks to.

Key Methods:
    select_tokens — read all {id, symbol} rows ordered by id ascending
    upsert_videos — idempotent upsert into tiktoks (conflict target id)
    insert_mentions — append-only insert into mentions

Every write runs in its own transaction: a request either lands completely or
not at all, which is what lets the writer count durable chunks exactly.
sqlite3 errors are translated into the ingestion taxonomy:
    "database is locked" / "busy"   -> TransientWriteError (retried)
    integrity and schema errors     -> ValidationWriteError (fatal)
"""

import sqlite3
from typing import Any, Dict, List, Sequence

import structlog

from mention_ingest.backend.db.connection import get_connection
from mention_ingest.backend.utils.errors import (
    DatastoreError,
    TransientWriteError,
    ValidationWriteError,
)
from mention_ingest.models.video_models import MentionRecord, VideoRecord

logger = structlog.get_logger(__name__)

_UPSERT_VIDEO_SQL = """
    INSERT INTO tiktoks (id, username, url, thumbnail, created_at, fetched_at, views, comments)
    VALUES (:id, :username, :url, :thumbnail, :created_at, :fetched_at, :views, :comments)
    ON CONFLICT(id) DO UPDATE SET
        username = excluded.username,
        url = excluded.url,
        thumbnail = excluded.thumbnail,
        created_at = excluded.created_at,
        fetched_at = excluded.fetched_at,
        views = excluded.views,
        comments = excluded.comments
"""

_INSERT_MENTION_SQL = """
    INSERT INTO mentions (tiktok_id, token_id, count, mention_at)
    VALUES (:tiktok_id, :token_id, :count, :mention_at)
"""

_TRANSIENT_MARKERS = ("locked", "busy", "disk i/o error")


class SqliteDatastore:
    """Datastore backed by a SQLite file.

    Args:
        db_path: Database file path (default: $DB_PATH or ./data/mentions.db)
        timeout: Seconds a request waits on a locked database before failing
    """

    def __init__(self, db_path: str = None, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout

    def select_tokens(self) -> List[Dict[str, Any]]:
        """Return all tokens as {"id", "symbol"} dicts ordered by id ascending.

        Raises:
            DatastoreError: If the tokens table cannot be read
        """
        try:
            with get_connection(self.db_path, timeout=self.timeout) as conn:
                rows = conn.execute(
                    "SELECT id, symbol FROM tokens ORDER BY id ASC"
                ).fetchall()
        except sqlite3.Error as e:
            raise _translate_error(e, "select_tokens") from e

        return [{"id": row["id"], "symbol": row["symbol"]} for row in rows]

    def upsert_videos(self, records: Sequence[VideoRecord]) -> int:
        """Upsert video rows keyed by id in a single transaction.

        Re-running with identical input leaves exactly one row per id with the
        latest values (last writer wins).

        Returns:
            Number of records written
        """
        return self._write_many(_UPSERT_VIDEO_SQL, [record.to_row() for record in records], "upsert_videos")

    def insert_mentions(self, records: Sequence[MentionRecord]) -> int:
        """Append mention rows in a single transaction.

        Not idempotent: inserting the same records twice stores them twice.

        Returns:
            Number of records written
        """
        return self._write_many(_INSERT_MENTION_SQL, [record.to_row() for record in records], "insert_mentions")

    def _write_many(self, sql: str, rows: List[Dict[str, Any]], operation: str) -> int:
        if not rows:
            return 0

        try:
            with get_connection(self.db_path, timeout=self.timeout) as conn:
                try:
                    conn.executemany(sql, rows)
                    conn.commit()
                except sqlite3.Error:
                    conn.rollback()
                    raise
        except sqlite3.Error as e:
            raise _translate_error(e, operation) from e

        logger.debug("sqlite_rows_written", operation=operation, row_count=len(rows))
        return len(rows)


def _translate_error(error: sqlite3.Error, operation: str) -> DatastoreError:
    """Map a sqlite3 exception onto TransientWriteError or ValidationWriteError."""
    message = f"{operation} failed: {error}"

    if isinstance(error, sqlite3.OperationalError):
        lowered = str(error).lower()
        if any(marker in lowered for marker in _TRANSIENT_MARKERS):
            logger.warning("sqlite_transient_error", operation=operation, error=str(error))
            return TransientWriteError(message)

    logger.error("sqlite_validation_error", operation=operation,
                 error=str(error), error_type=type(error).__name__)
    return ValidationWriteError(message)
