"""Per-run high-water-mark progress for mention inserts.

Mention rows are append-only, so a run that stopped partway cannot simply be
replayed. RunProgressStore records, per batch signature, the mention_at used
and the last chunk known durable. A resumed run reuses that mention_at and
continues from the next chunk.

Progress lives in its own SQLite file, local to the process that supervises
ingestion, independent of which datastore the rows go to.
"""

import hashlib
import json
import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

import structlog

from mention_ingest.backend.db.connection import get_connection
from mention_ingest.backend.db.schema import initialize_schema
from mention_ingest.backend.utils.errors import ProgressStoreError
from mention_ingest.models.video_models import RawBatch, parse_timestamp

logger = structlog.get_logger(__name__)

RUN_STATUS_RUNNING = "running"
RUN_STATUS_PARTIAL = "partial"
RUN_STATUS_COMPLETED = "completed"
RUN_STATUS_FAILED = "failed"


@dataclass
class RunProgress:
    """Stored progress of one ingestion run."""
    batch_signature: str
    snapshot_fingerprint: str
    mention_at: datetime
    chunk_size: int
    total_chunks: int
    chunks_written: int
    mentions_written: int
    status: str

    @property
    def next_chunk(self) -> int:
        return self.chunks_written + 1


def build_batch_signature(raw_batch: Union[Dict[str, Any], RawBatch]) -> str:
    """Deterministic sha256 signature of a scrape batch.

    A batch document is parsed into a RawBatch first, so the JSON dict and
    the RawBatch parsed from it sign identically and a run started from one
    can be resumed from the other.
    """
    if not isinstance(raw_batch, RawBatch):
        raw_batch = RawBatch.from_dict(raw_batch)
    serialized = json.dumps(asdict(raw_batch), sort_keys=True, default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class RunProgressStore:
    """SQLite-backed store of ingestion_runs rows.

    sqlite3 failures are raised as ProgressStoreError.

    Args:
        db_path: Progress database file; the schema is created on first use
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        initialize_schema(db_path)

    def load(self, batch_signature: str) -> Optional[RunProgress]:
        """Return stored progress for a batch, or None if it never started writing mentions."""
        try:
            with get_connection(self.db_path) as conn:
                row = conn.execute(
                    """
                    SELECT batch_signature, snapshot_fingerprint, mention_at, chunk_size,
                           total_chunks, chunks_written, mentions_written, status
                    FROM ingestion_runs
                    WHERE batch_signature = ?
                    """,
                    (batch_signature,)
                ).fetchone()
        except sqlite3.Error as e:
            raise ProgressStoreError(f"Failed to load run progress: {e}") from e

        if row is None:
            return None

        return RunProgress(
            batch_signature=row["batch_signature"],
            snapshot_fingerprint=row["snapshot_fingerprint"],
            mention_at=parse_timestamp(row["mention_at"]),
            chunk_size=row["chunk_size"],
            total_chunks=row["total_chunks"],
            chunks_written=row["chunks_written"],
            mentions_written=row["mentions_written"],
            status=row["status"],
        )

    def start(
        self,
        batch_signature: str,
        snapshot_fingerprint: str,
        mention_at: datetime,
        chunk_size: int,
        total_chunks: int,
    ) -> RunProgress:
        """Record a fresh run, replacing any earlier progress for the same batch."""
        try:
            with get_connection(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO ingestion_runs (
                        batch_signature, snapshot_fingerprint, mention_at, chunk_size,
                        total_chunks, chunks_written, mentions_written, status, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, 0, 0, ?, ?)
                    ON CONFLICT(batch_signature) DO UPDATE SET
                        snapshot_fingerprint = excluded.snapshot_fingerprint,
                        mention_at = excluded.mention_at,
                        chunk_size = excluded.chunk_size,
                        total_chunks = excluded.total_chunks,
                        chunks_written = 0,
                        mentions_written = 0,
                        status = excluded.status,
                        warnings = NULL,
                        updated_at = excluded.updated_at
                    """,
                    (
                        batch_signature,
                        snapshot_fingerprint,
                        mention_at.isoformat(),
                        chunk_size,
                        total_chunks,
                        RUN_STATUS_RUNNING,
                        _now(),
                    )
                )
                conn.commit()
        except sqlite3.Error as e:
            raise ProgressStoreError(f"Failed to start run progress: {e}") from e

        logger.info("run_progress_started", batch_signature=batch_signature,
                    total_chunks=total_chunks)
        return RunProgress(
            batch_signature=batch_signature,
            snapshot_fingerprint=snapshot_fingerprint,
            mention_at=mention_at,
            chunk_size=chunk_size,
            total_chunks=total_chunks,
            chunks_written=0,
            mentions_written=0,
            status=RUN_STATUS_RUNNING,
        )

    def record_chunk(self, batch_signature: str, chunk_index: int, mentions_written: int) -> None:
        """Advance the high-water mark after a chunk became durable."""
        try:
            with get_connection(self.db_path) as conn:
                conn.execute(
                    """
                    UPDATE ingestion_runs
                    SET chunks_written = ?, mentions_written = ?, status = ?, updated_at = ?
                    WHERE batch_signature = ?
                    """,
                    (chunk_index, mentions_written, RUN_STATUS_RUNNING, _now(), batch_signature)
                )
                conn.commit()
        except sqlite3.Error as e:
            raise ProgressStoreError(
                f"Failed to record chunk {chunk_index}: {e}",
                chunk_index=chunk_index,
                records_written=mentions_written,
            ) from e

    def finish(self, batch_signature: str, status: str, warnings_json: Optional[str] = None) -> None:
        """Mark a run completed, partial (resumable), or failed."""
        try:
            with get_connection(self.db_path) as conn:
                conn.execute(
                    """
                    UPDATE ingestion_runs
                    SET status = ?, warnings = ?, updated_at = ?
                    WHERE batch_signature = ?
                    """,
                    (status, warnings_json, _now(), batch_signature)
                )
                conn.commit()
        except sqlite3.Error as e:
            raise ProgressStoreError(f"Failed to finish run progress: {e}") from e

        logger.info("run_progress_finished", batch_signature=batch_signature, status=status)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
