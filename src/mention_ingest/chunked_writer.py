"""Size-bounded, retried writes of built records.

The hosted datastore rejects request payloads past a size limit, so records
are written in fixed-size chunks. The two record kinds are handled
differently:

- Videos are upserted on id. Repeating a request is harmless, so a failed
  upsert can simply be re-run.
- Mentions are append-only. Repeating a chunk double-counts it, so the writer
  reports exactly which chunk stopped the insert and how many records before
  it are durable; a caller resumes from that chunk instead of starting over.

Chunks are numbered from 1. Chunk i+1 is attempted only after chunk i
succeeded or exhausted its retries.
"""

import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, TypeVar

import structlog

from mention_ingest.backend.utils.errors import (
    DatastoreError,
    TransientWriteError,
    ValidationWriteError,
    retry_with_backoff,
)
from mention_ingest.models.video_models import MentionRecord, VideoRecord

logger = structlog.get_logger(__name__)

# Chosen empirically to stay under the hosted datastore's payload limit
DEFAULT_CHUNK_SIZE = 1500

# Largest video upsert sent as a single request
DEFAULT_VIDEO_BATCH_LIMIT = 1500

T = TypeVar('T')


@dataclass
class MentionWriteResult:
    """Outcome of a chunked mention insert.

    Attributes:
        mentions_written: Records durable after this call, counting chunks
            before start_chunk that an earlier call already wrote
        chunks_written: Highest chunk index known durable (0 if none)
        total_chunks: Number of chunks the records split into
        failed_chunk_index: Chunk that was not written (exhausted retries, or
            the next chunk when cancelled); None when every chunk landed
        cause: The exception that stopped the insert, if any
        cancelled: True when the stop was a cancellation, not a failure
    """
    mentions_written: int
    chunks_written: int
    total_chunks: int
    failed_chunk_index: Optional[int] = None
    cause: Optional[Exception] = None
    cancelled: bool = False

    @property
    def completed(self) -> bool:
        return self.failed_chunk_index is None


def chunk_records(records: Sequence[T], chunk_size: int) -> List[List[T]]:
    """Split records into consecutive lists of at most chunk_size items.

    Example:
        >>> [len(c) for c in chunk_records(list(range(3500)), 1500)]
        [1500, 1500, 500]
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    return [list(records[i:i + chunk_size]) for i in range(0, len(records), chunk_size)]


class ChunkedWriter:
    """Writes VideoRecords and MentionRecords to a datastore in bounded chunks.

    The datastore is any object with upsert_videos(records) and
    insert_mentions(records) methods that raise TransientWriteError or
    ValidationWriteError on failure (SqliteDatastore, RestDatastore).

    Args:
        datastore: Target datastore
        chunk_size: Mention records per insert request
        video_batch_limit: Largest video upsert sent in one request
        max_retries: Retries per request after the first attempt
        base_delay: First backoff delay in seconds
        max_delay: Backoff cap in seconds
    """

    def __init__(
        self,
        datastore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        video_batch_limit: int = DEFAULT_VIDEO_BATCH_LIMIT,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ):
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        if video_batch_limit < 1:
            raise ValueError(f"video_batch_limit must be >= 1, got {video_batch_limit}")

        self.datastore = datastore
        self.chunk_size = chunk_size
        self.video_batch_limit = video_batch_limit
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def upsert_videos(self, records: Sequence[VideoRecord]) -> int:
        """Upsert videos keyed by id.

        One request when the batch fits video_batch_limit, otherwise sequential
        requests of that size. Safe to re-run with the same input.

        Returns:
            Number of video records written

        Raises:
            TransientWriteError: If a request still fails after all retries
            ValidationWriteError: On the first non-retryable failure
            Both carry chunk_index and records_written (videos upserted by
            earlier requests of this call).
        """
        if not records:
            return 0

        written = 0
        for index, chunk in enumerate(chunk_records(records, self.video_batch_limit), start=1):
            try:
                written += self._with_retry(
                    lambda chunk=chunk: self.datastore.upsert_videos(chunk),
                    operation="upsert_videos",
                    chunk_index=index,
                )
            except DatastoreError as e:
                e.chunk_index = index
                e.records_written = written
                logger.error("videos_upsert_failed", chunk_index=index,
                             videos_written=written, error=str(e))
                raise

        logger.info("videos_upserted", video_count=written)
        return written

    def insert_mentions(
        self,
        records: Sequence[MentionRecord],
        start_chunk: int = 1,
        cancel_event: Optional[threading.Event] = None,
        on_chunk_written: Optional[Callable[[int, int], None]] = None,
    ) -> MentionWriteResult:
        """Insert mentions chunk by chunk, stopping at the first chunk that cannot land.

        Args:
            records: All mention records of the run, in the same order on every attempt
            start_chunk: First chunk to send; earlier chunks are treated as durable
            cancel_event: Checked before each chunk; when set, the insert stops
            on_chunk_written: Called as on_chunk_written(chunk_index, mentions_written)
                after each chunk lands

        Returns:
            MentionWriteResult. A chunk that exhausts its retries, or a
            cancellation, yields failed_chunk_index instead of raising.

        Raises:
            ValidationWriteError: Immediately on a non-retryable failure, with
                chunk_index and records_written set
        """
        if start_chunk < 1:
            raise ValueError(f"start_chunk must be >= 1, got {start_chunk}")

        chunks = chunk_records(records, self.chunk_size)
        total_chunks = len(chunks)
        written = sum(len(chunk) for chunk in chunks[:start_chunk - 1])
        chunks_written = min(start_chunk - 1, total_chunks)

        for index in range(start_chunk, total_chunks + 1):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("mentions_insert_cancelled", chunk_index=index,
                               mentions_written=written, total_chunks=total_chunks)
                return MentionWriteResult(
                    mentions_written=written,
                    chunks_written=chunks_written,
                    total_chunks=total_chunks,
                    failed_chunk_index=index,
                    cancelled=True,
                )

            chunk = chunks[index - 1]
            try:
                self._with_retry(
                    lambda chunk=chunk: self.datastore.insert_mentions(chunk),
                    operation="insert_mentions",
                    chunk_index=index,
                )
            except TransientWriteError as e:
                logger.error("mentions_chunk_failed", chunk_index=index,
                             mentions_written=written, total_chunks=total_chunks, error=str(e))
                return MentionWriteResult(
                    mentions_written=written,
                    chunks_written=chunks_written,
                    total_chunks=total_chunks,
                    failed_chunk_index=index,
                    cause=e,
                )
            except ValidationWriteError as e:
                e.chunk_index = index
                e.records_written = written
                logger.error("mentions_chunk_rejected", chunk_index=index,
                             mentions_written=written, total_chunks=total_chunks, error=str(e))
                raise

            written += len(chunk)
            chunks_written = index
            logger.info("mentions_chunk_written", chunk_index=index,
                        chunk_size=len(chunk), total_chunks=total_chunks)
            if on_chunk_written is not None:
                on_chunk_written(index, written)

        return MentionWriteResult(
            mentions_written=written,
            chunks_written=chunks_written,
            total_chunks=total_chunks,
        )

    def _with_retry(self, fn: Callable[[], T], operation: str, chunk_index: int) -> T:
        def log_retry(attempt, error, delay):
            logger.info("datastore_write_retry", operation=operation, chunk_index=chunk_index,
                        retry_attempt=attempt, backoff_delay=delay, error=str(error))

        return retry_with_backoff(
            fn,
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            retryable_exceptions=(TransientWriteError,),
            on_retry=log_retry,
        )
