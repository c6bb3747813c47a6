"""Ingestion pipeline orchestration.

One IngestionPipeline.run() is one ingestion run over one scrape batch:

    IDLE -> NORMALIZING -> RESOLVING -> BUILDING -> WRITING_VIDEOS -> WRITING_MENTIONS -> DONE
                                                          |                 |
                                                          +----> FAILED <---+

The pre-write states are pure: per-record anomalies are skipped or flagged,
never raised. Only the two write states can fail. Mentions reference video
ids, so WRITING_MENTIONS is entered only after every video upsert landed.

Callers always get an IngestionResult telling apart "fully succeeded",
"succeeded with skipped records", and "stopped at chunk N with M mentions
durable", so nobody has to guess which mentions were written.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

import structlog

from mention_ingest.backend.utils.errors import (
    DatastoreError,
    IngestError,
    ProgressStoreError,
    ValidationWriteError,
    WarningsCollector,
)
from mention_ingest.chunked_writer import ChunkedWriter, MentionWriteResult, chunk_records
from mention_ingest.config import IngestConfig
from mention_ingest.models.video_models import RawBatch
from mention_ingest.progress import (
    RUN_STATUS_COMPLETED,
    RUN_STATUS_FAILED,
    RUN_STATUS_PARTIAL,
    RunProgress,
    RunProgressStore,
    build_batch_signature,
)
from mention_ingest.record_builder import assemble_records, normalize_batch, resolve_batch
from mention_ingest.symbols import SymbolResolver, TokenSnapshot, load_token_snapshot

logger = structlog.get_logger(__name__)


class PipelineState(str, Enum):
    IDLE = "idle"
    NORMALIZING = "normalizing"
    RESOLVING = "resolving"
    BUILDING = "building"
    WRITING_VIDEOS = "writing_videos"
    WRITING_MENTIONS = "writing_mentions"
    DONE = "done"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    PipelineState.IDLE: {PipelineState.NORMALIZING},
    PipelineState.NORMALIZING: {PipelineState.RESOLVING},
    PipelineState.RESOLVING: {PipelineState.BUILDING},
    PipelineState.BUILDING: {PipelineState.WRITING_VIDEOS},
    PipelineState.WRITING_VIDEOS: {PipelineState.WRITING_MENTIONS, PipelineState.FAILED},
    PipelineState.WRITING_MENTIONS: {PipelineState.DONE, PipelineState.FAILED},
    PipelineState.DONE: set(),
    PipelineState.FAILED: set(),
}

STATUS_SUCCEEDED = "succeeded"
STATUS_SUCCEEDED_WITH_SKIPS = "succeeded_with_skips"
STATUS_PARTIAL_FAILURE = "partial_failure"
STATUS_CANCELLED = "cancelled"
STATUS_FAILED = "failed"


@dataclass
class IngestionResult:
    """Structured outcome of one ingestion run.

    Attributes:
        status: succeeded | succeeded_with_skips | partial_failure | cancelled | failed
        videos_written: Video rows upserted
        mentions_written: Mention rows durable for this batch, including chunks
            written by an earlier attempt that this run resumed
        skipped_videos: Videos dropped for malformed input
        failed_chunk_index: Mention chunk to resume from when the run stopped early
        failed_state: State the run stopped in (WRITING_VIDEOS or WRITING_MENTIONS)
        error: Message of the exception that stopped the run
        mention_at: Timestamp shared by every mention of the run
        total_chunks: Number of mention chunks in the run
        warnings: Per-record anomalies (skipped, collapsed, or flagged records)
    """
    status: str
    videos_written: int = 0
    mentions_written: int = 0
    skipped_videos: int = 0
    failed_chunk_index: Optional[int] = None
    failed_state: Optional[PipelineState] = None
    error: Optional[str] = None
    mention_at: Optional[datetime] = None
    total_chunks: int = 0
    warnings: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status in (STATUS_SUCCEEDED, STATUS_SUCCEEDED_WITH_SKIPS)

    @property
    def resumable(self) -> bool:
        """True when re-running with resume=True continues from failed_chunk_index."""
        return self.failed_chunk_index is not None


class IngestionPipeline:
    """Runs one scrape batch through normalize, resolve, build, and write.

    A pipeline instance owns the state of exactly one run; create a new one
    per batch. Concurrent runs must each use their own instance and snapshot.

    Args:
        writer: ChunkedWriter bound to the target datastore
        snapshot: Token snapshot loaded for this run (read-only)
        progress_store: Optional RunProgressStore enabling resume after a partial run
        cancel_event: Optional event; when set, the run stops before the next mention chunk
    """

    def __init__(
        self,
        writer: ChunkedWriter,
        snapshot: TokenSnapshot,
        progress_store: Optional[RunProgressStore] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.writer = writer
        self.snapshot = snapshot
        self.resolver = SymbolResolver(snapshot)
        self.progress_store = progress_store
        self.cancel_event = cancel_event
        self.state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]

    def run(
        self,
        raw_batch: Union[Dict[str, Any], RawBatch],
        resume: bool = False,
        fetched_at: Optional[datetime] = None,
        mention_at: Optional[datetime] = None,
    ) -> IngestionResult:
        """Execute the run.

        Args:
            raw_batch: Scrape batch document ({extraction_time, results}) or a parsed RawBatch
            resume: Continue a previously stopped run of the same batch (needs a progress store)
            fetched_at: Override the fetch time (default: batch extraction_time, else now)
            mention_at: Override the mention timestamp (ignored when resuming)

        Returns:
            IngestionResult describing what is durable

        Raises:
            IngestError: If the run was already used, or resume progress does not
                match this batch's snapshot or chunk size
            ProgressStoreError: If stored progress cannot be read for a resume
        """
        if self.state is not PipelineState.IDLE:
            raise IngestError(f"Pipeline already ran (state={self.state.value}); create a new one per batch")

        batch = raw_batch if isinstance(raw_batch, RawBatch) else RawBatch.from_dict(raw_batch)
        now = datetime.now(timezone.utc)
        fetched_at = fetched_at or batch.extraction_time or now

        signature = None
        progress = None
        if self.progress_store is not None:
            signature = build_batch_signature(batch)
            progress = self._load_progress(signature) if resume else None
        elif resume:
            raise IngestError("resume=True requires a progress store")

        if progress is not None:
            mention_at = progress.mention_at
        mention_at = mention_at or now

        warnings = WarningsCollector()
        logger.info("ingestion_started", video_count=len(batch.videos),
                    resume=progress is not None, mention_at=mention_at.isoformat())

        self._transition(PipelineState.NORMALIZING)
        prepared, skipped = normalize_batch(batch, warnings)

        self._transition(PipelineState.RESOLVING)
        attribution_count = resolve_batch(prepared, self.resolver)
        logger.debug("mentions_resolved", video_count=len(prepared), attribution_count=attribution_count)

        self._transition(PipelineState.BUILDING)
        videos, mentions = assemble_records(prepared, fetched_at, mention_at, warnings)
        total_chunks = len(chunk_records(mentions, self.writer.chunk_size))

        result = IngestionResult(
            status=STATUS_SUCCEEDED,
            skipped_videos=skipped,
            mention_at=mention_at,
            total_chunks=total_chunks,
        )

        self._transition(PipelineState.WRITING_VIDEOS)
        try:
            result.videos_written = self.writer.upsert_videos(videos)
        except DatastoreError as e:
            result.videos_written = e.records_written
            return self._fail(result, warnings, PipelineState.WRITING_VIDEOS, e, signature)

        self._transition(PipelineState.WRITING_MENTIONS)
        start_chunk = 1
        if progress is not None:
            start_chunk = progress.next_chunk
            result.mentions_written = progress.mentions_written
        elif signature is not None:
            try:
                self.progress_store.start(signature, self.snapshot.fingerprint(), mention_at,
                                          self.writer.chunk_size, total_chunks)
            except ProgressStoreError as e:
                # Nothing inserted yet; the run can be retried from chunk 1
                result.failed_chunk_index = 1 if total_chunks else None
                return self._fail(result, warnings, PipelineState.WRITING_MENTIONS, e, None)

        on_chunk_written = None
        if signature is not None:
            def on_chunk_written(chunk_index, written):
                try:
                    self.progress_store.record_chunk(signature, chunk_index, written)
                except ProgressStoreError as e:
                    e.chunk_index = chunk_index
                    e.records_written = written
                    raise

        try:
            write_result = self.writer.insert_mentions(
                mentions,
                start_chunk=start_chunk,
                cancel_event=self.cancel_event,
                on_chunk_written=on_chunk_written,
            )
        except ValidationWriteError as e:
            result.failed_chunk_index = e.chunk_index
            result.mentions_written = e.records_written
            return self._fail(result, warnings, PipelineState.WRITING_MENTIONS, e, signature)
        except ProgressStoreError as e:
            # Chunk e.chunk_index is durable but the stored high-water mark is behind it
            result.mentions_written = e.records_written
            if e.chunk_index < total_chunks:
                result.failed_chunk_index = e.chunk_index + 1
            logger.error("run_progress_behind", batch_signature=signature,
                         durable_chunk_index=e.chunk_index, mentions_written=e.records_written)
            return self._fail(result, warnings, PipelineState.WRITING_MENTIONS, e, signature)

        result.mentions_written = write_result.mentions_written
        if not write_result.completed:
            return self._stop_early(result, warnings, write_result, signature)

        self._transition(PipelineState.DONE)
        if skipped:
            result.status = STATUS_SUCCEEDED_WITH_SKIPS
        result.warnings = warnings.as_list()
        if signature is not None:
            self._finish_progress(signature, RUN_STATUS_COMPLETED, warnings)

        logger.info("ingestion_completed", status=result.status,
                    videos_written=result.videos_written,
                    mentions_written=result.mentions_written,
                    skipped_videos=skipped, warning_count=warnings.count())
        return result

    def _load_progress(self, signature: str) -> Optional[RunProgress]:
        progress = self.progress_store.load(signature)
        if progress is None:
            logger.info("resume_requested_without_progress", batch_signature=signature)
            return None

        if progress.snapshot_fingerprint != self.snapshot.fingerprint():
            raise IngestError(
                "Cannot resume ingestion: token snapshot changed since the stopped run, "
                "so mention chunks would not line up. Re-run without resume."
            )
        if progress.chunk_size != self.writer.chunk_size:
            raise IngestError(
                f"Cannot resume ingestion: stopped run used chunk_size={progress.chunk_size}, "
                f"current writer uses {self.writer.chunk_size}."
            )
        return progress

    def _transition(self, new_state: PipelineState) -> None:
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise IngestError(f"Illegal pipeline transition {self.state.value} -> {new_state.value}")
        logger.debug("pipeline_state_changed", from_state=self.state.value, to_state=new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def _fail(
        self,
        result: IngestionResult,
        warnings: WarningsCollector,
        at_state: PipelineState,
        cause: Exception,
        signature: Optional[str],
    ) -> IngestionResult:
        self._transition(PipelineState.FAILED)
        result.status = STATUS_FAILED
        result.failed_state = at_state
        result.error = str(cause)
        result.warnings = warnings.as_list()
        if signature is not None and at_state is PipelineState.WRITING_MENTIONS:
            self._finish_progress(signature, RUN_STATUS_FAILED, warnings)

        logger.error("ingestion_failed", failed_state=at_state.value, error=str(cause),
                     error_type=type(cause).__name__,
                     failed_chunk_index=result.failed_chunk_index,
                     mentions_written=result.mentions_written)
        return result

    def _stop_early(
        self,
        result: IngestionResult,
        warnings: WarningsCollector,
        write_result: MentionWriteResult,
        signature: Optional[str],
    ) -> IngestionResult:
        self._transition(PipelineState.FAILED)
        result.status = STATUS_CANCELLED if write_result.cancelled else STATUS_PARTIAL_FAILURE
        result.failed_state = PipelineState.WRITING_MENTIONS
        result.failed_chunk_index = write_result.failed_chunk_index
        result.error = str(write_result.cause) if write_result.cause is not None else None
        result.warnings = warnings.as_list()
        if signature is not None:
            self._finish_progress(signature, RUN_STATUS_PARTIAL, warnings)

        logger.warning("ingestion_stopped_early", status=result.status,
                       failed_chunk_index=result.failed_chunk_index,
                       mentions_written=result.mentions_written,
                       total_chunks=write_result.total_chunks)
        return result

    def _finish_progress(self, signature: str, status: str, warnings: WarningsCollector) -> None:
        # Rows are already durable here; a failed status update is only logged
        try:
            self.progress_store.finish(signature, status, warnings.to_json())
        except ProgressStoreError as e:
            logger.error("run_progress_finish_failed", batch_signature=signature,
                         status=status, error=str(e))


def ingest_batch(
    raw_batch: Union[Dict[str, Any], RawBatch],
    datastore,
    config: Optional[IngestConfig] = None,
    progress_store: Optional[RunProgressStore] = None,
    resume: bool = False,
    cancel_event: Optional[threading.Event] = None,
) -> IngestionResult:
    """Ingest one scrape batch into a datastore.

    Loads a fresh token snapshot, builds a ChunkedWriter from config, and runs
    one IngestionPipeline. This is the entry point for the orchestration layer.

    Args:
        raw_batch: Scrape batch document or parsed RawBatch
        datastore: SqliteDatastore, RestDatastore, or any object with the same methods
        config: Writer settings (default: IngestConfig.from_env())
        progress_store: Optional progress store for resumable runs
        resume: Continue a stopped run of this batch
        cancel_event: Optional cancellation event checked between mention chunks

    Returns:
        IngestionResult

    Raises:
        DatastoreError: If the token snapshot cannot be loaded (nothing was written)
        IngestError: If resume progress does not match this run

    Example:
        >>> result = ingest_batch(json.load(f), SqliteDatastore("./data/mentions.db"))
        >>> result.status
        'succeeded'
    """
    if config is None:
        config = IngestConfig.from_env()

    snapshot = load_token_snapshot(datastore)
    writer = ChunkedWriter(
        datastore,
        chunk_size=config.chunk_size,
        video_batch_limit=config.video_batch_limit,
        max_retries=config.max_retries,
        base_delay=config.base_delay,
        max_delay=config.max_delay,
    )
    pipeline = IngestionPipeline(writer, snapshot, progress_store=progress_store,
                                 cancel_event=cancel_event)
    return pipeline.run(raw_batch, resume=resume)
