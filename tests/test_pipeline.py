"""
Tests for the ingestion pipeline state machine and ingest_batch entry point.

Tests verify:
- A clean run walks IDLE through DONE and writes the expected rows
- Re-ingesting a batch is idempotent for videos and additive for mentions
- Video write failures stop the run before any mention is written
- Mention chunk failures report the chunk to resume from and what is durable
- Resume continues from the stored high-water mark with the original mention_at
- Cancellation stops between chunks
- A progress-store failure still returns a result naming what is durable
"""

import sqlite3
import threading
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from mention_ingest.backend.utils.errors import (
    DatastoreError,
    IngestError,
    ProgressStoreError,
    TransientWriteError,
    ValidationWriteError,
)
from mention_ingest.chunked_writer import ChunkedWriter
from mention_ingest.config import IngestConfig
from mention_ingest.models.video_models import RawBatch
from mention_ingest.pipeline import (
    IngestionPipeline,
    PipelineState,
    STATUS_CANCELLED,
    STATUS_FAILED,
    STATUS_PARTIAL_FAILURE,
    STATUS_SUCCEEDED,
    STATUS_SUCCEEDED_WITH_SKIPS,
    ingest_batch,
)
from mention_ingest.progress import RUN_STATUS_COMPLETED, RUN_STATUS_PARTIAL, RunProgressStore
from mention_ingest.symbols import load_token_snapshot
from tests.conftest import make_batch, make_video

FAST_CONFIG = IngestConfig(chunk_size=2, max_retries=0, base_delay=0.0)


@pytest.fixture
def five_mention_batch():
    """One video whose mentions attribute to 5 token rows (BONK fans out to 2)."""
    return make_batch(make_video("777", mentions={
        "BONK": {"count": 2},
        "https://x.com/WIF": {"count": 3},
        "DOGE": {"count": 1},
        "PEPE": {"count": 4},
    }))


@pytest.fixture
def progress_store(progress_db_path):
    return RunProgressStore(progress_db_path)


def failing_on_call(datastore, method, call_number, error):
    """Wrap a datastore so that the given call to one write method raises."""
    wrapper = Mock(wraps=datastore)
    real = getattr(datastore, method)
    calls = {"n": 0}

    def write(records):
        calls["n"] += 1
        if calls["n"] == call_number:
            raise error
        return real(records)

    getattr(wrapper, method).side_effect = write
    return wrapper


def count_rows(conn, table):
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


class TestSuccessfulRun:

    def test_end_to_end_single_video(self, datastore, seeded_db, end_to_end_batch):
        result = ingest_batch(end_to_end_batch, datastore, config=FAST_CONFIG)

        assert result.status == STATUS_SUCCEEDED
        assert result.succeeded
        assert result.videos_written == 1
        assert result.mentions_written == 1
        assert result.failed_chunk_index is None

        video = seeded_db.execute("SELECT * FROM tiktoks").fetchone()
        assert (video["id"], video["views"]) == ("555", 3400)
        mention = seeded_db.execute("SELECT * FROM mentions").fetchone()
        assert (mention["tiktok_id"], mention["token_id"], mention["count"]) == ("555", 9, 5)
        assert mention["mention_at"] == result.mention_at.isoformat()

    def test_state_history(self, datastore, end_to_end_batch):
        pipeline = IngestionPipeline(ChunkedWriter(datastore), load_token_snapshot(datastore))

        pipeline.run(end_to_end_batch)

        assert pipeline.history == [
            PipelineState.IDLE,
            PipelineState.NORMALIZING,
            PipelineState.RESOLVING,
            PipelineState.BUILDING,
            PipelineState.WRITING_VIDEOS,
            PipelineState.WRITING_MENTIONS,
            PipelineState.DONE,
        ]
        assert pipeline.state is PipelineState.DONE

    def test_reingest_is_idempotent_for_videos_additive_for_mentions(
        self, datastore, seeded_db, end_to_end_batch
    ):
        ingest_batch(end_to_end_batch, datastore, config=FAST_CONFIG)
        ingest_batch(end_to_end_batch, datastore, config=FAST_CONFIG)

        assert count_rows(seeded_db, "tiktoks") == 1
        assert count_rows(seeded_db, "mentions") == 2
        stamps = seeded_db.execute("SELECT DISTINCT mention_at FROM mentions").fetchall()
        assert len(stamps) == 2

    def test_skipped_videos_reported(self, datastore, seeded_db):
        batch = make_batch(make_video("1"), make_video("2", video_url="https://www.tiktok.com/@x"))

        result = ingest_batch(batch, datastore, config=FAST_CONFIG)

        assert result.status == STATUS_SUCCEEDED_WITH_SKIPS
        assert result.succeeded
        assert result.skipped_videos == 1
        assert [w["type"] for w in result.warnings] == ["malformed_video_url"]
        assert count_rows(seeded_db, "tiktoks") == 1

    def test_all_mentions_share_one_timestamp(self, datastore, seeded_db, five_mention_batch):
        result = ingest_batch(five_mention_batch, datastore, config=FAST_CONFIG)

        assert result.mentions_written == 5
        assert result.total_chunks == 3
        stamps = seeded_db.execute("SELECT DISTINCT mention_at FROM mentions").fetchall()
        assert [row[0] for row in stamps] == [result.mention_at.isoformat()]

    def test_explicit_timestamps(self, datastore, seeded_db, end_to_end_batch):
        fetched_at = datetime(2025, 1, 2, tzinfo=timezone.utc)
        mention_at = datetime(2025, 1, 3, tzinfo=timezone.utc)
        pipeline = IngestionPipeline(ChunkedWriter(datastore), load_token_snapshot(datastore))

        result = pipeline.run(end_to_end_batch, fetched_at=fetched_at, mention_at=mention_at)

        assert result.mention_at == mention_at
        row = seeded_db.execute("SELECT fetched_at FROM tiktoks").fetchone()
        assert row[0] == fetched_at.isoformat()

    def test_progress_marked_completed(self, datastore, progress_store, five_mention_batch):
        from mention_ingest.progress import build_batch_signature

        ingest_batch(five_mention_batch, datastore, config=FAST_CONFIG, progress_store=progress_store)

        progress = progress_store.load(build_batch_signature(five_mention_batch))
        assert progress.status == RUN_STATUS_COMPLETED
        assert progress.chunks_written == 3
        assert progress.mentions_written == 5


class TestVideoWriteFailure:

    def test_failed_at_writing_videos_writes_no_mentions(self, datastore, seeded_db, end_to_end_batch):
        flaky = failing_on_call(datastore, "upsert_videos", 1, ValidationWriteError("bad column"))

        result = ingest_batch(end_to_end_batch, flaky, config=FAST_CONFIG)

        assert result.status == STATUS_FAILED
        assert result.failed_state is PipelineState.WRITING_VIDEOS
        assert result.error == "bad column"
        assert not result.resumable
        flaky.insert_mentions.assert_not_called()
        assert count_rows(seeded_db, "mentions") == 0

    def test_transient_video_failure_after_retries(self, datastore, end_to_end_batch):
        flaky = failing_on_call(datastore, "upsert_videos", 1, TransientWriteError("timeout"))
        pipeline = IngestionPipeline(ChunkedWriter(flaky, max_retries=0), load_token_snapshot(datastore))

        result = pipeline.run(end_to_end_batch)

        assert result.status == STATUS_FAILED
        assert pipeline.history[-2:] == [PipelineState.WRITING_VIDEOS, PipelineState.FAILED]

    def test_videos_written_counts_requests_that_landed(self, datastore, seeded_db):
        batch = make_batch(make_video("1"), make_video("2"), make_video("3"))
        flaky = failing_on_call(datastore, "upsert_videos", 2, ValidationWriteError("bad column"))
        config = IngestConfig(chunk_size=2, video_batch_limit=2, max_retries=0, base_delay=0.0)

        result = ingest_batch(batch, flaky, config=config)

        assert result.status == STATUS_FAILED
        assert result.failed_state is PipelineState.WRITING_VIDEOS
        assert result.videos_written == 2
        assert count_rows(seeded_db, "tiktoks") == 2
        assert count_rows(seeded_db, "mentions") == 0


class TestMentionWriteFailure:

    def test_partial_failure_reports_resume_point(self, datastore, seeded_db, five_mention_batch):
        flaky = failing_on_call(datastore, "insert_mentions", 2, TransientWriteError("HTTP 503"))

        result = ingest_batch(five_mention_batch, flaky, config=FAST_CONFIG)

        assert result.status == STATUS_PARTIAL_FAILURE
        assert result.failed_state is PipelineState.WRITING_MENTIONS
        assert result.failed_chunk_index == 2
        assert result.mentions_written == 2
        assert result.resumable
        assert result.videos_written == 1
        assert count_rows(seeded_db, "mentions") == 2

    def test_validation_failure_reports_position(self, datastore, seeded_db, five_mention_batch):
        flaky = failing_on_call(datastore, "insert_mentions", 3, ValidationWriteError("check constraint"))

        result = ingest_batch(five_mention_batch, flaky, config=FAST_CONFIG)

        assert result.status == STATUS_FAILED
        assert result.failed_state is PipelineState.WRITING_MENTIONS
        assert result.failed_chunk_index == 3
        assert result.mentions_written == 4
        assert count_rows(seeded_db, "mentions") == 4

    def test_resume_continues_from_failed_chunk(
        self, datastore, seeded_db, progress_store, five_mention_batch
    ):
        flaky = failing_on_call(datastore, "insert_mentions", 2, TransientWriteError("HTTP 503"))
        first = ingest_batch(five_mention_batch, flaky, config=FAST_CONFIG, progress_store=progress_store)
        assert first.status == STATUS_PARTIAL_FAILURE

        resumed = ingest_batch(five_mention_batch, datastore, config=FAST_CONFIG,
                               progress_store=progress_store, resume=True)

        assert resumed.status == STATUS_SUCCEEDED
        assert resumed.mentions_written == 5
        assert resumed.mention_at == first.mention_at
        assert count_rows(seeded_db, "mentions") == 5
        stamps = seeded_db.execute("SELECT DISTINCT mention_at FROM mentions").fetchall()
        assert [row[0] for row in stamps] == [first.mention_at.isoformat()]

    def test_partial_run_marked_partial_in_progress_store(
        self, datastore, progress_store, five_mention_batch
    ):
        from mention_ingest.progress import build_batch_signature

        flaky = failing_on_call(datastore, "insert_mentions", 2, TransientWriteError("HTTP 503"))
        ingest_batch(five_mention_batch, flaky, config=FAST_CONFIG, progress_store=progress_store)

        progress = progress_store.load(build_batch_signature(five_mention_batch))
        assert progress.status == RUN_STATUS_PARTIAL
        assert progress.next_chunk == 2

    def test_resume_after_completed_run_writes_nothing_more(
        self, datastore, seeded_db, progress_store, five_mention_batch
    ):
        ingest_batch(five_mention_batch, datastore, config=FAST_CONFIG, progress_store=progress_store)

        again = ingest_batch(five_mention_batch, datastore, config=FAST_CONFIG,
                             progress_store=progress_store, resume=True)

        assert again.status == STATUS_SUCCEEDED
        assert count_rows(seeded_db, "mentions") == 5

    def test_resume_refused_when_token_snapshot_changed(
        self, datastore, seeded_db, progress_store, five_mention_batch
    ):
        flaky = failing_on_call(datastore, "insert_mentions", 2, TransientWriteError("HTTP 503"))
        ingest_batch(five_mention_batch, flaky, config=FAST_CONFIG, progress_store=progress_store)

        seeded_db.execute("INSERT INTO tokens (id, symbol) VALUES (30, 'PEPE')")
        seeded_db.commit()

        with pytest.raises(IngestError, match="snapshot"):
            ingest_batch(five_mention_batch, datastore, config=FAST_CONFIG,
                         progress_store=progress_store, resume=True)

    def test_resume_refused_when_chunk_size_changed(
        self, datastore, progress_store, five_mention_batch
    ):
        flaky = failing_on_call(datastore, "insert_mentions", 2, TransientWriteError("HTTP 503"))
        ingest_batch(five_mention_batch, flaky, config=FAST_CONFIG, progress_store=progress_store)

        with pytest.raises(IngestError, match="chunk_size"):
            ingest_batch(five_mention_batch, datastore,
                         config=IngestConfig(chunk_size=3, max_retries=0),
                         progress_store=progress_store, resume=True)

    def test_resume_without_stored_progress_runs_from_start(
        self, datastore, seeded_db, progress_store, end_to_end_batch
    ):
        result = ingest_batch(end_to_end_batch, datastore, config=FAST_CONFIG,
                              progress_store=progress_store, resume=True)

        assert result.status == STATUS_SUCCEEDED
        assert count_rows(seeded_db, "mentions") == 1

    def test_resume_with_parsed_batch_after_dict_run(
        self, datastore, seeded_db, progress_store, five_mention_batch
    ):
        flaky = failing_on_call(datastore, "insert_mentions", 2, TransientWriteError("HTTP 503"))
        first = ingest_batch(five_mention_batch, flaky, config=FAST_CONFIG, progress_store=progress_store)
        assert first.failed_chunk_index == 2

        resumed = ingest_batch(RawBatch.from_dict(five_mention_batch), datastore, config=FAST_CONFIG,
                               progress_store=progress_store, resume=True)

        assert resumed.status == STATUS_SUCCEEDED
        assert resumed.mentions_written == 5
        assert resumed.mention_at == first.mention_at
        assert count_rows(seeded_db, "mentions") == 5

    def test_progress_store_failure_after_chunk_landed(
        self, datastore, seeded_db, progress_store, progress_db_path, five_mention_batch
    ):
        real_record_chunk = progress_store.record_chunk

        def record_chunk_losing_table(signature, chunk_index, written):
            if chunk_index == 2:
                conn = sqlite3.connect(progress_db_path)
                conn.execute("DROP TABLE ingestion_runs")
                conn.commit()
                conn.close()
            real_record_chunk(signature, chunk_index, written)

        progress_store.record_chunk = record_chunk_losing_table

        result = ingest_batch(five_mention_batch, datastore, config=FAST_CONFIG,
                              progress_store=progress_store)

        assert result.status == STATUS_FAILED
        assert result.failed_state is PipelineState.WRITING_MENTIONS
        assert result.mentions_written == 4
        assert result.failed_chunk_index == 3
        assert "record chunk 2" in result.error
        assert count_rows(seeded_db, "mentions") == 4

    def test_progress_store_failure_on_last_chunk_is_not_resumable(
        self, datastore, seeded_db, progress_store, five_mention_batch
    ):
        def record_chunk(signature, chunk_index, written):
            if chunk_index == 3:
                raise ProgressStoreError("disk I/O error")

        progress_store.record_chunk = record_chunk

        result = ingest_batch(five_mention_batch, datastore, config=FAST_CONFIG,
                              progress_store=progress_store)

        assert result.status == STATUS_FAILED
        assert result.mentions_written == 5
        assert result.failed_chunk_index is None
        assert count_rows(seeded_db, "mentions") == 5

    def test_progress_store_unavailable_before_first_chunk(
        self, datastore, seeded_db, progress_store, progress_db_path, five_mention_batch
    ):
        conn = sqlite3.connect(progress_db_path)
        conn.execute("DROP TABLE ingestion_runs")
        conn.commit()
        conn.close()

        result = ingest_batch(five_mention_batch, datastore, config=FAST_CONFIG,
                              progress_store=progress_store)

        assert result.status == STATUS_FAILED
        assert result.failed_state is PipelineState.WRITING_MENTIONS
        assert result.failed_chunk_index == 1
        assert result.mentions_written == 0
        assert count_rows(seeded_db, "mentions") == 0


class TestCancellation:

    def test_cancel_before_first_chunk(self, datastore, seeded_db, five_mention_batch):
        cancel = threading.Event()
        cancel.set()

        result = ingest_batch(five_mention_batch, datastore, config=FAST_CONFIG, cancel_event=cancel)

        assert result.status == STATUS_CANCELLED
        assert result.failed_chunk_index == 1
        assert result.mentions_written == 0
        assert result.videos_written == 1
        assert count_rows(seeded_db, "mentions") == 0

    def test_cancelled_run_can_be_resumed(self, datastore, seeded_db, progress_store, five_mention_batch):
        cancel = threading.Event()
        wrapper = Mock(wraps=datastore)

        def insert_then_cancel(records):
            cancel.set()
            return datastore.insert_mentions(records)

        wrapper.insert_mentions.side_effect = insert_then_cancel

        first = ingest_batch(five_mention_batch, wrapper, config=FAST_CONFIG,
                             progress_store=progress_store, cancel_event=cancel)
        assert first.status == STATUS_CANCELLED
        assert first.failed_chunk_index == 2

        resumed = ingest_batch(five_mention_batch, datastore, config=FAST_CONFIG,
                               progress_store=progress_store, resume=True)

        assert resumed.status == STATUS_SUCCEEDED
        assert count_rows(seeded_db, "mentions") == 5


class TestPipelineGuards:

    def test_pipeline_cannot_run_twice(self, datastore, end_to_end_batch):
        pipeline = IngestionPipeline(ChunkedWriter(datastore), load_token_snapshot(datastore))
        pipeline.run(end_to_end_batch)

        with pytest.raises(IngestError):
            pipeline.run(end_to_end_batch)

    def test_resume_requires_progress_store(self, datastore, end_to_end_batch):
        pipeline = IngestionPipeline(ChunkedWriter(datastore), load_token_snapshot(datastore))

        with pytest.raises(IngestError):
            pipeline.run(end_to_end_batch, resume=True)

    def test_snapshot_load_failure_propagates_before_any_write(self, end_to_end_batch):
        datastore = Mock()
        datastore.select_tokens.side_effect = DatastoreError("tokens unreadable")

        with pytest.raises(DatastoreError):
            ingest_batch(end_to_end_batch, datastore, config=FAST_CONFIG)

        datastore.upsert_videos.assert_not_called()
        datastore.insert_mentions.assert_not_called()
