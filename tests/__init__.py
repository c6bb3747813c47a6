"""
Test suite for the Mention Ingestion Pipeline.

Test Organization:
- test_views.py: View count normalization
- test_mention_keys.py: Mention key canonicalization and merging
- test_symbols.py: Token snapshot and symbol resolution
- test_record_builder.py: Video/mention record building
- test_storage.py: SQLite datastore upserts and inserts
- test_chunked_writer.py: Chunking, retries, partial failure, cancellation
- test_progress.py: Run progress store
- test_pipeline.py: State machine, end-to-end runs, idempotence, resume
- test_config.py: Environment configuration
- test_ingest_script.py: Batch ingestion CLI script
- backend/: errors, logging, connection manager, REST datastore

Run all tests:
    python -m pytest tests/ -v
"""
