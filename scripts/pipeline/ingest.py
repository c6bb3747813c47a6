#!/usr/bin/env python3
"""Ingest scraped video batches into the datastore.

Reads one or more scrape batch JSON files ({extraction_time, results: [{videos}]}),
attributes comment mentions to known tokens, and writes videos and mentions to the
SQLite datastore, or to the hosted datastore when SUPABASE_URL and SUPABASE_KEY are set.

Usage:
    python scripts/pipeline/ingest.py combined_results_2024-12-27T07-22-03-044Z.json
    python scripts/pipeline/ingest.py --dir data/scrapes [--db-path ./data/mentions.db]
    python scripts/pipeline/ingest.py batch.json --resume

Exit status is 0 when every batch succeeded (possibly with skipped videos), 1 otherwise.
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from mention_ingest.backend.db.schema import initialize_schema
from mention_ingest.backend.integrations.rest_datastore import RestDatastore
from mention_ingest.backend.utils.errors import IngestError
from mention_ingest.backend.utils.logging_config import get_logger, setup_logging
from mention_ingest.config import IngestConfig
from mention_ingest.pipeline import ingest_batch
from mention_ingest.progress import RunProgressStore
from mention_ingest.storage import SqliteDatastore

BATCH_FILE_PATTERN = "combined_results_*.json"


def _load_dotenv():
    """Load .env file into os.environ if it exists."""
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))


def find_batch_files(paths: List[str], directory: Optional[str]) -> List[Path]:
    """Collect explicit files plus every combined_results_*.json in directory, sorted."""
    files = [Path(p) for p in paths]
    if directory:
        files.extend(sorted(Path(directory).glob(BATCH_FILE_PATTERN)))
    return files


def build_datastore(config: IngestConfig, db_path: Optional[str]):
    """Hosted datastore when credentials are configured, otherwise SQLite."""
    if config.use_rest_datastore and not db_path:
        return RestDatastore(config.supabase_url, config.supabase_key, timeout=config.request_timeout)

    path = db_path or config.db_path
    initialize_schema(path)
    return SqliteDatastore(path)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Ingest scraped video batches and attribute token mentions"
    )
    parser.add_argument("files", nargs="*", help="Scrape batch JSON files")
    parser.add_argument("--dir", default=None, help=f"Also ingest every {BATCH_FILE_PATTERN} in this directory")
    parser.add_argument("--db-path", default=None, help="SQLite datastore path (forces SQLite; default: $DB_PATH or ./data/mentions.db)")
    parser.add_argument("--progress-db", default=None, help="Run-progress database (default: $MENTION_INGEST_PROGRESS_DB)")
    parser.add_argument("--resume", action="store_true", help="Continue batches that stopped partway")
    parser.add_argument("--log-dir", default="logs", help="Directory for ingest.log (default: logs)")
    args = parser.parse_args(argv)

    _load_dotenv()
    setup_logging(log_dir=args.log_dir)
    logger = get_logger(__name__)

    files = find_batch_files(args.files, args.dir)
    if not files:
        print("Error: no batch files given. Pass file paths or --dir.")
        return 1

    config = IngestConfig.from_env()
    datastore = build_datastore(config, args.db_path)
    progress_store = RunProgressStore(args.progress_db or config.progress_db_path)

    failures = 0
    for path in files:
        if not path.exists():
            print(f"Error: batch file not found: {path}")
            failures += 1
            continue

        try:
            with open(path) as f:
                raw_batch = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error: could not read batch file {path}: {e}")
            logger.error("batch_file_unreadable", path=str(path), error=str(e))
            failures += 1
            continue

        if not isinstance(raw_batch, dict):
            print(f"Error: {path} is not a batch document (expected a JSON object)")
            logger.error("batch_file_malformed", path=str(path), json_type=type(raw_batch).__name__)
            failures += 1
            continue

        print(f"Ingesting {path} ...")
        try:
            result = ingest_batch(raw_batch, datastore, config=config,
                                  progress_store=progress_store, resume=args.resume)
        except IngestError as e:
            print(f"  error: {e}")
            logger.error("batch_file_failed", path=str(path), error=str(e),
                         error_type=type(e).__name__)
            failures += 1
            continue
        logger.info("batch_file_ingested", path=str(path), status=result.status)

        print(f"  status={result.status} videos={result.videos_written} "
              f"mentions={result.mentions_written} skipped={result.skipped_videos}")
        if not result.succeeded:
            failures += 1
            if result.failed_chunk_index is not None:
                print(f"  stopped at mention chunk {result.failed_chunk_index}/{result.total_chunks}; "
                      f"re-run with --resume to continue")
            if result.error:
                print(f"  error: {result.error}")

    print(f"\nProcessed {len(files)} batch file(s), {failures} not fully ingested")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
