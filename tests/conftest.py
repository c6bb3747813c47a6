"""
Shared pytest fixtures for the mention ingestion test suite.

These fixtures provide temporary databases, schema setup, seeded token
reference data, and raw scrape batches shaped like the scraper's output.
All tests are behavioral - they verify what the code should do, not how it does it.
"""

import os
import sqlite3
import tempfile

import pytest

from mention_ingest.backend.db.schema import initialize_schema
from mention_ingest.storage import SqliteDatastore

# (id, symbol) rows; BONK is shared by two tokens
SEED_TOKENS = [
    (1, 'BONK'),
    (3, 'WIF'),
    (7, 'BONK'),
    (9, 'DOGE'),
    (12, 'PEPE'),
]


def _cleanup_db_files(db_path):
    for suffix in ['', '-wal', '-shm']:
        path = db_path + suffix
        if os.path.exists(path):
            os.unlink(path)


@pytest.fixture
def temp_db_path():
    """Provide a temporary database file path that is cleaned up after test."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name

    yield db_path

    _cleanup_db_files(db_path)


@pytest.fixture
def progress_db_path():
    """Provide a separate temporary path for the run-progress database."""
    with tempfile.NamedTemporaryFile(suffix='_progress.db', delete=False) as f:
        db_path = f.name

    yield db_path

    _cleanup_db_files(db_path)


@pytest.fixture
def schema_initialized_db(temp_db_path):
    """Provide a connection to a database with schema.sql applied."""
    initialize_schema(temp_db_path)
    conn = sqlite3.connect(temp_db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    yield conn
    conn.close()


@pytest.fixture
def seeded_db(schema_initialized_db):
    """Provide a schema-initialized database with SEED_TOKENS loaded."""
    schema_initialized_db.executemany(
        "INSERT INTO tokens (id, symbol) VALUES (?, ?)", SEED_TOKENS
    )
    schema_initialized_db.commit()
    return schema_initialized_db


@pytest.fixture
def datastore(seeded_db, temp_db_path):
    """Provide a SqliteDatastore over the seeded temporary database."""
    return SqliteDatastore(temp_db_path)


def make_video(video_id='555', views='3.4K', mentions=None, **overrides):
    """Build one raw video dict in the scraper's JSON shape."""
    video = {
        'video_url': f'https://www.tiktok.com/@creator/video/{video_id}',
        'author': 'creator',
        'thumbnail_url': f'https://cdn.example.com/{video_id}.jpg',
        'posted_timestamp': 1735283000,
        'posted_time': '2h',
        'views': views,
        'comments': {
            'count': 12,
            'mentions': mentions if mentions is not None else {},
        },
    }
    video.update(overrides)
    return video


def make_batch(*videos, extraction_time='2024-12-27T07:22:03.044Z'):
    """Wrap raw videos in a scrape batch document."""
    return {
        'extraction_time': extraction_time,
        'results': [{'search': 'memecoin', 'videos': list(videos)}],
    }


@pytest.fixture
def end_to_end_batch():
    """The canonical single-video batch: 3.4K views, DOGE in URL and bare form."""
    return make_batch(make_video(
        video_id='555',
        views='3.4K',
        mentions={
            'https://t.co/DOGE': {'count': 4, 'isTicker': False},
            'DOGE': {'count': 1, 'isTicker': True},
        },
    ))
