"""Runtime configuration read from environment variables.

Defaults match the production settings; every value can be overridden per
process. Invalid values raise ValueError naming the offending variable.

Environment variables:
    MENTION_INGEST_CHUNK_SIZE         mention records per insert request (1500)
    MENTION_INGEST_VIDEO_BATCH_LIMIT  largest single video upsert (1500)
    MENTION_INGEST_MAX_RETRIES        retries per request after the first attempt (3)
    MENTION_INGEST_BASE_DELAY         first backoff delay in seconds (1.0)
    MENTION_INGEST_MAX_DELAY          backoff cap in seconds (30.0)
    MENTION_INGEST_REQUEST_TIMEOUT    per-request timeout in seconds (30.0)
    MENTION_INGEST_PROGRESS_DB        run-progress SQLite file (./data/ingest_progress.db)
    DB_PATH                           SQLite datastore file (./data/mentions.db)
    SUPABASE_URL / SUPABASE_KEY       hosted datastore endpoint and key
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from mention_ingest.chunked_writer import DEFAULT_CHUNK_SIZE, DEFAULT_VIDEO_BATCH_LIMIT


@dataclass(frozen=True)
class IngestConfig:
    chunk_size: int = DEFAULT_CHUNK_SIZE
    video_batch_limit: int = DEFAULT_VIDEO_BATCH_LIMIT
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    request_timeout: float = 30.0
    db_path: str = "./data/mentions.db"
    progress_db_path: str = "./data/ingest_progress.db"
    supabase_url: str = ""
    supabase_key: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "IngestConfig":
        """Build a config from environment variables (default: os.environ).

        Raises:
            ValueError: If a numeric variable does not parse or is out of range
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        return cls(
            chunk_size=_int_var(env, "MENTION_INGEST_CHUNK_SIZE", defaults.chunk_size, minimum=1),
            video_batch_limit=_int_var(env, "MENTION_INGEST_VIDEO_BATCH_LIMIT",
                                       defaults.video_batch_limit, minimum=1),
            max_retries=_int_var(env, "MENTION_INGEST_MAX_RETRIES", defaults.max_retries, minimum=0),
            base_delay=_float_var(env, "MENTION_INGEST_BASE_DELAY", defaults.base_delay),
            max_delay=_float_var(env, "MENTION_INGEST_MAX_DELAY", defaults.max_delay),
            request_timeout=_float_var(env, "MENTION_INGEST_REQUEST_TIMEOUT", defaults.request_timeout),
            db_path=env.get("DB_PATH", defaults.db_path),
            progress_db_path=env.get("MENTION_INGEST_PROGRESS_DB", defaults.progress_db_path),
            supabase_url=env.get("SUPABASE_URL", "").strip(),
            supabase_key=env.get("SUPABASE_KEY", "").strip(),
        )

    @property
    def use_rest_datastore(self) -> bool:
        """True when hosted datastore credentials are configured."""
        return bool(self.supabase_url and self.supabase_key)


def _int_var(env: Mapping[str, str], name: str, default: int, minimum: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_var(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got {value}")
    return value
