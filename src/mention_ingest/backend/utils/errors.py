"""Error Handling Utilities

This module defines the ingestion error taxonomy, retry logic with exponential backoff
for transient datastore failures, and warning collection for per-record anomalies that
are skipped or flagged without aborting an ingestion run.

Error tiers:
    Tier 1 (recover locally): MalformedRecordError. The record is skipped, counted, and
        a warning is collected. The run continues.
    Tier 2 (retry with backoff): TransientWriteError. Timeouts, connection failures,
        HTTP 5xx/429, locked databases.
    Tier 3 (fatal for the chunk): ValidationWriteError. Schema mismatches, constraint
        violations, HTTP 4xx. Never retried.
"""

import json
import time
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple, Type, TypeVar, Any


T = TypeVar('T')


class IngestError(Exception):
    """Base exception for all ingestion failures."""
    pass


class MalformedRecordError(IngestError):
    """A single raw record could not be turned into a row (bad URL, bad shape)."""
    pass


class DatastoreError(IngestError):
    """Base exception for datastore reads and writes.

    When raised out of a chunked write, ``chunk_index`` is the chunk that
    failed and ``records_written`` counts the records durable before it.
    """

    def __init__(self, message: str, chunk_index: Optional[int] = None, records_written: int = 0):
        super().__init__(message)
        self.chunk_index = chunk_index
        self.records_written = records_written


class TransientWriteError(DatastoreError):
    """Retryable datastore failure (timeout, connection reset, 5xx, locked database)."""
    pass


class ValidationWriteError(DatastoreError):
    """Non-retryable datastore failure (schema mismatch, constraint violation, 4xx)."""
    pass


class ProgressStoreError(IngestError):
    """The run-progress database could not be read or updated.

    Raised out of a mention insert after chunk ``chunk_index`` became durable
    but its high-water mark could not be recorded; ``records_written`` counts
    every durable mention including that chunk.
    """

    def __init__(self, message: str, chunk_index: Optional[int] = None, records_written: int = 0):
        super().__init__(message)
        self.chunk_index = chunk_index
        self.records_written = records_written


def retry_with_backoff(
    fn: Callable[[], T],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (TransientWriteError,),
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
) -> T:
    """Execute a callable with exponential backoff retry logic.

    Used by the chunked writer around every datastore request. Only exceptions in
    ``retryable_exceptions`` are retried; anything else propagates on the first attempt.

    Args:
        fn: Callable to execute (should take no arguments)
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay cap in seconds (default: 30.0)
        retryable_exceptions: Exception types to retry on (default: TransientWriteError)
        on_retry: Optional hook called as on_retry(attempt, exception, delay) before
            each sleep, where attempt is 1-based

    Returns:
        The result of fn() on successful execution

    Raises:
        The final exception if all retries are exhausted, or immediately if the exception
        type is not in retryable_exceptions

    Backoff schedule (base_delay=1.0, max_delay=30.0):
        - Attempt 1: immediate
        - Attempt 2: wait 1.0s (base_delay * 2^0)
        - Attempt 3: wait 2.0s (base_delay * 2^1)
        - Attempt 4: wait 4.0s (base_delay * 2^2)
        - etc., capped at max_delay
    """
    for attempt in range(max_retries + 1):
        try:
            return fn()
        except retryable_exceptions as e:
            if attempt >= max_retries:
                raise

            delay = calculate_backoff_delay(attempt, base_delay, max_delay)
            if on_retry is not None:
                on_retry(attempt + 1, e, delay)
            time.sleep(delay)

    raise RuntimeError("Unreachable code")


def calculate_backoff_delay(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Return base_delay * 2^attempt, capped at max_delay.

    Examples:
        >>> calculate_backoff_delay(0)
        1.0
        >>> calculate_backoff_delay(2)
        4.0
        >>> calculate_backoff_delay(10)
        30.0
    """
    delay = base_delay * (2 ** attempt)
    return min(delay, max_delay)


# Supported warning types (Tier 1: recover locally)
WARNING_TYPE_MALFORMED_VIDEO_URL = "malformed_video_url"
WARNING_TYPE_SUSPECT_CREATED_AT = "suspect_created_at"
WARNING_TYPE_DUPLICATE_VIDEO = "duplicate_video"
WARNING_TYPE_UNPARSEABLE_VIEW_COUNT = "unparseable_view_count"

VALID_WARNING_TYPES = {
    WARNING_TYPE_MALFORMED_VIDEO_URL,
    WARNING_TYPE_SUSPECT_CREATED_AT,
    WARNING_TYPE_DUPLICATE_VIDEO,
    WARNING_TYPE_UNPARSEABLE_VIEW_COUNT,
}


class WarningsCollector:
    """Thread-safe collector for non-fatal anomalies during an ingestion run.

    Accumulates warning events with type, message, timestamp, and context.
    Supports serialization to JSON for storage alongside run progress.

    Example:
        >>> collector = WarningsCollector()
        >>> collector.append(
        ...     "malformed_video_url",
        ...     "No video id in URL",
        ...     {"video_url": "https://www.tiktok.com/@someone"}
        ... )
        >>> collector.count("malformed_video_url")
        1
    """

    def __init__(self):
        """Initialize an empty warnings collector."""
        self._warnings: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def append(self, warning_type: str, message: str, context: Dict[str, Any]) -> None:
        """Add a warning with type, message, timestamp, and context.

        Args:
            warning_type: One of VALID_WARNING_TYPES
            message: Human-readable description of the warning
            context: Additional structured data (e.g., video_url, views)

        Raises:
            ValueError: If warning_type is not in VALID_WARNING_TYPES
        """
        if warning_type not in VALID_WARNING_TYPES:
            raise ValueError(
                f"Invalid warning_type '{warning_type}'. "
                f"Must be one of: {', '.join(sorted(VALID_WARNING_TYPES))}"
            )

        warning = {
            "type": warning_type,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "context": context
        }

        with self._lock:
            self._warnings.append(warning)

    def count(self, warning_type: Optional[str] = None) -> int:
        """Return the number of warnings, optionally restricted to one type."""
        with self._lock:
            if warning_type is None:
                return len(self._warnings)
            return sum(1 for w in self._warnings if w["type"] == warning_type)

    def as_list(self) -> List[Dict[str, Any]]:
        """Return a copy of the collected warnings."""
        with self._lock:
            return [dict(w) for w in self._warnings]

    def to_json(self) -> Optional[str]:
        """Serialize warnings to a JSON array string, or None if nothing was collected."""
        with self._lock:
            if not self._warnings:
                return None
            return json.dumps(self._warnings)
