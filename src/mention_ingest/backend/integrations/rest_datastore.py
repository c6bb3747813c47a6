"""
Hosted Datastore Integration (PostgREST)

Provides the REST rendition of the ingestion datastore against the hosted
Postgres instance's PostgREST endpoint (/rest/v1/<table>):
- Token snapshot read (paged; the hosted endpoint caps a response at 1000 rows)
- Video upsert (on_conflict=id, resolution=merge-duplicates)
- Mention insert (append-only)

Every request carries a timeout. Failures are classified for the chunked writer:
- Timeouts, connection errors, HTTP 408/429/5xx: TransientWriteError (retried)
- Any other HTTP 4xx (bad column, constraint, auth): ValidationWriteError

Environment variables (via IngestConfig): SUPABASE_URL, SUPABASE_KEY
"""

from typing import Any, Dict, List, Optional, Sequence

import requests
import structlog

from mention_ingest.backend.utils.errors import (
    DatastoreError,
    TransientWriteError,
    ValidationWriteError,
)
from mention_ingest.models.video_models import MentionRecord, VideoRecord

logger = structlog.get_logger(__name__)

REST_PATH = "/rest/v1"

# Largest page the hosted endpoint returns for a single select
TOKEN_PAGE_SIZE = 1000

TRANSIENT_STATUS_CODES = {408, 425, 429}


class RestDatastore:
    """Datastore client for the hosted PostgREST API.

    Args:
        base_url: Project URL (e.g. https://<project>.supabase.co)
        api_key: Service or anon key, sent as apikey and bearer token
        timeout: Per-request timeout in seconds
        session: Optional requests.Session (injected in tests)
        videos_table: Table receiving video upserts
        mentions_table: Table receiving mention inserts
        tokens_table: Table holding token reference data
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
        videos_table: str = "tiktoks",
        mentions_table: str = "mentions",
        tokens_table: str = "tokens",
    ):
        if not base_url:
            raise ValueError("base_url is required (set SUPABASE_URL)")
        if not api_key:
            raise ValueError("api_key is required (set SUPABASE_KEY)")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.videos_table = videos_table
        self.mentions_table = mentions_table
        self.tokens_table = tokens_table
        self._session = session or requests.Session()
        self._session.headers.update({
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    def select_tokens(self) -> List[Dict[str, Any]]:
        """Return all {"id", "symbol"} token rows ordered by id ascending.

        Pages through the table TOKEN_PAGE_SIZE rows at a time until a short
        page is returned.

        Raises:
            DatastoreError: If any page cannot be read
        """
        rows: List[Dict[str, Any]] = []
        offset = 0

        while True:
            response = self._request(
                "GET",
                self.tokens_table,
                params={
                    "select": "id,symbol",
                    "order": "id.asc",
                    "limit": TOKEN_PAGE_SIZE,
                    "offset": offset,
                },
                operation="select_tokens",
            )
            page = response.json()
            rows.extend(page)
            if len(page) < TOKEN_PAGE_SIZE:
                break
            offset += TOKEN_PAGE_SIZE

        return rows

    def upsert_videos(self, records: Sequence[VideoRecord]) -> int:
        """Upsert video rows with conflict target id. Returns records written."""
        if not records:
            return 0
        self._request(
            "POST",
            self.videos_table,
            params={"on_conflict": "id"},
            json=[record.to_row() for record in records],
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
            operation="upsert_videos",
        )
        return len(records)

    def insert_mentions(self, records: Sequence[MentionRecord]) -> int:
        """Append mention rows. Returns records written."""
        if not records:
            return 0
        self._request(
            "POST",
            self.mentions_table,
            json=[record.to_row() for record in records],
            headers={"Prefer": "return=minimal"},
            operation="insert_mentions",
        )
        return len(records)

    def _request(self, method: str, table: str, operation: str, **kwargs) -> requests.Response:
        """Send one request and classify any failure.

        Raises:
            TransientWriteError: On timeout, connection failure, 408/425/429, or 5xx
            ValidationWriteError: On any other 4xx
        """
        url = f"{self.base_url}{REST_PATH}/{table}"

        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            # Timeouts and connection resets included
            logger.warning("datastore_request_failed", operation=operation,
                           error_type=type(e).__name__, error=str(e))
            raise TransientWriteError(f"{operation} failed: {e}") from e

        if response.status_code >= 400:
            raise _classify_response(response, operation)

        return response


def _classify_response(response: requests.Response, operation: str) -> DatastoreError:
    """Build the right DatastoreError for a failed HTTP response."""
    body = (response.text or "")[:500]
    message = f"{operation} failed with HTTP {response.status_code}: {body}"

    if response.status_code >= 500 or response.status_code in TRANSIENT_STATUS_CODES:
        logger.warning("datastore_transient_status", operation=operation,
                       status_code=response.status_code)
        return TransientWriteError(message)

    logger.error("datastore_validation_status", operation=operation,
                 status_code=response.status_code, body=body)
    return ValidationWriteError(message)
