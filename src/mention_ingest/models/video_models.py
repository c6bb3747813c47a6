"""Video and mention data models for the Mention Ingestion Pipeline.

This module defines the data structures that flow through one ingestion run:
raw scraper input, the normalized rows written to the datastore, and the
token reference data used for attribution.

Data Models:
    RawVideo — one scraped video with its tokenized comment mentions (input)
    RawBatch — one scrape batch: extraction time plus all videos (input)
    MentionCount — merged count/is_ticker pair for one canonical mention key
    TokenIdentity — a known token (id, symbol); symbols are not unique
    VideoRecord — row upserted into the tiktoks table, keyed by id
    MentionRecord — row appended to the mentions table

Raw models are parsed leniently: missing keys become defaults so that one
malformed video never aborts a batch. Validation that decides whether a video
is usable happens in the record builder.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional


@dataclass
class RawVideo:
    """A scraped video as emitted by the upstream scraper.

    Attributes:
        video_url: Full video URL (expected to contain /video/<digits>)
        author: Creator username
        thumbnail_url: Thumbnail image URL
        posted_timestamp: Epoch seconds of posting, None when absent
        posted_time: Relative posting label from the page ("1s", "3h", "2d")
        views: Human-readable view count ("12.3K")
        comment_count: Number of comments the scraper saw
        mentions: Raw mention key -> {"count": int, "isTicker": bool}
    """
    video_url: str
    author: str = ""
    thumbnail_url: str = ""
    posted_timestamp: Optional[float] = None
    posted_time: Optional[str] = None
    views: Any = ""
    comment_count: int = 0
    mentions: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawVideo":
        """Build a RawVideo from one scraper JSON object.

        Mentions are read from comments.mentions; when absent, the legacy
        comments.tickers field ({symbol: count}) is used instead.
        """
        comments = data.get("comments") or {}
        mentions = comments.get("mentions")
        if mentions is None:
            mentions = comments.get("tickers") or {}

        return cls(
            video_url=data.get("video_url") or "",
            author=data.get("author") or "",
            thumbnail_url=data.get("thumbnail_url") or "",
            posted_timestamp=data.get("posted_timestamp"),
            posted_time=data.get("posted_time"),
            views=data.get("views", ""),
            comment_count=_as_int(comments.get("count", 0)),
            mentions=mentions,
        )


@dataclass
class RawBatch:
    """One scrape batch, flattened from {extraction_time, results: [{videos}]}.

    Attributes:
        extraction_time: When the scraper finished; None when missing or unparseable
        videos: All videos across all search results, in input order
    """
    extraction_time: Optional[datetime]
    videos: List[RawVideo] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawBatch":
        """Parse a scrape batch document."""
        videos = []
        for result in data.get("results") or []:
            for video in result.get("videos") or []:
                videos.append(RawVideo.from_dict(video))
        return cls(
            extraction_time=parse_timestamp(data.get("extraction_time")),
            videos=videos,
        )


@dataclass
class MentionCount:
    """Merged mention statistics for one canonical key."""
    count: int
    is_ticker: bool = False


@dataclass(frozen=True)
class TokenIdentity:
    """A known token. Several tokens may share one symbol."""
    id: int
    symbol: str


@dataclass
class VideoRecord:
    """A normalized video row (tiktoks table).

    Attributes:
        id: Numeric video id taken from the URL path (string, as stored)
        username: Creator username
        url: Full video URL
        thumbnail: Thumbnail URL
        created_at: Posting time (UTC); epoch start when unknown
        fetched_at: Batch extraction time (UTC), shared by all videos in a batch
        views: View count as an integer >= 0
        comment_count: Comment count (stored in the "comments" column)
    """
    id: str
    username: str
    url: str
    thumbnail: str
    created_at: datetime
    fetched_at: datetime
    views: int
    comment_count: int

    def to_row(self) -> Dict[str, Any]:
        """Return the datastore row for this video."""
        return {
            "id": self.id,
            "username": self.username,
            "url": self.url,
            "thumbnail": self.thumbnail,
            "created_at": self.created_at.isoformat(),
            "fetched_at": self.fetched_at.isoformat(),
            "views": self.views,
            "comments": self.comment_count,
        }


@dataclass
class MentionRecord:
    """A mention attribution row (mentions table).

    Attributes:
        tiktok_id: VideoRecord.id the mention was found under
        token_id: TokenIdentity.id the mention is attributed to
        count: Number of times the mention occurred (>= 0)
        mention_at: Ingestion run timestamp shared by every mention in the batch
    """
    tiktok_id: str
    token_id: int
    count: int
    mention_at: datetime

    def to_row(self) -> Dict[str, Any]:
        """Return the datastore row for this mention."""
        return {
            "tiktok_id": self.tiktok_id,
            "token_id": self.token_id,
            "count": self.count,
            "mention_at": self.mention_at.isoformat(),
        }


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime, or return None.

    A trailing "Z" (as emitted by JavaScript's toISOString) is accepted.
    Naive timestamps are assumed to be UTC.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _as_int(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0
