"""Record building for one ingestion batch.

Turns a RawBatch into the VideoRecords and MentionRecords to be written. The
work is split into the three pure stages the pipeline steps through:

    normalize_batch  — derive video ids, collapse duplicate videos, canonicalize mention keys
    resolve_batch    — attribute each canonical key to every token sharing its symbol
    assemble_records — emit VideoRecord / MentionRecord rows with batch-wide timestamps

build_records() runs all three. No I/O happens in this module; per-record
anomalies are skipped or flagged through a WarningsCollector and never raise.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import structlog

from mention_ingest.backend.utils.errors import (
    MalformedRecordError,
    WarningsCollector,
    WARNING_TYPE_DUPLICATE_VIDEO,
    WARNING_TYPE_MALFORMED_VIDEO_URL,
    WARNING_TYPE_SUSPECT_CREATED_AT,
    WARNING_TYPE_UNPARSEABLE_VIEW_COUNT,
)
from mention_ingest.mention_keys import normalize_mentions
from mention_ingest.models.video_models import (
    MentionCount,
    MentionRecord,
    RawBatch,
    RawVideo,
    VideoRecord,
)
from mention_ingest.symbols import SymbolResolver
from mention_ingest.views import parse_view_count

logger = structlog.get_logger(__name__)

VIDEO_ID_PATTERN = re.compile(r"/video/(\d+)")

# Relative-time label the scraper writes when a video's time tag is missing
JUST_POSTED_MARKER = "1s"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# created_at values this close to 1970-01-01 are upstream placeholders, not post times
SUSPECT_CREATED_AT_WINDOW = timedelta(days=1)


@dataclass
class PreparedVideo:
    """A raw video that passed id extraction, with canonical mentions.

    attributions is filled by resolve_batch() as (token_id, count) pairs.
    """
    video_id: str
    raw: RawVideo
    mentions: Dict[str, MentionCount]
    attributions: List[Tuple[int, int]] = field(default_factory=list)


@dataclass
class BuildResult:
    """All rows built from one batch, plus what was skipped."""
    videos: List[VideoRecord]
    mentions: List[MentionRecord]
    skipped_videos: int
    fetched_at: datetime
    mention_at: datetime
    warnings: WarningsCollector


def extract_video_id(video_url: str) -> Optional[str]:
    """Return the numeric id from a video URL, or None if the URL has none.

    Example:
        >>> extract_video_id("https://www.tiktok.com/@user/video/7452107455473175826")
        '7452107455473175826'
    """
    if not video_url:
        return None
    match = VIDEO_ID_PATTERN.search(video_url)
    return match.group(1) if match else None


def require_video_id(raw: RawVideo) -> str:
    """Return the video id of a raw video.

    Raises:
        MalformedRecordError: If the video URL has no /video/<id> segment
    """
    video_id = extract_video_id(raw.video_url)
    if video_id is None:
        raise MalformedRecordError(f"Video URL has no /video/<id> segment: {raw.video_url!r}")
    return video_id


def resolve_created_at(raw: RawVideo) -> Tuple[datetime, bool]:
    """Return (created_at, suspect) for a raw video.

    A present, non-zero posted_timestamp is used as-is. An absent or zero
    timestamp becomes the epoch start; when the scraper also wrote the
    just-posted marker this is its known placeholder behaviour. Either way a
    value within a day of the epoch is reported as suspect so callers do not
    mistake it for a real post time.
    """
    created_at = EPOCH
    try:
        timestamp = float(raw.posted_timestamp) if raw.posted_timestamp is not None else 0.0
    except (TypeError, ValueError):
        timestamp = 0.0

    if timestamp:
        try:
            created_at = datetime.fromtimestamp(timestamp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            created_at = EPOCH

    suspect = abs(created_at - EPOCH) <= SUSPECT_CREATED_AT_WINDOW
    return created_at, suspect


def normalize_batch(batch: RawBatch, warnings: WarningsCollector) -> Tuple[List[PreparedVideo], int]:
    """Derive video ids, collapse duplicates, and canonicalize mention keys.

    Videos whose URL carries no id are skipped. A video id seen more than once
    in the batch (the scraper delivers at least once) keeps its last
    occurrence, so neither the video row nor its mentions are emitted twice.

    Returns:
        (prepared videos in first-seen order, number of skipped videos)
    """
    prepared: Dict[str, PreparedVideo] = {}
    skipped = 0

    for raw in batch.videos:
        try:
            video_id = require_video_id(raw)
        except MalformedRecordError as e:
            skipped += 1
            warnings.append(
                WARNING_TYPE_MALFORMED_VIDEO_URL,
                "Video URL has no /video/<id> segment; video skipped",
                {"video_url": raw.video_url},
            )
            logger.warning("video_skipped_malformed_url", video_url=raw.video_url, error=str(e))
            continue

        if video_id in prepared:
            warnings.append(
                WARNING_TYPE_DUPLICATE_VIDEO,
                "Video delivered more than once in batch; last occurrence kept",
                {"video_id": video_id},
            )
            logger.debug("duplicate_video_collapsed", video_id=video_id)

        prepared[video_id] = PreparedVideo(
            video_id=video_id,
            raw=raw,
            mentions=normalize_mentions(raw.mentions),
        )

    return list(prepared.values()), skipped


def resolve_batch(prepared: List[PreparedVideo], resolver: SymbolResolver) -> int:
    """Attribute every canonical mention to all matching token ids.

    Unknown symbols are dropped silently; ambiguous symbols fan out to one
    attribution per token id.

    Returns:
        Total number of attributions produced
    """
    total = 0
    for video in prepared:
        video.attributions = []
        for key, mention in video.mentions.items():
            for token_id in resolver.resolve(key):
                video.attributions.append((token_id, mention.count))
        total += len(video.attributions)
    return total


def assemble_records(
    prepared: List[PreparedVideo],
    fetched_at: datetime,
    mention_at: datetime,
    warnings: WarningsCollector,
) -> Tuple[List[VideoRecord], List[MentionRecord]]:
    """Emit video and mention rows for resolved videos.

    Every mention shares mention_at, which ties all rows of one ingestion run
    together for later grouping.
    """
    videos: List[VideoRecord] = []
    mentions: List[MentionRecord] = []

    for video in prepared:
        raw = video.raw
        created_at, suspect = resolve_created_at(raw)
        if suspect:
            warnings.append(
                WARNING_TYPE_SUSPECT_CREATED_AT,
                "created_at is a placeholder near 1970-01-01, not a real post time",
                {
                    "video_id": video.video_id,
                    "posted_timestamp": raw.posted_timestamp,
                    "just_posted_marker": raw.posted_time == JUST_POSTED_MARKER,
                },
            )

        views = parse_view_count(raw.views)
        if views == 0 and _looks_nonzero(raw.views):
            warnings.append(
                WARNING_TYPE_UNPARSEABLE_VIEW_COUNT,
                "View count could not be parsed; stored as 0",
                {"video_id": video.video_id, "views": str(raw.views)},
            )

        videos.append(VideoRecord(
            id=video.video_id,
            username=raw.author,
            url=raw.video_url,
            thumbnail=raw.thumbnail_url,
            created_at=created_at,
            fetched_at=fetched_at,
            views=views,
            comment_count=raw.comment_count,
        ))

        for token_id, count in video.attributions:
            mentions.append(MentionRecord(
                tiktok_id=video.video_id,
                token_id=token_id,
                count=count,
                mention_at=mention_at,
            ))

    return videos, mentions


def build_records(
    batch: RawBatch,
    resolver: SymbolResolver,
    fetched_at: Optional[datetime] = None,
    mention_at: Optional[datetime] = None,
    warnings: Optional[WarningsCollector] = None,
) -> BuildResult:
    """Build every VideoRecord and MentionRecord for one batch.

    Args:
        batch: Parsed scrape batch
        resolver: Resolver over this run's token snapshot
        fetched_at: Fetch time for all videos (default: batch extraction time, else now)
        mention_at: Timestamp shared by all mentions (default: now, generated once)
        warnings: Collector for skipped/flagged records (default: a new one)

    Returns:
        BuildResult with rows, skip count, and the timestamps used

    Example:
        >>> result = build_records(batch, SymbolResolver(snapshot))
        >>> [v.id for v in result.videos]
        ['555']
    """
    if warnings is None:
        warnings = WarningsCollector()
    now = datetime.now(timezone.utc)
    if fetched_at is None:
        fetched_at = batch.extraction_time or now
    if mention_at is None:
        mention_at = now

    prepared, skipped = normalize_batch(batch, warnings)
    resolve_batch(prepared, resolver)
    videos, mentions = assemble_records(prepared, fetched_at, mention_at, warnings)

    return BuildResult(
        videos=videos,
        mentions=mentions,
        skipped_videos=skipped,
        fetched_at=fetched_at,
        mention_at=mention_at,
        warnings=warnings,
    )


def _looks_nonzero(views) -> bool:
    text = "" if views is None else str(views).strip()
    return text not in ("", "0")
