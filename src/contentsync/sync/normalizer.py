"""
Content item normalizer.

Converts raw item dicts returned by a PageFetcher into clean field dicts that
map directly onto ContentItem / ContentStatistics columns. No DB access here;
ContentIngestor handles persistence.

Fetchers may hand over items in the platform's own camelCase shape
(YouTube Data API style) or already snake_cased; both are accepted:

    {"id": "abc", "title": "...", "publishedAt": "2024-05-01T12:00:00Z",
     "duration": "PT4M13S", "categoryId": "27", "liveBroadcastContent": "none",
     "thumbnails": {"high": {"url": "..."}},
     "statistics": {"viewCount": "1200", "likeCount": "80", "commentCount": "4"}}
"""
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from contentsync.sync.errors import IngestionError

# YouTube videoCategoryId → display name
YOUTUBE_CATEGORIES = {
    "1": "Film & Animation",
    "2": "Autos & Vehicles",
    "10": "Music",
    "15": "Pets & Animals",
    "17": "Sports",
    "19": "Travel & Events",
    "20": "Gaming",
    "22": "People & Blogs",
    "23": "Comedy",
    "24": "Entertainment",
    "25": "News & Politics",
    "26": "Howto & Style",
    "27": "Education",
    "28": "Science & Technology",
    "29": "Nonprofits & Activism",
}

_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)

# Thumbnail sizes, best first
_THUMBNAIL_SIZES = ("maxres", "standard", "high", "medium", "default")


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    """Return the first non-None value among keys (camelCase / snake_case aliases)."""
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def parse_duration(value: Any) -> Optional[int]:
    """ISO 8601 duration ("PT1H2M3S") or plain seconds → int seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    match = _DURATION_RE.match(text)
    if not match:
        return None
    parts = {k: int(v) for k, v in match.groupdict().items() if v}
    return (
        parts.get("days", 0) * 86400
        + parts.get("hours", 0) * 3600
        + parts.get("minutes", 0) * 60
        + parts.get("seconds", 0)
    )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp into naive UTC. Returns None if unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _text(raw: Dict[str, Any], external_id: str, *keys: str) -> Optional[str]:
    """Optional string field; any other type marks the item as malformed."""
    value = _first(raw, *keys)
    if value is None or isinstance(value, str):
        return value
    raise IngestionError(
        f"Field {keys[0]!r} is {type(value).__name__}, expected a string",
        external_id=external_id,
    )


def _thumbnail_url(raw: Dict[str, Any], external_id: str) -> Optional[str]:
    url = _first(raw, "thumbnail_url", "thumbnailUrl", "thumbnail")
    if isinstance(url, str):
        return url
    thumbnails = raw.get("thumbnails") or {}
    if not isinstance(thumbnails, dict):
        raise IngestionError(
            f"Field 'thumbnails' is {type(thumbnails).__name__}, expected an object",
            external_id=external_id,
        )
    for size in _THUMBNAIL_SIZES:
        thumb = thumbnails.get(size)
        if isinstance(thumb, dict) and thumb.get("url"):
            return thumb["url"]
        if isinstance(thumb, str) and thumb:
            return thumb
    return None


def _to_int(value: Any) -> int:
    """Counts arrive as strings from some APIs ("1200"). Missing → 0."""
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def category_name(provider: str, category_id: Any) -> Optional[str]:
    if category_id is None or category_id == "":
        return None
    if provider == "youtube":
        return YOUTUBE_CATEGORIES.get(str(category_id), "Other")
    return str(category_id)


def normalize_content_item(raw: Dict[str, Any], provider: str, source_id: str) -> Dict[str, Any]:
    """
    Normalize one fetched item into a ContentItem field dict.

    Args:
        raw: Item dict as returned in Page.items.
        provider: Provider of the source the item was fetched for.
        source_id: Source.id the item belongs to.

    Returns:
        Dict with keys matching ContentItem columns (excluding id/timestamps).

    Raises:
        IngestionError: the item is not a dict, or has no external id or title.
    """
    if not isinstance(raw, dict):
        raise IngestionError(f"Item is not an object: {type(raw).__name__}")

    external_id = _first(raw, "id", "external_id", "externalId")
    if external_id is None or str(external_id).strip() == "":
        raise IngestionError("Item has no external id")
    external_id = str(external_id)

    title = _first(raw, "title")
    if not isinstance(title, str) or not title.strip():
        raise IngestionError("Item has no title", external_id=external_id)

    live = _first(raw, "liveBroadcastContent", "live_broadcast_content")
    is_live = bool(raw.get("is_live")) or live == "live"

    return {
        "source_id": source_id,
        "provider": provider,
        "external_id": external_id,
        "title": title.strip(),
        "description": _text(raw, external_id, "description") or None,
        "url": _text(raw, external_id, "url"),
        "thumbnail_url": _thumbnail_url(raw, external_id),
        "published_at": parse_timestamp(_first(raw, "publishedAt", "published_at")),
        "duration_seconds": parse_duration(_first(raw, "duration", "duration_seconds")),
        "language": _text(raw, external_id, "defaultLanguage", "default_language", "language"),
        "is_live": is_live,
        "category": category_name(provider, _first(raw, "categoryId", "category_id")),
        "raw_json": json.dumps(raw, default=str),
    }


def normalize_statistics(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Extract view/like/comment counts and derive the engagement rate.

    engagement_rate = (likes + comments) / views * 100, capped at 100,
    0 when there are no views.

    Returns:
        Dict with keys matching ContentStatistics columns, or None when the
        item carries no statistics block.
    """
    stats = raw.get("statistics")
    if not isinstance(stats, dict):
        return None

    views = _to_int(_first(stats, "viewCount", "view_count", "views"))
    likes = _to_int(_first(stats, "likeCount", "like_count", "likes"))
    comments = _to_int(_first(stats, "commentCount", "comment_count", "comments"))
    engagement = ((likes + comments) / views * 100) if views > 0 else 0.0

    return {
        "views": views,
        "likes": likes,
        "comments": comments,
        "engagement_rate": min(engagement, 100.0),
    }
