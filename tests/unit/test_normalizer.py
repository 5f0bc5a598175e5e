"""Unit tests for the content item normalizer."""
import json
from datetime import datetime

import pytest

from contentsync.sync.errors import IngestionError
from contentsync.sync.normalizer import (
    category_name,
    normalize_content_item,
    normalize_statistics,
    parse_duration,
    parse_timestamp,
)

YOUTUBE_ITEM = {
    "id": "dQw4w9WgXcQ",
    "title": "  Interval session breakdown ",
    "description": "Six by 800m",
    "url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
    "publishedAt": "2024-05-01T12:30:00Z",
    "duration": "PT1H4M13S",
    "categoryId": "17",
    "defaultLanguage": "en",
    "liveBroadcastContent": "none",
    "thumbnails": {
        "default": {"url": "https://i.ytimg.com/default.jpg"},
        "high": {"url": "https://i.ytimg.com/high.jpg"},
    },
    "statistics": {"viewCount": "1200", "likeCount": "80", "commentCount": "4"},
}


class TestNormalizeContentItem:
    def test_youtube_shape(self):
        fields = normalize_content_item(YOUTUBE_ITEM, provider="youtube", source_id="src-1")
        assert fields["external_id"] == "dQw4w9WgXcQ"
        assert fields["source_id"] == "src-1"
        assert fields["provider"] == "youtube"
        assert fields["title"] == "Interval session breakdown"
        assert fields["published_at"] == datetime(2024, 5, 1, 12, 30)
        assert fields["duration_seconds"] == 3853
        assert fields["category"] == "Sports"
        assert fields["language"] == "en"
        assert fields["is_live"] is False
        assert fields["thumbnail_url"] == "https://i.ytimg.com/high.jpg"
        assert json.loads(fields["raw_json"])["id"] == "dQw4w9WgXcQ"

    def test_snake_case_shape(self):
        raw = {
            "external_id": 42,
            "title": "Thread",
            "published_at": "2024-05-01T14:30:00+02:00",
            "duration_seconds": 90,
            "is_live": True,
            "thumbnail_url": "https://x/t.jpg",
        }
        fields = normalize_content_item(raw, provider="twitter", source_id="src-2")
        assert fields["external_id"] == "42"
        assert fields["published_at"] == datetime(2024, 5, 1, 12, 30)
        assert fields["duration_seconds"] == 90
        assert fields["is_live"] is True
        assert fields["thumbnail_url"] == "https://x/t.jpg"

    def test_live_broadcast(self):
        raw = dict(YOUTUBE_ITEM, liveBroadcastContent="live")
        assert normalize_content_item(raw, "youtube", "s")["is_live"] is True

    @pytest.mark.parametrize("raw", [
        {"title": "no id"},
        {"id": "", "title": "blank id"},
        {"id": "x1"},
        {"id": "x1", "title": "   "},
        {"id": "x1", "title": 17},
        "not-a-dict",
        None,
    ])
    def test_malformed_items_raise(self, raw):
        with pytest.raises(IngestionError):
            normalize_content_item(raw, "youtube", "s")

    def test_missing_title_carries_external_id(self):
        with pytest.raises(IngestionError) as exc_info:
            normalize_content_item({"id": "x1"}, "youtube", "s")
        assert exc_info.value.external_id == "x1"

    @pytest.mark.parametrize("field, value", [
        ("thumbnails", ["not-a-dict"]),
        ("thumbnails", "https://x/t.jpg"),
        ("description", {"text": "nested"}),
        ("url", 42),
        ("defaultLanguage", ["en"]),
    ])
    def test_wrongly_typed_nested_fields_raise(self, field, value):
        raw = dict(YOUTUBE_ITEM, **{field: value})
        with pytest.raises(IngestionError) as exc_info:
            normalize_content_item(raw, "youtube", "s")
        assert exc_info.value.external_id == YOUTUBE_ITEM["id"]

    def test_bad_date_is_none_not_error(self):
        raw = dict(YOUTUBE_ITEM, publishedAt="yesterday")
        assert normalize_content_item(raw, "youtube", "s")["published_at"] is None


class TestParsers:
    @pytest.mark.parametrize("value,expected", [
        ("PT4M13S", 253),
        ("PT1H", 3600),
        ("P1DT2S", 86402),
        ("PT0S", 0),
        ("125", 125),
        (61.7, 61),
        (None, None),
        ("", None),
        ("four minutes", None),
    ])
    def test_parse_duration(self, value, expected):
        assert parse_duration(value) == expected

    def test_parse_timestamp_naive_passthrough(self):
        assert parse_timestamp("2024-01-02T03:04:05") == datetime(2024, 1, 2, 3, 4, 5)

    def test_parse_timestamp_converts_to_utc(self):
        assert parse_timestamp("2024-01-02T03:04:05-05:00") == datetime(2024, 1, 2, 8, 4, 5)

    def test_category_map(self):
        assert category_name("youtube", "27") == "Education"
        assert category_name("youtube", 10) == "Music"
        assert category_name("youtube", "999") == "Other"
        assert category_name("youtube", None) is None
        assert category_name("twitter", "tech") == "tech"


class TestNormalizeStatistics:
    def test_engagement_rate(self):
        stats = normalize_statistics(YOUTUBE_ITEM)
        assert stats["views"] == 1200
        assert stats["likes"] == 80
        assert stats["comments"] == 4
        assert stats["engagement_rate"] == pytest.approx(7.0)

    def test_capped_at_100(self):
        stats = normalize_statistics({"statistics": {"viewCount": 10, "likeCount": 30, "commentCount": 5}})
        assert stats["engagement_rate"] == 100.0

    def test_zero_views(self):
        stats = normalize_statistics({"statistics": {"likeCount": 3}})
        assert stats["views"] == 0
        assert stats["engagement_rate"] == 0.0

    def test_garbage_counts_become_zero(self):
        stats = normalize_statistics({"statistics": {"viewCount": "n/a", "likeCount": "5"}})
        assert stats["views"] == 0 and stats["likes"] == 5

    def test_no_statistics_block(self):
        assert normalize_statistics({"id": "x"}) is None
