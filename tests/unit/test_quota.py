"""Tests for QuotaBudgetTracker: rolling window, gates, thresholds and cleanup."""
import logging
from datetime import timedelta

import pytest
from sqlmodel import Session, select

from contentsync.models.quota import QuotaUsage
from contentsync.sync.errors import QuotaExceeded
from contentsync.sync.quota import QuotaBudgetTracker, QuotaGate


@pytest.fixture
def tracker(engine, settings, clock):
    settings.quota_limits = {"youtube": 100, "twitter": 300}
    settings.quota_operation_costs = {"youtube": {"page": 2, "metadata": 1}}
    return QuotaBudgetTracker(engine, settings=settings, clock=clock)


class TestRecordUsage:
    def test_default_units_from_operation_cost(self, tracker, engine):
        tracker.record_usage("youtube", "page")
        with Session(engine) as s:
            row = s.exec(select(QuotaUsage)).one()
        assert row.units_consumed == 2
        assert row.operation == "page"

    def test_unknown_operation_costs_one(self, tracker):
        assert tracker.operation_cost("youtube", "search") == 1
        assert tracker.operation_cost("twitter", "page") == 1

    def test_failed_call_is_recorded_with_error(self, tracker, engine):
        tracker.record_usage("youtube", "page", error_message="HTTP 500")
        with Session(engine) as s:
            row = s.exec(select(QuotaUsage)).one()
        assert row.error_message == "HTTP 500"
        assert tracker.get_usage_summary("youtube").consumed == 2

    def test_window_start_recorded(self, tracker, engine, clock):
        tracker.record_usage("youtube", "metadata")
        with Session(engine) as s:
            row = s.exec(select(QuotaUsage)).one()
        assert row.window_start == clock.now - timedelta(hours=24)


class TestReserve:
    def test_charges_before_the_call(self, tracker, engine):
        usage_id = tracker.reserve("youtube", "page")
        with Session(engine) as s:
            row = s.get(QuotaUsage, usage_id)
        assert row.units_consumed == 2
        assert row.error_message is None
        assert tracker.get_usage_summary("youtube").consumed == 2

    def test_refuses_when_budget_cannot_cover_it(self, tracker):
        tracker.record_usage("youtube", "page", units=99)
        with pytest.raises(QuotaExceeded) as exc_info:
            tracker.reserve("youtube", "page")
        assert exc_info.value.remaining == 1
        assert tracker.get_usage_summary("youtube").consumed == 99

    def test_back_to_back_reservations_stop_at_the_limit(self, tracker):
        tracker.record_usage("youtube", "page", units=95)
        tracker.reserve("youtube", "page")
        tracker.reserve("youtube", "page")
        with pytest.raises(QuotaExceeded):
            tracker.reserve("youtube", "page")
        assert tracker.get_usage_summary("youtube").consumed == 99

    def test_mark_failed_keeps_units(self, tracker, engine):
        usage_id = tracker.reserve("youtube", "metadata")
        tracker.mark_failed(usage_id, "HTTP 503")
        with Session(engine) as s:
            row = s.get(QuotaUsage, usage_id)
        assert row.error_message == "HTTP 503"
        assert tracker.get_usage_summary("youtube").consumed == 1


class TestSummary:
    def test_empty_ledger(self, tracker):
        summary = tracker.get_usage_summary("youtube")
        assert summary.consumed == 0
        assert summary.remaining == 100
        assert summary.usage_percentage == 0
        assert summary.warning_level == "normal"

    def test_providers_are_independent(self, tracker):
        tracker.record_usage("twitter", "page", units=30)
        assert tracker.get_usage_summary("youtube").consumed == 0
        assert tracker.get_usage_summary("twitter").consumed == 30

    def test_rolling_window_drops_old_usage(self, tracker, clock):
        tracker.record_usage("youtube", "page", units=50)
        clock.advance(hours=23)
        tracker.record_usage("youtube", "page", units=10)
        assert tracker.get_usage_summary("youtube").consumed == 60
        clock.advance(hours=2)
        assert tracker.get_usage_summary("youtube").consumed == 10

    def test_remaining_never_negative(self, tracker):
        tracker.record_usage("youtube", "page", units=130)
        summary = tracker.get_usage_summary("youtube")
        assert summary.remaining == 0
        assert summary.warning_level == "exceeded"

    def test_unknown_provider_raises(self, tracker):
        with pytest.raises(ValueError):
            tracker.get_usage_summary("myspace")

    def test_to_dict(self, tracker):
        tracker.record_usage("youtube", "page", units=81)
        assert tracker.get_usage_summary("youtube").to_dict() == {
            "provider": "youtube",
            "consumed": 81,
            "limit": 100,
            "remaining": 19,
            "usage_percentage": 81.0,
            "warning_level": "warning",
        }


class TestGate:
    @pytest.mark.parametrize("units,expected", [
        (0, QuotaGate.OPEN),
        (89, QuotaGate.OPEN),
        (90, QuotaGate.SOFT),
        (94, QuotaGate.SOFT),
        (95, QuotaGate.HARD),
        (100, QuotaGate.HARD),
    ])
    def test_thresholds(self, tracker, units, expected):
        if units:
            tracker.record_usage("youtube", "page", units=units)
        assert tracker.gate("youtube") == expected

    def test_can_afford(self, tracker):
        tracker.record_usage("youtube", "page", units=97)
        assert tracker.can_afford("youtube", 3) is True
        assert tracker.can_afford("youtube", 4) is False


class TestThresholdLogging:
    def test_warning_logged_once_when_crossed(self, tracker, caplog):
        with caplog.at_level(logging.WARNING, logger="contentsync.sync.quota"):
            tracker.record_usage("youtube", "page", units=79)
            tracker.record_usage("youtube", "page", units=2)
            tracker.record_usage("youtube", "page", units=2)
        warnings = [r for r in caplog.records if "quota warning" in r.getMessage()]
        assert len(warnings) == 1

    def test_critical_logged_as_error(self, tracker, caplog):
        with caplog.at_level(logging.WARNING, logger="contentsync.sync.quota"):
            tracker.record_usage("youtube", "page", units=96)
        assert any(r.levelno == logging.ERROR for r in caplog.records)


class TestCleanup:
    def test_deletes_rows_older_than_retention(self, tracker, clock):
        tracker.record_usage("youtube", "page")
        clock.advance(days=31)
        tracker.record_usage("youtube", "page")
        assert tracker.cleanup_expired(timedelta(days=30)) == 1
        assert tracker.cleanup_expired(timedelta(days=30)) == 0

    def test_default_retention_from_settings(self, tracker, clock, settings):
        settings.quota_retention_days = 7
        tracker.record_usage("youtube", "page")
        clock.advance(days=8)
        assert tracker.cleanup_expired() == 1
