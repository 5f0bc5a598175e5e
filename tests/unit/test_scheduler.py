"""Tests for APScheduler job configuration and job bodies."""
import pytest
from unittest.mock import AsyncMock, MagicMock
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from contentsync.scheduler.jobs import (
    _quota_cleanup,
    _sync_cycle,
    _timeout_sweep,
    build_scheduler,
)


def make_orchestrator(providers=("youtube", "twitter")):
    orchestrator = MagicMock()
    orchestrator.fetchers = {p: MagicMock() for p in providers}
    orchestrator.run_cycle = AsyncMock(
        return_value=MagicMock(status="success", sources_synced=2, sources_failed=0)
    )
    orchestrator.sweep_stuck_syncs = MagicMock(return_value=[])
    orchestrator.cleanup_quota = MagicMock(return_value=0)
    return orchestrator


class TestBuildScheduler:
    def test_returns_scheduler(self, settings):
        scheduler = build_scheduler(make_orchestrator(), settings)
        assert isinstance(scheduler, AsyncIOScheduler)

    def test_one_sync_job_per_provider(self, settings):
        scheduler = build_scheduler(make_orchestrator(), settings)
        job_ids = {job.id for job in scheduler.get_jobs()}
        assert {"sync_youtube", "sync_twitter", "timeout_sweep", "quota_cleanup"} <= job_ids

    def test_sync_job_is_interval(self, settings):
        settings.sync_interval_minutes = 45
        scheduler = build_scheduler(make_orchestrator(), settings)
        job = next(j for j in scheduler.get_jobs() if j.id == "sync_youtube")
        assert job.trigger.__class__.__name__ == "IntervalTrigger"
        assert job.trigger.interval.total_seconds() == 45 * 60
        assert job.kwargs["provider"] == "youtube"

    def test_sweep_interval_from_settings(self, settings):
        settings.timeout_sweep_minutes = 10
        scheduler = build_scheduler(make_orchestrator(), settings)
        job = next(j for j in scheduler.get_jobs() if j.id == "timeout_sweep")
        assert job.trigger.interval.total_seconds() == 600

    def test_quota_cleanup_is_daily_cron(self, settings):
        settings.quota_cleanup_hour = 4
        scheduler = build_scheduler(make_orchestrator(), settings)
        job = next(j for j in scheduler.get_jobs() if j.id == "quota_cleanup")
        assert job.trigger.__class__.__name__ == "CronTrigger"
        fields = {f.name: f for f in job.trigger.fields}
        assert str(fields["hour"]) == "4"

    def test_scheduler_not_running_on_creation(self, settings):
        """build_scheduler should not auto-start."""
        scheduler = build_scheduler(make_orchestrator(), settings)
        assert not scheduler.running


class TestJobBodies:
    @pytest.mark.asyncio
    async def test_sync_cycle_runs_provider(self):
        orchestrator = make_orchestrator()
        await _sync_cycle(orchestrator=orchestrator, provider="youtube")
        orchestrator.run_cycle.assert_awaited_once_with("youtube")

    @pytest.mark.asyncio
    async def test_sync_cycle_exception_does_not_propagate(self):
        """Job bodies catch all exceptions so the scheduler stays alive."""
        orchestrator = make_orchestrator()
        orchestrator.run_cycle.side_effect = Exception("database is locked")
        await _sync_cycle(orchestrator=orchestrator, provider="youtube")

    @pytest.mark.asyncio
    async def test_timeout_sweep(self):
        orchestrator = make_orchestrator()
        orchestrator.sweep_stuck_syncs.return_value = ["src-1"]
        await _timeout_sweep(orchestrator=orchestrator)
        orchestrator.sweep_stuck_syncs.assert_called_once()

    @pytest.mark.asyncio
    async def test_timeout_sweep_exception_does_not_propagate(self):
        orchestrator = make_orchestrator()
        orchestrator.sweep_stuck_syncs.side_effect = RuntimeError("boom")
        await _timeout_sweep(orchestrator=orchestrator)

    @pytest.mark.asyncio
    async def test_quota_cleanup(self):
        orchestrator = make_orchestrator()
        await _quota_cleanup(orchestrator=orchestrator)
        orchestrator.cleanup_quota.assert_called_once()

    @pytest.mark.asyncio
    async def test_quota_cleanup_exception_does_not_propagate(self):
        orchestrator = make_orchestrator()
        orchestrator.cleanup_quota.side_effect = RuntimeError("boom")
        await _quota_cleanup(orchestrator=orchestrator)
