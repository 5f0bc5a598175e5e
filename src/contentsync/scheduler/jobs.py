"""
APScheduler jobs for background sync.

  sync_<provider>      every sync_interval_minutes: one sync cycle
  timeout_sweep        every timeout_sweep_minutes: auto-fail stuck syncs
  quota_cleanup        daily at quota_cleanup_hour UTC: purge old ledger rows

Job bodies log and swallow exceptions so one bad run never takes the
scheduler down; the next tick simply tries again.
"""
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from contentsync.config import Settings, get_settings

logger = logging.getLogger(__name__)


def build_scheduler(orchestrator, settings: Optional[Settings] = None) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        orchestrator: SyncOrchestrator the jobs delegate to.
        settings: Settings; defaults to get_settings().

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = settings or get_settings()
    scheduler = AsyncIOScheduler(timezone="UTC")

    for provider in orchestrator.fetchers:
        scheduler.add_job(
            _sync_cycle,
            trigger="interval",
            minutes=settings.sync_interval_minutes,
            id=f"sync_{provider}",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            kwargs={"orchestrator": orchestrator, "provider": provider},
        )

    scheduler.add_job(
        _timeout_sweep,
        trigger="interval",
        minutes=settings.timeout_sweep_minutes,
        id="timeout_sweep",
        replace_existing=True,
        kwargs={"orchestrator": orchestrator},
    )

    scheduler.add_job(
        _quota_cleanup,
        trigger="cron",
        hour=settings.quota_cleanup_hour,
        minute=0,
        id="quota_cleanup",
        replace_existing=True,
        kwargs={"orchestrator": orchestrator},
    )

    return scheduler


async def _sync_cycle(orchestrator, provider: str) -> None:
    """Periodic job: sync every due source of one provider."""
    try:
        log = await orchestrator.run_cycle(provider)
        logger.info(
            "%s sync cycle %s: %d synced, %d failed",
            provider, log.status, log.sources_synced, log.sources_failed,
        )
    except Exception as exc:
        logger.error("%s sync cycle failed: %s", provider, exc)


async def _timeout_sweep(orchestrator) -> None:
    try:
        swept = orchestrator.sweep_stuck_syncs()
        if swept:
            logger.warning("Timeout sweep auto-failed %d syncs: %s", len(swept), ", ".join(swept))
    except Exception as exc:
        logger.error("Timeout sweep failed: %s", exc)


async def _quota_cleanup(orchestrator) -> None:
    try:
        orchestrator.cleanup_quota()
    except Exception as exc:
        logger.error("Quota cleanup failed: %s", exc)
