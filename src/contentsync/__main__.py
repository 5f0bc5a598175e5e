"""
Main entrypoint: runs the APScheduler sync jobs in one process.

FastAPI runs separately under uvicorn (control plane).

Usage:
    python -m contentsync                    # starts the scheduler
    python -m contentsync cycle youtube      # one sync cycle for a provider, then exit
    python -m contentsync sweep              # auto-fail stuck syncs once
    python -m contentsync cleanup-quota      # purge expired quota ledger rows once
    uvicorn contentsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

from contentsync.config import get_settings

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _build():
    from contentsync.runtime import build_orchestrator

    settings = get_settings()
    if not settings.page_fetcher_factory:
        logger.error(
            "PAGE_FETCHER_FACTORY is not set. Point it at 'package.module:factory'."
        )
        sys.exit(1)
    return build_orchestrator(settings=settings)


async def _run_scheduler() -> None:
    from contentsync.scheduler.jobs import build_scheduler

    settings = get_settings()
    orchestrator = _build()

    scheduler = build_scheduler(orchestrator, settings)
    scheduler.start()
    logger.info(
        "Scheduler started (sync every %d min for %s, timeout sweep every %d min, "
        "quota cleanup at %02d:00 UTC)",
        settings.sync_interval_minutes,
        ", ".join(orchestrator.fetchers),
        settings.timeout_sweep_minutes,
        settings.quota_cleanup_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")


async def _run_cycle(provider: str) -> None:
    log = await _build().run_cycle(provider)
    logger.info(
        "%s cycle %s: %d synced, %d failed",
        provider, log.status, log.sources_synced, log.sources_failed,
    )


def _run_sweep() -> None:
    swept = _build().sweep_stuck_syncs()
    logger.info("Timeout sweep auto-failed %d syncs", len(swept))


def _run_cleanup() -> None:
    deleted = _build().cleanup_quota()
    logger.info("Removed %d expired quota ledger rows", deleted)


if __name__ == "__main__":
    # Dispatch on first argument; no argument starts the scheduler
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "cycle" and len(sys.argv) > 2:
        asyncio.run(_run_cycle(sys.argv[2]))
    elif command == "sweep":
        _run_sweep()
    elif command == "cleanup-quota":
        _run_cleanup()
    elif command is None:
        asyncio.run(_run_scheduler())
    else:
        print(__doc__)
        sys.exit(2)
