"""
Full resync script: recrawl sources from their first page.

Usage:
    python -m contentsync.scripts.full_resync SOURCE_ID [SOURCE_ID ...]
    python -m contentsync.scripts.full_resync --provider youtube

Runs one source at a time. A recrawl that hits the quota pauses with its
cursor persisted; the scheduler (or a resume call) continues it later.
Once one recrawl pauses on quota, the remaining sources are left alone,
since they would pause immediately too.
"""
import argparse
import asyncio
import logging
from typing import List

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

SLEEP_BETWEEN_SOURCES = 2.0


def _active_source_ids(engine, provider: str) -> List[str]:
    from sqlmodel import Session, select

    from contentsync.models.content import Source

    with Session(engine) as s:
        return list(s.exec(
            select(Source.id)
            .where(Source.provider == provider)
            .where(Source.is_active == True)  # noqa: E712
            .order_by(Source.created_at)
        ).all())


async def _full_resync(source_ids: List[str], provider: str = None) -> None:
    from contentsync.db.engine import get_engine
    from contentsync.runtime import build_orchestrator
    from contentsync.sync.errors import SyncError
    from contentsync.sync.orchestrator import RunOutcome

    engine = get_engine()
    orchestrator = build_orchestrator(engine=engine)
    if provider:
        source_ids = source_ids + _active_source_ids(engine, provider)

    completed = paused = failed = 0
    for i, source_id in enumerate(source_ids):
        try:
            result = await orchestrator.trigger_full_resync(source_id)
        except SyncError as exc:
            logger.error("Could not start full resync for %s: %s", source_id, exc)
            failed += 1
            continue

        logger.info(
            "%s: %s after %d pages (%d items, %d failed)",
            source_id, result.outcome.value, result.pages_fetched,
            result.ingested_count, result.failed_count,
        )
        if result.outcome == RunOutcome.COMPLETED:
            completed += 1
        elif result.outcome == RunOutcome.PAUSED:
            paused += 1
            logger.warning(
                "Quota or page budget reached; leaving %d sources for later",
                len(source_ids) - i - 1,
            )
            break
        else:
            failed += 1

        if i + 1 < len(source_ids):
            await asyncio.sleep(SLEEP_BETWEEN_SOURCES)

    logger.info("Full resync done. Completed: %d, paused: %d, failed: %d", completed, paused, failed)


def main() -> None:
    parser = argparse.ArgumentParser(description="Recrawl sources from their first page")
    parser.add_argument("source_ids", nargs="*", help="Source ids to recrawl")
    parser.add_argument("--provider", help="Also recrawl every active source of this provider")
    args = parser.parse_args()
    if not args.source_ids and not args.provider:
        parser.error("give at least one source id or --provider")
    asyncio.run(_full_resync(args.source_ids, provider=args.provider))


if __name__ == "__main__":
    main()
