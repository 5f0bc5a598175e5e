"""
SyncOrchestrator: drives sources through the sync state machine.

Flow for a single source run:
  1. Pick the mode (FULL_RESYNC continuation, INITIAL crawl, INCREMENTAL)
  2. start() or resume() the record; StateConflict ⇒ someone else is running it.
     The returned run_id accompanies every later write of this run
  3. Page loop: fetch → ingest → record_progress() → decide_next_step()
       CONTINUE ⇒ next page
       PAUSE    ⇒ pause(): status stays IN_PROGRESS, cursor persisted
       DONE     ⇒ complete(), then best-effort Source metadata refresh
  4. QuotaExceeded from the metered fetcher ⇒ pause, not fail
     Any other exception ⇒ fail() with the counts committed so far

A scheduled cycle (run_cycle) applies the provider's quota gate, selects the
due sources, and runs each inside its own error boundary with bounded
concurrency, so one broken source never stops its siblings.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from sqlmodel import Session, col, select

from contentsync.clock import Clock, utcnow
from contentsync.config import Settings, get_settings
from contentsync.models.content import Source
from contentsync.models.sync import SyncCycleLog
from contentsync.sync.errors import (
    ExternalFetchError,
    QuotaExceeded,
    SourceNotFound,
    StateConflict,
    TimeoutStuckSync,
)
from contentsync.sync.fetcher import FetchRequest, PageFetcher, QuotaMeteredFetcher
from contentsync.sync.ingestor import ContentIngestor
from contentsync.sync.quota import QuotaBudgetTracker, QuotaGate, QuotaSummary
from contentsync.sync.state import SyncMode, SyncState, resumes_crawl, select_mode
from contentsync.sync.store import SyncStateStore

logger = logging.getLogger(__name__)


class NextStep(str, Enum):
    CONTINUE = "continue"
    PAUSE = "pause"
    DONE = "done"


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"
    SKIPPED = "skipped"  # another run holds the record


@dataclass
class SyncRunResult:
    source_id: str
    outcome: RunOutcome
    mode: Optional[SyncMode] = None
    pages_fetched: int = 0
    ingested_count: int = 0
    failed_count: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "outcome": self.outcome.value,
            "mode": self.mode.value if self.mode else None,
            "pages_fetched": self.pages_fetched,
            "ingested_count": self.ingested_count,
            "failed_count": self.failed_count,
            "error": self.error,
        }


def decide_next_step(
    next_cursor: Optional[str],
    quota_summary: QuotaSummary,
    page_cost: int,
    soft_threshold: float,
    pages_fetched: int,
    max_pages: Optional[int] = None,
) -> NextStep:
    """
    What the page loop does after committing a page.

    DONE when the source has no more pages. PAUSE when usage has reached the
    soft threshold, when the remaining budget cannot pay for another page,
    or when this run has used its page budget. CONTINUE otherwise.
    """
    if next_cursor is None:
        return NextStep.DONE
    if quota_summary.usage_ratio >= soft_threshold:
        return NextStep.PAUSE
    if quota_summary.remaining < page_cost:
        return NextStep.PAUSE
    if max_pages is not None and pages_fetched >= max_pages:
        return NextStep.PAUSE
    return NextStep.CONTINUE


class SyncOrchestrator:
    """Scheduled cycles, control-plane triggers and the timeout sweep."""

    def __init__(
        self,
        store: SyncStateStore,
        quota: QuotaBudgetTracker,
        fetchers: Mapping[str, PageFetcher],
        ingestor: ContentIngestor,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        """
        Args:
            store: SyncStateStore for sync records and sources.
            quota: QuotaBudgetTracker shared by every provider.
            fetchers: provider name → PageFetcher (or AsyncMock in tests).
            ingestor: ContentIngestor that persists fetched pages.
            settings: Settings; defaults to get_settings().
            clock: Returns the current naive-UTC time.
        """
        self.store = store
        self.quota = quota
        self.fetchers = dict(fetchers)
        self.ingestor = ingestor
        self.settings = settings or get_settings()
        self.clock = clock

    # ─── Scheduled cycle ──────────────────────────────────────────────────────

    async def run_cycle(self, provider: str) -> SyncCycleLog:
        """Sync every due source of one provider. Returns the finished cycle log."""
        log = self._create_cycle_log(provider)

        if provider not in self.fetchers:
            logger.error("No page fetcher configured for provider %s", provider)
            return self._finish_cycle_log(
                log, status="error", error_message=f"no page fetcher for {provider}"
            )

        gate = self.quota.gate(provider)
        if gate == QuotaGate.HARD:
            summary = self.quota.get_usage_summary(provider)
            logger.warning(
                "Skipping %s sync cycle: quota at %.1f%% (%d/%d units)",
                provider, summary.usage_percentage, summary.consumed, summary.limit,
            )
            return self._finish_cycle_log(
                log, status="skipped",
                error_message=f"quota hard limit ({summary.usage_percentage:.1f}%)",
            )

        freshness = timedelta(hours=self.settings.freshness_hours)
        sources = self.store.find_eligible(provider, freshness, self.clock())
        if gate == QuotaGate.SOFT:
            sources = self._drop_bulk_work(sources)
        logger.info("%s sync cycle: %d eligible sources", provider, len(sources))

        semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrent_syncs))

        async def guarded(source: Source) -> SyncRunResult:
            async with semaphore:
                try:
                    return await self._run_source(source)
                except Exception as exc:
                    logger.exception(
                        "Unexpected error syncing source %s (%s)", source.id, provider
                    )
                    return SyncRunResult(source.id, RunOutcome.FAILED, error=str(exc))

        results = await asyncio.gather(*(guarded(s) for s in sources))

        failed = [r for r in results if r.outcome == RunOutcome.FAILED]
        synced = [r for r in results if r.outcome in (RunOutcome.COMPLETED, RunOutcome.PAUSED)]
        if not failed:
            status = "success"
        elif synced:
            status = "partial"
        else:
            status = "error"
        error_message = "; ".join(f"{r.source_id}: {r.error}" for r in failed) or None
        return self._finish_cycle_log(
            log,
            status=status,
            sources_synced=len(synced),
            sources_failed=len(failed),
            error_message=error_message,
        )

    # ─── Control plane ────────────────────────────────────────────────────────

    async def start_manual_sync(self, source_id: str) -> SyncRunResult:
        """Run one source now in whatever mode is due. Ignores retry backoff."""
        source = self._require_source(source_id)
        return await self._run_source(source)

    async def trigger_full_resync(self, source_id: str) -> SyncRunResult:
        """
        Recrawl a source from its first page.

        The metadata call provides the expected total so progress can be
        reported while the recrawl runs. If it fails the recrawl still starts,
        without a total.

        Raises:
            SourceNotFound: unknown source_id.
            StateConflict: a sync is actively running for this source.
            QuotaExceeded: not even the metadata call is affordable.
        """
        source = self._require_source(source_id)
        fetcher = self._fetcher_for(source.provider)

        state = self.store.get_or_create(source.id)
        if state.is_active:
            raise StateConflict(source.id, "sync already in progress")

        expected: Optional[int] = None
        try:
            metadata = await fetcher.get_source_metadata(source.external_id)
        except ExternalFetchError as exc:
            logger.warning("Metadata unavailable for %s, recrawling without a total: %s", source.id, exc)
        else:
            expected = metadata.total_count
            self._store_metadata(source.id, metadata)

        state = self.store.begin_full_resync(source.id, expected_count=expected)
        logger.info("Full resync started for %s (expected %s items)", source.id, expected)
        return await self._page_loop(
            source, fetcher, SyncMode.FULL_RESYNC, cursor=None, since=None, run_id=state.run_id
        )

    async def resume_initial_sync(self, source_id: str) -> SyncRunResult:
        """
        Continue an unfinished crawl from its persisted cursor.

        Raises:
            SourceNotFound: unknown source_id.
            StateConflict: nothing to resume (crawl finished, or running now).
        """
        source = self._require_source(source_id)
        state = self.store.get_or_create(source.id)
        if state.is_active:
            raise StateConflict(source.id, "sync already in progress")
        if select_mode(state) == SyncMode.INCREMENTAL and not state.is_paused:
            raise StateConflict(source.id, "initial sync already completed; nothing to resume")
        return await self._run_source(source)

    def request_sync(self, source_id: str) -> None:
        """Flag a source so the next scheduled cycle picks it up regardless of freshness."""
        if not self.store.request_sync(source_id):
            raise SourceNotFound(source_id)
        logger.info("Sync requested for %s", source_id)

    def get_sync_status(self, source_id: str) -> Dict[str, Any]:
        source = self._require_source(source_id)
        state = self.store.get(source.id) or SyncState(source_id=source.id)
        now = self.clock()
        return {
            "source_id": source.id,
            "provider": source.provider,
            "status": state.status.value,
            "mode": select_mode(state).value,
            "is_paused": state.is_paused,
            "cursor": state.cursor,
            "last_synced_at": state.last_synced_at,
            "sync_started_at": state.sync_started_at,
            "sync_completed_at": state.sync_completed_at,
            "paused_at": state.paused_at,
            "next_retry_at": state.next_retry_at,
            "total_count": state.total_count,
            "synced_count": state.synced_count,
            "failed_count": state.failed_count,
            "consecutive_failure_count": state.consecutive_failure_count,
            "last_error": state.last_error,
            "initial_sync_completed": state.initial_sync_completed,
            "full_sync_mode": state.full_sync_mode,
            "full_sync_progress": state.full_sync_progress,
            "progress_percent": state.progress_percent(),
            "success_rate": state.success_rate(),
            "estimated_seconds_remaining": state.estimated_seconds_remaining(now),
            "sync_requested_at": source.sync_requested_at,
        }

    def list_sync_stats(self) -> Dict[str, Any]:
        stats = self.store.overall_stats().to_dict()
        stats["quota"] = {
            provider: self.quota.get_usage_summary(provider).to_dict()
            for provider in self.settings.quota_limits
        }
        return stats

    def get_quota_summary(self, provider: str) -> QuotaSummary:
        return self.quota.get_usage_summary(provider)

    def latest_cycle(self, provider: Optional[str] = None) -> Optional[SyncCycleLog]:
        with Session(self.store.engine) as s:
            stmt = select(SyncCycleLog)
            if provider:
                stmt = stmt.where(SyncCycleLog.provider == provider)
            return s.exec(
                stmt.order_by(col(SyncCycleLog.started_at).desc(), col(SyncCycleLog.id).desc())
            ).first()

    # ─── Maintenance ──────────────────────────────────────────────────────────

    def sweep_stuck_syncs(self) -> List[str]:
        """Auto-fail records stuck IN_PROGRESS past sync_timeout_hours. Returns their ids."""
        timeout = timedelta(hours=self.settings.sync_timeout_hours)
        swept = []
        for state in self.store.find_stuck(timeout, self.clock()):
            error = TimeoutStuckSync(state.source_id, state.sync_started_at, timeout)
            try:
                self.store.fail(state.source_id, str(error))
            except StateConflict as exc:
                # Finished or failed between the query and the write
                logger.info("Timeout sweep skipped %s: %s", state.source_id, exc)
                continue
            logger.warning("Auto-failed stuck sync for %s: %s", state.source_id, error)
            swept.append(state.source_id)
        return swept

    def cleanup_quota(self) -> int:
        return self.quota.cleanup_expired(timedelta(days=self.settings.quota_retention_days))

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _run_source(self, source: Source) -> SyncRunResult:
        """Start (or resume) one source and drive its page loop."""
        fetcher = self._fetcher_for(source.provider)
        state = self.store.get_or_create(source.id)
        mode = select_mode(state)

        try:
            if state.is_paused:
                state = self.store.resume(source.id)
            else:
                state = self.store.start(source.id, resume=resumes_crawl(state))
        except StateConflict as exc:
            logger.info("Sync for %s not started: %s", source.id, exc)
            return SyncRunResult(source.id, RunOutcome.SKIPPED, mode=mode, error=str(exc))

        since = None
        if mode == SyncMode.INCREMENTAL and state.cursor is None:
            since = state.last_synced_at
        logger.info(
            "Syncing %s (%s, %s) from %s",
            source.id, source.provider, mode.value,
            f"cursor {state.cursor!r}" if state.cursor else (since or "first page"),
        )
        result = await self._page_loop(
            source, fetcher, mode, cursor=state.cursor, since=since, run_id=state.run_id
        )

        if result.outcome == RunOutcome.COMPLETED and mode != SyncMode.FULL_RESYNC:
            await self._refresh_metadata(source, fetcher)
        return result

    async def _page_loop(
        self,
        source: Source,
        fetcher: QuotaMeteredFetcher,
        mode: SyncMode,
        cursor: Optional[str],
        since: Optional[datetime],
        run_id: Optional[str] = None,
    ) -> SyncRunResult:
        result = SyncRunResult(source.id, RunOutcome.FAILED, mode=mode)
        max_pages = self.settings.max_pages_per_run
        if mode == SyncMode.INCREMENTAL:
            max_pages = None  # incremental runs are short; let them finish

        try:
            while True:
                request = FetchRequest(
                    cursor=cursor,
                    since=since if cursor is None else None,
                    page_size=self.settings.page_size,
                )
                page = await fetcher.fetch(source.external_id, request)
                ingest = await self.ingestor.ingest_batch(source, page.items)
                self.store.record_progress(
                    source.id,
                    synced_delta=ingest.ingested_count,
                    failed_delta=ingest.failed_count,
                    cursor=page.next_cursor,
                    run_id=run_id,
                )
                result.pages_fetched += 1
                result.ingested_count += ingest.ingested_count
                result.failed_count += ingest.failed_count

                step = decide_next_step(
                    page.next_cursor,
                    self.quota.get_usage_summary(source.provider),
                    fetcher.page_cost,
                    self.settings.quota_soft_threshold,
                    result.pages_fetched,
                    max_pages,
                )
                if step == NextStep.DONE:
                    state = self.store.complete(source.id, run_id=run_id)
                    result.outcome = RunOutcome.COMPLETED
                    logger.info(
                        "Sync completed for %s: %d pages, %d items (%d failed) this run, %d total",
                        source.id, result.pages_fetched, result.ingested_count,
                        result.failed_count, state.synced_count,
                    )
                    return result
                if step == NextStep.PAUSE:
                    self.store.pause(
                        source.id, reason="quota or page budget reached", run_id=run_id
                    )
                    result.outcome = RunOutcome.PAUSED
                    return result
                cursor = page.next_cursor

        except QuotaExceeded as exc:
            result.error = str(exc)
            try:
                self.store.pause(source.id, reason=str(exc), run_id=run_id)
            except StateConflict as conflict:
                logger.warning("Sync for %s lost its record: %s", source.id, conflict)
                return result
            result.outcome = RunOutcome.PAUSED
            return result

        except StateConflict as exc:
            # The record was moved under us (e.g. timeout sweep); leave it be
            logger.warning("Sync for %s lost its record: %s", source.id, exc)
            result.error = str(exc)
            return result

        except Exception as exc:
            result.error = str(exc) or type(exc).__name__
            logger.error(
                "Sync failed for %s (%s) after %d pages: %s",
                source.id, source.provider, result.pages_fetched, result.error,
            )
            try:
                self.store.fail(source.id, result.error, run_id=run_id)
            except StateConflict as conflict:
                logger.warning("Could not record failure for %s: %s", source.id, conflict)
            return result

    async def _refresh_metadata(self, source: Source, fetcher: QuotaMeteredFetcher) -> None:
        """Best-effort Source enrichment. Never fails the sync."""
        try:
            metadata = await fetcher.get_source_metadata(source.external_id)
            self._store_metadata(source.id, metadata)
        except Exception as exc:
            logger.warning("Metadata refresh failed for %s: %s", source.id, exc)

    def _store_metadata(self, source_id: str, metadata) -> None:
        self.store.update_source_metadata(
            source_id,
            display_name=metadata.display_name,
            reported_item_count=metadata.total_count,
            subscriber_count=metadata.subscriber_count,
            view_count=metadata.view_count,
        )

    def _fetcher_for(self, provider: str) -> QuotaMeteredFetcher:
        try:
            fetcher = self.fetchers[provider]
        except KeyError:
            raise ExternalFetchError(f"No page fetcher configured for provider {provider!r}") from None
        return QuotaMeteredFetcher(fetcher, self.quota, provider)

    def _require_source(self, source_id: str) -> Source:
        source = self.store.get_source(source_id)
        if source is None:
            raise SourceNotFound(source_id)
        return source

    def _drop_bulk_work(self, sources: List[Source]) -> List[Source]:
        """
        Under the soft gate, crawl continuations wait until quota recovers.

        That covers full recrawls, paused records and initial crawls with a
        persisted cursor. Incremental syncs and first pages still run.
        """
        kept = []
        for source in sources:
            state = self.store.get(source.id)
            if state is not None and (
                state.full_sync_mode or state.is_paused or resumes_crawl(state)
            ):
                logger.info(
                    "Deferring %s of %s: quota above soft threshold",
                    "full resync" if state.full_sync_mode else "crawl continuation", source.id,
                )
                continue
            kept.append(source)
        return kept

    def _create_cycle_log(self, provider: str) -> SyncCycleLog:
        log = SyncCycleLog(provider=provider, started_at=self.clock(), status="running")
        with Session(self.store.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_cycle_log(
        self,
        log: SyncCycleLog,
        *,
        status: str,
        sources_synced: int = 0,
        sources_failed: int = 0,
        error_message: Optional[str] = None,
    ) -> SyncCycleLog:
        with Session(self.store.engine) as s:
            db_log = s.get(SyncCycleLog, log.id)
            db_log.status = status
            db_log.finished_at = self.clock()
            db_log.sources_synced = sources_synced
            db_log.sources_failed = sources_failed
            db_log.error_message = error_message
            s.add(db_log)
            s.commit()
            s.refresh(db_log)
            return db_log
