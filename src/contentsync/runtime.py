"""Builds the orchestrator object graph from settings."""
import logging
from datetime import timedelta
from typing import Mapping, Optional

from contentsync.config import Settings, get_settings
from contentsync.db.engine import get_engine
from contentsync.sync.fetcher import PageFetcher, load_page_fetcher
from contentsync.sync.ingestor import ContentIngestor
from contentsync.sync.orchestrator import SyncOrchestrator
from contentsync.sync.quota import QuotaBudgetTracker
from contentsync.sync.state import RetryPolicy
from contentsync.sync.store import SyncStateStore

logger = logging.getLogger(__name__)

_orchestrator: Optional[SyncOrchestrator] = None


def retry_policy_from(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        backoff_after=settings.retry_backoff_after,
        base_delay=timedelta(minutes=settings.retry_backoff_base_minutes),
        max_delay=timedelta(hours=settings.retry_backoff_max_hours),
    )


def load_fetchers(settings: Settings) -> dict:
    """One PageFetcher per provider with a quota limit, from PAGE_FETCHER_FACTORY."""
    return {
        provider: load_page_fetcher(settings.page_fetcher_factory, provider)
        for provider in settings.quota_limits
    }


def build_orchestrator(
    engine=None,
    settings: Optional[Settings] = None,
    fetchers: Optional[Mapping[str, PageFetcher]] = None,
) -> SyncOrchestrator:
    """
    Wire store, quota tracker, ingestor and fetchers into a SyncOrchestrator.

    Args:
        engine: SQLAlchemy engine; defaults to get_engine().
        settings: Settings; defaults to get_settings().
        fetchers: provider → PageFetcher; defaults to PAGE_FETCHER_FACTORY.
    """
    settings = settings or get_settings()
    engine = engine if engine is not None else get_engine()
    if fetchers is None:
        fetchers = load_fetchers(settings)

    store = SyncStateStore(engine, retry_policy=retry_policy_from(settings))
    quota = QuotaBudgetTracker(engine, settings=settings)
    ingestor = ContentIngestor(engine)
    logger.debug("Orchestrator wired for providers: %s", ", ".join(fetchers))
    return SyncOrchestrator(store, quota, fetchers, ingestor, settings=settings)


def get_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator (FastAPI dependency, overridable in tests)."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator
