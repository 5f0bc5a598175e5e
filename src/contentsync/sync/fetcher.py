"""
PageFetcher contract and the quota-metered wrapper used by the orchestrator.

A fetcher is whatever talks to the external platform (an HTTP client, an
SDK wrapper, a fixture replay in tests). It only needs two coroutines:

    fetch(external_source_id, FetchRequest) -> Page
    get_source_metadata(external_source_id) -> SourceMetadata

Concrete fetchers live outside this package and are wired in with
PAGE_FETCHER_FACTORY="package.module:factory", where factory(provider)
returns a PageFetcher.
"""
import importlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from contentsync.sync.errors import ExternalFetchError, SyncError

logger = logging.getLogger(__name__)

PAGE_OPERATION = "page"
METADATA_OPERATION = "metadata"


@dataclass(frozen=True)
class FetchRequest:
    """One page request.

    cursor: continue a crawl. since: incremental lower bound. The first page of
    a full crawl sets neither. page_size is the same for every call of a run.
    """

    cursor: Optional[str] = None
    since: Optional[datetime] = None
    page_size: int = 50

    def __post_init__(self):
        if self.cursor is not None and self.since is not None:
            raise ValueError("FetchRequest takes a cursor or a since bound, not both")
        if self.page_size < 1:
            raise ValueError("page_size must be positive")


@dataclass
class Page:
    items: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None  # None ⇒ no more pages


@dataclass
class SourceMetadata:
    total_count: Optional[int] = None  # approximate, used to plan a full recrawl
    display_name: Optional[str] = None
    subscriber_count: Optional[int] = None
    view_count: Optional[int] = None


class PageFetcher(Protocol):
    async def fetch(self, external_source_id: str, request: FetchRequest) -> Page:
        ...

    async def get_source_metadata(self, external_source_id: str) -> SourceMetadata:
        ...


class QuotaMeteredFetcher:
    """
    Wraps a PageFetcher so every call is checked against and charged to the
    provider's quota.

    Before a call: one ledger row is charged, or QuotaExceeded if the remaining
    budget cannot cover it. A failed call keeps its charge and gets the error
    attached to the row.
    Errors other than SyncError subclasses surface as ExternalFetchError.
    """

    def __init__(self, fetcher: PageFetcher, quota, provider: str):
        """
        Args:
            fetcher: The underlying PageFetcher (or AsyncMock in tests).
            quota: QuotaBudgetTracker charged for each call.
            provider: Provider name the calls are billed to.
        """
        self.fetcher = fetcher
        self.quota = quota
        self.provider = provider

    @property
    def page_cost(self) -> int:
        return self.quota.operation_cost(self.provider, PAGE_OPERATION)

    async def fetch(self, external_source_id: str, request: FetchRequest) -> Page:
        return await self._metered(
            PAGE_OPERATION, self.fetcher.fetch, external_source_id, request
        )

    async def get_source_metadata(self, external_source_id: str) -> SourceMetadata:
        return await self._metered(
            METADATA_OPERATION, self.fetcher.get_source_metadata, external_source_id
        )

    async def _metered(self, operation: str, call: Callable, *args):
        cost = self.quota.operation_cost(self.provider, operation)
        # Charged up front: siblings awaiting their own calls see these units as spent
        usage_id = self.quota.reserve(self.provider, operation, cost)

        try:
            return await call(*args)
        except SyncError as exc:
            self.quota.mark_failed(usage_id, str(exc))
            raise
        except Exception as exc:
            self.quota.mark_failed(usage_id, str(exc))
            logger.warning(
                "%s %s call failed for %s: %s", self.provider, operation, args[0], exc
            )
            raise ExternalFetchError(f"{self.provider} {operation} failed: {exc}") from exc


def load_page_fetcher(factory_path: str, provider: str) -> PageFetcher:
    """Resolve "package.module:factory" and call factory(provider).

    Raises:
        ValueError: factory_path is empty or malformed.
        ImportError / AttributeError: the module or factory does not exist.
    """
    if not factory_path or ":" not in factory_path:
        raise ValueError(
            f"PAGE_FETCHER_FACTORY must look like 'package.module:factory', got {factory_path!r}"
        )
    module_name, attr = factory_path.split(":", 1)
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    return factory(provider)
