"""
ContentIngestor: persists one fetched page of items.

Flow for a batch:
  1. Normalize each item → upsert ContentItem by (provider, external_id)
  2. Second pass: upsert ContentStatistics for every item that was stored

Each item gets its own session, so a malformed or unstorable item is counted
as failed and the rest of the batch still lands. Statistics are secondary:
a failure there is logged and does not make the item count as failed.

Idempotency: re-ingesting the same page updates the existing rows in place
(same ContentItem.id); it never creates duplicates.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlmodel import Session, select

from contentsync.clock import Clock, utcnow
from contentsync.models.content import ContentItem, ContentStatistics, Source
from contentsync.sync.normalizer import normalize_content_item, normalize_statistics

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    ingested_count: int = 0
    failed_count: int = 0
    errors: List[str] = field(default_factory=list)


class ContentIngestor:
    """Idempotent upsert of fetched items for one source."""

    def __init__(self, engine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock

    async def ingest_batch(self, source: Source, items: Sequence[Dict[str, Any]]) -> IngestResult:
        """
        Store a page of items for a source.

        Args:
            source: The Source the page was fetched for.
            items: Raw item dicts from Page.items.

        Returns:
            IngestResult with ingested + failed == len(items).
        """
        result = IngestResult()
        stored: List[Tuple[int, Dict[str, Any]]] = []

        for raw in items:
            try:
                content_id = self._upsert_item(source, raw)
            except Exception as exc:
                # Any item shape or storage error costs only this item
                result.failed_count += 1
                result.errors.append(str(exc) or type(exc).__name__)
                logger.warning(
                    "Skipping item %s for source %s: %s",
                    _item_id(raw), source.id, exc,
                )
                continue
            result.ingested_count += 1
            stored.append((content_id, raw))

        for content_id, raw in stored:
            try:
                self._upsert_statistics(content_id, raw)
            except Exception as exc:
                logger.warning(
                    "Statistics update failed for item %s (source %s): %s",
                    _item_id(raw), source.id, exc,
                )

        return result

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _upsert_item(self, source: Source, raw: Dict[str, Any]) -> int:
        """Normalize and upsert one item. Returns ContentItem.id."""
        fields = normalize_content_item(raw, provider=source.provider, source_id=source.id)
        now = self.clock()

        with Session(self.engine) as s:
            existing = s.exec(
                select(ContentItem)
                .where(ContentItem.provider == fields["provider"])
                .where(ContentItem.external_id == fields["external_id"])
            ).first()

            if existing:
                # Update in place (keeps same id and first_seen_at)
                for k, v in fields.items():
                    setattr(existing, k, v)
                existing.synced_at = now
                item = existing
            else:
                item = ContentItem(**fields, first_seen_at=now, synced_at=now)
            s.add(item)
            s.commit()
            s.refresh(item)
            return item.id

    def _upsert_statistics(self, content_id: int, raw: Dict[str, Any]) -> None:
        fields = normalize_statistics(raw)
        if fields is None:
            return
        with Session(self.engine) as s:
            stats = s.get(ContentStatistics, content_id)
            if stats is None:
                stats = ContentStatistics(content_id=content_id)
            for k, v in fields.items():
                setattr(stats, k, v)
            stats.updated_at = self.clock()
            s.add(stats)
            s.commit()


def _item_id(raw: Any) -> Optional[str]:
    if isinstance(raw, dict):
        return raw.get("id") or raw.get("external_id")
    return None
