"""Sources being synchronized and the content ingested from them."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from contentsync.clock import utcnow


class Source(SQLModel, table=True):
    """An external platform account/channel owned by a creator."""

    __table_args__ = (UniqueConstraint("provider", "external_id"),)

    id: str = Field(primary_key=True)
    provider: str = Field(index=True)  # "youtube", "twitter"
    external_id: str  # channel id on the provider
    creator_id: str = Field(index=True)
    is_active: bool = Field(default=True, index=True)
    sync_requested_at: Optional[datetime] = None  # operator asked for a sync

    # Enrichment from the metadata endpoint (best effort)
    display_name: Optional[str] = None
    reported_item_count: Optional[int] = None
    subscriber_count: Optional[int] = None
    view_count: Optional[int] = None
    metadata_refreshed_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)


class ContentItem(SQLModel, table=True):
    """One row per external item. (provider, external_id) is the upsert key."""

    __table_args__ = (UniqueConstraint("provider", "external_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    source_id: str = Field(foreign_key="source.id", index=True)
    provider: str
    external_id: str = Field(index=True)

    title: str
    description: Optional[str] = None
    url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    published_at: Optional[datetime] = Field(default=None, index=True)
    duration_seconds: Optional[int] = None
    language: Optional[str] = None
    is_live: bool = False
    category: Optional[str] = None

    # Raw JSON blob of the item as fetched
    raw_json: Optional[str] = None

    first_seen_at: datetime = Field(default_factory=utcnow)
    synced_at: datetime = Field(default_factory=utcnow)


class ContentStatistics(SQLModel, table=True):
    """Derived statistics, rewritten on every ingest of the item."""

    content_id: int = Field(primary_key=True, foreign_key="contentitem.id")
    views: int = 0
    likes: int = 0
    comments: int = 0
    engagement_rate: float = 0.0  # (likes + comments) / views * 100, capped at 100
    updated_at: datetime = Field(default_factory=utcnow)
