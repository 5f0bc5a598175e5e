"""Sync state and cycle audit models."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from contentsync.clock import utcnow


class SyncStatus(str, Enum):
    NEVER_SYNCED = "never_synced"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncRecord(SQLModel, table=True):
    """
    Durable per-source progress record.

    Only ever written through SyncStateStore, which applies a pure transition
    and persists it with a compare-and-swap on (status, version).
    """

    source_id: str = Field(primary_key=True, foreign_key="source.id")
    status: SyncStatus = Field(default=SyncStatus.NEVER_SYNCED, index=True)
    cursor: Optional[str] = None

    last_synced_at: Optional[datetime] = Field(default=None, index=True)
    sync_started_at: Optional[datetime] = None
    sync_completed_at: Optional[datetime] = None
    crawl_started_at: Optional[datetime] = None  # first run of the current crawl
    paused_at: Optional[datetime] = None  # IN_PROGRESS but not running
    next_retry_at: Optional[datetime] = None

    total_count: Optional[int] = None
    synced_count: int = 0
    failed_count: int = 0
    consecutive_failure_count: int = 0
    last_error: Optional[str] = None

    initial_sync_completed: bool = False
    full_sync_mode: bool = False
    # {"synced_count", "remaining_count", "progress_percent"} during a full recrawl
    full_sync_progress: Optional[Dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON)
    )

    run_id: Optional[str] = None  # token of the run currently driving the record
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class SyncCycleLog(SQLModel, table=True):
    """Records each scheduled cycle for audit and debugging."""

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(index=True)
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    status: str = "running"  # "running", "success", "partial", "error", "skipped"
    sources_synced: int = 0
    sources_failed: int = 0
    error_message: Optional[str] = None
