"""Append-only quota usage ledger."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from contentsync.clock import utcnow


class QuotaUsage(SQLModel, table=True):
    """One row per externally billed call."""

    id: Optional[int] = Field(default=None, primary_key=True)
    provider: str = Field(index=True)
    operation: str  # "page", "metadata", ...
    units_consumed: int = 1
    window_start: datetime  # start of the rolling window this call was charged to
    error_message: Optional[str] = None  # set when the billed call itself failed
    created_at: datetime = Field(default_factory=utcnow, index=True)
