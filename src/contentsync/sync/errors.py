"""Sync error taxonomy.

None of these are fatal to a cycle: the orchestrator catches each one where it
happens and logs it with source/provider context. Only errors outside this
hierarchy reach the per-source boundary in run_cycle().
"""
from datetime import datetime, timedelta
from typing import Optional


class SyncError(RuntimeError):
    """Base class for expected sync failures."""


class QuotaExceeded(SyncError):
    """The provider budget cannot cover the next billed call.

    level is "soft" (pause bulk work) or "hard" (skip the cycle).
    """

    def __init__(self, provider: str, level: str = "hard", remaining: Optional[int] = None):
        self.provider = provider
        self.level = level
        self.remaining = remaining
        super().__init__(
            f"{provider} quota {level} limit reached (remaining={remaining})"
        )


class ExternalFetchError(SyncError):
    """Transport or API error from the external platform. Retried next cycle."""


class IngestionError(SyncError):
    """A single item could not be normalized or stored."""

    def __init__(self, message: str, external_id: Optional[str] = None):
        self.external_id = external_id
        super().__init__(message)


class StateConflict(SyncError):
    """A transition was attempted from a state that does not allow it."""

    def __init__(self, source_id: str, message: str):
        self.source_id = source_id
        super().__init__(f"{source_id}: {message}")


class TimeoutStuckSync(SyncError):
    """A sync stayed IN_PROGRESS past the configured timeout."""

    def __init__(self, source_id: str, started_at: datetime, timeout: timedelta):
        self.source_id = source_id
        self.started_at = started_at
        self.timeout = timeout
        hours = timeout.total_seconds() / 3600
        super().__init__(
            f"Sync started at {started_at.isoformat()} exceeded {hours:g}h timeout; "
            "auto-failed so it can be retried"
        )


class SourceNotFound(SyncError):
    """A control-plane operation named a source that does not exist."""

    def __init__(self, source_id: str):
        self.source_id = source_id
        super().__init__(f"Unknown source {source_id!r}")
