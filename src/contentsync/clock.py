"""Injectable time source.

Everything that reads the current time takes a ``clock`` callable so tests can
pin "now" (timeout sweeps, freshness windows, quota windows).
Times are naive UTC, which is what SQLite round-trips.
"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
