"""
Pure sync state machine.

    NEVER_SYNCED ──start──▶ IN_PROGRESS ──complete──▶ COMPLETED
                               │  ▲   ╲                  │
                            pause resume ╲fail           │ start (next trigger)
                               ▼  │       ▼              ▼
                         IN_PROGRESS    FAILED ──start──▶ IN_PROGRESS
                          (paused)

No I/O here. SyncStateStore loads a SyncState, calls transition(), and
persists the result with a compare-and-swap. Everything in this module can be
tested with plain values.

A paused record is IN_PROGRESS with paused_at set: a run stopped early with
pages left (quota or page budget) and the cursor is persisted. It is not
*active*, so it can be resumed, and the timeout sweep leaves it alone.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from contentsync.models.sync import SyncStatus
from contentsync.sync.errors import StateConflict


class SyncMode(str, Enum):
    INITIAL = "initial"  # cursor crawl from the newest item back to the oldest
    INCREMENTAL = "incremental"  # items published since last_synced_at
    FULL_RESYNC = "full_resync"  # operator-triggered recrawl of everything


# ─── Values ───────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FullSyncProgress:
    synced_count: int
    remaining_count: int
    progress_percent: int

    @classmethod
    def compute(cls, synced_count: int, total_count: Optional[int]) -> "FullSyncProgress":
        if not total_count:
            return cls(synced_count=synced_count, remaining_count=0, progress_percent=0)
        remaining = max(total_count - synced_count, 0)
        percent = min(100, round(synced_count * 100 / total_count))
        return cls(
            synced_count=synced_count,
            remaining_count=remaining,
            progress_percent=percent,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "synced_count": self.synced_count,
            "remaining_count": self.remaining_count,
            "progress_percent": self.progress_percent,
        }


@dataclass(frozen=True)
class SyncState:
    source_id: str
    status: SyncStatus = SyncStatus.NEVER_SYNCED
    cursor: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    sync_started_at: Optional[datetime] = None
    sync_completed_at: Optional[datetime] = None
    crawl_started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    total_count: Optional[int] = None
    synced_count: int = 0
    failed_count: int = 0
    consecutive_failure_count: int = 0
    last_error: Optional[str] = None
    initial_sync_completed: bool = False
    full_sync_mode: bool = False
    full_sync_progress: Optional[Dict[str, Any]] = field(default=None, compare=False)
    run_id: Optional[str] = None  # token of the run currently driving the record

    @property
    def is_active(self) -> bool:
        """True while a run is actually driving this record."""
        return self.status == SyncStatus.IN_PROGRESS and self.paused_at is None

    @property
    def is_paused(self) -> bool:
        return self.status == SyncStatus.IN_PROGRESS and self.paused_at is not None

    def progress_percent(self) -> int:
        """Synced share of total_count, 0-100 (0 when the total is unknown)."""
        if not self.total_count:
            return 0
        return min(100, round(self.synced_count * 100 / self.total_count))

    def success_rate(self) -> int:
        attempted = self.synced_count + self.failed_count
        if attempted == 0:
            return 0
        return round(self.synced_count * 100 / attempted)

    def estimated_seconds_remaining(self, now: datetime) -> Optional[int]:
        """Linear extrapolation from the crawl so far; None when it can't be estimated."""
        started = self.crawl_started_at or self.sync_started_at
        if self.status != SyncStatus.IN_PROGRESS or not started or not self.total_count:
            return None
        if self.synced_count <= 0:
            return None
        elapsed = (now - started).total_seconds()
        remaining = max(self.total_count - self.synced_count - self.failed_count, 0)
        return round(elapsed / self.synced_count * remaining)


@dataclass(frozen=True)
class RetryPolicy:
    """Perpetual retry with exponential backoff once failures pile up.

    Below backoff_after consecutive failures the record is retried on the
    next cycle. From then on each failure doubles the wait, capped at max_delay.
    """

    backoff_after: int = 3
    base_delay: timedelta = timedelta(hours=1)
    max_delay: timedelta = timedelta(hours=24)

    def next_retry_at(self, consecutive_failures: int, failed_at: datetime) -> Optional[datetime]:
        if consecutive_failures < self.backoff_after:
            return None
        exponent = consecutive_failures - self.backoff_after
        delay = min(self.base_delay * (2 ** exponent), self.max_delay)
        return failed_at + delay


DEFAULT_RETRY_POLICY = RetryPolicy()


# ─── Events ───────────────────────────────────────────────────────────────────

# Start, BeginFullResync and Resume hand the record to a new run (run_id).
# Progress, Pause, Complete and Fail carrying a run_id are only accepted from
# that run; without one (timeout sweep, operator) they apply unconditionally.

@dataclass(frozen=True)
class Start:
    at: datetime
    expected_count: Optional[int] = None
    resume: bool = False  # continue the persisted cursor and counters
    run_id: Optional[str] = None


@dataclass(frozen=True)
class BeginFullResync:
    at: datetime
    expected_count: Optional[int] = None
    run_id: Optional[str] = None


@dataclass(frozen=True)
class Progress:
    at: datetime
    synced_delta: int
    failed_delta: int = 0
    cursor: Optional[str] = None
    run_id: Optional[str] = None


@dataclass(frozen=True)
class Pause:
    at: datetime
    reason: str = ""
    run_id: Optional[str] = None


@dataclass(frozen=True)
class Resume:
    at: datetime
    run_id: Optional[str] = None


@dataclass(frozen=True)
class Complete:
    at: datetime
    total_count: Optional[int] = None
    run_id: Optional[str] = None


@dataclass(frozen=True)
class Fail:
    at: datetime
    error: str
    synced_count: Optional[int] = None
    failed_count: Optional[int] = None
    run_id: Optional[str] = None


# ─── Transitions ──────────────────────────────────────────────────────────────

def _start(state: SyncState, ev: Start, policy: RetryPolicy) -> SyncState:
    if state.status == SyncStatus.IN_PROGRESS:
        raise StateConflict(state.source_id, "sync already in progress")
    if ev.resume:
        return replace(
            state,
            status=SyncStatus.IN_PROGRESS,
            sync_started_at=ev.at,
            crawl_started_at=state.crawl_started_at or ev.at,
            paused_at=None,
            next_retry_at=None,
            total_count=ev.expected_count if ev.expected_count is not None else state.total_count,
            run_id=ev.run_id,
        )
    return replace(
        state,
        status=SyncStatus.IN_PROGRESS,
        sync_started_at=ev.at,
        crawl_started_at=ev.at,
        paused_at=None,
        next_retry_at=None,
        cursor=None,
        synced_count=0,
        failed_count=0,
        total_count=ev.expected_count,
        full_sync_mode=False,
        full_sync_progress=None,
        run_id=ev.run_id,
    )


def _begin_full_resync(state: SyncState, ev: BeginFullResync, policy: RetryPolicy) -> SyncState:
    if state.is_active:
        raise StateConflict(state.source_id, "sync already in progress")
    return replace(
        state,
        status=SyncStatus.IN_PROGRESS,
        sync_started_at=ev.at,
        crawl_started_at=ev.at,
        paused_at=None,
        next_retry_at=None,
        cursor=None,
        synced_count=0,
        failed_count=0,
        total_count=ev.expected_count,
        full_sync_mode=True,
        full_sync_progress=FullSyncProgress.compute(0, ev.expected_count).to_dict(),
        run_id=ev.run_id,
    )


def _progress(state: SyncState, ev: Progress, policy: RetryPolicy) -> SyncState:
    if state.status != SyncStatus.IN_PROGRESS:
        raise StateConflict(state.source_id, f"cannot record progress while {state.status.value}")
    if ev.synced_delta < 0 or ev.failed_delta < 0:
        raise ValueError("progress deltas must be non-negative")

    synced = state.synced_count + ev.synced_delta
    failed = state.failed_count + ev.failed_delta
    total = state.total_count
    if total is not None and synced + failed > total:
        # Metadata totals are approximate; never report more processed than total.
        total = synced + failed

    full_progress = state.full_sync_progress
    if state.full_sync_mode:
        full_progress = FullSyncProgress.compute(synced, total).to_dict()

    return replace(
        state,
        synced_count=synced,
        failed_count=failed,
        total_count=total,
        cursor=ev.cursor if ev.cursor is not None else state.cursor,
        full_sync_progress=full_progress,
    )


def _pause(state: SyncState, ev: Pause, policy: RetryPolicy) -> SyncState:
    if state.is_paused:
        return state
    if state.status != SyncStatus.IN_PROGRESS:
        raise StateConflict(state.source_id, f"cannot pause while {state.status.value}")
    return replace(state, paused_at=ev.at, run_id=None)


def _resume(state: SyncState, ev: Resume, policy: RetryPolicy) -> SyncState:
    if state.status != SyncStatus.IN_PROGRESS:
        raise StateConflict(state.source_id, f"nothing to resume while {state.status.value}")
    if not state.is_paused:
        raise StateConflict(state.source_id, "sync already in progress")
    return replace(state, paused_at=None, sync_started_at=ev.at, run_id=ev.run_id)


def _complete(state: SyncState, ev: Complete, policy: RetryPolicy) -> SyncState:
    if state.status == SyncStatus.COMPLETED:
        return state
    if state.status != SyncStatus.IN_PROGRESS:
        raise StateConflict(state.source_id, f"cannot complete while {state.status.value}")

    processed = state.synced_count + state.failed_count
    total = ev.total_count if ev.total_count is not None else state.total_count
    if total is None or processed > total:
        total = processed

    return replace(
        state,
        status=SyncStatus.COMPLETED,
        sync_completed_at=ev.at,
        # Lower bound for the next incremental run: when this crawl began,
        # so items published while it was running are picked up next time.
        last_synced_at=state.crawl_started_at or state.sync_started_at or ev.at,
        crawl_started_at=None,
        cursor=None,
        paused_at=None,
        next_retry_at=None,
        last_error=None,
        consecutive_failure_count=0,
        initial_sync_completed=True,
        full_sync_mode=False,
        full_sync_progress=None,
        total_count=total,
        run_id=None,
    )


def _fail(state: SyncState, ev: Fail, policy: RetryPolicy) -> SyncState:
    if state.status == SyncStatus.FAILED:
        return state
    if state.status != SyncStatus.IN_PROGRESS:
        raise StateConflict(state.source_id, f"cannot fail while {state.status.value}")

    failures = state.consecutive_failure_count + 1
    # cursor and full_sync_mode are kept so the next run resumes the crawl
    return replace(
        state,
        status=SyncStatus.FAILED,
        sync_completed_at=ev.at,
        paused_at=None,
        last_error=ev.error or "Unknown error",
        consecutive_failure_count=failures,
        next_retry_at=policy.next_retry_at(failures, ev.at),
        synced_count=ev.synced_count if ev.synced_count is not None else state.synced_count,
        failed_count=ev.failed_count if ev.failed_count is not None else state.failed_count,
        run_id=None,
    )


_HANDLERS: Dict[type, Callable[[SyncState, Any, RetryPolicy], SyncState]] = {
    Start: _start,
    BeginFullResync: _begin_full_resync,
    Progress: _progress,
    Pause: _pause,
    Resume: _resume,
    Complete: _complete,
    Fail: _fail,
}

_RUN_EVENTS = (Progress, Pause, Complete, Fail)


def transition(
    state: SyncState,
    event,
    retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
) -> SyncState:
    """
    Apply one event to a state and return the new state.

    complete() on a COMPLETED record and fail() on a FAILED record are no-ops,
    so replays of those events are harmless. Progress deltas are additive and
    NOT replay-safe; callers must not apply the same page twice.

    Raises:
        StateConflict: the event is not allowed from the current status, or
            it carries a run_id other than the one driving the record.
        ValueError: negative progress deltas.
        TypeError: unknown event type.
    """
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unknown sync event: {event!r}")
    if isinstance(event, _RUN_EVENTS) and event.run_id is not None and event.run_id != state.run_id:
        raise StateConflict(state.source_id, "record is no longer owned by this run")
    return handler(state, event, retry_policy)


# ─── Scheduling predicates ────────────────────────────────────────────────────

def select_mode(state: SyncState) -> SyncMode:
    """Pick how the next run fetches pages.

    A pending full recrawl (paused or failed mid-way) is continued first;
    otherwise the initial cursor crawl runs until it has completed once, and
    incremental runs take over after that.
    """
    if state.full_sync_mode:
        return SyncMode.FULL_RESYNC
    if not state.initial_sync_completed:
        return SyncMode.INITIAL
    return SyncMode.INCREMENTAL


def resumes_crawl(state: SyncState) -> bool:
    """Whether the next start continues the persisted cursor and counters."""
    mode = select_mode(state)
    if mode == SyncMode.FULL_RESYNC:
        return True
    return mode == SyncMode.INITIAL and state.cursor is not None


def is_due(
    state: SyncState,
    now: datetime,
    freshness: timedelta,
    requested: bool = False,
) -> bool:
    """Whether a scheduled cycle should pick this record up."""
    if state.status == SyncStatus.IN_PROGRESS:
        return state.is_paused
    if requested or state.status == SyncStatus.NEVER_SYNCED:
        return True
    if state.status == SyncStatus.FAILED:
        return state.next_retry_at is None or state.next_retry_at <= now
    if state.last_synced_at is None:
        return True
    return now - state.last_synced_at >= freshness
