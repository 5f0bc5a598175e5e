"""
SyncStateStore: persistence for per-source sync records.

Every write follows the same path:
  1. Load the SyncRecord (creating a NEVER_SYNCED row on first touch)
  2. Apply a pure transition from contentsync.sync.state
  3. UPDATE ... WHERE status = :loaded_status AND version = :loaded_version

Zero affected rows means another writer got there first and StateConflict is
raised. Two concurrent start() calls on one source therefore cannot both win.
"""
import logging
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from contentsync.clock import Clock, utcnow
from contentsync.models.content import Source
from contentsync.models.sync import SyncRecord, SyncStatus
from contentsync.sync.errors import StateConflict
from contentsync.sync.state import (
    DEFAULT_RETRY_POLICY,
    BeginFullResync,
    Complete,
    Fail,
    Pause,
    Progress,
    Resume,
    RetryPolicy,
    Start,
    SyncState,
    is_due,
    transition,
)

logger = logging.getLogger(__name__)

# SyncRecord columns mirrored by SyncState (everything except bookkeeping)
_STATE_FIELDS = tuple(f.name for f in fields(SyncState) if f.name != "source_id")


@dataclass
class SyncStats:
    """Aggregate view over every source, as returned by list_sync_stats()."""

    total_sources: int = 0
    total_items: int = 0
    synced_items: int = 0
    failed_items: int = 0
    progress_percent: int = 0
    success_rate: int = 0
    status_counts: Dict[str, int] = field(default_factory=dict)
    paused_sources: int = 0
    full_resyncs_running: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


def _to_state(record: SyncRecord) -> SyncState:
    return SyncState(
        source_id=record.source_id,
        **{name: getattr(record, name) for name in _STATE_FIELDS},
    )


class SyncStateStore:
    """Reads and compare-and-swap writes of SyncRecord rows."""

    def __init__(
        self,
        engine,
        clock: Clock = utcnow,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            clock: Returns the current naive-UTC time.
            retry_policy: Backoff applied by fail().
        """
        self.engine = engine
        self.clock = clock
        self.retry_policy = retry_policy

    # ─── Reads ────────────────────────────────────────────────────────────────

    def get(self, source_id: str) -> Optional[SyncState]:
        with Session(self.engine) as s:
            record = s.get(SyncRecord, source_id)
            return _to_state(record) if record else None

    def get_or_create(self, source_id: str) -> SyncState:
        with Session(self.engine) as s:
            record = s.get(SyncRecord, source_id)
            if record is not None:
                return _to_state(record)

            now = self.clock()
            record = SyncRecord(source_id=source_id, created_at=now, updated_at=now)
            s.add(record)
            try:
                s.commit()
            except IntegrityError:
                # Another writer created it between our get and insert
                s.rollback()
                record = s.get(SyncRecord, source_id)
                if record is None:
                    raise
            else:
                s.refresh(record)
            return _to_state(record)

    def get_source(self, source_id: str) -> Optional[Source]:
        with Session(self.engine) as s:
            return s.get(Source, source_id)

    def find_eligible(
        self,
        provider: str,
        freshness: timedelta,
        now: Optional[datetime] = None,
    ) -> List[Source]:
        """
        Active sources of a provider that a scheduled cycle should sync.

        Never-synced and explicitly requested sources come first, then the
        rest by oldest last_synced_at. Actively running records are excluded;
        paused ones are included so their crawl resumes.
        """
        now = now or self.clock()
        with Session(self.engine) as s:
            rows = s.exec(
                select(Source, SyncRecord)
                .join(SyncRecord, SyncRecord.source_id == Source.id, isouter=True)
                .where(Source.provider == provider)
                .where(Source.is_active == True)  # noqa: E712
            ).all()

        due = []
        for source, record in rows:
            state = _to_state(record) if record else SyncState(source_id=source.id)
            requested = source.sync_requested_at is not None
            if is_due(state, now, freshness, requested=requested):
                due.append((requested, state, source))

        due.sort(key=lambda t: (
            not (t[0] or t[1].status == SyncStatus.NEVER_SYNCED),
            t[1].last_synced_at or datetime.min,
        ))
        return [source for _, _, source in due]

    def find_stuck(self, timeout: timedelta, now: Optional[datetime] = None) -> List[SyncState]:
        """Active IN_PROGRESS records started longer than timeout ago. Paused ones are not stuck."""
        cutoff = (now or self.clock()) - timeout
        with Session(self.engine) as s:
            records = s.exec(
                select(SyncRecord)
                .where(SyncRecord.status == SyncStatus.IN_PROGRESS)
                .where(SyncRecord.paused_at == None)  # noqa: E711
                .where(SyncRecord.sync_started_at < cutoff)
            ).all()
            return [_to_state(r) for r in records]

    def status_counts(self) -> Dict[str, int]:
        """Sources per status. Sources without a record count as never_synced."""
        counts = {status.value: 0 for status in SyncStatus}
        with Session(self.engine) as s:
            rows = s.exec(
                select(Source.id, SyncRecord.status)
                .join(SyncRecord, SyncRecord.source_id == Source.id, isouter=True)
            ).all()
        for _, status in rows:
            counts[(status or SyncStatus.NEVER_SYNCED).value] += 1
        return counts

    def overall_stats(self) -> SyncStats:
        with Session(self.engine) as s:
            records = s.exec(select(SyncRecord)).all()
            states = [_to_state(r) for r in records]

        stats = SyncStats(status_counts=self.status_counts())
        stats.total_sources = sum(stats.status_counts.values())
        for state in states:
            stats.total_items += state.total_count or 0
            stats.synced_items += state.synced_count
            stats.failed_items += state.failed_count
            if state.is_paused:
                stats.paused_sources += 1
            if state.full_sync_mode:
                stats.full_resyncs_running += 1

        if stats.total_items:
            stats.progress_percent = min(100, round(stats.synced_items * 100 / stats.total_items))
        attempted = stats.synced_items + stats.failed_items
        if attempted:
            stats.success_rate = round(stats.synced_items * 100 / attempted)
        return stats

    # ─── Transitions ──────────────────────────────────────────────────────────
    #
    # start, begin_full_resync and resume issue a fresh run_id. A run passes it
    # back on every later write so a run that lost the record (swept as stuck,
    # then restarted) cannot overwrite its successor's progress.

    def start(
        self,
        source_id: str,
        expected_count: Optional[int] = None,
        resume: bool = False,
    ) -> SyncState:
        state = self._apply(
            source_id,
            Start(
                at=self.clock(),
                expected_count=expected_count,
                resume=resume,
                run_id=uuid.uuid4().hex,
            ),
        )
        self._clear_sync_request(source_id)
        return state

    def begin_full_resync(self, source_id: str, expected_count: Optional[int] = None) -> SyncState:
        state = self._apply(
            source_id,
            BeginFullResync(
                at=self.clock(), expected_count=expected_count, run_id=uuid.uuid4().hex
            ),
        )
        self._clear_sync_request(source_id)
        return state

    def record_progress(
        self,
        source_id: str,
        synced_delta: int,
        failed_delta: int = 0,
        cursor: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> SyncState:
        return self._apply(
            source_id,
            Progress(
                at=self.clock(),
                synced_delta=synced_delta,
                failed_delta=failed_delta,
                cursor=cursor,
                run_id=run_id,
            ),
        )

    def pause(self, source_id: str, reason: str = "", run_id: Optional[str] = None) -> SyncState:
        state = self._apply(source_id, Pause(at=self.clock(), reason=reason, run_id=run_id))
        logger.info("Sync paused for %s at cursor %r: %s", source_id, state.cursor, reason)
        return state

    def resume(self, source_id: str) -> SyncState:
        return self._apply(source_id, Resume(at=self.clock(), run_id=uuid.uuid4().hex))

    def complete(
        self,
        source_id: str,
        total_count: Optional[int] = None,
        run_id: Optional[str] = None,
    ) -> SyncState:
        return self._apply(
            source_id, Complete(at=self.clock(), total_count=total_count, run_id=run_id)
        )

    def fail(
        self,
        source_id: str,
        error_message: str,
        synced_count: Optional[int] = None,
        failed_count: Optional[int] = None,
        run_id: Optional[str] = None,
    ) -> SyncState:
        return self._apply(
            source_id,
            Fail(
                at=self.clock(),
                error=error_message,
                synced_count=synced_count,
                failed_count=failed_count,
                run_id=run_id,
            ),
        )

    def request_sync(self, source_id: str) -> bool:
        """Flag a source for the next cycle. Returns False if the source is unknown."""
        with Session(self.engine) as s:
            source = s.get(Source, source_id)
            if source is None:
                return False
            source.sync_requested_at = self.clock()
            s.add(source)
            s.commit()
        return True

    def delete(self, source_id: str) -> bool:
        with Session(self.engine) as s:
            record = s.get(SyncRecord, source_id)
            if record is None:
                return False
            s.delete(record)
            s.commit()
        return True

    def update_source_metadata(
        self,
        source_id: str,
        *,
        display_name: Optional[str] = None,
        reported_item_count: Optional[int] = None,
        subscriber_count: Optional[int] = None,
        view_count: Optional[int] = None,
    ) -> None:
        """Overwrite the enrichment columns that were provided (None leaves a column as is)."""
        with Session(self.engine) as s:
            source = s.get(Source, source_id)
            if source is None:
                return
            if display_name is not None:
                source.display_name = display_name
            if reported_item_count is not None:
                source.reported_item_count = reported_item_count
            if subscriber_count is not None:
                source.subscriber_count = subscriber_count
            if view_count is not None:
                source.view_count = view_count
            source.metadata_refreshed_at = self.clock()
            s.add(source)
            s.commit()

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _load(self, source_id: str) -> Tuple[SyncState, int]:
        """Current state and the version a write must match."""
        self.get_or_create(source_id)
        with Session(self.engine) as s:
            record = s.get(SyncRecord, source_id)
            return _to_state(record), record.version

    def _apply(self, source_id: str, event) -> SyncState:
        current, version = self._load(source_id)
        new = transition(current, event, self.retry_policy)
        if new is current:
            return current  # idempotent replay

        values = {name: getattr(new, name) for name in _STATE_FIELDS}
        values["version"] = version + 1
        values["updated_at"] = self.clock()

        with self.engine.begin() as conn:
            result = conn.execute(
                update(SyncRecord)
                .where(SyncRecord.source_id == source_id)
                .where(SyncRecord.status == current.status)
                .where(SyncRecord.version == version)
                .values(**values)
            )
            if result.rowcount != 1:
                raise StateConflict(source_id, "record changed concurrently; transition rejected")
        return new

    def _clear_sync_request(self, source_id: str) -> None:
        with Session(self.engine) as s:
            source = s.get(Source, source_id)
            if source is not None and source.sync_requested_at is not None:
                source.sync_requested_at = None
                s.add(source)
                s.commit()
