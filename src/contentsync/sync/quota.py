"""
QuotaBudgetTracker: rolling-window ledger of billed API units per provider.

Each billed call appends one QuotaUsage row. Consumption is the sum of units
over the last quota_window_hours, so the budget refills gradually rather than
resetting at a fixed hour.

Gate policy (fractions of the provider's limit):
  usage <  soft              → OPEN
  soft  <= usage < hard      → SOFT  (bulk and full-resync work pauses)
  usage >= hard              → HARD  (scheduled cycle skipped entirely)
"""
import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import delete, func, update
from sqlmodel import Session, select

from contentsync.clock import Clock, utcnow
from contentsync.config import Settings, get_settings
from contentsync.models.quota import QuotaUsage
from contentsync.sync.errors import QuotaExceeded

logger = logging.getLogger(__name__)


class QuotaGate(str, Enum):
    OPEN = "open"
    SOFT = "soft"
    HARD = "hard"


@dataclass(frozen=True)
class QuotaSummary:
    provider: str
    consumed: int
    limit: int
    remaining: int
    usage_percentage: float  # 0-100, may exceed 100 if a call overshot
    warning_level: str  # "normal", "warning", "critical", "exceeded"

    @property
    def usage_ratio(self) -> float:
        if self.limit <= 0:
            return 1.0
        return self.consumed / self.limit

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "consumed": self.consumed,
            "limit": self.limit,
            "remaining": self.remaining,
            "usage_percentage": round(self.usage_percentage, 2),
            "warning_level": self.warning_level,
        }


class QuotaBudgetTracker:
    def __init__(self, engine, settings: Optional[Settings] = None, clock: Clock = utcnow):
        self.engine = engine
        self.settings = settings or get_settings()
        self.clock = clock
        # Serializes check-and-charge so concurrent runs can't spend the same units
        self._lock = threading.Lock()

    @property
    def window(self) -> timedelta:
        return timedelta(hours=self.settings.quota_window_hours)

    def limit_for(self, provider: str) -> int:
        try:
            return self.settings.quota_limits[provider]
        except KeyError:
            raise ValueError(f"No quota limit configured for provider {provider!r}") from None

    def operation_cost(self, provider: str, operation: str) -> int:
        """Configured units for one call; unknown operations cost 1."""
        return self.settings.quota_operation_costs.get(provider, {}).get(operation, 1)

    def record_usage(
        self,
        provider: str,
        operation: str,
        units: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> QuotaSummary:
        """Append a ledger row and return the summary after charging it.

        Recorded for failed calls too: the provider bills attempts, not results.
        """
        if units is None:
            units = self.operation_cost(provider, operation)
        with self._lock:
            before = self.get_usage_summary(provider)
            self._append(provider, operation, units, error_message)
        after = self.get_usage_summary(provider)
        self._log_threshold_crossing(before, after)
        return after

    def reserve(self, provider: str, operation: str, units: Optional[int] = None) -> int:
        """Charge a call before it is made. Returns the ledger row id.

        The affordability check and the charge happen under one lock, so two
        runs sharing a budget can never both spend its last units.

        Raises:
            QuotaExceeded: the remaining budget cannot cover units.
        """
        if units is None:
            units = self.operation_cost(provider, operation)
        with self._lock:
            before = self.get_usage_summary(provider)
            if before.remaining < units:
                raise QuotaExceeded(provider, level="hard", remaining=before.remaining)
            usage_id = self._append(provider, operation, units)
        self._log_threshold_crossing(before, self.get_usage_summary(provider))
        return usage_id

    def mark_failed(self, usage_id: int, error_message: str) -> None:
        """Attach the error of a reserved call that failed. The units stay charged."""
        with self.engine.begin() as conn:
            conn.execute(
                update(QuotaUsage)
                .where(QuotaUsage.id == usage_id)
                .values(error_message=error_message)
            )

    def get_usage_summary(self, provider: str) -> QuotaSummary:
        limit = self.limit_for(provider)
        window_start = self.clock() - self.window
        with Session(self.engine) as s:
            consumed = s.exec(
                select(func.coalesce(func.sum(QuotaUsage.units_consumed), 0))
                .where(QuotaUsage.provider == provider)
                .where(QuotaUsage.created_at >= window_start)
            ).one()

        consumed = int(consumed or 0)
        ratio = consumed / limit if limit > 0 else 1.0
        return QuotaSummary(
            provider=provider,
            consumed=consumed,
            limit=limit,
            remaining=max(limit - consumed, 0),
            usage_percentage=ratio * 100,
            warning_level=self._warning_level(ratio),
        )

    def gate(self, provider: str) -> QuotaGate:
        ratio = self.get_usage_summary(provider).usage_ratio
        if ratio >= self.settings.quota_hard_threshold:
            return QuotaGate.HARD
        if ratio >= self.settings.quota_soft_threshold:
            return QuotaGate.SOFT
        return QuotaGate.OPEN

    def can_afford(self, provider: str, units: int) -> bool:
        return self.get_usage_summary(provider).remaining >= units

    def cleanup_expired(self, retention: Optional[timedelta] = None) -> int:
        """Delete ledger rows older than the retention horizon. Returns rows deleted."""
        if retention is None:
            retention = timedelta(days=self.settings.quota_retention_days)
        cutoff = self.clock() - retention
        with self.engine.begin() as conn:
            result = conn.execute(delete(QuotaUsage).where(QuotaUsage.created_at < cutoff))
            deleted = result.rowcount
        logger.info("Quota cleanup removed %d ledger rows older than %s", deleted, cutoff)
        return deleted

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _append(
        self,
        provider: str,
        operation: str,
        units: int,
        error_message: Optional[str] = None,
    ) -> int:
        now = self.clock()
        with Session(self.engine) as s:
            row = QuotaUsage(
                provider=provider,
                operation=operation,
                units_consumed=units,
                window_start=now - self.window,
                error_message=error_message,
                created_at=now,
            )
            s.add(row)
            s.commit()
            s.refresh(row)
            return row.id

    def _warning_level(self, ratio: float) -> str:
        if ratio >= 1.0:
            return "exceeded"
        if ratio >= self.settings.quota_hard_threshold:
            return "critical"
        if ratio >= self.settings.quota_warning_threshold:
            return "warning"
        return "normal"

    def _log_threshold_crossing(self, before: QuotaSummary, after: QuotaSummary) -> None:
        if after.warning_level == before.warning_level:
            return
        if after.warning_level in ("critical", "exceeded"):
            logger.error(
                "%s quota %s: %d/%d units (%.1f%%)",
                after.provider, after.warning_level, after.consumed, after.limit,
                after.usage_percentage,
            )
        elif after.warning_level == "warning":
            logger.warning(
                "%s quota warning: %d/%d units (%.1f%%)",
                after.provider, after.consumed, after.limit, after.usage_percentage,
            )
