"""Domain models for billing cursors, usage summaries and pass reports."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from ledger_core.state.tables import BillingCursorTable, UsageSummaryTable
from ledger_core.usage.registry import UsageType, normalize_quantity, spec_for


class PairState(str, Enum):
    """Reconciliation state of one (tenant, usage type) pair."""

    IDLE = "idle"
    SCANNING = "scanning"
    RECONCILING = "reconciling"
    CLOSED = "closed"


class SummaryStatus(str, Enum):
    """``provisional`` while the period can still receive late events."""

    PROVISIONAL = "provisional"
    FINAL = "final"


class BillingCursor(BaseModel):
    """Reconciliation progress for one (tenant, usage type) pair."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    usage_type: UsageType
    watermark: datetime
    lookback_window: timedelta
    origin: datetime
    pass_count: int = 0
    last_advanced_at: datetime

    @classmethod
    def from_row(cls, row: BillingCursorTable) -> BillingCursor:
        return cls(
            tenant_id=row.tenant_id,
            usage_type=UsageType(row.usage_type),
            watermark=row.watermark,
            lookback_window=timedelta(seconds=row.lookback_seconds),
            origin=row.origin,
            pass_count=row.pass_count,
            last_advanced_at=row.last_advanced_at,
        )

    @property
    def settled_before(self) -> datetime:
        """Instant before which late events are no longer reconciled."""
        return self.watermark - self.lookback_window


class UsageSummary(BaseModel):
    """One version of the total for a closed billing period."""

    model_config = ConfigDict(frozen=True)

    summary_id: str
    tenant_id: str
    usage_type: UsageType
    period_start: datetime
    period_end: datetime
    total_quantity: int | Decimal
    unit: str
    event_count: int
    event_digest: str
    pass_number: int
    superseded_by: str | None = None
    reconciled_through: datetime
    created_at: datetime
    status: SummaryStatus | None = None

    @classmethod
    def from_row(cls, row: UsageSummaryTable) -> UsageSummary:
        usage_type = UsageType(row.usage_type)
        return cls(
            summary_id=row.summary_id,
            tenant_id=row.tenant_id,
            usage_type=usage_type,
            period_start=row.period_start,
            period_end=row.period_end,
            total_quantity=normalize_quantity(usage_type, row.total_quantity),
            unit=row.unit or spec_for(usage_type).unit,
            event_count=row.event_count,
            event_digest=row.event_digest,
            pass_number=row.pass_number,
            superseded_by=row.superseded_by,
            reconciled_through=row.reconciled_through,
            created_at=row.created_at,
        )

    @property
    def is_current(self) -> bool:
        return self.superseded_by is None

    def with_status(self, cursor: BillingCursor | None) -> UsageSummary:
        """Flag the summary ``provisional`` while its period is inside the cursor's lookback."""
        if cursor is None or self.period_end > cursor.settled_before:
            status = SummaryStatus.PROVISIONAL
        else:
            status = SummaryStatus.FINAL
        return self.model_copy(update={"status": status})


class PassResult(BaseModel):
    """Outcome of one reconciliation pass over a pair."""

    tenant_id: str
    usage_type: UsageType
    scan_start: datetime
    target_end: datetime
    watermark_before: datetime
    watermark_after: datetime
    events_read: int = 0
    duplicates_dropped: int = 0
    periods_closed: int = 0
    summaries_written: list[UsageSummary] = Field(default_factory=list)
    corrections: int = 0
    unchanged: int = 0
    pruned: int = 0

    @property
    def advanced(self) -> bool:
        return self.watermark_after > self.watermark_before


class PairReport(BaseModel):
    """All passes run for one pair in a single ``reconcile_pair`` call."""

    tenant_id: str
    usage_type: UsageType
    passes: list[PassResult] = Field(default_factory=list)
    caught_up: bool = False
    error: str | None = None

    @property
    def summaries_written(self) -> int:
        return sum(len(p.summaries_written) for p in self.passes)

    @property
    def corrections(self) -> int:
        return sum(p.corrections for p in self.passes)


class ReconcileReport(BaseModel):
    """Result of a ``reconcile`` trigger across one or more pairs."""

    started_at: datetime
    finished_at: datetime | None = None
    pairs: list[PairReport] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)
    failures: list[str] = Field(default_factory=list)

    @property
    def summaries_written(self) -> int:
        return sum(p.summaries_written for p in self.pairs)
