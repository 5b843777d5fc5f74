"""Per-period summation of a scanned event stream.

The aggregator is fed events in scan order and keeps the first occurrence
of every ``event_id``; later copies are dropped whatever their quantity or
timestamp.  Only periods that lie entirely inside ``[scan_start,
target_end)`` produce totals, and every such period produces one, with an
explicit zero when it saw no events.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from ledger_core.config import BillingPeriod
from ledger_core.errors import IncomparableUsageTypes
from ledger_core.ledger.periods import iter_periods, period_start
from ledger_core.usage.events import UsageEvent
from ledger_core.usage.registry import QUANTITY_SCALE, UsageType, spec_for, zero_quantity


def event_digest(event_ids: list[str] | set[str]) -> str:
    """SHA-256 over the sorted, newline-joined event ids."""
    return hashlib.sha256("\n".join(sorted(event_ids)).encode("utf-8")).hexdigest()


@dataclass
class PeriodTotal:
    """Running total for one billing period."""

    period_start: datetime
    period_end: datetime
    total: int | Decimal
    event_ids: list[str] = field(default_factory=list)

    @property
    def event_count(self) -> int:
        return len(self.event_ids)

    @property
    def digest(self) -> str:
        return event_digest(self.event_ids)


class PeriodAggregator:
    """Deduplicating per-period accumulator for one (tenant, usage type) scan.

    Parameters
    ----------
    usage_type:
        Type every fed event must have.
    period:
        Billing period granularity.
    scan_start:
        Inclusive start of the scan (a period boundary).
    target_end:
        Exclusive end of the scan; periods ending after it stay open.
    """

    def __init__(
        self,
        usage_type: UsageType,
        period: BillingPeriod,
        scan_start: datetime,
        target_end: datetime,
    ) -> None:
        self._usage_type = usage_type
        self._period = period
        self._discrete = spec_for(usage_type).is_discrete
        self._seen: set[str] = set()
        self._periods: dict[datetime, PeriodTotal] = {
            start: PeriodTotal(start, end, zero_quantity(usage_type))
            for start, end in iter_periods(scan_start, target_end, period)
        }
        self.events_read = 0
        self.duplicates_dropped = 0

    def add(self, event: UsageEvent) -> bool:
        """Feed one event; returns ``True`` if it contributed to a closed period.

        Raises
        ------
        IncomparableUsageTypes
            If *event* belongs to another usage type.
        """
        if event.usage_type != self._usage_type:
            raise IncomparableUsageTypes(
                f"Event {event.event_id} is {event.usage_type.value}, aggregating {self._usage_type.value}"
            )
        self.events_read += 1
        if event.event_id in self._seen:
            self.duplicates_dropped += 1
            return False
        self._seen.add(event.event_id)

        bucket = self._periods.get(period_start(event.occurred_at, self._period))
        if bucket is None:
            return False
        if self._discrete:
            bucket.total = int(bucket.total) + int(event.quantity)
        else:
            bucket.total = (Decimal(bucket.total) + Decimal(event.quantity)).quantize(QUANTITY_SCALE)
        bucket.event_ids.append(event.event_id)
        return True

    def totals(self) -> list[PeriodTotal]:
        """Closed-period totals ordered by period start."""
        return [self._periods[start] for start in sorted(self._periods)]
