"""Tests for billing period arithmetic and the per-period aggregator."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ledger_core.config import BillingPeriod
from ledger_core.errors import IncomparableUsageTypes
from ledger_core.ledger.aggregator import PeriodAggregator, event_digest
from ledger_core.ledger.periods import iter_periods, period_bounds, period_end, period_start
from ledger_core.usage.events import UsageEvent
from ledger_core.usage.registry import UsageType, spec_for

D = datetime(2026, 3, 8, tzinfo=UTC)


def _event(event_id: str, occurred_at: datetime, quantity: object = 1, usage_type: UsageType = UsageType.CAPACITY_TOKENS) -> UsageEvent:
    return UsageEvent(
        event_id=event_id,
        tenant_id="tenant-a",
        usage_type=usage_type,
        quantity=quantity,
        unit=spec_for(usage_type).unit,
        occurred_at=occurred_at,
        observed_at=occurred_at,
    )


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------


class TestPeriods:
    def test_daily(self) -> None:
        assert period_start(D + timedelta(hours=23, minutes=59), BillingPeriod.DAILY) == D
        assert period_end(D, BillingPeriod.DAILY) == D + timedelta(days=1)

    def test_hourly(self) -> None:
        start, end = period_bounds(D + timedelta(hours=5, minutes=42), BillingPeriod.HOURLY)
        assert start == D + timedelta(hours=5)
        assert end == D + timedelta(hours=6)

    def test_monthly_rolls_over_year(self) -> None:
        start, end = period_bounds(datetime(2026, 12, 31, 23, tzinfo=UTC), BillingPeriod.MONTHLY)
        assert start == datetime(2026, 12, 1, tzinfo=UTC)
        assert end == datetime(2027, 1, 1, tzinfo=UTC)

    def test_non_utc_input_converted(self) -> None:
        plus_two = timezone(timedelta(hours=2))
        assert period_start(datetime(2026, 3, 9, 1, 0, tzinfo=plus_two), BillingPeriod.DAILY) == D

    def test_iter_periods_full_periods_only(self) -> None:
        periods = list(iter_periods(D, D + timedelta(days=2, hours=6), BillingPeriod.DAILY))
        assert periods == [(D, D + timedelta(days=1)), (D + timedelta(days=1), D + timedelta(days=2))]

    def test_iter_periods_rounds_start_up(self) -> None:
        periods = list(iter_periods(D + timedelta(hours=1), D + timedelta(days=2), BillingPeriod.DAILY))
        assert periods == [(D + timedelta(days=1), D + timedelta(days=2))]

    def test_iter_periods_empty(self) -> None:
        assert list(iter_periods(D, D + timedelta(hours=23), BillingPeriod.DAILY)) == []


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class TestPeriodAggregator:
    def test_sums_per_period_with_explicit_zero(self) -> None:
        agg = PeriodAggregator(UsageType.CAPACITY_TOKENS, BillingPeriod.DAILY, D, D + timedelta(days=3))
        agg.add(_event("a", D + timedelta(hours=1), 10))
        agg.add(_event("b", D + timedelta(hours=2), 5))
        agg.add(_event("c", D + timedelta(days=2, hours=1), 7))

        totals = agg.totals()
        assert [t.period_start for t in totals] == [D, D + timedelta(days=1), D + timedelta(days=2)]
        assert [t.total for t in totals] == [15, 0, 7]
        assert [t.event_count for t in totals] == [2, 0, 1]

    def test_first_seen_event_id_wins(self) -> None:
        agg = PeriodAggregator(UsageType.CAPACITY_TOKENS, BillingPeriod.DAILY, D, D + timedelta(days=2))
        assert agg.add(_event("dup", D + timedelta(hours=1), 3)) is True
        assert agg.add(_event("dup", D + timedelta(days=1, hours=1), 300)) is False

        totals = agg.totals()
        assert [t.total for t in totals] == [3, 0]
        assert agg.events_read == 2
        assert agg.duplicates_dropped == 1

    def test_events_outside_closed_periods_ignored(self) -> None:
        agg = PeriodAggregator(UsageType.CAPACITY_TOKENS, BillingPeriod.DAILY, D, D + timedelta(days=1, hours=6))
        assert agg.add(_event("open", D + timedelta(days=1, hours=1), 9)) is False
        assert [t.total for t in agg.totals()] == [0]

    def test_continuous_totals_are_decimal(self) -> None:
        agg = PeriodAggregator(UsageType.BANDWIDTH_BYTES, BillingPeriod.DAILY, D, D + timedelta(days=1))
        agg.add(_event("a", D, Decimal("0.1"), UsageType.BANDWIDTH_BYTES))
        agg.add(_event("b", D, Decimal("0.2"), UsageType.BANDWIDTH_BYTES))
        assert agg.totals()[0].total == Decimal("0.300000")

    def test_other_usage_type_rejected(self) -> None:
        agg = PeriodAggregator(UsageType.CAPACITY_TOKENS, BillingPeriod.DAILY, D, D + timedelta(days=1))
        with pytest.raises(IncomparableUsageTypes):
            agg.add(_event("x", D, 1, UsageType.API_COMPLEXITY))

    def test_digest_is_order_independent(self) -> None:
        assert event_digest(["b", "a"]) == event_digest({"a", "b"})
        assert event_digest(["a"]) != event_digest(["a", "b"])

        agg = PeriodAggregator(UsageType.CAPACITY_TOKENS, BillingPeriod.DAILY, D, D + timedelta(days=1))
        agg.add(_event("b", D))
        agg.add(_event("a", D + timedelta(hours=1)))
        assert agg.totals()[0].digest == event_digest(["a", "b"])
