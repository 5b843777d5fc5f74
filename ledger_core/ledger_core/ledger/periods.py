"""Billing period arithmetic in UTC.

Periods are half-open ``[start, end)`` and aligned to the UTC hour, day or
calendar month.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta

from ledger_core.config import BillingPeriod
from ledger_core.usage.events import ensure_utc


def period_start(instant: datetime, period: BillingPeriod) -> datetime:
    """Return the start of the period containing *instant*."""
    instant = ensure_utc(instant)
    if period == BillingPeriod.HOURLY:
        return instant.replace(minute=0, second=0, microsecond=0)
    if period == BillingPeriod.DAILY:
        return instant.replace(hour=0, minute=0, second=0, microsecond=0)
    return instant.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def period_end(start: datetime, period: BillingPeriod) -> datetime:
    """Return the exclusive end of the period that starts at *start*."""
    start = period_start(start, period)
    if period == BillingPeriod.HOURLY:
        return start + timedelta(hours=1)
    if period == BillingPeriod.DAILY:
        return start + timedelta(days=1)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def period_bounds(instant: datetime, period: BillingPeriod) -> tuple[datetime, datetime]:
    start = period_start(instant, period)
    return start, period_end(start, period)


def iter_periods(start: datetime, end: datetime, period: BillingPeriod) -> Iterator[tuple[datetime, datetime]]:
    """Yield ``(start, end)`` of every period fully inside ``[start, end)``.

    *start* is rounded up to a boundary; a trailing partial period is not
    yielded.
    """
    cursor = period_start(start, period)
    if cursor < ensure_utc(start):
        cursor = period_end(cursor, period)
    end = ensure_utc(end)
    while True:
        nxt = period_end(cursor, period)
        if nxt > end:
            return
        yield cursor, nxt
        cursor = nxt
