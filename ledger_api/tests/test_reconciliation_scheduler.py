"""Tests for ledger_api.services.reconciliation_scheduler."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest
from sqlalchemy.exc import OperationalError

from ledger_api.services.reconciliation_scheduler import ReconciliationScheduler
from ledger_core.ledger.models import ReconcileReport


class _FlakyLedger:
    """Ledger stand-in whose ``reconcile`` raises the queued errors first."""

    def __init__(self, *errors: Exception) -> None:
        self._errors = list(errors)
        self.calls = 0

    async def reconcile(self) -> ReconcileReport:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return ReconcileReport(started_at=datetime.now(UTC), finished_at=datetime.now(UTC))


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_reconciles_due_pairs(self, ledger, add_events) -> None:
        await add_events([("a1", "tenant-a", "capacity_tokens", 3, datetime(2026, 3, 9, 8, 0, tzinfo=UTC))])
        scheduler = ReconciliationScheduler(ledger, interval_seconds=60)

        report = await scheduler.run_once()

        assert [(p.tenant_id, p.usage_type.value) for p in report.pairs] == [("tenant-a", "capacity_tokens")]
        assert report.summaries_written >= 1
        assert scheduler.ticks == 1
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_nothing_due(self, ledger) -> None:
        report = await ReconciliationScheduler(ledger).run_once()
        assert report.pairs == []


class TestLoop:
    @pytest.mark.asyncio
    async def test_start_and_stop(self) -> None:
        ledger = _FlakyLedger()
        scheduler = ReconciliationScheduler(ledger, interval_seconds=0.01)  # type: ignore[arg-type]

        await scheduler.start()
        assert scheduler.running
        await _wait_for(lambda: scheduler.ticks >= 2)
        await scheduler.stop()

        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self) -> None:
        scheduler = ReconciliationScheduler(_FlakyLedger(), interval_seconds=10)  # type: ignore[arg-type]
        await scheduler.start()
        await scheduler.start()
        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_database_errors_do_not_stop_loop(self) -> None:
        ledger = _FlakyLedger(OperationalError("SELECT 1", {}, Exception("connection refused")))
        scheduler = ReconciliationScheduler(ledger, interval_seconds=0.01)  # type: ignore[arg-type]

        await scheduler.start()
        await _wait_for(lambda: scheduler.ticks >= 1)
        await scheduler.stop()

        assert ledger.calls >= 2

    @pytest.mark.asyncio
    async def test_unexpected_error_stops_loop(self) -> None:
        ledger = _FlakyLedger(RuntimeError("boom"))
        scheduler = ReconciliationScheduler(ledger, interval_seconds=0.01)  # type: ignore[arg-type]

        await scheduler.start()
        await _wait_for(lambda: not scheduler.running)

        assert scheduler.ticks == 0
        with pytest.raises(RuntimeError, match="boom"):
            await scheduler.stop()
