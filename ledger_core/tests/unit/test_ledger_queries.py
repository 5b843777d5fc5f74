"""Tests for ledger_core.ledger.queries -- gated reads over the ledger."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
import pytest_asyncio

from ledger_core.access.gate import CallerContext
from ledger_core.errors import AccessDenied
from ledger_core.ledger.models import SummaryStatus
from ledger_core.ledger.queries import LedgerQueries
from ledger_core.ledger.reconciler import build_ledger
from ledger_core.state.repository import TenantAttributionRepository
from ledger_core.usage.registry import UsageType

MAR_1 = datetime(2026, 3, 1, tzinfo=UTC)
MAR_11 = datetime(2026, 3, 11, tzinfo=UTC)

TENANT_A = CallerContext.for_tenant("tenant-a")
SUPPORT = CallerContext.for_service("support", {"usage:read:any"})
FINANCE = CallerContext.for_service("finance", {"usage:aggregate"})
OPS = CallerContext.for_service("ops", {"ledger:operate"})


@pytest_asyncio.fixture
async def reconciled(session_factory, settings, clock, add_events) -> LedgerQueries:
    await add_events(
        [
            ("a1", "tenant-a", "capacity_tokens", 100, datetime(2026, 3, 3, 10, 0, tzinfo=UTC)),
            ("a2", "tenant-a", "capacity_tokens", 40, datetime(2026, 3, 9, 10, 0, tzinfo=UTC)),
            ("b1", "tenant-b", "capacity_tokens", 5, datetime(2026, 3, 9, 11, 0, tzinfo=UTC)),
        ]
    )
    async with session_factory() as session, session.begin():
        await TenantAttributionRepository(session).insert_if_absent(
            {"tenant_id": "tenant-a", "utm_source": "google", "utm_campaign": "spring24", "captured_at": MAR_1}
        )
    await build_ledger(session_factory, settings, clock=clock).reconcile()
    return LedgerQueries(session_factory)


class TestUsageSummaries:
    @pytest.mark.asyncio
    async def test_tenant_reads_own_summaries(self, reconciled: LedgerQueries) -> None:
        summaries = await reconciled.get_usage_summaries(TENANT_A, "tenant-a", UsageType.CAPACITY_TOKENS, MAR_1, MAR_11)

        assert summaries[0].period_start == datetime(2026, 3, 3, tzinfo=UTC)
        assert summaries[0].total_quantity == 100
        assert summaries[-1].period_start == datetime(2026, 3, 9, tzinfo=UTC)
        assert summaries[-1].total_quantity == 40
        assert all(s.tenant_id == "tenant-a" for s in summaries)

    @pytest.mark.asyncio
    async def test_status_provisional_inside_lookback(self, reconciled: LedgerQueries) -> None:
        summaries = await reconciled.get_usage_summaries(TENANT_A, "tenant-a", "capacity_tokens")
        by_day = {s.period_start.day: s.status for s in summaries}

        assert by_day[3] == SummaryStatus.FINAL
        assert by_day[9] == SummaryStatus.PROVISIONAL

    @pytest.mark.asyncio
    async def test_cross_tenant_denied(self, reconciled: LedgerQueries) -> None:
        with pytest.raises(AccessDenied):
            await reconciled.get_usage_summaries(TENANT_A, "tenant-b", UsageType.CAPACITY_TOKENS)

    @pytest.mark.asyncio
    async def test_service_with_grant_reads_any(self, reconciled: LedgerQueries) -> None:
        summaries = await reconciled.get_usage_summaries(SUPPORT, "tenant-b", UsageType.CAPACITY_TOKENS)
        assert [s.total_quantity for s in summaries if s.event_count] == [5]

    @pytest.mark.asyncio
    async def test_unauthenticated_denied(self, reconciled: LedgerQueries) -> None:
        with pytest.raises(AccessDenied):
            await reconciled.get_usage_summaries(None, "tenant-a", UsageType.CAPACITY_TOKENS)  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_history(self, reconciled: LedgerQueries) -> None:
        history = await reconciled.get_summary_history(
            TENANT_A, "tenant-a", UsageType.CAPACITY_TOKENS, datetime(2026, 3, 9, tzinfo=UTC)
        )
        assert [(h.pass_number, h.total_quantity) for h in history] == [(0, 40)]


class TestOperationalQueries:
    @pytest.mark.asyncio
    async def test_cursor_requires_operate_grant(self, reconciled: LedgerQueries) -> None:
        with pytest.raises(AccessDenied):
            await reconciled.get_billing_cursor(TENANT_A, "tenant-a", UsageType.CAPACITY_TOKENS)

        cursor = await reconciled.get_billing_cursor(OPS, "tenant-a", UsageType.CAPACITY_TOKENS)
        assert cursor is not None
        assert cursor.watermark == datetime(2026, 3, 10, 11, 55, tzinfo=UTC)
        assert await reconciled.get_billing_cursor(OPS, "tenant-z", UsageType.CAPACITY_TOKENS) is None

    @pytest.mark.asyncio
    async def test_aggregate(self, reconciled: LedgerQueries) -> None:
        totals = await reconciled.aggregate_usage(FINANCE, UsageType.CAPACITY_TOKENS, MAR_1, MAR_11)
        assert [(t.tenant_id, t.total_quantity) for t in totals] == [("tenant-a", 140), ("tenant-b", 5)]
        assert totals[0].unit == "tokens"

    @pytest.mark.asyncio
    async def test_aggregate_denied_for_tenant(self, reconciled: LedgerQueries) -> None:
        with pytest.raises(AccessDenied):
            await reconciled.aggregate_usage(TENANT_A, UsageType.CAPACITY_TOKENS, MAR_1, MAR_11)


class TestAttribution:
    @pytest.mark.asyncio
    async def test_own_attribution(self, reconciled: LedgerQueries) -> None:
        attribution = await reconciled.get_attribution(TENANT_A, "tenant-a")
        assert attribution is not None
        assert attribution.utm_campaign == "spring24"

    @pytest.mark.asyncio
    async def test_organic_tenant(self, reconciled: LedgerQueries) -> None:
        assert await reconciled.get_attribution(SUPPORT, "tenant-b") is None

    @pytest.mark.asyncio
    async def test_other_tenant_denied(self, reconciled: LedgerQueries) -> None:
        with pytest.raises(AccessDenied):
            await reconciled.get_attribution(CallerContext.for_tenant("tenant-b"), "tenant-a")
