"""Tests for the usage read endpoints (summaries, history, cursors, aggregate)."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
import pytest_asyncio
from httpx import AsyncClient

SUMMARIES = "/api/v1/usage/{tenant}/summaries"


def _day(day: int, hour: int = 0) -> datetime:
    return datetime(2026, 3, day, hour, tzinfo=UTC)


@pytest_asyncio.fixture()
async def reconciled(add_events, ledger) -> None:
    await add_events(
        [
            ("a1", "tenant-a", "capacity_tokens", 100, _day(3, 10)),
            ("a2", "tenant-a", "capacity_tokens", 40, _day(9, 10)),
            ("b1", "tenant-b", "capacity_tokens", 5, _day(9, 11)),
        ]
    )
    report = await ledger.reconcile()
    assert not report.failures


class TestSummaries:
    @pytest.mark.asyncio
    async def test_tenant_reads_own(self, client: AsyncClient, tenant_headers, reconciled) -> None:
        resp = await client.get(
            SUMMARIES.format(tenant="tenant-a"),
            params={"usage_type": "capacity_tokens"},
            headers=tenant_headers("tenant-a"),
        )

        assert resp.status_code == 200
        body = resp.json()
        assert body["tenant_id"] == "tenant-a"
        assert body["usage_type"] == "capacity_tokens"
        by_day = {datetime.fromisoformat(s["period_start"]).day: s for s in body["summaries"]}
        assert by_day[3]["total_quantity"] == 100
        assert by_day[9]["total_quantity"] == 40
        assert by_day[5]["total_quantity"] == 0
        assert by_day[3]["status"] == "final"
        assert by_day[9]["status"] == "provisional"

    @pytest.mark.asyncio
    async def test_range_filter(self, client: AsyncClient, tenant_headers, reconciled) -> None:
        resp = await client.get(
            SUMMARIES.format(tenant="tenant-a"),
            params={"usage_type": "capacity_tokens", "start": "2026-03-09T00:00:00Z", "end": "2026-03-10T00:00:00Z"},
            headers=tenant_headers("tenant-a"),
        )

        assert resp.status_code == 200
        summaries = resp.json()["summaries"]
        assert len(summaries) == 1
        assert summaries[0]["total_quantity"] == 40

    @pytest.mark.asyncio
    async def test_naive_bounds_are_utc(self, client: AsyncClient, tenant_headers, reconciled) -> None:
        resp = await client.get(
            SUMMARIES.format(tenant="tenant-a"),
            params={"usage_type": "capacity_tokens", "start": "2026-03-03T00:00:00", "end": "2026-03-04T00:00:00"},
            headers=tenant_headers("tenant-a"),
        )

        assert resp.status_code == 200
        assert [s["total_quantity"] for s in resp.json()["summaries"]] == [100]

    @pytest.mark.asyncio
    async def test_cross_tenant_forbidden(self, client: AsyncClient, tenant_headers, reconciled) -> None:
        resp = await client.get(
            SUMMARIES.format(tenant="tenant-b"),
            params={"usage_type": "capacity_tokens"},
            headers=tenant_headers("tenant-a"),
        )

        assert resp.status_code == 403
        assert resp.json() == {"detail": "cross-tenant access denied"}

    @pytest.mark.asyncio
    async def test_service_with_read_grant(self, client: AsyncClient, service_headers, reconciled) -> None:
        resp = await client.get(
            SUMMARIES.format(tenant="tenant-b"),
            params={"usage_type": "capacity_tokens"},
            headers=service_headers("usage:read:any"),
        )

        assert resp.status_code == 200
        assert [s["total_quantity"] for s in resp.json()["summaries"] if s["event_count"]] == [5]

    @pytest.mark.asyncio
    async def test_service_without_grant(self, client: AsyncClient, service_headers, reconciled) -> None:
        resp = await client.get(
            SUMMARIES.format(tenant="tenant-b"),
            params={"usage_type": "capacity_tokens"},
            headers=service_headers("usage:aggregate"),
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_usage_type(self, client: AsyncClient, tenant_headers) -> None:
        resp = await client.get(
            SUMMARIES.format(tenant="tenant-a"),
            params={"usage_type": "gpu_hours"},
            headers=tenant_headers("tenant-a"),
        )
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_inverted_range(self, client: AsyncClient, tenant_headers) -> None:
        resp = await client.get(
            SUMMARIES.format(tenant="tenant-a"),
            params={"usage_type": "capacity_tokens", "start": "2026-03-05T00:00:00Z", "end": "2026-03-04T00:00:00Z"},
            headers=tenant_headers("tenant-a"),
        )
        assert resp.status_code == 422
        assert resp.json()["detail"] == "start must be before end"

    @pytest.mark.asyncio
    async def test_no_summaries_yet(self, client: AsyncClient, tenant_headers) -> None:
        resp = await client.get(
            SUMMARIES.format(tenant="tenant-new"),
            params={"usage_type": "bandwidth_bytes"},
            headers=tenant_headers("tenant-new"),
        )
        assert resp.status_code == 200
        assert resp.json()["summaries"] == []


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_after_correction(
        self, client: AsyncClient, tenant_headers, add_events, ledger, reconciled
    ) -> None:
        # Late event for an already closed, still provisional period.
        await add_events([("a3", "tenant-a", "capacity_tokens", 10, _day(9, 15))])
        await ledger.reconcile()

        resp = await client.get(
            "/api/v1/usage/tenant-a/summaries/capacity_tokens/history",
            params={"period_start": "2026-03-09T00:00:00Z"},
            headers=tenant_headers("tenant-a"),
        )

        assert resp.status_code == 200
        versions = resp.json()["versions"]
        assert [v["total_quantity"] for v in versions] == [40, 50]
        assert versions[0]["superseded_by"] == versions[1]["summary_id"]
        assert versions[1]["superseded_by"] is None

    @pytest.mark.asyncio
    async def test_history_cross_tenant(self, client: AsyncClient, tenant_headers, reconciled) -> None:
        resp = await client.get(
            "/api/v1/usage/tenant-a/summaries/capacity_tokens/history",
            params={"period_start": "2026-03-09T00:00:00Z"},
            headers=tenant_headers("tenant-b"),
        )
        assert resp.status_code == 403


class TestCursor:
    @pytest.mark.asyncio
    async def test_operator_reads_cursor(self, client: AsyncClient, service_headers, reconciled) -> None:
        resp = await client.get(
            "/api/v1/usage/tenant-a/cursors/capacity_tokens",
            headers=service_headers("ledger:operate"),
        )

        assert resp.status_code == 200
        body = resp.json()
        assert datetime.fromisoformat(body["watermark"]) == datetime(2026, 3, 10, 11, 55, tzinfo=UTC)
        assert datetime.fromisoformat(body["settled_before"]) == datetime(2026, 3, 7, 11, 55, tzinfo=UTC)
        assert body["lookback_seconds"] == 72 * 3600
        assert body["pass_count"] >= 1

    @pytest.mark.asyncio
    async def test_missing_cursor(self, client: AsyncClient, service_headers, reconciled) -> None:
        resp = await client.get(
            "/api/v1/usage/tenant-z/cursors/capacity_tokens",
            headers=service_headers("ledger:operate"),
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_tenant_cannot_read_cursor(self, client: AsyncClient, tenant_headers, reconciled) -> None:
        resp = await client.get(
            "/api/v1/usage/tenant-a/cursors/capacity_tokens",
            headers=tenant_headers("tenant-a"),
        )
        assert resp.status_code == 403


class TestAggregate:
    @pytest.mark.asyncio
    async def test_aggregate_with_grant(self, client: AsyncClient, service_headers, reconciled) -> None:
        resp = await client.get(
            "/api/v1/usage/aggregate",
            params={"usage_type": "capacity_tokens", "start": "2026-03-01T00:00:00Z", "end": "2026-03-11T00:00:00Z"},
            headers=service_headers("usage:aggregate"),
        )

        assert resp.status_code == 200
        tenants = resp.json()["tenants"]
        assert [(t["tenant_id"], t["total_quantity"]) for t in tenants] == [("tenant-a", 140), ("tenant-b", 5)]
        assert tenants[0]["unit"] == "tokens"

    @pytest.mark.asyncio
    async def test_aggregate_denied_for_tenant(self, client: AsyncClient, tenant_headers, reconciled) -> None:
        resp = await client.get(
            "/api/v1/usage/aggregate",
            params={"usage_type": "capacity_tokens", "start": "2026-03-01T00:00:00Z", "end": "2026-03-11T00:00:00Z"},
            headers=tenant_headers("tenant-a"),
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_aggregate_requires_bounds(self, client: AsyncClient, service_headers) -> None:
        resp = await client.get(
            "/api/v1/usage/aggregate",
            params={"usage_type": "capacity_tokens"},
            headers=service_headers("usage:aggregate"),
        )
        assert resp.status_code == 422
