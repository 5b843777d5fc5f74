"""Tests for health probes, the Prometheus endpoint and metric helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fastapi import FastAPI
from httpx import AsyncClient
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route

from ledger_api import __version__
from ledger_api.dependencies import get_db_session
from ledger_api.middleware.prometheus import _normalise_path, _route_label, record_reconcile_report
from ledger_core.ledger.models import PairReport, PassResult, ReconcileReport
from ledger_core.usage.registry import UsageType


class _BrokenSession:
    async def execute(self, *args: object, **kwargs: object) -> None:
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))


def _sample(name: str, **labels: str) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


def _matched_request(template: str, path: str) -> Request:
    route = Route(template, endpoint=lambda request: PlainTextResponse("ok"))
    return Request({"type": "http", "method": "GET", "path": path, "headers": [], "query_string": b"", "route": route})


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_ok(self, client: AsyncClient) -> None:
        resp = await client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy", "version": __version__, "db": "ok"}

    @pytest.mark.asyncio
    async def test_ready(self, client: AsyncClient) -> None:
        resp = await client.get("/ready")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_degraded_database(self, app: FastAPI, client: AsyncClient) -> None:
        async def _broken():
            yield _BrokenSession()

        app.dependency_overrides[get_db_session] = _broken

        health = await client.get("/api/v1/health")
        ready = await client.get("/ready")

        assert health.status_code == 200
        assert health.json()["db"] == "degraded"
        assert ready.status_code == 503
        assert ready.json()["status"] == "not_ready"
        assert ready.json()["checks"] == {"db": "unavailable"}


class TestMetricsEndpoint:
    @pytest.mark.asyncio
    async def test_exposition_format(self, client: AsyncClient) -> None:
        await client.get("/api/v1/health")

        resp = await client.get("/metrics")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert 'ledger_http_requests_total{method="GET",path="/api/v1/health",status_code="200"}' in resp.text

    @pytest.mark.asyncio
    async def test_route_template_used_as_label(self, client: AsyncClient, tenant_headers) -> None:
        before = _sample(
            "ledger_http_requests_total",
            method="GET",
            path="/api/v1/attribution/{tenant_id}",
            status_code="200",
        )
        await client.get("/api/v1/attribution/tenant-a", headers=tenant_headers("tenant-a"))
        after = _sample(
            "ledger_http_requests_total",
            method="GET",
            path="/api/v1/attribution/{tenant_id}",
            status_code="200",
        )
        assert after == before + 1

    @pytest.mark.asyncio
    async def test_registration_outcomes_counted(self, client: AsyncClient) -> None:
        before = _sample("ledger_registrations_total", outcome="organic")
        await client.post("/api/v1/registrations", json={"registration_id": "r-1", "account_name": "Acme"})
        assert _sample("ledger_registrations_total", outcome="organic") == before + 1


class TestMetricHelpers:
    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/things/12345", "/things/{id}"),
            ("/things/0f8fad5b-d9cb-469f-a165-70867728950e/x", "/things/{id}/x"),
            ("/api/v1/health", "/api/v1/health"),
        ],
    )
    def test_normalise_path(self, path: str, expected: str) -> None:
        assert _normalise_path(path) == expected

    @pytest.mark.parametrize(
        ("template", "path", "expected"),
        [
            ("/api/v1/usage/{tenant_id}/cursor/{usage_type}", "/api/v1/usage/t1/cursor/x", "/api/v1/usage/{tenant_id}/cursor/{usage_type}"),
            ("/usage/{tenant_id}/cursor/{usage_type}", "/api/v1/usage/t1/cursor/x", "/api/v1/usage/{tenant_id}/cursor/{usage_type}"),
            ("/health", "/api/v1/health", "/api/v1/health"),
        ],
        ids=["full-template", "prefix-less-template", "static"],
    )
    def test_route_label_includes_router_prefix(self, template: str, path: str, expected: str) -> None:
        assert _route_label(_matched_request(template, path)) == expected

    def test_route_label_unmatched_is_normalised(self) -> None:
        request = Request({"type": "http", "method": "GET", "path": "/nope/12345", "headers": [], "query_string": b""})
        assert _route_label(request) == "/nope/{id}"

    def test_record_reconcile_report(self) -> None:
        now = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
        passes = [
            PassResult(
                tenant_id="tenant-a",
                usage_type=UsageType.STREAM_MINUTES,
                scan_start=now - timedelta(days=1),
                target_end=now,
                watermark_before=now - timedelta(hours=1),
                watermark_after=now,
                corrections=0,
            )
        ]
        report = ReconcileReport(
            started_at=now,
            finished_at=now + timedelta(seconds=2),
            pairs=[PairReport(tenant_id="tenant-a", usage_type=UsageType.STREAM_MINUTES, passes=passes, caught_up=True)],
            conflicts=["tenant-b/stream_minutes"],
            failures=["tenant-c/stream_minutes"],
        )
        passes_before = _sample("ledger_reconciliation_passes_total", usage_type="stream_minutes")
        conflicts_before = _sample("ledger_reconciliation_conflicts_total")
        failures_before = _sample("ledger_reconciliation_failures_total")

        record_reconcile_report(report)

        assert _sample("ledger_reconciliation_passes_total", usage_type="stream_minutes") == passes_before + 1
        assert _sample("ledger_reconciliation_conflicts_total") == conflicts_before + 1
        assert _sample("ledger_reconciliation_failures_total") == failures_before + 1
