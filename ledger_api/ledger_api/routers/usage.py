"""Usage ledger read endpoints.

Tenants read their own closed summaries; service credentials read any
tenant's with ``usage:read:any``, aggregate with ``usage:aggregate`` and
see billing cursors with ``ledger:operate``.  Every read goes through the
access gate in :class:`LedgerQueries`; a denial surfaces as HTTP 403.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from ledger_api.dependencies import CallerDep, QueriesDep
from ledger_core.usage.events import ensure_utc
from ledger_core.usage.registry import UsageType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


def _utc(value: datetime | None) -> datetime | None:
    """Treat naive query-string datetimes as UTC."""
    return ensure_utc(value) if value is not None else None


def _check_range(start: datetime | None, end: datetime | None) -> None:
    if start is not None and end is not None and start >= end:
        raise HTTPException(status_code=422, detail="start must be before end")


@router.get("/aggregate")
async def aggregate_usage(
    caller: CallerDep,
    queries: QueriesDep,
    usage_type: UsageType = Query(..., description="Usage type to total"),
    start: datetime = Query(..., description="Inclusive lower bound on period_start"),
    end: datetime = Query(..., description="Exclusive upper bound on period_start"),
) -> dict[str, Any]:
    """Per-tenant totals of current summaries for one usage type.

    Requires the ``usage:aggregate`` service grant.
    """
    start_utc, end_utc = _utc(start), _utc(end)
    _check_range(start_utc, end_utc)
    totals = await queries.aggregate_usage(caller, usage_type, start_utc, end_utc)  # type: ignore[arg-type]
    return {
        "usage_type": usage_type.value,
        "start": start_utc.isoformat() if start_utc else None,
        "end": end_utc.isoformat() if end_utc else None,
        "tenants": [t.model_dump(mode="json") for t in totals],
    }


@router.get("/{tenant_id}/summaries")
async def list_usage_summaries(
    tenant_id: str,
    caller: CallerDep,
    queries: QueriesDep,
    usage_type: UsageType = Query(..., description="Usage type to read"),
    start: datetime | None = Query(default=None, description="Inclusive lower bound on period_start"),
    end: datetime | None = Query(default=None, description="Exclusive upper bound on period_start"),
) -> dict[str, Any]:
    """Return the current summary of every closed period in range.

    Each summary carries ``status``: ``provisional`` while its period can
    still receive late events, ``final`` afterwards.
    """
    start_utc, end_utc = _utc(start), _utc(end)
    _check_range(start_utc, end_utc)
    summaries = await queries.get_usage_summaries(caller, tenant_id, usage_type, start_utc, end_utc)
    return {
        "tenant_id": tenant_id,
        "usage_type": usage_type.value,
        "summaries": [s.model_dump(mode="json") for s in summaries],
    }


@router.get("/{tenant_id}/summaries/{usage_type}/history")
async def summary_history(
    tenant_id: str,
    usage_type: UsageType,
    caller: CallerDep,
    queries: QueriesDep,
    period_start: datetime = Query(..., description="Start of the period"),
) -> dict[str, Any]:
    """Return every retained version of one period, oldest pass first."""
    versions = await queries.get_summary_history(caller, tenant_id, usage_type, _utc(period_start))  # type: ignore[arg-type]
    return {
        "tenant_id": tenant_id,
        "usage_type": usage_type.value,
        "versions": [v.model_dump(mode="json") for v in versions],
    }


@router.get("/{tenant_id}/cursors/{usage_type}")
async def get_billing_cursor(
    tenant_id: str,
    usage_type: UsageType,
    caller: CallerDep,
    queries: QueriesDep,
) -> dict[str, Any]:
    """Operational view of a pair's billing cursor (``ledger:operate`` only)."""
    cursor = await queries.get_billing_cursor(caller, tenant_id, usage_type)
    if cursor is None:
        raise HTTPException(status_code=404, detail=f"No billing cursor for {tenant_id}/{usage_type.value}")
    return {
        "tenant_id": cursor.tenant_id,
        "usage_type": cursor.usage_type.value,
        "watermark": cursor.watermark.isoformat(),
        "lookback_seconds": int(cursor.lookback_window.total_seconds()),
        "origin": cursor.origin.isoformat(),
        "pass_count": cursor.pass_count,
        "last_advanced_at": cursor.last_advanced_at.isoformat(),
        "settled_before": cursor.settled_before.isoformat(),
    }
