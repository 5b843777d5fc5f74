"""Reconciliation trigger endpoints.

``POST /reconciliation/run`` runs the ledger for one pair, every pair of
a tenant, or every due pair.  Requires the ``ledger:operate`` service
grant.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, Field

from ledger_api.dependencies import CallerDep, LedgerDep
from ledger_api.middleware.prometheus import record_reconcile_report
from ledger_core.access.gate import CallerContext, ServiceGrant
from ledger_core.errors import AccessDenied
from ledger_core.ledger.models import PairReport, ReconcileReport
from ledger_core.usage.registry import UsageType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RunRequest(BaseModel):
    """Request body for a reconcile trigger."""

    tenant_id: str | None = Field(None, min_length=1, max_length=64, description="Tenant to reconcile, or None for every due pair.")
    usage_type: UsageType | None = Field(None, description="Restrict to one usage type.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require_operator(caller: CallerContext) -> None:
    if not caller.has_grant(ServiceGrant.OPERATE_LEDGER):
        logger.warning("Reconcile trigger denied for subject=%s", caller.subject)
        raise AccessDenied("ledger:operate grant required")


def _pair_view(pair: PairReport) -> dict[str, Any]:
    last = pair.passes[-1] if pair.passes else None
    return {
        "tenant_id": pair.tenant_id,
        "usage_type": pair.usage_type.value,
        "passes": len(pair.passes),
        "summaries_written": pair.summaries_written,
        "corrections": pair.corrections,
        "caught_up": pair.caught_up,
        "watermark": last.watermark_after.isoformat() if last else None,
        "error": pair.error,
    }


def _report_view(report: ReconcileReport) -> dict[str, Any]:
    return {
        "started_at": report.started_at.isoformat(),
        "finished_at": report.finished_at.isoformat() if report.finished_at else None,
        "summaries_written": report.summaries_written,
        "pairs": [_pair_view(p) for p in report.pairs],
        "conflicts": report.conflicts,
        "failures": report.failures,
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/run")
async def run_reconciliation(body: RunRequest, caller: CallerDep, ledger: LedgerDep) -> dict[str, Any]:
    """Trigger reconciliation.

    With both ``tenant_id`` and ``usage_type`` the single pair is run and
    a pass already in flight is reported as HTTP 409.  Otherwise conflicts
    and failures of individual pairs are listed in the response.
    """
    _require_operator(caller)
    logger.info(
        "Reconcile triggered by %s (tenant=%s usage_type=%s)",
        caller.subject,
        body.tenant_id,
        body.usage_type.value if body.usage_type else None,
    )

    if body.tenant_id is not None and body.usage_type is not None:
        started_at = ledger.now()
        pair = await ledger.reconcile_pair(body.tenant_id, body.usage_type)
        report = ReconcileReport(started_at=started_at, finished_at=ledger.now(), pairs=[pair])
    else:
        report = await ledger.reconcile(tenant_id=body.tenant_id, usage_type=body.usage_type)

    record_reconcile_report(report)
    return _report_view(report)


@router.get("/state")
async def reconciliation_state(caller: CallerDep, ledger: LedgerDep) -> dict[str, Any]:
    """Pairs with a pass in flight on this instance."""
    _require_operator(caller)
    return {
        "instance_id": ledger.instance_id,
        "pairs": [
            {"tenant_id": tenant_id, "usage_type": usage_type.value, "state": state.value}
            for (tenant_id, usage_type), state in sorted(ledger.pair_states().items(), key=lambda item: (item[0][0], item[0][1].value))
        ],
    }
