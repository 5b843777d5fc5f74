"""Tenant attribution read endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from ledger_api.dependencies import CallerDep, QueriesDep

router = APIRouter(prefix="/attribution", tags=["attribution"])


@router.get("/{tenant_id}")
async def get_attribution(tenant_id: str, caller: CallerDep, queries: QueriesDep) -> dict[str, Any]:
    """Return the tenant's first-touch attribution.

    An organic tenant (no attribution recorded) returns ``attributed: false``
    rather than 404 so callers can tell it apart from a denied read.
    """
    attribution = await queries.get_attribution(caller, tenant_id)
    if attribution is None:
        return {"tenant_id": tenant_id, "attributed": False, "attribution": None}
    return {
        "tenant_id": tenant_id,
        "attributed": True,
        "attribution": attribution.model_dump(mode="json"),
    }
