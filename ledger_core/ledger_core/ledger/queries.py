"""Read side of the ledger, every call gated by the reporting access gate."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_core.access.gate import CallerContext, CallerKind, QueryScope, require
from ledger_core.attribution.capture import TenantAttribution
from ledger_core.ledger.models import BillingCursor, UsageSummary
from ledger_core.state.database import set_service_context, set_tenant_context
from ledger_core.state.repository import (
    BillingCursorRepository,
    TenantAttributionRepository,
    UsageSummaryRepository,
)
from ledger_core.state.tables import TenantAttributionTable
from ledger_core.usage.registry import UsageType, normalize_quantity, spec_for

logger = logging.getLogger(__name__)


class TenantUsageTotal(BaseModel):
    tenant_id: str
    usage_type: UsageType
    total_quantity: int | Decimal
    unit: str
    periods: int


def _attribution_from_row(row: TenantAttributionTable) -> TenantAttribution:
    return TenantAttribution(
        tenant_id=row.tenant_id,
        signup_channel=row.signup_channel,
        signup_method=row.signup_method,
        utm_source=row.utm_source,
        utm_medium=row.utm_medium,
        utm_campaign=row.utm_campaign,
        utm_content=row.utm_content,
        utm_term=row.utm_term,
        referral_code=row.referral_code,
        landing_page=row.landing_page,
        referrer=row.referrer,
        captured_at=row.captured_at,
    )


class LedgerQueries:
    """Gated queries over summaries, cursors and attribution.

    Tenant callers run with the PostgreSQL tenant context set to their own
    tenant; service callers run with the service context.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, caller: CallerContext, tenant_id: str | None) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            if caller.kind == CallerKind.TENANT and tenant_id is not None:
                await set_tenant_context(session, tenant_id)
            else:
                await set_service_context(session)
            yield session

    async def get_usage_summaries(
        self,
        caller: CallerContext,
        tenant_id: str,
        usage_type: UsageType | str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageSummary]:
        """Return current summaries with ``start <= period_start < end``, each flagged provisional or final.

        Raises
        ------
        AccessDenied
            The caller may not read this tenant's usage.
        """
        require(caller, tenant_id, QueryScope.TENANT_USAGE)
        usage_type = UsageType(usage_type)
        async with self._session(caller, tenant_id) as session:
            rows = await UsageSummaryRepository(session).current_for_range(tenant_id, usage_type.value, start, end)
            cursor_row = await BillingCursorRepository(session).get(tenant_id, usage_type.value)
        cursor = BillingCursor.from_row(cursor_row) if cursor_row is not None else None
        return [UsageSummary.from_row(row).with_status(cursor) for row in rows]

    async def get_summary_history(
        self,
        caller: CallerContext,
        tenant_id: str,
        usage_type: UsageType | str,
        period_start: datetime,
    ) -> list[UsageSummary]:
        """Return every retained version of one period, oldest pass first."""
        require(caller, tenant_id, QueryScope.TENANT_USAGE)
        usage_type = UsageType(usage_type)
        async with self._session(caller, tenant_id) as session:
            rows = await UsageSummaryRepository(session).history(tenant_id, usage_type.value, period_start)
        return [UsageSummary.from_row(row) for row in rows]

    async def get_billing_cursor(
        self,
        caller: CallerContext,
        tenant_id: str,
        usage_type: UsageType | str,
    ) -> BillingCursor | None:
        """Operational view of a pair's cursor (service ``ledger:operate`` only)."""
        require(caller, tenant_id, QueryScope.BILLING_CURSOR)
        async with self._session(caller, tenant_id) as session:
            row = await BillingCursorRepository(session).get(tenant_id, UsageType(usage_type).value)
        return BillingCursor.from_row(row) if row is not None else None

    async def get_attribution(self, caller: CallerContext, tenant_id: str) -> TenantAttribution | None:
        """Return the tenant's attribution, or ``None`` for an organic tenant."""
        require(caller, tenant_id, QueryScope.TENANT_ATTRIBUTION)
        async with self._session(caller, tenant_id) as session:
            row = await TenantAttributionRepository(session).get(tenant_id)
        return _attribution_from_row(row) if row is not None else None

    async def aggregate_usage(
        self,
        caller: CallerContext,
        usage_type: UsageType | str,
        start: datetime,
        end: datetime,
    ) -> list[TenantUsageTotal]:
        """Per-tenant totals of current summaries for one usage type."""
        require(caller, None, QueryScope.CROSS_TENANT_AGGREGATE)
        usage_type = UsageType(usage_type)
        async with self._session(caller, None) as session:
            rows = await UsageSummaryRepository(session).totals_by_tenant(usage_type.value, start, end)
        unit = spec_for(usage_type).unit
        return [
            TenantUsageTotal(
                tenant_id=tenant_id,
                usage_type=usage_type,
                total_quantity=normalize_quantity(usage_type, total),
                unit=unit,
                periods=periods,
            )
            for tenant_id, total, periods in rows
        ]
