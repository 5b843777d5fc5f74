"""Repository classes providing access to the ledger state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  Writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing, typically with ``async with session.begin()``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_core.state.tables import (
    BillingCursorTable,
    LedgerPassLockTable,
    TenantAttributionTable,
    UsageEventTable,
    UsageSummaryTable,
)

logger = logging.getLogger(__name__)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_insert_ignore(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique key for conflict detection.

    Returns
    -------
    The execution result; ``rowcount`` is 0 when the row already existed.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# UsageEventRepository
# ---------------------------------------------------------------------------


class UsageEventRepository:
    """Read access to ``usage_events`` plus bulk insert for the ingestion sink."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_many(self, rows: Sequence[dict[str, Any]]) -> int:
        """Append *rows* (column dicts) and return how many were written."""
        if not rows:
            return 0
        self._session.add_all([UsageEventTable(**row) for row in rows])
        await self._session.flush()
        return len(rows)

    async def scan_page(
        self,
        tenant_id: str,
        usage_type: str,
        start: datetime,
        end: datetime,
        *,
        after: tuple[datetime, str, int] | None = None,
        as_of: datetime | None = None,
        limit: int = 1000,
    ) -> list[UsageEventTable]:
        """Return one page of events in ``[start, end)`` in scan order.

        Scan order is ``(occurred_at, event_id, id)``; *after* is the key of
        the last row of the previous page.  *as_of* hides events observed
        later than that instant.
        """
        conditions = [
            UsageEventTable.tenant_id == tenant_id,
            UsageEventTable.usage_type == usage_type,
            UsageEventTable.occurred_at >= start,
            UsageEventTable.occurred_at < end,
        ]
        if as_of is not None:
            conditions.append(UsageEventTable.observed_at <= as_of)
        if after is not None:
            last_at, last_event_id, last_id = after
            conditions.append(
                or_(
                    UsageEventTable.occurred_at > last_at,
                    and_(UsageEventTable.occurred_at == last_at, UsageEventTable.event_id > last_event_id),
                    and_(
                        UsageEventTable.occurred_at == last_at,
                        UsageEventTable.event_id == last_event_id,
                        UsageEventTable.id > last_id,
                    ),
                )
            )
        stmt = (
            select(UsageEventTable)
            .where(*conditions)
            .order_by(UsageEventTable.occurred_at, UsageEventTable.event_id, UsageEventTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def earliest_occurred_at(self, tenant_id: str, usage_type: str) -> datetime | None:
        stmt = select(func.min(UsageEventTable.occurred_at)).where(
            UsageEventTable.tenant_id == tenant_id,
            UsageEventTable.usage_type == usage_type,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def active_pairs(self, since: datetime | None = None) -> list[tuple[str, str]]:
        """Return distinct (tenant, usage type) pairs with events observed since *since*."""
        stmt = select(UsageEventTable.tenant_id, UsageEventTable.usage_type).distinct()
        if since is not None:
            stmt = stmt.where(UsageEventTable.observed_at >= since)
        stmt = stmt.order_by(UsageEventTable.tenant_id, UsageEventTable.usage_type)
        result = await self._session.execute(stmt)
        return [(row.tenant_id, row.usage_type) for row in result.all()]

    async def latest_seq(self, tenant_id: str, usage_type: str) -> int:
        """Highest ``id`` stored for the pair, or 0 when it has no events."""
        stmt = select(func.max(UsageEventTable.id)).where(
            UsageEventTable.tenant_id == tenant_id,
            UsageEventTable.usage_type == usage_type,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none() or 0

    async def pairs_with_unseen_events(self) -> list[tuple[str, str]]:
        """Pairs with no cursor yet or with events the cursor has not accounted for.

        An event is unseen when it was ingested after the last pass took
        its ``event_seq`` snapshot, whatever its timestamps say, or when
        it is stamped as observed after the cursor last advanced.
        """
        stmt = (
            select(UsageEventTable.tenant_id, UsageEventTable.usage_type)
            .distinct()
            .outerjoin(
                BillingCursorTable,
                and_(
                    BillingCursorTable.tenant_id == UsageEventTable.tenant_id,
                    BillingCursorTable.usage_type == UsageEventTable.usage_type,
                ),
            )
            .where(
                or_(
                    BillingCursorTable.tenant_id.is_(None),
                    UsageEventTable.id > BillingCursorTable.event_seq,
                    UsageEventTable.observed_at > BillingCursorTable.last_advanced_at,
                )
            )
            .order_by(UsageEventTable.tenant_id, UsageEventTable.usage_type)
        )
        result = await self._session.execute(stmt)
        return [(row.tenant_id, row.usage_type) for row in result.all()]


# ---------------------------------------------------------------------------
# BillingCursorRepository
# ---------------------------------------------------------------------------


class BillingCursorRepository:
    """CRUD operations for ``billing_cursors``.

    ``advance`` refuses to move a watermark backwards.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str, usage_type: str) -> BillingCursorTable | None:
        stmt = select(BillingCursorTable).where(
            BillingCursorTable.tenant_id == tenant_id,
            BillingCursorTable.usage_type == usage_type,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        tenant_id: str,
        usage_type: str,
        watermark: datetime,
        lookback: timedelta,
    ) -> BillingCursorTable:
        """Insert a cursor if absent and return the stored row."""
        now = datetime.now(UTC)
        await _dialect_insert_ignore(
            self._session,
            BillingCursorTable,
            values={
                "tenant_id": tenant_id,
                "usage_type": usage_type,
                "watermark": watermark,
                "origin": watermark,
                "lookback_seconds": int(lookback.total_seconds()),
                "pass_count": 0,
                "event_seq": 0,
                "last_advanced_at": now,
                "created_at": now,
            },
            index_elements=["tenant_id", "usage_type"],
        )
        await self._session.flush()
        row = await self.get(tenant_id, usage_type)
        assert row is not None  # noqa: S101
        return row

    async def advance(
        self,
        tenant_id: str,
        usage_type: str,
        new_watermark: datetime,
        lookback: timedelta,
        advanced_at: datetime | None = None,
        event_seq: int | None = None,
    ) -> bool:
        """Move the watermark to *new_watermark* if that is not backwards.

        Also bumps ``pass_count`` and ``last_advanced_at``, and records
        *event_seq* when given.  Returns ``False`` (and changes nothing)
        when the stored watermark is already past *new_watermark*.
        """
        values: dict[str, Any] = {
            "watermark": new_watermark,
            "lookback_seconds": int(lookback.total_seconds()),
            "pass_count": BillingCursorTable.pass_count + 1,
            "last_advanced_at": advanced_at or datetime.now(UTC),
        }
        if event_seq is not None:
            values["event_seq"] = event_seq
        stmt = (
            update(BillingCursorTable)
            .where(
                BillingCursorTable.tenant_id == tenant_id,
                BillingCursorTable.usage_type == usage_type,
                BillingCursorTable.watermark <= new_watermark,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        advanced = (result.rowcount or 0) > 0  # type: ignore[attr-defined]
        if not advanced:
            logger.warning(
                "Refused to move watermark backwards for %s/%s to %s",
                tenant_id,
                usage_type,
                new_watermark.isoformat(),
            )
        return advanced

    async def list_all(self, tenant_id: str | None = None) -> list[BillingCursorTable]:
        stmt = select(BillingCursorTable)
        if tenant_id is not None:
            stmt = stmt.where(BillingCursorTable.tenant_id == tenant_id)
        stmt = stmt.order_by(BillingCursorTable.tenant_id, BillingCursorTable.usage_type)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def due(self, *, behind: datetime, stale_before: datetime) -> list[tuple[str, str]]:
        """Cursors whose watermark is before *behind* or that last advanced before *stale_before*."""
        stmt = (
            select(BillingCursorTable.tenant_id, BillingCursorTable.usage_type)
            .where(
                or_(
                    BillingCursorTable.watermark < behind,
                    BillingCursorTable.last_advanced_at < stale_before,
                )
            )
            .order_by(BillingCursorTable.tenant_id, BillingCursorTable.usage_type)
        )
        result = await self._session.execute(stmt)
        return [(row.tenant_id, row.usage_type) for row in result.all()]


# ---------------------------------------------------------------------------
# UsageSummaryRepository
# ---------------------------------------------------------------------------


class UsageSummaryRepository:
    """Append-only access to ``usage_summaries``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def current_for_range(
        self,
        tenant_id: str,
        usage_type: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[UsageSummaryTable]:
        """Return non-superseded summaries with ``start <= period_start < end``."""
        stmt = select(UsageSummaryTable).where(
            UsageSummaryTable.tenant_id == tenant_id,
            UsageSummaryTable.usage_type == usage_type,
            UsageSummaryTable.superseded_by.is_(None),
        )
        if start is not None:
            stmt = stmt.where(UsageSummaryTable.period_start >= start)
        if end is not None:
            stmt = stmt.where(UsageSummaryTable.period_start < end)
        stmt = stmt.order_by(UsageSummaryTable.period_start)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def totals_by_tenant(
        self,
        usage_type: str,
        start: datetime,
        end: datetime,
    ) -> list[tuple[str, Decimal, int]]:
        """Sum current summaries per tenant for one usage type: ``(tenant, total, periods)``."""
        stmt = (
            select(
                UsageSummaryTable.tenant_id,
                func.sum(UsageSummaryTable.total_quantity).label("total"),
                func.count().label("periods"),
            )
            .where(
                UsageSummaryTable.usage_type == usage_type,
                UsageSummaryTable.superseded_by.is_(None),
                UsageSummaryTable.period_start >= start,
                UsageSummaryTable.period_start < end,
            )
            .group_by(UsageSummaryTable.tenant_id)
            .order_by(UsageSummaryTable.tenant_id)
        )
        result = await self._session.execute(stmt)
        return [(row.tenant_id, Decimal(str(row.total or 0)), int(row.periods)) for row in result.all()]

    async def history(self, tenant_id: str, usage_type: str, period_start: datetime) -> list[UsageSummaryTable]:
        """Return every retained version of one period, oldest pass first."""
        stmt = (
            select(UsageSummaryTable)
            .where(
                UsageSummaryTable.tenant_id == tenant_id,
                UsageSummaryTable.usage_type == usage_type,
                UsageSummaryTable.period_start == period_start,
            )
            .order_by(UsageSummaryTable.pass_number)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def insert(
        self,
        *,
        summary_id: str,
        tenant_id: str,
        usage_type: str,
        period_start: datetime,
        period_end: datetime,
        total_quantity: Decimal | int,
        unit: str,
        event_count: int,
        event_digest: str,
        pass_number: int,
        reconciled_through: datetime,
    ) -> UsageSummaryTable:
        row = UsageSummaryTable(
            summary_id=summary_id,
            tenant_id=tenant_id,
            usage_type=usage_type,
            period_start=period_start,
            period_end=period_end,
            total_quantity=Decimal(total_quantity),
            unit=unit,
            event_count=event_count,
            event_digest=event_digest,
            pass_number=pass_number,
            superseded_by=None,
            reconciled_through=reconciled_through,
            created_at=datetime.now(UTC),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def mark_superseded(self, summary_id: str, superseded_by: str) -> bool:
        """Point *summary_id* at its replacement; only ever set once."""
        stmt = (
            update(UsageSummaryTable)
            .where(
                UsageSummaryTable.summary_id == summary_id,
                UsageSummaryTable.superseded_by.is_(None),
            )
            .values(superseded_by=superseded_by)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def prune_superseded(
        self,
        tenant_id: str,
        usage_type: str,
        period_start: datetime,
        keep: int,
    ) -> int:
        """Delete superseded versions of one period beyond the newest *keep*.

        The current (non-superseded) version is never deleted.  Returns the
        number of rows removed.
        """
        stmt = (
            select(UsageSummaryTable.summary_id)
            .where(
                UsageSummaryTable.tenant_id == tenant_id,
                UsageSummaryTable.usage_type == usage_type,
                UsageSummaryTable.period_start == period_start,
                UsageSummaryTable.superseded_by.is_not(None),
            )
            .order_by(UsageSummaryTable.pass_number.desc())
            .offset(keep)
        )
        doomed = list((await self._session.execute(stmt)).scalars().all())
        if not doomed:
            return 0
        await self._session.execute(
            delete(UsageSummaryTable)
            .where(UsageSummaryTable.summary_id.in_(doomed))
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return len(doomed)


# ---------------------------------------------------------------------------
# TenantAttributionRepository
# ---------------------------------------------------------------------------


class TenantAttributionRepository:
    """Write-once storage for ``tenant_attribution``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert_if_absent(self, values: dict[str, Any]) -> bool:
        """Insert the attribution row unless one exists for the tenant.

        Returns ``True`` when a row was written, ``False`` when the tenant
        already had attribution (the existing row is left untouched).
        """
        result = await _dialect_insert_ignore(
            self._session,
            TenantAttributionTable,
            values={**values, "created_at": datetime.now(UTC)},
            index_elements=["tenant_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get(self, tenant_id: str) -> TenantAttributionTable | None:
        stmt = select(TenantAttributionTable).where(TenantAttributionTable.tenant_id == tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# PassLockRepository
# ---------------------------------------------------------------------------


class PassLockRepository:
    """Row-based exclusive locks per (tenant, usage type) with a TTL.

    ``acquire`` reaps an expired lock and then inserts with
    ``ON CONFLICT DO NOTHING``, so check-and-insert is atomic.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def acquire(self, tenant_id: str, usage_type: str, locked_by: str, ttl_seconds: int) -> bool:
        now = datetime.now(UTC)
        await self._session.execute(
            delete(LedgerPassLockTable).where(
                LedgerPassLockTable.tenant_id == tenant_id,
                LedgerPassLockTable.usage_type == usage_type,
                LedgerPassLockTable.expires_at < now,
            )
        )
        result = await _dialect_insert_ignore(
            self._session,
            LedgerPassLockTable,
            values={
                "tenant_id": tenant_id,
                "usage_type": usage_type,
                "locked_by": locked_by,
                "locked_at": now,
                "expires_at": now + timedelta(seconds=ttl_seconds),
            },
            index_elements=["tenant_id", "usage_type"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def release(self, tenant_id: str, usage_type: str, locked_by: str) -> None:
        await self._session.execute(
            delete(LedgerPassLockTable).where(
                LedgerPassLockTable.tenant_id == tenant_id,
                LedgerPassLockTable.usage_type == usage_type,
                LedgerPassLockTable.locked_by == locked_by,
            )
        )
        await self._session.flush()

    async def holder(self, tenant_id: str, usage_type: str) -> str | None:
        """Return the owner of a live lock, or ``None``."""
        stmt = select(LedgerPassLockTable.locked_by).where(
            LedgerPassLockTable.tenant_id == tenant_id,
            LedgerPassLockTable.usage_type == usage_type,
            LedgerPassLockTable.expires_at >= datetime.now(UTC),
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()
