"""Deterministic, restartable reads over the raw usage event store.

The reader yields events for one (tenant, usage type) pair in
``(occurred_at, event_id)`` order using keyset pagination, one short
session per page.  It does not deduplicate: the same ``event_id`` may be
yielded more than once if the store holds redelivered copies.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_core.errors import InvalidUsageEvent, ScanIOError, ScanTimeout
from ledger_core.state.database import set_service_context
from ledger_core.state.repository import UsageEventRepository
from ledger_core.state.tables import UsageEventTable
from ledger_core.usage.events import TimeWindow, UsageEvent
from ledger_core.usage.registry import UsageType, normalize_quantity, spec_for

logger = logging.getLogger(__name__)


class UsageEventReader:
    """Reads classified usage events from the ``usage_events`` table.

    Parameters
    ----------
    session_factory:
        Factory for short-lived read sessions.
    page_size:
        Rows fetched per keyset page.
    page_timeout:
        Seconds allowed for a single page before :class:`ScanTimeout`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        page_size: int = 1000,
        page_timeout: float = 30.0,
    ) -> None:
        self._session_factory = session_factory
        self._page_size = page_size
        self._page_timeout = page_timeout

    async def read(
        self,
        tenant_id: str,
        usage_type: UsageType,
        window: TimeWindow,
        *,
        as_of: datetime | None = None,
    ) -> AsyncIterator[UsageEvent]:
        """Yield events with ``window.start <= occurred_at < window.end``.

        Parameters
        ----------
        as_of:
            When given, only events with ``observed_at <= as_of`` are
            returned, so two reads with the same *as_of* see the same data.

        Raises
        ------
        ScanIOError
            The store could not be read.
        ScanTimeout
            A page exceeded ``page_timeout``.
        """
        if window.is_empty:
            return
        usage_type = UsageType(usage_type)
        after: tuple[datetime, str, int] | None = None
        while True:
            rows = await self._fetch_page(tenant_id, usage_type, window, after, as_of)
            for row in rows:
                event = self._to_event(row, usage_type)
                if event is not None:
                    yield event
            if len(rows) < self._page_size:
                return
            last = rows[-1]
            after = (last.occurred_at, last.event_id, last.id)

    async def _fetch_page(
        self,
        tenant_id: str,
        usage_type: UsageType,
        window: TimeWindow,
        after: tuple[datetime, str, int] | None,
        as_of: datetime | None,
    ) -> list[UsageEventTable]:
        async def _query() -> list[UsageEventTable]:
            async with self._session_factory() as session:
                await set_service_context(session)
                repo = UsageEventRepository(session)
                return await repo.scan_page(
                    tenant_id,
                    usage_type.value,
                    window.start,
                    window.end,
                    after=after,
                    as_of=as_of,
                    limit=self._page_size,
                )

        try:
            return await asyncio.wait_for(_query(), timeout=self._page_timeout)
        except TimeoutError as exc:
            raise ScanTimeout(
                f"Page read for {tenant_id}/{usage_type.value} exceeded {self._page_timeout:.1f}s"
            ) from exc
        except (SQLAlchemyError, OSError) as exc:
            raise ScanIOError(f"Failed to read usage events for {tenant_id}/{usage_type.value}: {exc}") from exc

    @staticmethod
    def _to_event(row: UsageEventTable, usage_type: UsageType) -> UsageEvent | None:
        try:
            quantity = normalize_quantity(usage_type, row.quantity)
        except InvalidUsageEvent:
            logger.warning(
                "Skipping malformed stored event %s for %s/%s (quantity=%s)",
                row.event_id,
                row.tenant_id,
                usage_type.value,
                row.quantity,
            )
            return None
        return UsageEvent(
            event_id=row.event_id,
            tenant_id=row.tenant_id,
            usage_type=usage_type,
            quantity=quantity,
            unit=spec_for(usage_type).unit,
            occurred_at=row.occurred_at,
            observed_at=row.observed_at,
        )

    async def earliest_occurred_at(self, tenant_id: str, usage_type: UsageType) -> datetime | None:
        """Return the earliest ``occurred_at`` stored for the pair."""
        try:
            async with self._session_factory() as session:
                await set_service_context(session)
                return await UsageEventRepository(session).earliest_occurred_at(tenant_id, UsageType(usage_type).value)
        except (SQLAlchemyError, OSError) as exc:
            raise ScanIOError(f"Failed to read earliest event for {tenant_id}: {exc}") from exc

    async def active_pairs(self, since: datetime | None = None) -> list[tuple[str, UsageType]]:
        """Return (tenant, usage type) pairs with events observed since *since*."""
        try:
            async with self._session_factory() as session:
                await set_service_context(session)
                pairs = await UsageEventRepository(session).active_pairs(since)
        except (SQLAlchemyError, OSError) as exc:
            raise ScanIOError(f"Failed to list active usage pairs: {exc}") from exc
        return _known_pairs(pairs)


def _known_pairs(pairs: list[tuple[str, str]]) -> list[tuple[str, UsageType]]:
    known: list[tuple[str, UsageType]] = []
    for tenant_id, raw_type in pairs:
        try:
            known.append((tenant_id, UsageType(raw_type)))
        except ValueError:
            logger.warning("Ignoring stored events with unknown usage type %r for tenant %s", raw_type, tenant_id)
    return known
