"""Shared fixtures for ledger_core tests.

Database tests run against a temporary SQLite file (not ``:memory:``) so
that concurrent sessions see the same data.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ledger_core.alerts import OperatorAlert
from ledger_core.config import LedgerSettings
from ledger_core.state.repository import UsageEventRepository
from ledger_core.state.sqlite_adapter import create_local_tables, get_local_engine

# Fixed reference instant used across ledger tests: 2026-03-10 12:00 UTC.
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

EventRow = tuple[str, str, str, Any, datetime]


class RecordingChannel:
    """Operator channel that keeps alerts in memory."""

    def __init__(self) -> None:
        self.alerts: list[OperatorAlert] = []

    async def notify(self, alert: OperatorAlert) -> None:
        self.alerts.append(alert)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    eng = get_local_engine(tmp_path / "ledger.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def settings() -> LedgerSettings:
    return LedgerSettings(
        _env_file=None,  # type: ignore[call-arg]
        database_url="sqlite+aiosqlite:///:memory:",
        lookback_window=timedelta(hours=72),
        safety_margin=timedelta(minutes=5),
        max_retries=2,
        retry_backoff_base=0.01,
        retry_max_delay=0.02,
        scan_page_size=100,
    )


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def add_events(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[int]]:
    """Insert raw rows ``(event_id, tenant_id, usage_type, quantity, occurred_at)``.

    ``observed_at`` defaults to ``occurred_at``.
    """

    async def _add(rows: Sequence[EventRow], observed_at: datetime | None = None) -> int:
        units = {
            "capacity_tokens": "tokens",
            "api_complexity": "units",
            "bandwidth_bytes": "bytes",
            "stream_minutes": "minutes",
            "compute_seconds": "seconds",
        }
        payload = [
            {
                "event_id": event_id,
                "tenant_id": tenant_id,
                "usage_type": usage_type,
                "quantity": Decimal(str(quantity)),
                "unit": units[usage_type],
                "occurred_at": occurred_at,
                "observed_at": observed_at or occurred_at,
            }
            for event_id, tenant_id, usage_type, quantity, occurred_at in rows
        ]
        async with session_factory() as session, session.begin():
            return await UsageEventRepository(session).insert_many(payload)

    return _add
