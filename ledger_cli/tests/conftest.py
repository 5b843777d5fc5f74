"""Shared fixtures for ledger CLI tests.

Commands run against a temporary SQLite file passed with
``--database-url``.  The ledger inside the CLI uses the wall clock, so
event times are chosen relative to now.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from ledger_core.state.database import get_engine, get_session_factory
from ledger_core.state.repository import TenantAttributionRepository


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'ledger-cli.db'}"


@pytest.fixture()
def usage_day() -> datetime:
    """Midnight UTC two days ago: closed, and still inside the default lookback."""
    return (datetime.now(UTC) - timedelta(days=2)).replace(hour=0, minute=0, second=0, microsecond=0)


@pytest.fixture()
def events_file(tmp_path: Path) -> Callable[[list[Any]], Path]:
    """Write JSONL lines (dicts are serialised, strings written verbatim)."""

    def _write(lines: list[Any]) -> Path:
        path = tmp_path / "events.jsonl"
        with path.open("w", encoding="utf-8") as fh:
            for line in lines:
                fh.write((line if isinstance(line, str) else json.dumps(line)) + "\n")
        return path

    return _write


@pytest.fixture()
def raw_event(usage_day: datetime) -> Callable[..., dict[str, Any]]:
    def _event(event_id: str, tenant_id: str = "tenant-a", **overrides: Any) -> dict[str, Any]:
        event = {
            "event_id": event_id,
            "tenant_id": tenant_id,
            "usage_type_raw": "llm.tokens",
            "quantity": 100,
            "unit": "tokens",
            "occurred_at": (usage_day + timedelta(hours=6)).isoformat(),
        }
        event.update(overrides)
        return event

    return _event


@pytest.fixture()
def store_attribution(db_url: str) -> Callable[..., None]:
    def _store(tenant_id: str, **fields: Any) -> None:
        async def _insert() -> None:
            engine = get_engine(db_url)
            try:
                factory = get_session_factory(engine)
                async with factory() as session, session.begin():
                    await TenantAttributionRepository(session).insert_if_absent(
                        {"tenant_id": tenant_id, "captured_at": datetime.now(UTC), **fields}
                    )
            finally:
                await engine.dispose()

        asyncio.run(_insert())

    return _store
