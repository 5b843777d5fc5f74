"""Shared fixtures for ledger API tests.

Requests go through the full middleware stack via ``httpx.ASGITransport``
against a temporary SQLite database.  The application's singletons
(session factory, ledger, provisioner, operator channel) are replaced
with dependency overrides.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

# Set JWT_SECRET before importing application modules so the
# AuthenticationMiddleware verifies with a deterministic secret.
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-ledger-tests")

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ledger_api.dependencies import (
    get_db_session,
    get_ledger,
    get_operator_channel,
    get_provisioner,
    get_session_factory,
)
from ledger_api.main import create_app
from ledger_api.security import TokenConfig, TokenManager
from ledger_core.alerts import OperatorAlert
from ledger_core.attribution.propagator import RegistrationRequest
from ledger_core.config import LedgerSettings
from ledger_core.ledger.reconciler import TenantUsageLedger, build_ledger
from ledger_core.state.repository import UsageEventRepository
from ledger_core.state.sqlite_adapter import create_local_tables, get_local_engine

# 2026-03-10 12:00 UTC.
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

_UNITS = {
    "capacity_tokens": "tokens",
    "api_complexity": "units",
    "bandwidth_bytes": "bytes",
    "stream_minutes": "minutes",
    "compute_seconds": "seconds",
}


class RecordingChannel:
    def __init__(self) -> None:
        self.alerts: list[OperatorAlert] = []

    async def notify(self, alert: OperatorAlert) -> None:
        self.alerts.append(alert)


class FakeProvisioner:
    """Idempotent in-memory provisioner keyed by registration id."""

    def __init__(self) -> None:
        self.tenants: dict[str, str] = {}
        self.fail_with: Exception | None = None

    async def create_tenant(self, request: RegistrationRequest) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        return self.tenants.setdefault(request.registration_id, f"T{len(self.tenants) + 1}")


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@pytest.fixture()
def token_manager() -> TokenManager:
    return TokenManager(TokenConfig(jwt_secret=SecretStr(os.environ["JWT_SECRET"])))


@pytest.fixture()
def tenant_headers(token_manager: TokenManager) -> Callable[[str], dict[str, str]]:
    def _headers(tenant_id: str) -> dict[str, str]:
        token = token_manager.create_token(f"user@{tenant_id}", kind="tenant", tenant_id=tenant_id)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def service_headers(token_manager: TokenManager) -> Callable[..., dict[str, str]]:
    def _headers(*grants: str, subject: str = "svc-test") -> dict[str, str]:
        token = token_manager.create_token(subject, kind="service", grants=list(grants))
        return {"Authorization": f"Bearer {token}"}

    return _headers


# ---------------------------------------------------------------------------
# Database and ledger
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    eng = get_local_engine(tmp_path / "ledger-api.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture()
def ledger_settings() -> LedgerSettings:
    return LedgerSettings(
        _env_file=None,  # type: ignore[call-arg]
        database_url="sqlite+aiosqlite:///:memory:",
        lookback_window=timedelta(hours=72),
        safety_margin=timedelta(minutes=5),
        max_retries=1,
        retry_backoff_base=0.01,
        retry_max_delay=0.02,
    )


@pytest.fixture()
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture()
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture()
def ledger(
    session_factory: async_sessionmaker[AsyncSession],
    ledger_settings: LedgerSettings,
    channel: RecordingChannel,
) -> TenantUsageLedger:
    return build_ledger(session_factory, ledger_settings, channel, clock=lambda: NOW)


@pytest.fixture()
def add_events(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[int]]:
    """Insert raw rows ``(event_id, tenant_id, usage_type, quantity, occurred_at)``."""

    async def _add(rows: Sequence[tuple[str, str, str, Any, datetime]]) -> int:
        payload = [
            {
                "event_id": event_id,
                "tenant_id": tenant_id,
                "usage_type": usage_type,
                "quantity": Decimal(str(quantity)),
                "unit": _UNITS[usage_type],
                "occurred_at": occurred_at,
                "observed_at": occurred_at,
            }
            for event_id, tenant_id, usage_type, quantity, occurred_at in rows
        ]
        async with session_factory() as session, session.begin():
            return await UsageEventRepository(session).insert_many(payload)

    return _add


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    session_factory: async_sessionmaker[AsyncSession],
    ledger: TenantUsageLedger,
    provisioner: FakeProvisioner,
    channel: RecordingChannel,
) -> FastAPI:
    """Create a FastAPI app with the ledger singletons overridden."""
    application = create_app()

    async def _override_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_db_session] = _override_db_session
    application.dependency_overrides[get_ledger] = lambda: ledger
    application.dependency_overrides[get_provisioner] = lambda: provisioner
    application.dependency_overrides[get_operator_channel] = lambda: channel
    return application


@pytest_asyncio.fixture()
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the app without running its lifespan."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
