"""FastAPI dependency injection for settings, sessions, the ledger and callers."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ledger_api.config import APISettings, load_api_settings
from ledger_core.access.gate import CallerContext
from ledger_core.alerts import LoggingOperatorChannel, OperatorChannel
from ledger_core.attribution.propagator import AttributionPropagator, HttpTenantProvisioner, TenantProvisioner
from ledger_core.config import LedgerSettings, load_settings
from ledger_core.ledger.queries import LedgerQueries
from ledger_core.ledger.reconciler import TenantUsageLedger, build_ledger
from ledger_core.state.database import get_engine

logger = logging.getLogger(__name__)

_NOT_INITIALISED = "Database engine has not been initialised. Ensure init_engine() is called during application startup."

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_ledger_settings_cache: LedgerSettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_ledger_settings() -> LedgerSettings:
    """Return the cached :class:`LedgerSettings` singleton."""
    global _ledger_settings_cache  # noqa: PLW0603
    if _ledger_settings_cache is None:
        _ledger_settings_cache = load_settings()
    return _ledger_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
LedgerSettingsDep = Annotated[LedgerSettings, Depends(get_ledger_settings)]

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings, ledger_settings: LedgerSettings | None = None) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    ledger_settings = ledger_settings or get_ledger_settings()
    _engine = get_engine(
        settings.database_url,
        pool_size=ledger_settings.database_pool_size,
        max_overflow=ledger_settings.database_max_overflow,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(_NOT_INITIALISED)
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` without tenant context, for probes only.

    Ledger reads and writes manage their own sessions through the session
    factory so that the tenant or service context is set per transaction.
    """
    if _session_factory is None:
        raise RuntimeError(_NOT_INITIALISED)
    session = _session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]
HealthSessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Ledger components
# ---------------------------------------------------------------------------

_operator_channel: OperatorChannel | None = None
_ledger: TenantUsageLedger | None = None
_provisioner: HttpTenantProvisioner | None = None


def get_operator_channel() -> OperatorChannel:
    global _operator_channel  # noqa: PLW0603
    if _operator_channel is None:
        _operator_channel = LoggingOperatorChannel()
    return _operator_channel


def init_ledger(session_factory: async_sessionmaker[AsyncSession], ledger_settings: LedgerSettings) -> TenantUsageLedger:
    """Build the process-wide ledger.

    One instance per process so that its in-process pass locks see every
    trigger (HTTP and scheduler alike).
    """
    global _ledger  # noqa: PLW0603
    _ledger = build_ledger(session_factory, ledger_settings, get_operator_channel())
    return _ledger


def get_ledger() -> TenantUsageLedger:
    if _ledger is None:
        raise RuntimeError("Ledger has not been initialised. Ensure init_ledger() is called during application startup.")
    return _ledger


def init_provisioner(settings: APISettings) -> HttpTenantProvisioner:
    """Create the HTTP client for the tenant provisioning service."""
    global _provisioner  # noqa: PLW0603
    _provisioner = HttpTenantProvisioner(
        settings.provisioner_url,
        timeout=settings.provisioner_timeout,
        service_token=settings.provisioner_token.get_secret_value() or None,
    )
    return _provisioner


async def dispose_provisioner() -> None:
    global _provisioner  # noqa: PLW0603
    if _provisioner is not None:
        await _provisioner.close()
        _provisioner = None


def get_provisioner() -> TenantProvisioner:
    if _provisioner is None:
        raise RuntimeError("Tenant provisioner has not been initialised.")
    return _provisioner


def get_queries(session_factory: SessionFactoryDep) -> LedgerQueries:
    return LedgerQueries(session_factory)


def get_propagator(
    session_factory: SessionFactoryDep,
    provisioner: Annotated[TenantProvisioner, Depends(get_provisioner)],
    channel: Annotated[OperatorChannel, Depends(get_operator_channel)],
) -> AttributionPropagator:
    return AttributionPropagator(session_factory, provisioner, channel)


LedgerDep = Annotated[TenantUsageLedger, Depends(get_ledger)]
QueriesDep = Annotated[LedgerQueries, Depends(get_queries)]
PropagatorDep = Annotated[AttributionPropagator, Depends(get_propagator)]

# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


def get_caller(request: Request) -> CallerContext:
    """Return the caller identity the auth middleware attached to *request*."""
    caller = getattr(request.state, "caller", None)
    if not isinstance(caller, CallerContext):
        raise HTTPException(status_code=401, detail="Authentication required")
    return caller


CallerDep = Annotated[CallerContext, Depends(get_caller)]
