"""FastAPI application entry-point for the tenant usage ledger."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from ledger_api import __version__
from ledger_api.config import APISettings, load_api_settings
from ledger_api.dependencies import (
    dispose_engine,
    dispose_provisioner,
    get_ledger_settings,
    get_session_factory,
    init_engine,
    init_ledger,
    init_provisioner,
)
from ledger_api.middleware.auth import AuthenticationMiddleware
from ledger_api.middleware.logging import RequestLoggingMiddleware
from ledger_api.middleware.prometheus import PrometheusMiddleware
from ledger_api.routers import attribution, health, reconciliation, registrations, usage
from ledger_api.routers import metrics as metrics_router
from ledger_api.services.reconciliation_scheduler import ReconciliationScheduler
from ledger_core.config import LedgerEnv
from ledger_core.errors import (
    AccessDenied,
    IncomparableUsageTypes,
    InvalidUsageEvent,
    ReconciliationConflict,
    ScanError,
    TenantProvisioningError,
    UnknownUsageType,
)

logger = logging.getLogger(__name__)


def _configure_structured_logging() -> None:
    from ledger_api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables for local SQLite or when ``API_AUTO_CREATE_TABLES``
      is set (production applies the Alembic migration instead).
    - Build the process-wide ledger and the tenant provisioner client.
    - Start the reconciliation scheduler.

    On shutdown the same components are torn down in reverse order.
    """
    settings: APISettings = load_api_settings()
    ledger_settings = get_ledger_settings()

    if settings.structured_logging or ledger_settings.structured_logging:
        _configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings, ledger_settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    if is_local or settings.auto_create_tables or ledger_settings.env == LedgerEnv.DEV:
        from ledger_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "auto-create")

    ledger = init_ledger(get_session_factory(), ledger_settings)
    logger.info("Ledger initialised (instance=%s)", ledger.instance_id)

    init_provisioner(settings)
    logger.info("Tenant provisioner client initialised (%s)", settings.provisioner_url)

    scheduler: ReconciliationScheduler | None = None
    if settings.scheduler_enabled:
        scheduler = ReconciliationScheduler(ledger, interval_seconds=settings.scheduler_interval_seconds)
        await scheduler.start()
    app.state.scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    await dispose_provisioner()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Tenant Usage Ledger",
        description="Usage ledger with first-touch attribution and late-event billing reconciliation.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (last added is outermost) --------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "X-Signup-Channel", "Accept"],
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(usage.router, prefix="/api/v1")
    app.include_router(attribution.router, prefix="/api/v1")
    app.include_router(reconciliation.router, prefix="/api/v1")
    app.include_router(registrations.router, prefix="/api/v1")

    # Outside /api/v1 versioning.
    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(AccessDenied)
    async def access_denied_handler(request: Request, exc: AccessDenied) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": exc.reason})

    @app.exception_handler(ReconciliationConflict)
    async def conflict_handler(request: Request, exc: ReconciliationConflict) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(UnknownUsageType)
    @app.exception_handler(InvalidUsageEvent)
    @app.exception_handler(IncomparableUsageTypes)
    async def usage_error_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ScanError)
    async def scan_error_handler(request: Request, exc: ScanError) -> JSONResponse:
        logger.error("Event store scan failed on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": "Event store unavailable"})

    @app.exception_handler(TenantProvisioningError)
    async def provisioning_error_handler(request: Request, exc: TenantProvisioningError) -> JSONResponse:
        logger.warning("Tenant provisioning failed on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=502, content={"detail": "Tenant provisioning failed"})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Full error in the log; safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn ledger_api.main:app``.
app = create_app()
