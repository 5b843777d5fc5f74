"""Ledger CLI application -- Typer-based operator interface.

Provides commands for schema setup, reconciliation, ledger inspection and
bulk event ingestion against the ledger database directly.  Human-readable
output goes to *stderr* via Rich; ``--json`` writes machine-readable
output to *stdout* so that pipelines can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_cli.display import (
    display_attribution,
    display_cursor,
    display_reconcile_report,
    display_summaries,
    display_usage_types,
)
from ledger_core.access.gate import CallerContext, ServiceGrant
from ledger_core.config import LedgerSettings, load_settings
from ledger_core.usage.events import ensure_utc
from ledger_core.usage.registry import UsageType

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="ledger",
    help="Tenant usage ledger - attribution capture and billing reconciliation",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None

# The CLI acts as the ledger operator.
_OPERATOR = CallerContext.for_service("ledger-cli", {grant.value for grant in ServiceGrant})


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Ledger database URL (defaults to LEDGER_DATABASE_URL).",
        envvar="LEDGER_DATABASE_URL",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> LedgerSettings:
    if _database_url:
        return load_settings(database_url=_database_url)
    return load_settings()


@asynccontextmanager
async def _session_factory(settings: LedgerSettings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    from ledger_core.state.database import get_engine, get_session_factory

    engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    try:
        yield get_session_factory(engine)
    finally:
        await engine.dispose()


def _run(work: Callable[[async_sessionmaker[AsyncSession]], Awaitable[T]]) -> T:
    """Run *work* against a fresh engine, mapping database errors to exit code 3."""
    settings = _settings()

    async def _main() -> T:
        async with _session_factory(settings) as factory:
            return await work(factory)

    try:
        return asyncio.run(_main())
    except SQLAlchemyError as exc:
        console.print(f"[red]Database error: {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _parse_time(value: str | None, label: str) -> datetime | None:
    """Parse an ISO-8601 date or datetime; naive values are UTC."""
    if value is None:
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value))
    except ValueError as exc:
        console.print(f"[red]Invalid {label} '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _parse_usage_type(value: str) -> UsageType:
    try:
        return UsageType(value)
    except ValueError as exc:
        known = ", ".join(t.value for t in UsageType)
        console.print(f"[red]Unknown usage type '{value}'. Known: {known}[/red]")
        raise typer.Exit(code=3) from exc


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the ledger schema.

    SQLite databases get the ORM tables directly; PostgreSQL databases are
    migrated to the latest Alembic revision.
    """
    settings = _settings()
    if settings.database_url.startswith("sqlite"):
        from ledger_core.state.database import get_engine
        from ledger_core.state.sqlite_adapter import create_local_tables

        async def _create() -> None:
            engine = get_engine(settings.database_url)
            try:
                await create_local_tables(engine)
            finally:
                await engine.dispose()

        asyncio.run(_create())
        mode = "tables"
    else:
        from ledger_core.state.migrations import upgrade_to_head

        try:
            upgrade_to_head(settings.database_url)
        except SQLAlchemyError as exc:
            console.print(f"[red]Migration failed: {exc}[/red]")
            raise typer.Exit(code=3) from exc
        mode = "migrations"

    if _json_output:
        _write_json({"status": "ok", "mode": mode})
    else:
        console.print(f"[green]Ledger schema ready ({mode}).[/green]")


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


@app.command()
def reconcile(
    tenant: str | None = typer.Option(None, "--tenant", "-t", help="Reconcile only this tenant."),
    usage_type: str | None = typer.Option(None, "--usage-type", "-u", help="Reconcile only this usage type."),
) -> None:
    """Reconcile every due pair, or the pairs selected by the options.

    Exits with code 1 when a selected pair is already being reconciled
    elsewhere and with code 2 when any pair failed.
    """
    from ledger_core.ledger.reconciler import build_ledger

    wanted = _parse_usage_type(usage_type) if usage_type else None
    settings = _settings()

    async def _reconcile(factory: async_sessionmaker[AsyncSession]) -> Any:
        ledger = build_ledger(factory, settings)
        return await ledger.reconcile(tenant_id=tenant, usage_type=wanted)

    report = _run(_reconcile)

    if _json_output:
        _write_json(report.model_dump(mode="json"))
    else:
        display_reconcile_report(console, report)

    if report.failures:
        raise typer.Exit(code=2)
    if report.conflicts and tenant is not None:
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# summaries
# ---------------------------------------------------------------------------


@app.command()
def summaries(
    tenant: str = typer.Argument(..., help="Tenant id."),
    usage_type: str = typer.Option(..., "--usage-type", "-u", help="Usage type to read."),
    start: str | None = typer.Option(None, "--start", help="Inclusive lower bound on period start (ISO-8601)."),
    end: str | None = typer.Option(None, "--end", help="Exclusive upper bound on period start (ISO-8601)."),
    history: str | None = typer.Option(
        None,
        "--history",
        help="Show every retained version of the period starting at this instant instead.",
    ),
) -> None:
    """Show a tenant's usage summaries."""
    from ledger_core.ledger.queries import LedgerQueries

    wanted = _parse_usage_type(usage_type)
    start_at = _parse_time(start, "start")
    end_at = _parse_time(end, "end")
    history_at = _parse_time(history, "history")

    async def _read(factory: async_sessionmaker[AsyncSession]) -> Any:
        queries = LedgerQueries(factory)
        if history_at is not None:
            return await queries.get_summary_history(_OPERATOR, tenant, wanted, history_at)
        return await queries.get_usage_summaries(_OPERATOR, tenant, wanted, start_at, end_at)

    rows = _run(_read)

    if _json_output:
        _write_json([row.model_dump(mode="json") for row in rows])
    else:
        title = f"History: {tenant} / {wanted.value}" if history_at else f"Usage: {tenant} / {wanted.value}"
        display_summaries(console, rows, title=title)


# ---------------------------------------------------------------------------
# cursor
# ---------------------------------------------------------------------------


@app.command()
def cursor(
    tenant: str = typer.Argument(..., help="Tenant id."),
    usage_type: str = typer.Argument(..., help="Usage type."),
) -> None:
    """Show the billing cursor of one (tenant, usage type) pair."""
    from ledger_core.ledger.queries import LedgerQueries

    wanted = _parse_usage_type(usage_type)

    async def _read(factory: async_sessionmaker[AsyncSession]) -> Any:
        return await LedgerQueries(factory).get_billing_cursor(_OPERATOR, tenant, wanted)

    row = _run(_read)
    if row is None:
        console.print(f"[yellow]No billing cursor for {tenant}/{wanted.value}.[/yellow]")
        raise typer.Exit(code=1)

    if _json_output:
        payload = row.model_dump(mode="json")
        payload["settled_before"] = row.settled_before.isoformat()
        _write_json(payload)
    else:
        display_cursor(console, row)


# ---------------------------------------------------------------------------
# attribution
# ---------------------------------------------------------------------------


@app.command()
def attribution(tenant: str = typer.Argument(..., help="Tenant id.")) -> None:
    """Show a tenant's first-touch attribution."""
    from ledger_core.ledger.queries import LedgerQueries

    async def _read(factory: async_sessionmaker[AsyncSession]) -> Any:
        return await LedgerQueries(factory).get_attribution(_OPERATOR, tenant)

    row = _run(_read)
    if _json_output:
        _write_json(row.model_dump(mode="json") if row is not None else None)
    else:
        display_attribution(console, tenant, row)


# ---------------------------------------------------------------------------
# usage-types
# ---------------------------------------------------------------------------


@app.command("usage-types")
def usage_types() -> None:
    """List the usage types and the raw event kinds mapped to each."""
    from ledger_core.usage.registry import UsageTypeRegistry, all_specs

    registry = UsageTypeRegistry()
    specs = all_specs()
    raw_kinds = {spec.usage_type: registry.raw_kinds_for(spec.usage_type) for spec in specs}

    if _json_output:
        _write_json(
            [
                {
                    "usage_type": spec.usage_type.value,
                    "unit": spec.unit,
                    "kind": spec.kind.value,
                    "raw_kinds": raw_kinds[spec.usage_type],
                }
                for spec in specs
            ]
        )
    else:
        display_usage_types(console, specs, raw_kinds)


# ---------------------------------------------------------------------------
# ingest
# ---------------------------------------------------------------------------


@app.command()
def ingest(
    path: Path = typer.Argument(
        ...,
        help="JSONL file of raw usage events.",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
    batch_size: int = typer.Option(1000, "--batch-size", min=1, help="Events buffered per database flush."),
) -> None:
    """Classify raw usage events from a JSONL file and append them to the event store.

    Unparseable lines, unknown usage kinds and invalid quantities are
    rejected and counted; everything else is written.
    """
    from ledger_core.usage.collector import DatabaseSink, IngestionCollector
    from ledger_core.usage.events import RawUsageEvent
    from ledger_core.usage.registry import UsageTypeRegistry

    raws: list[RawUsageEvent] = []
    malformed = 0
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            try:
                raws.append(RawUsageEvent.model_validate_json(line))
            except ValidationError as exc:
                malformed += 1
                logger.warning("Skipping malformed line %d: %s", lineno, exc.errors()[0].get("msg"))

    async def _ingest(factory: async_sessionmaker[AsyncSession]) -> dict[str, int]:
        collector = IngestionCollector(UsageTypeRegistry(), DatabaseSink(factory), max_buffer_size=batch_size)
        await collector.ingest_many(raws)
        await collector.flush()
        return collector.stats()

    stats = _run(_ingest)
    stats["malformed"] = malformed

    if _json_output:
        _write_json(stats)
    else:
        rejected = sum(v for k, v in stats.items() if k.startswith("rejected_"))
        console.print(
            f"[green]Ingested {stats['accepted']} event(s)[/green] "
            f"([yellow]{rejected} rejected[/yellow], [dim]{malformed} malformed[/dim])"
        )


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", help="Bind address."),
    port: int = typer.Option(8000, "--port", help="Bind port."),
) -> None:
    """Run the ledger HTTP API with uvicorn."""
    import uvicorn

    uvicorn.run("ledger_api.main:app", host=host, port=port)
