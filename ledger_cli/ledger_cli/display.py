"""Rich output formatting for the ledger CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from ledger_core.attribution.capture import TenantAttribution
    from ledger_core.ledger.models import BillingCursor, ReconcileReport, UsageSummary
    from ledger_core.usage.registry import UsageType, UsageTypeSpec

# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "final": "green",
    "provisional": "yellow",
    "superseded": "dim",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _fmt_time(value: object) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if hasattr(value, "strftime") else str(value)


# ---------------------------------------------------------------------------
# Reconcile report
# ---------------------------------------------------------------------------


def display_reconcile_report(console: Console, report: ReconcileReport) -> None:
    """Render a per-pair table for one reconcile trigger."""
    duration = (report.finished_at - report.started_at).total_seconds() if report.finished_at else 0.0
    console.print(
        Panel(
            "\n".join(
                [
                    f"[bold]Pairs:[/bold]      {len(report.pairs)}",
                    f"[bold]Summaries:[/bold]  {report.summaries_written}",
                    f"[bold]Conflicts:[/bold]  {len(report.conflicts)}",
                    f"[bold]Failures:[/bold]   {len(report.failures)}",
                    f"[bold]Duration:[/bold]   {duration:.2f}s",
                ]
            ),
            title="Reconciliation",
            border_style="blue",
        )
    )

    if not report.pairs and not report.conflicts:
        console.print("[dim]Nothing was due for reconciliation.[/dim]")
        return

    table = Table(title="Pairs")
    table.add_column("Tenant", style="bold")
    table.add_column("Usage Type")
    table.add_column("Passes", justify="right")
    table.add_column("Summaries", justify="right")
    table.add_column("Corrections", justify="right")
    table.add_column("Watermark")
    table.add_column("Status")

    for pair in report.pairs:
        last = pair.passes[-1] if pair.passes else None
        if pair.error:
            status = f"[red]failed: {pair.error}[/red]"
        elif pair.caught_up:
            status = "[green]caught up[/green]"
        else:
            status = "[yellow]more pending[/yellow]"
        table.add_row(
            pair.tenant_id,
            pair.usage_type.value,
            str(len(pair.passes)),
            str(pair.summaries_written),
            str(pair.corrections),
            _fmt_time(last.watermark_after) if last else "-",
            status,
        )
    for label in report.conflicts:
        tenant_id, _, usage_type = label.partition("/")
        table.add_row(tenant_id, usage_type, "-", "-", "-", "-", "[yellow]in flight elsewhere[/yellow]")

    console.print(table)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def display_summaries(console: Console, summaries: list[UsageSummary], *, title: str = "Usage Summaries") -> None:
    """Render usage summaries, one row per period (or per version for history)."""
    if not summaries:
        console.print("[yellow]No summaries found.[/yellow]")
        return

    table = Table(title=title)
    table.add_column("Period Start")
    table.add_column("Period End")
    table.add_column("Total", justify="right")
    table.add_column("Unit")
    table.add_column("Events", justify="right")
    table.add_column("Pass", justify="right")
    table.add_column("Status")

    for summary in summaries:
        if summary.superseded_by is not None:
            status = "superseded"
        else:
            status = summary.status.value if summary.status is not None else "current"
        table.add_row(
            _fmt_time(summary.period_start),
            _fmt_time(summary.period_end),
            str(summary.total_quantity),
            summary.unit,
            str(summary.event_count),
            str(summary.pass_number),
            _coloured_status(status),
        )
    console.print(table)


def display_cursor(console: Console, cursor: BillingCursor) -> None:
    lines = [
        f"[bold]Tenant:[/bold]          {cursor.tenant_id}",
        f"[bold]Usage Type:[/bold]      {cursor.usage_type.value}",
        f"[bold]Watermark:[/bold]       {cursor.watermark.isoformat()}",
        f"[bold]Settled Before:[/bold]  {cursor.settled_before.isoformat()}",
        f"[bold]Lookback:[/bold]        {cursor.lookback_window}",
        f"[bold]Origin:[/bold]          {cursor.origin.isoformat()}",
        f"[bold]Passes:[/bold]          {cursor.pass_count}",
        f"[bold]Last Advanced:[/bold]   {cursor.last_advanced_at.isoformat()}",
    ]
    console.print(Panel("\n".join(lines), title="Billing Cursor", border_style="blue"))


def display_attribution(console: Console, tenant_id: str, attribution: TenantAttribution | None) -> None:
    if attribution is None:
        console.print(f"[dim]Tenant {tenant_id} has no recorded attribution (organic).[/dim]")
        return
    table = Table(title=f"Attribution: {tenant_id}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for field, value in attribution.model_dump(exclude={"tenant_id"}).items():
        if value is not None:
            table.add_row(field, _fmt_time(value) if field == "captured_at" else str(value))
    console.print(table)


def display_usage_types(
    console: Console,
    specs: list[UsageTypeSpec],
    raw_kinds: dict[UsageType, list[str]],
) -> None:
    """Render the usage type registry: unit, numeric kind and mapped raw kinds."""
    table = Table(title="Usage Types")
    table.add_column("Usage Type", style="bold")
    table.add_column("Unit")
    table.add_column("Kind")
    table.add_column("Raw Kinds", style="dim")
    for spec in specs:
        table.add_row(
            spec.usage_type.value,
            spec.unit,
            spec.kind.value,
            ", ".join(sorted(raw_kinds.get(spec.usage_type, []))),
        )
    console.print(table)
