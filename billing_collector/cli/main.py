"""
CLI interface for the billing collector.

Provides command-line access to seeding, billing runs and the fact ledger.
"""

import sqlite3
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from billing_collector.config.loader import Settings, load_settings, load_usage_snapshot
from billing_collector.core.catalog import Catalog
from billing_collector.core.logging import setup_logging
from billing_collector.core.pipeline import ReconciliationPipeline, RunReport
from billing_collector.core.providers import (
    CLOUDSCALE_PROVIDER,
    CloudscaleObjectStorageAdapter,
    DBaaSAdapter,
    ObjectStorageAdapter,
    daily_billing_date,
    hourly_billing_date
)
from billing_collector.core.tokens import UnsupportedCardinality
from billing_collector.storage.repository import (
    CatalogSeedFailure,
    ReconciliationStore,
    get_best_matching_discount,
    get_best_matching_product,
    initialize_schema
)
from billing_collector.storage.db import get_connection

app = typer.Typer()
console = Console()

# Record failures are non-failing unless --strict is given
EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

KINDS = ("objectstorage", "dbaas", "cloudscale")


def _report_to_exit_code(report: RunReport, strict: bool) -> int:
    """Convert a run report to a CLI exit code."""
    if report.cancelled or (strict and report.failures):
        return EXIT_CODE_FAIL
    return EXIT_CODE_PASS


def _parse_datetime(value: str, option: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Error:[/] {option} must be an ISO 8601 timestamp, got {value!r}")
        sys.exit(EXIT_CODE_FAIL)


def _store(settings: Settings) -> ReconciliationStore:
    return ReconciliationStore(settings.load_catalog(), db_path=settings.database)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML settings file"
    )
):
    """Billing collector CLI."""
    try:
        settings = load_settings(config) if config else Settings()
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading settings:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    setup_logging(settings.log_level, settings.log_format)
    ctx.obj = settings
    if ctx.invoked_subcommand is None:
        console.print("Billing collector - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the billing database."""
    settings: Settings = ctx.obj
    try:
        initialize_schema(settings.database)
    except sqlite3.Error as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Database initialized at {settings.database}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def seed(ctx: typer.Context):
    """Seed products, discounts and queries of the catalog."""
    settings: Settings = ctx.obj
    try:
        store = _store(settings)
        store.initialize()
        counts = store.seed()
    except (FileNotFoundError, ValueError, yaml.YAMLError, CatalogSeedFailure) as e:
        console.print(f"[red]Error seeding catalog:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] Catalog seeded: {counts['created']} created, "
        f"{counts['updated']} updated, {counts['unchanged']} unchanged"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def run(
    ctx: typer.Context,
    snapshot: str = typer.Argument(..., help="YAML or JSON usage snapshot"),
    kind: str = typer.Option(
        "objectstorage",
        "--kind",
        "-k",
        help="Kind of resource the snapshot holds: objectstorage, dbaas or cloudscale"
    ),
    billing_date: Optional[str] = typer.Option(
        None,
        "--billing-date",
        "-d",
        help="ISO 8601 instant to bill; defaults to the provider's billing hour"
    ),
    billing_hour: Optional[int] = typer.Option(
        None,
        "--billing-hour",
        help="Current hour of the day, spreads daily storage over the remaining hours"
    ),
    unit: str = typer.Option(
        "GBDay",
        "--unit",
        "-u",
        help="Billing unit of object storage usage"
    ),
    strict: bool = typer.Option(
        False,
        "--strict",
        "-s",
        help="Exit with error code if any record fails"
    )
):
    """
    Reconcile a usage snapshot into the fact ledger.

    The catalog is seeded first. A seeding failure aborts the run, records
    that fail afterwards are reported and skipped.
    """
    settings: Settings = ctx.obj
    if kind not in KINDS:
        console.print(f"[red]Error:[/] --kind must be one of: {', '.join(KINDS)}")
        sys.exit(EXIT_CODE_FAIL)
    if billing_hour is None:
        billing_hour = settings.billing_hour

    now = datetime.now(timezone.utc)
    try:
        usage = load_usage_snapshot(snapshot)
        if kind == "objectstorage":
            adapter = ObjectStorageAdapter(unit=unit, billing_hour=billing_hour, provider=settings.provider)
            default_date = daily_billing_date(now, timezone=settings.daily_timezone())
        elif kind == "cloudscale":
            # Cloudscale reports bucket usage per calendar day
            settings = replace(settings, provider=CLOUDSCALE_PROVIDER)
            adapter = CloudscaleObjectStorageAdapter()
            default_date = daily_billing_date(now, billing_hour=0, timezone=settings.daily_timezone())
        else:
            adapter = DBaaSAdapter(provider=settings.provider)
            default_date = hourly_billing_date(now)
        store = _store(settings)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    date = _parse_datetime(billing_date, "--billing-date") if billing_date else default_date

    try:
        store.initialize()
        report = ReconciliationPipeline(store, adapter).run(
            usage.observations,
            usage.resolver(settings.organization_override),
            date
        )
    except CatalogSeedFailure as e:
        console.print(f"[red]Run aborted:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_run_report(report, date)
    sys.exit(_report_to_exit_code(report, strict))


@app.command()
def facts(
    ctx: typer.Context,
    since: Optional[str] = typer.Option(None, "--since", help="Earliest hour to list"),
    until: Optional[str] = typer.Option(None, "--until", help="Latest hour to list")
):
    """List recorded facts."""
    settings: Settings = ctx.obj
    start = _parse_datetime(since, "--since") if since else None
    end = _parse_datetime(until, "--until") if until else None

    store = ReconciliationStore(Catalog(), db_path=settings.database)
    try:
        exported = store.exported_facts(since=start, until=end)
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            console.print("\n[bold yellow]No billing data found[/]")
            console.print("\nRun `billing-collector init` and `billing-collector run` first.\n")
            sys.exit(EXIT_CODE_PASS)
        raise

    if not exported:
        console.print("[dim]No facts recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Billing Facts")
    table.add_column("Time range")
    table.add_column("Tenant")
    table.add_column("Category")
    table.add_column("Product")
    table.add_column("Query")
    table.add_column("Quantity", justify="right")
    for fact in exported:
        table.add_row(
            fact.time_range,
            fact.tenant_source,
            fact.category_source,
            fact.product_source,
            fact.query_name,
            _format_quantity(fact.quantity)
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def match(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Fully specified source string"),
    at: Optional[str] = typer.Option(None, "--at", help="Instant the rules must be effective at")
):
    """Show which seeded product and discount a source string resolves to."""
    settings: Settings = ctx.obj
    when = _parse_datetime(at, "--at") if at else datetime.now(timezone.utc)

    if not Path(settings.database).exists():
        console.print("\n[bold yellow]No billing data found[/]")
        console.print("\nRun `billing-collector seed` first.\n")
        sys.exit(EXIT_CODE_FAIL)

    conn = get_connection(settings.database)
    try:
        product = get_best_matching_product(conn, source, when)
        discount = get_best_matching_discount(conn, source, when)
    except UnsupportedCardinality as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except sqlite3.OperationalError as e:
        console.print(f"[red]Error:[/] {str(e)}. Run `billing-collector seed` first.")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        conn.close()

    console.print(f"\n[bold]Source:[/bold] {source}")
    if product is None:
        console.print("Product: [yellow]no match[/]")
    else:
        _, rule = product
        console.print(f"Product: {rule.source} ({rule.amount} per {rule.unit}, target {rule.target})")
    if discount is None:
        console.print("Discount: [yellow]no match[/]")
    else:
        _, rule = discount
        console.print(f"Discount: {rule.source} ({rule.discount:.0%})")

    sys.exit(EXIT_CODE_PASS if product is not None and discount is not None else EXIT_CODE_FAIL)


def _format_quantity(quantity: float) -> str:
    """Format quantities with thousands separators, dropping trailing zeros."""
    return f"{quantity:,.6f}".rstrip("0").rstrip(".")


def _display_run_report(report: RunReport, billing_date: datetime):
    """Display the outcome of a billing run."""
    console.print("\n[bold]Billing Run Result[/bold]")
    console.print("-" * 40)
    console.print(f"Billing date: {billing_date.isoformat()}")
    console.print(f"Aggregated records: {report.aggregated}")
    console.print(f"Facts created: {report.created}")
    console.print(f"Facts advanced: {report.advanced}")
    console.print(f"Facts not advanced: {report.not_advanced}")

    if report.cancelled:
        console.print(f"\n[bold yellow]Run cancelled[/], {report.skipped} records skipped")

    if report.failures:
        console.print(f"\n[bold red]Failed records:[/] {len(report.failures)}")
        for failure in report.failures:
            console.print(f"  {failure.organization}: {failure.reason}")


if __name__ == "__main__":
    app()
