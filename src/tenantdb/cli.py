"""
Command-line interface for tenantdb.
"""

import asyncio
import json
import sys
from functools import wraps
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import LoggingConfig, TenantDBConfig, setup_logging
from .database.connection import ConnectionConfig, connect, verify_connection
from .database.introspection import SchemaIntrospector
from .exceptions import TenantDBError
from .provisioning import FinalVerifier, ProvisioningReport, RunOptions, SchemaOrchestrator
from .schema import DDLParser, SchemaReconciler, SyncResult, VersionRegistry
from .schema.sources import load_sources, load_sql_file


console = Console()


def handle_errors(func):
    """Decorator to handle errors gracefully in CLI commands."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except TenantDBError as e:
            # Error details contain [key=value] text that is not markup
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            sys.exit(1)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted by user[/yellow]")
            sys.exit(130)
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {escape(str(e))}")
            if "--debug" in sys.argv:
                import traceback
                traceback.print_exc()
            sys.exit(1)
    return wrapper


def config_option(func):
    return click.option(
        "--config",
        "-c",
        type=click.Path(exists=True),
        default=None,
        help="Configuration file path (defaults to TENANTDB_* environment)",
    )(func)


def dsn_option(func):
    return click.option(
        "--dsn",
        default=None,
        help="PostgreSQL URL, overrides the configured database",
    )(func)


def _load_config(config: Optional[str]) -> TenantDBConfig:
    """Load configuration and apply its logging settings."""
    tenant_config = TenantDBConfig.from_yaml(config) if config else TenantDBConfig()
    ctx = click.get_current_context(silent=True)
    debug = bool(ctx and ctx.find_root().obj and ctx.find_root().obj.get("debug"))
    setup_logging(tenant_config.logging, debug=debug or tenant_config.debug)
    return tenant_config


@click.group()
@click.version_option(__version__)
@click.option(
    "--debug", is_flag=True, help="Enable debug mode"
)
@click.pass_context
def main(ctx, debug):
    """tenantdb: tenant schema provisioning and drift reconciliation."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default="tenantdb.yaml",
    help="Output configuration file path",
)
@handle_errors
def init(output: str):
    """Initialize a new tenantdb configuration file."""
    if Path(output).exists():
        if not click.confirm(f"Configuration file {output} already exists. Overwrite?"):
            return

    _create_default_config().to_yaml(output)
    console.print(f"[green]✓[/green] Configuration file created: {output}")
    console.print("\n[yellow]Next steps:[/yellow]")
    console.print("1. Set POSTGRES_HOST, POSTGRES_DB, POSTGRES_USER and POSTGRES_PASSWORD")
    console.print(f"2. Run: tenantdb validate-config -c {output}")
    console.print(f"3. Run: tenantdb provision -c {output}")


@main.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="Configuration file path",
)
@handle_errors
def validate_config(config: str):
    """Validate configuration file and the schema sources it names."""
    console.print(f"Validating configuration: {config}")

    tenant_config = _load_config(config)
    sources = load_sources(tenant_config.sources.paths)
    load_sql_file(tenant_config.sources.functions_sql, "functions.sql")
    load_sql_file(tenant_config.sources.views_sql, "views.sql")

    parser = DDLParser()
    expected = parser.build_expected_schema(sources)

    console.print("[green]✓[/green] Configuration is valid")
    _display_config_summary(tenant_config, len(sources), len(expected), expected.column_count)

    if parser.warnings:
        console.print(f"[yellow]{len(parser.warnings)} parser warnings[/yellow]")


@main.command()
@click.argument("files", nargs=-1, type=click.Path(exists=True))
@click.option("--verbose", "-v", is_flag=True, help="Show every column")
@click.option("--json", "as_json", is_flag=True, help="Print the expected schema as JSON")
@handle_errors
def parse(files: Tuple[str, ...], verbose: bool, as_json: bool):
    """Parse schema sources offline and show the expected schema."""
    # Warnings are printed below; keep the log quiet
    setup_logging(LoggingConfig(level="ERROR"))
    sources = load_sources(files)
    parser = DDLParser()
    expected = parser.build_expected_schema(sources)

    if as_json:
        click.echo(json.dumps(
            {
                "tables": expected.to_dict(),
                "warnings": [str(w) for w in parser.warnings],
            },
            indent=2,
        ))
        return

    table = Table(title=f"Expected schema ({len(sources)} sources)")
    table.add_column("Table", style="cyan")
    table.add_column("Columns", style="green", justify="right")
    if verbose:
        table.add_column("Definitions", style="magenta")

    for name in expected:
        columns = expected.columns(name)
        row = [name, str(len(columns))]
        if verbose:
            row.append("\n".join(str(column) for column in columns))
        table.add_row(*row)

    console.print(table)
    console.print(f"{len(expected)} tables, {expected.column_count} columns")

    for warning in parser.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


@main.command()
@config_option
@dsn_option
@click.option("--skip-auto-sync", is_flag=True, help="Skip the final column sync step")
@click.option("--verbose", "-v", is_flag=True, help="Log every step's outcome")
@click.option("--json", "as_json", is_flag=True, help="Print the run report as JSON")
@handle_errors
def provision(
    config: Optional[str],
    dsn: Optional[str],
    skip_auto_sync: bool,
    verbose: bool,
    as_json: bool,
):
    """Create or update the tenant schema."""
    tenant_config = _load_config(config)
    connection_config = tenant_config.connection_config(dsn)
    sources = load_sources(tenant_config.sources.paths)
    functions_sql = load_sql_file(tenant_config.sources.functions_sql, "functions.sql")
    views_sql = load_sql_file(tenant_config.sources.views_sql, "views.sql")
    options = RunOptions(skip_auto_sync=skip_auto_sync, verbose=verbose)

    async def run_provision() -> ProvisioningReport:
        async with connect(connection_config) as conn:
            orchestrator = SchemaOrchestrator(
                conn,
                settings=tenant_config.provisioning,
                sources=sources,
                functions_sql=functions_sql,
                views_sql=views_sql,
            )
            return await orchestrator.run(options)

    if not as_json:
        console.print(f"Provisioning schema on {connection_config.display_name}")

    report = asyncio.run(run_provision())

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        _display_report(report)


@main.command()
@config_option
@dsn_option
@click.option("--json", "as_json", is_flag=True, help="Print the sync result as JSON")
@handle_errors
def sync(config: Optional[str], dsn: Optional[str], as_json: bool):
    """Add missing columns to existing tables without running the full pipeline."""
    tenant_config = _load_config(config)
    connection_config = tenant_config.connection_config(dsn)
    sources = load_sources(tenant_config.sources.paths)
    schema = tenant_config.provisioning.schema_name

    async def run_sync() -> SyncResult:
        async with connect(connection_config) as conn:
            await verify_connection(conn)
            reconciler = SchemaReconciler(conn, schema)
            return await reconciler.quick_sync(sources)

    result = asyncio.run(run_sync())

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
        return

    _display_sync_result(result)
    if result.errors:
        sys.exit(1)


@main.command()
@config_option
@dsn_option
@click.option("--json", "as_json", is_flag=True, help="Print missing columns as JSON")
@handle_errors
def drift(config: Optional[str], dsn: Optional[str], as_json: bool):
    """List columns the sources declare but the database lacks."""
    tenant_config = _load_config(config)
    connection_config = tenant_config.connection_config(dsn)
    expected = DDLParser().build_expected_schema(load_sources(tenant_config.sources.paths))
    schema = tenant_config.provisioning.schema_name

    async def run_drift():
        async with connect(connection_config) as conn:
            await verify_connection(conn)
            return await SchemaReconciler(conn, schema).detect_drift(expected)

    missing = asyncio.run(run_drift())

    if as_json:
        click.echo(json.dumps(
            {table: [str(column) for column in columns] for table, columns in missing.items()},
            indent=2,
        ))
        return

    if not missing:
        console.print("[green]✓[/green] No drift: every existing table has its expected columns")
        return

    table = Table(title="Missing columns")
    table.add_column("Table", style="cyan")
    table.add_column("Column", style="magenta")
    for table_name, columns in missing.items():
        for column in columns:
            table.add_row(table_name, str(column))
    console.print(table)


@main.command()
@config_option
@dsn_option
@handle_errors
def verify(config: Optional[str], dsn: Optional[str]):
    """Run the final schema verification against a live database."""
    tenant_config = _load_config(config)
    connection_config = tenant_config.connection_config(dsn)
    settings = tenant_config.provisioning

    async def run_verify():
        async with connect(connection_config) as conn:
            await verify_connection(conn)
            verifier = FinalVerifier(SchemaIntrospector(conn, settings.schema_name), settings)
            summary = await verifier.collect()
            record = await VersionRegistry(conn, settings.schema_name).get_version()
            return summary, record

    summary, record = asyncio.run(run_verify())

    console.print(f"Tables: {summary.table_count} (minimum {summary.min_table_count})")
    console.print(f"Schema version: {record.version if record else '[yellow]not recorded[/yellow]'}")
    for problem in summary.problems():
        console.print(f"[red]✗[/red] {problem}")

    if not summary.success:
        sys.exit(1)
    console.print("[green]✓[/green] Schema verified")


def _create_default_config() -> TenantDBConfig:
    """Create a default configuration with environment placeholders."""
    return TenantDBConfig(
        database=ConnectionConfig(
            host="${POSTGRES_HOST}",
            port=5432,
            database="${POSTGRES_DB}",
            user="${POSTGRES_USER}",
            password="${POSTGRES_PASSWORD}",
        ),
    )


def _display_config_summary(
    config: TenantDBConfig, source_count: int, table_count: int, column_count: int
):
    """Display a summary of the configuration."""
    console.print("\n[blue]Configuration Summary[/blue]")

    settings = config.provisioning
    table = Table(title="Provisioning")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Schema", settings.schema_name)
    table.add_row("Version", settings.schema_version)
    table.add_row("Lock key", settings.lock_key)
    table.add_row("Lock timeout", f"{settings.lock_timeout_seconds:g}s")
    table.add_row("Minimum tables", str(settings.min_table_count))
    table.add_row("Critical tables", ", ".join(settings.critical_tables))
    table.add_row("Critical functions", ", ".join(settings.critical_functions))
    table.add_row("Compatibility view", settings.compatibility_view)
    table.add_row(
        "Sources",
        f"{source_count} ({'bundled' if not config.sources.paths else 'custom'}), "
        f"{table_count} tables, {column_count} columns",
    )
    console.print(table)


def _display_sync_result(result: SyncResult):
    console.print(
        f"Tables processed: {result.tables_processed}, "
        f"columns created: {result.columns_created} "
        f"({result.duration_ms:.0f}ms)"
    )
    for detail in result.details:
        if detail.created:
            console.print(f"  [green]+[/green] {detail.table}: {', '.join(detail.created)}")
    for error in result.errors:
        console.print(f"  [red]✗[/red] {error}")


def _display_report(report: ProvisioningReport):
    """Display a provisioning report."""
    if report.concurrent:
        console.print("[green]✓[/green] Schema was created by a concurrent process")
        return

    table = Table(title=f"Schema {report.schema_version}")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Step", style="magenta")
    table.add_column("Status")
    table.add_column("Duration", justify="right")

    for step in report.steps:
        if step.skipped:
            status = "[yellow]skipped[/yellow]"
        elif step.success:
            status = "[green]ok[/green]"
        else:
            status = "[red]failed[/red]"
        table.add_row(str(step.ordinal), step.name, status, f"{step.duration_ms:.0f}ms")

    console.print(table)

    if report.verification:
        console.print(f"Tables: {report.verification.table_count}")
    if report.sync_result:
        _display_sync_result(report.sync_result)

    if report.degraded:
        console.print("[yellow]Schema ready with sync errors[/yellow]")
    else:
        console.print(f"[green]✓[/green] Schema ready in {report.duration_ms:.0f}ms")


if __name__ == "__main__":
    main()
