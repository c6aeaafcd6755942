"""
CLI interface for Usage Guard.

Provides command-line access to budget checks and usage reports.
"""

import logging
import sys
from dataclasses import replace
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_guard.config.loader import (
    GuardConfig,
    build_guard,
    config_from_env,
    load_guard_config,
)
from usage_guard.core.guard import InvalidInput
from usage_guard.storage.repository import SQLiteUsageStore, StorageUnavailable

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _resolve_config(config_path: Optional[str], db_path: Optional[str]) -> GuardConfig:
    """Load YAML (if given), then environment overrides, then CLI flags."""
    base = load_guard_config(config_path) if config_path else GuardConfig()
    config = config_from_env(base=base)
    if db_path:
        config = replace(config, db_path=db_path)
    return config


def _format_currency(amount) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${amount:,.2f}"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Usage Guard CLI."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    if ctx.invoked_subcommand is None:
        console.print("Usage Guard - Use --help to see available commands")


@app.command()
def init(
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite usage database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML guard configuration"),
):
    """Initialize the usage database."""
    try:
        resolved = _resolve_config(config, db)
        SQLiteUsageStore(resolved.db_path).initialize_schema()
        console.print(f"[green]✓[/] Database initialized at {resolved.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except (StorageUnavailable, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite usage database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML guard configuration"),
):
    """Show the effective guard configuration."""
    try:
        resolved = _resolve_config(config, db)
    except (ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Usage Guard Configuration")
    table.add_column("Setting")
    table.add_column("Value", justify="right")
    table.add_row("Daily budget cap", _format_currency(resolved.daily_budget_cap))
    table.add_row("Unit price (per 1K units)", f"${resolved.unit_price}")
    table.add_row("Storage failure policy", "fail open" if resolved.fail_open else "fail closed")
    table.add_row("Database", resolved.db_path)
    for operation, units in sorted(resolved.estimates.items()):
        table.add_row(f"Estimate: {operation}", f"{units:,} units")
    console.print(table)


@app.command()
def check(
    user_id: str = typer.Argument(..., help="User to charge"),
    units: int = typer.Argument(..., help="Estimated units for the operation"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite usage database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML guard configuration"),
):
    """
    Check the daily budget and record the estimated units.

    Exits with a failing code when the budget does not cover the request.
    """
    try:
        guard = build_guard(_resolve_config(config, db))
        decision = guard.check_and_consume(user_id, units)
    except (InvalidInput, StorageUnavailable, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if decision.allowed:
        note = " (storage unavailable, failed open)" if decision.fail_open else ""
        console.print(f"[green]ALLOWED[/]{note} Remaining budget: {_format_currency(decision.remaining_budget)}")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"[red]DENIED[/] Daily budget exceeded. Remaining budget: {_format_currency(decision.remaining_budget)}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(
    user_id: str = typer.Argument(..., help="User to report on"),
    db: Optional[str] = typer.Option(None, "--db", help="Path to SQLite usage database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML guard configuration"),
):
    """Show the current day's usage for a user."""
    try:
        guard = build_guard(_resolve_config(config, db))
        record = guard.get_current_usage(user_id)
    except (InvalidInput, StorageUnavailable, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    remaining = max(guard.daily_budget_cap - record.cost_accrued, 0)
    table = Table(title=f"Usage for {record.user_id} on {record.period_key}")
    table.add_column("Units consumed", justify="right")
    table.add_column("Cost accrued", justify="right")
    table.add_column("Daily cap", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_row(
        f"{record.units_consumed:,}",
        _format_currency(record.cost_accrued),
        _format_currency(guard.daily_budget_cap),
        _format_currency(remaining),
    )
    console.print(table)


if __name__ == "__main__":
    app()
