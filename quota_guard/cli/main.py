"""
CLI interface for Quota Guard.

Records usage snapshots and reports allowances, calibrated budgets and
projections. Any budget error exits non-zero so schedulers fail closed.
"""

import json
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from quota_guard.config.loader import BudgetSettings, load_budget_config
from quota_guard.core.allowance import AllowanceManager, AllowanceResult
from quota_guard.core.calibrator import Calibrator
from quota_guard.core.projection import BudgetProjection, ProjectionEngine
from quota_guard.core.trends import TrendAnalyzer
from quota_guard.core.usage import snapshot_usage_source
from quota_guard.storage.db import DEFAULT_DB_PATH
from quota_guard.storage.models import UsageSnapshot
from quota_guard.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_PROVIDERS = ("claude", "codex")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")


def _load_settings(ctx: typer.Context) -> BudgetSettings:
    config_path = ctx.obj.get("config")
    if config_path is None:
        return BudgetSettings()
    return load_budget_config(str(config_path))


def _providers(settings: BudgetSettings, provider: Optional[str]) -> List[str]:
    if provider:
        return [provider.lower()]
    if settings.per_provider:
        return sorted(settings.per_provider)
    return list(DEFAULT_PROVIDERS)


def _fail(message: str, error: Exception) -> None:
    if "no such table" in str(error).lower():
        console.print("[red]Database is not initialized.[/] Run `quota-guard init` first.")
    else:
        console.print(f"[red]{message}:[/] {error}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML budget configuration"
    ),
    db: str = typer.Option(
        DEFAULT_DB_PATH,
        "--db",
        help="Path to the snapshot database"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log calculation details to stderr"
    ),
):
    """Quota Guard CLI."""
    _configure_logging(verbose)
    ctx.obj = {"config": config, "db": db}
    if ctx.invoked_subcommand is None:
        console.print("Quota Guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the snapshot database."""
    try:
        initialize_schema(ctx.obj["db"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail("Error initializing database", e)


@app.command()
def record(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="Provider name, e.g. claude or codex"),
    local_tokens: int = typer.Option(
        ...,
        "--local-tokens",
        "-t",
        help="Tokens counted locally since the billing week started"
    ),
    local_daily: int = typer.Option(
        0,
        "--local-daily",
        "-d",
        help="Tokens counted locally today"
    ),
    used_pct: Optional[float] = typer.Option(
        None,
        "--used-pct",
        "-p",
        help="Weekly usage percentage reported by the provider"
    ),
    reset_hint: Optional[str] = typer.Option(
        None,
        "--reset-hint",
        "-r",
        help='Weekly reset text reported by the provider, e.g. "Feb 8 at 10am (PST)"'
    ),
):
    """Append a usage snapshot for a provider."""
    try:
        settings = _load_settings(ctx)
        snapshot = UsageSnapshot.observe(
            provider=provider,
            timestamp=datetime.now(),
            local_tokens=local_tokens,
            local_daily=local_daily,
            scraped_used_percent=used_pct,
            reset_hint=reset_hint,
            week_start_weekday=settings.week_start_day.weekday,
        )
        snapshot_id = get_repository(ctx.obj["db"]).insert_snapshot(snapshot)

        message = f"[green]✓[/] Recorded snapshot #{snapshot_id} for {snapshot.provider}"
        if snapshot.inferred_budget:
            message += f" (implied weekly budget: {snapshot.inferred_budget:,})"
        console.print(message)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail("Error recording snapshot", e)


@app.command()
def budget(
    ctx: typer.Context,
    provider: Optional[str] = typer.Option(
        None,
        "--provider",
        "-p",
        help="Only report this provider"
    ),
    estimate: Optional[int] = typer.Option(
        None,
        "--estimate",
        "-e",
        help="Exit with error code if a task of this many tokens does not fit"
    ),
    plain: bool = typer.Option(
        False,
        "--plain",
        help="Print one summary line per provider instead of a table"
    ),
):
    """
    Show the token allowance for the current run.

    Usage comes from the latest recorded snapshot. Budgets are calibrated
    from this week's snapshots and predicted daytime usage is held back.
    """
    try:
        settings = _load_settings(ctx)
        repository = get_repository(ctx.obj["db"])
        providers = _providers(settings, provider)

        manager = AllowanceManager(
            settings,
            {
                name: snapshot_usage_source(repository, name, settings.get_provider_budget(name))
                for name in providers
            },
            budget_source=Calibrator(settings, repository),
            trend_predictor=TrendAnalyzer(repository, settings.trend_lookback_days),
        )

        if plain:
            for name in providers:
                typer.echo(manager.summary(name))
        else:
            results = [(name, manager.compute_allowance(name)) for name in providers]
            _display_allowances(results)

        if estimate is not None:
            blocked = [name for name in providers if not manager.can_run(name, estimate)]
            if blocked:
                console.print(f"\n[bold red]Over budget:[/] {', '.join(blocked)} cannot fit {estimate:,} tokens")
                sys.exit(EXIT_CODE_FAIL)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail("Budget unavailable, not running", e)


@app.command()
def calibrate(
    ctx: typer.Context,
    provider: Optional[str] = typer.Option(
        None,
        "--provider",
        "-p",
        help="Only calibrate this provider"
    ),
):
    """Infer weekly budgets from this week's snapshots."""
    try:
        settings = _load_settings(ctx)
        calibrator = Calibrator(settings, get_repository(ctx.obj["db"]))

        table = Table(title="Weekly Budget Calibration")
        table.add_column("Provider")
        table.add_column("Budget", justify="right")
        table.add_column("Confidence")
        table.add_column("Samples", justify="right")
        table.add_column("Std Dev", justify="right")
        table.add_column("Source")

        for name in _providers(settings, provider):
            result = calibrator.calibrate(name)
            table.add_row(
                name,
                f"{result.inferred_budget:,}",
                result.confidence.value,
                str(result.sample_count),
                f"{result.variance ** 0.5:,.0f}",
                result.source.value,
            )

        console.print(table)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail("Error calibrating", e)


@app.command()
def projection(
    ctx: typer.Context,
    provider: Optional[str] = typer.Option(
        None,
        "--provider",
        "-p",
        help="Only project this provider"
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print projections as JSON"
    ),
):
    """Project whether each weekly budget runs out before it resets."""
    try:
        settings = _load_settings(ctx)
        repository = get_repository(ctx.obj["db"])
        engine = ProjectionEngine(repository, budget_source=Calibrator(settings, repository))
        summary = engine.compute_projections(_providers(settings, provider), datetime.now())

        if as_json:
            typer.echo(json.dumps({
                "projections": [p.to_dict() for p in summary.projections],
                "primary": summary.primary.to_dict() if summary.primary else None,
            }, indent=2))
            sys.exit(EXIT_CODE_PASS)

        if not summary.projections:
            console.print("\n[bold yellow]Not enough usage history for a projection yet[/]")
            console.print("\nRecord snapshots with `quota-guard record` over at least a day.\n")
            sys.exit(EXIT_CODE_PASS)

        for item in summary.projections:
            _display_projection(item)
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail("Error computing projection", e)


@app.command()
def prune(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(
        None,
        "--days",
        help="Days of history to keep (defaults to snapshot_retention_days)"
    ),
):
    """Delete snapshots older than the retention window."""
    try:
        settings = _load_settings(ctx)
        retention = settings.snapshot_retention_days if days is None else days
        deleted = get_repository(ctx.obj["db"]).prune(retention)
        console.print(f"[green]✓[/] Deleted {deleted} snapshot(s) older than {retention} days")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        _fail("Error pruning snapshots", e)


def _display_allowances(results: List[Tuple[str, AllowanceResult]]) -> None:
    table = Table(title="Run Allowance")
    table.add_column("Provider")
    table.add_column("Mode")
    table.add_column("Used", justify="right")
    table.add_column("Weekly Budget", justify="right")
    table.add_column("Source")
    table.add_column("Reserve", justify="right")
    table.add_column("Predicted", justify="right")
    table.add_column("Allowance", justify="right")

    for name, result in results:
        table.add_row(
            name,
            result.mode.value,
            f"{result.used_percent:.1f}%",
            f"{result.weekly_budget:,}",
            f"{result.budget_source.value} ({result.budget_confidence.value})",
            f"{result.reserve_amount:,}",
            f"{result.predicted_usage:,}",
            f"[bold]{result.allowance:,}[/bold]",
        )

    console.print(table)


def _display_projection(item: BudgetProjection) -> None:
    console.print(f"\n[bold]Provider:[/bold] {item.provider}")
    console.print(f"Weekly budget: {item.weekly_budget:,} ({item.source.value})")
    console.print(f"Used: {item.current_used_pct:.1f}%, remaining: {item.remaining_tokens:,} tokens")
    console.print(f"Average daily usage: {item.avg_daily_usage:,} tokens")
    if item.est_exhaust_at is not None:
        console.print(f"Lasts about {item.est_days_remaining} days ({item.est_exhaust_at:%a %b %d %H:%M})")
    if item.reset_at is not None:
        console.print(f"Resets: {item.reset_at:%a %b %d %H:%M}")
    elif item.reset_hint:
        console.print(f"Resets: {item.reset_hint}")
    if item.will_exhaust_before_reset is not None:
        verdict = "[red]runs out before reset[/]" if item.will_exhaust_before_reset else "[green]lasts until reset[/]"
        console.print(f"Verdict: {verdict}")


if __name__ == "__main__":
    app()
