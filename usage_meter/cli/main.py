"""
CLI interface for Usage Meter.

Provides command-line access to the aggregated usage summaries.
"""

import asyncio
import json
import logging
import sys
from dataclasses import dataclass, replace
from typing import List, Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from usage_meter.config.loader import (
    MonitorConfig,
    default_config_path,
    load_config,
)
from usage_meter.core.limits import LimitSeverity, check_limits, most_severe
from usage_meter.core.sessions import current_session_cost, reconstruct_sessions
from usage_meter.core.token_counter import TokenCounts
from usage_meter.service.data_service import DataService
from usage_meter.service.watcher import PollingWatcher
from usage_meter.storage.models import (
    DataUpdate,
    HourlySummary,
    UsageData,
    usage_data_to_dict,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@dataclass
class CliState:
    config_path: Optional[str] = None
    data_dir: Optional[str] = None


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML config file (default: $USAGE_METER_CONFIG)"
    ),
    data_dir: Optional[str] = typer.Option(
        None,
        "--data-dir",
        "-d",
        help="Directory containing the projects/ log tree"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging"
    ),
):
    """Usage Meter CLI."""
    _configure_logging(verbose)
    ctx.obj = CliState(config_path=config or default_config_path(), data_dir=data_dir)
    if ctx.invoked_subcommand is None:
        console.print("Usage Meter - Use --help to see available commands")


def _load_config(state: CliState) -> MonitorConfig:
    try:
        config = load_config(state.config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if state.data_dir:
        config = replace(config, data=replace(config.data, data_dir=state.data_dir))
    return config


def _load_service(state: CliState) -> DataService:
    """Build a one-shot service (no snapshot writes) and load every file."""
    config = _load_config(state)
    config = replace(config, snapshot=replace(config.snapshot, path=None))
    service = DataService(config)
    asyncio.run(service.load_all_data())
    return service


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _format_tokens(count: int, compact: bool = False) -> str:
    """Format a token count, optionally as 1.2K / 3.4M."""
    if not compact:
        return f"{count:,}"
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}K"
    return str(count)


def _format_percent_change(change: Optional[float]) -> str:
    """Format percentage change with a direction arrow."""
    if change is None:
        return "N/A"
    arrow = "↑" if change > 0 else "↓" if change < 0 else "→"
    return f"{arrow} {abs(change):,.0f}%"


def _token_breakdown(tokens: TokenCounts) -> str:
    return (
        f"in {_format_tokens(tokens.input_tokens, True)} / "
        f"out {_format_tokens(tokens.output_tokens, True)} / "
        f"cache {_format_tokens(tokens.cache_creation_tokens + tokens.cache_read_tokens, True)}"
    )


@app.command()
def summary(
    ctx: typer.Context,
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print the full summary bundle as JSON"
    ),
    enforced: bool = typer.Option(
        False,
        "--enforced",
        "-e",
        help="Exit with error code if a spending limit is exceeded"
    ),
):
    """Show today's, this week's and this month's usage."""
    state = ctx.find_root().obj
    try:
        service = _load_service(state)
        now = service.now()
        events = service.cache.flatten()
        data = service.get_aggregated_data(now)
        running = current_session_cost(data.hourly, now, live_events=events, tz=service.tz)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if as_json:
        payload = usage_data_to_dict(data)
        payload["current_session_cost"] = running
        console.print_json(json.dumps(payload))
        sys.exit(EXIT_CODE_PASS)

    _display_summary(data, running)

    breaches = check_limits(data, service.config.limits)
    for breach in breaches:
        colour = "red" if breach.severity is LimitSeverity.EXCEEDED else "yellow"
        console.print(f"[bold {colour}]Limit {breach.severity.name}:[/] {breach.message}")

    if enforced and most_severe(breaches) is LimitSeverity.EXCEEDED:
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


def _display_summary(data: UsageData, running: float) -> None:
    """Display the headline numbers."""
    console.print("\n[bold]Usage Summary[/bold]")
    console.print("-" * 40)

    if data.reference_date_is_fallback:
        console.print(
            f"[yellow]No usage recorded today; showing {data.reference_date} instead[/]"
        )

    if data.today is None:
        console.print("\n[dim]No usage data for today.[/]")
    else:
        console.print(f"\n[bold]Today ({data.today.date}):[/bold] {_format_currency(data.today.cost)}")
        console.print(f"Change vs previous day: {_format_percent_change(data.today.percent_change)}")
        console.print(f"Tokens: {_token_breakdown(data.today.tokens)}")
        console.print(f"Requests: {data.today.entry_count:,}")

    console.print(f"\nThis week: {_format_currency(data.this_week.total_cost)}")
    console.print(f"This month: {_format_currency(data.this_month.total_cost)}")
    console.print(f"Current session: {_format_currency(running)}")


@app.command()
def daily(
    ctx: typer.Context,
    days: int = typer.Option(
        14,
        "--days",
        "-n",
        min=1,
        help="Number of most recent days to show"
    ),
):
    """Show cost per day, newest first."""
    service = _load_service(ctx.find_root().obj)
    data = service.get_aggregated_data()

    if not data.daily:
        console.print("[dim]No usage data found.[/]")
        return

    table = Table(title="Daily Usage")
    table.add_column("Date")
    table.add_column("Cost", justify="right")
    table.add_column("Change", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Requests", justify="right")
    for day in data.daily[:days]:
        table.add_row(
            day.date,
            _format_currency(day.cost),
            _format_percent_change(day.percent_change),
            _format_tokens(day.tokens.total_tokens, True),
            str(day.entry_count),
        )
    console.print(table)


def _hourly_table(title: str, hours: List[HourlySummary]) -> Table:
    table = Table(title=title)
    table.add_column("Hour")
    table.add_column("Cost", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Requests", justify="right")
    for hour in hours:
        table.add_row(
            hour.hour_label,
            _format_currency(hour.cost),
            _format_tokens(hour.tokens.total_tokens, True),
            str(hour.entry_count),
        )
    return table


@app.command()
def hourly(
    ctx: typer.Context,
    today: bool = typer.Option(
        False,
        "--today",
        "-t",
        help="Show today's hours instead of the trailing window"
    ),
):
    """Show cost per hour."""
    service = _load_service(ctx.find_root().obj)
    data = service.get_aggregated_data()
    if today:
        console.print(_hourly_table(f"Hourly Usage ({data.reference_date})", data.today_hourly))
    else:
        console.print(_hourly_table("Hourly Usage (last 24 hours)", data.hourly))


@app.command()
def sessions(ctx: typer.Context):
    """Show activity sessions reconstructed from the hourly series."""
    service = _load_service(ctx.find_root().obj)
    data = service.get_aggregated_data()
    found = reconstruct_sessions(data.hourly)

    if not found:
        console.print("[dim]No sessions in the last 24 hours.[/]")
        return

    table = Table(title="Sessions")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Hours", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Status")
    for session in found:
        table.add_row(
            session.hours[0].hour_label,
            session.hours[-1].hour_label,
            str(len(session.hours)),
            _format_currency(session.total_cost),
            "[green]ongoing[/]" if session.is_ongoing else "closed",
        )
    console.print(table)


@app.command()
def projects(ctx: typer.Context):
    """Show cost per project."""
    service = _load_service(ctx.find_root().obj)
    data = service.get_aggregated_data()

    if not data.projects:
        console.print("[dim]No usage data found.[/]")
        return

    table = Table(title="Projects")
    table.add_column("Project")
    table.add_column("Cost", justify="right")
    table.add_column("Share", justify="right")
    table.add_column("Sessions", justify="right")
    for project in data.projects:
        table.add_row(
            project.project,
            _format_currency(project.cost),
            f"{project.percentage:.1f}%",
            str(project.sessions),
        )
    console.print(table)


@app.command()
def watch(ctx: typer.Context):
    """Keep summaries current as log files change. Stop with Ctrl-C."""
    config = _load_config(ctx.find_root().obj)
    try:
        asyncio.run(_watch(config))
    except KeyboardInterrupt:
        console.print("\nStopped.")
    sys.exit(EXIT_CODE_PASS)


async def _watch(config: MonitorConfig) -> None:
    service = DataService(config)
    watcher = PollingWatcher(
        str(config.data.data_path / "projects"),
        service.queue_file_update,
        poll_interval_s=config.ingestion.poll_interval_s,
        stability_threshold_s=config.ingestion.stability_threshold_s,
    )

    def show(update: DataUpdate) -> None:
        today = update.data.today
        cost = _format_currency(today.cost) if today else _format_currency(0)
        running = current_session_cost(
            update.data.hourly, service.now(), live_events=service.cache.flatten(), tz=service.tz
        )
        console.print(
            f"[dim]{service.now():%H:%M:%S}[/] {update.kind:<11} "
            f"today {cost}  session {_format_currency(running)}  "
            f"month {_format_currency(update.data.this_month.total_cost)}"
        )

    service.subscribe(show)
    # Baseline precedes the initial load
    watcher.prime(await asyncio.to_thread(watcher.signatures))
    await service.initialize()
    if service.cache.event_count == 0:
        console.print("[dim]No usage data yet.[/]")

    try:
        await watcher.run()
    finally:
        watcher.stop()
        await service.close()


if __name__ == "__main__":
    app()
