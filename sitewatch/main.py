"""Entry point for the sitewatch website monitor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date
from pathlib import Path

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sitewatch.api.server import build_service, create_app
from sitewatch.checks.base import CheckStatus
from sitewatch.config import Settings, settings
from sitewatch.retention import RetentionSweeper, format_bytes
from sitewatch.runs.executor import RunOutcome

console = Console()

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

_STATUS_STYLE = {
    CheckStatus.PASS: "green",
    CheckStatus.FAIL: "bold red",
    CheckStatus.SKIP: "yellow",
}


def setup_logging(cfg: Settings) -> None:
    """Console logging plus a daily ``monitor-YYYY-MM-DD.log`` file."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_dir = Path(cfg.paths.logs)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.FileHandler(log_dir / f"monitor-{date.today().isoformat()}.log", encoding="utf-8")
        )
    except OSError as e:
        console.print(f"[yellow]File logging disabled: {e}[/yellow]")

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )


def run_server() -> None:
    """Start the FastAPI dashboard server with the run scheduler."""
    console.print(Panel("Starting Sitewatch API Server", style="bold green"))
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


def print_outcome(outcome: RunOutcome) -> None:
    run = outcome.run
    if run is None:
        console.print(Panel(f"Run {outcome.status.value}: {outcome.error or 'no results'}", style="bold red"))
        return

    table = Table(title=f"Run #{run.id if run.id is not None else '-'} ({run.triggered_by})")
    table.add_column("Check")
    table.add_column("Category")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Details")
    for r in run.results:
        table.add_row(
            r.name + (" *" if r.critical else ""),
            r.category,
            f"[{_STATUS_STYLE.get(r.status, 'white')}]{r.status.value}[/]",
            f"{r.duration_ms}ms",
            r.error or r.details,
        )
    console.print(table)

    style = "bold green" if run.failed_tests == 0 else "bold red"
    console.print(Panel(
        f"{run.passed_tests}/{run.total_tests} passed, {run.failed_tests} failed "
        f"({run.success_rate}%) in {run.duration_ms}ms"
        + ("" if outcome.persisted else "\n[yellow]Not saved to database, see fallback report[/yellow]"),
        style=style,
    ))


def run_cli(triggered_by: str) -> int:
    """Execute one run in the foreground."""
    console.print(Panel(f"Running checks ({triggered_by})", title="Sitewatch", style="bold blue"))
    service = build_service(settings)

    async def _run() -> RunOutcome:
        try:
            return await service.run_scheduled(triggered_by)
        finally:
            await service.close()

    with console.status("[bold green]Checks running..."):
        outcome = asyncio.run(_run())

    print_outcome(outcome)
    if outcome.run is None:
        return 2
    return 1 if outcome.run.failed_tests else 0


def run_cleanup() -> None:
    sweeper = RetentionSweeper(settings.monitoring.cleanup, settings.paths)
    result = sweeper.perform_cleanup()
    if result.disabled:
        console.print("[yellow]Cleanup is disabled in config[/yellow]")
        return

    table = Table(title="Retention sweep")
    table.add_column("Category")
    table.add_column("Deleted", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Freed", justify="right")
    for name in ("logs", "reports", "screenshots"):
        stats = result.category(name)
        table.add_row(name, str(stats.deleted), str(stats.errors), format_bytes(stats.total_size))
    console.print(table)
    console.print(f"[bold]Total freed:[/bold] {format_bytes(result.total_freed)}")


def show_disk_usage() -> None:
    sweeper = RetentionSweeper(settings.monitoring.cleanup, settings.paths)
    usage = sweeper.get_disk_usage()

    table = Table(title="Disk usage")
    table.add_column("Directory")
    table.add_column("Size", justify="right")
    table.add_column("Files", justify="right")
    table.add_column(f"Older than {settings.monitoring.cleanup.retention_days}d", justify="right")
    for name, entry in usage["directories"].items():
        table.add_row(name, entry["formatted"], str(entry["file_count"]), str(entry["old_file_count"]))
    console.print(table)
    console.print(f"[bold]Total:[/bold] {usage['total_formatted']}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Sitewatch website monitor")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Start the dashboard API and the run scheduler")

    run_parser = sub.add_parser("run", help="Execute one monitoring run now")
    run_parser.add_argument("--triggered-by", default="scheduled", help="Label stored with the run")

    sub.add_parser("cleanup", help="Run the retention sweep now")
    sub.add_parser("disk-usage", help="Show artifact directory usage")

    args = parser.parse_args()
    setup_logging(settings)

    if args.command == "serve":
        run_server()
    elif args.command == "run":
        sys.exit(run_cli(args.triggered_by))
    elif args.command == "cleanup":
        run_cleanup()
    elif args.command == "disk-usage":
        show_disk_usage()
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
