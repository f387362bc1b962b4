"""Entry point for the healthwatch monitor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from healthwatch.checks.models import CheckDefinition
from healthwatch.checks.registry import CheckRegistry
from healthwatch.config import Settings
from healthwatch.context import MonitorContext
from healthwatch.store.base import StoreUnavailable

console = Console()

_STATUS_STYLE = {"Healthy": "green", "Unhealthy": "bold red"}


def run_server(ctx: MonitorContext) -> None:
    """Import the checks file, then schedule checks until interrupted."""
    console.print(Panel("Starting healthwatch monitor", style="bold green"))
    created, updated = ctx.import_checks()
    if created or updated:
        console.print(f"[dim]Imported checks: {created} created, {updated} updated[/dim]")
    asyncio.run(_serve(ctx))
    console.print("[dim]Monitor stopped[/dim]")


async def _serve(ctx: MonitorContext) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops: Ctrl+C still raises KeyboardInterrupt
            pass
    await ctx.run_forever(stop)


def run_check(ctx: MonitorContext, ref: str) -> int:
    """Execute one check now and print the outcome."""
    check = _find_check(ctx, ref)
    if check is None:
        console.print(f"[red]No check with id or name {ref!r}[/red]")
        return 1

    with console.status(f"[bold green]Running {check.name}..."):
        result = asyncio.run(ctx.executor.execute(check))

    style = _STATUS_STYLE.get(result.status.value, "")
    console.print(f"[{style}]{result.status.value}[/{style}]  {check.name} ({check.kind.value})")
    console.print(result.details)
    if result.latency_ms is not None:
        console.print(f"[dim]Latency: {result.latency_ms:.0f}ms[/dim]")
    return 0 if result.healthy else 2


def run_import(ctx: MonitorContext, path: Path | None) -> int:
    registry = CheckRegistry(path, ctx.settings.default_check_interval) if path else ctx.registry
    if not registry.checks:
        console.print("[yellow]No checks found to import[/yellow]")
        return 1
    created, updated = registry.sync_to(ctx.store)
    console.print(f"Imported {len(registry.checks)} checks: {created} created, {updated} updated")
    return 0


def show_status(ctx: MonitorContext) -> int:
    checks = {c.id: c for c in ctx.store.find_all()}
    latest = {r.check_id: r for r in ctx.store.get_latest_results()}

    table = Table(title="Checks")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Enabled")
    table.add_column("Status")
    table.add_column("Last run")
    table.add_column("Details", overflow="fold")
    for check in sorted(checks.values(), key=lambda c: c.name):
        result = latest.get(check.id)
        if result is None:
            status, when, details = "[dim]never run[/dim]", "", ""
        else:
            style = _STATUS_STYLE.get(result.status.value, "")
            status = f"[{style}]{result.status.value}[/{style}]"
            when = result.created_at.strftime("%Y-%m-%d %H:%M:%S")
            details = result.details[:80]
        table.add_row(
            check.name, check.kind.value, "yes" if check.enabled else "no", status, when, details,
        )
    console.print(table)

    try:
        active = ctx.incidents.active()
        metrics = ctx.incidents.metrics()
    except StoreUnavailable as exc:
        console.print(f"[red]Incidents unavailable: {exc}[/red]")
        return 1

    if active:
        inc_table = Table(title="Open incidents")
        inc_table.add_column("Check")
        inc_table.add_column("Title")
        inc_table.add_column("Status")
        inc_table.add_column("Severity")
        inc_table.add_column("Opened")
        for incident in active:
            check = checks.get(incident.check_id)
            inc_table.add_row(
                check.name if check else incident.check_id,
                incident.title,
                incident.status.value,
                incident.severity.value,
                incident.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        console.print(inc_table)
    console.print(
        f"[dim]Incidents: {metrics['total']} total, {metrics['active']} active, "
        f"MTTR {metrics['mttr_minutes']} min[/dim]"
    )
    return 0


def _find_check(ctx: MonitorContext, ref: str) -> CheckDefinition | None:
    check = ctx.store.find_by_id(ref)
    if check is not None:
        return check
    matches = [c for c in ctx.store.find_all() if c.name == ref]
    return matches[0] if matches else None


def main() -> None:
    parser = argparse.ArgumentParser(description="healthwatch health monitor")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Run the scheduler until interrupted")

    check_parser = sub.add_parser("check", help="Run one check now")
    check_parser.add_argument("check", help="Check id or name")

    import_parser = sub.add_parser("import", help="Import checks from a YAML file")
    import_parser.add_argument("file", nargs="?", type=Path, help="Defaults to CHECKS_FILE")

    sub.add_parser("status", help="Show latest results and open incidents")

    args = parser.parse_args()
    if args.command is None:
        parser.print_help()
        sys.exit(1)

    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    ctx = MonitorContext(settings)

    try:
        if args.command == "serve":
            run_server(ctx)
            code = 0
        elif args.command == "check":
            code = run_check(ctx, args.check)
        elif args.command == "import":
            code = run_import(ctx, args.file)
        else:
            code = show_status(ctx)
    except StoreUnavailable as exc:
        console.print(f"[bold red]Store unavailable:[/bold red] {exc}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
