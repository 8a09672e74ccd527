"""Entry point for the mac-tuneup command line tool."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from typing import List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from . import config as config_module
from .actions import ActionRegistry, SafetyTier, default_registry
from .catalog import HealthReport, build_report
from .errors import UnknownActionError
from .executor import ExecutionStatus, RunReport, SafeExecutor
from .formatting import format_report, format_results, format_size
from .system_state import gather_metrics
from .updates import UpdateAggregator, UpdateCounts, UpdateState
from .whitelist import WhitelistStore

logger = logging.getLogger("mac_tuneup")

EXIT_OK = 0
EXIT_CANCELLED = 1
EXIT_USAGE = 2

STATUS_STYLES = {
    ExecutionStatus.SUCCEEDED: "green",
    ExecutionStatus.SKIPPED_WHITELISTED: "dim",
    ExecutionStatus.SKIPPED_THRESHOLD: "dim",
    ExecutionStatus.FAILED: "red",
    ExecutionStatus.TIMED_OUT: "red",
    ExecutionStatus.CANCELLED: "yellow",
}


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    handlers: List[logging.Handler] = [
        RichHandler(console=Console(stderr=True), show_path=False, show_time=False, markup=False)
    ]
    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(asctime)s - [%(levelname)s] - %(name)s - %(message)s"))
        handlers.append(file_handler)
    logging.basicConfig(level=logging.WARNING, format="%(message)s", handlers=handlers, force=True)
    logger.setLevel(level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mac-tuneup",
        description="Inspect a Mac and run safe maintenance optimizations.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--log-file", help="Also append log records to this file")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    list_parser = sub.add_parser("list", help="Measure the system and list candidate optimizations")
    output = list_parser.add_mutually_exclusive_group()
    output.add_argument("--json", action="store_true", help="Print the health report as JSON")
    output.add_argument("--plain", action="store_true", help="Print plain-text tables")

    run_parser = sub.add_parser("run", help="Execute optimizations by key")
    run_parser.add_argument("keys", nargs="*", metavar="KEY", help="Action keys to execute")
    run_parser.add_argument("--all", action="store_true", help="Execute every item of the current catalog")
    run_parser.add_argument("--dry-run", action="store_true", help="Report what would change without changing it")
    run_parser.add_argument("-y", "--yes", action="store_true", help="Do not ask before actions that need confirmation")
    run_parser.add_argument("--plain", action="store_true", help="Print plain-text tables")

    wl_parser = sub.add_parser("whitelist", help="Show or edit suppressed actions")
    wl_parser.add_argument("--add", action="append", default=[], metavar="KEY", help="Suppress an action")
    wl_parser.add_argument("--remove", action="append", default=[], metavar="KEY", help="Allow an action again")

    update_parser = sub.add_parser("update", help="Check for and install software updates")
    update_parser.add_argument("--check", action="store_true", help="Only report pending updates")

    config_parser = sub.add_parser("config", help="Manage the configuration file")
    config_parser.add_argument("--init", action="store_true", help="Write the default configuration file")
    config_parser.add_argument("--show", action="store_true", help="Show the effective settings")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.log_file)
    console = Console()

    if args.command == "list":
        return _cmd_list(args, console)
    if args.command == "run":
        return _cmd_run(args, console, parser)
    if args.command == "whitelist":
        return _cmd_whitelist(args, console)
    if args.command == "update":
        return _cmd_update(args, console)
    if args.command == "config":
        return _cmd_config(args, console)
    parser.print_help()
    return EXIT_OK


def _cmd_list(args: argparse.Namespace, console: Console) -> int:
    settings = config_module.load_settings()
    report = build_report(gather_metrics(settings), whitelist=WhitelistStore())
    if args.json:
        print(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))
    elif args.plain:
        print(format_report(report))
    else:
        _render_report(console, report)
    return EXIT_OK


def _cmd_run(args: argparse.Namespace, console: Console, parser: argparse.ArgumentParser) -> int:
    settings = config_module.load_settings()
    registry = default_registry()
    whitelist = WhitelistStore()
    if args.all:
        report = build_report(gather_metrics(settings), whitelist=whitelist, registry=registry)
        keys = [item.action_key for item in report.items]
    else:
        keys = list(dict.fromkeys(args.keys))
    if not keys:
        parser.error("run needs at least one KEY or --all")

    executor = SafeExecutor(registry=registry, whitelist=whitelist, settings=settings)
    try:
        for key in keys:
            registry.get(key)
    except UnknownActionError as exc:
        console.print(f"[red]{escape(str(exc))}[/]")
        console.print(f"[dim]Valid keys: {', '.join(registry.keys())}[/]")
        return EXIT_USAGE

    needs_confirmation = [key for key in keys if _requires_confirmation(registry, key, whitelist)]
    if needs_confirmation and not args.yes and not args.dry_run:
        titles = ", ".join(registry.get(key).title for key in needs_confirmation)
        if not _confirm(console, f"{titles} need confirmation. Proceed?"):
            run_report = executor.cancelled(keys)
            _render_results(console, run_report, args.plain)
            console.print("[yellow]Cancelled.[/]")
            return run_report.exit_code

    run_report = executor.execute_batch(keys, dry_run=args.dry_run)
    _render_results(console, run_report, args.plain)
    return run_report.exit_code


def _requires_confirmation(registry: ActionRegistry, key: str, whitelist: WhitelistStore) -> bool:
    return registry.get(key).tier is SafetyTier.REQUIRES_CONFIRMATION and not whitelist.is_whitelisted(key)


def _confirm(console: Console, prompt: str) -> bool:
    try:
        answer = console.input(f"[cyan]{escape(prompt)} {escape('[y/N]')}: [/]")
    except (EOFError, KeyboardInterrupt):
        return False
    return answer.strip().lower() in ("y", "yes")


def _cmd_whitelist(args: argparse.Namespace, console: Console) -> int:
    registry = default_registry()
    store = WhitelistStore()
    for key in args.add + args.remove:
        if key not in registry:
            console.print(f"[red]Unknown action: {escape(key)}[/]")
            return EXIT_USAGE
    for key in args.add:
        store.set_whitelisted(key, True)
    for key in args.remove:
        store.set_whitelisted(key, False)

    entries = store.list_entries()
    table = Table(title=f"Whitelist ({store.path})", box=box.SIMPLE_HEAD)
    table.add_column("Key", style="cyan")
    table.add_column("Action")
    table.add_column("Suppressed", justify="center")
    for action in registry:
        table.add_row(action.key, action.title, "yes" if action.key in entries else "")
    console.print(table)
    return EXIT_OK


def _cmd_update(args: argparse.Namespace, console: Console) -> int:
    aggregator = UpdateAggregator(prompt=lambda counts: _render_update_prompt(console, counts))
    if args.check:
        counts = aggregator.aggregate()
        _render_update_counts(console, counts)
        return EXIT_OK if counts.total else EXIT_CANCELLED

    report = aggregator.run()
    if report.state is UpdateState.NO_UPDATES:
        console.print(Panel("Everything is up to date.", style="bold green"))
    elif report.state is UpdateState.CANCELLED:
        console.print("[yellow]Update cancelled.[/]")
    else:
        table = Table(title="Update results", box=box.SIMPLE_HEAD)
        table.add_column("Source", style="bold")
        table.add_column("Result")
        table.add_column("Detail")
        for outcome in report.outcomes:
            result = "[green]updated[/]" if outcome.ok else "[red]failed[/]"
            table.add_row(outcome.source.value, result, escape(outcome.message))
        console.print(table)
    return report.exit_code


def _render_update_counts(console: Console, counts: UpdateCounts) -> None:
    if not counts.total:
        console.print(Panel("Everything is up to date.", style="bold green"))
        return
    table = Table(title=f"{counts.total} update(s) available", box=box.SIMPLE_HEAD)
    table.add_column("Source", style="bold")
    table.add_column("Pending", justify="right")
    for pending in counts.sources():
        table.add_row(pending.source.value, str(pending.count))
    console.print(table)


def _render_update_prompt(console: Console, counts: UpdateCounts) -> None:
    _render_update_counts(console, counts)
    console.print("[cyan]Press Y or Enter to update, any other key to cancel.[/]")


def _cmd_config(args: argparse.Namespace, console: Console) -> int:
    if args.init:
        path = config_module.init_config()
        console.print(f"[green]✓[/] Created config at [cyan]{escape(str(path))}[/]")
        return EXIT_OK
    if args.show:
        settings = config_module.load_settings()
        console.print(json.dumps(asdict(settings), indent=2))
        return EXIT_OK
    console.print(f"Config file: {config_module.config_path()}")
    console.print("[dim]Use --init to create it or --show to print the effective settings.[/]")
    return EXIT_OK


def _render_report(console: Console, report: HealthReport) -> None:
    metrics = report.metrics
    console.print(Panel(f"System health - {metrics.timestamp:%Y-%m-%d %H:%M:%S}", style="bold cyan"))

    summary = Table(show_header=False, box=box.ROUNDED)
    summary.add_row("Memory", f"{format_size(metrics.memory_used)} / {format_size(metrics.memory_total)}")
    summary.add_row(
        "Disk",
        f"{format_size(metrics.disk_used)} / {format_size(metrics.disk_total)} ({metrics.disk_percent:.0f}%)",
    )
    summary.add_row("Uptime", f"{metrics.uptime_days:.1f} days")
    console.print(summary)

    table = Table(title="Optimizations", box=box.SIMPLE_HEAD)
    table.add_column("Category", style="bold")
    table.add_column("Name")
    table.add_column("Description")
    table.add_column("Key", style="cyan")
    table.add_column("Tier")
    for item in report.items:
        name = item.name + (" [dim](whitelisted)[/]" if item.whitelisted else "")
        tier = item.tier.value if item.tier is SafetyTier.SAFE else f"[yellow]{item.tier.value}[/]"
        table.add_row(item.category.value, name, escape(item.description), item.action_key, tier)
    console.print(table)


def _render_results(console: Console, report: RunReport, plain: bool = False) -> None:
    if plain:
        print(format_results(report.results))
        return
    title = "Dry-run results" if report.dry_run else "Results"
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("Key", style="cyan")
    table.add_column("Status")
    table.add_column("Message")
    table.add_column("Freed", justify="right")
    for result in report.results:
        style = STATUS_STYLES[result.status]
        table.add_row(
            result.action_key,
            f"[{style}]{result.status.value}[/]",
            escape(result.message),
            format_size(result.bytes_freed) if result.bytes_freed else "-",
        )
    console.print(table)
    if report.bytes_freed:
        console.print(f"[bold green]Freed about {format_size(report.bytes_freed)}[/]")


if __name__ == "__main__":
    sys.exit(main())
