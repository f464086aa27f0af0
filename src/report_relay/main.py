"""Main entry point for the report relay."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from .classifier import FileClassifier
from .config import RelayConfig
from .daemon import ReportRelayDaemon
from .ledger import SentLedger
from .models import FileState


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        argv: Arguments to parse; defaults to ``sys.argv``.

    Returns:
        Parsed arguments.

    """
    parser = argparse.ArgumentParser(
        prog="report-relay",
        description="Relay PDF reports from a watched folder to Telegram topics",
    )

    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help="Path to configuration file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Run command (default)
    run_parser = subparsers.add_parser("run", help="Run the relay")
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Deliver what is in the folder now and exit",
    )

    subparsers.add_parser("scan", help="List reports in the folder without sending")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_parser.add_argument(
        "--init",
        action="store_true",
        help="Create default configuration file",
    )
    config_parser.add_argument(
        "--show",
        action="store_true",
        help="Show current configuration",
    )

    ledger_parser = subparsers.add_parser("ledger", help="Manage the sent-file ledger")
    ledger_parser.add_argument(
        "--show",
        action="store_true",
        help="List files recorded as sent",
    )
    ledger_parser.add_argument(
        "--clear",
        action="store_true",
        help="Back up and empty the ledger",
    )

    subparsers.add_parser("stats", help="Show the last saved statistics")

    return parser.parse_args(argv)


def _ledger(config: RelayConfig) -> SentLedger:
    ledger = SentLedger(config.ledger_file, logging.getLogger("report-relay"))
    ledger.load_all()
    return ledger


def cmd_scan(config: RelayConfig, args: argparse.Namespace) -> int:
    """Execute scan command.

    Args:
        config: Relay configuration.
        args: Parsed arguments.

    Returns:
        Exit code.

    """
    console = Console()
    folder = config.reports_folder
    if not folder.is_dir():
        console.print(f"[red]Reports folder does not exist: {folder}[/red]")
        return 1

    classifier = FileClassifier.from_config(config)
    ledger = _ledger(config)
    files = sorted(
        p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in config.allowed_extensions
    )
    if not files:
        console.print("[green]No reports found[/green]")
        return 0

    table = Table(title=f"Found {len(files)} reports in {folder}")
    table.add_column("File", style="cyan")
    table.add_column("Destination", style="green")
    table.add_column("Priority")
    table.add_column("Sent", style="dim")

    for path in files:
        classification = classifier.classify(path.name)
        table.add_row(
            path.name,
            classification.destination.label if classification else "[red]none[/red]",
            classification.priority.name.lower() if classification else "-",
            "yes" if ledger.contains(path) else "no",
        )

    console.print(table)
    return 0


def cmd_config(config: RelayConfig, args: argparse.Namespace) -> int:
    """Execute config command.

    Args:
        config: Relay configuration.
        args: Parsed arguments.

    Returns:
        Exit code.

    """
    console = Console()

    if args.init:
        config_path = args.config or RelayConfig.get_config_path()
        if config_path.exists():
            console.print(f"[yellow]Config already exists: {config_path}[/yellow]")
            return 1
        config.save(config_path)
        console.print(f"[green]Created config: {config_path}[/green]")
        return 0

    if args.show:
        table = Table(title="Current Configuration")
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Reports folder", str(config.reports_folder))
        table.add_row("Chat id", config.chat_id or "[red]not set[/red]")
        table.add_row("Bot token", "set" if config.bot_token else "[red]not set[/red]")
        for keyword, destination in FileClassifier.from_config(config).rules:
            table.add_row(f"Topic for '{keyword}'", f"{destination.label} (#{destination.topic_id})")
        table.add_row("Files per minute", str(config.max_files_per_minute))
        table.add_row("Concurrent uploads", str(config.max_concurrent_uploads))
        table.add_row("Scan interval", f"{config.scan_interval}s")
        table.add_row("Ledger file", str(config.ledger_file))
        table.add_row("Statistics file", str(config.stats_file))
        table.add_row("Log file", str(config.log_file))
        table.add_row("Log level", config.log_level)

        console.print(table)
        return 0

    console.print("[yellow]Use --init or --show[/yellow]")
    return 1


def cmd_ledger(config: RelayConfig, args: argparse.Namespace) -> int:
    """Execute ledger command.

    Args:
        config: Relay configuration.
        args: Parsed arguments.

    Returns:
        Exit code.

    """
    console = Console()
    ledger = _ledger(config)

    if args.show:
        if not len(ledger):
            console.print("[green]Ledger is empty[/green]")
            return 0
        table = Table(title=f"Sent files ({len(ledger)})")
        table.add_column("Path", style="cyan")
        for path in ledger.paths():
            table.add_row(path)
        console.print(table)
        return 0

    if args.clear:
        backup = ledger.clear()
        if backup is None:
            console.print("[green]Ledger was already empty[/green]")
        else:
            console.print(f"[green]Ledger cleared, backup saved to {backup}[/green]")
        return 0

    console.print("[yellow]Use --show or --clear[/yellow]")
    return 1


def cmd_stats(config: RelayConfig, args: argparse.Namespace) -> int:
    """Execute stats command.

    Args:
        config: Relay configuration.
        args: Parsed arguments.

    Returns:
        Exit code.

    """
    console = Console()
    if not config.stats_file.exists():
        console.print("[yellow]No statistics saved yet[/yellow]")
        return 1

    try:
        data = json.loads(config.stats_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        console.print(f"[red]Could not read statistics: {e}[/red]")
        return 1

    table = Table(title=f"Statistics (saved {data.get('saved_at', '?')})")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Running since", str(data.get("started_at", "?")))
    for outcome, count in sorted(data.get("outcomes", {}).items()):
        table.add_row(outcome.capitalize(), str(count))
    for report_type, count in sorted(data.get("delivered_by_type", {}).items()):
        table.add_row(f"Delivered: {report_type}", str(count))
    table.add_row("Peak queue depth", str(data.get("peak_queue_depth", 0)))
    table.add_row("Watcher restarts", str(data.get("watcher_restarts", 0)))
    if issues := data.get("health_issues"):
        table.add_row("Health issues", "\n".join(issues))

    console.print(table)
    return 0


def cmd_run(config: RelayConfig, args: argparse.Namespace) -> int:
    """Execute run command.

    Args:
        config: Relay configuration.
        args: Parsed arguments.

    Returns:
        Exit code.

    """
    daemon = ReportRelayDaemon(config)

    if getattr(args, "once", False):
        try:
            results = asyncio.run(daemon.run_once())
        except ValueError as e:
            Console().print(f"[red]{e}[/red]")
            return 2
        delivered = sum(1 for r in results if r.state is FileState.DELIVERED)
        print(f"Processed {len(results)} reports, {delivered} delivered")
        return 0 if delivered == len(results) else 1

    try:
        asyncio.run(daemon.run_daemon())
    except ValueError as e:
        Console().print(f"[red]{e}[/red]")
        return 2
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns:
        Exit code.

    """
    args = parse_args(argv)
    try:
        config = RelayConfig.load(args.config)
    except ValueError as e:
        Console().print(f"[red]{e}[/red]")
        return 2

    # Default to run command
    command = args.command or "run"

    if command == "scan":
        return cmd_scan(config, args)
    elif command == "config":
        return cmd_config(config, args)
    elif command == "ledger":
        return cmd_ledger(config, args)
    elif command == "stats":
        return cmd_stats(config, args)
    elif command == "run":
        return cmd_run(config, args)
    else:
        print(f"Unknown command: {command}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
