"""Command-line interface for the Echo tracker backend."""
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from echo_tracker.config import DEFAULT_CONFIG_PATH, TrackerConfig, load_config
from echo_tracker.dashboard.data_retention_policy import DataRetentionManager
from echo_tracker.dashboard.engines.stats_engine import StatsEngine
from echo_tracker.database import Database
from echo_tracker.errors import TrackerError
from echo_tracker.services.user_service import UserService
from echo_tracker.utils.datetime_utils import format_duration
from echo_tracker.utils.log_setup import configure_logging

LOGGER = logging.getLogger("echo_tracker")
console = Console()


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Echo browsing-activity tracker backend.")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Configuration YAML path")
    parser.add_argument("--db", type=Path, help="SQLite database path")
    parser.add_argument("--verbose", action="store_true", help="Verbose logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", help="Bind address")
    serve.add_argument("--port", type=int, help="Bind port")

    create_user = sub.add_parser("create-user", help="Create a user and print its API token")
    create_user.add_argument("username")

    stats = sub.add_parser("stats", help="Print dashboard stats for a user")
    stats.add_argument("user_id")
    stats.add_argument("--start", help="Window start (ISO-8601)")
    stats.add_argument("--end", help="Window end (ISO-8601)")

    cleanup = sub.add_parser("cleanup", help="Delete data older than the retention window")
    cleanup.add_argument("--days", type=int, help="Retention window in days")
    cleanup.add_argument("--dry-run", action="store_true", help="Only count what would be deleted")
    return parser


def config_from_args(args: argparse.Namespace) -> TrackerConfig:
    cfg = load_config(args.config)
    if args.db:
        cfg.db_path = args.db
    if args.verbose:
        cfg.log_level = "DEBUG"
    if args.json_logs:
        cfg.json_logs = True
    if getattr(args, "host", None):
        cfg.host = args.host
    if getattr(args, "port", None) is not None:
        cfg.port = args.port
    if getattr(args, "days", None) is not None:
        cfg.retention_days = args.days
    return cfg


def print_stats(stats: dict) -> None:
    console.print(
        f"[bold]{stats['startDate']} → {stats['endDate']}[/bold]  "
        f"total {format_duration(stats['totalDuration'])}"
    )

    projects = Table(title="By project")
    projects.add_column("Project")
    projects.add_column("Time", justify="right")
    for row in stats["byProject"]:
        projects.add_row(row["projectName"], format_duration(row["totalDuration"]))
    console.print(projects)

    domains = Table(title="Top domains")
    domains.add_column("Domain")
    domains.add_column("Time", justify="right")
    for row in stats["byDomain"]:
        domains.add_row(row["domain"], format_duration(row["totalDuration"]))
    console.print(domains)

    pages = Table(title="Top pages")
    pages.add_column("Title")
    pages.add_column("URL")
    pages.add_column("Time", justify="right")
    for row in stats["topPages"]:
        pages.add_row(row["title"], row["url"], format_duration(row["totalDuration"]))
    console.print(pages)


def run_command(args: argparse.Namespace, cfg: TrackerConfig) -> int:
    if args.command == "serve":
        import uvicorn

        from echo_tracker.dashboard.api import create_app

        LOGGER.info("Starting API on %s:%s (db %s)", cfg.host, cfg.port, cfg.db_path)
        uvicorn.run(create_app(cfg), host=cfg.host, port=cfg.port, log_level=cfg.log_level.lower())
        return 0

    db = Database(cfg.db_path).initialize()

    if args.command == "create-user":
        user, token = UserService(db).create_user(args.username)
        console.print(f"[green]Created user[/green] {user.username} ({user.id})")
        console.print(f"API token: [bold]{token}[/bold]")
        return 0

    if args.command == "stats":
        engine = StatsEngine(db, cfg)
        stats = asyncio.run(engine.get_stats(args.user_id, args.start, args.end))
        print_stats(stats)
        return 0

    if args.command == "cleanup":
        result = DataRetentionManager(db, cfg).cleanup(dry_run=args.dry_run)
        verb = "Would delete" if args.dry_run else "Deleted"
        console.print(
            f"{verb} {result['deletedLogs']} logs and {result['deletedPages']} pages "
            f"older than {result['cutoffDate']}"
        )
        return 0

    return 2


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)
    cfg = config_from_args(args)
    configure_logging(cfg.log_level, cfg.json_logs)
    try:
        return run_command(args, cfg)
    except TrackerError as exc:
        console.print(f"[red]Error:[/red] {exc.message}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
