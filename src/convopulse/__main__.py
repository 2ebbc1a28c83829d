"""Command-line interface for convopulse.

Usage:
    convopulse                 # serve the live analytics API (default)
    convopulse serve --port 3333 --no-browser
    convopulse snapshot        # one refresh, write a JSON report
    convopulse stats           # one refresh, print a summary
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import sys
import webbrowser
from collections.abc import Sequence
from pathlib import Path

from rich.console import Console
from rich.table import Table

from convopulse import __version__
from convopulse.config import Config, load_config
from convopulse.logging import get_logger, setup_logging

log = get_logger("cli")

console = Console()


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="convopulse",
        description="Live analytics for local assistant conversation logs",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Extra config file, merged after the standard locations",
    )
    parser.add_argument(
        "--root",
        type=Path,
        help="Conversation root directory (default: ~/.claude)",
    )

    subparsers = parser.add_subparsers(dest="mode", help="Command")

    serve_parser = subparsers.add_parser(
        "serve",
        help="Serve the REST API and WebSocket feed",
    )
    serve_parser.add_argument("--host", help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Port to listen on")
    serve_parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Do not open a browser",
    )

    subparsers.add_parser(
        "snapshot",
        help="Refresh once and write an analytics snapshot",
    )
    subparsers.add_parser(
        "stats",
        help="Refresh once and print a summary",
    )

    return parser


def build_config(parsed: argparse.Namespace) -> Config:
    config = load_config(root_dir=parsed.root, config_file=parsed.config)
    if parsed.root is not None:
        config.paths = dataclasses.replace(config.paths, root_dir=str(parsed.root))
    if parsed.verbose:
        config.logging = dataclasses.replace(config.logging, verbose=min(1 + parsed.verbose, 4))
    if getattr(parsed, "host", None):
        config.server = dataclasses.replace(config.server, host=parsed.host)
    if getattr(parsed, "port", None):
        config.server = dataclasses.replace(config.server, port=parsed.port)
    return config


async def run_serve(config: Config, open_browser: bool) -> int:
    from convopulse.dashboard.server import DashboardServer
    from convopulse.service import AnalyticsService

    service = AnalyticsService(config)
    await service.start()
    server = DashboardServer(service)
    try:
        await server.start()
    except RuntimeError:
        await service.stop()
        raise

    console.print(f"[green]Analytics running at[/green] [bold]{server.url}[/bold]")
    console.print(f"[dim]WebSocket: ws://{server.host}:{server.port}{config.websocket.path}[/dim]")
    console.print("[dim]Press Ctrl+C to stop[/dim]")
    if open_browser:
        webbrowser.open(server.url + "/api/data")

    try:
        await server.wait()
    finally:
        await service.stop()
        await server.stop()
    return 0


async def run_snapshot(config: Config) -> int:
    from convopulse.service import AnalyticsService

    service = AnalyticsService(config, watch=False)
    try:
        path = await service.write_snapshot()
    finally:
        await service.cache.close()
    console.print(f"[green]Snapshot written:[/green] {path}")
    return 0


async def run_stats(config: Config) -> int:
    from convopulse.service import AnalyticsService

    service = AnalyticsService(config, watch=False)
    try:
        result = await service.load_data()
        session = await service.session_payload()
    finally:
        await service.cache.close()

    summary = result.summary
    table = Table(title=f"Conversations in {service.root_dir}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Conversations", str(summary.get("totalConversations", 0)))
    table.add_row("Active", str(summary.get("activeConversations", 0)))
    table.add_row("Tokens", f"{summary.get('totalTokens', 0):,}")
    table.add_row("Data size", str(summary.get("totalFileSize", "")))
    table.add_row("Active projects", str(summary.get("activeProjects", 0)))
    table.add_row("Usage windows", str(summary.get("claudeSessionsDetail", "")))
    console.print(table)

    sessions = Table(title="Recent sessions")
    sessions.add_column("Session")
    sessions.add_column("Start")
    sessions.add_column("Messages", justify="right")
    sessions.add_column("Conversations", justify="right")
    sessions.add_column("Tokens", justify="right")
    sessions.add_column("Active")
    for item in session.get("sessions", [])[:10]:
        sessions.add_row(
            item["id"],
            str(item["startTime"]),
            str(item["messageCount"]),
            str(item["conversationCount"]),
            f"{item['tokenUsage']['total']:,}",
            "yes" if item["isActive"] else "",
        )
    console.print(sessions)

    timer = session.get("timer", {})
    if timer.get("hasActiveSession"):
        console.print(
            f"Current session: {timer['messagesUsed']}/{timer['messagesLimit'] or '-'} messages, "
            f"{timer['timeRemainingFormatted']} left ({timer['planName']})"
        )
    for warning in session.get("warnings", []):
        console.print(f"[yellow]{warning['message']}[/yellow]")
    return 0


def run_cli(args: Sequence[str]) -> int:
    """Run the CLI with the given arguments."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    config = build_config(parsed)
    setup_logging(config.logging, force_stderr=parsed.mode != "serve" and parsed.verbose > 0)

    try:
        if parsed.mode in (None, "serve"):
            return asyncio.run(run_serve(config, not getattr(parsed, "no_browser", False)))
        elif parsed.mode == "snapshot":
            return asyncio.run(run_snapshot(config))
        elif parsed.mode == "stats":
            return asyncio.run(run_stats(config))
        else:
            parser.print_help()
            return 1
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")
        return 130
    except OSError as e:
        console.print(f"[red]Error:[/red] {e}")
        log.error("Command failed: %s", e)
        return 1


def main() -> None:
    sys.exit(run_cli(sys.argv[1:]))


if __name__ == "__main__":
    main()
