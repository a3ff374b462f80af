"""Command-line interface for rovosession.

Works on captured agent streams, so protocol problems can be reproduced
without a running RovoDev process:

    rovosession events capture.sse
    rovosession replay capture.sse
    git push 2>&1 | rovosession pr-link - --branch my-branch
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import AsyncIterator, Sequence
from pathlib import Path

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rovosession import __version__

console = Console()
err_console = Console(stderr=True)

CHUNK_SIZE = 4096


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="rovosession",
        description="RovoDev session protocol tools",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=None,
        help="Increase log verbosity (can be repeated, up to -vvvv)",
    )
    parser.add_argument(
        "--workspace",
        type=Path,
        help="Project directory for .rovodev/config.yaml",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    events_parser = subparsers.add_parser(
        "events",
        help="Print the typed events of a captured stream",
    )
    events_parser.add_argument("capture", type=Path, help="Captured stream file")
    events_parser.add_argument(
        "--framing",
        choices=["sse", "jsonl"],
        help="Stream framing (default: agent.framing from config)",
    )
    events_parser.add_argument(
        "--json",
        action="store_true",
        help="Print one JSON object per event",
    )

    replay_parser = subparsers.add_parser(
        "replay",
        help="Run a captured stream through a session and summarise it",
    )
    replay_parser.add_argument("capture", type=Path, help="Captured stream file")
    replay_parser.add_argument(
        "--framing",
        choices=["sse", "jsonl"],
        help="Stream framing (default: agent.framing from config)",
    )

    link_parser = subparsers.add_parser(
        "pr-link",
        help="Print the pull request link found in git push output",
    )
    link_parser.add_argument("output", help="File with push output, or - for stdin")
    link_parser.add_argument("--branch", help="Pushed branch, when the host prints no link")

    return parser


async def _read_chunks(path: Path) -> AsyncIterator[bytes]:
    with open(path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            yield chunk


def _summary(event) -> str:
    from rovosession.events.models import (
        AgentExceptionEvent,
        ParsingErrorEvent,
        StatusEvent,
        TextEvent,
        ToolCallEvent,
        ToolReturnEvent,
        WarningEvent,
    )

    if isinstance(event, TextEvent):
        return event.content
    if isinstance(event, ToolCallEvent):
        return f"{event.tool_name}({event.args}) [{event.tool_call_id}]"
    if isinstance(event, ToolReturnEvent):
        return f"{event.tool_name} -> {(event.content or '')[:80]} [{event.tool_call_id}]"
    if isinstance(event, (AgentExceptionEvent, WarningEvent)):
        return event.message
    if isinstance(event, StatusEvent):
        return "available" if event.data.is_available else "unavailable"
    if isinstance(event, ParsingErrorEvent):
        return f"{event.reason}: {event.frame[:80]!r}"
    return ""


async def run_events(capture: Path, framing: str, as_json: bool) -> int:
    from rovosession.events.models import ParsingErrorEvent, event_to_dict
    from rovosession.events.parser import EventStream

    stream = EventStream(framing=framing)
    errors = 0
    async for event in stream.events(_read_chunks(capture)):
        if isinstance(event, ParsingErrorEvent):
            errors += 1
        if as_json:
            console.print_json(json.dumps(event_to_dict(event)))
        else:
            style = "red" if isinstance(event, ParsingErrorEvent) else "cyan"
            console.print(f"[{style}]{event.event_kind}[/{style}] {escape(_summary(event))}", highlight=False)
    if errors:
        err_console.print(f"[yellow]{errors} frame(s) could not be parsed[/yellow]")
    return 0


async def run_replay(capture: Path, config) -> int:
    from rovosession.session.controller import SessionController

    async with SessionController(config=config) as controller:
        await controller.consume(_read_chunks(capture))
        await controller.drain()
        session = controller.session

        console.print(f"[bold]Session[/bold] {session.session_id}")
        console.print(f"[bold]State[/bold] {session.state}")

        if session.tools.records:
            table = Table(title="Tool calls")
            table.add_column("Call id")
            table.add_column("Tool")
            table.add_column("Status")
            for record in session.tools.records:
                table.add_row(record.call_id, record.tool_name, record.status.value)
            console.print(table)

        for link in session.pr_links:
            console.print(f"[green]Pull request:[/green] {link}")
        for anomaly in session.anomalies:
            console.print(f"[yellow]anomaly[/yellow] {anomaly.kind.value}: {escape(anomaly.message)}")
        for exc in session.exceptions:
            console.print(f"[red]exception[/red] {escape(exc.type or exc.title or '')}: {escape(exc.message)}")

    return 0


def run_pr_link(source: str, branch: str | None, config) -> int:
    from rovosession.git.links import GitOutputLinkResolver

    text = sys.stdin.read() if source == "-" else Path(source).read_text(encoding="utf-8")
    resolver = GitOutputLinkResolver.from_config(config.links)

    link = resolver.find_link(text)
    if link is None:
        branch = branch or resolver.pushed_branch(text)
        if branch:
            link = resolver.build_link_from_push_output(text, branch)
    if link is None:
        err_console.print("[red]No pull request link found[/red]")
        return 1
    console.print(link, highlight=False)
    return 0


def run_cli(args: Sequence[str]) -> int:
    """Run the CLI with the given arguments."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if parsed.command is None:
        parser.print_help()
        return 1

    from rovosession.config import load_config
    from rovosession.logging import setup_logging

    config = load_config(workspace_root=str(parsed.workspace) if parsed.workspace else None)
    if parsed.verbose is not None:
        config.logging.verbose = min(parsed.verbose + 1, 4)
    setup_logging(config.logging)

    if parsed.command in ("events", "replay"):
        if not parsed.capture.exists():
            err_console.print(f"[red]Error: capture not found: {parsed.capture}[/red]")
            return 1
        framing = parsed.framing or config.agent.framing
        if parsed.command == "events":
            return asyncio.run(run_events(parsed.capture, framing, parsed.json))
        config.agent.framing = framing
        return asyncio.run(run_replay(parsed.capture, config))
    elif parsed.command == "pr-link":
        try:
            return run_pr_link(parsed.output, parsed.branch, config)
        except OSError as e:
            err_console.print(f"[red]Error: {e}[/red]")
            return 1
    else:
        parser.print_help()
        return 1


def main() -> int:
    """Main entry point for the rovosession CLI."""
    return run_cli(sys.argv[1:])
