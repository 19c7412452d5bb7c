#!/usr/bin/env python3
"""toolstream - run commands as concurrent tool calls and watch the stream.

Each positional COMMAND becomes one tool call. All calls run concurrently and
their events are printed in multiplexer order.

Usage:
    # Rendered output
    python -m toolstream "pytest -q" "npm test"

    # JSON lines, one event per line
    python -m toolstream --json "make build"

    # Custom timeout and working directory
    python -m toolstream --timeout 30 --cwd ./app "cargo test"

Ctrl-C cancels all running calls (graceful signal, then kill after the grace
period). The exit code is 0 only if every call succeeded with exit code 0.
"""

import argparse
import asyncio
import logging
import signal
import sys
from contextlib import suppress
from typing import Dict, List, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from .config import StreamingConfig
from .events import StreamEvent, StreamEventType
from .protocol import ExecutionResult, Outcome
from .session import ToolExecutionSession


# Outcome symbols and styles for the summary table
OUTCOME_STYLES = {
    Outcome.SUCCESS.value: ("●", "green"),
    Outcome.ERROR.value: ("✗", "red"),
    Outcome.CANCELLED.value: ("◌", "yellow"),
    Outcome.TIMEOUT.value: ("◐", "yellow"),
}


class EventPrinter:
    """Consumer that prints stream events to a console."""

    def __init__(self, console: Console, as_json: bool = False):
        self._console = console
        self._as_json = as_json

    def __call__(self, event: StreamEvent) -> None:
        if self._as_json:
            self._console.print(event.to_json(), markup=False, highlight=False, soft_wrap=True)
            return

        etype = event.type
        if etype == StreamEventType.TOOL_CALL_START:
            self._console.print(Text(f"▶ {event.tool_call_id} started ({event.name})", style="bold cyan"))
        elif etype == StreamEventType.TOOL_CALL_ARG_FINISH:
            self._console.print(Text(f"  {event.tool_call_id}: $ {event.args.get('command', '')}", style="dim"))
        elif etype == StreamEventType.TOOL_PROGRESS:
            self._print_progress(event)
        elif etype == StreamEventType.TOOL_RESULT:
            symbol, style = OUTCOME_STYLES.get(event.outcome, ("?", "yellow"))
            exit_code = (event.result or {}).get("exit_code")
            self._console.print(Text(
                f"{symbol} {event.tool_call_id} {event.outcome} (exit {exit_code})",
                style=style,
            ))
        elif etype == StreamEventType.TEXT_DELTA:
            self._console.print(event.delta, end="", markup=False, highlight=False)
        elif etype == StreamEventType.TOOL_CALL_ARG_DELTA:
            # The finished arguments are printed once complete
            pass

    def _print_progress(self, event) -> None:
        kind = event.progress.get("kind")
        style = {"stdout": "", "stderr": "red", "status": "yellow"}.get(kind, "")
        for line in event.content.splitlines() or [""]:
            text = Text(f"[{event.tool_call_id}] ", style="dim")
            text.append(line, style=style)
            self._console.print(text, highlight=False)


def print_summary(console: Console, commands: Dict[str, str], results: Dict[str, ExecutionResult]) -> None:
    """Print a summary table of all tool calls."""
    table = Table(title="Tool calls")
    table.add_column("Call")
    table.add_column("Command")
    table.add_column("Outcome")
    table.add_column("Exit", justify="right")
    table.add_column("Duration", justify="right")
    for cid, command in commands.items():
        result = results.get(cid)
        if result is None:
            continue
        symbol, style = OUTCOME_STYLES.get(result.outcome.value, ("?", "yellow"))
        table.add_row(
            cid,
            command,
            Text(f"{symbol} {result.outcome.value}", style=style),
            "" if result.exit_code is None else str(result.exit_code),
            f"{result.duration_ms / 1000.0:.2f}s",
        )
    console.print(table)


async def run_commands(
    commands: List[str],
    config: StreamingConfig,
    console: Console,
    as_json: bool = False,
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Dict[str, ExecutionResult]:
    """Run commands concurrently through one session."""
    session = ToolExecutionSession(config=config, consumer=EventPrinter(console, as_json=as_json))

    loop = asyncio.get_running_loop()
    with suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, session.cancel_all)

    calls: Dict[str, str] = {}
    for index, command in enumerate(commands, start=1):
        cid = f"call_{index}"
        calls[cid] = command
        session.start(cid, command, cwd=cwd, timeout=timeout)

    try:
        results = await session.wait_all()
    finally:
        with suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)

    if not as_json:
        print_summary(console, calls, results)
    return results


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="toolstream",
        description="Run commands as concurrent tool calls and print their event stream.",
    )
    parser.add_argument("commands", nargs="+", metavar="COMMAND", help="Command line to run")
    parser.add_argument("--env-file", default=".env", help="Path to .env file (default: .env)")
    parser.add_argument("--timeout", type=float, default=None, help="Per-call timeout in seconds")
    parser.add_argument("--cwd", default=None, help="Working directory for all commands")
    parser.add_argument("--json", action="store_true", help="Print events as JSON lines")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        config = StreamingConfig.from_env(args.env_file)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    console = Console()
    results = asyncio.run(run_commands(
        args.commands,
        config,
        console,
        as_json=args.json,
        cwd=args.cwd,
        timeout=args.timeout,
    ))

    ok = all(r.outcome == Outcome.SUCCESS and r.exit_code == 0 for r in results.values())
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
