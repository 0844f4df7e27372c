"""
Command-line front end for pyplayground.

Runs one snippet through the execution host and renders its output and
errors with Rich. Output lines are streamed as the sandbox emits them.
"""

from __future__ import annotations

import argparse
import sys
import threading
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text

from .core.config import PlaygroundConfig
from .core.exceptions import ConfigurationError
from .core.logging import setup_logging
from .execution.host import ExecutionHost, RunSnapshot, RunStatus

EXIT_COMPLETED = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_TIMEOUT = 3

COLORS = {
    "accent": "#f7df1e",
    "primary": "#61dafb",
    "success": "#9ECE6A",
    "error": "#F7768E",
    "muted": "#565F89",
    "border": "#3B4261",
}


class OutputStreamer:
    """Prints each new output line of the current run exactly once."""

    def __init__(self, console: Console):
        self.console = console
        self._lock = threading.Lock()
        self._run_id: str | None = None
        self._printed = 0

    def __call__(self, snapshot: RunSnapshot) -> None:
        with self._lock:
            if snapshot.run_id != self._run_id:
                self._run_id = snapshot.run_id
                self._printed = 0
            for line in snapshot.output_lines[self._printed :]:
                self.console.print(Text(line), highlight=False)
            self._printed = max(self._printed, len(snapshot.output_lines))


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pyplayground",
        description="Run a Python snippet in an isolated sandbox process.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the default demo snippet
  python -m pyplayground

  # Run a file, or '-' for stdin
  python -m pyplayground script.py

  # Run inline code
  python -m pyplayground -c "print(1, 2)"
        """,
    )
    parser.add_argument("file", nargs="?", help="Python file to run ('-' reads stdin)")
    parser.add_argument("-c", "--code", help="Source code to run instead of a file")
    parser.add_argument("--config", type=Path, help="YAML or JSON configuration file")
    parser.add_argument(
        "--echo",
        action="store_true",
        help="Also let the sandbox write captured prints to its own stdout",
    )
    parser.add_argument(
        "--traceback", action="store_true", help="Show the full traceback on failure"
    )
    parser.add_argument(
        "--show-source", action="store_true", help="Print the source before running it"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop waiting (and cancel the run) after this many seconds",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def _read_source(args: argparse.Namespace, config: PlaygroundConfig) -> str:
    if args.code is not None:
        return args.code
    if args.file == "-":
        return sys.stdin.read()
    if args.file:
        path = Path(args.file)
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read {path}: {e}") from e
    return config.default_snippet


def _render_result(console: Console, snapshot: RunSnapshot, show_traceback: bool) -> None:
    if snapshot.status is RunStatus.FAILED:
        body = snapshot.error_message or ""
        if show_traceback and snapshot.error_detail:
            body = snapshot.error_detail.rstrip()
        console.print(
            Panel(
                Text(body, style=COLORS["error"]),
                title=Text("Error", style=f"bold {COLORS['error']}"),
                title_align="left",
                border_style=COLORS["error"],
            )
        )
    elif snapshot.status is RunStatus.COMPLETED:
        if not snapshot.output_lines:
            console.print(Text("(no output)", style=COLORS["muted"]))
        console.print(Text("✓ Completed", style=COLORS["success"]))


def main(argv: list[str] | None = None, console: Console | None = None) -> int:
    """Main entry point for the CLI."""
    args = _parse_args(argv)
    console = console or Console()

    try:
        config = (
            PlaygroundConfig.load_from_file(args.config) if args.config else PlaygroundConfig()
        )
        config.validate()
        # Captured lines are streamed by the CLI itself.
        config.sandbox.echo_output = args.echo
        source_code = _read_source(args, config)
    except ConfigurationError as e:
        console.print(Text(f"Configuration error: {e}", style=COLORS["error"]))
        return EXIT_USAGE

    setup_logging("DEBUG" if args.verbose else config.log_level)

    if args.show_source:
        console.print(
            Panel(
                Syntax(source_code, "python", line_numbers=True),
                title=Text(config.name, style=f"bold {COLORS['primary']}"),
                title_align="left",
                border_style=COLORS["border"],
            )
        )

    with ExecutionHost(config.sandbox) as host:
        host.add_listener(OutputStreamer(console))
        host.start_run(source_code)
        snapshot = host.wait(args.timeout)
        if not snapshot.is_terminal:
            host.reset_run()
            console.print(
                Text(f"Run did not finish within {args.timeout}s; cancelled.", style=COLORS["error"])
            )
            return EXIT_TIMEOUT

    _render_result(console, snapshot, args.traceback)
    return EXIT_FAILED if snapshot.status is RunStatus.FAILED else EXIT_COMPLETED
