"""Command-line interface for inspecting a metamorph project."""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import subprocess
import sys
import threading
from collections.abc import Sequence
from datetime import datetime
from os import PathLike
from pathlib import Path

from metamorph import config as config_module
from metamorph.config import Config, ConfigError
from metamorph.constants import AGENT_LOG_DIR, AGENT_PROMPT_FILE, CONFIG_FILE
from metamorph.state import DaemonError, get_status, is_running

VERSION = "dev"
COMMIT = ""
DATE = ""

DEFAULT_TAIL = 50
_FOLLOW_INTERVAL = 0.5
_TABLE_PADDING = 2
_ZERO_TIME_DISPLAY = "0001-01-01 00:00:00"
_INTEGER_RE = re.compile(r"[+-]?\d+")


class _CommandError(Exception):
    """A command failed with a message meant for the user."""


_REPORTED_ERRORS = (
    _CommandError,
    ConfigError,
    DaemonError,
    OSError,
    ValueError,
    subprocess.SubprocessError,
)


def resolve_project_dir() -> Path:
    """Return the current directory if it holds a metamorph.toml."""
    try:
        directory = Path.cwd()
    except OSError as exc:
        raise _CommandError(f"failed to get working directory: {exc}") from exc
    if not (directory / CONFIG_FILE).exists():
        raise FileNotFoundError(
            f"not a metamorph project (metamorph.toml not found in {directory})"
        )
    return directory


def load_config(directory: str | PathLike[str]) -> Config:
    """Load metamorph.toml from the given directory."""
    return config_module.load(Path(directory) / CONFIG_FILE)


def _remainder(value: int, divisor: int) -> int:
    rest = abs(value) % divisor
    return -rest if value < 0 else rest


def _truncate(value: float) -> int:
    return int(value)


def format_duration(secs: int) -> str:
    """Format a number of seconds as e.g. '2h 15m 30s'."""
    hours = _truncate(secs / 3600)
    minutes = _remainder(_truncate(secs / 60), 60)
    seconds = _remainder(secs, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes > 0:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def format_relative_time(t: datetime) -> str:
    """Format a past moment relative to now, e.g. '2m ago'."""
    elapsed = (datetime.now(t.tzinfo) - t).total_seconds()
    if elapsed < 60:
        return f"{_truncate(elapsed)}s ago"
    if elapsed < 3600:
        return f"{_truncate(elapsed / 60)}m ago"
    if elapsed < 24 * 3600:
        return f"{_truncate(elapsed / 3600)}h ago"
    return f"{_truncate(elapsed / 3600 / 24)}d ago"


def extract_session_number(name: str) -> int:
    """Parse N from 'session-N.log'; unparsable names give 0."""
    name = name.removeprefix("session-").removesuffix(".log")
    if not _INTEGER_RE.fullmatch(name):
        return 0
    return int(name)


def find_latest_log(directory: str | PathLike[str]) -> Path:
    """Return the session-*.log file with the highest session number."""
    log_dir = Path(directory)
    try:
        names = sorted(os.listdir(log_dir))
    except FileNotFoundError as exc:
        raise FileNotFoundError(
            "no logs found for this agent (directory does not exist)"
        ) from exc
    except OSError as exc:
        raise OSError(f"failed to read log directory: {exc}") from exc

    log_files = [n for n in names if n.startswith("session-") and n.endswith(".log")]
    if not log_files:
        raise FileNotFoundError(f"no session log files found in {log_dir}")
    latest = max(reversed(log_files), key=extract_session_number)
    return log_dir / latest


def _format_table(rows: Sequence[Sequence[str]]) -> list[str]:
    """Align columns the way an elastic tab writer would."""
    columns = max(len(row) for row in rows)
    widths = [0] * columns
    for row in rows:
        for index, cell in enumerate(row[:-1]):
            widths[index] = max(widths[index], len(cell))
    lines = []
    for row in rows:
        cells = [cell.ljust(widths[index] + _TABLE_PADDING) for index, cell in enumerate(row[:-1])]
        cells.append(row[-1])
        lines.append("".join(cells))
    return lines


def _run_status(args: argparse.Namespace) -> None:
    project_dir = resolve_project_dir()
    try:
        state = get_status(project_dir)
    except DaemonError as exc:
        if not is_running(project_dir):
            print("Daemon is not running.")
            return
        raise _CommandError(f"failed to read status: {exc}") from exc

    if args.json:
        print(json.dumps(state.to_dict(), indent=2))
        return

    if state.started_at is None:
        started = _ZERO_TIME_DISPLAY
    else:
        started = state.started_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")

    print(f"Project:  {state.project_name}")
    print(f"Status:   {state.status}")
    print(f"Uptime:   {format_duration(state.stats.uptime_seconds)}")
    print(f"Started:  {started}")
    print()

    if state.agents:
        rows = [["AGENT", "ROLE", "STATUS", "TASK", "LAST ACTIVITY"]]
        for agent in state.agents:
            task = agent.current_task if agent.current_task is not None else "-"
            last = "-" if agent.last_activity is None else format_relative_time(agent.last_activity)
            rows.append([f"agent-{agent.id}", agent.role, agent.status, task, last])
        for line in _format_table(rows):
            print(line)
        print()

    stats = state.stats
    print(
        f"Commits: {stats.total_commits}  Sessions: {stats.total_sessions}  "
        f"Tasks completed: {stats.tasks_completed}"
    )


def _read_from(path: Path, offset: int) -> bytes:
    try:
        with open(path, "rb") as handle:
            if os.fstat(handle.fileno()).st_size <= offset:
                return b""
            handle.seek(offset)
            return handle.read()
    except OSError:
        return b""


def _follow(path: Path, offset: int) -> None:
    stop_requested = threading.Event()
    previous = signal.signal(signal.SIGTERM, lambda signum, frame: stop_requested.set())
    try:
        while not stop_requested.wait(_FOLLOW_INTERVAL):
            new_data = _read_from(path, offset)
            if new_data:
                sys.stdout.write(new_data.decode("utf-8", errors="replace"))
                sys.stdout.flush()
                offset += len(new_data)
    except KeyboardInterrupt:
        pass
    finally:
        signal.signal(signal.SIGTERM, previous)


def _run_logs(args: argparse.Namespace) -> None:
    if not _INTEGER_RE.fullmatch(args.agent_id):
        raise _CommandError(f"invalid agent ID {json.dumps(args.agent_id)}: must be a number")
    agent_id = int(args.agent_id)

    project_dir = resolve_project_dir()
    log_dir = project_dir / AGENT_LOG_DIR / f"agent-{agent_id}"
    log_file = find_latest_log(log_dir)

    try:
        data = log_file.read_bytes()
    except OSError as exc:
        raise _CommandError(f"failed to read log file: {exc}") from exc

    lines = data.decode("utf-8", errors="replace").split("\n")
    if 0 < args.tail < len(lines):
        lines = lines[-args.tail:]
    for line in lines:
        print(line)

    if args.follow:
        sys.stdout.flush()
        _follow(log_file, len(data))


def _run_prompt(args: argparse.Namespace) -> None:
    project_dir = resolve_project_dir()
    prompt_path = project_dir / AGENT_PROMPT_FILE

    if args.edit:
        editor = os.environ.get("EDITOR") or "vi"
        result = subprocess.run([editor, str(prompt_path)])
        if result.returncode != 0:
            raise _CommandError(f"exit status {result.returncode}")
        return

    try:
        content = prompt_path.read_text()
    except FileNotFoundError as exc:
        raise _CommandError(
            "AGENT_PROMPT.md not found (run 'metamorph init' first)"
        ) from exc
    except OSError as exc:
        raise _CommandError(f"failed to read AGENT_PROMPT.md: {exc}") from exc
    print(content, end="")


def _run_version(args: argparse.Namespace) -> None:
    if COMMIT and DATE:
        print(f"metamorph version {VERSION} (commit {COMMIT}, built {DATE})")
    else:
        print(f"metamorph version {VERSION}")


def _add_verbose(parser: argparse.ArgumentParser, default: object) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=default,
        help="Enable verbose (debug) logging",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="metamorph",
        description="Metamorph orchestrates multiple AI coding agents working in parallel on your codebase.",
    )
    _add_verbose(parser, False)
    parser.set_defaults(handler=None)
    commands = parser.add_subparsers(title="commands")

    status = commands.add_parser("status", help="Show the status of running agents")
    status.add_argument("--json", action="store_true", help="Output status as JSON")
    status.set_defaults(handler=_run_status)

    logs = commands.add_parser("logs", help="View agent logs")
    logs.add_argument("agent_id", metavar="agent-id")
    logs.add_argument("-f", "--follow", action="store_true", help="Follow log output")
    logs.add_argument(
        "--tail", type=int, default=DEFAULT_TAIL, help="Number of lines to show from the end"
    )
    logs.set_defaults(handler=_run_logs)

    prompt = commands.add_parser("prompt", help="Manage agent prompt templates")
    prompt.add_argument("--show", action="store_true", help="Show the agent prompt (default)")
    prompt.add_argument("--edit", action="store_true", help="Open the agent prompt in $EDITOR")
    prompt.set_defaults(handler=_run_prompt)

    version = commands.add_parser("version", help="Print the version of metamorph")
    version.set_defaults(handler=_run_version)

    for sub in (status, logs, prompt, version):
        _add_verbose(sub, argparse.SUPPRESS)
    return parser


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        stream=sys.stderr,
        format="level=%(levelname)s msg=%(message)s",
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Run the metamorph command line and return the exit status."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.handler is None:
        parser.print_help()
        return 0
    try:
        args.handler(args)
    except _REPORTED_ERRORS as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())