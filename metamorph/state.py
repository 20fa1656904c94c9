"""Persisted daemon state, PID handling and small daemon helpers."""

from __future__ import annotations

import json
import os
import re
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from os import PathLike
from pathlib import Path
from typing import Any

from metamorph.constants import DAEMON_PID_FILE, STATE_FILE

SHUTDOWN_TIMEOUT = 30.0
_STOP_POLL_INTERVAL = 0.5

_ZERO_TIME = "0001-01-01T00:00:00Z"
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")
_PID_RE = re.compile(r"[+-]?\d+")
_SLOG_MSG_RE = re.compile(r'msg="([^"]+)"')


class DaemonError(Exception):
    """Raised when a daemon operation fails."""


def _format_time(value: datetime | None) -> str:
    if value is None:
        return _ZERO_TIME
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    total = int(offset.total_seconds())
    sign = "+" if total >= 0 else "-"
    hours, minutes = divmod(abs(total) // 60, 60)
    return f"{text}{sign}{hours:02d}:{minutes:02d}"


def _parse_time(value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"invalid time value: {value!r}")
    if value.startswith("0001-01-01T00:00:00"):
        return None
    text = _FRACTION_RE.sub(r"\1", value)
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _field(data: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if kind is int and isinstance(value, bool):
        raise ValueError(f"{key} must be an integer")
    if not isinstance(value, kind):
        raise ValueError(f"{key} must be of type {kind.__name__}")
    return value


@dataclass
class Stats:
    total_commits: int = 0
    total_sessions: int = 0
    tasks_completed: int = 0
    uptime_seconds: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_commits": self.total_commits,
            "total_sessions": self.total_sessions,
            "tasks_completed": self.tasks_completed,
            "uptime_seconds": self.uptime_seconds,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Stats:
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("stats must be an object")
        return cls(
            total_commits=_field(data, "total_commits", int, 0),
            total_sessions=_field(data, "total_sessions", int, 0),
            tasks_completed=_field(data, "tasks_completed", int, 0),
            uptime_seconds=_field(data, "uptime_seconds", int, 0),
        )


@dataclass
class AgentState:
    id: int = 0
    role: str = ""
    container_id: str = ""
    status: str = ""
    sessions_completed: int = 0
    last_activity: datetime | None = None
    current_task: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "container_id": self.container_id,
            "status": self.status,
            "sessions_completed": self.sessions_completed,
            "last_activity": _format_time(self.last_activity),
            "current_task": self.current_task,
        }

    @classmethod
    def from_dict(cls, data: Any) -> AgentState:
        if not isinstance(data, dict):
            raise ValueError("agent must be an object")
        return cls(
            id=_field(data, "id", int, 0),
            role=_field(data, "role", str, ""),
            container_id=_field(data, "container_id", str, ""),
            status=_field(data, "status", str, ""),
            sessions_completed=_field(data, "sessions_completed", int, 0),
            last_activity=_parse_time(data.get("last_activity")),
            current_task=_field(data, "current_task", str, None),
        )


@dataclass
class State:
    status: str = ""
    started_at: datetime | None = None
    project_name: str = ""
    agents: list[AgentState] = field(default_factory=list)
    stats: Stats = field(default_factory=Stats)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-ready representation stored in state.json."""
        return {
            "status": self.status,
            "started_at": _format_time(self.started_at),
            "project_name": self.project_name,
            "agents": [agent.to_dict() for agent in self.agents],
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> State:
        """Build a State from decoded state.json content."""
        if not isinstance(data, dict):
            raise ValueError("state must be an object")
        agents = data.get("agents")
        if agents is None:
            agents = []
        if not isinstance(agents, list):
            raise ValueError("agents must be an array")
        return cls(
            status=_field(data, "status", str, ""),
            started_at=_parse_time(data.get("started_at")),
            project_name=_field(data, "project_name", str, ""),
            agents=[AgentState.from_dict(agent) for agent in agents],
            stats=Stats.from_dict(data.get("stats")),
        )


def write_state(project_dir: str | PathLike[str], state: State) -> None:
    """Write state.json atomically through a temporary file and rename."""
    state_path = Path(project_dir) / STATE_FILE
    try:
        data = json.dumps(state.to_dict(), indent=2)
    except (TypeError, ValueError) as exc:
        raise DaemonError(f"daemon: failed to marshal state: {exc}") from exc

    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise DaemonError(f"daemon: failed to create state dir: {exc}") from exc

    tmp_path = state_path.with_name(state_path.name + ".tmp")
    try:
        tmp_path.write_text(data)
    except OSError as exc:
        raise DaemonError(f"daemon: failed to write temp state: {exc}") from exc

    try:
        os.replace(tmp_path, state_path)
    except OSError as exc:
        tmp_path.unlink(missing_ok=True)
        raise DaemonError(f"daemon: failed to rename state: {exc}") from exc


def get_status(project_dir: str | PathLike[str]) -> State:
    """Read state.json, marking it stopped if the daemon process is gone."""
    state_path = Path(project_dir) / STATE_FILE
    try:
        raw = state_path.read_text()
    except OSError as exc:
        raise DaemonError(f"daemon: failed to read state: {exc}") from exc

    try:
        state = State.from_dict(json.loads(raw))
    except (ValueError, TypeError) as exc:
        raise DaemonError(f"daemon: failed to parse state: {exc}") from exc

    if state.status == "running" and not is_running(project_dir):
        state.status = "stopped"
        for agent in state.agents:
            if agent.status == "running":
                agent.status = "stopped"
    return state


def is_running(project_dir: str | PathLike[str]) -> bool:
    """Return True if the PID file names a live process."""
    try:
        pid = read_pid(Path(project_dir) / DAEMON_PID_FILE)
    except DaemonError:
        return False
    return process_alive(pid)


def read_pid(path: str | PathLike[str]) -> int:
    """Read and parse a PID from a file."""
    try:
        text = Path(path).read_text()
    except OSError as exc:
        raise DaemonError(f"failed to read pid file: {exc}") from exc
    stripped = text.strip()
    if not _PID_RE.fullmatch(stripped):
        raise DaemonError(f"invalid pid in {os.fspath(path)}: {stripped!r} is not a number")
    return int(stripped)


def process_alive(pid: int) -> bool:
    """Return True if a process with this PID exists and can be signalled."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except (OSError, OverflowError):
        return False
    return True


def read_daemon_log_hint(log_path: str | PathLike[str]) -> str:
    """Return the daemon log formatted for an error message, or ''."""
    try:
        content = Path(log_path).read_text(errors="replace")
    except OSError:
        return ""
    if not content:
        return ""
    return f"\n\nDaemon log ({os.fspath(log_path)}):\n{content}"


def stop(project_dir: str | PathLike[str]) -> None:
    """Send SIGTERM to the daemon and wait for it, killing it after a timeout."""
    pid_path = Path(project_dir) / DAEMON_PID_FILE
    try:
        pid = read_pid(pid_path)
    except DaemonError as exc:
        raise DaemonError(f"daemon: {exc}") from exc

    try:
        os.kill(pid, signal.SIGTERM)
    except (OSError, OverflowError) as exc:
        pid_path.unlink(missing_ok=True)
        raise DaemonError(f"daemon: failed to send SIGTERM: {exc}") from exc

    deadline = time.monotonic() + SHUTDOWN_TIMEOUT
    while time.monotonic() < deadline:
        if not process_alive(pid):
            pid_path.unlink(missing_ok=True)
            return
        time.sleep(_STOP_POLL_INTERVAL)

    try:
        os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
    except OSError:
        pass
    time.sleep(1.0)
    pid_path.unlink(missing_ok=True)


def normalize_status(docker_status: str) -> str:
    """Map a Docker status string to running, exited, created or unknown."""
    lower = docker_status.lower()
    if "up" in lower:
        return "running"
    if "exited" in lower:
        return "exited"
    if "created" in lower:
        return "created"
    return "unknown"


def parse_slog_msg(line: str) -> str:
    """Extract the msg="..." value from a structured log line, or ''."""
    match = _SLOG_MSG_RE.search(line)
    return match.group(1) if match else ""


def format_progress_msg(msg: str) -> str:
    """Capitalise a log message and append an ellipsis."""
    if not msg:
        return ""
    return msg[:1].upper() + msg[1:] + "..."