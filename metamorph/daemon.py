"""Daemon main loop: agent supervision, monitoring and notifications."""

from __future__ import annotations

import logging
import re
import signal
import subprocess
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from os import PathLike
from pathlib import Path
from typing import Any, Protocol

from metamorph.config import Config
from metamorph.constants import AGENT_LOG_DIR, DAEMON_PID_FILE, HEARTBEAT_FILE, UPSTREAM_DIR
from metamorph.state import (
    AgentState,
    DaemonError,
    State,
    is_running,
    normalize_status,
    write_state,
)

logger = logging.getLogger(__name__)

MONITOR_INTERVAL = 30.0
STALE_TASK_MAX_AGE = timedelta(hours=2)
COMMIT_BATCH_INTERVAL = timedelta(seconds=60)
ERROR_DEBOUNCE_COOLDOWN = timedelta(minutes=5)
LOG_TAIL_LINES = 50

_SESSION_LOG_RE = re.compile(r"session-([+-]?\d+)\.log")


@dataclass
class AgentOpts:
    """Everything needed to start one agent container."""

    project_dir: Path
    agent_id: int
    role: str
    model: str
    api_key: str = ""
    oauth_token: str = ""
    git_author_name: str = ""
    git_author_email: str = ""


@dataclass
class AgentInfo:
    """A container as reported by the container runtime."""

    id: int
    container_id: str = ""
    status: str = ""


@dataclass
class TaskLock:
    """A task claimed by an agent."""

    name: str
    agent_id: int
    claimed_at: datetime | None = None


class DockerClient(Protocol):
    """Container operations the daemon relies on."""

    def build_image(self, project_dir: Path) -> None: ...

    def start_agent(self, opts: AgentOpts) -> str: ...

    def stop_agent(self, agent_id: int) -> None: ...

    def stop_all_agents(self) -> None: ...

    def list_agents(self) -> Sequence[AgentInfo]: ...


class TaskStore(Protocol):
    """Access to task lock files inside a repository."""

    def list_tasks(self, repo_dir: Path) -> Sequence[TaskLock]: ...

    def clear_stale_tasks(self, repo_dir: Path, max_age: timedelta) -> Sequence[str]: ...


class EventType(StrEnum):
    AGENT_CRASHED = "agent_crashed"
    COMMITS_PUSHED = "commits_pushed"
    STALE_LOCK = "stale_lock"
    TEST_FAILURE = "test_failure"
    TEST = "test"


@dataclass
class NotificationEvent:
    """A webhook notification payload."""

    type: EventType
    project: str
    message: str
    timestamp: datetime
    agent_id: int = 0
    agent_role: str = ""
    details: dict[str, Any] | None = None


Notifier = Callable[[str, NotificationEvent], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Daemon:
    """The background process that supervises agent containers."""

    project_dir: Path
    cfg: Config
    docker: DockerClient | None = None
    api_key: str = ""
    oauth_token: str = ""
    task_store: TaskStore | None = None
    notifier: Notifier | None = None
    started_at: datetime = field(default_factory=_utcnow)
    state: State = field(default_factory=State)
    prev_commit_count: int = 0
    commit_batch_start: datetime | None = None
    pending_commits: list[str] = field(default_factory=list)
    last_error_notified: dict[int, datetime] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.project_dir = Path(self.project_dir)

    @property
    def _upstream_path(self) -> Path:
        return self.project_dir / UPSTREAM_DIR

    def _client(self) -> DockerClient:
        if self.docker is None:
            raise DaemonError("daemon: no container client configured")
        return self.docker

    def _agent_opts(self, agent_id: int, role: str) -> AgentOpts:
        return AgentOpts(
            project_dir=self.project_dir,
            agent_id=agent_id,
            role=role,
            model=self.cfg.agents.model,
            api_key=self.api_key,
            oauth_token=self.oauth_token,
            git_author_name=self.cfg.git.author_name,
            git_author_email=self.cfg.git.author_email,
        )

    def start_agents(self) -> list[AgentState]:
        """Start one container per configured agent, assigning roles round-robin."""
        client = self._client()
        roles = self.cfg.agents.roles
        agents: list[AgentState] = []
        for agent_id in range(1, self.cfg.agents.count + 1):
            role = roles[(agent_id - 1) % len(roles)] if roles else "developer"
            logger.info("starting agent agent=%d role=%s", agent_id, role)
            try:
                container_id = client.start_agent(self._agent_opts(agent_id, role))
            except Exception as exc:
                raise DaemonError(f"failed to start agent-{agent_id}: {exc}") from exc
            agents.append(
                AgentState(
                    id=agent_id,
                    role=role,
                    container_id=container_id,
                    status="running",
                    last_activity=_utcnow(),
                )
            )
        return agents

    def monitor(self) -> None:
        """Run one monitoring pass; unexpected failures are logged, not raised."""
        try:
            self._monitor_once(_utcnow())
        except Exception:
            logger.exception("panic in monitor loop (recovered)")

    def _monitor_once(self, now: datetime) -> None:
        try:
            infos = self._client().list_agents()
        except Exception:
            infos = None
        if infos is not None:
            self.update_agent_states(infos)
            self.restart_crashed_agents(infos)

        self.update_tasks()
        self.count_commits_and_notify(now)
        self.clear_stale_tasks_and_notify(now)
        self.check_agent_logs(now)
        self.flush_commit_batch(now)

        self.state.stats.uptime_seconds = int((now - self.started_at).total_seconds())

        try:
            self.write_state()
        except DaemonError:
            pass

        heartbeat = self.project_dir / HEARTBEAT_FILE
        try:
            heartbeat.write_text(now.strftime("%Y-%m-%dT%H:%M:%SZ"))
        except OSError:
            pass

    def update_agent_states(self, infos: Sequence[AgentInfo]) -> None:
        """Copy container ids and statuses into the agent states."""
        by_id = {info.id: info for info in infos}
        for agent in self.state.agents:
            info = by_id.get(agent.id)
            if info is None:
                agent.status = "stopped"
            else:
                agent.container_id = info.container_id
                agent.status = normalize_status(info.status)

    def restart_crashed_agents(self, infos: Sequence[AgentInfo]) -> None:
        """Restart every agent whose container is not up."""
        client = self._client()
        running = {info.id for info in infos if "up" in info.status.lower()}
        for agent in self.state.agents:
            if agent.id in running:
                continue
            try:
                client.stop_agent(agent.id)
            except Exception:
                pass
            try:
                container_id = client.start_agent(self._agent_opts(agent.id, agent.role))
            except Exception:
                continue
            agent.container_id = container_id
            agent.status = "running"
            agent.last_activity = _utcnow()
            self.send_event(
                NotificationEvent(
                    type=EventType.AGENT_CRASHED,
                    agent_id=agent.id,
                    agent_role=agent.role,
                    project=self.cfg.project.name,
                    message=f"agent-{agent.id} ({agent.role}) crashed and was restarted",
                    timestamp=_utcnow(),
                )
            )

    def update_tasks(self) -> None:
        """Map the current task locks onto the agents holding them."""
        if self.task_store is None:
            return
        try:
            locks = self.task_store.list_tasks(self._upstream_path)
        except Exception:
            return
        tasks = {lock.agent_id: lock.name for lock in locks}
        for agent in self.state.agents:
            agent.current_task = tasks.get(agent.id)

    def _git(self, *args: str) -> str | None:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self._upstream_path,
                capture_output=True,
                text=True,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError):
            return None
        return result.stdout

    def count_commits_and_notify(self, now: datetime) -> None:
        """Count upstream commits and queue new ones for a batched notification."""
        output = self._git("rev-list", "--count", "HEAD")
        if output is None:
            return
        try:
            count = int(output.strip())
        except ValueError:
            return

        new_commits = count - self.prev_commit_count
        if self.prev_commit_count > 0 and new_commits > 0:
            log = self._git("log", "--oneline", f"-{new_commits}")
            if log is not None:
                if self.commit_batch_start is None:
                    self.commit_batch_start = now
                self.pending_commits.extend(log.strip().split("\n"))

        self.prev_commit_count = count
        self.state.stats.total_commits = count

    def flush_commit_batch(self, now: datetime) -> None:
        """Send the queued commits once the batch window has elapsed."""
        if not self.pending_commits:
            return
        if (
            self.commit_batch_start is not None
            and now - self.commit_batch_start < COMMIT_BATCH_INTERVAL
        ):
            return
        commits = self.pending_commits
        self.send_event(
            NotificationEvent(
                type=EventType.COMMITS_PUSHED,
                project=self.cfg.project.name,
                message=f"{len(commits)} new commit(s) pushed",
                timestamp=now,
                details={"count": len(commits), "commits": list(commits)},
            )
        )
        self.pending_commits = []
        self.commit_batch_start = None

    def clear_stale_tasks_and_notify(self, now: datetime) -> None:
        """Remove stale task locks and report each one."""
        if self.task_store is None:
            return
        try:
            cleared = list(self.task_store.clear_stale_tasks(self._upstream_path, STALE_TASK_MAX_AGE))
        except Exception:
            return
        self.state.stats.tasks_completed += len(cleared)
        for task_name in cleared:
            self.send_event(
                NotificationEvent(
                    type=EventType.STALE_LOCK,
                    project=self.cfg.project.name,
                    message=f"stale task lock cleared: {task_name}",
                    timestamp=now,
                    details={"task": task_name},
                )
            )

    def _latest_session_log(self, agent_id: int) -> Path | None:
        log_dir = self.project_dir / AGENT_LOG_DIR / f"agent-{agent_id}"
        try:
            entries = list(log_dir.iterdir())
        except OSError:
            return None
        latest: Path | None = None
        latest_num = 0
        for entry in entries:
            match = _SESSION_LOG_RE.fullmatch(entry.name)
            if match is None:
                continue
            num = int(match.group(1))
            if num > latest_num:
                latest_num = num
                latest = entry
        return latest

    def check_agent_logs(self, now: datetime) -> None:
        """Report the first ERROR:/FAIL line in each agent's latest session log."""
        for agent in self.state.agents:
            last = self.last_error_notified.get(agent.id)
            if last is not None and now - last < ERROR_DEBOUNCE_COOLDOWN:
                continue

            log_path = self._latest_session_log(agent.id)
            if log_path is None:
                continue
            try:
                content = log_path.read_text(errors="replace")
            except OSError:
                continue

            for line in content.split("\n")[-LOG_TAIL_LINES:]:
                if "ERROR:" in line or "FAIL" in line:
                    self.last_error_notified[agent.id] = now
                    self.send_event(
                        NotificationEvent(
                            type=EventType.TEST_FAILURE,
                            agent_id=agent.id,
                            agent_role=agent.role,
                            project=self.cfg.project.name,
                            message=f"error detected in agent-{agent.id} logs",
                            timestamp=now,
                            details={"line": line.strip()},
                        )
                    )
                    break

    def send_event(self, event: NotificationEvent) -> None:
        """Deliver an event to the configured webhook, logging failures."""
        webhook_url = self.cfg.notifications.webhook_url
        if not webhook_url or self.notifier is None:
            return
        try:
            self.notifier(webhook_url, event)
        except Exception as exc:
            logger.error("failed to send notification event=%s error=%s", event.type, exc)

    def shutdown(self) -> None:
        """Stop all agents, persist the final state and remove the PID file."""
        try:
            self._client().stop_all_agents()
        except Exception:
            pass
        self.state.status = "stopped"
        self.state.stats.uptime_seconds = int((_utcnow() - self.started_at).total_seconds())
        try:
            self.write_state()
        except DaemonError:
            pass
        (self.project_dir / DAEMON_PID_FILE).unlink(missing_ok=True)

    def write_state(self) -> None:
        """Persist the current state to state.json."""
        write_state(self.project_dir, self.state)


def run(
    project_dir: str | PathLike[str],
    cfg: Config,
    api_key: str,
    oauth_token: str,
    docker_client: DockerClient,
    task_store: TaskStore | None = None,
    notifier: Notifier | None = None,
) -> None:
    """Build the image, start the agents and monitor them until SIGTERM/SIGINT."""
    daemon = Daemon(
        project_dir=Path(project_dir),
        cfg=cfg,
        docker=docker_client,
        api_key=api_key,
        oauth_token=oauth_token,
        task_store=task_store,
        notifier=notifier,
    )

    logger.info("building docker image")
    try:
        docker_client.build_image(daemon.project_dir)
    except Exception as exc:
        raise DaemonError(f"daemon: failed to build image: {exc}") from exc

    logger.info("starting agents")
    try:
        agents = daemon.start_agents()
    except DaemonError as exc:
        raise DaemonError(f"daemon: failed to start agents: {exc}") from exc

    daemon.state = State(
        status="running",
        started_at=daemon.started_at,
        project_name=cfg.project.name,
        agents=agents,
    )

    stop_requested = threading.Event()

    def _request_stop(signum: int, frame: Any) -> None:
        stop_requested.set()

    previous = {sig: signal.signal(sig, _request_stop) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        try:
            daemon.write_state()
        except DaemonError as exc:
            raise DaemonError(f"daemon: failed to write initial state: {exc}") from exc
        while not stop_requested.wait(MONITOR_INTERVAL):
            daemon.monitor()
        daemon.shutdown()
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def clean_orphans_with_client(project_dir: str | PathLike[str], client: DockerClient) -> None:
    """Stop containers left behind by a previous daemon that crashed."""
    if is_running(project_dir):
        raise DaemonError("daemon is already running")
    try:
        agents = client.list_agents()
    except Exception:
        return
    if agents:
        try:
            client.stop_all_agents()
        except Exception:
            pass