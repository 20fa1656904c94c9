"""Standard paths and built-in agent roles."""

from types import MappingProxyType

_STATE_DIR = ".metamorph"

UPSTREAM_DIR = f"{_STATE_DIR}/upstream.git"
STATE_FILE = f"{_STATE_DIR}/state.json"
DOCKER_DIR = f"{_STATE_DIR}/docker"
DAEMON_PID_FILE = f"{_STATE_DIR}/daemon.pid"
DAEMON_LOG_FILE = f"{_STATE_DIR}/daemon.log"
HEARTBEAT_FILE = f"{_STATE_DIR}/heartbeat"

TASK_LOCK_DIR = "current_tasks"
AGENT_LOG_DIR = "agent_logs"
PROGRESS_FILE = "PROGRESS.md"
AGENT_PROMPT_FILE = "AGENT_PROMPT.md"
SYSTEM_PROMPT_FILE = "SYSTEM_PROMPT.md"
CONFIG_FILE = "metamorph.toml"

#: Built-in role names mapped to what an agent in that role does.
AGENT_ROLES = MappingProxyType(
    dict(
        developer="Implements new features and writes production code",
        tester="Writes and maintains test suites for code quality",
        refactorer="Improves code structure without changing behavior",
        documenter="Writes documentation, comments, and READMEs",
        optimizer="Profiles and optimizes performance bottlenecks",
        reviewer="Reviews code changes and suggests improvements",
    )
)