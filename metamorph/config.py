"""Loading and validation of metamorph.toml."""

from __future__ import annotations

import json
import subprocess
import tomllib
from dataclasses import dataclass, field
from os import PathLike
from typing import Any

from metamorph.constants import AGENT_ROLES

DEFAULT_IMAGE = "metamorph-agent:latest"


class ConfigError(Exception):
    """Raised when a configuration file cannot be read, parsed or validated."""


@dataclass
class ProjectConfig:
    name: str = ""
    description: str = ""


@dataclass
class AgentsConfig:
    count: int = 0
    model: str = ""
    roles: list[str] = field(default_factory=list)


@dataclass
class DockerConfig:
    image: str = ""
    extra_packages: list[str] = field(default_factory=list)


@dataclass
class TestingConfig:
    __test__ = False

    command: str = ""
    fast_command: str = ""


@dataclass
class NotificationsConfig:
    webhook_url: str = ""


@dataclass
class GitConfig:
    author_name: str = ""
    author_email: str = ""


@dataclass
class Config:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    testing: TestingConfig = field(default_factory=TestingConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    git: GitConfig = field(default_factory=GitConfig)


def _parse_error(message: str) -> ConfigError:
    return ConfigError(f"parsing config: {message}")


def _section(document: dict[str, Any], name: str) -> dict[str, Any]:
    value = document.get(name, {})
    if not isinstance(value, dict):
        raise _parse_error(f"{name} must be a table")
    return value


def _string(table: dict[str, Any], section: str, key: str) -> str:
    value = table.get(key, "")
    if not isinstance(value, str):
        raise _parse_error(f"{section}.{key} must be a string")
    return value


def _integer(table: dict[str, Any], section: str, key: str) -> int:
    value = table.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise _parse_error(f"{section}.{key} must be an integer")
    return value


def _strings(table: dict[str, Any], section: str, key: str) -> list[str]:
    value = table.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise _parse_error(f"{section}.{key} must be an array of strings")
    return list(value)


def _from_document(document: dict[str, Any]) -> Config:
    project = _section(document, "project")
    agents = _section(document, "agents")
    docker = _section(document, "docker")
    testing = _section(document, "testing")
    notifications = _section(document, "notifications")
    git = _section(document, "git")
    return Config(
        project=ProjectConfig(
            name=_string(project, "project", "name"),
            description=_string(project, "project", "description"),
        ),
        agents=AgentsConfig(
            count=_integer(agents, "agents", "count"),
            model=_string(agents, "agents", "model"),
            roles=_strings(agents, "agents", "roles"),
        ),
        docker=DockerConfig(
            image=_string(docker, "docker", "image"),
            extra_packages=_strings(docker, "docker", "extra_packages"),
        ),
        testing=TestingConfig(
            command=_string(testing, "testing", "command"),
            fast_command=_string(testing, "testing", "fast_command"),
        ),
        notifications=NotificationsConfig(
            webhook_url=_string(notifications, "notifications", "webhook_url"),
        ),
        git=GitConfig(
            author_name=_string(git, "git", "author_name"),
            author_email=_string(git, "git", "author_email"),
        ),
    )


def load(path: str | PathLike[str]) -> Config:
    """Read a TOML config file, fill in defaults and validate it."""
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError as exc:
        raise ConfigError(f"reading config: {exc}") from exc

    try:
        document = tomllib.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        raise _parse_error(str(exc)) from exc

    cfg = _from_document(document)
    apply_defaults(cfg)
    validate(cfg)
    return cfg


def _git_config_value(key: str) -> str | None:
    try:
        result = subprocess.run(
            ["git", "config", key],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    return result.stdout.strip()


def apply_defaults(cfg: Config) -> None:
    """Fill in default values for optional fields."""
    if not cfg.docker.image:
        cfg.docker.image = DEFAULT_IMAGE
    if not cfg.git.author_name:
        name = _git_config_value("user.name")
        if name is not None:
            cfg.git.author_name = name
    if not cfg.git.author_email:
        email = _git_config_value("user.email")
        if email is not None:
            cfg.git.author_email = email


def validate(cfg: Config) -> None:
    """Raise ConfigError if required fields are missing or invalid."""
    if not cfg.project.name:
        raise ConfigError("project.name is required")
    if cfg.agents.count <= 0:
        raise ConfigError("agents.count must be greater than 0")
    if not cfg.agents.model:
        raise ConfigError("agents.model is required")
    for role in cfg.agents.roles:
        if role not in AGENT_ROLES:
            raise ConfigError(f"invalid agent role: {json.dumps(role)}")