import json
import subprocess

import pytest

from metamorph.config import (
    AgentsConfig,
    Config,
    ConfigError,
    ProjectConfig,
    apply_defaults,
    load,
    validate,
)


def render_toml(sections):
    """Render a mapping of section name to key/value pairs as TOML text."""
    lines = []
    for section, values in sections.items():
        lines.append(f"[{section}]")
        lines.extend(f"{key} = {json.dumps(value)}" for key, value in values.items())
        lines.append("")
    return "\n".join(lines)


def write_config(directory, content):
    path = directory / "metamorph.toml"
    path.write_text(content if isinstance(content, str) else render_toml(content))
    return path


def agents(**values):
    return {"agents": values}


LOAD_CASES = {
    "valid config": (
        {
            "project": {"name": "my-app", "description": "A test project"},
            **agents(count=3, model="claude-sonnet", roles=["developer", "tester", "reviewer"]),
            "docker": {"image": "ubuntu:22.04"},
            "testing": {"command": "go test ./...", "fast_command": "go test -short ./..."},
            "notifications": {"webhook_url": "https://example.com/hook"},
        },
        None,
    ),
    "empty project name": (
        {"project": {"name": ""}, **agents(count=2, model="claude-sonnet", roles=["developer"])},
        "project.name is required",
    ),
    "missing project name": (
        {
            "project": {"description": "no name"},
            **agents(count=2, model="claude-sonnet", roles=["developer"]),
        },
        "project.name is required",
    ),
    "zero agent count": (
        {"project": {"name": "my-app"}, **agents(count=0, model="claude-sonnet", roles=["developer"])},
        "agents.count must be greater than 0",
    ),
    "negative agent count": (
        {"project": {"name": "my-app"}, **agents(count=-1, model="claude-sonnet", roles=["developer"])},
        "agents.count must be greater than 0",
    ),
    "empty model": (
        {"project": {"name": "my-app"}, **agents(count=2, model="", roles=["developer"])},
        "agents.model is required",
    ),
    "missing model": (
        {"project": {"name": "my-app"}, **agents(count=2, roles=["developer"])},
        "agents.model is required",
    ),
    "invalid role": (
        {
            "project": {"name": "my-app"},
            **agents(count=2, model="claude-sonnet", roles=["developer", "hacker"]),
        },
        'invalid agent role: "hacker"',
    ),
    "all valid roles": (
        {
            "project": {"name": "my-app"},
            **agents(
                count=6,
                model="claude-sonnet",
                roles=["developer", "tester", "refactorer", "documenter", "optimizer", "reviewer"],
            ),
        },
        None,
    ),
    "minimal valid config": (
        {"project": {"name": "minimal"}, **agents(count=1, model="gpt-4", roles=[])},
        None,
    ),
    "empty roles list is valid": (
        {"project": {"name": "my-app"}, **agents(count=1, model="claude-sonnet", roles=[])},
        None,
    ),
    "extra fields ignored": (
        {
            "project": {"name": "my-app", "unknown_field": "should be ignored"},
            **agents(count=1, model="claude-sonnet", roles=[]),
            "custom_section": {"foo": "bar"},
        },
        None,
    ),
    "missing sections uses zero values": (
        {"project": {"name": "my-app"}, **agents(count=1, model="claude-sonnet")},
        None,
    ),
}


@pytest.mark.parametrize("content,want_error", list(LOAD_CASES.values()), ids=list(LOAD_CASES))
def test_load(tmp_path, content, want_error):
    path = write_config(tmp_path, content)
    if want_error is not None:
        with pytest.raises(ConfigError) as info:
            load(path)
        assert str(info.value) == want_error
    else:
        cfg = load(path)
        assert cfg.project.name == content["project"]["name"]
        assert cfg.agents.count == content["agents"]["count"]


def test_load_file_not_found():
    with pytest.raises(ConfigError, match="reading config"):
        load("/nonexistent/path/metamorph.toml")


def test_load_invalid_toml(tmp_path):
    path = write_config(tmp_path, "[this is not valid toml")
    with pytest.raises(ConfigError, match="parsing config"):
        load(path)


def test_load_wrong_type_is_parse_error(tmp_path):
    path = write_config(
        tmp_path,
        {"project": {"name": "my-app"}, **agents(count="three", model="claude-sonnet")},
    )
    with pytest.raises(ConfigError, match="parsing config"):
        load(path)


def test_load_valid_config_values(tmp_path):
    path = write_config(
        tmp_path,
        {
            "project": {"name": "my-project", "description": "A test project"},
            **agents(count=3, model="claude-sonnet", roles=["developer", "tester", "reviewer"]),
            "docker": {"image": "custom:latest", "extra_packages": ["curl", "jq"]},
            "testing": {"command": "go test ./...", "fast_command": "go test -short"},
            "notifications": {"webhook_url": "https://hooks.example.com/test"},
        },
    )
    cfg = load(path)
    assert cfg.project.name == "my-project"
    assert cfg.project.description == "A test project"
    assert cfg.agents.count == 3
    assert cfg.agents.model == "claude-sonnet"
    assert cfg.agents.roles == ["developer", "tester", "reviewer"]
    assert cfg.docker.image == "custom:latest"
    assert cfg.docker.extra_packages == ["curl", "jq"]
    assert cfg.testing.command == "go test ./..."
    assert cfg.testing.fast_command == "go test -short"
    assert cfg.notifications.webhook_url == "https://hooks.example.com/test"


def test_load_default_values(tmp_path):
    path = write_config(
        tmp_path,
        {"project": {"name": "defaults-test"}, **agents(count=1, model="claude-sonnet")},
    )
    cfg = load(path)
    assert cfg.docker.image == "metamorph-agent:latest"
    assert cfg.testing.command == ""
    assert cfg.notifications.webhook_url == ""
    assert cfg.agents.roles == []


def test_apply_defaults_git_author_from_host_config(tmp_path, monkeypatch):
    values = {"user.name": "Host Name\n", "user.email": "host@example.com\n"}

    def fake_run(args, **kwargs):
        return subprocess.CompletedProcess(args, 0, stdout=values[args[2]], stderr="")

    monkeypatch.setattr(subprocess, "run", fake_run)
    path = write_config(
        tmp_path,
        {"project": {"name": "git-defaults"}, **agents(count=1, model="claude-sonnet")},
    )
    cfg = load(path)
    assert cfg.git.author_name == "Host Name"
    assert cfg.git.author_email == "host@example.com"


def test_apply_defaults_git_missing_leaves_empty(monkeypatch):
    def fake_run(args, **kwargs):
        raise FileNotFoundError("git")

    monkeypatch.setattr(subprocess, "run", fake_run)
    cfg = Config()
    apply_defaults(cfg)
    assert cfg.git.author_name == ""
    assert cfg.git.author_email == ""
    assert cfg.docker.image == "metamorph-agent:latest"


def test_apply_defaults_git_failure_leaves_empty(monkeypatch):
    def fake_run(args, **kwargs):
        raise subprocess.CalledProcessError(1, args)

    monkeypatch.setattr(subprocess, "run", fake_run)
    cfg = Config()
    apply_defaults(cfg)
    assert (cfg.git.author_name, cfg.git.author_email) == ("", "")


def test_apply_defaults_git_author_explicit_not_overridden(tmp_path):
    path = write_config(
        tmp_path,
        {
            "project": {"name": "git-explicit"},
            **agents(count=1, model="claude-sonnet"),
            "git": {"author_name": "Explicit Name", "author_email": "explicit@example.com"},
        },
    )
    cfg = load(path)
    assert cfg.git.author_name == "Explicit Name"
    assert cfg.git.author_email == "explicit@example.com"


def test_validate_checks_fields_in_order():
    cfg = Config()
    with pytest.raises(ConfigError) as info:
        validate(cfg)
    assert str(info.value) == "project.name is required"

    cfg.project = ProjectConfig(name="p")
    with pytest.raises(ConfigError) as info:
        validate(cfg)
    assert str(info.value) == "agents.count must be greater than 0"

    cfg.agents = AgentsConfig(count=1, model="m", roles=["tester"])
    validate(cfg)
    assert cfg.agents.roles == ["tester"]