# metamorph

Metamorph orchestrates multiple AI coding agents working in parallel on your
codebase. A background daemon runs each agent in its own container, watches
their progress, restarts crashed agents, clears stale task locks and keeps a
`state.json` file up to date.

## Installation

```
pip install .
```

Python 3.11 or later is required. `git` must be on your `PATH`.

## Project layout

A metamorph project is a directory holding `metamorph.toml`:

```toml
[project]
name = "my-app"
description = ""

[agents]
count = 4
model = "claude-opus-4-6"
roles = ["developer", "developer", "tester", "refactorer"]

[docker]
image = "metamorph-agent:latest"
extra_packages = []

[testing]
command = ""
fast_command = ""

[notifications]
webhook_url = ""

[git]
author_name = ""
author_email = ""
```

Valid roles are `developer`, `tester`, `refactorer`, `documenter`,
`optimizer` and `reviewer`. If `git.author_name` or `git.author_email` is
empty, the value from your host `git config` is used. Next to the config sit
`AGENT_PROMPT.md` (project instructions for agents), `PROGRESS.md`,
`current_tasks/` and `agent_logs/`.

## Command line

Run these from the project directory:

```
metamorph status           # daemon and agent overview
metamorph status --json    # the same as JSON
metamorph logs 1           # last 50 lines of agent-1's latest session log
metamorph logs 1 --tail 200 -f
metamorph prompt           # print AGENT_PROMPT.md
metamorph prompt --edit    # open it in $EDITOR (vi by default)
metamorph version
```

Add `-v` for debug logging.

## Library use

```python
from metamorph.config import load
from metamorph.state import get_status, is_running

cfg = load("metamorph.toml")
print(cfg.project.name, cfg.agents.count)

if is_running("."):
    state = get_status(".")
    for agent in state.agents:
        print(agent.id, agent.role, agent.status, agent.current_task)
```

`metamorph.daemon.run` drives the monitoring loop. You pass it the container
backend, the task store and the notifier to use; see the `DockerClient` and
`TaskStore` protocols in `metamorph.daemon`.

## Running the tests

```
pip install '.[test]'
pytest
```