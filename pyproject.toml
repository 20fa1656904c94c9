[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "metamorph"
version = "0.1.0"
description = "Orchestrate multiple AI coding agents working in parallel on a codebase"
requires-python = ">=3.11"
dependencies = []
keywords = ["agents", "orchestration", "daemon", "docker", "git"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
metamorph = "metamorph.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["metamorph"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
