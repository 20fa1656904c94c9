"""Orchestration of parallel AI coding agents: configuration, daemon state and CLI."""

__version__ = "0.1.0"