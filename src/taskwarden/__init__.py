"""Taskwarden - resilience supervisor for agent-driven task pipelines."""

__version__ = "0.1.0"
