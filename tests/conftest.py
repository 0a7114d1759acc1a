"""Shared fixtures for taskwarden tests."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from taskwarden.agent import AgentResult, AgentRunner
from taskwarden.config import TaskwardenConfig
from taskwarden.health.probes import ConnectivitySnapshot, SystemSnapshot
from taskwarden.recovery.points import RecoveryPointManager
from taskwarden.reports.alerts import AlertHistory
from taskwarden.reports.reporter import Reporter
from taskwarden.state import StateStore


def calm_system() -> SystemSnapshot:
    return SystemSnapshot(disk_percent=40.0, memory_percent=50.0, load_1m=0.5, cpu_count=4)


def reachable() -> ConnectivitySnapshot:
    return ConnectivitySnapshot(network_target="example.com:443", api_target="https://api.example.com")


@pytest.fixture
def config(tmp_path):
    """Configuration rooted in a temporary workspace."""
    cfg = TaskwardenConfig()
    cfg.workspace.root = str(tmp_path)
    return cfg


@pytest.fixture
def store(config):
    return StateStore(config.workspace.state_path)


@pytest.fixture
def points(config, store):
    return RecoveryPointManager(store, config.workspace.recovery_path, config.recovery.max_points)


@pytest.fixture
def alerts(config):
    return AlertHistory(config.workspace.alert_history_path, config.monitor.alert_cooldown)


@pytest.fixture
def reporter(config, store, alerts):
    return Reporter(
        config,
        store,
        alerts,
        system_probe=calm_system,
        connectivity_probe=reachable,
    )


@pytest.fixture
def agent():
    """Agent double that always succeeds."""
    runner = MagicMock(spec=AgentRunner)
    runner.run.return_value = AgentResult(success=True, exit_code=0, stdout="done")
    return runner


@pytest.fixture
def three_tasks(store):
    """State with three pending tasks."""
    return store.initialize(["task-1", "task-2", "task-3"])
