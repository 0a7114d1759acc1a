"""Tests for the taskwarden CLI."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from taskwarden import __version__
from taskwarden.cli import main


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """Point the CLI at an isolated workspace with no config file."""
    monkeypatch.setenv("TASKWARDEN_ROOT", str(tmp_path))
    monkeypatch.setenv("TASKWARDEN_CONFIG", str(tmp_path / "absent.toml"))
    monkeypatch.setenv("TASKWARDEN_AGENT_COMMAND", "true")
    return tmp_path


@pytest.fixture
def runner():
    return CliRunner()


def invoke(runner, *args):
    return runner.invoke(main, list(args))


class TestBasics:
    """Tests for the top-level group."""

    def test_version(self, runner):
        result = invoke(runner, "--version")
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_groups(self, runner, workspace):
        result = invoke(runner, "--help")
        assert result.exit_code == 0
        for group in ("state", "task", "retry", "health", "recover", "monitor", "config"):
            assert group in result.output


class TestStateCommands:
    """Tests for state and task commands."""

    def test_init_and_show(self, runner, workspace):
        result = invoke(runner, "state", "init", "build", "test", "-a", "build=dist/app")
        assert result.exit_code == 0, result.output
        assert (workspace / "EXECUTION_STATUS.json").exists()

        shown = invoke(runner, "state", "show", "--json")
        data = json.loads(shown.output)
        assert data["total_tasks"] == 2
        assert data["tasks"]["build"]["expected_artifacts"] == ["dist/app"]

    def test_init_twice_fails(self, runner, workspace):
        invoke(runner, "state", "init", "a")
        result = invoke(runner, "state", "init", "a")
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_bad_artifact_format(self, runner, workspace):
        result = invoke(runner, "state", "init", "a", "-a", "no-equals")
        assert result.exit_code == 2

    def test_show_missing_state(self, runner, workspace):
        result = invoke(runner, "state", "show")
        assert result.exit_code == 1
        assert "state init" in result.output

    def test_task_lifecycle(self, runner, workspace):
        invoke(runner, "state", "init", "a", "b")
        assert invoke(runner, "task", "start", "a").exit_code == 0
        result = invoke(runner, "task", "complete", "a")
        assert result.exit_code == 0
        assert "50%" in result.output

        data = json.loads(invoke(runner, "state", "show", "--json").output)
        assert data["completed_tasks"] == 1
        assert data["status"] == "RUNNING"
        assert len(list((workspace / "RECOVERY_POINTS").glob("rp_*.json"))) == 2

    def test_task_unknown(self, runner, workspace):
        invoke(runner, "state", "init", "a")
        result = invoke(runner, "task", "start", "zzz")
        assert result.exit_code == 1
        assert "Task not found" in result.output


class TestRetryCommands:
    """Tests for retry commands."""

    def test_handle_refused(self, runner, workspace):
        invoke(runner, "state", "init", "a")
        invoke(runner, "task", "start", "a")
        result = invoke(runner, "retry", "handle", "a", "permission denied")
        assert result.exit_code == 1
        assert "refused" in result.output
        assert "[HIGH]" in (workspace / "ALERT_HISTORY.md").read_text()

    def test_stats_json(self, runner, workspace):
        invoke(runner, "state", "init", "a")
        result = invoke(runner, "retry", "stats", "--json")
        data = json.loads(result.output)
        assert data["total_retries"] == 0
        assert data["max_total_retries"] == 10

    def test_manual_run(self, runner, workspace):
        invoke(runner, "state", "init", "a")
        result = invoke(runner, "retry", "run", "a")
        assert result.exit_code == 0, result.output
        assert "succeeded" in result.output


class TestRecoverCommands:
    """Tests for recovery commands."""

    def test_list_and_restore(self, runner, workspace):
        invoke(runner, "state", "init", "a", "b")
        invoke(runner, "task", "start", "a")
        invoke(runner, "task", "complete", "a")

        points = sorted((workspace / "RECOVERY_POINTS").glob("rp_*.json"))
        first = points[0].stem

        assert invoke(runner, "recover", "list").exit_code == 0

        result = invoke(runner, "recover", "restore", first, "-y")
        assert result.exit_code == 0, result.output
        data = json.loads(invoke(runner, "state", "show", "--json").output)
        assert data["completed_tasks"] == 0
        assert data["current_task_id"] == "a"

    def test_restore_unknown(self, runner, workspace):
        invoke(runner, "state", "init", "a")
        result = invoke(runner, "recover", "restore", "rp_20260101T000000000000", "-y")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_verify_missing(self, runner, workspace):
        invoke(runner, "state", "init", "a", "-a", "a=out.txt")
        assert invoke(runner, "recover", "verify", "a").exit_code == 1
        (workspace / "out.txt").write_text("ok")
        assert invoke(runner, "recover", "verify", "a").exit_code == 0

    def test_smart_on_corrupt_state(self, runner, workspace):
        invoke(runner, "state", "init", "a")
        invoke(runner, "task", "start", "a")
        (workspace / "EXECUTION_STATUS.json").write_text("{corrupt")

        result = invoke(runner, "recover", "smart")

        assert result.exit_code == 0, result.output
        assert "Restored recovery point" in result.output
        assert list((workspace / "REPORTS").glob("recovery_report_smart_*.md"))

    def test_interactive_exit(self, runner, workspace):
        invoke(runner, "state", "init", "a")
        result = runner.invoke(main, ["recover", "interactive"], input="5\n")
        assert result.exit_code == 0


class TestHealthAndMonitor:
    """Tests for health and monitor commands."""

    def test_health_check_json(self, runner, workspace):
        invoke(runner, "state", "init", "a")
        result = invoke(runner, "health", "check", "--no-network", "--json")
        data = json.loads(result.output)
        assert "findings" in data
        assert all(f["kind"] != "TASK_STALLED" for f in data["findings"])

    def test_dashboard(self, runner, workspace):
        invoke(runner, "state", "init", "a")
        result = invoke(runner, "monitor", "dashboard", "--no-network")
        assert result.exit_code == 0, result.output
        assert (workspace / "MONITOR_DASHBOARD.md").exists()

    def test_cleanup(self, runner, workspace):
        result = invoke(runner, "monitor", "cleanup")
        assert result.exit_code == 0
        assert "Reports removed: 0" in result.output


class TestConfigCommands:
    """Tests for config commands."""

    def test_show_json(self, runner, workspace):
        result = invoke(runner, "config", "show", "--json")
        data = json.loads(result.output)
        assert data["workspace"]["root"] == str(workspace)
        assert data["agent"]["command"] == ["true"]

    def test_show_section(self, runner, workspace):
        result = invoke(runner, "config", "show", "--section", "retry")
        assert "max_total_retries = 10" in result.output

    def test_show_unknown_section(self, runner, workspace):
        result = invoke(runner, "config", "show", "--section", "nope")
        assert result.exit_code == 1
