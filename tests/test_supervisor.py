"""Tests for the unified supervisor."""

from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from conftest import calm_system
from taskwarden.recovery.classifier import ErrorKind
from taskwarden.retry import RetryOutcome
from taskwarden.state import PipelineStatus, TaskStatus, complete_task, start_task
from taskwarden.supervisor import Runtime, Supervisor


@pytest.fixture
def runtime(config, agent, monkeypatch):
    monkeypatch.setattr("taskwarden.health.monitor.system_snapshot", lambda path: calm_system())
    config.retry.base_delay = 0.0
    rt = Runtime.from_config(config, agent=agent)
    rt.monitor.check_connectivity = False
    return rt


@pytest.fixture
def supervisor(runtime):
    return Supervisor(runtime)


class TestRuntime:
    """Tests for component wiring."""

    def test_components_share_workspace(self, runtime, config):
        assert runtime.store.path == config.workspace.state_path
        assert runtime.points.store is runtime.store
        assert runtime.scheduler.stop_event is runtime.stop_event
        assert runtime.monitor.alerts is runtime.alerts


class TestRequests:
    """Tests for retry request queueing."""

    def test_duplicate_requests_dropped(self, supervisor):
        assert supervisor.request_retry("task-1", ErrorKind.TIMEOUT, "stalled")
        assert not supervisor.request_retry("task-1", ErrorKind.TIMEOUT, "stalled")
        assert supervisor.request_retry("task-2", ErrorKind.TIMEOUT, "stalled")
        assert supervisor.queue.qsize() == 2

    def test_drain_processes_and_clears_pending(self, supervisor, runtime, agent):
        runtime.store.initialize(["task-1"])
        supervisor.request_retry("task-1", ErrorKind.TIMEOUT, "stalled")

        outcomes = supervisor.drain()

        assert outcomes == [("task-1", RetryOutcome.RETRIED_SUCCESS)]
        agent.run.assert_called_once()
        assert supervisor.request_retry("task-1", ErrorKind.TIMEOUT, "stalled again")

    def test_unknown_task_logged_not_raised(self, supervisor, runtime):
        runtime.store.initialize(["task-1"])
        supervisor.request_retry("ghost", ErrorKind.TIMEOUT, "stalled")
        assert supervisor.drain() == [("ghost", None)]

    def test_disk_error_recorded_not_raised(self, supervisor, runtime, agent):
        runtime.store.initialize(["task-1"])
        supervisor.request_retry("task-1", ErrorKind.TIMEOUT, "stalled")

        with patch.object(
            runtime.points, "create", side_effect=OSError(28, "No space left on device")
        ):
            assert supervisor.drain() == [("task-1", None)]

        agent.run.assert_not_called()
        assert "No space left on device" in runtime.alerts.tail(1)[0]
        assert supervisor.request_retry("task-1", ErrorKind.TIMEOUT, "stalled again")

    def test_scan_disk_error_recorded_not_raised(self, supervisor, runtime):
        runtime.store.initialize(["task-1"])

        with patch.object(
            runtime.scheduler, "scan_failures", side_effect=OSError(28, "No space left on device")
        ):
            supervisor._scan_failures()

        assert "Failure scan failed" in runtime.alerts.tail(1)[0]


class TestMonitorCycle:
    """Tests for Supervisor.monitor_cycle."""

    def test_stalled_task_queued_and_retried(self, supervisor, runtime):
        runtime.store.initialize(["task-1", "task-2"])
        runtime.store.update(
            lambda s: start_task(s, "task-1", datetime.now() - timedelta(hours=1))
        )

        supervisor.monitor_cycle()
        supervisor.monitor_cycle()

        assert supervisor.queue.qsize() == 1
        assert supervisor.drain() == [("task-1", RetryOutcome.RETRIED_SUCCESS)]
        state = runtime.store.read()
        assert state.retry_info.for_task("task-1") == 1
        assert state.tasks["task-1"].status == TaskStatus.IN_PROGRESS

    def test_stalled_last_task_keeps_completed_work(self, supervisor, runtime):
        runtime.store.initialize(["task-1", "task-2", "task-3"])

        def two_done_one_stalled(state):
            for task_id in ("task-1", "task-2"):
                start_task(state, task_id)
                complete_task(state, task_id)
            start_task(state, "task-3", datetime.now() - timedelta(hours=1))
            return state

        runtime.store.update(two_done_one_stalled)

        supervisor.monitor_cycle()

        assert supervisor.drain() == [("task-3", RetryOutcome.RETRIED_SUCCESS)]
        state = runtime.store.read()
        assert state.completed_tasks == 2
        assert state.tasks["task-1"].status == TaskStatus.COMPLETED
        assert state.tasks["task-2"].status == TaskStatus.COMPLETED
        assert state.tasks["task-3"].status == TaskStatus.IN_PROGRESS
        assert state.retry_info.for_task("task-3") == 1
        assert state.retry_info.total_retries == 1

    def test_stale_state_between_tasks_not_retried(self, supervisor, runtime, agent):
        runtime.store.initialize(["task-1", "task-2", "task-3"])
        runtime.store.update(lambda s: start_task(s, "task-1"))
        runtime.store.update(lambda s: complete_task(s, "task-1"))
        later = datetime.now() + timedelta(hours=1)
        runtime.monitor._clock = lambda: later

        supervisor.monitor_cycle()

        assert supervisor.queue.empty()
        agent.run.assert_not_called()
        state = runtime.store.read()
        assert state.tasks["task-1"].status == TaskStatus.COMPLETED
        assert state.completed_tasks == 1
        assert state.status == PipelineStatus.RUNNING

    def test_corrupt_state_restored(self, supervisor, runtime):
        runtime.store.initialize(["task-1"])
        point_id = runtime.points.create(None, "baseline")
        runtime.store.path.write_text("{corrupt")

        supervisor.monitor_cycle()

        assert runtime.store.read().total_tasks == 1
        assert supervisor.halted_reason is None
        assert any(point_id in line for line in runtime.alerts.tail(5))
        assert supervisor.queue.empty()

    def test_corrupt_state_without_points_halts(self, supervisor, runtime):
        runtime.store.path.write_text("{corrupt")

        supervisor.monitor_cycle()

        assert "no recovery point" in supervisor.halted_reason
        assert runtime.stop_event.is_set()
        assert "Supervisor halted" in runtime.alerts.tail(1)[0]

    def test_auto_restore_disabled_halts(self, supervisor, runtime):
        runtime.config.recovery.auto_restore_on_corruption = False
        runtime.store.initialize(["task-1"])
        runtime.points.create(None, "baseline")
        runtime.store.path.write_text("{corrupt")

        supervisor.monitor_cycle()

        assert supervisor.halted_reason is not None
        assert runtime.store.path.read_text() == "{corrupt"


class TestLifecycle:
    """Tests for run/stop."""

    def test_run_returns_when_stopped(self, supervisor, runtime):
        runtime.store.initialize(["task-1"])
        runtime.stop_event.set()
        supervisor.run()
        assert runtime.store.read().status == PipelineStatus.NOT_STARTED

    def test_stop_joins_monitor_thread(self, supervisor, runtime):
        runtime.store.initialize(["task-1"])
        runtime.monitor.interval = 0.01
        thread = supervisor.start_monitor()
        supervisor.stop()
        assert not thread.is_alive()
