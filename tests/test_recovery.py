"""Tests for recovery points and manual recovery actions."""

from __future__ import annotations

import json

import pytest

from taskwarden.recovery.actions import (
    auto_recovery,
    continue_task,
    smart_state_recovery,
    verify_task_artifacts,
)
from taskwarden.recovery.points import (
    CorruptRecoveryPointError,
    RecoveryPointManager,
    RecoveryPointNotFoundError,
)
from taskwarden.state import (
    CorruptStateError,
    PipelineStatus,
    StateNotFoundError,
    TaskNotFoundError,
    TaskStatus,
    complete_task,
    start_task,
)


# =============================================================================
# Recovery Point Tests
# =============================================================================


class TestCreate:
    """Tests for RecoveryPointManager.create."""

    def test_create_writes_json_and_note(self, points, three_tasks):
        point_id = points.create("task-1", "task_start")
        assert (points.directory / f"{point_id}.json").exists()
        note = (points.directory / f"{point_id}.md").read_text()
        assert f"taskwarden recover restore {point_id}" in note

    def test_create_does_not_touch_state(self, store, points, three_tasks):
        before = store.path.read_bytes()
        points.create("task-1", "task_start")
        assert store.path.read_bytes() == before

    def test_ids_strictly_increase(self, points, three_tasks):
        ids = [points.create(None, "burst") for _ in range(5)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 5

    def test_create_without_state(self, points):
        with pytest.raises(StateNotFoundError):
            points.create(None, "nothing")
        assert points.count() == 0

    def test_create_on_corrupt_state(self, store, points):
        store.path.write_text("{broken")
        with pytest.raises(CorruptStateError):
            points.create(None, "corrupt")
        assert points.count() == 0


class TestListAndGet:
    """Tests for listing and loading points."""

    def test_list_newest_first(self, points, three_tasks):
        first = points.create("task-1", "a")
        second = points.create("task-2", "b")
        listed = [p.id for p in points.list()]
        assert listed == [second, first]
        assert points.latest().id == second

    def test_list_limit(self, points, three_tasks):
        for _ in range(4):
            points.create(None, "x")
        assert len(points.list(limit=2)) == 2

    def test_get_unknown(self, points):
        with pytest.raises(RecoveryPointNotFoundError):
            points.get("rp_20260101T000000000000")

    def test_get_rejects_bad_id(self, points):
        with pytest.raises(RecoveryPointNotFoundError):
            points.get("../EXECUTION_STATUS")

    def test_list_skips_corrupt(self, points, three_tasks):
        good = points.create(None, "good")
        bad = points.create(None, "bad")
        (points.directory / f"{bad}.json").write_text("{oops")
        assert [p.id for p in points.list()] == [good]
        assert points.latest().id == good

    def test_progress(self, store, points, three_tasks):
        store.update(lambda s: complete_task(s, "task-1"))
        point = points.get(points.create("task-1", "task_complete"))
        assert point.progress == "1/3"


class TestRestore:
    """Tests for RecoveryPointManager.restore."""

    def test_restore_round_trip(self, store, points, three_tasks):
        point_id = points.create(None, "baseline")
        store.update(lambda s: start_task(s, "task-1"))
        store.update(lambda s: complete_task(s, "task-1"))

        restored = points.restore(point_id)

        assert restored.content_equals(points.get(point_id).state_snapshot)
        assert store.read().completed_tasks == 0
        assert store.read().tasks["task-1"].status == TaskStatus.PENDING

    def test_restore_keeps_unknown_fields(self, store, points, three_tasks):
        data = json.loads(store.path.read_text())
        data["agent_notes"] = "build cache warmed"
        store.path.write_text(json.dumps(data))
        point_id = points.create(None, "baseline")
        store.update(lambda s: start_task(s, "task-1"))

        points.restore(point_id)

        assert json.loads(store.path.read_text())["agent_notes"] == "build cache warmed"

    def test_restore_backs_up_live_document(self, store, points, three_tasks):
        point_id = points.create(None, "baseline")
        store.update(lambda s: start_task(s, "task-1"))
        live = store.path.read_bytes()

        points.restore(point_id)

        backups = points.backups()
        assert len(backups) == 1
        assert backups[0].read_bytes() == live
        assert all(p.id != backups[0].stem for p in points.list())

    def test_restore_unknown_leaves_state(self, store, points, three_tasks):
        before = store.path.read_bytes()
        with pytest.raises(RecoveryPointNotFoundError):
            points.restore("rp_20260101T000000000000")
        assert store.path.read_bytes() == before
        assert points.backups() == []

    def test_restore_corrupt_leaves_state(self, store, points, three_tasks):
        point_id = points.create(None, "baseline")
        (points.directory / f"{point_id}.json").write_text("not json")
        before = store.path.read_bytes()

        with pytest.raises(CorruptRecoveryPointError):
            points.restore(point_id)
        assert store.path.read_bytes() == before

    def test_restore_inconsistent_snapshot_rejected(self, store, points, three_tasks):
        point_id = points.create(None, "baseline")
        path = points.directory / f"{point_id}.json"
        data = json.loads(path.read_text())
        data["state_snapshot"]["completed_tasks"] = 5
        path.write_text(json.dumps(data))

        with pytest.raises(CorruptRecoveryPointError):
            points.restore(point_id)

    def test_restore_over_missing_state(self, store, points, three_tasks):
        point_id = points.create(None, "baseline")
        store.path.unlink()
        points.restore(point_id)
        assert store.read().total_tasks == 3
        assert points.backups() == []


class TestPrune:
    """Tests for RecoveryPointManager.prune."""

    def test_prune_oldest_first(self, points, three_tasks):
        ids = [points.create(None, str(i)) for i in range(5)]
        removed = points.prune(3)
        assert removed == 2
        assert [p.id for p in points.list()] == list(reversed(ids[2:]))
        assert not (points.directory / f"{ids[0]}.md").exists()

    def test_prune_is_idempotent(self, points, three_tasks):
        for i in range(4):
            points.create(None, str(i))
        points.prune(2)
        assert points.prune(2) == 0
        assert points.count() == 2

    def test_cap_zero_keeps_newest(self, points, three_tasks):
        ids = [points.create(None, str(i)) for i in range(3)]
        points.prune(0)
        assert [p.id for p in points.list()] == [ids[-1]]

    def test_default_cap(self, store, tmp_path, three_tasks):
        manager = RecoveryPointManager(store, tmp_path / "points", max_points=2)
        for i in range(4):
            manager.create(None, str(i))
        assert manager.prune() == 2
        assert manager.count() == 2


# =============================================================================
# Recovery Action Tests
# =============================================================================


class TestSmartStateRecovery:
    """Tests for smart_state_recovery."""

    def test_healthy_state_needs_no_steps(self, store, points, reporter, three_tasks):
        outcome = smart_state_recovery(store, points, reporter)
        assert outcome.steps == []
        assert outcome.report_path.exists()
        assert "recovery_report_smart_" in outcome.report_path.name

    def test_corrupt_state_restores_latest(self, store, points, reporter, three_tasks):
        store.update(lambda s: start_task(s, "task-1"))
        point_id = points.create("task-1", "task_start")
        store.path.write_text("{corrupt")

        outcome = smart_state_recovery(store, points, reporter)

        assert point_id in outcome.steps[0]
        assert store.read().current_task_id == "task-1"
        assert "task-1" in outcome.instruction

    def test_corrupt_state_without_points(self, store, points, reporter):
        store.path.write_text("{corrupt")
        with pytest.raises(CorruptStateError):
            smart_state_recovery(store, points, reporter)

    def test_dangling_current_task_cleared(self, store, points, reporter, three_tasks):
        raw = json.loads(store.path.read_text())
        raw["current_task_id"] = "ghost"
        store.path.write_text(json.dumps(raw))

        outcome = smart_state_recovery(store, points, reporter)

        assert store.read().current_task_id is None
        assert any("ghost" in step for step in outcome.steps)

    def test_counters_recomputed(self, store, points, reporter, three_tasks):
        raw = json.loads(store.path.read_text())
        raw["completed_tasks"] = 3
        raw["failed_tasks"] = 2
        raw["tasks"]["task-1"]["status"] = "COMPLETED"
        store.path.write_text(json.dumps(raw))

        smart_state_recovery(store, points, reporter)

        state = store.read()
        assert state.completed_tasks == 1
        assert state.failed_tasks == 0


class TestVerifyAndContinue:
    """Tests for artifact verification and continue_task."""

    @pytest.fixture
    def with_artifacts(self, store):
        return store.initialize(["build", "test"], {"build": ["dist/app.txt", "dist/app.md"]})

    def test_verify_reports_missing(self, store, config, with_artifacts):
        root = config.workspace.root_path
        (root / "dist").mkdir()
        (root / "dist" / "app.txt").write_text("ok")

        result = verify_task_artifacts(store, "build", root)

        assert result.present == ["dist/app.txt"]
        assert result.missing == ["dist/app.md"]
        assert not result.complete

    def test_verify_unknown_task(self, store, config, with_artifacts):
        with pytest.raises(TaskNotFoundError):
            verify_task_artifacts(store, "deploy", config.workspace.root_path)

    def test_continue_with_missing_artifacts_resets(self, store, config, reporter, with_artifacts):
        store.update(lambda s: start_task(s, "build"))

        outcome = continue_task(store, config.workspace.root_path, reporter)

        task = outcome.state.tasks["build"]
        assert task.status == TaskStatus.PENDING
        assert outcome.state.status == PipelineStatus.RECOVERING
        assert outcome.state.current_task_id == "build"
        assert "recovery_report_continuation_" in outcome.report_path.name

    def test_continue_with_all_artifacts_completes(self, store, config, reporter, with_artifacts):
        root = config.workspace.root_path
        (root / "dist").mkdir()
        (root / "dist" / "app.txt").write_text("ok")
        (root / "dist" / "app.md").write_text("ok")
        store.update(lambda s: start_task(s, "build"))

        outcome = continue_task(store, root, reporter)

        assert outcome.state.tasks["build"].status == TaskStatus.COMPLETED
        assert outcome.state.completed_tasks == 1
        assert outcome.state.status == PipelineStatus.CONTINUING

    def test_continue_last_task_completes_pipeline(self, store, config, reporter):
        store.initialize(["only"])
        store.update(lambda s: start_task(s, "only"))

        outcome = continue_task(store, config.workspace.root_path, reporter)

        assert outcome.state.status == PipelineStatus.COMPLETED

    def test_continue_without_current_task(self, store, config, reporter, with_artifacts):
        with pytest.raises(TaskNotFoundError):
            continue_task(store, config.workspace.root_path, reporter)


class TestAutoRecovery:
    """Tests for auto_recovery."""

    def test_restores_then_continues(self, store, points, config, reporter):
        store.initialize(["build"], {"build": ["out.bin"]})
        store.update(lambda s: start_task(s, "build"))
        points.create("build", "task_start")
        store.path.write_text("{corrupt")

        outcome = auto_recovery(store, points, config.workspace.root_path, reporter)

        assert outcome.state.status == PipelineStatus.RECOVERING
        assert outcome.state.tasks["build"].status == TaskStatus.PENDING
        assert any("Restored" in step for step in outcome.steps)

    def test_nothing_to_continue(self, store, points, config, reporter, three_tasks):
        outcome = auto_recovery(store, points, config.workspace.root_path, reporter)
        assert outcome.steps == ["No interrupted task to continue"]
