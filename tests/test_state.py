"""Tests for the execution state model, store and transitions."""

from __future__ import annotations

import json
import threading
from datetime import datetime

import pytest

from taskwarden.state import (
    CorruptStateError,
    ExecutionState,
    PipelineStatus,
    StateExistsError,
    StateInvariantError,
    StateNotFoundError,
    StateStore,
    TaskNotFoundError,
    TaskStatus,
    complete_task,
    fail_task,
    parse_state,
    recount,
    reset_task,
    start_task,
)


# =============================================================================
# Model Tests
# =============================================================================


class TestExecutionState:
    """Tests for the ExecutionState model."""

    def test_progress_percent(self):
        state = ExecutionState(total_tasks=3, completed_tasks=1)
        assert state.progress_percent == 33
        assert state.completion_ratio == pytest.approx(1 / 3)

    def test_progress_with_no_tasks(self):
        assert ExecutionState().progress_percent == 0
        assert ExecutionState().completion_ratio == 0.0

    def test_invariant_violation(self):
        state = ExecutionState(total_tasks=2, completed_tasks=2, failed_tasks=1)
        assert state.invariant_violations()

    def test_negative_counter_rejected(self):
        with pytest.raises(CorruptStateError):
            parse_state(json.dumps({"total_tasks": -1}))

    def test_content_equals_ignores_timestamp(self):
        a = ExecutionState(total_tasks=1, last_updated_at=datetime(2026, 1, 1))
        b = ExecutionState(total_tasks=1, last_updated_at=datetime(2026, 6, 1))
        assert a.content_equals(b)
        b.total_tasks = 2
        assert not a.content_equals(b)

    def test_quality_metrics_pass_through(self):
        state = parse_state(json.dumps({"quality_metrics": {"score": 0.9, "lint": "clean"}}))
        assert state.quality_metrics.score == 0.9
        assert state.quality_metrics.model_dump()["lint"] == "clean"


# =============================================================================
# Store Tests
# =============================================================================


class TestStateStoreRead:
    """Tests for reading the state document."""

    def test_read_missing(self, store):
        with pytest.raises(StateNotFoundError):
            store.read()
        assert store.read_raw() is None

    def test_read_corrupt(self, store):
        store.path.write_text("{not json")
        with pytest.raises(CorruptStateError):
            store.read()

    def test_read_wrong_shape(self, store):
        store.path.write_text(json.dumps({"status": "EXPLODED"}))
        with pytest.raises(CorruptStateError):
            store.read()


class TestStateStoreInitialize:
    """Tests for StateStore.initialize."""

    def test_initialize(self, store):
        state = store.initialize(["a", "b"], {"a": ["out/a.txt"]})
        assert state.total_tasks == 2
        assert state.status == PipelineStatus.NOT_STARTED
        assert state.tasks["a"].expected_artifacts == ["out/a.txt"]
        assert store.read().tasks["b"].status == TaskStatus.PENDING

    def test_initialize_refuses_overwrite(self, store, three_tasks):
        with pytest.raises(StateExistsError):
            store.initialize(["x"])

    def test_initialize_force(self, store, three_tasks):
        state = store.initialize(["x"], force=True)
        assert list(state.tasks) == ["x"]


class TestStateStoreUpdate:
    """Tests for StateStore.update."""

    def test_update_persists(self, store, three_tasks):
        store.update(lambda s: start_task(s, "task-1"))
        state = store.read()
        assert state.current_task_id == "task-1"
        assert state.status == PipelineStatus.RUNNING

    def test_update_in_place_mutator(self, store, three_tasks):
        def mutate(state):
            state.status = PipelineStatus.RUNNING

        assert store.update(mutate).status == PipelineStatus.RUNNING

    def test_noop_update_does_not_write(self, store, three_tasks):
        before = store.path.read_bytes()
        result = store.update(lambda s: s)
        assert store.path.read_bytes() == before
        assert result.last_updated_at == three_tasks.last_updated_at

    def test_unknown_fields_survive_update(self, store, three_tasks):
        data = json.loads(store.path.read_text())
        data["agent_notes"] = "build cache warmed"
        data["tasks"]["task-1"]["owner"] = "builder"
        store.path.write_text(json.dumps(data))

        store.update(lambda s: start_task(s, "task-1"))

        written = json.loads(store.path.read_text())
        assert written["agent_notes"] == "build cache warmed"
        assert written["tasks"]["task-1"]["owner"] == "builder"
        assert written["tasks"]["task-1"]["status"] == "IN_PROGRESS"

    def test_update_refreshes_timestamp(self, store, three_tasks):
        updated = store.update(lambda s: start_task(s, "task-1"))
        assert updated.last_updated_at >= three_tasks.last_updated_at

    def test_invariant_violation_rejected(self, store, three_tasks):
        before = store.path.read_bytes()

        def break_counts(state):
            state.completed_tasks = 3
            state.failed_tasks = 1
            return state

        with pytest.raises(StateInvariantError):
            store.update(break_counts)
        assert store.path.read_bytes() == before

    def test_mutator_exception_leaves_document(self, store, three_tasks):
        before = store.path.read_bytes()
        with pytest.raises(TaskNotFoundError):
            store.update(lambda s: start_task(s, "ghost"))
        assert store.path.read_bytes() == before

    def test_update_on_corrupt_document(self, store):
        store.path.write_text("garbage")
        with pytest.raises(CorruptStateError):
            store.update(lambda s: s)
        assert store.path.read_text() == "garbage"

    def test_update_creates_document(self, store):
        def add_total(state):
            state.status = PipelineStatus.RUNNING
            return state

        store.update(add_total)
        assert store.read().status == PipelineStatus.RUNNING

    def test_no_temp_files_left(self, store, three_tasks):
        store.update(lambda s: start_task(s, "task-1"))
        leftovers = [p for p in store.path.parent.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_locked_is_reentrant(self, store, three_tasks):
        with store.locked():
            with store.locked():
                store.update(lambda s: start_task(s, "task-2"))
        assert store.read().current_task_id == "task-2"

    def test_concurrent_updates_are_not_lost(self, store, three_tasks):
        workers = 8
        increments = 25

        def bump(state):
            state.retry_info.total_retries += 1
            return state

        def work():
            for _ in range(increments):
                store.update(bump)

        threads = [threading.Thread(target=work) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.read().retry_info.total_retries == workers * increments

    def test_separate_store_instances_share_lock(self, store, three_tasks):
        other = StateStore(store.path)

        def bump(state):
            state.retry_info.total_retries += 1
            return state

        def work(s):
            for _ in range(20):
                s.update(bump)

        threads = [threading.Thread(target=work, args=(s,)) for s in (store, other)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.read().retry_info.total_retries == 40


# =============================================================================
# Transition Tests
# =============================================================================


class TestTransitions:
    """Tests for the task lifecycle mutators."""

    def test_start_sets_started_at_once(self, three_tasks):
        state = three_tasks.model_copy(deep=True)
        first = datetime(2026, 1, 1, 9, 0)
        start_task(state, "task-1", first)
        start_task(state, "task-2", datetime(2026, 1, 1, 10, 0))
        assert state.started_at == first
        assert state.current_task_id == "task-2"

    def test_complete_all_completes_pipeline(self, three_tasks):
        state = three_tasks.model_copy(deep=True)
        for task_id in ("task-1", "task-2", "task-3"):
            start_task(state, task_id)
            complete_task(state, task_id)
        assert state.status == PipelineStatus.COMPLETED
        assert state.current_task_id is None
        assert state.completed_tasks == 3
        assert state.progress_percent == 100

    def test_complete_is_idempotent(self, three_tasks):
        state = three_tasks.model_copy(deep=True)
        complete_task(state, "task-1")
        complete_task(state, "task-1")
        assert state.completed_tasks == 1

    def test_fail_then_reset_keeps_counts(self, three_tasks):
        state = three_tasks.model_copy(deep=True)
        start_task(state, "task-1")
        fail_task(state, "task-1")
        assert state.failed_tasks == 1
        fail_task(state, "task-1")
        assert state.failed_tasks == 1

        reset_task(state, "task-1")
        assert state.failed_tasks == 0
        assert state.tasks["task-1"].status == TaskStatus.PENDING
        assert state.tasks["task-1"].started_at is None

    def test_fail_after_complete_moves_counter(self, three_tasks):
        state = three_tasks.model_copy(deep=True)
        complete_task(state, "task-1")
        fail_task(state, "task-1")
        assert state.completed_tasks == 0
        assert state.failed_tasks == 1

    def test_unknown_task(self, three_tasks):
        with pytest.raises(TaskNotFoundError):
            complete_task(three_tasks.model_copy(deep=True), "nope")

    def test_recount(self, three_tasks):
        state = three_tasks.model_copy(deep=True)
        state.tasks["task-1"].status = TaskStatus.COMPLETED
        state.tasks["task-2"].status = TaskStatus.FAILED
        state.completed_tasks = 3
        state.failed_tasks = 3
        recount(state)
        assert state.completed_tasks == 1
        assert state.failed_tasks == 1
        assert not state.invariant_violations()
