"""Unit tests for the file-based task ledger.

This module tests task creation, step recording, batch checkpoints,
finalization and recovery from interrupted or corrupt records.
"""

import json
import logging
import re
import shutil

import pytest

from maker.config import MakerSettings
from maker.maker_logging import observability_hooks, performance_monitor
from maker.models import STATUS_COMPLETED, STATUS_IN_PROGRESS, STATUS_PENDING
from maker.store import (
    BatchOrderError,
    MakerError,
    NothingToResumeError,
    StepStateError,
    TaskExistsError,
    TaskNotFoundError,
    TaskStateError,
    TaskStore,
)
from maker.voting import NoViableCandidateError


def _finish_batch(store, task_id, batch_id):
    snapshot = store.load(task_id)
    for step in snapshot.steps_in(batch_id):
        store.record_step_result(task_id, step.id, f"solution for step {step.id}")
    return store.complete_batch(task_id, batch_id, f"# batch {batch_id}\n")


class TestTaskStoreInitialization:
    """Test cases for TaskStore construction."""

    def test_creates_task_directory(self, tmp_path):
        store = TaskStore(tmp_path, settings=MakerSettings())

        assert store.root == tmp_path.resolve()
        assert store.tasks_dir == tmp_path.resolve() / ".maker" / "tasks"
        assert store.tasks_dir.is_dir()

    def test_custom_storage_dir(self, tmp_path):
        store = TaskStore(tmp_path, settings=MakerSettings(storage_dir=".ledger"))

        assert store.tasks_dir == tmp_path.resolve() / ".ledger" / "tasks"

    def test_invalid_task_id(self, store):
        with pytest.raises(ValueError, match="Invalid task id"):
            store.task_dir("../escape")


class TestCreate:
    """Test cases for TaskStore.create."""

    def test_generated_id_and_files(self, store):
        """Test a new record has a time-derived id and its three files."""
        task_id = store.create("Build a parser", ["Model", "Parser", "Tests"])

        assert re.fullmatch(r"maker-\d{8}-\d{6}-[0-9a-f]{6}", task_id)
        task_dir = store.task_dir(task_id)
        assert (task_dir / "task-manifest.json").exists()
        assert (task_dir / "progress.json").exists()
        assert (task_dir / "decomposition.md").exists()
        assert not list(task_dir.glob("*.tmp"))

    def test_fresh_task_is_all_pending(self, store, seven_step_task):
        """Test loading right after create shows nothing done and resumes at step 1."""
        snapshot = store.load(seven_step_task)

        assert snapshot.task.status == STATUS_PENDING
        assert snapshot.task.completed_steps == 0
        assert snapshot.task.total_steps == 7
        assert snapshot.task.total_batches == 3
        assert snapshot.task.current_batch == 1
        assert snapshot.task.can_resume is True
        assert all(step.status == STATUS_PENDING for step in snapshot.steps)
        assert all(batch.status == STATUS_PENDING for batch in snapshot.batches)
        assert snapshot.resume_point.step == 1
        assert snapshot.resume_point.batch == 1
        assert snapshot.resume_point.instruction == "Start step 1 (Define data model) in batch-001."

    def test_decomposition_lists_steps_by_batch(self, store, seven_step_task):
        text = store.decomposition_path(seven_step_task).read_text(encoding="utf-8")

        assert "**Task:** Build a config file parser" in text
        assert "## batch-002" in text
        assert "4. Add validation" in text

    def test_default_batch_size_from_settings(self, tmp_path):
        store = TaskStore(tmp_path, settings=MakerSettings(batch_size=2))

        task_id = store.create("d", ["a", "b", "c"])

        assert [batch.steps for batch in store.load(task_id).batches] == [[1, 2], [3]]

    def test_duplicate_id_rejected(self, store, seven_step_task):
        """Test creating over an existing record fails and leaves it untouched."""
        with pytest.raises(TaskExistsError) as excinfo:
            store.create("Other", ["x"], task_id=seven_step_task)

        assert isinstance(excinfo.value, FileExistsError)
        assert store.load(seven_step_task).task.description == "Build a config file parser"

    @pytest.mark.parametrize(
        "description, steps, batch_size",
        [
            ("", ["a"], 3),
            ("d", [], 3),
            ("d", ["a"], 0),
            ("d", ["a", ""], 3),
        ],
    )
    def test_invalid_input(self, store, description, steps, batch_size):
        with pytest.raises(ValueError):
            store.create(description, steps, batch_size)

        assert list(store.tasks_dir.iterdir()) == []

    def test_failed_write_leaves_no_directory(self, store, monkeypatch):
        """Test a write failure during create removes the new record so the id can be reused."""

        def failing_save(snapshot):
            raise OSError("No space left on device")

        monkeypatch.setattr(store, "_save", failing_save)
        with pytest.raises(OSError):
            store.create("d", ["a"], 1, task_id="retry-task")

        assert not store.task_dir("retry-task").exists()

        monkeypatch.undo()
        assert store.create("d", ["a"], 1, task_id="retry-task") == "retry-task"
        assert store.exists("retry-task")

    def test_failed_create_keeps_existing_record(self, store, seven_step_task):
        with pytest.raises(TaskExistsError):
            store.create("Other", ["x"], task_id=seven_step_task)

        assert store.task_dir(seven_step_task).is_dir()

    def test_manifest_is_readable_json(self, store, seven_step_task):
        manifest = json.loads(store.manifest_path(seven_step_task).read_text(encoding="utf-8"))
        progress = json.loads(store.progress_path(seven_step_task).read_text(encoding="utf-8"))

        assert manifest["id"] == seven_step_task
        assert manifest["extension"] == "py"
        assert progress["batches"]["2"]["steps"] == [4, 5]
        assert progress["steps"][0]["batch"] == 1


class TestLoad:
    """Test cases for TaskStore.load and resume."""

    def test_missing_task(self, store):
        with pytest.raises(TaskNotFoundError):
            store.load("no-such-task")

    def test_load_is_idempotent(self, store, seven_step_task):
        """Test loading twice gives the same state and does not write."""
        store.record_step_result(seven_step_task, 1, "dataclass Config")
        before = store.progress_path(seven_step_task).read_text(encoding="utf-8")

        first = store.load(seven_step_task)
        second = store.load(seven_step_task)

        assert first.to_dict() == second.to_dict()
        assert store.progress_path(seven_step_task).read_text(encoding="utf-8") == before

    def test_corrupt_progress(self, store, seven_step_task):
        store.progress_path(seven_step_task).write_text("{not json", encoding="utf-8")

        with pytest.raises(TaskStateError, match="unreadable"):
            store.load(seven_step_task)

    def test_missing_progress(self, store, seven_step_task):
        store.progress_path(seven_step_task).unlink()

        with pytest.raises(TaskStateError):
            store.load(seven_step_task)

    def test_inconsistent_membership(self, store, seven_step_task):
        path = store.progress_path(seven_step_task)
        progress = json.loads(path.read_text(encoding="utf-8"))
        progress["steps"][3]["batch"] = 3
        path.write_text(json.dumps(progress), encoding="utf-8")

        with pytest.raises(TaskStateError, match="membership"):
            store.load(seven_step_task)

    def test_interrupted_after_progress_write(self, store, seven_step_task):
        """Test a stale manifest is corrected from the step ledger."""
        store.record_step_result(seven_step_task, 1, "model")
        manifest_path = store.manifest_path(seven_step_task)
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        manifest["completed_steps"] = 0
        manifest_path.write_text(json.dumps(manifest), encoding="utf-8")

        snapshot = store.load(seven_step_task)

        assert snapshot.task.completed_steps == 1
        assert snapshot.resume_point.step == 2

    def test_stale_pending_status_is_rederived(self, store, seven_step_task):
        """Test a manifest still saying pending after the first recorded step reports in_progress."""
        store.record_step_result(seven_step_task, 1, "model")
        manifest_path = store.manifest_path(seven_step_task)
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        manifest.update({"status": STATUS_PENDING, "completed_steps": 0})
        manifest_path.write_text(json.dumps(manifest), encoding="utf-8")

        snapshot = store.load(seven_step_task)

        assert snapshot.task.completed_steps == 1
        assert snapshot.task.status == STATUS_IN_PROGRESS

    def test_started_step_alone_marks_task_in_progress(self, store, seven_step_task):
        store.start_step(seven_step_task, 1)
        manifest_path = store.manifest_path(seven_step_task)
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        manifest["status"] = STATUS_PENDING
        manifest_path.write_text(json.dumps(manifest), encoding="utf-8")

        assert store.load(seven_step_task).task.status == STATUS_IN_PROGRESS

    def test_renamed_record_rejected(self, store, seven_step_task):
        """Test a record copied under another id is not treated as that id."""
        shutil.copytree(store.task_dir(seven_step_task), store.task_dir("copied-task"))

        with pytest.raises(TaskStateError, match="renamed or copied"):
            store.load("copied-task")

    def test_in_progress_step_is_resumed(self, store, seven_step_task):
        """Test a step started but never recorded is where work continues."""
        store.record_step_result(seven_step_task, 1, "model")
        store.start_step(seven_step_task, 2)

        pointer = store.resume(seven_step_task)

        assert pointer.step == 2
        assert pointer.instruction == (
            "Resume step 2 (Write parser) in batch-001; no result was recorded yet."
        )

    def test_resume_points_at_checkpoint_when_batch_unassembled(self, store, seven_step_task):
        """Test finishing every step of batch 1 without assembling it asks for the checkpoint."""
        _finish_batch(store, seven_step_task, 1)
        for step_id in (4, 5):
            store.record_step_result(seven_step_task, step_id, "done")

        snapshot = store.load(seven_step_task)

        assert snapshot.task.current_batch == 2
        assert snapshot.batch(2).status == STATUS_COMPLETED
        assert snapshot.resume_point.step == 6
        assert snapshot.resume_point.batch == 3
        assert snapshot.resume_point.instruction.startswith("Checkpoint batch-002 first. ")

    def test_nothing_to_resume(self, store):
        task_id = store.create("d", ["a"], 1)
        _finish_batch(store, task_id, 1)

        with pytest.raises(NothingToResumeError) as excinfo:
            store.resume(task_id)

        assert isinstance(excinfo.value, TaskNotFoundError)

    def test_errors_share_a_base_class(self):
        for error in (TaskNotFoundError, TaskExistsError, TaskStateError, StepStateError, BatchOrderError):
            assert issubclass(error, MakerError)


class TestRecordStep:
    """Test cases for start_step, record_step_result and record_vote."""

    def test_record_writes_artifact(self, store, seven_step_task):
        snapshot = store.record_step_result(seven_step_task, 2, "def parse(text): ...")

        step = snapshot.step(2)
        assert step.status == STATUS_COMPLETED
        assert step.artifact == "batch-001/step-02-solution.md"
        assert snapshot.task.status == STATUS_IN_PROGRESS
        assert snapshot.batch(1).status == STATUS_IN_PROGRESS

        artifact = store.read_step_artifact(seven_step_task, 2)
        assert artifact.startswith("# Step 2: Write parser")
        assert "def parse(text): ..." in artifact

    def test_unrecorded_step_has_no_artifact(self, store, seven_step_task):
        assert store.read_step_artifact(seven_step_task, 1) is None

    def test_empty_solution_rejected(self, store, seven_step_task):
        with pytest.raises(ValueError):
            store.record_step_result(seven_step_task, 1, "   ")

    def test_unknown_step(self, store, seven_step_task):
        with pytest.raises(StepStateError, match="not found"):
            store.record_step_result(seven_step_task, 99, "x")

    def test_rerecord_in_open_batch_replaces_artifact(self, store, seven_step_task):
        store.record_step_result(seven_step_task, 1, "first try")
        snapshot = store.record_step_result(seven_step_task, 1, "second try")

        assert snapshot.task.completed_steps == 1
        assert "second try" in store.read_step_artifact(seven_step_task, 1)

    def test_rerecord_after_checkpoint_rejected(self, store, seven_step_task):
        _finish_batch(store, seven_step_task, 1)

        with pytest.raises(StepStateError, match="already checkpointed"):
            store.record_step_result(seven_step_task, 1, "late change")

    def test_cannot_work_ahead_of_checkpoint(self, store, seven_step_task):
        """Test steps of a later batch wait for earlier checkpoints."""
        with pytest.raises(BatchOrderError, match="batch-001"):
            store.record_step_result(seven_step_task, 4, "too early")

    def test_start_step(self, store, seven_step_task):
        snapshot = store.start_step(seven_step_task, 1)

        assert snapshot.step(1).status == STATUS_IN_PROGRESS
        assert snapshot.task.status == STATUS_IN_PROGRESS
        assert store.load(seven_step_task).step(1).status == STATUS_IN_PROGRESS

    def test_start_completed_step_rejected(self, store, seven_step_task):
        store.record_step_result(seven_step_task, 1, "done")

        with pytest.raises(StepStateError, match="already completed"):
            store.start_step(seven_step_task, 1)

    def test_record_vote_selects_winner(self, store, seven_step_task):
        snapshot, winner = store.record_vote(
            seven_step_task,
            1,
            [
                {"content": "class A: pass", "score": 7},
                {"content": "class B: pass", "score": 9, "red_flags": ["undefined import"]},
                {"content": "class C: pass", "score": 7},
            ],
        )

        assert winner.index == 0
        assert snapshot.step(1).is_completed
        artifact = store.read_step_artifact(seven_step_task, 1)
        assert "class A: pass" in artifact
        assert "## Candidates" in artifact
        assert "undefined import" in artifact

    def test_record_vote_without_viable_candidate(self, store, seven_step_task):
        with pytest.raises(NoViableCandidateError):
            store.record_vote(seven_step_task, 1, [{"content": "x", "score": 1, "red_flags": ["syntax"]}])

        assert store.load(seven_step_task).step(1).status == STATUS_PENDING


class TestCompleteBatch:
    """Test cases for TaskStore.complete_batch."""

    def test_checkpoint_writes_partial(self, store, seven_step_task):
        snapshot = _finish_batch(store, seven_step_task, 1)

        batch = snapshot.batch(1)
        assert batch.checkpoint == "assembled-code/partial-001.py"
        assert (store.task_dir(seven_step_task) / batch.checkpoint).read_text(encoding="utf-8") == "# batch 1\n"
        assert snapshot.task.current_batch == 2
        assert snapshot.task.last_checkpoint == "batch-001"

    def test_default_extension_is_txt(self, store):
        task_id = store.create("d", ["a"], 1)

        snapshot = _finish_batch(store, task_id, 1)

        assert snapshot.batch(1).checkpoint == "assembled-code/partial-001.txt"

    def test_open_steps_block_checkpoint(self, store, seven_step_task):
        store.record_step_result(seven_step_task, 1, "done")

        with pytest.raises(BatchOrderError, match="2, 3"):
            store.complete_batch(seven_step_task, 1, "code")

    def test_out_of_order_checkpoint(self, store):
        """Test batch 2 cannot be checkpointed before batch 1."""
        task_id = store.create("d", ["a", "b"], 1)
        path = store.progress_path(task_id)
        progress = json.loads(path.read_text(encoding="utf-8"))
        progress["steps"][1]["status"] = STATUS_COMPLETED
        path.write_text(json.dumps(progress), encoding="utf-8")

        with pytest.raises(BatchOrderError, match="batch-001"):
            store.complete_batch(task_id, 2, "code")

    def test_checkpoint_twice_rejected(self, store, seven_step_task):
        _finish_batch(store, seven_step_task, 1)

        with pytest.raises(BatchOrderError, match="already checkpointed"):
            store.complete_batch(seven_step_task, 1, "again")

    def test_unknown_batch(self, store, seven_step_task):
        with pytest.raises(BatchOrderError, match="not found"):
            store.complete_batch(seven_step_task, 9, "code")

    def test_empty_assembled_code(self, store, seven_step_task):
        with pytest.raises(ValueError):
            store.complete_batch(seven_step_task, 1, "")


class TestFinalize:
    """Test cases for TaskStore.finalize."""

    def test_finalize_requires_every_checkpoint(self, store, seven_step_task):
        _finish_batch(store, seven_step_task, 1)

        with pytest.raises(TaskStateError, match="batch-002, batch-003"):
            store.finalize(seven_step_task, "all code")

    def test_finalize_completes_task(self, store, seven_step_task):
        for batch_id in (1, 2, 3):
            _finish_batch(store, seven_step_task, batch_id)

        snapshot = store.finalize(seven_step_task, "print('done')")

        assert snapshot.task.status == STATUS_COMPLETED
        assert snapshot.task.can_resume is False
        assert snapshot.resume_point is None
        assert store.read_final(seven_step_task) == "print('done')\n"
        assert (store.task_dir(seven_step_task) / "final" / "complete.py").exists()

    def test_completed_task_is_read_only(self, store):
        task_id = store.create("d", ["a"], 1)
        _finish_batch(store, task_id, 1)
        store.finalize(task_id, "code")

        with pytest.raises(TaskStateError, match="already completed"):
            store.record_step_result(task_id, 1, "again")
        with pytest.raises(TaskStateError):
            store.finalize(task_id, "code")

    def test_read_final_before_finalize(self, store, seven_step_task):
        assert store.read_final(seven_step_task) is None


class TestReplaceAndDelete:
    """Test cases for replace_decomposition and delete_task."""

    def test_replace_before_work_starts(self, store, seven_step_task):
        snapshot = store.replace_decomposition(seven_step_task, ["One", "Two"], 1)

        assert snapshot.task.total_steps == 2
        assert snapshot.task.total_batches == 2
        assert [batch.steps for batch in store.load(seven_step_task).batches] == [[1], [2]]
        assert "1. One" in store.decomposition_path(seven_step_task).read_text(encoding="utf-8")

    def test_replace_after_work_started(self, store, seven_step_task):
        store.start_step(seven_step_task, 1)

        with pytest.raises(TaskStateError, match="already started"):
            store.replace_decomposition(seven_step_task, ["One"])

    def test_delete_requires_confirmation(self, store, seven_step_task):
        with pytest.raises(TaskStateError, match="confirmation"):
            store.delete_task(seven_step_task)

        assert store.exists(seven_step_task)

    def test_delete(self, store, seven_step_task):
        path = store.delete_task(seven_step_task, confirm=True)

        assert not path.exists()
        with pytest.raises(TaskNotFoundError):
            store.delete_task(seven_step_task, confirm=True)


class TestListTasks:
    """Test cases for TaskStore.list_tasks."""

    def test_empty(self, store):
        assert store.list_tasks() == []

    def test_lists_summaries_and_skips_corrupt(self, store, seven_step_task):
        other = store.create("Second task", ["a"], 1, task_id="another-task")
        store.progress_path(other).write_text("[]", encoding="utf-8")

        tasks = store.list_tasks()

        assert [task["task_id"] for task in tasks] == [seven_step_task]
        summary = tasks[0]
        assert summary["total_steps"] == 7
        assert summary["current_batch"] == 1
        assert summary["last_checkpoint"] == ""


class TestObservability:
    """Test cases for ledger events and performance metrics."""

    def test_events_fire_for_each_transition(self, store):
        seen = []

        def record(event_type):
            def callback(**data):
                seen.append((event_type, data["task_id"]))
            return callback

        for event_type in ("task_created", "step_recorded", "batch_checkpointed", "task_finalized"):
            observability_hooks.register_hook(event_type, record(event_type))

        task_id = store.create("d", ["a"], 1)
        _finish_batch(store, task_id, 1)
        store.finalize(task_id, "code")

        assert seen == [
            ("task_created", task_id),
            ("step_recorded", task_id),
            ("batch_checkpointed", task_id),
            ("task_finalized", task_id),
        ]

    def test_each_operation_is_timed_once(self, store, seven_step_task, caplog):
        """Test a store call produces one start and one completion record."""
        store.record_step_result(seven_step_task, 1, "model")
        store.record_step_result(seven_step_task, 2, "parser")
        store.record_step_result(seven_step_task, 3, "serializer")

        with caplog.at_level(logging.DEBUG, logger="maker"):
            store.complete_batch(seven_step_task, 1, "code")

        messages = [record.getMessage() for record in caplog.records]
        assert sum(message.startswith("Starting operation: complete_batch") for message in messages) == 1
        assert sum(message.startswith("Completed operation: complete_batch") for message in messages) == 1

    def test_failed_operation_records_error_metric(self, store, seven_step_task):
        with pytest.raises(BatchOrderError):
            store.complete_batch(seven_step_task, 1, "code")

        metrics = performance_monitor.get_metrics("complete_batch_duration")["complete_batch_duration"]
        assert metrics[-1]["tags"]["status"] == "error"
        assert metrics[-1]["tags"]["error_type"] == "BatchOrderError"


def test_seven_step_walkthrough(store, seven_step_task):
    """Test the full 7-step flow across three batches with an interruption."""
    _finish_batch(store, seven_step_task, 1)
    store.record_step_result(seven_step_task, 4, "validate()")
    store.record_step_result(seven_step_task, 5, "main()")

    # a new session only has the task id
    reopened = TaskStore(store.root, settings=store.settings)
    snapshot = reopened.load(seven_step_task)
    assert snapshot.task.completed_steps == 5
    assert snapshot.task.current_batch == 2
    assert [step.id for step in snapshot.steps if not step.is_completed] == [6, 7]

    reopened.complete_batch(seven_step_task, 2, "# batch 2")
    _finish_batch(reopened, seven_step_task, 3)
    final = reopened.finalize(seven_step_task, "# complete parser")

    assert final.task.completed_steps == 7
    assert final.task.last_checkpoint == "batch-003"
    assert all(batch.is_checkpointed for batch in final.batches)
    assert sorted(p.name for p in (reopened.task_dir(seven_step_task) / "assembled-code").iterdir()) == [
        "partial-001.py",
        "partial-002.py",
        "partial-003.py",
    ]
