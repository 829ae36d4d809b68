"""File-based task ledger for Maker.

Each task lives in its own directory under ``<root>/.maker/tasks``::

    <task-id>/
      task-manifest.json
      decomposition.md
      progress.json
      batch-NNN/step-NN-solution.md
      assembled-code/partial-NNN.<ext>
      final/complete.<ext>

Step status in ``progress.json`` is authoritative. Batch status, the
manifest counters and the resume pointer are recomputed from it on every
load, so a record interrupted between two writes still resumes at the
first incomplete step.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import MakerSettings, normalize_extension
from .models import (
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    Batch,
    Candidate,
    ResumePointer,
    Step,
    Task,
    TaskSnapshot,
    batch_label,
    batch_status_for,
    utc_timestamp,
)
from .maker_logging import (
    log_operation,
    log_performance,
    log_task_created,
    log_step_recorded,
    log_batch_checkpointed,
    log_task_finalized,
    log_error_with_context,
    observability_hooks,
)
from .voting import coerce_candidates, plan_batches, render_scoreboard, select_candidate

logger = logging.getLogger("maker.store")


class MakerError(RuntimeError):
    """Base class for ledger errors."""


class TaskNotFoundError(MakerError, FileNotFoundError):
    """No task record exists for the id."""


class NothingToResumeError(TaskNotFoundError):
    """Every step of the task is completed."""


class TaskExistsError(MakerError, FileExistsError):
    """A task record already exists for the id."""


class TaskStateError(MakerError):
    """The operation is not valid for the task's current state."""


class StepStateError(MakerError):
    """Unknown step, or a step transition the ledger does not allow."""


class BatchOrderError(MakerError):
    """Batches must be checkpointed in id order."""


_TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def _generate_task_id() -> str:
    """Time-derived id with a random suffix."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"maker-{stamp}-{uuid.uuid4().hex[:6]}"


def _write_atomic(path: Path, content: str) -> None:
    """Write to a sibling temp file and rename it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    _write_atomic(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")


class TaskStore:
    """Manage Maker task records within a project root."""

    MANIFEST_NAME = "task-manifest.json"
    PROGRESS_NAME = "progress.json"
    DECOMPOSITION_NAME = "decomposition.md"

    def __init__(self, root: Path | str, *, settings: Optional[MakerSettings] = None):
        """Initialize the store, creating ``<root>/<storage>/tasks`` if needed."""
        self.settings = settings or MakerSettings.from_env()

        try:
            self.root = Path(root).resolve()
            self.base_dir = self.root / self.settings.storage_dir
            self.tasks_dir = self.base_dir / "tasks"

            try:
                self.tasks_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Failed to create task directories: {e}")
                raise RuntimeError(f"Could not initialize task store at {self.root}: {e}") from e

            logger.debug(f"Task store initialized at {self.tasks_dir}")

        except Exception as e:
            log_error_with_context(e, {"operation": "store_init", "root": str(root)})
            raise

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def task_dir(self, task_id: str) -> Path:
        """Directory holding one task record."""
        if not task_id or not _TASK_ID_PATTERN.match(task_id):
            raise ValueError(f"Invalid task id: {task_id!r}")
        return self.tasks_dir / task_id

    def manifest_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / self.MANIFEST_NAME

    def progress_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / self.PROGRESS_NAME

    def decomposition_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / self.DECOMPOSITION_NAME

    def exists(self, task_id: str) -> bool:
        """Check if a task record exists for the id."""
        return self.manifest_path(task_id).exists()

    @staticmethod
    def _step_artifact_name(step: Step) -> str:
        return f"{batch_label(step.batch)}/step-{step.id:02d}-solution.md"

    @staticmethod
    def _partial_name(batch_id: int, extension: str) -> str:
        return f"assembled-code/partial-{batch_id:03d}.{extension}"

    @staticmethod
    def _final_name(extension: str) -> str:
        return f"final/complete.{extension}"

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @log_performance("create_task")
    def create(
        self,
        description: str,
        steps: Sequence[str],
        batch_size: Optional[int] = None,
        *,
        task_id: Optional[str] = None,
        extension: Optional[str] = None,
        batch_sizes: Optional[Sequence[int]] = None,
    ) -> str:
        """Create a task record with every step and batch pending."""
        try:
            if not description or not description.strip():
                raise ValueError("Task description cannot be empty")
            size = batch_size if batch_size is not None else self.settings.batch_size
            planned_steps, planned_batches = plan_batches(steps, size, batch_sizes)
            if batch_sizes:
                size = max(batch_sizes)
            ext = normalize_extension(extension or self.settings.extension)

            identifier = task_id or _generate_task_id()
            task_dir = self.task_dir(identifier)

            try:
                task_dir.mkdir(parents=True, exist_ok=False)
            except FileExistsError as e:
                raise TaskExistsError(f"Task '{identifier}' already exists at {task_dir}") from e

            task = Task(
                id=identifier,
                description=description.strip(),
                batch_size=size,
                total_steps=len(planned_steps),
                total_batches=len(planned_batches),
                extension=ext,
            )
            snapshot = TaskSnapshot(task=task, steps=planned_steps, batches=planned_batches)
            self._refresh(snapshot)

            try:
                _write_atomic(self.decomposition_path(identifier), self._render_decomposition(snapshot))
                self._save(snapshot)
            except Exception:
                # created by this call above, so nothing else owns it
                shutil.rmtree(task_dir, ignore_errors=True)
                raise

            log_task_created(identifier, task.total_steps, task.total_batches, batch_size=size)
            logger.info(f"Created task '{identifier}' with {task.total_steps} steps in {task.total_batches} batches")
            return identifier

        except Exception as e:
            log_error_with_context(e, {"operation": "create_task", "task_id": task_id, "batch_size": batch_size})
            raise

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self, task_id: str) -> TaskSnapshot:
        """Reconstruct a task from its manifest and progress ledger."""
        manifest_path = self.manifest_path(task_id)
        progress_path = self.progress_path(task_id)
        if not manifest_path.exists():
            raise TaskNotFoundError(f"No task record found for '{task_id}' under {self.tasks_dir}")
        if not progress_path.exists():
            raise TaskStateError(f"Task '{task_id}' has a manifest but no {self.PROGRESS_NAME}")

        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            progress = json.loads(progress_path.read_text(encoding="utf-8"))
            task = Task.from_dict(manifest)
            steps = [Step.from_dict(item) for item in progress["steps"]]
            batches = sorted(
                (Batch.from_dict(batch_id, data) for batch_id, data in progress["batches"].items()),
                key=lambda batch: batch.id,
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise TaskStateError(f"Task '{task_id}' has an unreadable ledger: {e}") from e
        if task.id != task_id:
            raise TaskStateError(
                f"Task directory '{task_id}' holds a manifest for '{task.id}'; the record was renamed or copied"
            )

        snapshot = TaskSnapshot(task=task, steps=sorted(steps, key=lambda step: step.id), batches=batches)
        self._check_ledger(snapshot)
        self._refresh(snapshot)
        return snapshot

    def resume(self, task_id: str) -> ResumePointer:
        """Resume pointer for the task; raises when nothing is left to do."""
        snapshot = self.load(task_id)
        if snapshot.resume_point is None:
            raise NothingToResumeError(f"Task '{task_id}' has no incomplete steps")
        return snapshot.resume_point

    def list_tasks(self) -> List[Dict[str, Any]]:
        """List all task records in the store."""
        tasks: List[Dict[str, Any]] = []
        for path in sorted(self.tasks_dir.iterdir()):
            task_id = path.name
            if not path.is_dir() or not (path / self.MANIFEST_NAME).exists():
                continue
            try:
                snapshot = self.load(task_id)
            except (MakerError, ValueError) as e:
                logger.warning(f"Skipping unreadable task record '{task_id}': {e}")
                continue
            tasks.append(self.summarize(snapshot))
        return tasks

    def summarize(self, snapshot: TaskSnapshot) -> Dict[str, Any]:
        """Short status dictionary for a task."""
        task = snapshot.task
        return {
            "task_id": task.id,
            "description": task.description,
            "status": task.status,
            "completed_steps": task.completed_steps,
            "total_steps": task.total_steps,
            "current_batch": task.current_batch,
            "total_batches": task.total_batches,
            "last_checkpoint": task.last_checkpoint,
            "can_resume": task.can_resume,
            "updated": task.updated,
            "task_dir": str(self.task_dir(task.id)),
        }

    def read_step_artifact(self, task_id: str, step_id: int) -> Optional[str]:
        """Return the recorded solution file for a step, if any."""
        snapshot = self.load(task_id)
        step = self._step(snapshot, step_id)
        if not step.artifact:
            return None
        path = self.task_dir(task_id) / step.artifact
        return path.read_text(encoding="utf-8") if path.exists() else None

    def read_final(self, task_id: str) -> Optional[str]:
        """Return the final combined artifact, if the task was finalized."""
        snapshot = self.load(task_id)
        path = self.task_dir(task_id) / self._final_name(snapshot.task.extension)
        return path.read_text(encoding="utf-8") if path.exists() else None

    # ------------------------------------------------------------------
    # Step progress
    # ------------------------------------------------------------------

    @log_performance("start_step")
    def start_step(self, task_id: str, step_id: int) -> TaskSnapshot:
        """Mark a step in_progress before its candidates are generated."""
        try:
            snapshot = self.load(task_id)
            self._ensure_writable(snapshot)
            step = self._step(snapshot, step_id)
            self._ensure_batch_open(snapshot, step.batch)
            if step.is_completed:
                raise StepStateError(f"Step {step_id} of task '{task_id}' is already completed")
            if step.status == STATUS_PENDING:
                step.advance(STATUS_IN_PROGRESS)
                self._mark_task_started(snapshot)
                snapshot.task.touch()
                self._refresh(snapshot)
                self._save(snapshot)
                observability_hooks.log_ledger_event(
                    "step_started", task_id=task_id, step_id=step_id, batch_id=step.batch
                )
            return snapshot

        except Exception as e:
            log_error_with_context(e, {"operation": "start_step", "task_id": task_id, "step_id": step_id})
            raise

    @log_performance("record_step_result")
    def record_step_result(self, task_id: str, step_id: int, solution_summary: str) -> TaskSnapshot:
        """Write the step artifact, then flip the step to completed in the ledger."""
        try:
            return self._record(task_id, step_id, solution_summary)
        except Exception as e:
            log_error_with_context(e, {
                "operation": "record_step_result",
                "task_id": task_id,
                "step_id": step_id,
            })
            raise

    @log_performance("record_vote")
    def record_vote(
        self,
        task_id: str,
        step_id: int,
        candidates: Iterable[Candidate | Dict[str, Any]],
    ) -> Tuple[TaskSnapshot, Candidate]:
        """Select the winning candidate for a step and record it."""
        try:
            pool = coerce_candidates(candidates)
            winner = select_candidate(pool)
            snapshot = self._record(
                task_id,
                step_id,
                winner.content,
                appendix=render_scoreboard(pool, winner),
                vote={"selected_index": winner.index, "selected_score": winner.score, "candidates": len(pool)},
            )
            return snapshot, winner
        except Exception as e:
            log_error_with_context(e, {"operation": "record_vote", "task_id": task_id, "step_id": step_id})
            raise

    def _record(
        self,
        task_id: str,
        step_id: int,
        solution_summary: str,
        *,
        appendix: Optional[str] = None,
        vote: Optional[Dict[str, Any]] = None,
    ) -> TaskSnapshot:
        if not solution_summary or not solution_summary.strip():
            raise ValueError("Solution summary cannot be empty")

        snapshot = self.load(task_id)
        self._ensure_writable(snapshot)
        step = self._step(snapshot, step_id)
        self._ensure_batch_open(snapshot, step.batch)

        rerecorded = step.is_completed
        artifact_name = self._step_artifact_name(step)
        _write_atomic(
            self.task_dir(task_id) / artifact_name,
            self._render_step_artifact(snapshot.task, step, solution_summary, appendix),
        )

        step.advance(STATUS_COMPLETED)
        step.artifact = artifact_name
        self._mark_task_started(snapshot)
        snapshot.task.touch()
        self._refresh(snapshot)
        self._save(snapshot)

        log_step_recorded(task_id, step_id, step.batch, rerecorded=rerecorded, **(vote or {}))
        logger.info(f"Recorded step {step_id} of task '{task_id}' ({snapshot.task.completed_steps}/{snapshot.task.total_steps})")
        return snapshot

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    @log_performance("complete_batch")
    def complete_batch(self, task_id: str, batch_id: int, assembled_artifact: str) -> TaskSnapshot:
        """Write the batch's assembled output and checkpoint it."""
        try:
            if assembled_artifact is None or not assembled_artifact.strip():
                raise ValueError("Assembled artifact cannot be empty")

            snapshot = self.load(task_id)
            self._ensure_writable(snapshot)
            batch = self._batch(snapshot, batch_id)

            if batch.is_checkpointed:
                raise BatchOrderError(f"{batch.label} of task '{task_id}' is already checkpointed")
            pending = [step.id for step in snapshot.steps_in(batch_id) if not step.is_completed]
            if pending:
                raise BatchOrderError(
                    f"Cannot checkpoint {batch.label} of task '{task_id}': steps still open -> "
                    + ", ".join(str(step_id) for step_id in pending)
                )
            self._ensure_earlier_checkpointed(snapshot, batch_id)

            partial_name = self._partial_name(batch_id, snapshot.task.extension)
            _write_atomic(self.task_dir(task_id) / partial_name, assembled_artifact.rstrip("\n") + "\n")

            batch.checkpoint = partial_name
            snapshot.task.touch()
            self._refresh(snapshot)
            self._save(snapshot)

            log_batch_checkpointed(task_id, batch_id, partial=partial_name)
            logger.info(f"Checkpointed {batch.label} of task '{task_id}'")
            return snapshot

        except Exception as e:
            log_error_with_context(e, {"operation": "complete_batch", "task_id": task_id, "batch_id": batch_id})
            raise

    @log_performance("finalize_task")
    def finalize(self, task_id: str, complete_artifact: str) -> TaskSnapshot:
        """Write the final combined artifact and mark the task completed."""
        try:
            if complete_artifact is None or not complete_artifact.strip():
                raise ValueError("Complete artifact cannot be empty")

            snapshot = self.load(task_id)
            self._ensure_writable(snapshot)

            open_batches = [batch.label for batch in snapshot.batches if not batch.is_checkpointed]
            if open_batches:
                raise TaskStateError(
                    f"Cannot finalize task '{task_id}': batches without checkpoint -> " + ", ".join(open_batches)
                )

            final_name = self._final_name(snapshot.task.extension)
            _write_atomic(self.task_dir(task_id) / final_name, complete_artifact.rstrip("\n") + "\n")

            self._mark_task_started(snapshot)
            snapshot.task.advance(STATUS_COMPLETED)
            self._refresh(snapshot)
            self._save(snapshot)

            log_task_finalized(task_id, total_steps=snapshot.task.total_steps, final=final_name)
            logger.info(f"Finalized task '{task_id}'")
            return snapshot

        except Exception as e:
            log_error_with_context(e, {"operation": "finalize_task", "task_id": task_id})
            raise

    # ------------------------------------------------------------------
    # Decomposition changes and removal
    # ------------------------------------------------------------------

    @log_performance("replace_decomposition")
    def replace_decomposition(
        self,
        task_id: str,
        steps: Sequence[str],
        batch_size: Optional[int] = None,
        batch_sizes: Optional[Sequence[int]] = None,
    ) -> TaskSnapshot:
        """Replace the steps and batches wholesale before any work started."""
        try:
            snapshot = self.load(task_id)
            self._ensure_writable(snapshot)
            started = [step.id for step in snapshot.steps if step.status != STATUS_PENDING]
            if started:
                raise TaskStateError(
                    f"Cannot redo decomposition of task '{task_id}': steps already started -> "
                    + ", ".join(str(step_id) for step_id in started)
                )

            size = batch_size if batch_size is not None else snapshot.task.batch_size
            new_steps, new_batches = plan_batches(steps, size, batch_sizes)
            if batch_sizes:
                size = max(batch_sizes)
            snapshot.steps = new_steps
            snapshot.batches = new_batches
            snapshot.task.batch_size = size
            snapshot.task.total_steps = len(new_steps)
            snapshot.task.total_batches = len(new_batches)
            snapshot.task.touch()
            self._refresh(snapshot)

            _write_atomic(self.decomposition_path(task_id), self._render_decomposition(snapshot))
            self._save(snapshot)

            observability_hooks.log_ledger_event(
                "decomposition_replaced", task_id=task_id, total_steps=len(new_steps), total_batches=len(new_batches)
            )
            return snapshot

        except Exception as e:
            log_error_with_context(e, {"operation": "replace_decomposition", "task_id": task_id})
            raise

    def delete_task(self, task_id: str, *, confirm: bool = False) -> Path:
        """Remove a task record; requires explicit confirmation."""
        task_dir = self.task_dir(task_id)
        if not confirm:
            raise TaskStateError(f"Deleting task '{task_id}' requires explicit confirmation")
        if not task_dir.exists():
            raise TaskNotFoundError(f"No task record found for '{task_id}' under {self.tasks_dir}")
        with log_operation("delete_task", task_id=task_id):
            shutil.rmtree(task_dir)
        observability_hooks.log_ledger_event("task_deleted", task_id=task_id)
        logger.info(f"Deleted task '{task_id}'")
        return task_dir

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _save(self, snapshot: TaskSnapshot) -> None:
        """Persist the ledger first, then the manifest summary."""
        task_id = snapshot.task.id
        _write_json_atomic(self.progress_path(task_id), snapshot.progress_dict())
        _write_json_atomic(self.manifest_path(task_id), snapshot.task.to_dict())

    def _refresh(self, snapshot: TaskSnapshot) -> None:
        """Recompute every derived field from step-level status."""
        task = snapshot.task
        for batch in snapshot.batches:
            batch.status = batch_status_for(snapshot.steps_in(batch.id))

        task.total_steps = len(snapshot.steps)
        task.total_batches = len(snapshot.batches)
        task.completed_steps = sum(1 for step in snapshot.steps if step.is_completed)
        if task.status == STATUS_PENDING and any(step.status != STATUS_PENDING for step in snapshot.steps):
            task.status = STATUS_IN_PROGRESS

        open_batches = [batch for batch in snapshot.batches if not batch.is_checkpointed]
        checkpointed = [batch for batch in snapshot.batches if batch.is_checkpointed]
        if open_batches:
            task.current_batch = open_batches[0].id
        elif snapshot.batches:
            task.current_batch = snapshot.batches[-1].id
        task.last_checkpoint = checkpointed[-1].label if checkpointed else ""
        task.can_resume = task.status != STATUS_COMPLETED
        snapshot.resume_point = self._resume_pointer(snapshot)

    def _resume_pointer(self, snapshot: TaskSnapshot) -> Optional[ResumePointer]:
        """Point at the earliest step that is not completed."""
        step = next((item for item in snapshot.steps if not item.is_completed), None)
        if step is None:
            return None

        current = snapshot.task.current_batch
        if step.status == STATUS_IN_PROGRESS:
            action = f"Resume step {step.id} ({step.name}) in {batch_label(step.batch)}; no result was recorded yet."
        else:
            action = f"Start step {step.id} ({step.name}) in {batch_label(step.batch)}."
        if current < step.batch:
            action = f"Checkpoint {batch_label(current)} first. {action}"
        return ResumePointer(batch=step.batch, step=step.id, instruction=action)

    def _check_ledger(self, snapshot: TaskSnapshot) -> None:
        """Reject ledgers that break the step/batch invariants."""
        task_id = snapshot.task.id
        expected_ids = list(range(1, len(snapshot.steps) + 1))
        if [step.id for step in snapshot.steps] != expected_ids:
            raise TaskStateError(f"Task '{task_id}' has non-sequential step ids")

        membership: Dict[int, int] = {}
        for batch in snapshot.batches:
            if batch.steps != sorted(batch.steps):
                raise TaskStateError(f"Task '{task_id}': {batch.label} lists steps out of order")
            for step_id in batch.steps:
                if step_id in membership:
                    raise TaskStateError(f"Task '{task_id}': step {step_id} belongs to more than one batch")
                membership[step_id] = batch.id
        for step in snapshot.steps:
            if membership.get(step.id) != step.batch:
                raise TaskStateError(f"Task '{task_id}': step {step.id} does not match its batch membership")

        previous_last = 0
        for batch in snapshot.batches:
            if batch.steps and batch.steps[0] != previous_last + 1:
                raise TaskStateError(f"Task '{task_id}': {batch.label} is not contiguous")
            previous_last = batch.steps[-1] if batch.steps else previous_last

    def _ensure_writable(self, snapshot: TaskSnapshot) -> None:
        if snapshot.task.status == STATUS_COMPLETED:
            raise TaskStateError(f"Task '{snapshot.task.id}' is already completed")

    def _ensure_batch_open(self, snapshot: TaskSnapshot, batch_id: int) -> None:
        batch = self._batch(snapshot, batch_id)
        if batch.is_checkpointed:
            raise StepStateError(f"{batch.label} of task '{snapshot.task.id}' is already checkpointed")
        self._ensure_earlier_checkpointed(snapshot, batch_id)

    def _ensure_earlier_checkpointed(self, snapshot: TaskSnapshot, batch_id: int) -> None:
        waiting = [batch.label for batch in snapshot.batches if batch.id < batch_id and not batch.is_checkpointed]
        if waiting:
            raise BatchOrderError(
                f"Task '{snapshot.task.id}': checkpoint " + ", ".join(waiting) + f" before working on {batch_label(batch_id)}"
            )

    def _mark_task_started(self, snapshot: TaskSnapshot) -> None:
        if snapshot.task.status == STATUS_PENDING:
            snapshot.task.advance(STATUS_IN_PROGRESS)

    def _step(self, snapshot: TaskSnapshot, step_id: int) -> Step:
        try:
            return snapshot.step(int(step_id))
        except (KeyError, ValueError, TypeError):
            raise StepStateError(f"Step {step_id!r} not found in task '{snapshot.task.id}'") from None

    def _batch(self, snapshot: TaskSnapshot, batch_id: int) -> Batch:
        try:
            return snapshot.batch(int(batch_id))
        except (KeyError, ValueError, TypeError):
            raise BatchOrderError(f"Batch {batch_id!r} not found in task '{snapshot.task.id}'") from None

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _render_decomposition(self, snapshot: TaskSnapshot) -> str:
        task = snapshot.task
        lines = [
            f"# Decomposition: {task.id}",
            "",
            f"**Task:** {task.description}",
            f"**Steps:** {task.total_steps} in {task.total_batches} batch(es) of up to {task.batch_size}",
            f"**Written:** {utc_timestamp()}",
        ]
        for batch in snapshot.batches:
            lines.extend(["", f"## {batch.label}", ""])
            for step in snapshot.steps_in(batch.id):
                lines.append(f"{step.id}. {step.name}")
        return "\n".join(lines) + "\n"

    def _render_step_artifact(
        self,
        task: Task,
        step: Step,
        solution_summary: str,
        appendix: Optional[str] = None,
    ) -> str:
        sections = [
            f"# Step {step.id}: {step.name}",
            "",
            f"- Task: {task.id}",
            f"- Batch: {batch_label(step.batch)}",
            f"- Recorded: {utc_timestamp()}",
            "",
            "## Solution",
            "",
            solution_summary.strip(),
        ]
        if appendix:
            sections.extend(["", appendix.strip()])
        return "\n".join(sections) + "\n"
