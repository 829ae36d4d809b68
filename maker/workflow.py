"""Workflow management for Maker.

This module wraps the task ledger in dictionary-returning operations for
the MCP tools, adding next-step guidance to every result and turning
failures into error payloads an assistant can act on.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .config import MakerSettings
from .models import STATUS_COMPLETED, STATUS_PENDING, TaskSnapshot
from .prompts import WORKFLOW_TIPS
from .store import (
    BatchOrderError,
    NothingToResumeError,
    StepStateError,
    TaskExistsError,
    TaskNotFoundError,
    TaskStateError,
    TaskStore,
)
from .voting import NoViableCandidateError, coerce_candidates, summarize_vote
from .maker_logging import log_error_with_context

logger = logging.getLogger("maker.workflow")

# Global registry for task roots
_TASK_ROOT_REGISTRY: Dict[str, Path] = {}


def register_task_root(task_id: str, root: Path | str) -> Path:
    """Record the project root that owns a task's record."""
    resolved = Path(root).resolve()
    _TASK_ROOT_REGISTRY[task_id.lower()] = resolved
    return resolved


def lookup_task_root(task_id: str) -> Optional[Path]:
    """Return the registered project root for the task, if any."""
    return _TASK_ROOT_REGISTRY.get(task_id.lower())


WORKFLOW_GUIDE: List[Tuple[str, str]] = [
    ("start_task", "Record the task description and its ordered steps; steps are grouped into batches"),
    ("start_step", "Mark the next step in progress before generating candidates"),
    ("vote_step / record_step", "Record the selected solution for the step"),
    ("checkpoint_batch", "Write the batch's assembled output once all its steps are recorded"),
    ("finalize_task", "Write the complete artifact after the last checkpoint"),
    ("resume_task", "Reload the ledger after an interruption and continue at the first open step"),
]


def workflow_guide() -> Dict[str, Any]:
    """Tool order and tips for the decompose / vote / checkpoint workflow."""
    return {
        "workflow_overview": "Decompose, vote per step, checkpoint per batch, finalize",
        "steps": [
            {"step": number, "tool": tool, "description": description}
            for number, (tool, description) in enumerate(WORKFLOW_GUIDE, start=1)
        ],
        "tips": list(WORKFLOW_TIPS),
    }


def _error_payload(action: str, error: Exception, task_id: Optional[str] = None) -> Dict[str, Any]:
    """Map an exception to the guidance returned to the assistant."""
    if isinstance(error, NothingToResumeError):
        suggestion, next_step = "Every step is recorded; checkpoint any open batch and finalize", "task_status"
    elif isinstance(error, TaskNotFoundError):
        suggestion, next_step = "Check the task id with list_tasks, or start a new task", "list_tasks"
    elif isinstance(error, TaskExistsError):
        suggestion, next_step = "Use resume_task for the existing record or choose another id", "resume_task"
    elif isinstance(error, BatchOrderError):
        suggestion, next_step = "Checkpoint batches in order before moving on", "task_status"
    elif isinstance(error, StepStateError):
        suggestion, next_step = "Use resume_task to find the step that is still open", "resume_task"
    elif isinstance(error, NoViableCandidateError):
        suggestion, next_step = "Generate replacement candidates for the red-flagged ones", "vote_step"
    elif isinstance(error, TaskStateError):
        suggestion, next_step = "Inspect the task with task_status", "task_status"
    else:
        suggestion, next_step = "Check the arguments and that the project root is writable", "get_workflow_guide"

    return {
        "error": f"Failed to {action}: {error}",
        "error_type": type(error).__name__,
        "task_id": task_id,
        "suggestion": suggestion,
        "next_suggested_step": next_step,
        "message": f"Error: {error}",
    }


class WorkflowManager:
    """Drive the decompose / vote / checkpoint workflow over a task store."""

    def __init__(self, root: Path | str, *, settings: Optional[MakerSettings] = None):
        """Initialize workflow manager with a project root."""
        self.store = TaskStore(root, settings=settings)

    # ------------------------------------------------------------------
    # Guidance
    # ------------------------------------------------------------------

    def _next_action(self, snapshot: TaskSnapshot) -> Tuple[str, str]:
        task = snapshot.task
        if task.status == STATUS_COMPLETED:
            return "list_tasks", f"Task '{task.id}' is complete. The combined artifact is in final/."
        if snapshot.all_batches_checkpointed:
            return "finalize_task", "All batches are checkpointed. Combine the partial outputs and call finalize_task."

        current = snapshot.batch(task.current_batch)
        if all(step.is_completed for step in snapshot.steps_in(current.id)):
            return (
                "checkpoint_batch",
                f"All steps of {current.label} are recorded. Assemble them and call checkpoint_batch.",
            )

        pointer = snapshot.resume_point
        step = snapshot.step(pointer.step)
        if step.status == STATUS_PENDING:
            return "start_step", pointer.instruction
        return "vote_step", pointer.instruction

    def _with_guidance(self, snapshot: TaskSnapshot, payload: Dict[str, Any]) -> Dict[str, Any]:
        next_step, tip = self._next_action(snapshot)
        payload.setdefault("task_id", snapshot.task.id)
        payload["progress"] = {
            "completed_steps": snapshot.task.completed_steps,
            "total_steps": snapshot.task.total_steps,
            "current_batch": snapshot.task.current_batch,
            "last_checkpoint": snapshot.task.last_checkpoint,
        }
        payload["resume_point"] = snapshot.resume_point.to_dict() if snapshot.resume_point else None
        payload["next_suggested_step"] = next_step
        payload["workflow_tip"] = tip
        return payload

    def get_workflow_guide(self) -> Dict[str, Any]:
        """Get workflow guidance."""
        return workflow_guide()

    # ------------------------------------------------------------------
    # Task lifecycle
    # ------------------------------------------------------------------

    def start_task(
        self,
        description: str,
        steps: Sequence[str],
        batch_size: Optional[int] = None,
        extension: Optional[str] = None,
        task_id: Optional[str] = None,
        batch_sizes: Optional[Sequence[int]] = None,
    ) -> Dict[str, Any]:
        """Create a task record."""
        try:
            identifier = self.store.create(
                description, steps, batch_size, task_id=task_id, extension=extension, batch_sizes=batch_sizes
            )
            register_task_root(identifier, self.store.root)
            snapshot = self.store.load(identifier)
            return self._with_guidance(snapshot, {
                "task": snapshot.task.to_dict(),
                "batches": {str(batch.id): batch.to_dict() for batch in snapshot.batches},
                "task_dir": str(self.store.task_dir(identifier)),
                "message": f"Task '{identifier}' created with {snapshot.task.total_steps} steps "
                           f"in {snapshot.task.total_batches} batches.",
            })
        except Exception as e:
            return _error_payload("start task", e, task_id)

    def start_step(self, task_id: str, step_id: int) -> Dict[str, Any]:
        """Mark a step in progress."""
        try:
            snapshot = self.store.start_step(task_id, step_id)
            return self._with_guidance(snapshot, {
                "step": snapshot.step(int(step_id)).to_dict(),
                "message": f"Step {step_id} is in progress.",
            })
        except Exception as e:
            return _error_payload("start step", e, task_id)

    def record_step(self, task_id: str, step_id: int, solution: str) -> Dict[str, Any]:
        """Record the chosen solution for a step."""
        try:
            snapshot = self.store.record_step_result(task_id, step_id, solution)
            step = snapshot.step(int(step_id))
            return self._with_guidance(snapshot, {
                "step": step.to_dict(),
                "artifact_path": str(self.store.task_dir(task_id) / step.artifact),
                "message": f"Step {step_id} recorded ({snapshot.task.completed_steps}/{snapshot.task.total_steps}).",
            })
        except Exception as e:
            return _error_payload("record step", e, task_id)

    def vote_step(self, task_id: str, step_id: int, candidates: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        """Select the best candidate for a step and record it."""
        try:
            snapshot, winner = self.store.record_vote(task_id, step_id, candidates)
            step = snapshot.step(int(step_id))
            return self._with_guidance(snapshot, {
                "step": step.to_dict(),
                "vote": summarize_vote(coerce_candidates(candidates), winner),
                "artifact_path": str(self.store.task_dir(task_id) / step.artifact),
                "message": f"Candidate {winner.index} selected for step {step_id} (score {winner.score:g}).",
            })
        except Exception as e:
            return _error_payload("vote on step", e, task_id)

    def checkpoint_batch(self, task_id: str, batch_id: int, assembled: str) -> Dict[str, Any]:
        """Checkpoint a batch."""
        try:
            snapshot = self.store.complete_batch(task_id, batch_id, assembled)
            batch = snapshot.batch(int(batch_id))
            return self._with_guidance(snapshot, {
                "batch": {"id": batch.id, **batch.to_dict()},
                "partial_path": str(self.store.task_dir(task_id) / batch.checkpoint),
                "message": f"{batch.label} checkpointed.",
            })
        except Exception as e:
            return _error_payload("checkpoint batch", e, task_id)

    def finalize_task(self, task_id: str, complete: str) -> Dict[str, Any]:
        """Finalize a task."""
        try:
            snapshot = self.store.finalize(task_id, complete)
            final_path = self.store.task_dir(task_id) / f"final/complete.{snapshot.task.extension}"
            return self._with_guidance(snapshot, {
                "task": snapshot.task.to_dict(),
                "final_path": str(final_path),
                "message": f"Task '{task_id}' finalized.",
            })
        except Exception as e:
            return _error_payload("finalize task", e, task_id)

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def resume_task(self, task_id: str) -> Dict[str, Any]:
        """Reload a task and report where to continue."""
        try:
            snapshot = self.store.load(task_id)
            register_task_root(task_id, self.store.root)
            completed_batches = [batch.label for batch in snapshot.batches if batch.is_checkpointed]
            return self._with_guidance(snapshot, {
                "task": snapshot.task.to_dict(),
                "skip_batches": completed_batches,
                "open_steps": [step.to_dict() for step in snapshot.steps if not step.is_completed],
                "message": snapshot.resume_point.instruction if snapshot.resume_point
                else f"No open steps remain for task '{task_id}'.",
            })
        except Exception as e:
            return _error_payload("resume task", e, task_id)

    def task_status(self, task_id: str) -> Dict[str, Any]:
        """Full ledger view of a task."""
        try:
            snapshot = self.store.load(task_id)
            return self._with_guidance(snapshot, snapshot.to_dict())
        except Exception as e:
            return _error_payload("get task status", e, task_id)

    def list_tasks(self) -> Dict[str, Any]:
        """List tasks in the store."""
        try:
            tasks = self.store.list_tasks()
            return {
                "tasks": tasks,
                "count": len(tasks),
                "message": f"Found {len(tasks)} tasks" if tasks else "No tasks recorded yet. Use start_task to begin.",
            }
        except Exception as e:
            return _error_payload("list tasks", e)

    # ------------------------------------------------------------------
    # Changes to the plan
    # ------------------------------------------------------------------

    def redo_decomposition(
        self,
        task_id: str,
        steps: Sequence[str],
        batch_size: Optional[int] = None,
        batch_sizes: Optional[Sequence[int]] = None,
    ) -> Dict[str, Any]:
        """Replace the task's steps before work starts."""
        try:
            snapshot = self.store.replace_decomposition(task_id, steps, batch_size, batch_sizes)
            return self._with_guidance(snapshot, {
                "task": snapshot.task.to_dict(),
                "batches": {str(batch.id): batch.to_dict() for batch in snapshot.batches},
                "message": f"Decomposition replaced with {snapshot.task.total_steps} steps.",
            })
        except Exception as e:
            return _error_payload("redo decomposition", e, task_id)

    def delete_task(self, task_id: str, confirm: bool = False) -> Dict[str, Any]:
        """Delete a task record after explicit confirmation."""
        try:
            path = self.store.delete_task(task_id, confirm=confirm)
            return {
                "task_id": task_id,
                "deleted_path": str(path),
                "next_suggested_step": "list_tasks",
                "message": f"Task '{task_id}' deleted.",
            }
        except Exception as e:
            if not isinstance(e, (TaskStateError, TaskNotFoundError)):
                log_error_with_context(e, {"operation": "delete_task", "task_id": task_id})
            return _error_payload("delete task", e, task_id)

