"""Data models for the Maker task ledger.

This module contains the records persisted for a task: the manifest
summary, the steps and batches of the progress ledger, the derived resume
pointer, and the candidates considered when voting on a step.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"

STATUSES = (STATUS_PENDING, STATUS_IN_PROGRESS, STATUS_COMPLETED)
_STATUS_RANK = {status: rank for rank, status in enumerate(STATUSES)}


def utc_timestamp() -> str:
    """Return the current UTC time as an ISO-8601 string with a Z suffix."""
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat(timespec="seconds") + "Z"


def is_forward_transition(old_status: str, new_status: str) -> bool:
    """Statuses only move pending -> in_progress -> completed."""
    return _STATUS_RANK[new_status] >= _STATUS_RANK[old_status]


def batch_label(batch_id: int) -> str:
    return f"batch-{batch_id:03d}"


@dataclass(slots=True)
class Step:
    """One unit of work in the ledger."""

    id: int
    name: str
    batch: int
    status: str = STATUS_PENDING
    artifact: Optional[str] = None  # path relative to the task directory

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "batch": self.batch,
            "artifact": self.artifact,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        """Create from dictionary representation."""
        return cls(
            id=int(data["id"]),
            name=data["name"],
            batch=int(data["batch"]),
            status=data.get("status", STATUS_PENDING),
            artifact=data.get("artifact"),
        )

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED

    def advance(self, new_status: str) -> None:
        """Move the step forward; regressions are rejected."""
        if new_status not in STATUSES:
            raise ValueError(f"Invalid status: {new_status}")
        if not is_forward_transition(self.status, new_status):
            raise ValueError(f"Step {self.id} cannot move from {self.status} to {new_status}")
        self.status = new_status


def batch_status_for(steps: Iterable[Step]) -> str:
    """Derive a batch status from the statuses of its steps."""
    statuses = [step.status for step in steps]
    if statuses and all(status == STATUS_COMPLETED for status in statuses):
        return STATUS_COMPLETED
    if any(status != STATUS_PENDING for status in statuses):
        return STATUS_IN_PROGRESS
    return STATUS_PENDING


@dataclass(slots=True)
class Batch:
    """A contiguous group of steps sharing one checkpoint."""

    id: int
    steps: List[int]
    status: str = STATUS_PENDING
    checkpoint: Optional[str] = None  # assembled partial output, once written

    def to_dict(self) -> Dict[str, Any]:
        """Serialized form used as a value of the ``batches`` map."""
        return {
            "status": self.status,
            "steps": list(self.steps),
            "checkpoint": self.checkpoint,
        }

    @classmethod
    def from_dict(cls, batch_id: int | str, data: Dict[str, Any]) -> "Batch":
        """Create from a ``batches`` map entry."""
        return cls(
            id=int(batch_id),
            steps=[int(step_id) for step_id in data.get("steps", [])],
            status=data.get("status", STATUS_PENDING),
            checkpoint=data.get("checkpoint"),
        )

    @property
    def is_checkpointed(self) -> bool:
        return self.checkpoint is not None

    @property
    def label(self) -> str:
        return batch_label(self.id)


@dataclass(slots=True)
class ResumePointer:
    """Where work continues after an interruption."""

    batch: int
    step: int
    instruction: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"batch": self.batch, "step": self.step, "instruction": self.instruction}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ResumePointer"]:
        """Create from dictionary representation; ``None`` stays ``None``."""
        if not data:
            return None
        return cls(batch=int(data["batch"]), step=int(data["step"]), instruction=data.get("instruction", ""))


@dataclass(slots=True)
class Task:
    """Summary record persisted as ``task-manifest.json``."""

    id: str
    description: str
    batch_size: int
    total_steps: int
    total_batches: int
    status: str = STATUS_PENDING
    completed_steps: int = 0
    current_batch: int = 1
    can_resume: bool = True
    last_checkpoint: str = ""
    extension: str = "txt"
    created: str = field(default_factory=utc_timestamp)
    updated: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "created": self.created,
            "updated": self.updated,
            "description": self.description,
            "status": self.status,
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
            "batch_size": self.batch_size,
            "can_resume": self.can_resume,
            "last_checkpoint": self.last_checkpoint,
            "extension": self.extension,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create from dictionary representation."""
        return cls(
            id=data["id"],
            description=data["description"],
            batch_size=int(data["batch_size"]),
            total_steps=int(data["total_steps"]),
            total_batches=int(data.get("total_batches", 0)),
            status=data.get("status", STATUS_PENDING),
            completed_steps=int(data.get("completed_steps", 0)),
            current_batch=int(data.get("current_batch", 1)),
            can_resume=bool(data.get("can_resume", True)),
            last_checkpoint=data.get("last_checkpoint", ""),
            extension=data.get("extension", "txt"),
            created=data.get("created", utc_timestamp()),
            updated=data.get("updated", utc_timestamp()),
        )

    def advance(self, new_status: str) -> None:
        """Move the task forward through pending -> in_progress -> completed."""
        if new_status not in STATUSES:
            raise ValueError(f"Invalid status: {new_status}")
        if not is_forward_transition(self.status, new_status):
            raise ValueError(f"Task {self.id} cannot move from {self.status} to {new_status}")
        self.status = new_status
        self.can_resume = new_status != STATUS_COMPLETED
        self.touch()

    def touch(self) -> None:
        self.updated = utc_timestamp()

    def validate(self) -> List[str]:
        """Validate the manifest and return any issues."""
        issues = []

        if not self.id:
            issues.append("Task ID is required")
        if not self.description:
            issues.append("Description is required")
        if self.status not in STATUSES:
            issues.append(f"Invalid status: {self.status}")
        if self.batch_size < 1:
            issues.append(f"Batch size must be >= 1, got: {self.batch_size}")
        if self.total_steps < 1:
            issues.append("At least one step is required")
        if not 0 <= self.completed_steps <= self.total_steps:
            issues.append(f"Completed steps out of range: {self.completed_steps}/{self.total_steps}")

        return issues


@dataclass(slots=True)
class TaskSnapshot:
    """Everything ``load`` reconstructs for one task."""

    task: Task
    steps: List[Step]
    batches: List[Batch]
    resume_point: Optional[ResumePointer] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "task": self.task.to_dict(),
            "steps": [step.to_dict() for step in self.steps],
            "batches": {str(batch.id): batch.to_dict() for batch in self.batches},
            "resume_point": self.resume_point.to_dict() if self.resume_point else None,
        }

    def progress_dict(self) -> Dict[str, Any]:
        """The ``progress.json`` payload."""
        data = self.to_dict()
        del data["task"]
        return data

    def step(self, step_id: int) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def batch(self, batch_id: int) -> Batch:
        for batch in self.batches:
            if batch.id == batch_id:
                return batch
        raise KeyError(batch_id)

    def steps_in(self, batch_id: int) -> List[Step]:
        return [step for step in self.steps if step.batch == batch_id]

    @property
    def all_steps_completed(self) -> bool:
        return all(step.is_completed for step in self.steps)

    @property
    def all_batches_checkpointed(self) -> bool:
        return all(batch.is_checkpointed for batch in self.batches)


@dataclass(slots=True)
class Candidate:
    """One independently produced solution considered for a step."""

    index: int
    content: str
    score: float
    red_flags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "index": self.index,
            "content": self.content,
            "score": self.score,
            "red_flags": list(self.red_flags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: Optional[int] = None) -> "Candidate":
        """Create from dictionary representation.

        ``index`` defaults to the position the caller assigns; an explicit
        ``index`` key in ``data`` wins.
        """
        if "content" not in data:
            raise ValueError("Candidate content is required")
        if "score" not in data:
            raise ValueError("Candidate score is required")
        score = float(data["score"])
        if not math.isfinite(score):
            raise ValueError(f"Candidate score must be a finite number, got: {data['score']!r}")
        return cls(
            index=int(data.get("index", index if index is not None else 0)),
            content=str(data["content"]),
            score=score,
            red_flags=[str(flag) for flag in data.get("red_flags", [])],
        )

    @property
    def is_viable(self) -> bool:
        return not self.red_flags
