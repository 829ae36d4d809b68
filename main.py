"""MCP server exposing the Maker task ledger as tools."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from maker.config import MakerSettings
from maker.maker_logging import setup_logging
from maker.prompts import render_maker_prompt
from maker.workflow import WorkflowManager, lookup_task_root, workflow_guide

mcp = FastMCP("maker")


SERVER_ROOT = Path(__file__).resolve().parent


def _settings() -> MakerSettings:
    return MakerSettings.from_env()


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    bases: List[Path] = [cwd]
    bases.extend(cwd.parents)
    if SERVER_ROOT not in bases:
        bases.append(SERVER_ROOT)
    seen: set[Path] = set()
    ordered: List[Path] = []
    for base in bases:
        if base not in seen:
            seen.add(base)
            ordered.append(base)
    return ordered


def _locate_workspace_root(marker: str) -> Optional[Path]:
    for base in _candidate_bases():
        if (base / marker).exists():
            return base
    return None


def _locate_existing_task(task_id: str, marker: str) -> Optional[Path]:
    registered = lookup_task_root(task_id)
    if registered and (registered / marker / "tasks" / task_id).exists():
        return registered
    for base in _candidate_bases():
        if (base / marker / "tasks" / task_id).exists():
            return base
    return None


def _resolve_root(root: Optional[str], *, task_id: Optional[str] = None, create: bool = False) -> Path:
    settings = _settings()
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    if settings.project_root:
        env_path = settings.project_root.resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable MAKER_PROJECT_ROOT points to '{settings.project_root}', which does not exist."
            )
        return env_path

    if task_id:
        task_root = _locate_existing_task(task_id, settings.storage_dir)
        if task_root:
            return task_root

    detected_root = _locate_workspace_root(settings.storage_dir)
    if detected_root:
        return detected_root

    if create:
        return Path.cwd().resolve()

    raise ValueError(
        "Unable to determine project root automatically. Provide the 'root' argument when calling the tool "
        "or set the MAKER_PROJECT_ROOT environment variable."
    )


def _workflow(root: Optional[str], *, task_id: Optional[str] = None, create: bool = False) -> WorkflowManager:
    return WorkflowManager(_resolve_root(root, task_id=task_id, create=create), settings=_settings())


@mcp.tool()
def start_task(
    description: str,
    steps: List[str],
    batch_size: Optional[int] = None,
    extension: Optional[str] = None,
    batch_sizes: Optional[List[int]] = None,
    task_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 1: Record a new task and its decomposition.
    `steps` is the ordered list of atomic step names; they are grouped into
    contiguous batches of `batch_size` (default from MAKER_BATCH_SIZE), or of
    the explicit lengths in `batch_sizes` (e.g. [3, 2, 2]).
    `extension` is the file extension used for assembled code; `task_id`
    overrides the generated id."""

    return _workflow(root, create=True).start_task(
        description, steps, batch_size, extension, task_id=task_id, batch_sizes=batch_sizes
    )


@mcp.tool()
def start_step(task_id: str, step_id: int, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 2: Mark a step in progress before generating its candidates."""

    return _workflow(root, task_id=task_id).start_step(task_id, step_id)


@mcp.tool()
def record_step(task_id: str, step_id: int, solution: str, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 3: Record the chosen solution for a step and mark it completed."""

    return _workflow(root, task_id=task_id).record_step(task_id, step_id, solution)


@mcp.tool()
def vote_step(
    task_id: str,
    step_id: int,
    candidates: List[Dict[str, Any]],
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 3 (voting): Select and record the best candidate for a step.
    Each candidate is {"content": str, "score": float, "red_flags": [str]}.
    Red-flagged candidates are discarded; the highest score wins and equal
    scores go to the earliest candidate."""

    return _workflow(root, task_id=task_id).vote_step(task_id, step_id, candidates)


@mcp.tool()
def checkpoint_batch(task_id: str, batch_id: int, assembled: str, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 4: Write the assembled code for a finished batch and checkpoint it.
    After this returns, resuming the task skips the whole batch."""

    return _workflow(root, task_id=task_id).checkpoint_batch(task_id, batch_id, assembled)


@mcp.tool()
def finalize_task(task_id: str, complete: str, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 5: Write the complete combined artifact and mark the task completed.
    Prerequisites: every batch has been checkpointed."""

    return _workflow(root, task_id=task_id).finalize_task(task_id, complete)


@mcp.tool()
def resume_task(task_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Reload a task after an interruption and report the first open step."""

    return _workflow(root, task_id=task_id).resume_task(task_id)


@mcp.tool()
def task_status(task_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the full ledger (steps, batches, resume point) for a task."""

    return _workflow(root, task_id=task_id).task_status(task_id)


@mcp.tool()
def list_tasks(root: Optional[str] = None) -> Dict[str, Any]:
    """Enumerate task records in the workspace."""

    return _workflow(root).list_tasks()


@mcp.tool()
def redo_decomposition(
    task_id: str,
    steps: List[str],
    batch_size: Optional[int] = None,
    batch_sizes: Optional[List[int]] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Replace a task's steps wholesale. Only allowed before any step has started."""

    return _workflow(root, task_id=task_id).redo_decomposition(task_id, steps, batch_size, batch_sizes)


@mcp.tool()
def delete_task(task_id: str, confirm: bool = False, root: Optional[str] = None) -> Dict[str, Any]:
    """Delete a task record. Pass confirm=True only after the user explicitly agreed."""

    return _workflow(root, task_id=task_id).delete_task(task_id, confirm=confirm)


@mcp.tool()
def get_workflow_guide() -> Dict[str, Any]:
    """Describe the decompose / vote / checkpoint workflow and the tool order."""

    return workflow_guide()


@mcp.resource("maker://tasks")
def resource_tasks() -> str:
    """Resource view listing recorded tasks."""

    try:
        manager = _workflow(None)
    except ValueError:
        return "No project root detected. Launch tools with a 'root' argument or set MAKER_PROJECT_ROOT."

    tasks = manager.list_tasks().get("tasks", [])
    if not tasks:
        return "No tasks have been recorded yet."

    lines = ["Maker Tasks"]
    for task in tasks:
        lines.append("")
        lines.append(f"- {task['task_id']}: {task['description']}")
        lines.append(
            f"  Status: {task['status']} ({task['completed_steps']}/{task['total_steps']} steps, "
            f"batch {task['current_batch']}/{task['total_batches']})"
        )
        if task.get("last_checkpoint"):
            lines.append(f"  Last checkpoint: {task['last_checkpoint']}")
    return "\n".join(lines)


@mcp.prompt()
def maker(description: str) -> str:
    """/maker <task description>: build code step by step with voting and checkpoints."""

    settings = _settings()
    return render_maker_prompt(description, batch_size=settings.batch_size)


def run() -> None:
    settings = _settings()
    setup_logging(settings.log_level, settings.log_file)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    run()
