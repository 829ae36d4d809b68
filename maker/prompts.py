"""Instruction text for the ``/maker`` command, served as an MCP prompt."""

from __future__ import annotations

MAKER_COMMAND = """\
# /maker

Build the requested code by decomposing it into small steps, voting on
candidate solutions for each step, and checkpointing progress so the work
can be resumed after any interruption.

Task: {description}

## 1. Decompose

Split the task into atomic, ordered steps. Each step should produce one
small, independently checkable piece of code. Call `start_task` with the
description and the step names; steps are grouped into batches of
{batch_size}. If the plan is wrong before any step has started, call
`redo_decomposition` instead of starting over.

## 2. Generate and vote

For each step, in order:

1. Call `start_step`.
2. Generate {candidates} independent candidate solutions.
3. Red-flag any candidate that fails to parse, uses undefined imports,
   contains an infinite loop, has a security issue, or does not match the
   interface of earlier steps. Replace red-flagged candidates.
4. Score every candidate and call `vote_step` with all of them. The
   highest score wins; equal scores go to the earliest candidate.

Use `record_step` instead of `vote_step` when only one solution was produced.

## 3. Checkpoint

When every step of a batch is recorded, assemble the batch's solutions into
one piece of code and call `checkpoint_batch`. Do not start the next batch
before the checkpoint is written.

## 4. Finalize

After the last batch is checkpointed, combine the partial outputs into the
complete artifact and call `finalize_task`.

## Resuming

If the conversation was interrupted, call `resume_task` with the task id and
follow its instruction. Completed steps and checkpointed batches are never
redone.
"""

WORKFLOW_TIPS = [
    "Record each step as soon as its winner is chosen; the ledger is the only memory across sessions",
    "Checkpoint a batch before touching the next one",
    "Use resume_task after any interruption instead of re-reading chat history",
    "Only finalize when every batch has a checkpoint",
    "Delete a task only when the user explicitly confirms it",
]


def render_maker_prompt(description: str, batch_size: int = 3, candidates: int = 3) -> str:
    """Fill in the ``/maker`` instructions for one task description."""
    return MAKER_COMMAND.format(
        description=description.strip() or "(no description given)",
        batch_size=batch_size,
        candidates=candidates,
    )
