"""Deterministic pieces of the decompose / generate / vote loop.

Step names and candidate solutions come from the assistant. This module
only groups steps into batches and applies the selection rule to scored
candidates.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .models import Batch, Candidate, Step

logger = logging.getLogger("maker.voting")


class NoViableCandidateError(ValueError):
    """Every candidate for a step was red-flagged (or none were given)."""


def plan_batches(
    step_names: Sequence[str],
    batch_size: int,
    batch_sizes: Optional[Sequence[int]] = None,
) -> Tuple[List[Step], List[Batch]]:
    """Number steps from 1 and group them into contiguous batches.

    ``batch_sizes`` gives explicit group lengths (e.g. ``[3, 2, 2]``) and must
    cover every step; otherwise steps are cut into runs of ``batch_size``.
    """
    if not step_names:
        raise ValueError("At least one step is required")
    if batch_sizes:
        if any(size < 1 for size in batch_sizes):
            raise ValueError(f"Batch sizes must be >= 1, got: {list(batch_sizes)}")
        if sum(batch_sizes) != len(step_names):
            raise ValueError(
                f"Batch sizes {list(batch_sizes)} cover {sum(batch_sizes)} steps, expected {len(step_names)}"
            )
        sizes = list(batch_sizes)
    else:
        if batch_size < 1:
            raise ValueError(f"Batch size must be >= 1, got: {batch_size}")
        full, rest = divmod(len(step_names), batch_size)
        sizes = [batch_size] * full + ([rest] if rest else [])

    steps: List[Step] = []
    batches: List[Batch] = []
    position = 0
    for batch_id, size in enumerate(sizes, start=1):
        batch = Batch(id=batch_id, steps=[])
        for _ in range(size):
            name = (step_names[position] or "").strip()
            step_id = position + 1
            if not name:
                raise ValueError(f"Step {step_id} has an empty name")
            steps.append(Step(id=step_id, name=name, batch=batch_id))
            batch.steps.append(step_id)
            position += 1
        batches.append(batch)
    return steps, batches


def coerce_candidates(raw: Iterable[Any]) -> List[Candidate]:
    """Accept Candidate objects or plain dicts; dicts get their list position as index."""
    candidates: List[Candidate] = []
    for position, item in enumerate(raw):
        if isinstance(item, Candidate):
            candidates.append(item)
        elif isinstance(item, dict):
            candidates.append(Candidate.from_dict(item, index=position))
        else:
            raise ValueError(f"Unsupported candidate at position {position}: {type(item).__name__}")
    return candidates


def select_candidate(candidates: Sequence[Candidate]) -> Candidate:
    """Pick the highest-scoring candidate that carries no red flags.

    Equal scores go to the candidate with the lowest index, i.e. the one
    generated first.
    """
    viable = [candidate for candidate in candidates if candidate.is_viable]
    discarded = len(candidates) - len(viable)
    if discarded:
        logger.info(f"Discarded {discarded} red-flagged candidate(s)")
    if not viable:
        raise NoViableCandidateError(
            f"No viable candidate among {len(candidates)}; generate replacements for the red-flagged ones."
        )
    return min(viable, key=lambda candidate: (-candidate.score, candidate.index))


def render_scoreboard(candidates: Sequence[Candidate], winner: Candidate) -> str:
    """Markdown table of candidate scores, appended to the step artifact."""
    lines = [
        "## Candidates",
        "",
        "| Candidate | Score | Red flags | Selected |",
        "| --- | --- | --- | --- |",
    ]
    for candidate in sorted(candidates, key=lambda item: item.index):
        flags = ", ".join(candidate.red_flags) if candidate.red_flags else "-"
        selected = "yes" if candidate.index == winner.index else ""
        lines.append(f"| {candidate.index} | {candidate.score:g} | {flags} | {selected} |")
    return "\n".join(lines)


def summarize_vote(candidates: Sequence[Candidate], winner: Candidate) -> Dict[str, Any]:
    return {
        "selected_index": winner.index,
        "selected_score": winner.score,
        "candidates": len(candidates),
        "discarded": sum(1 for candidate in candidates if not candidate.is_viable),
    }
