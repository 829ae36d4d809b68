"""Shared fixtures for Maker tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from maker.config import MakerSettings
from maker.maker_logging import observability_hooks, performance_monitor
from maker.store import TaskStore

SEVEN_STEPS = [
    "Define data model",
    "Write parser",
    "Write serializer",
    "Add validation",
    "Add CLI entry point",
    "Write tests",
    "Write docs",
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep MAKER_* variables from the developer's shell out of the tests."""
    for name in (
        "MAKER_PROJECT_ROOT",
        "MAKER_STORAGE_DIR",
        "MAKER_BATCH_SIZE",
        "MAKER_ARTIFACT_EXT",
        "MAKER_LOG_LEVEL",
        "MAKER_LOG_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
    yield
    observability_hooks.hooks.clear()
    performance_monitor.clear()


@pytest.fixture
def settings() -> MakerSettings:
    return MakerSettings()


@pytest.fixture
def store(tmp_path: Path, settings: MakerSettings) -> TaskStore:
    return TaskStore(tmp_path, settings=settings)


@pytest.fixture
def seven_step_task(store: TaskStore) -> str:
    """7 steps grouped as [1-3], [4-5], [6-7]."""
    return store.create(
        "Build a config file parser",
        SEVEN_STEPS,
        task_id="parser-task",
        batch_sizes=[3, 2, 2],
        extension="py",
    )
