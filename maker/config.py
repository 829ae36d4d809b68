"""Runtime configuration for the Maker ledger and MCP server."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_STORAGE_DIR = ".maker"
DEFAULT_BATCH_SIZE = 3
DEFAULT_EXTENSION = "txt"


@dataclass(slots=True)
class MakerSettings:
    """Settings resolved from ``MAKER_*`` environment variables."""

    project_root: Optional[Path] = None
    storage_dir: str = DEFAULT_STORAGE_DIR
    batch_size: int = DEFAULT_BATCH_SIZE
    extension: str = DEFAULT_EXTENSION
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @classmethod
    def from_env(cls) -> "MakerSettings":
        """Load settings from environment with defaults for local use."""

        project_root = os.getenv("MAKER_PROJECT_ROOT", "").strip()
        log_file = os.getenv("MAKER_LOG_FILE", "").strip()
        settings = cls(
            project_root=Path(project_root).expanduser() if project_root else None,
            storage_dir=os.getenv("MAKER_STORAGE_DIR", DEFAULT_STORAGE_DIR).strip() or DEFAULT_STORAGE_DIR,
            batch_size=_env_int("MAKER_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            extension=normalize_extension(os.getenv("MAKER_ARTIFACT_EXT", DEFAULT_EXTENSION)),
            log_level=os.getenv("MAKER_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            log_file=Path(log_file).expanduser() if log_file else None,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise ValueError when a setting is out of range."""

        if self.batch_size < 1:
            raise ValueError(f"MAKER_BATCH_SIZE must be >= 1, got: {self.batch_size}")
        if not self.storage_dir or "/" in self.storage_dir or "\\" in self.storage_dir:
            raise ValueError(f"MAKER_STORAGE_DIR must be a plain directory name, got: {self.storage_dir!r}")
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"MAKER_LOG_LEVEL is not a logging level: {self.log_level!r}")


def normalize_extension(value: Optional[str]) -> str:
    """Strip a leading dot; fall back to the default extension."""
    cleaned = (value or "").strip().lstrip(".")
    if not cleaned:
        return DEFAULT_EXTENSION
    if not cleaned.isalnum():
        raise ValueError(f"Artifact extension must be alphanumeric, got: {value!r}")
    return cleaned


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from error
