"""Runtime configuration for the moleman CLI."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_WORKFLOW_FILE = "moleman.yaml"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class Settings:
    """Application settings resolved from the environment."""

    home: Path = Path("~/.moleman").expanduser()
    workflow_file: str = DEFAULT_WORKFLOW_FILE
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local use."""

        return cls(
            home=Path(os.getenv("MOLEMAN_HOME", "~/.moleman")).expanduser(),
            workflow_file=os.getenv("MOLEMAN_WORKFLOW_FILE", DEFAULT_WORKFLOW_FILE)
            or DEFAULT_WORKFLOW_FILE,
            log_level=_env_log_level("MOLEMAN_LOG_LEVEL", "INFO"),
        )

    @property
    def home_workflow_path(self) -> Path:
        return self.home / "workflows" / "default.yaml"

    def resolve_workflow_path(self, config: Path | None, workdir: Path | None) -> Path:
        """Pick the workflow file for a command.

        An explicit ``config`` wins (joined to ``workdir`` when relative).
        Otherwise the first existing candidate among the workdir primary file,
        ``.moleman/configs/default.yaml`` and the home workflow is used,
        falling back to the primary path so the caller reports it as missing.
        """

        if config is not None:
            if workdir is None or config.is_absolute():
                return config
            return workdir / config

        base_dir = workdir or Path()
        primary = base_dir / self.workflow_file
        candidates = (
            primary,
            base_dir / ".moleman" / "configs" / "default.yaml",
            self.home_workflow_path,
        )
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return primary

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level)


def _env_log_level(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    normalized = value.strip().upper()
    if normalized == "WARN":
        normalized = "WARNING"
    if normalized not in _LOG_LEVELS:
        raise ValueError(f"Invalid log level for {name}: {value!r}")
    return normalized
