"""Starter files written by ``moleman init``."""

from __future__ import annotations

import logging
from pathlib import Path

from moleman.errors import WorkflowConfigError
from moleman.workflow.loader import AGENTS_FILENAME

logger = logging.getLogger(__name__)

DEFAULT_AGENTS_YAML = """agents:
  codex:
    type: codex
    args: ["--full-auto"]
    timeout: 45m
    capture: [stdout, stderr, exitCode]
"""

DEFAULT_WORKFLOW_YAML = """version: 1

workflow:
  - type: agent
    name: write
    agent: codex
    input:
      from: input
    output:
      stdout: true
"""


def init_workflow(path: Path, *, force: bool = False) -> list[Path]:
    """Write a starter workflow at ``path`` and an ``agents.yaml`` beside it.

    Returns the files written. An existing ``agents.yaml`` is kept unless
    ``force`` is set.
    """

    if not str(path):
        raise WorkflowConfigError("config path is empty")
    if not force and path.exists():
        raise WorkflowConfigError(f"config already exists: {path}")

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise WorkflowConfigError(f"create config dir: {error}") from error

    written: list[Path] = []
    agents_path = path.parent / AGENTS_FILENAME
    if force or not agents_path.exists():
        _write(agents_path, DEFAULT_AGENTS_YAML, label="agents.yaml")
        written.append(agents_path)
    else:
        logger.debug("keeping existing agents file path=%s", agents_path)

    _write(path, DEFAULT_WORKFLOW_YAML, label="config")
    written.append(path)
    return written


def _write(path: Path, text: str, *, label: str) -> None:
    try:
        path.write_text(text, "utf-8")
    except OSError as error:
        raise WorkflowConfigError(f"write {label}: {error}") from error
