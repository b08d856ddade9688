"""Fake agents and workflow files shared by the test modules."""

from __future__ import annotations

import stat
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

AgentFactory = Callable[[str, str], Path]


def write_fake_agent(directory: Path, name: str, script: str) -> Path:
    """Write ``script`` as a Python agent and an executable launcher named ``name``."""

    directory.mkdir(parents=True, exist_ok=True)
    implementation = directory / f"{name}_impl.py"
    implementation.write_text(script.strip() + "\n", "utf-8")

    launcher = directory / name
    launcher.write_text(
        f'#!/usr/bin/env sh\nexec "{sys.executable}" "{implementation}" "$@"\n',
        "utf-8",
    )
    launcher.chmod(launcher.stat().st_mode | stat.S_IXUSR)
    return launcher


def write_workflow(
    directory: Path,
    *,
    agents: dict[str, Any],
    workflow: list[dict[str, Any]],
    overrides: dict[str, Any] | None = None,
    filename: str = "moleman.yaml",
) -> Path:
    """Write ``agents.yaml`` plus a version 1 workflow file and return its path."""

    directory.mkdir(parents=True, exist_ok=True)
    (directory / "agents.yaml").write_text(yaml.safe_dump({"agents": agents}), "utf-8")
    payload: dict[str, Any] = {"version": 1, "workflow": workflow}
    if overrides:
        payload["agents"] = overrides
    path = directory / filename
    path.write_text(yaml.safe_dump(payload, sort_keys=False), "utf-8")
    return path


def python_agent(script: str, **extra: Any) -> dict[str, Any]:
    """Generic profile that runs ``script`` with the current interpreter."""

    return {"type": "generic", "command": sys.executable, "args": ["-c", script], **extra}
