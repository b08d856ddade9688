"""Environment and config checks for ``moleman doctor``."""

from __future__ import annotations

from pathlib import Path

from moleman.engine.run import ensure_agent_commands
from moleman.errors import WorkflowConfigError
from moleman.workflow.loader import load_workflow
from moleman.workflow.models import Workflow


def doctor(path: Path) -> Workflow:
    """Load and validate ``path``, then check every agent command it uses."""

    if not path.exists():
        raise WorkflowConfigError(f"config not found: {path}")
    workflow = load_workflow(path)
    ensure_agent_commands(workflow, path.parent)
    return workflow
