"""Controllers for moleman CLI commands."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from moleman import __version__
from moleman.config import Settings
from moleman.doctor import doctor
from moleman.engine.run import RunOptions, run
from moleman.workflow.loader import agent_names, load_workflow
from moleman.workflow.models import Workflow, dump_nodes
from moleman.workflow.scaffold import init_workflow

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkflowLocationCommand:
    """CLI input shared by commands that only need to find the workflow."""

    config: Path | None
    workdir: Path | None


@dataclass(slots=True)
class RunWorkflowCommand:
    """CLI input for one workflow run."""

    config: Path | None
    workdir: Path | None
    prompt: str
    prompt_file: Path | None
    dry_run: bool
    verbose: bool


@dataclass(slots=True)
class InitWorkflowCommand:
    """CLI input for scaffolding a starter workflow."""

    config: Path | None
    workdir: Path | None
    force: bool


class MolemanCliController:
    """Resolves workflow files and dispatches CLI operations."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = Settings.from_env()
        return self._settings

    def run(self, command: RunWorkflowCommand) -> list[str]:
        workflow_path = self._workflow_path(command.config, command.workdir)
        workflow = load_workflow(workflow_path)
        result = run(
            workflow,
            workflow_path,
            RunOptions(
                prompt=command.prompt,
                prompt_file=command.prompt_file,
                workdir=command.workdir,
                dry_run=command.dry_run,
                verbose=command.verbose,
            ),
        )
        return [f"run succeeded path={result.run_dir}"]

    def agents(self, command: WorkflowLocationCommand) -> list[str]:
        return agent_names(self._load(command))

    def explain(self, command: WorkflowLocationCommand) -> list[str]:
        workflow = self._load(command)
        return [json.dumps(dump_nodes(workflow.nodes), ensure_ascii=False, indent=2)]

    def init(self, command: InitWorkflowCommand) -> list[str]:
        workflow_path = self._workflow_path(command.config, command.workdir)
        written = init_workflow(workflow_path, force=command.force)
        logger.debug("init wrote files=%s", ",".join(str(path) for path in written))
        return [f"created path={workflow_path}"]

    def doctor(self, command: WorkflowLocationCommand) -> list[str]:
        doctor(self._workflow_path(command.config, command.workdir))
        return ["doctor ok"]

    def version(self) -> list[str]:
        return [__version__]

    def _load(self, command: WorkflowLocationCommand) -> Workflow:
        return load_workflow(self._workflow_path(command.config, command.workdir))

    def _workflow_path(self, config: Path | None, workdir: Path | None) -> Path:
        path = self.settings.resolve_workflow_path(config, workdir)
        logger.debug("workflow path=%s", path)
        return path
