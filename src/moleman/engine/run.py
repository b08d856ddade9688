"""Run driver: run directory setup, preflight, execution and summary."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TextIO

from moleman.engine.artifacts import RunArtifacts
from moleman.engine.context import RunContext
from moleman.engine.execute import WorkflowExecutor
from moleman.engine.template import render_template
from moleman.errors import WorkflowConfigError
from moleman.workflow.models import Workflow, dump_nodes

logger = logging.getLogger(__name__)

RUNS_DIRNAME = Path(".moleman") / "runs"


@dataclass(slots=True)
class RunOptions:
    """Per-run options supplied by the CLI."""

    prompt: str = ""
    prompt_file: Path | None = None
    workdir: Path | None = None
    dry_run: bool = False
    verbose: bool = False


@dataclass(slots=True)
class RunResult:
    """Location of the artifacts written by one run."""

    run_dir: Path


def run(  # noqa: PLR0913
    workflow: Workflow,
    workflow_path: Path,
    options: RunOptions,
    *,
    log: logging.Logger | None = None,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
    environ: Mapping[str, str] | None = None,
    now: datetime | None = None,
) -> RunResult:
    """Execute ``workflow`` and persist its artifacts.

    A ``failed`` summary is written before any execution error propagates, so
    node artifacts and results recorded so far stay on disk.
    """

    log = log or logger
    workdir = options.workdir or workflow_path.parent
    input_text = load_prompt(options.prompt, options.prompt_file)
    run_id = f"{(now or datetime.now()).strftime('%Y%m%d-%H%M%S')}-workflow"  # noqa: DTZ005
    run_dir = workdir / RUNS_DIRNAME / run_id

    artifacts = RunArtifacts(run_dir)
    artifacts.materialize(input_text=input_text, nodes_payload=dump_nodes(workflow.nodes))

    context = RunContext(
        input=input_text,
        run_dir=run_dir,
        workdir=workdir,
        verbose=options.verbose,
    )

    try:
        ensure_agent_commands(workflow, workdir)
    except Exception as error:
        artifacts.write_summary(status="failed", node_results=context.node_results, error=error)
        raise

    log.info("run started nodes=%d", len(workflow.nodes))
    log.info("run artifacts path=%s", run_dir)

    if options.dry_run:
        artifacts.write_summary(status="dry-run", node_results=context.node_results)
        return RunResult(run_dir=run_dir)

    executor = WorkflowExecutor(
        workflow=workflow,
        context=context,
        artifacts=artifacts,
        log=log,
        stdout=stdout,
        stderr=stderr,
        environ=environ,
    )
    try:
        executor.run()
    except Exception as error:
        artifacts.write_summary(status="failed", node_results=context.node_results, error=error)
        raise

    artifacts.write_summary(status="success", node_results=context.node_results)
    return RunResult(run_dir=run_dir)


def load_prompt(prompt: str, prompt_file: Path | None) -> str:
    """Return the run input from ``--prompt`` or ``--prompt-file`` (not both)."""

    if prompt and prompt_file is not None:
        raise WorkflowConfigError("provide only one of --prompt or --prompt-file")
    if prompt_file is not None:
        try:
            return prompt_file.read_text("utf-8")
        except OSError as error:
            raise WorkflowConfigError(f"read prompt file: {error}") from error
    return prompt


def ensure_agent_commands(workflow: Workflow, workdir: Path) -> None:
    """Check every referenced agent command and output schema is available."""

    used_agents: list[str] = []
    for node in workflow.iter_agent_nodes():
        if node.agent and node.agent not in used_agents:
            used_agents.append(node.agent)

    for name in used_agents:
        profile = workflow.agents.get(name)
        if profile is None:
            continue

        command = profile.default_command()
        if not command:
            raise WorkflowConfigError(f"agent {name} has no command configured")

        problem = _command_problem(command, workdir)
        if problem is not None:
            raise WorkflowConfigError(f"agent {name} command not found: {command} ({problem})")

        if profile.output_schema:
            schema_path = Path(render_template(profile.output_schema, {})).expanduser()
            if not schema_path.is_absolute():
                schema_path = workdir / schema_path
            if not schema_path.exists():
                raise WorkflowConfigError(
                    f"agent {name} output schema error: not found: {schema_path}",
                )


def _command_problem(command: str, workdir: Path) -> str | None:
    path = Path(command).expanduser()
    if path.is_absolute():
        return None if path.exists() else "no such file"
    if "/" in command or "\\" in command:
        return None if (workdir / path).exists() else "no such file"
    if shutil.which(command) is None:
        return "not in PATH"
    return None
