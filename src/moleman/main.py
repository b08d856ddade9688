"""CLI entrypoint for moleman."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from moleman import __version__
from moleman.config import Settings
from moleman.controllers import (
    InitWorkflowCommand,
    MolemanCliController,
    RunWorkflowCommand,
    WorkflowLocationCommand,
)
from moleman.errors import MolemanError

click.rich_click.USE_MARKDOWN = True
LOG_FORMAT = "%(asctime)s moleman %(levelname)s %(message)s"
LOG_DATEFMT = "%H:%M:%S"

CommandT = TypeVar("CommandT")

CONFIG_OPTION = click.option(
    "--config",
    type=click.Path(path_type=Path),
    default=None,
    help="Workflow file path.",
)
WORKDIR_OPTION = click.option(
    "--workdir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory for agents and run artifacts.",
)


@click.group()
@click.version_option(version=__version__, prog_name="moleman")
def moleman() -> None:
    """Agent-assisted workflow runner."""


@moleman.command("run")
@click.option("--prompt", default="", help="Prompt text passed to the workflow as input.")
@click.option(
    "--prompt-file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Read the workflow input from this file.",
)
@WORKDIR_OPTION
@CONFIG_OPTION
@click.option("--dry-run", is_flag=True, help="Resolve and plan without executing agents.")
@click.option("--verbose", is_flag=True, help="Debug logging and live agent output.")
def run_command(  # noqa: PLR0913
    prompt: str,
    prompt_file: Path | None,
    workdir: Path | None,
    config: Path | None,
    dry_run: bool,
    verbose: bool,
) -> None:
    """Execute the workflow.

    Examples:

    `moleman run --prompt "Fix the lint errors"`

    `moleman run --config ./moleman.yaml --prompt-file ./prompt.md`
    """

    controller = _controller(verbose=verbose)
    _dispatch(
        controller.run,
        RunWorkflowCommand(
            config=config,
            workdir=workdir,
            prompt=prompt,
            prompt_file=prompt_file,
            dry_run=dry_run,
            verbose=verbose,
        ),
    )


@moleman.command("agents")
@CONFIG_OPTION
@WORKDIR_OPTION
def agents_command(config: Path | None, workdir: Path | None) -> None:
    """List agent profiles in the workflow."""

    controller = _controller()
    _dispatch(controller.agents, WorkflowLocationCommand(config=config, workdir=workdir))


@moleman.command("pipelines", hidden=True)
@CONFIG_OPTION
@WORKDIR_OPTION
@click.pass_context
def pipelines_command(ctx: click.Context, config: Path | None, workdir: Path | None) -> None:
    """Alias for `agents`."""

    ctx.invoke(agents_command, config=config, workdir=workdir)


@moleman.command("explain")
@CONFIG_OPTION
@WORKDIR_OPTION
def explain_command(config: Path | None, workdir: Path | None) -> None:
    """Print the resolved workflow nodes as JSON."""

    controller = _controller()
    _dispatch(controller.explain, WorkflowLocationCommand(config=config, workdir=workdir))


@moleman.command("init")
@WORKDIR_OPTION
@click.option("--force", is_flag=True, help="Overwrite an existing workflow and agents file.")
@CONFIG_OPTION
def init_command(workdir: Path | None, force: bool, config: Path | None) -> None:
    """Create a starter workflow and agents file."""

    controller = _controller()
    _dispatch(
        controller.init,
        InitWorkflowCommand(config=config, workdir=workdir, force=force),
    )


@moleman.command("doctor")
@WORKDIR_OPTION
@CONFIG_OPTION
def doctor_command(workdir: Path | None, config: Path | None) -> None:
    """Validate the workflow and check agent commands are installed."""

    controller = _controller()
    _dispatch(controller.doctor, WorkflowLocationCommand(config=config, workdir=workdir))


@moleman.command("version")
def version_command() -> None:
    """Print version."""

    _emit_lines(MolemanCliController().version())


def _controller(*, verbose: bool = False) -> MolemanCliController:
    try:
        settings = Settings.from_env()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _configure_logging(logging.DEBUG if verbose else settings.log_level_value)
    return MolemanCliController(settings)


def _configure_logging(level: int) -> None:
    logging.basicConfig(format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    logging.getLogger("moleman").setLevel(level)


def _dispatch(
    handler: Callable[[CommandT], list[str]],
    command: CommandT,
) -> None:
    try:
        lines = handler(command)
    except (MolemanError, OSError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    moleman()
