"""Workflow execution engine: walks nodes, runs agents, routes outputs."""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any, TextIO

from moleman.engine.artifacts import RunArtifacts, write_node_meta
from moleman.engine.commands import (
    AgentCommand,
    build_agent_command,
    format_duration,
    parse_duration,
)
from moleman.engine.context import PREVIOUS_JSON_KEY, PREVIOUS_KEY, NodeResult, RunContext
from moleman.engine.expr import eval_condition
from moleman.engine.process import (
    EchoWriter,
    ProcessRequest,
    StreamPolicy,
    run_process,
)
from moleman.engine.template import render_template
from moleman.errors import LoopExhaustedError, NodeExecutionError, WorkflowConfigError
from moleman.workflow.models import (
    AgentNode,
    AgentProfile,
    AgentType,
    InputSpec,
    LoopNode,
    Workflow,
    WorkflowNode,
)

logger = logging.getLogger(__name__)

PREVIOUS_ALIASES = frozenset({"previous", "prev", "last"})
STDERR_SUMMARY_LIMIT = 4000
_TRUNCATION_MARKER = "...(truncated)...\n"


class WorkflowExecutor:
    """Runs a validated workflow against one ``RunContext``.

    The executor is single-threaded: nodes and loop iterations run strictly in
    document order and only this object mutates the context.  Output echo goes
    to ``stdout``/``stderr`` (defaulting to the process streams at call time)
    and log records to the injected ``log``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        workflow: Workflow,
        context: RunContext,
        artifacts: RunArtifacts,
        log: logging.Logger | None = None,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._workflow = workflow
        self._context = context
        self._artifacts = artifacts
        self._log = log or logger
        self._stdout = stdout
        self._stderr = stderr
        self._environ = environ

    @property
    def context(self) -> RunContext:
        return self._context

    def run(self) -> None:
        self.execute_sequence(self._workflow.nodes)

    def execute_sequence(self, nodes: tuple[WorkflowNode, ...] | list[WorkflowNode]) -> None:
        for node in nodes:
            if isinstance(node, AgentNode):
                self._execute_agent(node)
            elif isinstance(node, LoopNode):
                self._execute_loop(node)
            else:
                raise WorkflowConfigError(f"unknown workflow type: {type(node).__name__}")

    def _execute_loop(self, node: LoopNode) -> None:
        for iteration in range(1, node.max_iters + 1):
            self._log.debug("loop iteration %d/%d", iteration, node.max_iters)
            self.execute_sequence(node.body)
            if eval_condition(node.until, self._context.template_data()):
                self._log.info(
                    "loop condition met iteration=%d max=%d",
                    iteration,
                    node.max_iters,
                )
                return
        raise LoopExhaustedError(node.max_iters)

    def _execute_agent(self, node: AgentNode) -> None:
        profile = self._workflow.agents.get(node.agent)
        if profile is None:
            raise WorkflowConfigError(f"unknown agent: {node.agent}")

        ctx = self._context
        input_text = self._resolve_input(node.input)
        command = build_agent_command(
            profile=profile,
            node=node,
            input_text=input_text,
            data=ctx.template_data(),
            sessions=ctx.sessions,
            log=self._log,
        )
        timeout_seconds = parse_duration(profile.timeout)
        node_artifacts = self._artifacts.node(node.name)

        self._log.info("node start command=%s args=%s", command.command, " ".join(command.args))
        result = run_process(
            ProcessRequest(
                argv=command.argv,
                cwd=ctx.workdir,
                env={**(self._environ or os.environ), **profile.env},
                stdout_path=node_artifacts.stdout_path,
                stderr_path=node_artifacts.stderr_path,
                stdout_policy=self._stream_policy(profile, "stdout"),
                stderr_policy=self._stream_policy(profile, "stderr"),
                timeout_seconds=timeout_seconds,
                stdin_text=_stdin_payload(profile, command, input_text),
            ),
        )

        node_result = NodeResult(
            name=node.name,
            agent=node.agent,
            exit_code=result.exit_code,
            duration=format_duration(result.elapsed_seconds),
            command=command.display(),
        )
        write_node_meta(node_artifacts, node_result)

        try:
            self._route_output(node, result.stdout)
            if profile.type is AgentType.CLAUDE:
                self._update_claude_session(result.stdout)
        finally:
            ctx.record(node_result)

        if result.exit_code != 0:
            raise NodeExecutionError(
                node=node.name,
                exit_code=result.exit_code,
                stderr_path=str(node_artifacts.stderr_path),
                stderr_summary=summarize_stderr(result.stderr),
            )

        self._log.info(
            "node done name=%s agent=%s exit=%d duration=%s",
            node.name,
            node.agent,
            result.exit_code,
            node_result.duration,
        )

    def _stream_policy(self, profile: AgentProfile, stream: str) -> StreamPolicy:
        echo = self._context.verbose or profile.prints(stream)
        target = self._stdout_target() if stream == "stdout" else self._stderr_target()
        return StreamPolicy(capture=profile.captures(stream), echo_to=target if echo else None)

    def _stdout_target(self) -> TextIO:
        return self._stdout if self._stdout is not None else sys.stdout

    def _stderr_target(self) -> TextIO:
        return self._stderr if self._stderr is not None else sys.stderr

    def _resolve_input(self, spec: InputSpec) -> str:
        ctx = self._context
        data = ctx.template_data()

        if spec.prompt:
            return render_template(spec.prompt, data)

        if spec.file:
            path = self._resolve_path(render_template(spec.file, data))
            try:
                return path.read_text("utf-8")
            except OSError as error:
                raise WorkflowConfigError(f"read input file: {error}") from error

        if spec.from_:
            if spec.from_ in PREVIOUS_ALIASES:
                return output_as_string(ctx.outputs.get(PREVIOUS_KEY))
            if spec.from_ == "input":
                return ctx.input
            if spec.from_ not in ctx.outputs:
                raise WorkflowConfigError(f"input from unknown node: {spec.from_}")
            return output_as_string(ctx.outputs[spec.from_])

        raise WorkflowConfigError("input is empty")

    def _route_output(self, node: AgentNode, stdout: bytes) -> None:
        ctx = self._context
        text = stdout.decode("utf-8", errors="replace")

        if node.output.to_next:
            ctx.last_output = text
            ctx.outputs[PREVIOUS_KEY] = text
            ctx.outputs[node.name] = text
            parsed = parse_json_output(stdout)
            if parsed is not None:
                normalized = normalize_structured_output(parsed)
                ctx.outputs[PREVIOUS_JSON_KEY] = normalized
                ctx.outputs[f"{node.name}_json"] = normalized

        if node.output.file:
            path = self._resolve_path(render_template(node.output.file, ctx.template_data()))
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(stdout)
            except OSError as error:
                raise WorkflowConfigError(f"write output file: {error}") from error

        if node.output.stdout:
            echo = EchoWriter(self._stdout_target())
            echo.write(stdout)
            echo.finish()

    def _update_claude_session(self, stdout: bytes) -> None:
        parsed = parse_json_output(stdout)
        if not isinstance(parsed, dict):
            return
        session_id = parsed.get("session_id")
        if isinstance(session_id, str) and session_id:
            self._context.sessions[AgentType.CLAUDE.value] = session_id

    def _resolve_path(self, rendered: str) -> Path:
        path = Path(rendered).expanduser()
        if path.is_absolute():
            return path
        return self._context.workdir / path


def _stdin_payload(profile: AgentProfile, command: AgentCommand, input_text: str) -> str | None:
    if profile.type is AgentType.CLAUDE and input_text and not command.carries_prompt_flag():
        return input_text
    return None


def parse_json_output(stdout: bytes) -> Any | None:
    """Strictly parse ``stdout`` as JSON, or return ``None``."""

    try:
        return json.loads(stdout, parse_constant=_reject_constant)
    except ValueError:
        return None


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid JSON constant: {name}")


def normalize_structured_output(value: Any) -> Any:
    """Wrap a plain JSON object as ``{"structured_output": obj, **obj}``."""

    if not isinstance(value, dict) or "structured_output" in value:
        return value
    return {"structured_output": value, **value}


def output_as_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def summarize_stderr(stderr: bytes) -> str:
    """Trimmed stderr text, keeping only the last 4000 characters when long."""

    text = stderr.decode("utf-8", errors="replace").strip()
    if len(text) <= STDERR_SUMMARY_LIMIT:
        return text
    return _TRUNCATION_MARKER + text[-STDERR_SUMMARY_LIMIT:]

