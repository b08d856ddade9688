"""Per-runtime command construction for agent nodes."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from moleman.engine.template import render_template
from moleman.errors import WorkflowConfigError
from moleman.workflow.models import (
    AgentNode,
    AgentProfile,
    AgentType,
    ResumeMode,
    SessionSpec,
)

logger = logging.getLogger(__name__)

CLAUDE_PROMPT_FLAG = "-p"

_DURATION_PART = re.compile(r"([+-]?\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}


@dataclass(frozen=True, slots=True)
class AgentCommand:
    """Concrete executable and argument vector for one node run."""

    command: str
    args: tuple[str, ...]

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    def display(self) -> str:
        return " ".join(self.argv)

    def carries_prompt_flag(self) -> bool:
        return CLAUDE_PROMPT_FLAG in self.args


def effective_session(profile_session: SessionSpec | None, node_session: SessionSpec | None) -> str:
    """Resume mode after node override, profile default, then ``new``."""

    if node_session is not None and node_session.resume:
        return node_session.resume
    if profile_session is not None and profile_session.resume:
        return profile_session.resume
    return ResumeMode.NEW.value


def build_agent_command(  # noqa: PLR0913
    *,
    profile: AgentProfile,
    node: AgentNode,
    input_text: str,
    data: Mapping[str, Any],
    sessions: Mapping[str, str],
    log: logging.Logger | None = None,
) -> AgentCommand:
    """Build the command for ``node`` according to its profile runtime."""

    log = log or logger
    command = profile.default_command()
    if command is None:
        if profile.type is AgentType.GENERIC:
            raise WorkflowConfigError("generic agent requires command")
        raise WorkflowConfigError(f"unsupported agent type: {profile.type}")

    resume = effective_session(profile.session, node.session)
    output_schema = render_template(profile.output_schema, data) if profile.output_schema else ""
    output_file = render_template(profile.output_file, data) if profile.output_file else ""

    args: list[str] = []
    if profile.type is AgentType.CODEX:
        resume_last = resume == ResumeMode.LAST.value
        if resume_last and (output_schema or output_file):
            log.warning(
                "codex resume disabled for output schema/file node=%s agent=%s",
                node.name,
                node.agent,
            )
            resume_last = False
        args.extend(["exec", "resume", "--last"] if resume_last else ["exec"])
        args.extend(_model_args(profile))
        args.extend(profile.args)
        if output_schema:
            args.extend(["--output-schema", output_schema])
        if output_file:
            args.extend(["--output-last-message", output_file])
        args.append(input_text)
    elif profile.type is AgentType.CLAUDE:
        args.extend([CLAUDE_PROMPT_FLAG, input_text])
        args.extend(_model_args(profile))
        args.extend(profile.args)
        if resume == ResumeMode.LAST.value:
            session_id = sessions.get(AgentType.CLAUDE.value, "")
            if not session_id:
                raise WorkflowConfigError(
                    "claude resume requested but no session_id is available",
                )
            args.extend(["--resume", session_id])
    elif profile.type is AgentType.GENERIC:
        args.extend(profile.args)
        if input_text:
            args.append(input_text)
    else:
        raise WorkflowConfigError(f"unsupported agent type: {profile.type}")

    return AgentCommand(command=command, args=tuple(args))


def _model_args(profile: AgentProfile) -> list[str]:
    args: list[str] = []
    if profile.type is AgentType.CODEX:
        if profile.model:
            args.extend(["--model", profile.model])
        if profile.thinking:
            args.extend(["-c", f"model_reasoning_effort={profile.thinking}"])
    elif profile.type is AgentType.CLAUDE and profile.model:
        args.extend(["--model", profile.model])
    return args


def parse_duration(value: str) -> float:
    """Parse a Go-style duration (``45m``, ``1h30m``, ``250ms``) into seconds.

    An empty string means no timeout and returns ``0``.
    """

    if not value:
        return 0.0

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != position:
            raise WorkflowConfigError(f"timeout: invalid duration: {value}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(value):
        raise WorkflowConfigError(f"timeout: invalid duration: {value}")
    return max(0.0, total)


def format_duration(seconds: float) -> str:
    """Render elapsed time as ``123ms`` below one second, else ``1.25s``."""

    if seconds < 1:
        return f"{round(seconds * 1000)}ms"
    text = f"{seconds:.3f}".rstrip("0").rstrip(".")
    return f"{text}s"
