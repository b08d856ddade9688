"""Typed workflow model: agent profiles and the recursive node tree."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

SUPPORTED_THINKING_LEVELS = ("minimal", "low", "medium", "high", "xhigh")
STREAM_NAMES = ("stdout", "stderr")


class AgentType(str, Enum):
    """Runtime families the executor knows how to invoke."""

    CODEX = "codex"
    CLAUDE = "claude"
    GENERIC = "generic"


class ResumeMode(str, Enum):
    """Session resume policy."""

    NEW = "new"
    LAST = "last"


@dataclass(frozen=True, slots=True)
class SessionSpec:
    """Session resume request attached to a profile or a node."""

    resume: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"resume": self.resume} if self.resume else {}


@dataclass(frozen=True, slots=True)
class AgentProfile:
    """Named external-tool invocation template."""

    type: AgentType
    command: str | None = None
    model: str | None = None
    thinking: str | None = None
    args: tuple[str, ...] = ()
    output_schema: str | None = None
    output_file: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    timeout: str = ""
    capture_streams: tuple[str, ...] = ()
    print_streams: tuple[str, ...] = ()
    session: SessionSpec | None = None

    def default_command(self) -> str | None:
        """Explicit command, else the executable implied by the runtime type."""

        if self.command:
            return self.command
        if self.type is AgentType.CODEX:
            return "codex"
        if self.type is AgentType.CLAUDE:
            return "claude"
        return None

    def captures(self, stream: str) -> bool:
        return not self.capture_streams or stream in self.capture_streams

    def prints(self, stream: str) -> bool:
        return stream in self.print_streams


@dataclass(frozen=True, slots=True)
class InputSpec:
    """Where an agent node reads its input from; exactly one field is set."""

    prompt: str | None = None
    file: str | None = None
    from_: str | None = None

    def selected(self) -> list[str]:
        names = []
        if self.prompt:
            names.append("prompt")
        if self.file:
            names.append("file")
        if self.from_:
            names.append("from")
        return names

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.prompt:
            payload["prompt"] = self.prompt
        if self.file:
            payload["file"] = self.file
        if self.from_:
            payload["from"] = self.from_
        return payload


@dataclass(frozen=True, slots=True)
class OutputSpec:
    """Where an agent node sends its stdout; exactly one field is set."""

    to_next: bool = False
    file: str | None = None
    stdout: bool = False

    def selected(self) -> list[str]:
        names = []
        if self.to_next:
            names.append("toNext")
        if self.file:
            names.append("file")
        if self.stdout:
            names.append("stdout")
        return names

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.to_next:
            payload["toNext"] = True
        if self.file:
            payload["file"] = self.file
        if self.stdout:
            payload["stdout"] = True
        return payload


@dataclass(frozen=True, slots=True)
class AgentNode:
    """One agent invocation."""

    name: str
    agent: str
    input: InputSpec
    output: OutputSpec
    session: SessionSpec | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": "agent",
            "name": self.name,
            "agent": self.agent,
            "input": self.input.to_payload(),
            "output": self.output.to_payload(),
        }
        if self.session is not None and self.session.resume:
            payload["session"] = self.session.to_payload()
        return payload


@dataclass(frozen=True, slots=True)
class LoopNode:
    """Bounded loop over a body of nodes with an exit condition."""

    max_iters: int
    until: str
    body: tuple[WorkflowNode, ...]

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": "loop",
            "maxIters": self.max_iters,
            "until": self.until,
            "body": [node.to_payload() for node in self.body],
        }


WorkflowNode = AgentNode | LoopNode


@dataclass(slots=True)
class Workflow:
    """Validated workflow: merged agent profiles plus the node tree."""

    version: int
    agents: dict[str, AgentProfile]
    nodes: tuple[WorkflowNode, ...]

    def iter_agent_nodes(self) -> list[AgentNode]:
        """Agent nodes in document order, descending into loop bodies."""

        found: list[AgentNode] = []
        _collect_agent_nodes(self.nodes, found)
        return found


def _collect_agent_nodes(nodes: tuple[WorkflowNode, ...], found: list[AgentNode]) -> None:
    for node in nodes:
        if isinstance(node, AgentNode):
            found.append(node)
        elif isinstance(node, LoopNode):
            _collect_agent_nodes(node.body, found)


def dump_nodes(nodes: tuple[WorkflowNode, ...]) -> list[dict[str, Any]]:
    """Serialize nodes back to the workflow-file shape."""

    return [node.to_payload() for node in nodes]
