"""Mutable state threaded through one workflow run."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

PREVIOUS_KEY = "__previous__"
PREVIOUS_JSON_KEY = "__previous_json__"


@dataclass(frozen=True, slots=True)
class NodeResult:
    """Outcome of one agent node invocation."""

    name: str
    agent: str
    exit_code: int
    duration: str
    command: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "agent": self.agent,
            "exitCode": self.exit_code,
            "duration": self.duration,
            "command": self.command,
        }


@dataclass(slots=True)
class RunContext:
    """Run state owned by the executor for the lifetime of one run."""

    input: str
    run_dir: Path
    workdir: Path
    verbose: bool = False
    outputs: dict[str, Any] = field(default_factory=dict)
    last_output: str = ""
    sessions: dict[str, str] = field(default_factory=dict)
    node_results: list[NodeResult] = field(default_factory=list)

    def template_data(self) -> dict[str, Any]:
        """Snapshot exposed to templates and loop conditions."""

        return {
            "input": {"prompt": self.input},
            "outputs": self.outputs,
            "last": self.last_output,
            "sessions": self.sessions,
        }

    def record(self, result: NodeResult) -> None:
        self.node_results.append(result)
