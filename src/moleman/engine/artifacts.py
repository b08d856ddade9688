"""Run directory layout and persisted artifacts."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from moleman.engine.context import NodeResult

SUMMARY_HEADING = "# moleman Run Summary"


@dataclass(slots=True)
class NodeArtifacts:
    """Paths owned by one agent node inside the run directory."""

    node_dir: Path
    stdout_path: Path
    stderr_path: Path
    meta_path: Path


def write_json(path: Path, payload: Any) -> None:
    """Persist JSON payload with stable indentation and a trailing newline."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2) + "\n", "utf-8")


class RunArtifacts:
    """Creates the run directory tree and writes run-level files."""

    def __init__(self, run_dir: Path) -> None:
        self.run_dir = run_dir

    @property
    def nodes_dir(self) -> Path:
        return self.run_dir / "nodes"

    @property
    def summary_path(self) -> Path:
        return self.run_dir / "summary.md"

    def materialize(self, *, input_text: str, nodes_payload: list[dict[str, Any]]) -> None:
        """Write ``input.md``, ``resolved-workflow.json`` and empty subdirectories."""

        self.run_dir.mkdir(parents=True, exist_ok=True)
        (self.run_dir / "input.md").write_text(input_text, "utf-8")
        write_json(self.run_dir / "resolved-workflow.json", nodes_payload)
        self.nodes_dir.mkdir(parents=True, exist_ok=True)
        (self.run_dir / "diffs").mkdir(parents=True, exist_ok=True)

    def node(self, name: str) -> NodeArtifacts:
        """Create (if needed) and return the artifact paths for node ``name``."""

        node_dir = self.nodes_dir / (name or "node")
        node_dir.mkdir(parents=True, exist_ok=True)
        return NodeArtifacts(
            node_dir=node_dir,
            stdout_path=node_dir / "stdout.log",
            stderr_path=node_dir / "stderr.log",
            meta_path=node_dir / "meta.json",
        )

    def write_summary(
        self,
        *,
        status: str,
        node_results: list[NodeResult],
        error: BaseException | None = None,
    ) -> None:
        payload: dict[str, Any] = {"status": status}
        if error is not None:
            payload["error"] = str(error)
        payload["time"] = format_timestamp(datetime.now(tz=UTC))
        payload["nodes"] = [result.to_payload() for result in node_results]
        self.summary_path.write_text(
            f"{SUMMARY_HEADING}\n\n{json.dumps(payload, ensure_ascii=False, indent=2)}\n",
            "utf-8",
        )


def write_node_meta(artifacts: NodeArtifacts, result: NodeResult) -> None:
    """Persist ``meta.json`` for one node run."""

    payload = result.to_payload()
    payload["stdoutLog"] = str(artifacts.stdout_path)
    payload["stderrLog"] = str(artifacts.stderr_path)
    write_json(artifacts.meta_path, payload)


def read_summary(path: Path) -> dict[str, Any]:
    """Parse the JSON object that follows the summary heading."""

    text = path.read_text("utf-8")
    if text.startswith(SUMMARY_HEADING):
        text = text[len(SUMMARY_HEADING) :]
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def format_timestamp(moment: datetime) -> str:
    """UTC ISO-8601 with milliseconds and a ``Z`` suffix."""

    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
