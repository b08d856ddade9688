"""Load workflow YAML, merge agent profiles and validate the node tree."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from moleman.engine.commands import parse_duration
from moleman.errors import WorkflowConfigError
from moleman.workflow.models import (
    SUPPORTED_THINKING_LEVELS,
    AgentNode,
    AgentProfile,
    AgentType,
    InputSpec,
    LoopNode,
    OutputSpec,
    ResumeMode,
    SessionSpec,
    Workflow,
    WorkflowNode,
)

AGENTS_FILENAME = "agents.yaml"
SUPPORTED_VERSION = 1

_SCALAR_KEYS = ("type", "command", "model", "thinking", "outputSchema", "outputFile", "timeout")
_REPLACE_KEYS = ("args", "capture", "print", "session")


def load_workflow(path: Path) -> Workflow:
    """Load ``path`` plus its sibling ``agents.yaml`` into a validated workflow."""

    raw = _read_yaml(path, label="workflow")
    base_agents = _load_base_agents(path.parent / AGENTS_FILENAME)

    version = raw.get("version", 0)
    if not isinstance(version, int) or isinstance(version, bool) or version != SUPPORTED_VERSION:
        raise WorkflowConfigError(f"unsupported workflow version: {version}")

    overrides = raw.get("agents")
    merged = merge_agents(base_agents, overrides if isinstance(overrides, dict) else {})
    raw_nodes = raw.get("workflow")
    return build_workflow(
        version=version,
        raw_agents=merged,
        raw_nodes=raw_nodes if isinstance(raw_nodes, list) else [],
    )


def build_workflow(
    *,
    version: int,
    raw_agents: dict[str, Any],
    raw_nodes: list[Any],
) -> Workflow:
    """Validate raw (already merged) profiles and nodes into a ``Workflow``."""

    if not raw_agents:
        raise WorkflowConfigError("agent profiles map is empty")
    if not raw_nodes:
        raise WorkflowConfigError("workflow is empty")

    agents = {name: parse_agent_profile(name, spec) for name, spec in raw_agents.items()}
    seen_names: set[str] = set()
    nodes = _parse_nodes(raw_nodes, agents=agents, seen_names=seen_names, where="workflow")
    return Workflow(version=version, agents=agents, nodes=nodes)


def agent_names(workflow: Workflow) -> list[str]:
    return sorted(workflow.agents)


def merge_agents(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Overlay workflow-level profiles on ``agents.yaml`` profiles.

    An override with ``extends`` starts from that base profile; otherwise it
    starts from the same-named profile, if any.
    """

    merged: dict[str, Any] = {
        name: _strip_extends(_require_mapping(spec, f"agent profile {name}"))
        for name, spec in base.items()
    }
    for name, spec in overrides.items():
        override = _require_mapping(spec, f"agent profile {name}")
        extends = override.get("extends")
        if extends:
            if extends not in base:
                raise WorkflowConfigError(
                    f"agent profile {name} extends unknown agent profile: {extends}",
                )
            start = _strip_extends(base[extends])
        else:
            start = merged.get(name, {})
        merged[name] = _merge_profile(start, override)
    return merged


def _merge_profile(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = _strip_extends(base)
    for key in _SCALAR_KEYS:
        if override.get(key):
            result[key] = override[key]
    for key in _REPLACE_KEYS:
        if override.get(key) is not None:
            result[key] = override[key]
    if override.get("env") is not None:
        result["env"] = {
            **_require_mapping(result.get("env") or {}, "env"),
            **_require_mapping(override["env"], "env"),
        }
    return result


def _strip_extends(spec: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in spec.items() if key != "extends"}


def parse_agent_profile(name: str, raw: Any) -> AgentProfile:  # noqa: C901
    """Validate one merged profile mapping."""

    spec = _require_mapping(raw, f"agent profile {name}")
    raw_type = spec.get("type")
    if not raw_type:
        raise WorkflowConfigError(f"agent profile {name} missing runtime type")
    try:
        agent_type = AgentType(str(raw_type))
    except ValueError as error:
        raise WorkflowConfigError(
            f"agent profile {name} has unsupported runtime: {raw_type}",
        ) from error

    command = _optional_str(spec.get("command"))
    model = _optional_str(spec.get("model"))
    thinking = _optional_str(spec.get("thinking"))
    if agent_type is AgentType.GENERIC and not command:
        raise WorkflowConfigError(f"agent profile {name} runtime generic requires command")
    if model and agent_type is AgentType.GENERIC:
        raise WorkflowConfigError(
            f"agent profile {name} model is only supported for codex or claude",
        )
    if thinking and agent_type is not AgentType.CODEX:
        raise WorkflowConfigError(f"agent profile {name} thinking is only supported for codex")
    if thinking and thinking not in SUPPORTED_THINKING_LEVELS:
        raise WorkflowConfigError(
            f"agent profile {name} thinking must be one of {', '.join(SUPPORTED_THINKING_LEVELS)}",
        )

    timeout = _optional_str(spec.get("timeout")) or ""
    try:
        parse_duration(timeout)
    except WorkflowConfigError as error:
        raise WorkflowConfigError(f"agent profile {name} {error}") from error

    env = {
        str(key): "" if value is None else str(value)
        for key, value in _require_mapping(spec.get("env") or {}, f"agent profile {name} env").items()
    }

    return AgentProfile(
        type=agent_type,
        command=command,
        model=model,
        thinking=thinking,
        args=_str_tuple(spec.get("args"), f"agent profile {name} args"),
        output_schema=_optional_str(spec.get("outputSchema")),
        output_file=_optional_str(spec.get("outputFile")),
        env=env,
        timeout=timeout,
        capture_streams=_str_tuple(spec.get("capture"), f"agent profile {name} capture"),
        print_streams=_str_tuple(spec.get("print"), f"agent profile {name} print"),
        session=_parse_session(spec.get("session"), f"agent profile {name} session"),
    )


def _parse_nodes(
    raw_nodes: list[Any],
    *,
    agents: dict[str, AgentProfile],
    seen_names: set[str],
    where: str,
) -> tuple[WorkflowNode, ...]:
    nodes: list[WorkflowNode] = []
    for idx, raw in enumerate(raw_nodes):
        location = f"{where}[{idx}]"
        item = _require_mapping(raw, location)
        node_type = str(item.get("type") or "")
        if node_type == "agent":
            nodes.append(_parse_agent_node(item, agents=agents, seen_names=seen_names, where=location))
        elif node_type == "loop":
            nodes.append(_parse_loop_node(item, agents=agents, seen_names=seen_names, where=location))
        else:
            raise WorkflowConfigError(f"{location} unknown type: {node_type}")
    return tuple(nodes)


def _parse_agent_node(
    item: dict[str, Any],
    *,
    agents: dict[str, AgentProfile],
    seen_names: set[str],
    where: str,
) -> AgentNode:
    agent = str(item.get("agent") or "")
    if not agent:
        raise WorkflowConfigError(f"{where} agent profile is required")
    if agent not in agents:
        raise WorkflowConfigError(f"{where} references unknown agent profile: {agent}")

    name = str(item.get("name") or "")
    if not name:
        raise WorkflowConfigError(f"{where} name is required")
    if name in seen_names:
        raise WorkflowConfigError(f"duplicate workflow name: {name}")
    seen_names.add(name)

    raw_input = _require_mapping(item.get("input") or {}, f"{where} input")
    input_spec = InputSpec(
        prompt=_optional_str(raw_input.get("prompt")),
        file=_optional_str(raw_input.get("file")),
        from_=_optional_str(raw_input.get("from")),
    )
    _require_exactly_one(input_spec.selected(), "input", ("prompt", "file", "from"), where)

    raw_output = _require_mapping(item.get("output") or {}, f"{where} output")
    output_spec = OutputSpec(
        to_next=bool(raw_output.get("toNext")),
        file=_optional_str(raw_output.get("file")),
        stdout=bool(raw_output.get("stdout")),
    )
    _require_exactly_one(output_spec.selected(), "output", ("toNext", "file", "stdout"), where)

    return AgentNode(
        name=name,
        agent=agent,
        input=input_spec,
        output=output_spec,
        session=_parse_session(item.get("session"), f"{where} session"),
    )


def _parse_loop_node(
    item: dict[str, Any],
    *,
    agents: dict[str, AgentProfile],
    seen_names: set[str],
    where: str,
) -> LoopNode:
    raw_max = item.get("maxIters", 0)
    try:
        max_iters = int(raw_max)
    except (TypeError, ValueError) as error:
        raise WorkflowConfigError(f"{where} loop maxIters must be > 0") from error
    if isinstance(raw_max, bool) or max_iters <= 0:
        raise WorkflowConfigError(f"{where} loop maxIters must be > 0")

    until = str(item.get("until") or "").strip()
    if not until:
        raise WorkflowConfigError(f"{where} loop until is required")

    raw_body = item.get("body")
    if not isinstance(raw_body, list) or not raw_body:
        raise WorkflowConfigError(f"{where} loop body is empty")

    body = _parse_nodes(raw_body, agents=agents, seen_names=seen_names, where=f"{where}.body")
    return LoopNode(max_iters=max_iters, until=until, body=body)


def _require_exactly_one(
    selected: list[str],
    label: str,
    choices: tuple[str, ...],
    where: str,
) -> None:
    options = f"{', '.join(choices[:-1])}, or {choices[-1]}"
    if not selected:
        raise WorkflowConfigError(f"{where} {label} requires one of {options}")
    if len(selected) > 1:
        raise WorkflowConfigError(f"{where} {label} must specify only one of {options}")


def _parse_session(raw: Any, where: str) -> SessionSpec | None:
    if raw is None:
        return None
    spec = _require_mapping(raw, where)
    resume = _optional_str(spec.get("resume")) or ""
    if resume and resume not in {mode.value for mode in ResumeMode}:
        raise WorkflowConfigError(f"{where} resume must be one of new, last: {resume}")
    return SessionSpec(resume=resume)


def _load_base_agents(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise WorkflowConfigError(f"agents.yaml not found: {path}")
    payload = _read_yaml(path, label="agents.yaml")
    agents = payload.get("agents")
    return agents if isinstance(agents, dict) else {}


def _read_yaml(path: Path, *, label: str) -> dict[str, Any]:
    try:
        text = path.read_text("utf-8")
    except OSError as error:
        raise WorkflowConfigError(f"read {label}: {error}") from error
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as error:
        raise WorkflowConfigError(f"parse {label}: {error}") from error
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise WorkflowConfigError(f"parse {label}: expected a mapping at the top level of {path}")
    return payload


def _require_mapping(value: Any, where: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise WorkflowConfigError(f"{where} must be a mapping")
    return value


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _str_tuple(value: Any, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise WorkflowConfigError(f"{where} must be a list")
    return tuple(str(item) for item in value)
