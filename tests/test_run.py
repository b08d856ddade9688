from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

import allure
import pytest

from moleman.engine.artifacts import read_summary
from moleman.engine.execute import parse_json_output, summarize_stderr
from moleman.engine.run import RunOptions, load_prompt, run
from moleman.errors import LoopExhaustedError, NodeExecutionError, WorkflowConfigError
from moleman.workflow.loader import load_workflow
from helpers import AgentFactory, python_agent, write_workflow

pytestmark = [
    allure.epic("Workflow Engine"),
    allure.feature("Workflow Runs"),
]

NOW = datetime(2024, 1, 2, 3, 4, 5)
RUN_ID = "20240102-030405-workflow"
PRINTF = {"type": "generic", "command": "printf", "args": ["%s"]}
COUNTER_SCRIPT = """
import json, pathlib, sys
path = pathlib.Path("count.txt")
count = int(path.read_text()) + 1 if path.exists() else 1
path.write_text(str(count))
sys.stdout.write(json.dumps({"done": count >= 2, "count": count}))
"""


def _run(workflow_path: Path, workdir: Path, **options):
    workflow = load_workflow(workflow_path)
    return run(workflow, workflow_path, RunOptions(workdir=workdir, **options), now=NOW)


def _summary(workdir: Path) -> dict:
    return read_summary(workdir / ".moleman" / "runs" / RUN_ID / "summary.md")


def test_sequential_run_passes_output_to_next_node(workdir: Path) -> None:
    path = write_workflow(
        workdir,
        agents={"echo": PRINTF},
        workflow=[
            {
                "type": "agent",
                "name": "draft",
                "agent": "echo",
                "input": {"prompt": "draft for {{ input.prompt }}"},
                "output": {"toNext": True},
            },
            {
                "type": "agent",
                "name": "publish",
                "agent": "echo",
                "input": {"from": "previous"},
                "output": {"file": "out/{{ input.prompt }}.txt"},
            },
        ],
    )

    result = _run(path, workdir, prompt="release")

    run_dir = workdir / ".moleman" / "runs" / RUN_ID
    assert result.run_dir == run_dir
    assert (workdir / "out" / "release.txt").read_text("utf-8") == "draft for release"
    assert (run_dir / "input.md").read_text("utf-8") == "release"
    assert (run_dir / "diffs").is_dir()
    resolved = json.loads((run_dir / "resolved-workflow.json").read_text("utf-8"))
    assert [node["name"] for node in resolved] == ["draft", "publish"]
    assert (run_dir / "nodes" / "draft" / "stdout.log").read_text("utf-8") == "draft for release"

    meta = json.loads((run_dir / "nodes" / "publish" / "meta.json").read_text("utf-8"))
    assert meta["exitCode"] == 0
    assert meta["command"] == "printf %s draft for release"
    assert meta["stdoutLog"].endswith("stdout.log")

    summary = _summary(workdir)
    assert summary["status"] == "success"
    assert "error" not in summary
    assert [node["name"] for node in summary["nodes"]] == ["draft", "publish"]


def test_stdout_output_is_echoed(workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = write_workflow(
        workdir,
        agents={"echo": PRINTF},
        workflow=[
            {
                "type": "agent",
                "name": "say",
                "agent": "echo",
                "input": {"from": "input"},
                "output": {"stdout": True},
            },
        ],
    )

    _run(path, workdir, prompt="hello")

    assert capsys.readouterr().out == "\nhello\n"


def test_input_file_is_resolved_against_workdir(workdir: Path) -> None:
    (workdir / "brief.md").write_text("from file", "utf-8")
    path = write_workflow(
        workdir,
        agents={"echo": PRINTF},
        workflow=[
            {
                "type": "agent",
                "name": "read",
                "agent": "echo",
                "input": {"file": "brief.md"},
                "output": {"file": "copy.txt"},
            },
        ],
    )

    _run(path, workdir)

    assert (workdir / "copy.txt").read_text("utf-8") == "from file"


def test_failing_node_writes_failed_summary(workdir: Path) -> None:
    path = write_workflow(
        workdir,
        agents={"broken": {"type": "generic", "command": "false"}},
        workflow=[
            {
                "type": "agent",
                "name": "fail",
                "agent": "broken",
                "input": {"from": "input"},
                "output": {"toNext": True},
            },
        ],
    )

    with pytest.raises(NodeExecutionError, match=r"node failed: fail \(exit 1\)") as excinfo:
        _run(path, workdir, prompt="x")

    assert excinfo.value.exit_code == 1
    summary = _summary(workdir)
    assert summary["status"] == "failed"
    assert summary["error"].startswith("node failed: fail (exit 1)")
    assert summary["nodes"][0]["exitCode"] == 1


def test_stderr_summary_is_included_in_failure(workdir: Path) -> None:
    script = "import sys; sys.stderr.write('boom happened'); raise SystemExit(2)"
    path = write_workflow(
        workdir,
        agents={"noisy": python_agent(script)},
        workflow=[
            {
                "type": "agent",
                "name": "noisy",
                "agent": "noisy",
                "input": {"prompt": "go"},
                "output": {"toNext": True},
            },
        ],
    )

    with pytest.raises(NodeExecutionError, match="stderr: boom happened"):
        _run(path, workdir)


def test_loop_stops_when_condition_is_met(workdir: Path) -> None:
    path = write_workflow(
        workdir,
        agents={"counter": python_agent(COUNTER_SCRIPT)},
        workflow=[
            {
                "type": "loop",
                "maxIters": 5,
                "until": "outputs.tick_json.structured_output.done == true",
                "body": [
                    {
                        "type": "agent",
                        "name": "tick",
                        "agent": "counter",
                        "input": {"prompt": "iteration"},
                        "output": {"toNext": True},
                    },
                ],
            },
        ],
    )

    _run(path, workdir)

    summary = _summary(workdir)
    assert summary["status"] == "success"
    assert [node["name"] for node in summary["nodes"]] == ["tick", "tick"]
    assert (workdir / "count.txt").read_text("utf-8") == "2"


def test_loop_exhaustion_is_fatal(workdir: Path) -> None:
    path = write_workflow(
        workdir,
        agents={"echo": PRINTF},
        workflow=[
            {
                "type": "loop",
                "maxIters": 2,
                "until": "outputs.never_json.done == true",
                "body": [
                    {
                        "type": "agent",
                        "name": "spin",
                        "agent": "echo",
                        "input": {"prompt": "spin"},
                        "output": {"toNext": True},
                    },
                ],
            },
        ],
    )

    with pytest.raises(LoopExhaustedError, match="loop exhausted without meeting condition"):
        _run(path, workdir)

    summary = _summary(workdir)
    assert summary["status"] == "failed"
    assert len(summary["nodes"]) == 2


def test_json_output_is_normalized_for_later_nodes(workdir: Path) -> None:
    script = "import sys; sys.stdout.write('{\"score\": 9}')"
    path = write_workflow(
        workdir,
        agents={"judge": python_agent(script), "echo": PRINTF},
        workflow=[
            {
                "type": "agent",
                "name": "judge",
                "agent": "judge",
                "input": {"prompt": "rate"},
                "output": {"toNext": True},
            },
            {
                "type": "agent",
                "name": "report",
                "agent": "echo",
                "input": {
                    "prompt": (
                        "{{ outputs.judge_json.structured_output.score }}/"
                        "{{ outputs.__previous_json__.score }}/{{ last }}"
                    ),
                },
                "output": {"file": "report.txt"},
            },
        ],
    )

    _run(path, workdir)

    assert (workdir / "report.txt").read_text("utf-8") == '9/9/{"score": 9}'


def test_claude_session_is_resumed_by_later_node(workdir: Path, agent_bin: AgentFactory) -> None:
    script = """
import json, pathlib, sys
with pathlib.Path("calls.jsonl").open("a", encoding="utf-8") as handle:
    handle.write(json.dumps(sys.argv[1:]) + "\\n")
print(json.dumps({"session_id": "sess-42", "result": "ok"}))
"""
    agent_bin("claude", script)
    path = write_workflow(
        workdir,
        agents={"claude": {"type": "claude"}},
        workflow=[
            {
                "type": "agent",
                "name": "plan",
                "agent": "claude",
                "input": {"prompt": "plan it"},
                "output": {"toNext": True},
            },
            {
                "type": "agent",
                "name": "build",
                "agent": "claude",
                "session": {"resume": "last"},
                "input": {"prompt": "build it with {{ sessions.claude }}"},
                "output": {"toNext": True},
            },
        ],
    )

    _run(path, workdir)

    calls = [
        json.loads(line)
        for line in (workdir / "calls.jsonl").read_text("utf-8").splitlines()
    ]
    assert calls == [
        ["-p", "plan it"],
        ["-p", "build it with sess-42", "--resume", "sess-42"],
    ]


def test_timeout_fails_node_with_exit_124(workdir: Path) -> None:
    path = write_workflow(
        workdir,
        agents={"sleepy": python_agent("import time; time.sleep(30)", timeout="300ms")},
        workflow=[
            {
                "type": "agent",
                "name": "nap",
                "agent": "sleepy",
                "input": {"prompt": "zzz"},
                "output": {"toNext": True},
            },
        ],
    )

    with pytest.raises(NodeExecutionError, match=r"exit 124"):
        _run(path, workdir)


def test_profile_env_is_passed_to_agent(workdir: Path) -> None:
    script = "import os, sys; sys.stdout.write(os.environ['REVIEW_MODE'])"
    path = write_workflow(
        workdir,
        agents={"env": python_agent(script, env={"REVIEW_MODE": "strict"})},
        workflow=[
            {
                "type": "agent",
                "name": "env",
                "agent": "env",
                "input": {"prompt": "x"},
                "output": {"file": "mode.txt"},
            },
        ],
    )

    _run(path, workdir)

    assert (workdir / "mode.txt").read_text("utf-8") == "strict"


def test_unknown_input_node_is_fatal(workdir: Path) -> None:
    path = write_workflow(
        workdir,
        agents={"echo": PRINTF},
        workflow=[
            {
                "type": "agent",
                "name": "orphan",
                "agent": "echo",
                "input": {"from": "ghost"},
                "output": {"toNext": True},
            },
        ],
    )

    with pytest.raises(WorkflowConfigError, match="input from unknown node: ghost"):
        _run(path, workdir)


def test_dry_run_only_prepares_artifacts(workdir: Path) -> None:
    path = write_workflow(
        workdir,
        agents={"broken": {"type": "generic", "command": "false"}},
        workflow=[
            {
                "type": "agent",
                "name": "fail",
                "agent": "broken",
                "input": {"from": "input"},
                "output": {"toNext": True},
            },
        ],
    )

    _run(path, workdir, prompt="plan only", dry_run=True)

    summary = _summary(workdir)
    assert summary["status"] == "dry-run"
    assert summary["nodes"] == []
    assert list((workdir / ".moleman" / "runs" / RUN_ID / "nodes").iterdir()) == []


def test_preflight_rejects_missing_command(workdir: Path) -> None:
    path = write_workflow(
        workdir,
        agents={"ghost": {"type": "generic", "command": "moleman-no-such-agent-cli"}},
        workflow=[
            {
                "type": "agent",
                "name": "ghost",
                "agent": "ghost",
                "input": {"from": "input"},
                "output": {"toNext": True},
            },
        ],
    )

    with pytest.raises(
        WorkflowConfigError,
        match=r"agent ghost command not found: moleman-no-such-agent-cli \(not in PATH\)",
    ):
        _run(path, workdir)

    assert _summary(workdir)["status"] == "failed"


def test_preflight_rejects_missing_output_schema(workdir: Path, agent_bin: AgentFactory) -> None:
    agent_bin("codex", "print('unused')")
    path = write_workflow(
        workdir,
        agents={"codex": {"type": "codex", "outputSchema": "schema.json"}},
        workflow=[
            {
                "type": "agent",
                "name": "code",
                "agent": "codex",
                "input": {"from": "input"},
                "output": {"toNext": True},
            },
        ],
    )

    with pytest.raises(WorkflowConfigError, match="agent codex output schema error: not found"):
        _run(path, workdir)


def test_load_prompt_rejects_both_sources(tmp_path: Path) -> None:
    prompt_file = tmp_path / "prompt.md"
    prompt_file.write_text("from file", "utf-8")

    assert load_prompt("", prompt_file) == "from file"
    with pytest.raises(WorkflowConfigError, match="provide only one of --prompt or --prompt-file"):
        load_prompt("inline", prompt_file)
    with pytest.raises(WorkflowConfigError, match="read prompt file"):
        load_prompt("", tmp_path / "missing.md")


def test_loop_body_failure_aborts_before_condition(workdir: Path) -> None:
    path = write_workflow(
        workdir,
        agents={"broken": {"type": "generic", "command": "false"}},
        workflow=[
            {
                "type": "loop",
                "maxIters": 2,
                "until": "'a' < 1",
                "body": [
                    {
                        "type": "agent",
                        "name": "fail",
                        "agent": "broken",
                        "input": {"prompt": "try"},
                        "output": {"toNext": True},
                    },
                ],
            },
        ],
    )

    with pytest.raises(NodeExecutionError, match="node failed: fail"):
        _run(path, workdir)

    assert len(_summary(workdir)["nodes"]) == 1


def _single_node(agent: str, output: dict, **node) -> list[dict]:
    return [
        {
            "type": "agent",
            "name": "only",
            "agent": agent,
            "input": {"prompt": "go"},
            "output": output,
            **node,
        },
    ]


def test_non_executable_command_fails_with_126(workdir: Path) -> None:
    script = workdir / "agent.sh"
    workdir.mkdir(parents=True, exist_ok=True)
    script.write_text("#!/bin/sh\necho hi\n", "utf-8")
    script.chmod(0o644)
    path = write_workflow(
        workdir,
        agents={"plain": {"type": "generic", "command": str(script)}},
        workflow=_single_node("plain", {"toNext": True}),
    )

    with pytest.raises(NodeExecutionError, match=r"exit 126") as excinfo:
        _run(path, workdir)

    assert excinfo.value.exit_code == 126
    node_dir = workdir / ".moleman" / "runs" / RUN_ID / "nodes" / "only"
    meta = json.loads((node_dir / "meta.json").read_text("utf-8"))
    assert meta["exitCode"] == 126
    assert "Permission denied" in (node_dir / "stderr.log").read_text("utf-8")
    summary = _summary(workdir)
    assert summary["status"] == "failed"
    assert [node["exitCode"] for node in summary["nodes"]] == [126]


def test_output_file_that_is_a_directory_is_a_config_error(workdir: Path) -> None:
    (workdir / "taken").mkdir(parents=True)
    path = write_workflow(
        workdir,
        agents={"echo": PRINTF},
        workflow=_single_node("echo", {"file": "taken"}),
    )

    with pytest.raises(WorkflowConfigError, match="write output file"):
        _run(path, workdir)

    summary = _summary(workdir)
    assert summary["status"] == "failed"
    assert summary["error"].startswith("write output file")
    assert [node["name"] for node in summary["nodes"]] == ["only"]


def test_summary_time_is_utc_with_z_suffix(workdir: Path) -> None:
    path = write_workflow(
        workdir,
        agents={"echo": PRINTF},
        workflow=_single_node("echo", {"toNext": True}),
    )

    _run(path, workdir)

    stamp = _summary(workdir)["time"]
    assert stamp.endswith("Z")
    assert "+00:00" not in stamp
    assert datetime.fromisoformat(stamp.replace("Z", "+00:00")).utcoffset() is not None


def test_long_stderr_is_truncated_to_its_tail(workdir: Path) -> None:
    script = "import sys; sys.stderr.write('x' * 5000 + 'END'); raise SystemExit(1)"
    path = write_workflow(
        workdir,
        agents={"noisy": python_agent(script)},
        workflow=_single_node("noisy", {"toNext": True}),
    )

    with pytest.raises(NodeExecutionError, match=r"stderr: \.\.\.\(truncated\)\.\.\.") as excinfo:
        _run(path, workdir)

    stderr_summary = excinfo.value.stderr_summary
    assert stderr_summary == "...(truncated)...\n" + ("x" * 5000 + "END")[-4000:]
    stderr_log = excinfo.value.stderr_path
    assert Path(stderr_log).read_text("utf-8") == "x" * 5000 + "END"


def test_print_streams_echo_while_output_goes_to_next(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    script = "import sys; sys.stdout.write('hi'); sys.stderr.write('note')"
    path = write_workflow(
        workdir,
        agents={"chatty": python_agent(script, print=["stdout"])},
        workflow=_single_node("chatty", {"toNext": True}),
    )

    _run(path, workdir)

    captured = capsys.readouterr()
    assert captured.out == "\nhi\n"
    assert "note" not in captured.err


def test_verbose_run_echoes_both_streams(
    workdir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    script = "import sys; sys.stdout.write('hi'); sys.stderr.write('note')"
    path = write_workflow(
        workdir,
        agents={"chatty": python_agent(script)},
        workflow=_single_node("chatty", {"toNext": True}),
    )

    _run(path, workdir, verbose=True)

    captured = capsys.readouterr()
    assert "hi" in captured.out
    assert "note" in captured.err


def test_uncaptured_stdout_is_logged_but_not_routed(workdir: Path) -> None:
    script = "import sys; sys.stdout.write('hidden'); sys.stderr.write('kept')"
    path = write_workflow(
        workdir,
        agents={
            "quiet": python_agent(script, capture=["stderr"]),
            "echo": PRINTF,
        },
        workflow=[
            {
                "type": "agent",
                "name": "quiet",
                "agent": "quiet",
                "input": {"prompt": "go"},
                "output": {"toNext": True},
            },
            {
                "type": "agent",
                "name": "relay",
                "agent": "echo",
                "input": {"from": "previous"},
                "output": {"file": "relay.txt"},
            },
        ],
    )

    _run(path, workdir)

    node_dir = workdir / ".moleman" / "runs" / RUN_ID / "nodes" / "quiet"
    assert (node_dir / "stdout.log").read_text("utf-8") == "hidden"
    assert (workdir / "relay.txt").read_text("utf-8") == ""


@pytest.mark.parametrize("source", ["prev", "last", "first"])
def test_input_from_aliases_and_node_names(workdir: Path, source: str) -> None:
    path = write_workflow(
        workdir,
        agents={"echo": PRINTF},
        workflow=[
            {
                "type": "agent",
                "name": "first",
                "agent": "echo",
                "input": {"prompt": "seed"},
                "output": {"toNext": True},
            },
            {
                "type": "agent",
                "name": "second",
                "agent": "echo",
                "input": {"from": source},
                "output": {"file": "second.txt"},
            },
        ],
    )

    _run(path, workdir)

    assert (workdir / "second.txt").read_text("utf-8") == "seed"


def test_input_from_previous_without_earlier_output_is_empty(workdir: Path) -> None:
    path = write_workflow(
        workdir,
        agents={"echo": PRINTF},
        workflow=[
            {
                "type": "agent",
                "name": "lonely",
                "agent": "echo",
                "input": {"from": "previous"},
                "output": {"file": "lonely.txt"},
            },
        ],
    )

    _run(path, workdir)

    assert (workdir / "lonely.txt").read_text("utf-8") == ""


def test_non_json_claude_output_leaves_sessions_unchanged(
    workdir: Path,
    agent_bin: AgentFactory,
) -> None:
    agent_bin("claude", "print('plain text, not json')")
    path = write_workflow(
        workdir,
        agents={"claude": {"type": "claude"}},
        workflow=[
            {
                "type": "agent",
                "name": "plan",
                "agent": "claude",
                "input": {"prompt": "plan it"},
                "output": {"toNext": True},
            },
            {
                "type": "agent",
                "name": "build",
                "agent": "claude",
                "session": {"resume": "last"},
                "input": {"prompt": "build it"},
                "output": {"toNext": True},
            },
        ],
    )

    with pytest.raises(WorkflowConfigError, match="no session_id is available"):
        _run(path, workdir)

    assert [node["name"] for node in _summary(workdir)["nodes"]] == ["plan"]


@pytest.mark.parametrize("payload", [b"NaN", b"Infinity", b"-Infinity", b'{"score": NaN}'])
def test_non_finite_json_constants_are_not_json(payload: bytes) -> None:
    assert parse_json_output(payload) is None


def test_strict_json_output_still_parses() -> None:
    assert parse_json_output(b' {"done": true, "score": 1.5}\n') == {"done": True, "score": 1.5}


def test_summarize_stderr_keeps_short_text() -> None:
    assert summarize_stderr(b"  short failure \n") == "short failure"


def test_nan_stdout_produces_no_json_output(workdir: Path) -> None:
    script = "import sys; sys.stdout.write('NaN')"
    path = write_workflow(
        workdir,
        agents={"odd": python_agent(script), "echo": PRINTF},
        workflow=[
            {
                "type": "agent",
                "name": "odd",
                "agent": "odd",
                "input": {"prompt": "go"},
                "output": {"toNext": True},
            },
            {
                "type": "agent",
                "name": "report",
                "agent": "echo",
                "input": {"prompt": "{{ outputs.odd }}|{{ outputs.odd_json }}"},
                "output": {"file": "report.txt"},
            },
        ],
    )

    _run(path, workdir)

    assert (workdir / "report.txt").read_text("utf-8") == "NaN|"
