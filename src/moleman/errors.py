"""Exception types shared by the loader, engine and CLI."""

from __future__ import annotations


class MolemanError(RuntimeError):
    """Base class for every fatal moleman error."""


class WorkflowConfigError(MolemanError):
    """Workflow, agent profile or run option is invalid for execution."""


class LoopExhaustedError(MolemanError):
    """Loop ran all iterations without its condition becoming true."""

    def __init__(self, max_iters: int) -> None:
        super().__init__("loop exhausted without meeting condition")
        self.max_iters = max_iters


class NodeExecutionError(MolemanError):
    """Agent node finished with a non-zero (or timed-out) status."""

    def __init__(
        self,
        *,
        node: str,
        exit_code: int,
        stderr_path: str,
        stderr_summary: str = "",
    ) -> None:
        if stderr_summary:
            message = (
                f"node failed: {node} (exit {exit_code}). "
                f"stderr: {stderr_summary} (see {stderr_path})"
            )
        else:
            message = f"node failed: {node} (exit {exit_code}). see {stderr_path}"
        super().__init__(message)
        self.node = node
        self.exit_code = exit_code
        self.stderr_path = stderr_path
        self.stderr_summary = stderr_summary
