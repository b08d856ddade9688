"""Workflow execution engine with its expression evaluator and template renderer."""

from moleman.engine.context import NodeResult, RunContext
from moleman.engine.execute import WorkflowExecutor
from moleman.engine.expr import ExpressionError, eval_condition, evaluate_expression
from moleman.engine.run import RunOptions, RunResult, ensure_agent_commands, run
from moleman.engine.template import TemplateError, render_template, shell_escape

__all__ = [
    "ExpressionError",
    "NodeResult",
    "RunContext",
    "RunOptions",
    "RunResult",
    "TemplateError",
    "WorkflowExecutor",
    "ensure_agent_commands",
    "eval_condition",
    "evaluate_expression",
    "render_template",
    "run",
    "shell_escape",
]
