"""``{{ ... }}`` template rendering for prompts and templated paths."""

from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping, Sequence
from typing import Any

from moleman.engine.expr import UNDEFINED, as_index, evaluate_expression
from moleman.errors import MolemanError

_SPAN_RE = re.compile(r"{{(.*?)}}", re.DOTALL)
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_SHELL_ESCAPE_PREFIX = "shellEscape "
_INDEX_PREFIX = "index "


class TemplateError(MolemanError):
    """Template span failed to render."""


def render_template(text: str, data: Mapping[str, Any]) -> str:
    """Expand every ``{{ ... }}`` span of ``text`` using ``data``."""

    if not text:
        return ""

    def _replace(match: re.Match[str]) -> str:
        return stringify_value(_evaluate_span(match.group(1).strip(), data))

    try:
        return _SPAN_RE.sub(_replace, text)
    except MolemanError as error:
        raise TemplateError(f"execute template: {error}") from error


def shell_escape(value: str) -> str:
    """Single-quote ``value`` for POSIX shells."""

    if not value:
        return "''"
    return "'" + value.replace("'", "'\"'\"'") + "'"


def stringify_value(value: Any) -> str:
    """Render a context value the way templates print it."""

    if value is None or value is UNDEFINED:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return _format_number(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _evaluate_span(expr: str, data: Mapping[str, Any]) -> Any:  # noqa: PLR0911
    if not expr:
        return ""

    if expr.startswith(_SHELL_ESCAPE_PREFIX):
        value = _evaluate_span(expr[len(_SHELL_ESCAPE_PREFIX) :].strip(), data)
        return shell_escape(stringify_value(value))

    if expr.startswith(_INDEX_PREFIX):
        args = split_args(expr[len(_INDEX_PREFIX) :].strip())
        if len(args) != 2:  # noqa: PLR2004
            raise TemplateError("index requires exactly two arguments")
        base = _evaluate_span(args[0], data)
        key = _evaluate_span(args[1], data)
        return _index_value(base, key)

    if _is_quoted(expr):
        return _parse_quoted(expr)

    if _NUMBER_RE.fullmatch(expr):
        return float(expr) if "." in expr else int(expr)

    if expr == "true":
        return True
    if expr == "false":
        return False
    if expr == ".":
        return data

    normalized = expr[1:] if expr.startswith(".") else expr
    if not normalized:
        return data
    return evaluate_expression(normalized, data, missing="undefined")


def _index_value(base: Any, key: Any) -> Any:
    if base is None or base is UNDEFINED:
        return UNDEFINED
    if isinstance(base, Mapping):
        return base.get(stringify_value(key), UNDEFINED)
    if isinstance(base, Sequence) and not isinstance(base, str | bytes):
        position = as_index(key)
        if position is None or not 0 <= position < len(base):
            return UNDEFINED
        return base[position]
    return UNDEFINED


def split_args(text: str) -> list[str]:
    """Split helper arguments on unquoted whitespace, keeping quotes intact."""

    args: list[str] = []
    current: list[str] = []
    quote: str | None = None
    index = 0
    while index < len(text):
        char = text[index]
        if quote is not None:
            current.append(char)
            if char == "\\" and index + 1 < len(text):
                current.append(text[index + 1])
                index += 2
                continue
            if char == quote:
                quote = None
            index += 1
            continue

        if char in {'"', "'"}:
            quote = char
            current.append(char)
        elif char.isspace():
            if current:
                args.append("".join(current))
                current = []
        else:
            current.append(char)
        index += 1

    if quote is not None:
        raise TemplateError("unterminated string literal")
    if current:
        args.append("".join(current))
    return args


def _is_quoted(value: str) -> bool:
    if len(value) < 2:  # noqa: PLR2004
        return False
    return (value[0] == '"' and value[-1] == '"') or (value[0] == "'" and value[-1] == "'")


def _parse_quoted(value: str) -> str:
    if value.startswith('"'):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError as error:
            raise TemplateError(f"invalid string literal {value}: {error.msg}") from error
        return str(decoded)
    return value[1:-1].replace("\\'", "'").replace("\\\\", "\\")


def _format_number(value: float) -> str:
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value.is_integer():
        return str(int(value))
    return repr(value)
