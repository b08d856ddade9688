"""Expression evaluator for loop conditions and template lookups.

Expressions are parsed by a small recursive-descent parser into a closed AST
(paths, literals, unary, comparison and logical nodes) and evaluated against a
read-only nested mapping.  Paths that cannot be resolved do not raise a
generic error: they raise ``MissingValueError`` so callers can decide whether
a missing value means ``False`` (conditions) or "no value" (templates).
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Literal

from moleman.errors import MolemanError

MissingMode = Literal["throw", "undefined"]


class ExpressionError(MolemanError):
    """Expression is empty, malformed, or failed to evaluate."""


class MissingValueError(ExpressionError):
    """A name is not defined or a field was read off null/undefined."""


class _Undefined:
    """Sentinel for "no value", distinct from an explicit ``None``."""

    _instance: _Undefined | None = None

    def __new__(cls) -> _Undefined:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED: Any = _Undefined()

_KEYWORD_LITERALS: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": UNDEFINED,
}

_TOKEN_RE = re.compile(
    r"""
    (?P<number>\d+(?:\.\d+)?)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>!().\[\]-])
    |(?P<ident>[A-Za-z_$][A-Za-z0-9_$]*)
    """,
    re.VERBOSE | re.DOTALL,
)
_SIMPLE_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "b": "\b", "f": "\f", "0": "\0"}


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    value: str
    pos: int


@dataclass(frozen=True, slots=True)
class Const:
    value: Any


@dataclass(frozen=True, slots=True)
class Path:
    root: str
    accessors: tuple[str | Node, ...] = ()


@dataclass(frozen=True, slots=True)
class Unary:
    op: str
    operand: Node


@dataclass(frozen=True, slots=True)
class Compare:
    op: str
    left: Node
    right: Node


@dataclass(frozen=True, slots=True)
class Logical:
    op: str
    left: Node
    right: Node


Node = Const | Path | Unary | Compare | Logical


def normalize_expression(expr: str) -> str:
    """Trim, strip one ``{{ ... }}`` wrapper, and reject empty expressions."""

    normalized = expr.strip()
    if normalized.startswith("{{") and normalized.endswith("}}"):
        normalized = normalized[2:-2].strip()
    if not normalized:
        raise ExpressionError("empty expression")
    return normalized


def evaluate_expression(
    expr: str,
    data: Mapping[str, Any],
    *,
    missing: MissingMode = "throw",
) -> Any:
    """Evaluate ``expr`` against ``data``.

    With ``missing="undefined"`` a missing value yields ``UNDEFINED`` instead
    of raising; every other evaluation error still propagates.
    """

    tree = parse_expression(normalize_expression(expr))
    try:
        return _evaluate(tree, data)
    except MissingValueError:
        if missing == "undefined":
            return UNDEFINED
        raise


def eval_condition(expr: str, data: Mapping[str, Any]) -> bool:
    """Evaluate a boolean condition; missing values make it ``False``."""

    tree = parse_expression(normalize_expression(expr))
    try:
        value = _evaluate(tree, data)
    except MissingValueError:
        return False
    if not isinstance(value, bool):
        raise ExpressionError("condition did not evaluate to bool")
    return value


def is_truthy(value: Any) -> bool:
    if value is None or value is UNDEFINED:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


@lru_cache(maxsize=256)
def parse_expression(expr: str) -> Node:
    """Parse a normalized expression into an AST."""

    return _Parser(_tokenize(expr)).parse()


def _tokenize(expr: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(expr):
        char = expr[pos]
        if char.isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(expr, pos)
        if match is None:
            if char in {'"', "'"}:
                raise ExpressionError(f"unterminated string literal at position {pos}")
            raise ExpressionError(f"unexpected character {char!r} at position {pos}")
        kind = match.lastgroup or ""
        tokens.append(_Token(kind=kind, value=match.group(), pos=pos))
        pos = match.end()
    tokens.append(_Token(kind="eof", value="", pos=len(expr)))
    return tokens


def _decode_string(raw: str) -> str:
    body = raw[1:-1]
    out: list[str] = []
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\" and index + 1 < len(body):
            escaped = body[index + 1]
            out.append(_SIMPLE_ESCAPES.get(escaped, escaped))
            index += 2
            continue
        out.append(char)
        index += 1
    return "".join(out)


class _Parser:
    def __init__(self, tokens: list[_Token]) -> None:
        self._tokens = tokens
        self._index = 0

    def parse(self) -> Node:
        node = self._or()
        token = self._peek()
        if token.kind != "eof":
            raise ExpressionError(f"unexpected token {token.value!r} at position {token.pos}")
        return node

    def _peek(self) -> _Token:
        return self._tokens[self._index]

    def _advance(self) -> _Token:
        token = self._tokens[self._index]
        self._index += 1
        return token

    def _accept(self, *ops: str) -> str | None:
        token = self._peek()
        if token.kind == "op" and token.value in ops:
            self._index += 1
            return token.value
        return None

    def _expect(self, op: str) -> None:
        if self._accept(op) is None:
            token = self._peek()
            found = token.value or "end of expression"
            raise ExpressionError(f"expected {op!r} but found {found!r} at position {token.pos}")

    def _or(self) -> Node:
        node = self._and()
        while self._accept("||"):
            node = Logical("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._equality()
        while self._accept("&&"):
            node = Logical("&&", node, self._equality())
        return node

    def _equality(self) -> Node:
        node = self._relation()
        while op := self._accept("==", "!=", "===", "!=="):
            node = Compare(op, node, self._relation())
        return node

    def _relation(self) -> Node:
        node = self._unary()
        while op := self._accept("<", "<=", ">", ">="):
            node = Compare(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if op := self._accept("!", "-"):
            return Unary(op, self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self._advance()
        if token.kind == "number":
            return Const(float(token.value) if "." in token.value else int(token.value))
        if token.kind == "string":
            return Const(_decode_string(token.value))
        if token.kind == "op" and token.value == "(":
            node = self._or()
            self._expect(")")
            return node
        if token.kind == "ident":
            if token.value in _KEYWORD_LITERALS:
                return Const(_KEYWORD_LITERALS[token.value])
            return self._path(token.value)
        found = token.value or "end of expression"
        raise ExpressionError(f"unexpected token {found!r} at position {token.pos}")

    def _path(self, root: str) -> Path:
        accessors: list[str | Node] = []
        while True:
            if self._accept("."):
                token = self._advance()
                if token.kind not in {"ident", "number"}:
                    found = token.value or "end of expression"
                    raise ExpressionError(
                        f"expected field name after '.' but found {found!r} "
                        f"at position {token.pos}",
                    )
                accessors.append(token.value)
                continue
            if self._accept("["):
                accessors.append(self._or())
                self._expect("]")
                continue
            return Path(root, tuple(accessors))


def _evaluate(node: Node, data: Mapping[str, Any]) -> Any:  # noqa: PLR0911
    if isinstance(node, Const):
        return node.value
    if isinstance(node, Path):
        return _resolve_path(node, data)
    if isinstance(node, Unary):
        operand = _evaluate(node.operand, data)
        if node.op == "!":
            return not is_truthy(operand)
        if not _is_number(operand):
            raise ExpressionError(f"cannot negate {_type_name(operand)}")
        return -operand
    if isinstance(node, Logical):
        left = _evaluate(node.left, data)
        if node.op == "&&":
            return _evaluate(node.right, data) if is_truthy(left) else left
        return left if is_truthy(left) else _evaluate(node.right, data)
    if isinstance(node, Compare):
        left = _evaluate(node.left, data)
        right = _evaluate(node.right, data)
        if node.op in {"==", "==="}:
            return _equals(left, right)
        if node.op in {"!=", "!=="}:
            return not _equals(left, right)
        return _order(node.op, left, right)
    raise ExpressionError(f"unsupported expression node: {type(node).__name__}")


def _resolve_path(node: Path, data: Mapping[str, Any]) -> Any:
    if node.root not in data:
        raise MissingValueError(f"{node.root} is not defined")
    value = data[node.root]
    described = node.root
    for accessor in node.accessors:
        key = accessor if isinstance(accessor, str) else _evaluate(accessor, data)
        value = _read_field(value, key, described)
        described = f"{described}.{key}"
    return value


def _read_field(value: Any, key: Any, described: str) -> Any:
    if value is None or value is UNDEFINED:
        raise MissingValueError(
            f"cannot read properties of {_type_name(value)} (reading {key!r} of {described})",
        )
    if isinstance(value, Mapping):
        return value.get(_property_key(key), UNDEFINED)
    if isinstance(value, Sequence) and not isinstance(value, str | bytes):
        index = as_index(key)
        if index is None or not 0 <= index < len(value):
            return UNDEFINED
        return value[index]
    return UNDEFINED


def _property_key(key: Any) -> str:
    if isinstance(key, str):
        return key
    if isinstance(key, bool):
        return "true" if key else "false"
    if isinstance(key, float) and key.is_integer():
        return str(int(key))
    return str(key)


def as_index(key: Any) -> int | None:
    """Interpret ``key`` as a sequence position, or ``None`` if it is not one."""

    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return key
    if isinstance(key, float):
        return int(key) if key.is_integer() else None
    if isinstance(key, str) and re.fullmatch(r"-?\d+", key.strip()):
        return int(key)
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _is_nullish(value: Any) -> bool:
    return value is None or value is UNDEFINED


def _equals(left: Any, right: Any) -> bool:
    if _is_nullish(left) or _is_nullish(right):
        return _is_nullish(left) and _is_nullish(right)
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if _is_number(left) or _is_number(right):
        return False
    return type(left) is type(right) and left == right


def _order(op: str, left: Any, right: Any) -> bool:
    comparable = (_is_number(left) and _is_number(right)) or (
        isinstance(left, str) and isinstance(right, str)
    )
    if not comparable:
        raise ExpressionError(
            f"cannot compare {_type_name(left)} {op} {_type_name(right)}",
        )
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    return left >= right


def _type_name(value: Any) -> str:  # noqa: PLR0911
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if _is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "object"
    if isinstance(value, Sequence):
        return "array"
    return type(value).__name__
