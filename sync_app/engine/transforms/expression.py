"""
Sandboxed formula language for ``expression`` transforms.

Formulas use Python expression syntax but are never handed to ``eval``: the
parsed tree is checked against a whitelist of node types and a fixed function
table, then walked by a small interpreter. Supported:

* literals (numbers, strings, ``true``/``false``/``null`` and their Python
  spellings), list literals for membership tests
* record fields by name, including dotted paths such as ``product.title``
* ``+ - * / // %`` (no power), unary ``- + not``
* comparisons including ``in`` / ``not in``, ``and`` / ``or``
* ``a if cond else b``
* calls to the functions in :data:`FUNCTIONS` with positional arguments

``+`` concatenates when either side is a string. ``*`` on strings is rejected
so a formula cannot build unbounded output.
"""

from __future__ import annotations

import ast
import math
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from sync_app.engine.utils import lookup_path

MAX_FORMULA_LENGTH = 500
MAX_NODE_COUNT = 200
MAX_STRING_LENGTH = 10_000


class ExpressionError(ValueError):
    """Raised when a formula is rejected at compile time or fails to evaluate."""


LITERAL_NAMES: Mapping[str, Any] = {"null": None, "true": True, "false": False}

_INT_PREFIX = re.compile(r"^\s*[-+]?\d+")
_FLOAT_PREFIX = re.compile(r"^\s*[-+]?(\d+\.?\d*|\.\d+)([eE][-+]?\d+)?")
_UNITS_PREFIX = re.compile(r"^(\d+)PC-")


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _substring(value: Any, start: int, length: int | None = None) -> str:
    if value is None:
        return ""
    text = str(value)
    start = max(int(start), 0)
    if length is None:
        return text[start:]
    return text[start : start + max(int(length), 0)]


def _split(value: Any, delimiter: str, index: int) -> str:
    if value is None:
        return ""
    parts = str(value).split(str(delimiter))
    index = int(index)
    return parts[index] if 0 <= index < len(parts) else ""


def _parse_number(value: Any) -> float | int:
    if value is None:
        return 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    match = _FLOAT_PREFIX.match(str(value))
    return float(match.group(0)) if match else 0


def _parse_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    match = _INT_PREFIX.match(str(value))
    return int(match.group(0)) if match else 0


def _round(value: Any, decimals: int | None = None) -> float | int:
    number = _require_number(value, "round")
    if decimals is None:
        return math.floor(number + 0.5)
    factor = 10 ** int(decimals)
    return math.floor(number * factor + 0.5) / factor


def _parse_units(sku: Any) -> int:
    if sku is None:
        return 1
    match = _UNITS_PREFIX.match(str(sku).upper())
    return int(match.group(1)) if match else 1


def _if_empty(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str) and not value.strip():
        return default
    return value


def _coalesce(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _require_number(value: Any, function: str) -> float | int:
    if not _is_number(value):
        raise ExpressionError(f"{function}() expects a number, got {value!r}")
    return value


FUNCTIONS: Mapping[str, Callable[..., Any]] = {
    "toUpperCase": lambda value: _text(value).upper(),
    "toLowerCase": lambda value: _text(value).lower(),
    "trim": lambda value: _text(value).strip(),
    "substring": _substring,
    "length": lambda value: len(_text(value)),
    "replace": lambda value, search, replacement: _text(value).replace(str(search), str(replacement), 1),
    "split": _split,
    "startsWith": lambda value, prefix: value is not None and str(value).startswith(str(prefix)),
    "endsWith": lambda value, suffix: value is not None and str(value).endswith(str(suffix)),
    "contains": lambda value, search: value is not None and str(search) in str(value),
    "concat": lambda *values: "".join(_text(value) for value in values),
    "parseNumber": _parse_number,
    "parseInt": _parse_int,
    "round": _round,
    "floor": lambda value: math.floor(_require_number(value, "floor")),
    "ceil": lambda value: math.ceil(_require_number(value, "ceil")),
    "abs": lambda value: abs(_require_number(value, "abs")),
    "min": lambda *values: min(_require_number(value, "min") for value in values),
    "max": lambda *values: max(_require_number(value, "max") for value in values),
    "parseUnits": _parse_units,
    "ifNull": lambda value, default: default if value is None else value,
    "ifEmpty": _if_empty,
    "coalesce": _coalesce,
    "isNull": lambda value: value is None,
    "isNumber": _is_number,
    "isString": lambda value: isinstance(value, str),
}

_BIN_OPS: Mapping[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_UNARY_OPS: Mapping[type, Callable[[Any], Any]] = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
}

_COMPARE_OPS: Mapping[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
}

_STRUCTURAL_NODES = (
    ast.Expression,
    ast.Load,
    ast.BinOp,
    ast.UnaryOp,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.Compare,
    ast.IfExp,
    ast.List,
    ast.Tuple,
)


def _dotted_path(node: ast.AST) -> str | None:
    parts: list[str] = []
    while isinstance(node, ast.Attribute):
        parts.append(node.attr)
        node = node.value
    if not isinstance(node, ast.Name):
        return None
    parts.append(node.id)
    return ".".join(reversed(parts))


@dataclass(frozen=True)
class CompiledExpression:
    formula: str
    tree: ast.Expression
    variables: tuple[str, ...]

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        """
        Evaluate against a record context.

        Raises:
            ExpressionError: on type errors, division by zero or oversized output.
        """
        return _Evaluator(context).visit(self.tree.body)


def compile_expression(formula: str, *, max_length: int = MAX_FORMULA_LENGTH) -> CompiledExpression:
    """Parse and whitelist-check ``formula``; raises :class:`ExpressionError` when rejected."""

    if not isinstance(formula, str) or not formula.strip():
        raise ExpressionError("Expression formula is empty.")
    if len(formula) > max_length:
        raise ExpressionError(f"Expression exceeds maximum length of {max_length} characters")
    try:
        tree = ast.parse(formula.strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid expression syntax: {exc.msg}") from exc

    variables: list[str] = []
    node_count = 0
    for node in ast.walk(tree):
        node_count += 1
        if node_count > MAX_NODE_COUNT:
            raise ExpressionError(f"Expression is too complex (more than {MAX_NODE_COUNT} nodes).")
        _check_node(node, variables)
    return CompiledExpression(formula=formula, tree=tree, variables=tuple(dict.fromkeys(variables)))


def validate_expression(formula: str, *, max_length: int = MAX_FORMULA_LENGTH) -> str | None:
    """Return an error message for a rejected formula, ``None`` when it compiles."""
    try:
        compile_expression(formula, max_length=max_length)
    except ExpressionError as exc:
        return str(exc)
    return None


def _check_node(node: ast.AST, variables: list[str]) -> None:
    if isinstance(node, _STRUCTURAL_NODES):
        return
    if isinstance(node, tuple(_BIN_OPS)) or isinstance(node, tuple(_UNARY_OPS)) or isinstance(node, tuple(_COMPARE_OPS)):
        return
    if isinstance(node, ast.Constant):
        value = node.value
        if value is not None and not isinstance(value, (bool, int, float, str)):
            raise ExpressionError(f"Unsupported literal {value!r}")
        if isinstance(value, str) and len(value) > MAX_STRING_LENGTH:
            raise ExpressionError("String literal is too long.")
        return
    if isinstance(node, ast.Name):
        if node.id.startswith("_"):
            raise ExpressionError(f"Name '{node.id}' is not allowed.")
        if node.id not in LITERAL_NAMES and node.id not in FUNCTIONS:
            variables.append(node.id)
        return
    if isinstance(node, ast.Attribute):
        path = _dotted_path(node)
        if path is None or any(part.startswith("_") for part in path.split(".")):
            raise ExpressionError("Attribute access is limited to dotted field names.")
        variables.append(path)
        return
    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in FUNCTIONS:
            name = getattr(node.func, "id", None) or ast.dump(node.func)
            raise ExpressionError(f"Unknown function '{name}'")
        if node.keywords or any(isinstance(arg, ast.Starred) for arg in node.args):
            raise ExpressionError(f"Function '{node.func.id}' only accepts positional arguments.")
        return
    raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")


class _Evaluator:
    def __init__(self, context: Mapping[str, Any]):
        self.context = context

    def visit(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id in LITERAL_NAMES:
                return LITERAL_NAMES[node.id]
            return lookup_path(self.context, node.id)
        if isinstance(node, ast.Attribute):
            return lookup_path(self.context, _dotted_path(node) or "")
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self.visit(element) for element in node.elts]
        if isinstance(node, ast.BinOp):
            return self._binary(node)
        if isinstance(node, ast.UnaryOp):
            operand = self.visit(node.operand)
            try:
                return _UNARY_OPS[type(node.op)](operand)
            except TypeError as exc:
                raise ExpressionError(str(exc)) from exc
        if isinstance(node, ast.BoolOp):
            result: Any = None
            for value_node in node.values:
                result = self.visit(value_node)
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
            return result
        if isinstance(node, ast.Compare):
            return self._compare(node)
        if isinstance(node, ast.IfExp):
            return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)
        if isinstance(node, ast.Call):
            args = [self.visit(arg) for arg in node.args]
            try:
                result = FUNCTIONS[node.func.id](*args)
            except ExpressionError:
                raise
            except (TypeError, ValueError) as exc:
                raise ExpressionError(f"{node.func.id}() failed: {exc}") from exc
            return self._bounded(result)
        raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")

    def _binary(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
            return self._bounded(_text(left) + _text(right))
        if isinstance(node.op, ast.Mult) and (isinstance(left, (str, list)) or isinstance(right, (str, list))):
            raise ExpressionError("Multiplying strings or lists is not supported.")
        if left is None or right is None:
            raise ExpressionError("Arithmetic on a null value; wrap the field with ifNull().")
        try:
            return _BIN_OPS[type(node.op)](left, right)
        except ZeroDivisionError as exc:
            raise ExpressionError("Division by zero") from exc
        except TypeError as exc:
            raise ExpressionError(str(exc)) from exc

    def _compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            try:
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
            except TypeError as exc:
                raise ExpressionError(str(exc)) from exc
            left = right
        return True

    @staticmethod
    def _bounded(value: Any) -> Any:
        if isinstance(value, str) and len(value) > MAX_STRING_LENGTH:
            raise ExpressionError("Expression result exceeds the maximum string length.")
        return value
