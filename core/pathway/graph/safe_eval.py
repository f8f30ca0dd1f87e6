"""
Sandboxed expression evaluation for route, loop and conditional expressions.

Expressions are parsed with ``ast`` and walked against a whitelist: literals,
names, comparisons, boolean/arithmetic/unary operators, subscripts, attribute
access on mapping keys, conditional expressions, and calls to a fixed set of
functions. The JavaScript spellings produced by the builder UI (``&&``,
``||``, ``!``, ``===``, ``!==``, ``true``, ``false``, ``null``) are accepted.
"""

import ast
import operator
import re
from collections.abc import Mapping
from typing import Any

from pathway.errors import PathwayError

MAX_EXPRESSION_LENGTH = 1000
MAX_REPEATED_LENGTH = 10_000


class ExpressionError(PathwayError):
    """Expression could not be parsed or uses a construct outside the whitelist."""

    def __init__(self, message: str, expression: str = ""):
        self.expression = expression
        super().__init__(message)


def _multiply(left: Any, right: Any) -> Any:
    """``*`` with a size cap on repeated strings and lists."""
    for sequence, count in ((left, right), (right, left)):
        if isinstance(sequence, str | list | tuple) and isinstance(count, int):
            if len(sequence) * max(count, 0) > MAX_REPEATED_LENGTH:
                raise ExpressionError(f"Repeated sequence longer than {MAX_REPEATED_LENGTH}")
    return operator.mul(left, right)


_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _multiply,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda x, y: x in y,
    ast.NotIn: lambda x, y: x not in y,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
    ast.Not: operator.not_,
}

SAFE_FUNCTIONS = {
    "len": len,
    "min": min,
    "max": max,
    "abs": abs,
    "round": round,
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "any": any,
    "all": all,
    "sum": sum,
    "lower": lambda s: str(s).lower(),
    "upper": lambda s: str(s).upper(),
}

# Methods callable on string values, e.g. ``learningStyle.lower() == "visual"``
_STRING_METHODS = {"lower", "upper", "strip", "startswith", "endswith"}

_CONSTANTS = {"true": True, "false": False, "null": None, "undefined": None}

_STRING_LITERAL = re.compile(r"(\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*')")


def _normalize_operators(code: str) -> str:
    # !== must be handled before the generic ! rewrite
    code = code.replace("!==", "!=")
    code = re.sub(r"(?<![=!<>])===?(?!=)", "==", code)
    code = code.replace("&&", " and ").replace("||", " or ")
    return re.sub(r"!(?!=)", " not ", code)


def _normalize(expression: str) -> str:
    """Rewrite JavaScript operators outside string literals."""
    parts = _STRING_LITERAL.split(expression)
    # split() with one capturing group puts the literals at odd indexes
    return "".join(
        part if index % 2 else _normalize_operators(part) for index, part in enumerate(parts)
    ).strip()


class SafeExpressionEvaluator:
    """Evaluate a whitelisted expression subset against a namespace."""

    def __init__(self, functions: Mapping[str, Any] | None = None):
        self.functions = dict(SAFE_FUNCTIONS)
        if functions:
            self.functions.update(functions)

    def evaluate(self, expression: str, namespace: Mapping[str, Any]) -> Any:
        if not isinstance(expression, str) or not expression.strip():
            raise ExpressionError("Empty expression", str(expression))
        if len(expression) > MAX_EXPRESSION_LENGTH:
            raise ExpressionError("Expression too long", expression[:50])
        try:
            tree = ast.parse(_normalize(expression), mode="eval")
        except SyntaxError as e:
            raise ExpressionError(f"Syntax error in expression: {e.msg}", expression) from e
        try:
            return self._eval(tree.body, namespace)
        except ExpressionError:
            raise
        except Exception as e:
            raise ExpressionError(f"Expression evaluation failed: {e}", expression) from e

    def _eval(self, node: ast.AST, ns: Mapping[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in ns:
                return ns[node.id]
            if node.id in _CONSTANTS:
                return _CONSTANTS[node.id]
            if node.id in self.functions:
                return self.functions[node.id]
            raise NameError(f"Name '{node.id}' is not defined")

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                result: Any = True
                for value in node.values:
                    result = self._eval(value, ns)
                    if not result:
                        return result
                return result
            result = False
            for value in node.values:
                result = self._eval(value, ns)
                if result:
                    return result
            return result

        if isinstance(node, ast.BinOp):
            op = _BINARY_OPS.get(type(node.op))
            if op is None:
                raise ExpressionError(f"Operator not allowed: {type(node.op).__name__}")
            return op(self._eval(node.left, ns), self._eval(node.right, ns))

        if isinstance(node, ast.UnaryOp):
            op = _UNARY_OPS.get(type(node.op))
            if op is None:
                raise ExpressionError(f"Operator not allowed: {type(node.op).__name__}")
            return op(self._eval(node.operand, ns))

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, ns)
            for op_node, comparator in zip(node.ops, node.comparators, strict=True):
                right = self._eval(comparator, ns)
                if not _COMPARISONS[type(op_node)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, ns):
                return self._eval(node.body, ns)
            return self._eval(node.orelse, ns)

        if isinstance(node, ast.Subscript):
            container = self._eval(node.value, ns)
            key = self._eval(node.slice, ns)
            if isinstance(container, Mapping):
                return container.get(key)
            return container[key]

        if isinstance(node, ast.Attribute):
            obj = self._eval(node.value, ns)
            if isinstance(obj, Mapping):
                return obj.get(node.attr)
            if isinstance(obj, str) and node.attr in _STRING_METHODS:
                return getattr(obj, node.attr)
            if isinstance(obj, list | tuple | str) and node.attr == "length":
                return len(obj)
            raise ExpressionError(f"Attribute access not allowed: {node.attr}")

        if isinstance(node, ast.Call):
            func = self._eval(node.func, ns)
            if not (
                func in self.functions.values()
                or getattr(func, "__name__", None) in _STRING_METHODS
                and isinstance(getattr(func, "__self__", None), str)
            ):
                raise ExpressionError("Call not allowed")
            if node.keywords:
                raise ExpressionError("Keyword arguments not allowed")
            args = [self._eval(arg, ns) for arg in node.args]
            return func(*args)

        if isinstance(node, ast.List | ast.Tuple):
            return [self._eval(elt, ns) for elt in node.elts]

        if isinstance(node, ast.Dict):
            return {
                self._eval(k, ns): self._eval(v, ns)
                for k, v in zip(node.keys, node.values, strict=True)
                if k is not None
            }

        raise ExpressionError(f"Expression construct not allowed: {type(node).__name__}")


_default_evaluator = SafeExpressionEvaluator()


def safe_eval(expression: str, namespace: Mapping[str, Any] | None = None) -> Any:
    """Evaluate ``expression`` with the default evaluator."""
    return _default_evaluator.evaluate(expression, namespace or {})
