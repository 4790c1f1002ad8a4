"""
expressions.py — Sandboxed arithmetic evaluator for CUSTOM sync rules

Parses a merchant-supplied expression with the ast module and walks the
tree against a whitelist. Only numbers, named fields, arithmetic operators
and a handful of numeric functions are accepted; anything else (attribute
access, subscripts, lambdas, comprehensions, strings) is rejected at
compile time, so nothing is ever passed to eval().

Business Rules:
- Allowed operators: + - * / // % ** and unary + -
- Allowed functions: min, max, floor, ceil, round, abs
- Names resolve against the fields supplied at evaluation time
- Exponents are capped and expressions are length-limited
- Every failure raises ExpressionError with a readable message

Called by: stock_sync.py (CUSTOM strategy), schemas/rules.py (validation)
Depends on: nothing
"""

import ast
import math
import operator

MAX_LENGTH = 300
MAX_EXPONENT = 8

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}

_FUNCTIONS = {
    "min": min,
    "max": max,
    "floor": math.floor,
    "ceil": math.ceil,
    "round": round,
    "abs": abs,
}


class ExpressionError(ValueError):
    """Expression could not be parsed or evaluated."""


def compile_expression(source: str) -> ast.Expression:
    """Parse and validate an expression. Raises ExpressionError."""
    if not isinstance(source, str) or not source.strip():
        raise ExpressionError("expression is empty")
    if len(source) > MAX_LENGTH:
        raise ExpressionError(f"expression longer than {MAX_LENGTH} characters")
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"invalid syntax: {e.msg}") from e
    _validate(tree.body)
    return tree


def _validate(node: ast.AST) -> None:
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise ExpressionError(f"unsupported literal {node.value!r}")
    elif isinstance(node, ast.Name):
        if node.id in _FUNCTIONS:
            raise ExpressionError(f"{node.id} must be called")
    elif isinstance(node, ast.BinOp):
        if type(node.op) not in _BIN_OPS:
            raise ExpressionError(f"operator {type(node.op).__name__} not allowed")
        _validate(node.left)
        _validate(node.right)
    elif isinstance(node, ast.UnaryOp):
        if type(node.op) not in _UNARY_OPS:
            raise ExpressionError(f"operator {type(node.op).__name__} not allowed")
        _validate(node.operand)
    elif isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.func.id not in _FUNCTIONS:
            raise ExpressionError("only min, max, floor, ceil, round and abs may be called")
        if node.keywords:
            raise ExpressionError("keyword arguments not allowed")
        if not node.args:
            raise ExpressionError(f"{node.func.id}() needs at least one argument")
        for arg in node.args:
            _validate(arg)
    else:
        raise ExpressionError(f"{type(node).__name__} not allowed in expressions")


def evaluate(source: str | ast.Expression, fields: dict[str, float]) -> float:
    """Evaluate an expression against ``fields``. Raises ExpressionError."""
    tree = compile_expression(source) if isinstance(source, str) else source
    try:
        result = _eval(tree.body, fields)
    except ExpressionError:
        raise
    except (ArithmeticError, TypeError, ValueError) as e:
        raise ExpressionError(f"evaluation failed: {e}") from e
    if isinstance(result, float) and not math.isfinite(result):
        raise ExpressionError("result is not a finite number")
    return result


def _eval(node: ast.AST, fields: dict[str, float]):
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id not in fields:
            raise ExpressionError(f"unknown field '{node.id}'")
        value = fields[node.id]
        if value is None:
            raise ExpressionError(f"field '{node.id}' has no value")
        return value
    if isinstance(node, ast.BinOp):
        left = _eval(node.left, fields)
        right = _eval(node.right, fields)
        if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
            raise ExpressionError(f"exponent larger than {MAX_EXPONENT}")
        return _BIN_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp):
        return _UNARY_OPS[type(node.op)](_eval(node.operand, fields))
    if isinstance(node, ast.Call):
        args = [_eval(a, fields) for a in node.args]
        return _FUNCTIONS[node.func.id](*args)
    raise ExpressionError(f"{type(node).__name__} not allowed in expressions")


def names(tree: ast.Expression) -> set[str]:
    """Field names referenced by a compiled expression (function names excluded)."""
    called = {
        id(n.func) for n in ast.walk(tree) if isinstance(n, ast.Call) and isinstance(n.func, ast.Name)
    }
    return {n.id for n in ast.walk(tree) if isinstance(n, ast.Name) and id(n) not in called}
