from __future__ import annotations

import ast
import math
import operator
from typing import Any

from flemma.tools.registry import ExecutionResult, ToolDefinition


_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
    # `^` is exponentiation here, as people write it in plain arithmetic.
    ast.BitXor: operator.pow,
}

_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}

_FUNCTIONS = {
    name: getattr(math, name)
    for name in (
        "sqrt", "exp", "log", "log10", "log2", "sin", "cos", "tan", "asin", "acos", "atan",
        "floor", "ceil", "fabs", "factorial",
    )
}
_FUNCTIONS.update({"abs": abs, "round": round, "min": min, "max": max})

_CONSTANTS = {"pi": math.pi, "e": math.e, "tau": math.tau}

_MAX_EXPONENT = 10_000


def _eval(node: ast.AST) -> Any:
    if isinstance(node, ast.Expression):
        return _eval(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.Name) and node.id in _CONSTANTS:
        return _CONSTANTS[node.id]
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval(node.operand))
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left, right = _eval(node.left), _eval(node.right)
        if isinstance(node.op, (ast.Pow, ast.BitXor)) and abs(right) > _MAX_EXPONENT:
            raise ValueError("exponent too large")
        return _BIN_OPS[type(node.op)](left, right)
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id in _FUNCTIONS:
        if node.keywords:
            raise ValueError("keyword arguments are not supported")
        return _FUNCTIONS[node.func.id](*(_eval(a) for a in node.args))
    raise ValueError(f"unsupported syntax: {ast.dump(node, annotate_fields=False)[:40]}")


def evaluate(expression: str) -> float | int:
    tree = ast.parse(expression.strip(), mode="eval")
    return _eval(tree)


def execute(input: dict[str, Any], context: Any = None) -> ExecutionResult:
    expression = input.get("expression")
    if not isinstance(expression, str) or not expression.strip():
        return ExecutionResult.fail("No expression provided")
    try:
        result = evaluate(expression)
    except SyntaxError as e:
        return ExecutionResult.fail(f"Invalid expression: {e.msg}")
    except (ValueError, ArithmeticError, TypeError) as e:
        return ExecutionResult.fail(f"Evaluation failed: {e}")
    return ExecutionResult.ok({"result": result})


DEFINITION = ToolDefinition(
    name="calculator",
    description=(
        "Evaluates a mathematical expression and returns the numeric result. "
        "Use this for any arithmetic calculations including addition, subtraction, "
        "multiplication, division, exponents, and common math functions."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "expression": {
                "type": "string",
                "description": "The mathematical expression to evaluate (e.g., '2 + 2', '15 * 7', 'sqrt(16)', '2^10')",
            },
        },
        "required": ["expression"],
    },
    output_schema={
        "type": "object",
        "properties": {"result": {"type": "number", "description": "The numeric result of the calculation"}},
        "required": ["result"],
    },
    execute=execute,
)
