"""Ready-made tools: current time and arithmetic."""

from __future__ import annotations

import ast
import operator
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
)

from promptkit.core.errors import FunctionCallError
from promptkit.core.schema import (
    FunctionDefinition,
    ParameterSchema,
)
from promptkit.tools import (
    FunctionRegistry,
    create_parameters,
)

_BINARY_OPS: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: Dict[type, Callable[[Any], Any]] = {ast.UAdd: operator.pos, ast.USub: operator.neg}
_MAX_EXPONENT = 1000


def _eval_node(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        if isinstance(node.value, bool):
            raise FunctionCallError("Booleans are not numbers")
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left, right = _eval_node(node.left), _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
            raise FunctionCallError("Exponent too large")
        return _BINARY_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    raise FunctionCallError(f"Unsupported expression element: {type(node).__name__}")


def evaluate_expression(expression: str) -> float:
    """Evaluate an arithmetic expression (+ - * / // % ** and parentheses) without ``eval``."""
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise FunctionCallError("Invalid mathematical expression", cause=exc) from exc
    try:
        return _eval_node(tree)
    except ZeroDivisionError as exc:
        raise FunctionCallError("Division by zero", cause=exc) from exc


def get_current_time(args: Dict[str, Any]) -> str:  # pylint: disable=unused-argument
    """Get the current time in ISO format."""
    return datetime.now(timezone.utc).isoformat()


def calculate_math(args: Dict[str, Any]) -> Dict[str, float]:
    """Perform mathematical calculations."""
    return {"result": evaluate_expression(str(args["expression"]))}


BUILTIN_FUNCTIONS: List[FunctionDefinition] = [
    FunctionDefinition(
        name="getCurrentTime",
        description="Get the current time in ISO format",
        parameters=ParameterSchema.object(),
        handler=get_current_time,
    ),
    FunctionDefinition(
        name="calculateMath",
        description="Perform mathematical calculations",
        parameters=create_parameters(
            {
                "expression": ParameterSchema.string(
                    'Mathematical expression to evaluate (e.g., "2 + 2", "10 * 5")'
                )
            }
        ),
        handler=calculate_math,
    ),
]


def builtin_registry() -> FunctionRegistry:
    """A fresh registry pre-loaded with :data:`BUILTIN_FUNCTIONS`."""
    return FunctionRegistry(BUILTIN_FUNCTIONS)
