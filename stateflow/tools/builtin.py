"""
Built-in tools used by the demo agent workflow.
"""

import ast
import operator
from typing import Any, Dict, Union

from stateflow.tools.registry import register_tool


Number = Union[int, float]

_BINARY_OPS = {
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

# Keeps "2 ** 999999" from hanging the worker
MAX_EXPONENT = 100


def _evaluate(node: ast.AST) -> Number:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) \
            and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        left = _evaluate(node.left)
        right = _evaluate(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > MAX_EXPONENT:
            raise ValueError(f"exponent {right} is too large")
        return _BINARY_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand))
    raise ValueError(f"unsupported expression element: {type(node).__name__}")


@register_tool(
    name="calculate",
    description="Evaluate an arithmetic expression (+ - * / // % **)"
)
def calculate(expression: str) -> Dict[str, Any]:
    """
    Safely evaluate an arithmetic expression.

    Args:
        expression: e.g. "2 * (3 + 4)"

    Returns:
        Dict with 'result'

    Raises:
        ValueError: If the expression is not plain arithmetic
    """
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ValueError(f"invalid expression: {expression!r}") from e
    result = _evaluate(tree)
    if isinstance(result, float) and result.is_integer():
        result = int(result)
    return {"result": result}


@register_tool(
    name="word_count",
    description="Count the words in a piece of text"
)
def word_count(text: str) -> Dict[str, Any]:
    """Count whitespace-separated words."""
    words = text.split()
    return {"word_count": len(words)}
