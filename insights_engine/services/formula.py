"""
Derived Metric Formula Evaluator.

Derived metrics such as engagement (all_images / attendance) are defined as
arithmetic formulas over base metrics. Formulas are parsed once into an
expression tree using Python's `ast` module with a strict node whitelist and
then evaluated against a variable table. Nothing is ever passed to eval().

Supported Syntax:
    - Numbers: 100, 2.5
    - Variables: attendance, all_images (or bracketed: [attendance])
    - Operators: + - * / and unary minus
    - Parentheses
    - Functions: MAX(a, b, ...), MIN(a, b, ...), ROUND(x), ABS(x)

Evaluation Semantics:
    A formula evaluates to None ("not available") instead of raising when a
    variable is missing, a divisor is zero, or the result is not finite, so
    one bad day never aborts a whole derived series. Syntax errors and
    unsupported constructs raise FormulaError at parse time.

Usage:
    formula = parse_formula("merched / total_fans * 100")
    formula.variables        # {'merched', 'total_fans'}
    formula.evaluate({'merched': 12, 'total_fans': 300})   # 4.0
"""

import ast
import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional, Union

from insights_engine.core.errors import FormulaError


# =============================================================================
# Expression Tree
# =============================================================================


@dataclass(frozen=True)
class Number:
    value: float


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class Unary:
    op: str
    operand: 'Expr'


@dataclass(frozen=True)
class Binary:
    op: str
    left: 'Expr'
    right: 'Expr'


@dataclass(frozen=True)
class Call:
    function: str
    args: List['Expr']


Expr = Union[Number, Variable, Unary, Binary, Call]


_BINARY_OPS: Dict[type, str] = {
    ast.Add: '+',
    ast.Sub: '-',
    ast.Mult: '*',
    ast.Div: '/',
}

_UNARY_OPS: Dict[type, str] = {
    ast.USub: '-',
    ast.UAdd: '+',
}


def _round_half_up(value: float) -> float:
    # math.floor raises on inf and NaN
    if not math.isfinite(value):
        raise _NotAvailable('round of a non-finite value')
    return float(math.floor(value + 0.5))


_FUNCTIONS: Dict[str, Callable[..., float]] = {
    'max': lambda *args: max(args),
    'min': lambda *args: min(args),
    'round': _round_half_up,
    'abs': abs,
}

_FUNCTION_ARITY: Dict[str, Optional[int]] = {
    'max': None,
    'min': None,
    'round': 1,
    'abs': 1,
}

_BRACKETED = re.compile(r'\[([A-Za-z_][A-Za-z0-9_]*)\]')


# =============================================================================
# Parsing
# =============================================================================


def _convert(node: ast.AST, source: str) -> Expr:
    """Convert a whitelisted ast node into an expression tree node."""
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            raise FormulaError(f"Unsupported literal {node.value!r} in formula '{source}'")
        return Number(float(node.value))

    if isinstance(node, ast.Name):
        return Variable(node.id)

    if isinstance(node, ast.BinOp):
        op = _BINARY_OPS.get(type(node.op))
        if op is None:
            raise FormulaError(f"Unsupported operator in formula '{source}'")
        return Binary(op, _convert(node.left, source), _convert(node.right, source))

    if isinstance(node, ast.UnaryOp):
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise FormulaError(f"Unsupported operator in formula '{source}'")
        return Unary(op, _convert(node.operand, source))

    if isinstance(node, ast.Call):
        if not isinstance(node.func, ast.Name) or node.keywords:
            raise FormulaError(f"Unsupported call in formula '{source}'")

        name = node.func.id.lower()
        if name not in _FUNCTIONS:
            raise FormulaError(f"Unknown function '{node.func.id}' in formula '{source}'")

        arity = _FUNCTION_ARITY[name]
        if (arity is not None and len(node.args) != arity) or not node.args:
            raise FormulaError(f"Wrong number of arguments to '{node.func.id}' in formula '{source}'")

        return Call(name, [_convert(arg, source) for arg in node.args])

    raise FormulaError(f"Unsupported expression '{type(node).__name__}' in formula '{source}'")


def _collect_variables(expr: Expr) -> FrozenSet[str]:
    if isinstance(expr, Variable):
        return frozenset([expr.name])
    if isinstance(expr, Unary):
        return _collect_variables(expr.operand)
    if isinstance(expr, Binary):
        return _collect_variables(expr.left) | _collect_variables(expr.right)
    if isinstance(expr, Call):
        names: FrozenSet[str] = frozenset()
        for arg in expr.args:
            names = names | _collect_variables(arg)
        return names
    return frozenset()


# =============================================================================
# Evaluation
# =============================================================================


class _NotAvailable(Exception):
    """Internal signal that a sub-expression has no value."""


def _evaluate(expr: Expr, variables: Dict[str, float]) -> float:
    if isinstance(expr, Number):
        return expr.value

    if isinstance(expr, Variable):
        value = variables.get(expr.name)
        if value is None or not math.isfinite(value):
            raise _NotAvailable(expr.name)
        return float(value)

    if isinstance(expr, Unary):
        operand = _evaluate(expr.operand, variables)
        return -operand if expr.op == '-' else operand

    if isinstance(expr, Binary):
        left = _evaluate(expr.left, variables)
        right = _evaluate(expr.right, variables)
        if expr.op == '+':
            return left + right
        if expr.op == '-':
            return left - right
        if expr.op == '*':
            return left * right
        if right == 0:
            raise _NotAvailable('division by zero')
        return left / right

    if isinstance(expr, Call):
        args = [_evaluate(arg, variables) for arg in expr.args]
        return float(_FUNCTIONS[expr.function](*args))

    raise ValueError(f"Unknown expression node: {expr!r}")


class Formula:
    """
    A parsed, reusable derived-metric formula.

    Attributes:
        source: The original formula text
        tree: Root of the parsed expression tree
        variables: Names of the base metrics the formula reads
    """

    def __init__(self, source: str, tree: Expr):
        self.source = source
        self.tree = tree
        self.variables: FrozenSet[str] = _collect_variables(tree)

    def evaluate(self, values: Dict[str, float]) -> Optional[float]:
        """
        Evaluate against a variable table.

        Args:
            values: Base metric values keyed by name

        Returns:
            The result, or None when a variable is missing, a divisor is
            zero, or the result is not finite
        """
        try:
            result = _evaluate(self.tree, values)
        except _NotAvailable:
            return None

        if not math.isfinite(result):
            return None
        return result

    def __repr__(self) -> str:
        return f"Formula({self.source!r})"


def parse_formula(source: str) -> Formula:
    """
    Parse formula text into a Formula.

    Args:
        source: Formula text, e.g. "all_images / attendance"

    Returns:
        Formula

    Raises:
        FormulaError: On empty input, syntax errors or any construct outside
            the whitelist (attribute access, comparisons, subscripts, ...)
    """
    if not source or not source.strip():
        raise FormulaError("Formula is empty")

    normalized = _BRACKETED.sub(r'\1', source.strip())

    try:
        parsed = ast.parse(normalized, mode='eval')
    except SyntaxError as e:
        raise FormulaError(f"Invalid formula '{source}': {e.msg}") from e

    return Formula(source, _convert(parsed.body, source))
