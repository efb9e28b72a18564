"""
Formula Evaluation - restricted Decimal arithmetic over bound variables.

Formulas are parsed with the Python ast module and walked against a
whitelist; nothing is ever handed to eval(). Supported:

    numeric literals      0.05, 2.5, 1000
    variables             value, weight, quantity, duty, total, ...
    operators             + - * / and unary + -
    parentheses
    functions             min(a, b, ...), max(a, b, ...), clamp(x, lo, hi)

Literals are read from the formula source text, so "0.1" is exactly
Decimal("0.1") and never a binary float. Arithmetic runs in a 28-digit
local decimal context; the final amount is quantized ROUND_HALF_UP to
the money scale (2 by default).

Any other construct, an unbound variable, a division by zero or an
amount outside the decimal range raises FormulaSyntaxError.
"""

import ast
import logging
from decimal import (
    ROUND_HALF_UP,
    Decimal,
    DivisionByZero,
    InvalidOperation,
    Overflow,
    localcontext,
)
from typing import Dict, List, Mapping, Optional, Set, Union

from dutycalc.errors import FormulaSyntaxError

logger = logging.getLogger(__name__)

DEFAULT_SCALE = 2
MAX_FORMULA_LENGTH = 512
WORKING_PRECISION = 28

Number = Union[Decimal, int, str]


def to_decimal(value) -> Decimal:
    """Convert an input amount to Decimal without passing through binary float."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise FormulaSyntaxError(f"Boolean is not a numeric value: {value!r}")
    if isinstance(value, float):
        return Decimal(str(value))
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise FormulaSyntaxError(f"Not a numeric value: {value!r}")


def decimal_literal(value: Decimal) -> str:
    """Plain (non-scientific) literal for embedding in a formula."""
    text = format(value.normalize(), "f")
    return "0" if text in ("-0", "") else text


def quantize_money(amount: Decimal, scale: int = DEFAULT_SCALE) -> Decimal:
    """Round half-up to `scale` fractional digits (2 -> 0.01)."""
    exponent = Decimal(1).scaleb(-scale)
    with localcontext() as ctx:
        ctx.prec = WORKING_PRECISION
        try:
            return amount.quantize(exponent, rounding=ROUND_HALF_UP)
        except (InvalidOperation, Overflow) as e:
            raise FormulaSyntaxError(f"Amount {amount} cannot be rounded to {scale} places: {e.__class__.__name__}")


class FormulaEvaluator:
    """
    Safe, deterministic evaluator for duty formulas.

    Usage:
        evaluator = FormulaEvaluator()
        duty = evaluator.evaluate("value * 0.05", {"value": Decimal("10000")})
        # Decimal("500.00")
    """

    FUNCTIONS = ("min", "max", "clamp")

    def __init__(self, scale: int = DEFAULT_SCALE):
        self.scale = scale

    def evaluate(
        self,
        formula: str,
        variables: Mapping[str, Number],
        scale: Optional[int] = None,
    ) -> Decimal:
        """Evaluate and quantize to the money scale."""
        raw = self.evaluate_raw(formula, variables)
        return quantize_money(raw, self.scale if scale is None else scale)

    def evaluate_raw(self, formula: str, variables: Mapping[str, Number]) -> Decimal:
        """Evaluate without final rounding (callers that clamp first)."""
        tree = self._parse(formula)
        bound = {name: to_decimal(val) for name, val in variables.items() if val is not None}

        with localcontext() as ctx:
            ctx.prec = WORKING_PRECISION
            try:
                return self._eval(tree.body, formula, bound)
            except (DivisionByZero, InvalidOperation, Overflow) as e:
                raise FormulaSyntaxError(f"Arithmetic error in formula '{formula}': {e.__class__.__name__}")

    def validate_formula(self, formula: str, allowed_variables: Optional[Set[str]] = None) -> List[str]:
        """
        Check a formula without evaluating it.

        Returns a list of problems (empty when the formula is usable).
        """
        try:
            tree = self._parse(formula)
        except FormulaSyntaxError as e:
            return [str(e)]

        errors = []
        for node in ast.walk(tree.body):
            try:
                self._check_node(node)
            except FormulaSyntaxError as e:
                errors.append(str(e))
        if allowed_variables is not None:
            for name in sorted(self.referenced_variables(formula) - set(allowed_variables)):
                errors.append(f"Unknown variable: {name}")
        return errors

    def referenced_variables(self, formula: str) -> Set[str]:
        tree = self._parse(formula)
        names = set()
        for node in ast.walk(tree.body):
            if isinstance(node, ast.Name):
                names.add(node.id)
        # Function names are Name nodes too
        for node in ast.walk(tree.body):
            if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
                names.discard(node.func.id)
        return names

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _parse(self, formula: str) -> ast.Expression:
        if formula is None or not str(formula).strip():
            raise FormulaSyntaxError("Empty formula")
        if len(formula) > MAX_FORMULA_LENGTH:
            raise FormulaSyntaxError(f"Formula exceeds {MAX_FORMULA_LENGTH} characters")
        try:
            return ast.parse(formula.strip(), mode="eval")
        except SyntaxError as e:
            raise FormulaSyntaxError(f"Invalid formula '{formula}': {e.msg}")

    def _check_node(self, node: ast.AST) -> None:
        allowed = (
            ast.BinOp, ast.UnaryOp, ast.Constant, ast.Name, ast.Call, ast.Load,
            ast.Add, ast.Sub, ast.Mult, ast.Div, ast.UAdd, ast.USub,
        )
        if not isinstance(node, allowed):
            raise FormulaSyntaxError(f"Unsupported expression element: {node.__class__.__name__}")
        if isinstance(node, ast.Constant) and (
            isinstance(node.value, bool) or not isinstance(node.value, (int, float))
        ):
            raise FormulaSyntaxError(f"Unsupported literal: {node.value!r}")
        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name) or node.func.id not in self.FUNCTIONS:
                raise FormulaSyntaxError(f"Unsupported function call: {ast.dump(node.func)}")
            if node.keywords:
                raise FormulaSyntaxError("Keyword arguments are not supported in formulas")

    def _eval(self, node: ast.AST, source: str, values: Dict[str, Decimal]) -> Decimal:
        self._check_node(node)

        if isinstance(node, ast.BinOp):
            left = self._eval(node.left, source, values)
            right = self._eval(node.right, source, values)
            if isinstance(node.op, ast.Add):
                return left + right
            if isinstance(node.op, ast.Sub):
                return left - right
            if isinstance(node.op, ast.Mult):
                return left * right
            if isinstance(node.op, ast.Div):
                if right == 0:
                    raise FormulaSyntaxError(f"Division by zero in formula '{source}'")
                return left / right
            raise FormulaSyntaxError(f"Unsupported operator: {node.op.__class__.__name__}")

        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, source, values)
            if isinstance(node.op, ast.UAdd):
                return operand
            if isinstance(node.op, ast.USub):
                return -operand
            raise FormulaSyntaxError(f"Unsupported unary operator: {node.op.__class__.__name__}")

        if isinstance(node, ast.Constant):
            segment = ast.get_source_segment(source.strip(), node)
            return to_decimal(segment if segment else str(node.value))

        if isinstance(node, ast.Name):
            if node.id not in values:
                raise FormulaSyntaxError(f"Unknown variable referenced in formula: {node.id}")
            return values[node.id]

        if isinstance(node, ast.Call):
            args = [self._eval(arg, source, values) for arg in node.args]
            name = node.func.id
            if name in ("min", "max"):
                if not args:
                    raise FormulaSyntaxError(f"Function '{name}' requires at least one argument")
                return min(args) if name == "min" else max(args)
            if len(args) != 3:
                raise FormulaSyntaxError("Function 'clamp' takes exactly three arguments (x, lo, hi)")
            x, lo, hi = args
            return max(lo, min(x, hi))

        raise FormulaSyntaxError(f"Unsupported expression element: {node.__class__.__name__}")
