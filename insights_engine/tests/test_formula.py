"""
Tests for the derived-metric formula evaluator.

The evaluator must never execute arbitrary code: anything outside
arithmetic, parentheses, variables and MAX/MIN/ROUND/ABS is rejected at
parse time. Missing variables and zero divisors evaluate to None.
"""

import pytest

from insights_engine.core.errors import FormulaError
from insights_engine.services.formula import parse_formula


class TestFormulaEvaluation:
    """Test suite for evaluating well-formed formulas."""

    def test_ratio_times_constant(self) -> None:
        formula = parse_formula("merched / total_fans * 100")

        assert formula.variables == frozenset({"merched", "total_fans"})
        assert formula.evaluate({"merched": 12, "total_fans": 300}) == pytest.approx(4.0)

    def test_bracketed_variables(self) -> None:
        formula = parse_formula("[all_images] / [attendance]")

        assert formula.variables == frozenset({"all_images", "attendance"})
        assert formula.evaluate({"all_images": 50, "attendance": 200}) == pytest.approx(0.25)

    def test_operator_precedence_and_unary_minus(self) -> None:
        formula = parse_formula("-(a + b) * 2 - c / 4")

        assert formula.evaluate({"a": 1, "b": 2, "c": 8}) == pytest.approx(-8.0)

    def test_functions(self) -> None:
        assert parse_formula("MAX(a, b, 3)").evaluate({"a": 1, "b": 2}) == 3.0
        assert parse_formula("MIN(a, b)").evaluate({"a": 1, "b": 2}) == 1.0
        assert parse_formula("ABS(a - b)").evaluate({"a": 1, "b": 4}) == 3.0
        assert parse_formula("ROUND(a)").evaluate({"a": 2.5}) == 3.0

    def test_round_of_overflow_is_not_available(self) -> None:
        """A product that overflows to infinity makes ROUND unavailable."""
        formula = parse_formula("ROUND(a * b)")

        assert formula.evaluate({"a": 1e308, "b": 10.0}) is None
        assert formula.evaluate({"a": 2.0, "b": 1.25}) == 3.0

    def test_division_by_zero_is_not_available(self) -> None:
        """A zero divisor yields None instead of raising."""
        formula = parse_formula("all_images / attendance")

        assert formula.evaluate({"all_images": 10, "attendance": 0}) is None

    def test_missing_variable_is_not_available(self) -> None:
        formula = parse_formula("all_images / attendance")

        assert formula.evaluate({"all_images": 10}) is None
        assert formula.evaluate({"all_images": float("nan"), "attendance": 4}) is None


class TestFormulaRejection:
    """Test suite for constructs outside the whitelist."""

    @pytest.mark.parametrize("source", [
        "__import__('os').system('true')",
        "attendance.real",
        "attendance ** 2",
        "a if b else c",
        "a < b",
        "values[0]",
        "lambda: 1",
        "SQRT(a)",
        "ROUND(a, b)",
        "'text'",
    ])
    def test_unsafe_or_unsupported_constructs(self, source: str) -> None:
        with pytest.raises(FormulaError):
            parse_formula(source)

    def test_empty_formula(self) -> None:
        with pytest.raises(FormulaError):
            parse_formula("   ")

    def test_syntax_error(self) -> None:
        with pytest.raises(FormulaError):
            parse_formula("a / (b")
