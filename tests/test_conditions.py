"""
Tests for sandboxed step condition expressions.
"""

import pytest

from agent_orchestrator.workflow.conditions import (
    ConditionSyntaxError,
    evaluate_condition,
    parse_condition,
)

DATA = {
    "review": {"output": {"score": 8, "approved": True, "label": "good"}},
    "count": 3,
    "empty": None,
    "items": ["a", "b"],
}


class TestEvaluation:
    """Test expression semantics."""

    @pytest.mark.parametrize(
        "expression,expected",
        [
            ("context.count == 3", True),
            ("context.count == '3'", True),
            ("context.count === '3'", False),
            ("context.count === 3", True),
            ("context.count != 4", True),
            ("context.review.output.score > 7", True),
            ("context.review.output.score < 7", False),
            ("context.review.output.score >= 8 && context.review.output.approved", True),
            ("context.review.output.label == 'bad' || context.count > 2", True),
            ("!context.review.output.approved", False),
            ("!(context.count > 5)", True),
            ("context.empty == null", True),
            ("context.missing == null", True),
            ("context.missing", False),
            ("context.items[1] == \"b\"", True),
            ("true && !false", True),
        ],
    )
    def test_expressions(self, expression, expected):
        assert evaluate_condition(expression, DATA) is expected

    def test_incomparable_types_are_false(self):
        assert evaluate_condition("context.review.output.label > 3", DATA) is False

    @pytest.mark.parametrize(
        "expression",
        [
            "context.count ==",
            "(context.count > 1",
            "count > 1",
            "context.count > 1; import os",
            "'unterminated",
            "__import__('os')",
        ],
    )
    def test_malformed_expressions_are_false(self, expression):
        assert evaluate_condition(expression, DATA) is False


class TestParsing:
    """Test up-front syntax checking."""

    def test_valid_expression_parses(self):
        tokens = parse_condition("context.a == 'x' && (context.b > 2 || !context.c)")
        assert tokens[-1].kind == "EOF"

    def test_bare_identifier_rejected(self):
        with pytest.raises(ConditionSyntaxError, match="only context"):
            parse_condition("score > 3")

    def test_syntax_error_is_value_error(self):
        with pytest.raises(ValueError):
            parse_condition("context.a &&")
