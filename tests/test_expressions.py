"""Tests for the expression evaluator and the condition builder."""

import pytest

from flowsim.core.exceptions import ExpressionError
from flowsim.core.expressions import (
    build_scope,
    evaluate_condition,
    evaluate_condition_groups,
    evaluate_expression,
    evaluate_single_condition,
    is_truthy,
    loose_equals,
    translate,
)
from flowsim.core.variables import UNDEFINED, VariableContext
from flowsim.models.configs import ConditionGroup


@pytest.fixture
def ctx():
    base = VariableContext(payload={"amount": 8500, "status": "Open", "tags": ["vip", "eu"], "note": ""})
    return base.with_node_output("cond", {"result": True}, {"result": True, "next_path": "true"})


def group(conditions, operator="AND"):
    return ConditionGroup.model_validate({"logicalOperator": operator, "conditions": conditions})


class TestTranslate:
    """JavaScript syntax is rewritten before parsing."""

    def test_operators_and_literals(self):
        translated = translate("a === 1 && !b || c !== null")
        assert "and" in translated and "or" in translated and "not" in translated
        assert "===" not in translated and "!==" not in translated
        assert "None" in translated

    def test_string_literals_untouched(self):
        """Operators inside quotes are left alone."""
        assert "'a && b'" in translate("x == 'a && b'")

    def test_placeholders_unwrapped(self):
        assert translate("{{payload.amount}} > 5") == "payload.amount > 5"

    def test_keyword_property_names(self):
        assert translate("payload.from == 'x'") == "payload[\"from\"] == 'x'"


class TestEvaluateExpression:
    """Expression evaluation against a flattened scope."""

    def test_comparison_on_payload(self, ctx):
        scope = build_scope(ctx)
        assert evaluate_expression("payload.amount > 1000", scope) is True
        assert evaluate_expression("amount > 1000 && status === 'Open'", scope) is True
        assert evaluate_expression("payload.amount <= 1000", scope) is False

    def test_node_outputs_in_scope(self, ctx):
        """Node outputs are reachable by id and under nodes/steps."""
        scope = build_scope(ctx)
        assert evaluate_expression("cond.next_path == 'true'", scope) is True
        assert evaluate_expression("nodes.cond.result", scope) is True
        assert evaluate_expression("steps.cond.result === true", scope) is True

    def test_loose_equality(self):
        assert evaluate_expression("'5' == 5", {}) is True
        assert evaluate_expression("null == undefined", {}) is True
        assert evaluate_expression("missing == null", {}) is True
        assert evaluate_expression("0 == null", {}) is False

    def test_missing_values_never_order(self):
        """Ordering against a missing value is false in both directions."""
        assert evaluate_expression("missing > 5", {}) is False
        assert evaluate_expression("missing < 5", {}) is False

    def test_property_of_missing_value_is_an_error(self):
        with pytest.raises(ExpressionError):
            evaluate_expression("missing.field > 1", {})

    def test_string_methods_and_length(self):
        scope = {"name": " Alex ", "items": [1, 2, 3], "tags": ["vip"]}
        assert evaluate_expression("name.trim().toLowerCase().startsWith('al')", scope) is True
        assert evaluate_expression("name.toUpperCase().endsWith('X ')", scope) is True
        assert evaluate_expression("items.length > 2", scope) is True
        assert evaluate_expression("tags.includes('vip')", scope) is True
        assert evaluate_expression("name.includes('lex')", scope) is True

    def test_arithmetic_and_membership(self):
        scope = {"amount": 4, "items": [1, 2]}
        assert evaluate_expression("amount * 2 + 1", scope) == 9
        assert evaluate_expression("amount / 8", scope) == 0.5
        assert evaluate_expression("amount % 3", scope) == 1
        assert evaluate_expression("'x' + amount", scope) == "x4"
        assert evaluate_expression("2 in items", scope) is True
        assert evaluate_expression("items[0] == 1", scope) is True

    def test_logical_operators_follow_js(self):
        """&& and || return an operand, ! returns a boolean."""
        assert evaluate_expression("a && b", {"a": 1, "b": 0}) == 0
        assert evaluate_expression("a || b", {"a": 0, "b": "x"}) == "x"
        assert evaluate_expression("!a", {"a": []}) is False

    @pytest.mark.parametrize("expression", [
        "__import__('os')",
        "(lambda: 1)()",
        "[x for x in items]",
        "len(items)",
        "a if b else c",
        "amount > ",
        "",
    ])
    def test_rejected_expressions(self, expression):
        """Calls, comprehensions, lambdas and syntax errors are refused."""
        with pytest.raises(ExpressionError):
            evaluate_expression(expression, {"items": [1]})

    def test_division_by_zero(self):
        with pytest.raises(ExpressionError):
            evaluate_expression("1 / 0", {})


class TestTruthiness:
    """JavaScript truthiness and equality helpers."""

    def test_is_truthy(self):
        assert is_truthy([]) is True
        assert is_truthy({}) is True
        assert is_truthy("") is False
        assert is_truthy(0) is False
        assert is_truthy(UNDEFINED) is False
        assert is_truthy(None) is False

    def test_loose_equals(self):
        assert loose_equals("10", 10.0)
        assert not loose_equals("10", "10.0")
        assert not loose_equals(None, 0)


class TestConditionBuilder:
    """Condition-builder rows and groups."""

    def test_single_conditions(self, ctx):
        scope = build_scope(ctx)
        assert evaluate_single_condition("payload.amount", ">", "1000", scope)
        assert evaluate_single_condition("{{payload.status}}", "==", "Open", scope)
        assert evaluate_single_condition("payload.status", "contains", "pe", scope)
        assert evaluate_single_condition("payload.status", "not_contains", "closed", scope)
        assert evaluate_single_condition("payload.note", "empty", None, scope)
        assert evaluate_single_condition("payload.missing", "empty", None, scope)
        assert evaluate_single_condition("payload.tags", "not_empty", None, scope)
        assert not evaluate_single_condition("payload.amount", "<", "{{payload.amount}}", scope)

    def test_unknown_operator_and_blank_variable(self, ctx):
        """Rows that cannot constrain anything pass."""
        scope = build_scope(ctx)
        assert evaluate_single_condition("payload.amount", "between", 1, scope)
        assert evaluate_single_condition("", "==", 1, scope)

    def test_groups_are_ored(self, ctx):
        scope = build_scope(ctx)
        failing = group([{"variable": "payload.amount", "operator": "<", "value": "10"}])
        passing = group([
            {"variable": "payload.amount", "operator": "<", "value": "10"},
            {"variable": "payload.status", "operator": "==", "value": "Open"},
        ], operator="or")
        assert evaluate_condition_groups([failing, passing], scope) is True
        assert evaluate_condition_groups([failing], scope) is False

    def test_and_group_requires_every_row(self, ctx):
        scope = build_scope(ctx)
        rows = [
            {"variable": "payload.amount", "operator": ">=", "value": 8500},
            {"variable": "payload.status", "operator": "!=", "value": "Open"},
        ]
        assert evaluate_condition_groups([group(rows)], scope) is False


class TestEvaluateCondition:
    """evaluate_condition decides and fails safe."""

    def test_groups_take_precedence(self, ctx):
        groups = [group([{"variable": "payload.amount", "operator": "<", "value": "10"}])]
        assert evaluate_condition("payload.amount > 10", groups, ctx) == (False, None)

    def test_expression(self, ctx):
        assert evaluate_condition("payload.amount > 1000", [], ctx) == (True, None)

    def test_nothing_configured_is_true(self, ctx):
        assert evaluate_condition(None, [], ctx) == (True, None)
        assert evaluate_condition("   ", [], ctx) == (True, None)

    def test_error_is_false_with_message(self, ctx):
        result, error = evaluate_condition("payload.missing.x > 1", [], ctx)
        assert result is False
        assert "undefined" in error

    @pytest.mark.parametrize("name", ["from", "class", "is", "import", "lambda"])
    def test_keyword_property_names(self, name):
        """Properties named like Python keywords still resolve."""
        ctx = VariableContext(payload={name: "x", "meta": {name: "y"}})
        assert evaluate_condition(f"payload.{name} == 'x'", [], ctx) == (True, None)
        assert evaluate_condition(f"payload.meta.{name}.toUpperCase() === 'Y'", [], ctx) == (True, None)
