"""Guard expression parsing and evaluation."""

import pytest

from tollgate.conditions import (
    MAX_DEPTH,
    MAX_EXPRESSION_LENGTH,
    BooleanAnd,
    BooleanNot,
    BooleanOr,
    Comparison,
    ComparisonOp,
    ConditionEvaluator,
    FieldAccess,
    LiteralValue,
    parse_condition,
    resolve_path,
)
from tollgate.errors import ConditionSyntaxError, DefinitionInvalid

evaluator = ConditionEvaluator()


def _check(condition, data=None, input_data=None):
    return evaluator.evaluate(parse_condition(condition), data, input_data)


def test_text_condition_translates_to_restricted_tree():
    expr = parse_condition("inputData.approved == true")

    assert expr == Comparison(
        op=ComparisonOp.EQ,
        left=FieldAccess(path=("input", "approved")),
        right=LiteralValue(value=True),
    )


def test_structured_condition_matches_text_form():
    structured = parse_condition(
        {"op": "eq", "left": {"field": "input.approved"}, "right": {"value": True}}
    )
    assert structured == parse_condition("input.approved == True")


def test_tree_round_trips_through_node_documents():
    expr = parse_condition("data.amount > 100 and not input.override")
    assert isinstance(expr, BooleanAnd)
    assert isinstance(expr.operands[1], BooleanNot)
    assert parse_condition(expr.model_dump(mode="json")) == expr


@pytest.mark.parametrize(
    "condition, data, input_data, expected",
    [
        ("input.approved == true", {}, {"approved": True}, True),
        ("input.approved == true", {}, {}, False),
        ("data.amount >= 100", {"amount": 100}, {}, True),
        ("data.amount < 100", {"amount": "lots"}, {}, False),
        ("data.amount > 10", {}, {}, False),
        ("input.role in ['admin', 'owner']", {}, {"role": "owner"}, True),
        ("input.role not in ['admin', 'owner']", {}, {"role": "guest"}, True),
        ("'vip' in data.tags", {"tags": ["vip"]}, {}, True),
        ("data.items[1].sku == 'B'", {"items": [{"sku": "A"}, {"sku": "B"}]}, {}, True),
        ("data.items[5].sku == 'B'", {"items": []}, {}, False),
        ("data['first name'] == 'Ada'", {"first name": "Ada"}, {}, True),
        ("data.total == -3.5", {"total": -3.5}, {}, True),
        ("0 < data.n < 10", {"n": 5}, {}, True),
        ("0 < data.n < 10", {"n": 15}, {}, False),
        ("data.flag or input.flag", {}, {"flag": 1}, True),
        ("data.missing == null", {}, {}, True),
    ],
)
def test_text_conditions_evaluate(condition, data, input_data, expected):
    assert _check(condition, data, input_data) is expected


def test_structured_boolean_operators():
    condition = {
        "or": [
            {"op": ">=", "left": {"field": "data.amount"}, "right": 1000},
            {"and": [{"field": "input.approved"}, {"not": {"field": "input.flagged"}}]},
        ]
    }
    assert isinstance(parse_condition(condition), BooleanOr)
    assert _check(condition, {"amount": 5}, {"approved": True}) is True
    assert _check(condition, {"amount": 5}, {"approved": True, "flagged": True}) is False
    assert _check(condition, {"amount": 5000}, {}) is True


def test_structured_scalars_are_literals():
    expr = parse_condition({"op": "eq", "left": {"field": "input.code"}, "right": "input.code"})
    assert expr.right == LiteralValue(value="input.code")


def test_missing_condition_always_passes():
    assert parse_condition(None) is None
    assert evaluator.evaluate(None, {}, {}) is True


@pytest.mark.parametrize(
    "condition",
    [
        "__import__('os').system('true')",
        "open('/etc/passwd')",
        "[x for x in data]",
        "lambda: 1",
        "data.amount + 1 > 2",
        "input.role == admin",
        "data.items[data.i]",
        "x := 1",
        "data.amount >",
    ],
)
def test_disallowed_syntax_is_rejected(condition):
    with pytest.raises(ConditionSyntaxError):
        parse_condition(condition)


def test_attribute_on_field_is_plain_key_lookup():
    # ``data.__class__`` parses, but only ever reads a mapping key.
    assert _check("data.__class__ == null", {}, {}) is True


def test_condition_syntax_error_is_a_definition_error():
    with pytest.raises(DefinitionInvalid):
        parse_condition("import os")


def test_limits_are_enforced():
    with pytest.raises(ConditionSyntaxError):
        parse_condition("data.a == 1 or " * (MAX_EXPRESSION_LENGTH // 10) + "true")

    nested = {"field": "data.x"}
    for _ in range(MAX_DEPTH + 1):
        nested = {"not": nested}
    with pytest.raises(ConditionSyntaxError):
        parse_condition(nested)


def test_unknown_structured_keys_are_rejected():
    with pytest.raises(ConditionSyntaxError):
        parse_condition({"call": "os.system"})
    with pytest.raises(ConditionSyntaxError):
        parse_condition({"op": "matches", "left": 1, "right": 2})
    with pytest.raises(ConditionSyntaxError):
        parse_condition({"field": "env.HOME"})
    with pytest.raises(ConditionSyntaxError):
        parse_condition(42)


def test_resolve_path_never_raises():
    context = {"data": {"a": [1, {"b": 2}], "s": "text"}}
    assert resolve_path(context, ("data", "a", 1, "b")) == 2
    assert resolve_path(context, ("data", "a", "0")) == 1
    assert resolve_path(context, ("data", "a", "x")) is None
    assert resolve_path(context, ("data", "s", "upper")) is None
    assert resolve_path(context, ("input", "anything")) is None


def test_evaluation_does_not_mutate_inputs():
    data = {"tags": ["a"]}
    input_data = {"tag": "a"}
    _check("input.tag in data.tags", data, input_data)
    assert data == {"tags": ["a"]}
    assert input_data == {"tag": "a"}
