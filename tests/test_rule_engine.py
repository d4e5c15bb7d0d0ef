"""
Condition evaluation, action handling and malformed-rule isolation.
"""
from decimal import Decimal

import pytest

from cpq_engine.engine.errors import ValidationError
from cpq_engine.engine.models import RuleTrigger, RuleType
from cpq_engine.engine.rule_engine import (
    ActionType,
    CompoundCondition,
    LeafCondition,
    evaluate_condition,
    evaluate_pricing_rules,
    evaluate_rules,
    get_nested_value,
    parse_action,
    parse_condition,
    validate_configuration,
)

from conftest import make_rule


@pytest.fixture
def context():
    return {
        "quote": {
            "subtotal": Decimal("15000.00"),
            "total": Decimal("15000.00"),
            "line_item_count": 3,
            "discount_percent": Decimal("12.50"),
        },
        "customer": {"id": "C-1", "name": "Acme Corporation", "country": "US", "is_tax_exempt": False},
        "line_items": [{"product_id": "P-1", "quantity": 5}],
        "tags": ["enterprise", "renewal"],
    }


def leaf(field, op, value):
    return {"field": field, "op": op, "value": value}


@pytest.mark.parametrize("condition,expected", [
    (leaf("quote.total", "gt", 10000), True),
    (leaf("quote.total", "gt", 15000), False),
    (leaf("quote.total", "gte", 15000), True),
    (leaf("quote.total", "lt", 15000.01), True),
    (leaf("quote.total", "lte", 14999), False),
    (leaf("quote.total", "eq", 15000), True),
    (leaf("quote.line_item_count", "neq", 3), False),
    (leaf("quote.discount_percent", "gt", 12.4), True),
    (leaf("customer.country", "eq", "US"), True),
    (leaf("customer.country", "in", ["US", "CA"]), True),
    (leaf("customer.country", "in", ["DE"]), False),
    (leaf("customer.name", "contains", "Acme"), True),
    (leaf("tags", "contains", "renewal"), True),
    (leaf("customer.is_tax_exempt", "eq", False), True),
    (leaf("line_items.0.quantity", "gte", 5), True),
])
def test_leaf_operators(context, condition, expected):
    assert evaluate_condition(parse_condition(condition), context) is expected


@pytest.mark.parametrize("op", ["eq", "neq", "gt", "lt", "gte", "lte", "contains", "in"])
def test_missing_path_is_false_for_every_operator(context, op):
    value = ["x"] if op == "in" else "x"
    condition = parse_condition(leaf("quote.nonexistent", op, value))
    assert evaluate_condition(condition, context) is False


def test_numeric_operators_fail_closed_on_strings(context):
    assert evaluate_condition(parse_condition(leaf("customer.country", "gt", 1)), context) is False
    assert evaluate_condition(parse_condition(leaf("quote.total", "gt", "100")), context) is False


def test_bool_is_not_a_number(context):
    assert evaluate_condition(parse_condition(leaf("customer.is_tax_exempt", "eq", 0)), context) is False


def test_compound_conditions(context):
    over_10k = leaf("quote.total", "gt", 10000)
    german = leaf("customer.country", "eq", "DE")

    assert evaluate_condition(parse_condition({"operator": "and", "conditions": [over_10k, german]}), context) is False
    assert evaluate_condition(parse_condition({"operator": "or", "conditions": [over_10k, german]}), context) is True
    assert evaluate_condition(parse_condition({"operator": "not", "conditions": [german]}), context) is True


def test_empty_compound_is_true(context):
    assert evaluate_condition(parse_condition({"operator": "and", "conditions": []}), context) is True


def test_nested_compound_parses_to_tagged_union():
    parsed = parse_condition({
        "operator": "and",
        "conditions": [
            leaf("quote.total", "gt", 100),
            {"operator": "or", "conditions": [leaf("customer.country", "eq", "US")]},
        ],
    })

    assert isinstance(parsed, CompoundCondition)
    assert isinstance(parsed.conditions[0], LeafCondition)
    assert isinstance(parsed.conditions[1], CompoundCondition)


@pytest.mark.parametrize("raw", [
    {"field": "quote.total", "op": "between", "value": 1},
    {"field": "", "op": "eq", "value": 1},
    {"operator": "xor", "conditions": []},
    {"op": "eq", "value": 1},
    ["not", "an", "object"],
])
def test_malformed_conditions(raw):
    with pytest.raises(ValidationError):
        parse_condition(raw)


def test_action_aliases():
    action = parse_action({"type": "APPLY_DISCOUNT", "discountId": "D-1", "value": 10, "scope": "QUOTE"})

    assert action.type == ActionType.APPLY_DISCOUNT
    assert action.discount_id == "D-1"
    assert action.value == Decimal("10")
    assert action.to_dict() == {"type": "APPLY_DISCOUNT", "discountId": "D-1", "value": "10", "scope": "QUOTE"}


def test_unknown_action_type():
    with pytest.raises(ValidationError):
        parse_action({"type": "LAUNCH_ROCKETS"})


def test_get_nested_value_handles_lists(context):
    assert get_nested_value(context, "line_items.0.product_id") == "P-1"
    assert get_nested_value(context, "quote.subtotal") == Decimal("15000.00")


def test_approval_rule(context):
    rules = [make_rule("APPROVE-BIG", leaf("quote.total", "gt", 10000),
                       {"type": "REQUIRE_APPROVAL", "message": "Deal over $10k"})]

    result = evaluate_rules(rules, RuleTrigger.ON_QUOTE_SAVE, context)

    assert result.success
    assert result.requires_approval
    assert result.approval_reasons == ["Deal over $10k"]
    assert result.warnings == ["Approval required: Deal over $10k"]


def test_approval_reason_defaults_to_rule_name(context):
    rules = [make_rule("approve-big", leaf("quote.total", "gt", 10000), {"type": "REQUIRE_APPROVAL"})]
    result = evaluate_rules(rules, "ON_QUOTE_SAVE", context)
    assert result.approval_reasons == ["Approve Big"]


def test_exclusion_fails_evaluation(context):
    rules = [make_rule("NO-DE", leaf("customer.country", "eq", "US"),
                       {"type": "EXCLUDE_PRODUCT", "targetId": "P-9", "message": "Not sold in US"},
                       trigger=RuleTrigger.ON_PRODUCT_ADD, rule_type=RuleType.CONFIGURATION)]

    result = validate_configuration(rules, context)

    assert not result.success
    assert result.errors == ["No De: Not sold in US"]


def test_advisory_actions(context):
    rules = [
        make_rule("WARN", leaf("quote.total", "gt", 1), {"type": "SHOW_WARNING", "message": "Check terms"}, priority=1),
        make_rule("SUGGEST", leaf("quote.total", "gt", 1), {"type": "SUGGEST", "products": ["P-2"]}, priority=2),
        make_rule("REQUIRE", leaf("quote.total", "gt", 1), {"type": "REQUIRE_PRODUCT", "targetId": "P-3"}, priority=3),
    ]

    result = evaluate_rules(rules, RuleTrigger.ON_QUOTE_SAVE, context)

    assert result.success
    assert result.warnings == ["Check terms", "Suggestion from rule: Suggest"]
    assert [a.type for a in result.applied_actions] == [
        ActionType.SHOW_WARNING, ActionType.SUGGEST, ActionType.REQUIRE_PRODUCT
    ]


def test_malformed_rule_is_isolated(context):
    rules = [
        make_rule("BROKEN", {"field": "quote.total", "op": "between"}, {"type": "SHOW_WARNING"}, priority=1),
        make_rule("BAD-ACTION", leaf("quote.total", "gt", 1), {"type": "NOPE"}, priority=2),
        make_rule("GOOD", leaf("quote.total", "gt", 1), {"type": "REQUIRE_APPROVAL"}, priority=3),
    ]

    result = evaluate_rules(rules, RuleTrigger.ON_QUOTE_SAVE, context)

    assert len(result.errors) == 2
    assert result.errors[0].startswith("Rule 'Broken'")
    assert result.requires_approval, "Later rules must still run"
    assert result.success, "Parse errors do not block"


def test_rules_run_in_priority_order(context):
    rules = [
        make_rule("LATE", leaf("quote.total", "gt", 1), {"type": "NOTIFY", "message": "late"}, priority=50),
        make_rule("EARLY", leaf("quote.total", "gt", 1), {"type": "NOTIFY", "message": "early"}, priority=5),
    ]
    result = evaluate_rules(rules, RuleTrigger.ON_QUOTE_SAVE, context)
    assert result.warnings == ["early", "late"]


def test_filters_by_trigger_type_and_active(context):
    rules = [
        make_rule("SAVE", leaf("quote.total", "gt", 1), {"type": "NOTIFY", "message": "save"}),
        make_rule("FINAL", leaf("quote.total", "gt", 1), {"type": "NOTIFY", "message": "final"},
                  trigger=RuleTrigger.ON_FINALIZE),
        make_rule("CONFIG", leaf("quote.total", "gt", 1), {"type": "NOTIFY", "message": "config"},
                  rule_type=RuleType.CONFIGURATION),
        make_rule("OFF", leaf("quote.total", "gt", 1), {"type": "NOTIFY", "message": "off"}, is_active=False),
    ]

    assert evaluate_rules(rules, RuleTrigger.ON_QUOTE_SAVE, context).warnings == ["save", "config"]
    assert evaluate_pricing_rules(rules, RuleTrigger.ON_QUOTE_SAVE, context).warnings == ["save"]
    assert evaluate_rules(rules, RuleTrigger.ON_FINALIZE, context).warnings == ["final"]


def test_merge_combines_evaluations(context):
    save = evaluate_rules(
        [make_rule("A", leaf("quote.total", "gt", 1), {"type": "NOTIFY", "message": "a"})],
        RuleTrigger.ON_QUOTE_SAVE, context
    )
    final = evaluate_rules(
        [make_rule("B", leaf("quote.total", "gt", 1), {"type": "REQUIRE_APPROVAL", "message": "b"},
                   trigger=RuleTrigger.ON_FINALIZE)],
        RuleTrigger.ON_FINALIZE, context
    )

    merged = save.merge(final)

    assert merged.requires_approval
    assert merged.warnings == ["a", "Approval required: b"]
    assert len(merged.results) == 2
