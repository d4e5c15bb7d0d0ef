"""
Rule Engine - Evaluates JSON condition trees and collects triggered actions.

Conditions and actions are parsed into tagged unions at the boundary:
a malformed rule is reported as an error on that rule only, and the
remaining rules are still evaluated. Evaluation is pure: no I/O.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError as SchemaError,
)

from .errors import ValidationError
from .models import Rule, RuleTrigger, RuleType
from .money import is_numeric, to_decimal

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

ConditionValue = Union[bool, int, float, str, list[str]]


class LeafCondition(BaseModel):
    """`{field, op, value}` compared against a dot-path into the context."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    field: str = Field(min_length=1)
    op: Literal["eq", "neq", "gt", "lt", "gte", "lte", "contains", "in"]
    value: Optional[ConditionValue] = None


class CompoundCondition(BaseModel):
    """`{operator, conditions}`; `not` negates conditions[0] only."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    operator: Literal["and", "or", "not"]
    conditions: list["Condition"] = Field(default_factory=list)


def _condition_kind(raw: Any) -> str:
    if isinstance(raw, dict):
        return "compound" if "operator" in raw else "leaf"
    return "compound" if isinstance(raw, CompoundCondition) else "leaf"


Condition = Annotated[
    Union[
        Annotated[LeafCondition, Tag("leaf")],
        Annotated[CompoundCondition, Tag("compound")],
    ],
    Discriminator(_condition_kind),
]

CompoundCondition.model_rebuild()


class ActionType(str, Enum):
    REQUIRE_OPTION = "REQUIRE_OPTION"
    EXCLUDE_OPTION = "EXCLUDE_OPTION"
    REQUIRE_PRODUCT = "REQUIRE_PRODUCT"
    EXCLUDE_PRODUCT = "EXCLUDE_PRODUCT"
    SHOW_WARNING = "SHOW_WARNING"
    APPLY_DISCOUNT = "APPLY_DISCOUNT"
    APPLY_MARKUP = "APPLY_MARKUP"
    SET_PRICE = "SET_PRICE"
    REQUIRE_APPROVAL = "REQUIRE_APPROVAL"
    REQUIRE = "REQUIRE"
    SUGGEST = "SUGGEST"
    NOTIFY = "NOTIFY"


# Requirements are enforced by the configuration collaborator, not here
SURFACED_ACTIONS = {ActionType.REQUIRE_OPTION, ActionType.REQUIRE_PRODUCT, ActionType.REQUIRE}
BLOCKING_ACTIONS = {ActionType.EXCLUDE_OPTION, ActionType.EXCLUDE_PRODUCT}
ADVISORY_ACTIONS = {ActionType.SHOW_WARNING, ActionType.NOTIFY, ActionType.SUGGEST}


class Action(BaseModel):
    """A rule action. Wire keys are camelCase."""
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    type: ActionType
    target_id: Optional[str] = Field(default=None, alias="targetId")
    discount_id: Optional[str] = Field(default=None, alias="discountId")
    value: Optional[Decimal] = None
    message: Optional[str] = None
    scope: Optional[Literal["LINE_ITEM", "QUOTE"]] = None
    products: Optional[list[str]] = None
    approver_role: Optional[str] = Field(default=None, alias="approverRole")

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


_condition_adapter = TypeAdapter(Condition)


def parse_condition(raw: Any) -> Union[LeafCondition, CompoundCondition]:
    """Parse a condition JSON object; raises ValidationError on bad shape."""
    if not isinstance(raw, dict):
        raise ValidationError(f"Condition must be a JSON object, got {type(raw).__name__}")
    try:
        return _condition_adapter.validate_python(raw)
    except SchemaError as e:
        raise ValidationError(f"Invalid condition: {e.errors()[0]['msg']} at {_loc(e)}") from e


def parse_action(raw: Any) -> Action:
    """Parse an action JSON object; unknown action types are rejected."""
    if not isinstance(raw, dict):
        raise ValidationError(f"Action must be a JSON object, got {type(raw).__name__}")
    try:
        return Action.model_validate(raw)
    except SchemaError as e:
        raise ValidationError(f"Invalid action: {e.errors()[0]['msg']} at {_loc(e)}") from e


def _loc(error: SchemaError) -> str:
    loc = error.errors()[0].get('loc', ())
    return ".".join(str(part) for part in loc) or "<root>"


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

_MISSING = object()


def get_nested_value(context: dict, path: str) -> Any:
    """Dot-path lookup, e.g. 'quote.total' or 'line_items.0.quantity'."""
    current: Any = context
    for part in path.split('.'):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _equals(left: Any, right: Any) -> bool:
    if is_numeric(left) and is_numeric(right):
        return to_decimal(left) == to_decimal(right)
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def _compare(left: Any, op: str, right: Any) -> bool:
    # Numeric comparators fail closed
    if not (is_numeric(left) and is_numeric(right)):
        return False
    left, right = to_decimal(left), to_decimal(right)
    if op == "gt":
        return left > right
    if op == "lt":
        return left < right
    if op == "gte":
        return left >= right
    return left <= right


def evaluate_condition(condition: Union[LeafCondition, CompoundCondition], context: dict) -> bool:
    """Evaluate a parsed condition tree against a context snapshot."""
    if isinstance(condition, CompoundCondition):
        conditions = condition.conditions
        if not conditions:
            return True
        if condition.operator == "and":
            return all(evaluate_condition(c, context) for c in conditions)
        if condition.operator == "or":
            return any(evaluate_condition(c, context) for c in conditions)
        return not evaluate_condition(conditions[0], context)

    actual = get_nested_value(context, condition.field)
    if actual is _MISSING:
        return False

    op, expected = condition.op, condition.value
    if op == "eq":
        return _equals(actual, expected)
    if op == "neq":
        return not _equals(actual, expected)
    if op in ("gt", "lt", "gte", "lte"):
        return _compare(actual, op, expected)
    if op == "contains":
        if isinstance(actual, str) and isinstance(expected, str):
            return expected in actual
        if isinstance(actual, (list, tuple)):
            return expected in actual
        return False
    # op == "in"
    return isinstance(expected, list) and actual in expected


@dataclass
class RuleResult:
    """Outcome of one rule."""
    rule_id: str
    rule_name: str
    matched: bool = False
    action: Optional[Action] = None
    error: Optional[str] = None
    warning: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "ruleId": self.rule_id,
            "ruleName": self.rule_name,
            "matched": self.matched,
            "action": self.action.to_dict() if self.action else None,
            "error": self.error,
            "warning": self.warning,
        }


@dataclass
class EvaluationResult:
    """Aggregated outcome of a rule set for one trigger."""
    success: bool = True
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    applied_actions: list[Action] = field(default_factory=list)
    requires_approval: bool = False
    approval_reasons: list[str] = field(default_factory=list)
    results: list[RuleResult] = field(default_factory=list)

    def merge(self, other: 'EvaluationResult') -> 'EvaluationResult':
        """Combine two evaluations (e.g. ON_QUOTE_SAVE + ON_FINALIZE)."""
        return EvaluationResult(
            success=self.success and other.success,
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
            applied_actions=self.applied_actions + other.applied_actions,
            requires_approval=self.requires_approval or other.requires_approval,
            approval_reasons=self.approval_reasons + other.approval_reasons,
            results=self.results + other.results,
        )

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "appliedActions": [a.to_dict() for a in self.applied_actions],
            "requiresApproval": self.requires_approval,
            "approvalReasons": list(self.approval_reasons),
            "results": [r.to_dict() for r in self.results],
        }


def evaluate_rule(rule: Rule, context: dict) -> RuleResult:
    """Evaluate a single rule; parse problems are captured, not raised."""
    result = RuleResult(rule_id=rule.id, rule_name=rule.name)

    try:
        condition = parse_condition(rule.condition)
        action = parse_action(rule.action)
        result.matched = evaluate_condition(condition, context)
    except (ValidationError, ArithmeticError) as e:
        result.error = f"Rule '{rule.name}': {e}"
        logger.warning("Skipping rule %s: %s", rule.id, e)
        return result

    if result.matched:
        result.action = action
        if action.type == ActionType.SUGGEST:
            result.warning = action.message or f"Suggestion from rule: {rule.name}"
        elif action.type in ADVISORY_ACTIONS:
            result.warning = action.message or f"Warning from rule: {rule.name}"

    return result


def evaluate_rules(
    rules: list[Rule],
    trigger: RuleTrigger,
    context: dict,
    rule_type: Optional[RuleType] = None
) -> EvaluationResult:
    """
    Evaluate every active rule for a trigger (and optional type).

    Rules run in ascending priority; none short-circuits another.
    """
    result = EvaluationResult()
    trigger = RuleTrigger(trigger)

    applicable = [
        r for r in rules
        if r.is_active and r.trigger == trigger and (rule_type is None or r.type == rule_type)
    ]
    applicable.sort(key=lambda r: r.priority)

    for rule in applicable:
        rule_result = evaluate_rule(rule, context)
        result.results.append(rule_result)

        if rule_result.error:
            result.errors.append(rule_result.error)
            continue

        if not (rule_result.matched and rule_result.action):
            continue

        action = rule_result.action
        result.applied_actions.append(action)

        if action.type in BLOCKING_ACTIONS:
            result.errors.append(f"{rule.name}: {action.message or 'Selection not allowed'}")
            result.success = False
        elif action.type in ADVISORY_ACTIONS:
            result.warnings.append(rule_result.warning)
        elif action.type == ActionType.REQUIRE_APPROVAL:
            reason = action.message or rule.name
            result.requires_approval = True
            result.approval_reasons.append(reason)
            result.warnings.append(f"Approval required: {reason}")

    logger.debug(
        "Evaluated %d %s rules: approval=%s, errors=%d",
        len(applicable), trigger.value, result.requires_approval, len(result.errors)
    )
    return result


def validate_configuration(rules: list[Rule], context: dict) -> EvaluationResult:
    """Configuration rules run when a product is added."""
    return evaluate_rules(rules, RuleTrigger.ON_PRODUCT_ADD, context, RuleType.CONFIGURATION)


def evaluate_pricing_rules(rules: list[Rule], trigger: RuleTrigger, context: dict) -> EvaluationResult:
    return evaluate_rules(rules, trigger, context, RuleType.PRICING)
