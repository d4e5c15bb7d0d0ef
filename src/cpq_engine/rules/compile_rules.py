"""
Rule Compiler - Validates and compiles business rules from CSV to JSON.

Reads rules.csv (condition and action as JSON columns), validates every row
against the rule schema, and outputs compiled_rules.json sorted by priority.
"""
import csv
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..engine.errors import ValidationError
from ..engine.models import Rule, RuleTrigger, RuleType
from ..engine.rule_engine import parse_action, parse_condition

VALID_RULE_TYPES = {t.value for t in RuleType}
VALID_TRIGGERS = {t.value for t in RuleTrigger}


def parse_bool(value: str) -> bool:
    """Parse a boolean from CSV string."""
    return str(value).strip().lower() in ('true', '1', 'yes', 'on')


def parse_optional_str(value) -> Optional[str]:
    """Parse optional string (empty = None)."""
    if value is None or str(value).strip() == '':
        return None
    return str(value).strip()


def parse_json_column(value: Optional[str], column: str, line_num: int, errors: list[str]) -> Optional[dict]:
    if value is None:
        errors.append(f"Line {line_num}: {column} is required")
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        errors.append(f"Line {line_num}: {column} is not valid JSON ({e.msg})")
        return None
    if not isinstance(parsed, dict):
        errors.append(f"Line {line_num}: {column} must be a JSON object")
        return None
    return parsed


def validate_rule(row: dict, line_num: int) -> tuple[Optional[Rule], list[str]]:
    """
    Validate and parse a rule from a CSV row.

    Returns (rule, errors) - rule is None if validation failed.
    """
    errors = []

    # Required fields
    rule_id = parse_optional_str(row.get('rule_id'))
    if not rule_id:
        errors.append(f"Line {line_num}: rule_id is required")
        return None, errors

    name = parse_optional_str(row.get('name')) or rule_id
    active = parse_bool(row.get('active') or 'true')

    try:
        priority = int(row.get('priority') or '100')
    except ValueError:
        errors.append(f"Line {line_num}: priority must be an integer")
        return None, errors

    rule_type = parse_optional_str(row.get('type'))
    if rule_type not in VALID_RULE_TYPES:
        errors.append(f"Line {line_num}: invalid type '{rule_type}', must be one of: {sorted(VALID_RULE_TYPES)}")

    trigger = parse_optional_str(row.get('trigger'))
    if trigger not in VALID_TRIGGERS:
        errors.append(f"Line {line_num}: invalid trigger '{trigger}', must be one of: {sorted(VALID_TRIGGERS)}")

    # Condition and action must parse the same way the engine parses them
    condition = parse_json_column(parse_optional_str(row.get('condition')), 'condition', line_num, errors)
    if condition is not None:
        try:
            parse_condition(condition)
        except ValidationError as e:
            errors.append(f"Line {line_num}: {e}")

    action = parse_json_column(parse_optional_str(row.get('action')), 'action', line_num, errors)
    if action is not None:
        try:
            parse_action(action)
        except ValidationError as e:
            errors.append(f"Line {line_num}: {e}")

    if errors:
        return None, errors

    return Rule(
        id=rule_id,
        name=name,
        type=RuleType(rule_type),
        trigger=RuleTrigger(trigger),
        condition=condition,
        action=action,
        priority=priority,
        is_active=active,
    ), []


def rule_to_dict(rule: Rule) -> dict:
    return {
        "rule_id": rule.id,
        "name": rule.name,
        "type": rule.type.value,
        "trigger": rule.trigger.value,
        "priority": rule.priority,
        "active": rule.is_active,
        "condition": rule.condition,
        "action": rule.action,
    }


def rule_from_dict(data: dict) -> Rule:
    return Rule(
        id=data['rule_id'],
        name=data.get('name') or data['rule_id'],
        type=RuleType(data['type']),
        trigger=RuleTrigger(data['trigger']),
        condition=data.get('condition') or {},
        action=data.get('action') or {},
        priority=int(data.get('priority', 100)),
        is_active=bool(data.get('active', True)),
    )


def compile_rules(
    rules_csv: Path,
    output_json: Path,
    verbose: bool = True
) -> tuple[bool, list[Rule], list[str]]:
    """
    Compile rules from CSV to JSON.

    Returns (success, rules, errors). Nothing is written when any row fails.
    """
    all_errors = []
    rules = []
    rules_csv = Path(rules_csv)
    output_json = Path(output_json)

    if not rules_csv.exists():
        all_errors.append(f"Rules file not found: {rules_csv}")
        return False, [], all_errors

    seen_ids = set()
    with open(rules_csv, 'r', newline='', encoding='utf-8') as f:
        reader = csv.DictReader(f)

        for line_num, row in enumerate(reader, start=2):  # +2 for 1-indexed header row
            rule, errors = validate_rule(row, line_num)

            if errors:
                all_errors.extend(errors)
            elif rule:
                if rule.id in seen_ids:
                    all_errors.append(f"Line {line_num}: duplicate rule_id '{rule.id}'")
                    continue
                seen_ids.add(rule.id)
                rules.append(rule)

    if all_errors:
        if verbose:
            print("Validation errors:")
            for err in all_errors:
                print(f"  ❌ {err}")
        return False, rules, all_errors

    # Sort by priority (lower = evaluated first)
    rules.sort(key=lambda r: r.priority)

    output_data = {
        "compiled_at": datetime.now().isoformat(),
        "source_file": str(rules_csv),
        "total_rules": len(rules),
        "active_rules": sum(1 for r in rules if r.is_active),
        "rules": [rule_to_dict(rule) for rule in rules],
    }

    output_json.parent.mkdir(parents=True, exist_ok=True)
    with open(output_json, 'w', encoding='utf-8') as f:
        json.dump(output_data, f, indent=2)

    if verbose:
        print(f"✅ Compiled {len(rules)} rules ({output_data['active_rules']} active)")
        print(f"   Output: {output_json}")

    return True, rules, []


def load_compiled_rules(path: Path) -> list[Rule]:
    """Load compiled rules JSON; a missing file means no rules."""
    path = Path(path)
    if not path.exists():
        return []
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    return [rule_from_dict(item) for item in data.get('rules', [])]


def main():
    """CLI entry point."""
    from ..config.settings import get_settings

    settings = get_settings()

    print("Compiling business rules...")
    success, rules, errors = compile_rules(settings.rules_csv, settings.compiled_rules)

    if not success:
        print(f"\n❌ Compilation failed with {len(errors)} errors")
        sys.exit(1)


if __name__ == "__main__":
    main()
