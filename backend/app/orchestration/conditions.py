"""
Dotted-path access and rule evaluation shared by pipeline stage conditions
and A/B targeting rules.
"""

import logging
import re
from typing import Any

from app.orchestration.models import Condition

logger = logging.getLogger(__name__)

OPERATORS = ("eq", "ne", "gt", "lt", "gte", "lte", "in", "contains", "regex")


def get_nested_value(data: Any, path: str) -> Any:
    """Resolve ``a.b.c`` against nested dicts (and list indices). Missing → None."""
    if not path:
        return data
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def set_nested_value(data: dict, path: str, value: Any) -> None:
    """Set ``a.b.c`` in *data*, creating intermediate dicts as needed."""
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def compare(actual: Any, operator: str, expected: Any) -> bool:
    """Apply one comparison. Type mismatches evaluate to False rather than raising."""
    try:
        if operator == "eq":
            return actual == expected
        if operator == "ne":
            return actual != expected
        if operator == "gt":
            return actual is not None and actual > expected
        if operator == "lt":
            return actual is not None and actual < expected
        if operator == "gte":
            return actual is not None and actual >= expected
        if operator == "lte":
            return actual is not None and actual <= expected
        if operator == "in":
            return isinstance(expected, (list, tuple, set)) and actual in expected
        if operator == "contains":
            if actual is None:
                return False
            if isinstance(actual, (list, tuple, set, dict)):
                return expected in actual
            # Scalars compare as text on both sides: 1234 contains "23" and 23.
            return str(expected) in str(actual)
        if operator == "regex":
            return actual is not None and re.search(str(expected), str(actual)) is not None
    except (TypeError, re.error) as e:
        logger.debug("Condition %s failed on %r vs %r: %s", operator, actual, expected, e)
        return False
    logger.warning("Unknown condition operator: %s", operator)
    return False


def evaluate_rules(rules: list[Condition], data: Any) -> bool:
    """
    True when every ``and`` rule matches and, if any ``or`` rules exist,
    at least one of them matches. An empty rule list always matches.
    """
    and_rules = [r for r in rules if r.logic != "or"]
    or_rules = [r for r in rules if r.logic == "or"]

    for rule in and_rules:
        if not compare(get_nested_value(data, rule.field), rule.operator, rule.value):
            return False
    if or_rules:
        return any(compare(get_nested_value(data, r.field), r.operator, r.value) for r in or_rules)
    return True
