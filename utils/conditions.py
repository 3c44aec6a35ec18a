"""
Condition evaluator for conditional nodes.

Evaluates ConditionSpec objects against a conversation's variables.
All comparisons are case-insensitive string comparisons except the
numeric operators, which parse both sides as floats.

Also hosts get_nested_value, used to pull fields out of webhook
responses with dot-notation paths.
"""
from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Union

import structlog

from core.variables import VariableStore, format_scalar
from models.schemas import ConditionSpec

logger = structlog.get_logger()


def _to_float(value: str) -> float:
    return float(value.strip())


def _contains(a: str, b: str) -> bool:
    # Either side may be the longer phrase
    return a in b or b in a


OPERATORS: dict[str, Callable[[str, str], bool]] = {
    "equals": lambda a, b: a == b,
    "not_equals": lambda a, b: a != b,
    "contains": _contains,
    "greater_than": lambda a, b: _to_float(a) > _to_float(b),
    "less_than": lambda a, b: _to_float(a) < _to_float(b),
}


def get_nested_value(data: Any, field: str) -> Any:
    """Get a value from nested dicts/lists using dot notation. e.g. 'order.items.0.sku'"""
    current = data
    for part in field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def evaluate(operator: str, actual: Any, expected: Any) -> bool:
    """Compare two values with one of the supported operators."""
    fn = OPERATORS.get(operator)
    if fn is None:
        logger.warning("unknown_condition_operator", operator=operator)
        return False
    a = format_scalar(actual).lower()
    b = format_scalar(expected).lower()
    try:
        return fn(a, b)
    except (TypeError, ValueError):
        return False


def evaluate_condition(
    condition: ConditionSpec,
    variables: Union[VariableStore, Mapping[str, Any]],
) -> bool:
    """Evaluate a single condition against the variable store."""
    return evaluate(condition.operator, variables.get(condition.variable), condition.value)


def first_matching_action(
    conditions: list[ConditionSpec],
    variables: Union[VariableStore, Mapping[str, Any]],
) -> Optional[str]:
    """Return the action of the first condition that holds, in declaration order."""
    for c in conditions:
        if evaluate_condition(c, variables):
            return c.action
    return None
