"""
SOP Engine — Conditional Branch Evaluator

Decides where a conditional step routes after its evidence is captured.
Rules are checked in declaration order; the first match wins.

    greater_than / less_than  float comparison, non-numeric never matches
    contains                  case-insensitive substring; lists match if any element does
    equals / not_equals       exact equality; a numeric capture also equals a rule
                              value that parses to the same number
"""

from __future__ import annotations

import logging
import math
from typing import Any

from sop_engine.types import ConditionOperator, ConditionalRule, DualSignaturePayload, SOPStep, SOPTemplate

logger = logging.getLogger("sop_engine.branching")


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value.strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number):
        return None
    return number


def _equals(actual: Any, expected: Any) -> bool:
    # Text captures compare as typed; "10.0" does not equal "10".
    if isinstance(actual, (int, float)) and not isinstance(actual, bool):
        number = _as_number(expected)
        if number is not None:
            return float(actual) == number
    return actual == expected


def _contains(actual: Any, expected: Any) -> bool:
    needle = str(expected).lower()
    if isinstance(actual, (list, tuple)):
        return any(needle in str(item).lower() for item in actual)
    return needle in str(actual).lower()


def rule_matches(rule: ConditionalRule, value: Any) -> bool:
    """Check one rule against a captured evidence value."""
    op = rule.condition

    if op == ConditionOperator.EQUALS:
        return _equals(value, rule.value)
    if op == ConditionOperator.NOT_EQUALS:
        return not _equals(value, rule.value)
    if op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
        actual, expected = _as_number(value), _as_number(rule.value)
        if actual is None or expected is None:
            return False
        if op == ConditionOperator.GREATER_THAN:
            return actual > expected
        return actual < expected
    if op == ConditionOperator.CONTAINS:
        return _contains(value, rule.value)
    return False


def evaluate(step: SOPStep, value: Any) -> str | None:
    """
    Return the next_step_id of the first matching rule, or None when the
    step is not conditional, the value is absent, or nothing matches.
    """
    if not step.is_conditional or not step.conditional_logic:
        return None
    if value is None or isinstance(value, DualSignaturePayload):
        return None

    for rule in step.conditional_logic:
        if rule_matches(rule, value):
            return rule.next_step_id
    return None


def resolve_branch(template: SOPTemplate, step: SOPStep, value: Any) -> int | None:
    """
    Map the matching rule's target to a step index.

    A target id absent from the template is a configuration error: it is
    logged and None is returned, so the caller falls back to the default
    advance.
    """
    target = evaluate(step, value)
    if target is None:
        return None

    index = template.index_of(target)
    if index is None:
        logger.warning(
            "branch_config_error: step %s routes to unknown step %r in template %s",
            step.id, target, template.id,
        )
        return None
    return index
