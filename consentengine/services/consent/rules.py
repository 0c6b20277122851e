from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Iterable

from consentengine.core.errors import ConsentValidationError
from consentengine.domain.consent import RULE_OPERATORS, RULE_OUTCOMES, ConditionalRule, RuleOutcome
from consentengine.services.consent.claims import UNDEFINED, resolve_claim_value


logger = logging.getLogger(__name__)


def parse_rule(raw: Any) -> ConditionalRule | None:
    # Accept stored {claim, op|operator, value, result}; malformed entries never match.
    if not isinstance(raw, Mapping):
        return None
    claim = raw.get("claim")
    operator = raw.get("op", raw.get("operator"))
    result = raw.get("result")
    if not isinstance(claim, str) or not claim:
        return None
    if not isinstance(operator, str) or result not in RULE_OUTCOMES:
        return None
    return ConditionalRule(claim=claim, operator=operator, value=raw.get("value"), result=result)  # type: ignore[arg-type]


def parse_rules(raw: Any) -> list[ConditionalRule]:
    """Deserialize a stored rule list, preserving order and dropping malformed entries."""
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("consent_rules_json_invalid")
            return []
    if not isinstance(raw, list):
        return []
    rules: list[ConditionalRule] = []
    for item in raw:
        rule = parse_rule(item)
        if rule is None:
            logger.warning("consent_rule_dropped rule=%r", item)
            continue
        rules.append(rule)
    return rules


def validate_rules(raw: Iterable[Any] | None) -> list[ConditionalRule]:
    # Strict variant for writes: every entry must be a well-formed rule.
    rules: list[ConditionalRule] = []
    for index, item in enumerate(raw or []):
        if isinstance(item, ConditionalRule):
            rule: ConditionalRule | None = item
        else:
            rule = parse_rule(item)
        if rule is None:
            raise ConsentValidationError(f"conditional_rules[{index}] is malformed")
        if rule.operator not in RULE_OPERATORS:
            raise ConsentValidationError(f"conditional_rules[{index}] has unsupported operator: {rule.operator}")
        if rule.operator in {"in", "not_in"} and not isinstance(rule.value, list):
            raise ConsentValidationError(f"conditional_rules[{index}] expects a list value")
        rules.append(rule)
    return rules


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equals(left: Any, right: Any) -> bool:
    # Booleans never equal numbers (True != 1).
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return bool(left == right)


def _contains(candidates: Any, value: Any) -> bool:
    return any(_strict_equals(value, item) for item in candidates)


def rule_matches(rule: ConditionalRule, claims: Mapping[str, Any]) -> bool:
    value = resolve_claim_value(claims, rule.claim)
    operator = rule.operator
    if operator == "exists":
        return value is not UNDEFINED
    # Missing claims fail closed for every comparison operator.
    if value is UNDEFINED:
        return False
    if operator == "eq":
        return _strict_equals(value, rule.value)
    if operator == "neq":
        return not _strict_equals(value, rule.value)
    if operator == "in":
        return isinstance(rule.value, list) and _contains(rule.value, value)
    if operator == "not_in":
        return isinstance(rule.value, list) and not _contains(rule.value, value)
    if operator in {"gt", "gte", "lt", "lte"}:
        if not (_is_number(value) and _is_number(rule.value)):
            return False
        if operator == "gt":
            return value > rule.value
        if operator == "gte":
            return value >= rule.value
        if operator == "lt":
            return value < rule.value
        return value <= rule.value
    return False


def evaluate_conditional_rules(
    rules: Iterable[ConditionalRule],
    claims: Mapping[str, Any],
) -> RuleOutcome | None:
    """Return the result of the first matching rule, or None when no rule matches."""
    for rule in rules:
        if rule_matches(rule, claims):
            return rule.result
    return None
