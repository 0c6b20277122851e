from __future__ import annotations

import json

import pytest

from consentengine.core.errors import ConsentValidationError
from consentengine.domain.consent import ConditionalRule
from consentengine.services.consent.rules import (
    evaluate_conditional_rules,
    parse_rules,
    rule_matches,
    validate_rules,
)


def _rule(claim: str, operator: str, value, result: str = "required") -> ConditionalRule:
    return ConditionalRule(claim=claim, operator=operator, value=value, result=result)  # type: ignore[arg-type]


def test_first_matching_rule_wins() -> None:
    rules = [
        _rule("address.country", "eq", "US", "hidden"),
        _rule("address.country", "in", ["JP", "KR"], "optional"),
        _rule("address.country", "exists", None, "required"),
    ]
    assert evaluate_conditional_rules(rules, {"address": {"country": "JP"}}) == "optional"
    assert evaluate_conditional_rules(rules, {"address": {"country": "US"}}) == "hidden"
    assert evaluate_conditional_rules(rules, {"address": {"country": "FR"}}) == "required"


def test_no_match_returns_none() -> None:
    assert evaluate_conditional_rules([_rule("locale", "eq", "ja")], {"locale": "en"}) is None
    assert evaluate_conditional_rules([], {"locale": "en"}) is None


@pytest.mark.parametrize("operator", ["eq", "neq", "in", "not_in", "gt", "gte", "lt", "lte"])
def test_missing_claim_never_matches(operator: str) -> None:
    value = [1] if operator in {"in", "not_in"} else 1
    assert rule_matches(_rule("metadata.tier", operator, value), {}) is False


def test_exists_matches_present_null() -> None:
    assert rule_matches(_rule("metadata.plan", "exists", None), {"metadata": {"plan": None}})
    assert not rule_matches(_rule("metadata.plan", "exists", None), {"metadata": {}})


def test_equality_keeps_booleans_apart_from_numbers() -> None:
    assert rule_matches(_rule("email_verified", "eq", True), {"email_verified": True})
    assert not rule_matches(_rule("email_verified", "eq", 1), {"email_verified": True})
    assert rule_matches(_rule("email_verified", "neq", 1), {"email_verified": True})
    assert not rule_matches(_rule("metadata.count", "in", [True]), {"metadata": {"count": 1}})


def test_membership_requires_list_value() -> None:
    claims = {"locale": "ja"}
    assert rule_matches(_rule("locale", "in", ["ja", "ko"]), claims)
    assert not rule_matches(_rule("locale", "in", "ja"), claims)
    assert not rule_matches(_rule("locale", "not_in", "en"), claims)
    assert rule_matches(_rule("locale", "not_in", ["en"]), claims)


def test_numeric_comparisons_require_numbers() -> None:
    claims = {"birthdate": "2000-01-01", "metadata": {"score": "18", "flag": True}}
    assert rule_matches(_rule("birthdate_age", "gte", 18), claims)
    assert not rule_matches(_rule("birthdate_age", "lt", 18), claims)
    assert not rule_matches(_rule("metadata.score", "gte", 18), claims)
    assert not rule_matches(_rule("metadata.flag", "gt", 0), claims)
    assert not rule_matches(_rule("birthdate_age", "gt", "10"), claims)


def test_unknown_operator_never_matches() -> None:
    assert not rule_matches(_rule("locale", "matches", "ja"), {"locale": "ja"})


def test_parse_rules_accepts_both_operator_keys() -> None:
    raw = [
        {"claim": "locale", "op": "eq", "value": "ja", "result": "optional"},
        {"claim": "address.country", "operator": "in", "value": ["EU"], "result": "required"},
    ]
    rules = parse_rules(raw)
    assert [rule.operator for rule in rules] == ["eq", "in"]
    assert parse_rules(json.dumps(raw)) == rules


def test_parse_rules_drops_malformed_entries() -> None:
    raw = [
        "locale=ja",
        {"op": "eq", "value": "ja", "result": "optional"},
        {"claim": "locale", "op": "eq", "value": "ja", "result": "mandatory"},
        {"claim": "locale", "op": "eq", "value": "ja", "result": "hidden"},
    ]
    rules = parse_rules(raw)
    assert len(rules) == 1
    assert rules[0].result == "hidden"
    assert parse_rules(None) == []
    assert parse_rules("{not json") == []
    assert parse_rules({"claim": "locale"}) == []


def test_validate_rules_rejects_unsupported_shapes() -> None:
    assert validate_rules([{"claim": "locale", "op": "exists", "result": "required"}])[0].to_json() == {
        "claim": "locale",
        "op": "exists",
        "result": "required",
    }
    with pytest.raises(ConsentValidationError):
        validate_rules([{"claim": "locale", "op": "matches", "value": "ja", "result": "required"}])
    with pytest.raises(ConsentValidationError):
        validate_rules([{"claim": "locale", "op": "in", "value": "ja", "result": "required"}])
    with pytest.raises(ConsentValidationError):
        validate_rules([{"claim": "locale", "op": "eq", "value": "ja"}])
