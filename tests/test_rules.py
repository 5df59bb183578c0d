from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from ledger_sync.classifiers.base import TransactionFeatures
from ledger_sync.classifiers.rules import (
    MAX_MATCH_INPUT_LENGTH,
    RuleClassifier,
    UnsafePatternError,
    check_pattern,
    compile_user_pattern,
    parse_amount_range,
    search_with_deadline,
)
from ledger_sync.models import CategorizationRule, RuleType, TransactionType


def make_rule(rule_type: RuleType, value: str, priority: int = 1, **kwargs) -> CategorizationRule:
    kwargs.setdefault("category_id", f"cat-{value}")
    return CategorizationRule(user_id="user-1", rule_type=rule_type, rule_value=value, priority=priority, **kwargs)


@pytest.mark.parametrize(
    "pattern",
    ["", "(a+)+", "(\\w*)*x", "(a)\\1", "(?P<x>a)(?P=x)", "a" * 201, "(a|a)+$", "(a|aa)+", "(?:x|xy){2,}"],
)
def test_unsafe_patterns_rejected(pattern):
    with pytest.raises(UnsafePatternError):
        check_pattern(pattern)
    assert compile_user_pattern(pattern) is None


def test_safe_pattern_compiles_case_insensitive():
    compiled = compile_user_pattern(r"^uber\s+trip")
    assert compiled is not None
    assert compiled.search("UBER TRIP 4521")


def test_invalid_regex_is_rejected_not_raised():
    assert compile_user_pattern("[unclosed") is None


def test_plain_alternation_is_allowed():
    compiled = compile_user_pattern(r"(uber|bolt) trip")
    assert compiled is not None
    assert search_with_deadline(compiled, "Bolt trip to Osu")


def test_search_that_times_out_counts_as_no_match():
    compiled = MagicMock(pattern="slow", search=MagicMock(side_effect=TimeoutError))

    assert search_with_deadline(compiled, "x" * 1000, timeout=0.01) is False
    text = compiled.search.call_args.args[0]
    assert len(text) == MAX_MATCH_INPUT_LENGTH
    assert compiled.search.call_args.kwargs == {"timeout": 0.01}


def test_parse_amount_range():
    assert parse_amount_range("10-50") == (Decimal("10"), Decimal("50"))
    assert parse_amount_range("-50") == (None, Decimal("50"))
    assert parse_amount_range("100-") == (Decimal("100"), None)
    assert parse_amount_range("-") is None
    assert parse_amount_range("abc") is None


def test_higher_priority_rule_wins():
    rules = [
        make_rule(RuleType.KEYWORD, "uber", priority=1, category_name="Transport"),
        make_rule(RuleType.KEYWORD, "trip", priority=5, category_name="Business Travel"),
    ]
    result = RuleClassifier().classify(TransactionFeatures("UBER TRIP 4521", Decimal("-25")), rules)
    assert result is not None
    assert result.category_id == "cat-trip"
    assert result.category_label == "Business Travel"
    assert result.confidence == 1.0
    assert result.source == "rule"
    assert result.suggested_type == TransactionType.EXPENSE


def test_inactive_rules_are_skipped():
    rules = [make_rule(RuleType.KEYWORD, "uber", is_active=False)]
    assert RuleClassifier().classify(TransactionFeatures("UBER TRIP", Decimal("-25")), rules) is None


def test_merchant_rule_requires_merchant_name():
    rule = make_rule(RuleType.MERCHANT, "shoprite")
    classifier = RuleClassifier()
    assert classifier.classify(TransactionFeatures("groceries", Decimal("-40")), [rule]) is None
    result = classifier.classify(TransactionFeatures("groceries", Decimal("-40"), merchant_name="Shoprite Accra"), [rule])
    assert result is not None
    assert result.category_id == "cat-shoprite"


def test_amount_range_rule_uses_absolute_amount():
    rule = make_rule(RuleType.AMOUNT_RANGE, "100-200")
    classifier = RuleClassifier()
    assert classifier.classify(TransactionFeatures("rent share", Decimal("-150")), [rule]) is not None
    assert classifier.classify(TransactionFeatures("rent share", Decimal("-250")), [rule]) is None


def test_pattern_rule_and_income_polarity_from_category_name():
    rule = make_rule(RuleType.PATTERN, r"acme\s+ltd", category_name="Salary")
    result = RuleClassifier().classify(TransactionFeatures("ACME LTD MONTHLY", Decimal("4000")), [rule])
    assert result is not None
    assert result.suggested_type == TransactionType.INCOME


def test_unsafe_pattern_rule_never_matches():
    rule = make_rule(RuleType.PATTERN, "(a+)+$")
    assert RuleClassifier().classify(TransactionFeatures("aaaaaaaaaaaaaaaaaaaaaaaa!", Decimal("-1")), [rule]) is None


def test_pattern_rule_search_is_time_limited(monkeypatch):
    slow = MagicMock(pattern="acme", search=MagicMock(side_effect=TimeoutError))
    monkeypatch.setattr("ledger_sync.classifiers.rules.compile_user_pattern", lambda pattern: slow)
    rule = make_rule(RuleType.PATTERN, "acme")

    assert RuleClassifier().classify(TransactionFeatures("ACME LTD", Decimal("-1")), [rule]) is None
    assert "timeout" in slow.search.call_args.kwargs
