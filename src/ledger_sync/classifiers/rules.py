import re
from collections.abc import Sequence
from decimal import Decimal, InvalidOperation
from functools import lru_cache

import regex

from ledger_sync.classifiers.base import Classifier, TransactionFeatures
from ledger_sync.domain.categories import infer_type_from_text, label_for_name, polarity_for_label
from ledger_sync.logger import get_logger
from ledger_sync.models import CategorizationResult, CategorizationRule, RuleType, TransactionType

logger = get_logger(__name__)

MAX_PATTERN_LENGTH = 200
MAX_MATCH_INPUT_LENGTH = 500
MATCH_TIMEOUT_SECONDS = 0.1

_QUANTIFIER = r"(?:[+*]|\{\d+(?:,\d*)?\})"
_NESTED_QUANTIFIER_RE = re.compile(
    r"\((?:[^()\\]|\\.)*" + _QUANTIFIER + r"(?:[^()\\]|\\.)*\)\s*" + _QUANTIFIER
)
_QUANTIFIED_ALTERNATION_RE = re.compile(
    r"\((?:[^()\\]|\\.)*\|(?:[^()\\]|\\.)*\)\s*" + _QUANTIFIER
)
_BACKREFERENCE_RE = re.compile(r"\\[1-9]|\(\?P=")
_AMOUNT_RANGE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)?\s*-\s*(\d+(?:\.\d+)?)?\s*$")


class UnsafePatternError(ValueError):
    pass


def check_pattern(pattern: str) -> None:
    """Raise UnsafePatternError for patterns that could backtrack catastrophically."""
    if not pattern:
        raise UnsafePatternError("empty pattern")
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise UnsafePatternError(f"pattern longer than {MAX_PATTERN_LENGTH} characters")
    if _BACKREFERENCE_RE.search(pattern):
        raise UnsafePatternError("back-references are not allowed")
    if _NESTED_QUANTIFIER_RE.search(pattern):
        raise UnsafePatternError("nested quantifiers are not allowed")
    if _QUANTIFIED_ALTERNATION_RE.search(pattern):
        raise UnsafePatternError("quantified alternations are not allowed")


@lru_cache(maxsize=256)
def compile_user_pattern(pattern: str) -> regex.Pattern | None:
    """Compile a user-supplied pattern, or return None when it is rejected."""
    try:
        check_pattern(pattern)
        return regex.compile(pattern, regex.IGNORECASE)
    except (UnsafePatternError, regex.error) as exc:
        logger.warning("[RULES] Rejected pattern %r: %s", pattern, exc)
        return None


def search_with_deadline(compiled: regex.Pattern, text: str, timeout: float = MATCH_TIMEOUT_SECONDS) -> bool:
    """Search user input under a time limit; a search that runs out of time counts as no match."""
    try:
        return compiled.search(text[:MAX_MATCH_INPUT_LENGTH], timeout=timeout) is not None
    except TimeoutError:
        logger.warning("[RULES] Pattern %r timed out after %.2fs", compiled.pattern, timeout)
        return False


def parse_amount_range(value: str) -> tuple[Decimal | None, Decimal | None] | None:
    """Parse ``"min-max"``; either bound may be left empty."""
    match = _AMOUNT_RANGE_RE.match(value or "")
    if not match or (match.group(1) is None and match.group(2) is None):
        return None
    try:
        low = Decimal(match.group(1)) if match.group(1) else None
        high = Decimal(match.group(2)) if match.group(2) else None
    except InvalidOperation:
        return None
    return low, high


def rule_matches(rule: CategorizationRule, features: TransactionFeatures) -> bool:
    value = rule.rule_value or ""
    if rule.rule_type is RuleType.KEYWORD:
        return bool(value) and value.lower() in features.description.lower()
    if rule.rule_type is RuleType.MERCHANT:
        return bool(value) and bool(features.merchant_name) and value.lower() in features.merchant_name.lower()
    if rule.rule_type is RuleType.PATTERN:
        compiled = compile_user_pattern(value)
        if compiled is None:
            return False
        return search_with_deadline(compiled, features.description)
    if rule.rule_type is RuleType.AMOUNT_RANGE:
        bounds = parse_amount_range(value)
        if bounds is None:
            logger.warning("[RULES] Ignoring malformed amount range %r on rule %s", value, rule.id)
            return False
        low, high = bounds
        amount = abs(features.amount)
        return (low is None or amount >= low) and (high is None or amount <= high)
    return False


class RuleClassifier(Classifier):
    """Evaluates a user's own rules; the first active match in priority order wins outright."""

    def classify(
        self, features: TransactionFeatures, rules: Sequence[CategorizationRule] = ()
    ) -> CategorizationResult | None:
        ordered = sorted(
            (rule for rule in rules if rule.is_active),
            key=lambda rule: rule.priority,
            reverse=True,
        )
        for rule in ordered:
            if not rule_matches(rule, features):
                continue
            polarity = polarity_for_label(label_for_name(rule.category_name or ""))
            if features.amount < 0:
                suggested = TransactionType.EXPENSE
            else:
                suggested = polarity or infer_type_from_text(features.text, features.amount)
            return CategorizationResult(
                category_label=rule.category_name or rule.category_id,
                confidence=1.0,
                suggested_type=suggested,
                source="rule",
                category_id=rule.category_id,
                reasons=[f"{rule.rule_type.value} rule '{rule.rule_value}' (priority {rule.priority})"],
            )
        return None
