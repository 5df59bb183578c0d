import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from functools import lru_cache

from ledger_sync.classifiers.base import Classifier, TransactionFeatures
from ledger_sync.domain.categories import CATEGORY_DEFINITIONS, AmountProfile, CategoryDefinition
from ledger_sync.models import CategorizationResult, CategorizationRule, TransactionType

KEYWORD_WEIGHT = 0.6
KEYWORD_BONUS = 0.05
MAX_KEYWORD_SCORE = 0.7
PATTERN_WEIGHT = 0.2
AMOUNT_WEIGHT = 0.1
CONTEXT_WEIGHT = 0.1
NEUTRAL_SCORE = 0.5
MAX_CONFIDENCE = 0.95
TYPICAL_TOLERANCE = 0.2


@dataclass
class LabelScore:
    definition: CategoryDefinition
    score: float
    reasons: list[str] = field(default_factory=list)

    @property
    def confidence(self) -> float:
        return min(self.score, MAX_CONFIDENCE)


@lru_cache(maxsize=512)
def _term_pattern(term: str) -> re.Pattern[str]:
    # Whole words only, with an optional plural, so "bus" never fires on "business".
    return re.compile(r"\b" + re.escape(term.lower()) + r"s?\b")


def _term_hits(text: str, terms: Sequence[str]) -> list[str]:
    return [term for term in terms if _term_pattern(term).search(text)]


def amount_score(amount: Decimal | float, profile: AmountProfile | None) -> float:
    if profile is None:
        return NEUTRAL_SCORE
    value = abs(float(amount))
    if not profile.minimum <= value <= profile.maximum:
        return 0.2
    if any(abs(value - typical) <= typical * TYPICAL_TOLERANCE for typical in profile.typical):
        return 1.0
    return 0.7


def context_score(text: str, clues: Sequence[str]) -> float:
    if not clues:
        return NEUTRAL_SCORE
    matches = _term_hits(text, clues)
    if not matches:
        return NEUTRAL_SCORE
    return min(len(matches) / len(clues), 1.0)


def score_label(features: TransactionFeatures, definition: CategoryDefinition) -> LabelScore:
    text = features.text
    result = LabelScore(definition=definition, score=0.0)

    keywords = _term_hits(text, definition.keywords)
    if keywords:
        bonus = KEYWORD_BONUS * (len(keywords) - 1)
        bonus += KEYWORD_BONUS * sum(1 for keyword in keywords if " " in keyword)
        result.score += min(KEYWORD_WEIGHT + bonus, MAX_KEYWORD_SCORE)
        result.reasons.append(f"Matched keywords: {', '.join(keywords)}")

    if any(pattern.search(text) for pattern in definition.merchant_patterns):
        result.score += PATTERN_WEIGHT
        result.reasons.append("Matched merchant patterns")

    result.score += AMOUNT_WEIGHT * amount_score(features.amount, definition.amount_profile)
    result.score += CONTEXT_WEIGHT * context_score(text, definition.context_clues)
    return result


def rank_labels(features: TransactionFeatures) -> list[LabelScore]:
    """Score every catalog label, best first; equal scores keep catalog order."""
    scored = [score_label(features, definition) for definition in CATEGORY_DEFINITIONS]
    return sorted(scored, key=lambda item: item.score, reverse=True)


class HeuristicClassifier(Classifier):
    def __init__(self, threshold: float = 0.40):
        self.threshold = threshold

    def classify(
        self, features: TransactionFeatures, rules: Sequence[CategorizationRule] = ()
    ) -> CategorizationResult | None:
        if not features.text:
            return None
        best = rank_labels(features)[0]
        if best.confidence < self.threshold:
            return None

        suggested = best.definition.type
        if features.amount < 0:
            suggested = TransactionType.EXPENSE
        return CategorizationResult(
            category_label=best.definition.label,
            confidence=round(best.confidence, 4),
            suggested_type=suggested,
            source="heuristic",
            reasons=best.reasons,
        )
