from collections.abc import Sequence
from decimal import Decimal
from typing import Any

from ledger_sync.classifiers.base import Classifier, TransactionFeatures
from ledger_sync.classifiers.heuristic import HeuristicClassifier, LabelScore, rank_labels
from ledger_sync.classifiers.rules import RuleClassifier
from ledger_sync.domain.categories import UNCATEGORIZED_LABEL, infer_type_from_text
from ledger_sync.domain.transactions import parse_amount
from ledger_sync.logger import get_logger
from ledger_sync.models import CategorizationResult, CategorizationRule

logger = get_logger(__name__)

FALLBACK_CONFIDENCE = 0.3
EMPTY_TEXT_CONFIDENCE = 0.2


def build_features(
    description: Any,
    amount: Any,
    counterparty: dict[str, Any] | None = None,
    merchant_name: Any = None,
) -> TransactionFeatures:
    """Coerce loosely typed input into features; anything unusable becomes empty/zero."""
    parsed_amount = parse_amount(amount)
    return TransactionFeatures(
        description=description if isinstance(description, str) else "",
        amount=parsed_amount if parsed_amount is not None else Decimal("0"),
        merchant_name=merchant_name if isinstance(merchant_name, str) else "",
        counterparty=counterparty if isinstance(counterparty, dict) else None,
    )


def fallback_result(features: TransactionFeatures, reason: str) -> CategorizationResult:
    text = features.text
    return CategorizationResult(
        category_label=UNCATEGORIZED_LABEL,
        confidence=FALLBACK_CONFIDENCE if text else EMPTY_TEXT_CONFIDENCE,
        suggested_type=infer_type_from_text(text, features.amount),
        source="fallback",
        reasons=[reason],
    )


class CategorizerService:
    def __init__(self, heuristic_threshold: float = 0.40):
        self.classifiers: list[Classifier] = []

        # 1. User rules (highest priority)
        self.rules = RuleClassifier()
        self.classifiers.append(self.rules)

        # 2. Keyword/pattern heuristics
        self.heuristic = HeuristicClassifier(threshold=heuristic_threshold)
        self.classifiers.append(self.heuristic)

    def categorize(
        self,
        description: str,
        amount: Decimal | float | int | str,
        counterparty: dict[str, Any] | None = None,
        merchant_name: str | None = None,
        rules: Sequence[CategorizationRule] = (),
    ) -> CategorizationResult:
        features = build_features(description, amount, counterparty, merchant_name)
        try:
            return self._run_chain(features, rules)
        except Exception:
            logger.exception("[CATEGORIZE] Classifier chain failed for '%s'", features.description[:50])
            return fallback_result(features, "Categorization failed - manual categorization recommended")

    def _run_chain(
        self, features: TransactionFeatures, rules: Sequence[CategorizationRule]
    ) -> CategorizationResult:
        for classifier in self.classifiers:
            classifier_name = classifier.__class__.__name__
            result = classifier.classify(features, rules)
            if result:
                logger.debug(
                    "[CATEGORIZE] %s returned '%s' (confidence: %.2f) for '%s'",
                    classifier_name,
                    result.category_label,
                    result.confidence,
                    features.description[:50],
                )
                return result
            logger.debug("[CATEGORIZE] %s returned: None", classifier_name)

        if not features.text:
            return fallback_result(features, "Empty description - manual categorization recommended")
        return fallback_result(features, "No confident match - manual categorization recommended")

    def rank(
        self,
        description: str,
        amount: Decimal | float | int | str,
        merchant_name: str | None = None,
    ) -> list[LabelScore]:
        """Heuristic candidates at or above the acceptance threshold, best first."""
        features = build_features(description, amount, None, merchant_name)
        if not features.text:
            return []
        return [item for item in rank_labels(features) if item.confidence >= self.heuristic.threshold]
