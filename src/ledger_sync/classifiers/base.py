from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from ledger_sync.models import CategorizationResult, CategorizationRule


@dataclass(frozen=True)
class TransactionFeatures:
    description: str
    amount: Decimal
    merchant_name: str = ""
    counterparty: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        """Description and merchant lower-cased into a single search string."""
        return f"{self.description} {self.merchant_name}".strip().lower()


class Classifier(ABC):
    @abstractmethod
    def classify(
        self, features: TransactionFeatures, rules: Sequence[CategorizationRule] = ()
    ) -> CategorizationResult | None:
        """Attempt to categorize the transaction."""
        pass
