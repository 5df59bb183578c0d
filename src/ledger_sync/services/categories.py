from decimal import Decimal

from rapidfuzz import fuzz
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_fixed

from ledger_sync.core.errors import (
    CategoryNotFoundError,
    ErrorCode,
    LedgerSyncError,
    StoreError,
    TransactionNotFoundError,
    ValidationError,
)
from ledger_sync.core.settings import get_recategorize_retry_policy
from ledger_sync.domain.categories import (
    UNCATEGORIZED_LABEL,
    candidate_names,
    icon_for_label,
    titleize_label,
)
from ledger_sync.logger import get_logger
from ledger_sync.manager import CategorizerService
from ledger_sync.models import BulkResult, CategorizationResult, Category, CategorySuggestion
from ledger_sync.store.base import LedgerStore, uncategorized_category

logger = get_logger(__name__)

DEFAULT_SUGGESTION_LIMIT = 5
SIMILAR_TRANSACTION_LIMIT = 5


class CategoryResolver:
    """Maps classification labels onto stored categories, creating owner-private ones on first use."""

    def __init__(self, store: LedgerStore):
        self.store = store

    async def lookup(self, user_id: str, label: str) -> Category | None:
        for name in candidate_names(label):
            category = await self.store.find_category_by_name(user_id, name)
            if category:
                return category
        return None

    async def resolve(self, user_id: str, label: str) -> Category:
        label = (label or UNCATEGORIZED_LABEL).strip().lower()
        existing = await self.lookup(user_id, label)
        if existing:
            return existing

        if label == UNCATEGORIZED_LABEL:
            category = uncategorized_category()
        else:
            category = Category(user_id=user_id, name=titleize_label(label), icon_name=icon_for_label(label))
        # Concurrent syncs may resolve the same new label; the store settles on one row.
        stored = await self.store.get_or_create_category(category)
        if stored.id == category.id:
            logger.info("[CATEGORIZE] Created category '%s' for user %s", stored.name, user_id)
        return stored

    async def resolve_result(self, user_id: str, result: CategorizationResult) -> Category:
        """Rule results already name a category id; everything else goes through the label."""
        if result.category_id:
            category = await self.store.get_category(user_id, result.category_id)
            if category:
                return category
            logger.warning(
                "[CATEGORIZE] Rule category %s no longer visible to user %s, resolving by label",
                result.category_id,
                user_id,
            )
            return await self.resolve(user_id, UNCATEGORIZED_LABEL)
        return await self.resolve(user_id, result.category_label)


def _suggestion_from_category(
    category: Category, *, source: str, label: str | None = None, confidence: float | None = None
) -> CategorySuggestion:
    return CategorySuggestion(
        name=category.name,
        icon_name=category.icon_name,
        category_id=category.id,
        label=label,
        confidence=confidence,
        source=source,
    )


class CategoryService:
    """Category suggestion, single feedback and bulk re-categorization for one store."""

    def __init__(
        self,
        store: LedgerStore,
        categorizer: CategorizerService,
        resolver: CategoryResolver | None = None,
        max_attempts: int | None = None,
        retry_delay: float | None = None,
    ):
        self.store = store
        self.categorizer = categorizer
        self.resolver = resolver or CategoryResolver(store)
        default_attempts, default_delay = get_recategorize_retry_policy()
        self.max_attempts = max_attempts if max_attempts is not None else default_attempts
        self.retry_delay = retry_delay if retry_delay is not None else default_delay

    async def _label_suggestion(
        self, user_id: str, label: str, *, source: str, confidence: float | None
    ) -> CategorySuggestion:
        category = await self.resolver.lookup(user_id, label)
        if category:
            return _suggestion_from_category(category, source=source, label=label, confidence=confidence)
        return CategorySuggestion(
            name=titleize_label(label),
            icon_name=icon_for_label(label),
            label=label,
            confidence=confidence,
            source=source,
        )

    async def suggest_categories(
        self,
        user_id: str,
        description: str,
        amount: Decimal | float,
        merchant_name: str | None = None,
        limit: int = DEFAULT_SUGGESTION_LIMIT,
    ) -> list[CategorySuggestion]:
        if limit < 1:
            raise ValidationError("limit", "limit must be at least 1", limit, code=ErrorCode.VALIDATION_INVALID_RANGE)

        description = description or ""
        suggestions: list[CategorySuggestion] = []
        seen: set[str] = set()

        def add(suggestion: CategorySuggestion) -> None:
            key = suggestion.category_id or suggestion.name.lower()
            name_key = suggestion.name.lower()
            if key in seen or name_key in seen:
                return
            seen.update({key, name_key})
            suggestions.append(suggestion)

        rules = await self.store.list_active_rules(user_id)
        winner = self.categorizer.categorize(description, amount, merchant_name=merchant_name, rules=rules)
        if winner.category_id:
            category = await self.store.get_category(user_id, winner.category_id)
            if category:
                add(_suggestion_from_category(category, source=winner.source, confidence=winner.confidence))
        elif winner.category_label != UNCATEGORIZED_LABEL:
            add(await self._label_suggestion(
                user_id, winner.category_label, source=winner.source, confidence=winner.confidence
            ))

        for candidate in self.categorizer.rank(description, amount, merchant_name):
            if candidate.definition.label == winner.category_label:
                continue
            add(await self._label_suggestion(
                user_id,
                candidate.definition.label,
                source="heuristic",
                confidence=round(candidate.confidence, 4),
            ))

        words = description.split()
        if words:
            similar = await self.store.find_similar_transactions(user_id, words[0], limit=SIMILAR_TRANSACTION_LIMIT)
            similar.sort(key=lambda tx: fuzz.token_sort_ratio(description, tx.description), reverse=True)
            for transaction in similar:
                if not transaction.category_id:
                    continue
                category = await self.store.get_category(user_id, transaction.category_id)
                if category:
                    add(_suggestion_from_category(category, source="history"))

        suggestions = suggestions[:limit]
        if len(suggestions) < limit:
            uncategorized = await self.resolver.lookup(user_id, UNCATEGORIZED_LABEL) or uncategorized_category()
            add(_suggestion_from_category(uncategorized, source="fallback", label=UNCATEGORIZED_LABEL))
        return suggestions

    async def _require_category(self, user_id: str, category_id: str) -> Category:
        if not category_id:
            raise ValidationError(
                "category_id", "category_id is required", category_id, code=ErrorCode.VALIDATION_REQUIRED_FIELD
            )
        category = await self.store.get_category(user_id, category_id)
        if category is None:
            raise CategoryNotFoundError(f"Category {category_id} not found")
        return category

    async def _apply_manual_category(self, user_id: str, transaction_id: str, category_id: str) -> None:
        await self.store.update_transaction(
            user_id,
            transaction_id,
            {
                "category_id": category_id,
                "auto_categorized": False,
                "categorization_confidence": None,
            },
        )

    async def provide_category_feedback(self, user_id: str, transaction_id: str, category_id: str) -> None:
        await self._require_category(user_id, category_id)
        await self._apply_manual_category(user_id, transaction_id, category_id)
        logger.info("[CATEGORIZE] Transaction %s manually set to category %s", transaction_id, category_id)

    async def _update_with_retry(self, user_id: str, transaction_id: str, category_id: str) -> None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(StoreError),
        ):
            with attempt:
                await self._apply_manual_category(user_id, transaction_id, category_id)

    async def bulk_recategorize(self, user_id: str, transaction_ids: list[str], category_id: str) -> BulkResult:
        await self._require_category(user_id, category_id)

        result = BulkResult()
        for transaction_id in transaction_ids:
            try:
                await self._update_with_retry(user_id, transaction_id, category_id)
            except RetryError as exc:
                last = exc.last_attempt.exception()
                result.errors.append(
                    f"{transaction_id}: {ErrorCode.STORE_TIMEOUT.value} - gave up after "
                    f"{self.max_attempts} attempts ({last})"
                )
                continue
            except TransactionNotFoundError:
                result.errors.append(f"{transaction_id}: Transaction not found")
                continue
            except LedgerSyncError as exc:
                result.errors.append(f"{transaction_id}: {exc.message}")
                continue
            result.updated += 1
            result.updated_ids.append(transaction_id)

        logger.info(
            "[CATEGORIZE] Bulk re-categorization to %s: %d updated, %d errors",
            category_id,
            result.updated,
            len(result.errors),
        )
        return result
