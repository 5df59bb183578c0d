from dataclasses import dataclass, field
from decimal import Decimal

from ledger_sync.core.errors import (
    CategoryNotFoundError,
    ErrorCode,
    ImmutableTransactionError,
    TransactionNotFoundError,
    ValidationError,
)
from ledger_sync.domain.transactions import filter_user_update
from ledger_sync.logger import get_logger
from ledger_sync.models import Transaction, TransactionUpdate
from ledger_sync.store.base import LedgerStore

logger = get_logger(__name__)

MAX_MANUAL_AMOUNT = Decimal("100000")


@dataclass
class EditResult:
    transaction: Transaction
    ignored_fields: list[str] = field(default_factory=list)


def validate_amount(amount: Decimal) -> None:
    if amount <= 0:
        raise ValidationError(
            "amount", "Amount must be greater than zero", str(amount), code=ErrorCode.VALIDATION_INVALID_RANGE
        )
    if amount > MAX_MANUAL_AMOUNT:
        raise ValidationError(
            "amount",
            f"Amount must not exceed {MAX_MANUAL_AMOUNT}",
            str(amount),
            code=ErrorCode.VALIDATION_INVALID_RANGE,
        )


class TransactionEditor:
    """
    User-facing edits. Synced rows belong to the provider: only their
    category can change, and they cannot be deleted.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    async def _load(self, user_id: str, transaction_id: str) -> Transaction:
        transaction = await self.store.get_transaction(user_id, transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    async def update(self, user_id: str, transaction_id: str, update: TransactionUpdate) -> EditResult:
        transaction = await self._load(user_id, transaction_id)
        changes, ignored = filter_user_update(transaction, update)
        if ignored:
            logger.info(
                "[EDIT] Ignoring provider-owned fields on synced transaction %s: %s",
                transaction_id,
                ", ".join(ignored),
            )

        if "amount" in changes:
            if changes["amount"] is None:
                raise ValidationError("amount", "Amount is required", None, code=ErrorCode.VALIDATION_REQUIRED_FIELD)
            validate_amount(changes["amount"])
        for required in ("type", "transaction_date"):
            if required in changes and changes[required] is None:
                raise ValidationError(
                    required, f"{required} is required", None, code=ErrorCode.VALIDATION_REQUIRED_FIELD
                )
        if "description" in changes and changes["description"] is None:
            changes["description"] = ""

        if "category_id" in changes:
            category_id = changes["category_id"]
            if category_id is not None and await self.store.get_category(user_id, category_id) is None:
                raise CategoryNotFoundError(f"Category {category_id} not found")
            if category_id != transaction.category_id:
                changes["auto_categorized"] = False
                changes["categorization_confidence"] = None

        if not changes:
            return EditResult(transaction=transaction, ignored_fields=ignored)

        updated = await self.store.update_transaction(user_id, transaction_id, changes)
        return EditResult(transaction=updated, ignored_fields=ignored)

    async def delete(self, user_id: str, transaction_id: str) -> None:
        transaction = await self._load(user_id, transaction_id)
        if transaction.is_provider_owned:
            raise ImmutableTransactionError(
                f"Transaction {transaction_id} was imported from a provider and cannot be deleted"
            )
        await self.store.delete_transaction(user_id, transaction_id)
        logger.info("[EDIT] Deleted manual transaction %s", transaction_id)
