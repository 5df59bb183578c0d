from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any

from ledger_sync.core.errors import ErrorCode, ValidationError
from ledger_sync.domain.categories import UNCATEGORIZED_ICON, UNCATEGORIZED_NAME
from ledger_sync.models import (
    AccountKind,
    CategorizationRule,
    Category,
    LinkedAccount,
    Provider,
    SyncRun,
    SyncStatus,
    Transaction,
)

UNCATEGORIZED_CATEGORY_ID = "uncategorized"


def uncategorized_category() -> Category:
    return Category(id=UNCATEGORIZED_CATEGORY_ID, user_id=None, name=UNCATEGORIZED_NAME, icon_name=UNCATEGORIZED_ICON)


def require_provider_reference(account: LinkedAccount) -> None:
    """Accounts are linked only with the identifier their kind syncs through."""
    if account.provider_reference:
        return
    field = "mono_account_id" if account.account_kind is AccountKind.BANK else "mtn_phone_number"
    raise ValidationError(
        field, f"{field} is required for {account.account_kind.value} accounts", code=ErrorCode.VALIDATION_REQUIRED_FIELD
    )


def category_name_key(name: str) -> str:
    """Case-insensitive lookup key for category names, shared by every backend."""
    return " ".join(name.split()).casefold()


class LedgerStore(ABC):
    """
    Persistence contract consumed by the sync and categorization services.

    Every lookup is scoped by owner. Categories are visible when global
    (``user_id is None``) or owned by the caller. Implementations seed the
    global Uncategorized category on initialization.
    """

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # Accounts

    @abstractmethod
    async def get_account(self, user_id: str, account_id: str, active_only: bool = True) -> LinkedAccount | None:
        pass

    @abstractmethod
    async def update_account_sync_state(
        self,
        account_id: str,
        *,
        balance: Decimal,
        last_synced_at: datetime,
        institution_name: str | None = None,
    ) -> None:
        pass

    @abstractmethod
    async def link_account(self, account: LinkedAccount) -> LinkedAccount:
        pass

    @abstractmethod
    async def deactivate_account(self, user_id: str, account_id: str) -> bool:
        pass

    @abstractmethod
    async def list_active_accounts(self, user_id: str) -> list[LinkedAccount]:
        pass

    async def total_active_balance(self, user_id: str) -> Decimal:
        accounts = await self.list_active_accounts(user_id)
        return sum((account.balance for account in accounts), Decimal("0"))

    # Transactions

    @abstractmethod
    async def find_transaction_by_provider_id(
        self, user_id: str, provider: Provider, provider_tx_id: str
    ) -> Transaction | None:
        pass

    @abstractmethod
    async def get_transaction(self, user_id: str, transaction_id: str) -> Transaction | None:
        pass

    @abstractmethod
    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        """Persist a new row. Raises StoreError when the provider id is already taken."""
        pass

    @abstractmethod
    async def update_transaction(self, user_id: str, transaction_id: str, changes: dict[str, Any]) -> Transaction:
        """Apply ``changes`` and bump ``updated_at``. Raises TransactionNotFoundError."""
        pass

    @abstractmethod
    async def delete_transaction(self, user_id: str, transaction_id: str) -> bool:
        pass

    @abstractmethod
    async def find_similar_transactions(self, user_id: str, term: str, limit: int = 5) -> list[Transaction]:
        """Categorized transactions whose description contains ``term`` (case-insensitive), newest first."""
        pass

    # Sync runs

    @abstractmethod
    async def create_sync_run(self, run: SyncRun) -> SyncRun:
        pass

    @abstractmethod
    async def complete_sync_run(
        self,
        run_id: str,
        *,
        status: SyncStatus,
        transactions_synced: int,
        error_message: str | None = None,
    ) -> SyncRun:
        """Write the single terminal status. Raises StoreError if the run is missing or already finished."""
        pass

    @abstractmethod
    async def list_sync_runs(self, user_id: str, account_id: str | None = None, limit: int = 10) -> list[SyncRun]:
        pass

    # Categories and rules

    @abstractmethod
    async def find_category_by_name(self, user_id: str, name: str) -> Category | None:
        pass

    @abstractmethod
    async def create_category(self, category: Category) -> Category:
        pass

    @abstractmethod
    async def get_or_create_category(self, category: Category) -> Category:
        """
        Return the category visible to ``category.user_id`` with the same name,
        inserting ``category`` when there is none. Atomic per store.
        """
        pass

    @abstractmethod
    async def get_category(self, user_id: str, category_id: str) -> Category | None:
        pass

    @abstractmethod
    async def list_categories(self, user_id: str) -> list[Category]:
        pass

    @abstractmethod
    async def list_active_rules(self, user_id: str) -> list[CategorizationRule]:
        """Active rules for the owner, highest priority first, with ``category_name`` filled in."""
        pass

    @abstractmethod
    async def add_rule(self, rule: CategorizationRule) -> CategorizationRule:
        pass
