import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any

from ledger_sync.core.errors import StoreError, TransactionNotFoundError
from ledger_sync.models import (
    CategorizationRule,
    Category,
    LinkedAccount,
    Provider,
    SyncRun,
    SyncStatus,
    Transaction,
    utcnow,
)
from ledger_sync.store.base import (
    LedgerStore,
    category_name_key,
    require_provider_reference,
    uncategorized_category,
)


def _provider_key(transaction: Transaction) -> tuple[str, Provider, str] | None:
    if transaction.mono_transaction_id:
        return transaction.user_id, Provider.MONO, transaction.mono_transaction_id
    if transaction.mtn_reference_id:
        return transaction.user_id, Provider.MTN_MOMO, transaction.mtn_reference_id
    return None


class InMemoryStore(LedgerStore):
    """Process-local store. Returned models are copies; mutate through the store methods."""

    def __init__(self) -> None:
        self.accounts: dict[str, LinkedAccount] = {}
        self.transactions: dict[str, Transaction] = {}
        self.sync_runs: dict[str, SyncRun] = {}
        self.categories: dict[str, Category] = {}
        self.rules: dict[str, CategorizationRule] = {}
        self._provider_index: dict[tuple[str, Provider, str], str] = {}
        self._lock = asyncio.Lock()

        seed = uncategorized_category()
        self.categories[seed.id] = seed

    # Accounts

    async def get_account(self, user_id: str, account_id: str, active_only: bool = True) -> LinkedAccount | None:
        account = self.accounts.get(account_id)
        if account is None or account.user_id != user_id:
            return None
        if active_only and not account.is_active:
            return None
        return account.model_copy(deep=True)

    async def update_account_sync_state(
        self,
        account_id: str,
        *,
        balance: Decimal,
        last_synced_at: datetime,
        institution_name: str | None = None,
    ) -> None:
        account = self.accounts.get(account_id)
        if account is None:
            raise StoreError(f"Account {account_id} not found")
        account.balance = balance
        account.last_synced_at = last_synced_at
        if institution_name:
            account.institution_name = institution_name

    async def link_account(self, account: LinkedAccount) -> LinkedAccount:
        require_provider_reference(account)
        self.accounts[account.id] = account.model_copy(deep=True)
        return account

    async def deactivate_account(self, user_id: str, account_id: str) -> bool:
        account = self.accounts.get(account_id)
        if account is None or account.user_id != user_id:
            return False
        account.is_active = False
        return True

    async def list_active_accounts(self, user_id: str) -> list[LinkedAccount]:
        return [
            account.model_copy(deep=True)
            for account in self.accounts.values()
            if account.user_id == user_id and account.is_active
        ]

    # Transactions

    async def find_transaction_by_provider_id(
        self, user_id: str, provider: Provider, provider_tx_id: str
    ) -> Transaction | None:
        transaction_id = self._provider_index.get((user_id, provider, provider_tx_id))
        if transaction_id is None:
            return None
        return self.transactions[transaction_id].model_copy(deep=True)

    async def get_transaction(self, user_id: str, transaction_id: str) -> Transaction | None:
        transaction = self.transactions.get(transaction_id)
        if transaction is None or transaction.user_id != user_id:
            return None
        return transaction.model_copy(deep=True)

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        async with self._lock:
            key = _provider_key(transaction)
            if key is not None and key in self._provider_index:
                raise StoreError(f"Duplicate provider transaction id {key[2]}")
            if transaction.id in self.transactions:
                raise StoreError(f"Duplicate transaction id {transaction.id}")
            stored = transaction.model_copy(deep=True)
            self.transactions[stored.id] = stored
            if key is not None:
                self._provider_index[key] = stored.id
        return stored.model_copy(deep=True)

    async def update_transaction(self, user_id: str, transaction_id: str, changes: dict[str, Any]) -> Transaction:
        current = self.transactions.get(transaction_id)
        if current is None or current.user_id != user_id:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        data = current.model_dump()
        data.update(changes)
        data["updated_at"] = utcnow()
        updated = Transaction.model_validate(data)
        self.transactions[transaction_id] = updated
        return updated.model_copy(deep=True)

    async def delete_transaction(self, user_id: str, transaction_id: str) -> bool:
        current = self.transactions.get(transaction_id)
        if current is None or current.user_id != user_id:
            return False
        del self.transactions[transaction_id]
        key = _provider_key(current)
        if key is not None:
            self._provider_index.pop(key, None)
        return True

    async def find_similar_transactions(self, user_id: str, term: str, limit: int = 5) -> list[Transaction]:
        needle = term.lower()
        if not needle:
            return []
        matches = [
            transaction
            for transaction in self.transactions.values()
            if transaction.user_id == user_id
            and transaction.category_id
            and needle in transaction.description.lower()
        ]
        matches.sort(key=lambda transaction: transaction.transaction_date, reverse=True)
        return [transaction.model_copy(deep=True) for transaction in matches[:limit]]

    # Sync runs

    async def create_sync_run(self, run: SyncRun) -> SyncRun:
        self.sync_runs[run.id] = run.model_copy(deep=True)
        return run

    async def complete_sync_run(
        self,
        run_id: str,
        *,
        status: SyncStatus,
        transactions_synced: int,
        error_message: str | None = None,
    ) -> SyncRun:
        async with self._lock:
            run = self.sync_runs.get(run_id)
            if run is None:
                raise StoreError(f"Sync run {run_id} not found")
            if run.status is not SyncStatus.IN_PROGRESS:
                raise StoreError(f"Sync run {run_id} already finished with status {run.status.value}")
            if status is SyncStatus.IN_PROGRESS:
                raise StoreError("Terminal status required")
            run.status = status
            run.transactions_synced = transactions_synced
            run.error_message = error_message
            run.completed_at = utcnow()
        return run.model_copy(deep=True)

    async def list_sync_runs(self, user_id: str, account_id: str | None = None, limit: int = 10) -> list[SyncRun]:
        runs = [
            run
            for run in self.sync_runs.values()
            if run.user_id == user_id and (account_id is None or run.account_id == account_id)
        ]
        runs.sort(key=lambda run: run.started_at, reverse=True)
        return [run.model_copy(deep=True) for run in runs[:limit]]

    # Categories and rules

    def _visible(self, category: Category, user_id: str | None) -> bool:
        return category.user_id is None or category.user_id == user_id

    def _find_by_name(self, user_id: str | None, name: str) -> Category | None:
        wanted = category_name_key(name)
        matches = [
            category
            for category in self.categories.values()
            if self._visible(category, user_id) and category_name_key(category.name) == wanted
        ]
        if not matches:
            return None
        # Owner-private categories shadow global ones of the same name.
        matches.sort(key=lambda category: category.user_id is None)
        return matches[0]

    def _insert_category(self, category: Category) -> None:
        wanted = category_name_key(category.name)
        for existing in self.categories.values():
            if existing.user_id == category.user_id and category_name_key(existing.name) == wanted:
                raise StoreError(f"Category '{category.name}' already exists")
        self.categories[category.id] = category.model_copy()

    async def find_category_by_name(self, user_id: str, name: str) -> Category | None:
        found = self._find_by_name(user_id, name)
        return found.model_copy() if found else None

    async def create_category(self, category: Category) -> Category:
        async with self._lock:
            self._insert_category(category)
        return category

    async def get_or_create_category(self, category: Category) -> Category:
        async with self._lock:
            existing = self._find_by_name(category.user_id, category.name)
            if existing is not None:
                return existing.model_copy()
            self._insert_category(category)
            return category.model_copy()

    async def get_category(self, user_id: str, category_id: str) -> Category | None:
        category = self.categories.get(category_id)
        if category is None or not self._visible(category, user_id):
            return None
        return category.model_copy()

    async def list_categories(self, user_id: str) -> list[Category]:
        visible = [category for category in self.categories.values() if self._visible(category, user_id)]
        visible.sort(key=lambda category: category_name_key(category.name))
        return [category.model_copy() for category in visible]

    async def list_active_rules(self, user_id: str) -> list[CategorizationRule]:
        rules = [rule for rule in self.rules.values() if rule.user_id == user_id and rule.is_active]
        rules.sort(key=lambda rule: rule.priority, reverse=True)
        result = []
        for rule in rules:
            category = self.categories.get(rule.category_id)
            result.append(rule.model_copy(update={"category_name": category.name if category else None}))
        return result

    async def add_rule(self, rule: CategorizationRule) -> CategorizationRule:
        self.rules[rule.id] = rule.model_copy(update={"category_name": None})
        return rule
