import asyncio
import json
import sqlite3
import threading
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any, TypeVar

from ledger_sync.core.errors import StoreError, TransactionNotFoundError
from ledger_sync.logger import get_logger
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

logger = get_logger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS linked_accounts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    account_name TEXT NOT NULL,
    account_kind TEXT NOT NULL,
    institution_name TEXT NOT NULL DEFAULT '',
    balance TEXT NOT NULL DEFAULT '0',
    mono_account_id TEXT,
    mtn_phone_number TEXT,
    mtn_reference_id TEXT,
    last_synced_at TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS categories (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL,
    icon_name TEXT NOT NULL DEFAULT 'circle'
);

CREATE TABLE IF NOT EXISTS categorization_rules (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    category_id TEXT NOT NULL,
    rule_type TEXT NOT NULL,
    rule_value TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    priority INTEGER NOT NULL DEFAULT 1,
    FOREIGN KEY (category_id) REFERENCES categories(id)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    account_id TEXT NOT NULL,
    account_kind TEXT,
    sync_type TEXT NOT NULL DEFAULT 'manual',
    status TEXT NOT NULL,
    transactions_synced INTEGER NOT NULL DEFAULT 0,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    account_id TEXT,
    amount TEXT NOT NULL,
    type TEXT NOT NULL,
    category_id TEXT,
    description TEXT NOT NULL DEFAULT '',
    transaction_date TEXT NOT NULL,
    merchant_name TEXT,
    mono_transaction_id TEXT,
    mtn_reference_id TEXT,
    provider_status TEXT,
    provider_metadata TEXT NOT NULL DEFAULT '{}',
    is_synced INTEGER NOT NULL DEFAULT 0,
    auto_categorized INTEGER NOT NULL DEFAULT 0,
    categorization_confidence REAL,
    sync_run_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_mono
    ON transactions (user_id, mono_transaction_id) WHERE mono_transaction_id IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_mtn
    ON transactions (user_id, mtn_reference_id) WHERE mtn_reference_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_sync_runs_account ON sync_runs (user_id, account_id, started_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_categories_owner_name
    ON categories (COALESCE(user_id, ''), name_key);
"""

_TRANSACTION_COLUMNS = (
    "id", "user_id", "account_id", "amount", "type", "category_id", "description",
    "transaction_date", "merchant_name", "mono_transaction_id", "mtn_reference_id",
    "provider_status", "provider_metadata", "is_synced", "auto_categorized",
    "categorization_confidence", "sync_run_id", "created_at", "updated_at",
)

_PROVIDER_COLUMNS = {
    Provider.MONO: "mono_transaction_id",
    Provider.MTN_MOMO: "mtn_reference_id",
}


def _to_text(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _transaction_params(transaction: Transaction) -> tuple[Any, ...]:
    data = transaction.model_dump()
    params = []
    for column in _TRANSACTION_COLUMNS:
        value = data[column]
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, bool):
            value = int(value)
        elif hasattr(value, "value"):
            value = value.value
        elif column == "provider_metadata":
            value = json.dumps(value, default=str)
        params.append(value)
    return tuple(params)


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    data = dict(row)
    data["provider_metadata"] = json.loads(data["provider_metadata"] or "{}")
    data["is_synced"] = bool(data["is_synced"])
    data["auto_categorized"] = bool(data["auto_categorized"])
    return Transaction.model_validate(data)


def _row_to_account(row: sqlite3.Row) -> LinkedAccount:
    data = dict(row)
    data["is_active"] = bool(data["is_active"])
    return LinkedAccount.model_validate(data)


def _row_to_sync_run(row: sqlite3.Row) -> SyncRun:
    return SyncRun.model_validate(dict(row))


def _row_to_category(row: sqlite3.Row) -> Category:
    return Category.model_validate(dict(row))


def _insert_category(conn: sqlite3.Connection, category: Category, or_ignore: bool = False) -> None:
    verb = "INSERT OR IGNORE" if or_ignore else "INSERT"
    conn.execute(
        f"{verb} INTO categories (id, user_id, name, name_key, icon_name) VALUES (?, ?, ?, ?, ?)",
        (category.id, category.user_id, category.name, category_name_key(category.name), category.icon_name),
    )


def _select_category_by_name(conn: sqlite3.Connection, user_id: str | None, name: str) -> Category | None:
    # Owner-private categories shadow global ones of the same name.
    row = conn.execute(
        "SELECT * FROM categories WHERE (user_id IS NULL OR user_id = ?) AND name_key = ? "
        "ORDER BY user_id IS NULL LIMIT 1",
        (user_id, category_name_key(name)),
    ).fetchone()
    return _row_to_category(row) if row else None


class SQLiteStore(LedgerStore):
    """
    Relational store backed by a single SQLite connection.

    sqlite3 is blocking, so every call is pushed to a worker thread via
    ``asyncio.to_thread``; a lock serializes access to the shared connection.
    """

    def __init__(self, path: str):
        self.path = path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        if self.path != ":memory:":
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_db(self, conn: sqlite3.Connection) -> None:
        conn.executescript(SCHEMA)
        _insert_category(conn, uncategorized_category(), or_ignore=True)

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = self._connect()
        return self._conn

    def _locked(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self._lock:
            conn = self._connection()
            try:
                result = fn(conn)
                conn.commit()
                return result
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise StoreError(f"Constraint violation: {exc}") from exc
            except sqlite3.OperationalError as exc:
                conn.rollback()
                raise StoreError(f"Database error: {exc}") from exc
            except Exception:
                conn.rollback()
                raise

    async def _run(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        return await asyncio.to_thread(self._locked, fn)

    async def initialize(self) -> None:
        await self._run(self._init_db)
        logger.info("[STORE] SQLite store ready at %s", self.path)

    async def close(self) -> None:
        def close() -> None:
            with self._lock:
                if self._conn is not None:
                    self._conn.close()
                    self._conn = None

        await asyncio.to_thread(close)

    # Accounts

    async def get_account(self, user_id: str, account_id: str, active_only: bool = True) -> LinkedAccount | None:
        sql = "SELECT * FROM linked_accounts WHERE id = ? AND user_id = ?"
        if active_only:
            sql += " AND is_active = 1"

        def query(conn: sqlite3.Connection) -> LinkedAccount | None:
            row = conn.execute(sql, (account_id, user_id)).fetchone()
            return _row_to_account(row) if row else None

        return await self._run(query)

    async def update_account_sync_state(
        self,
        account_id: str,
        *,
        balance: Decimal,
        last_synced_at: datetime,
        institution_name: str | None = None,
    ) -> None:
        def update(conn: sqlite3.Connection) -> None:
            cursor = conn.execute(
                "UPDATE linked_accounts SET balance = ?, last_synced_at = ?, "
                "institution_name = COALESCE(NULLIF(?, ''), institution_name) WHERE id = ?",
                (str(balance), _to_text(last_synced_at), institution_name, account_id),
            )
            if cursor.rowcount == 0:
                raise StoreError(f"Account {account_id} not found")

        await self._run(update)

    async def link_account(self, account: LinkedAccount) -> LinkedAccount:
        require_provider_reference(account)

        def insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO linked_accounts (id, user_id, account_name, account_kind, institution_name, "
                "balance, mono_account_id, mtn_phone_number, mtn_reference_id, last_synced_at, is_active) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    account.id,
                    account.user_id,
                    account.account_name,
                    account.account_kind.value,
                    account.institution_name,
                    str(account.balance),
                    account.mono_account_id,
                    account.mtn_phone_number,
                    account.mtn_reference_id,
                    _to_text(account.last_synced_at),
                    int(account.is_active),
                ),
            )

        await self._run(insert)
        return account

    async def deactivate_account(self, user_id: str, account_id: str) -> bool:
        def update(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "UPDATE linked_accounts SET is_active = 0 WHERE id = ? AND user_id = ?",
                (account_id, user_id),
            )
            return cursor.rowcount > 0

        return await self._run(update)

    async def list_active_accounts(self, user_id: str) -> list[LinkedAccount]:
        def query(conn: sqlite3.Connection) -> list[LinkedAccount]:
            rows = conn.execute(
                "SELECT * FROM linked_accounts WHERE user_id = ? AND is_active = 1 ORDER BY account_name",
                (user_id,),
            ).fetchall()
            return [_row_to_account(row) for row in rows]

        return await self._run(query)

    # Transactions

    async def find_transaction_by_provider_id(
        self, user_id: str, provider: Provider, provider_tx_id: str
    ) -> Transaction | None:
        column = _PROVIDER_COLUMNS[provider]

        def query(conn: sqlite3.Connection) -> Transaction | None:
            row = conn.execute(
                f"SELECT * FROM transactions WHERE user_id = ? AND {column} = ?",
                (user_id, provider_tx_id),
            ).fetchone()
            return _row_to_transaction(row) if row else None

        return await self._run(query)

    async def get_transaction(self, user_id: str, transaction_id: str) -> Transaction | None:
        def query(conn: sqlite3.Connection) -> Transaction | None:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ? AND user_id = ?",
                (transaction_id, user_id),
            ).fetchone()
            return _row_to_transaction(row) if row else None

        return await self._run(query)

    async def insert_transaction(self, transaction: Transaction) -> Transaction:
        placeholders = ", ".join("?" for _ in _TRANSACTION_COLUMNS)
        sql = f"INSERT INTO transactions ({', '.join(_TRANSACTION_COLUMNS)}) VALUES ({placeholders})"

        def insert(conn: sqlite3.Connection) -> None:
            conn.execute(sql, _transaction_params(transaction))

        await self._run(insert)
        return transaction

    async def update_transaction(self, user_id: str, transaction_id: str, changes: dict[str, Any]) -> Transaction:
        def update(conn: sqlite3.Connection) -> Transaction:
            row = conn.execute(
                "SELECT * FROM transactions WHERE id = ? AND user_id = ?",
                (transaction_id, user_id),
            ).fetchone()
            if row is None:
                raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
            data = _row_to_transaction(row).model_dump()
            data.update(changes)
            data["updated_at"] = utcnow()
            updated = Transaction.model_validate(data)
            assignments = ", ".join(f"{column} = ?" for column in _TRANSACTION_COLUMNS[1:])
            params = _transaction_params(updated)
            conn.execute(
                f"UPDATE transactions SET {assignments} WHERE id = ?",
                (*params[1:], transaction_id),
            )
            return updated

        return await self._run(update)

    async def delete_transaction(self, user_id: str, transaction_id: str) -> bool:
        def delete(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "DELETE FROM transactions WHERE id = ? AND user_id = ?",
                (transaction_id, user_id),
            )
            return cursor.rowcount > 0

        return await self._run(delete)

    async def find_similar_transactions(self, user_id: str, term: str, limit: int = 5) -> list[Transaction]:
        if not term:
            return []
        escaped = term.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")

        def query(conn: sqlite3.Connection) -> list[Transaction]:
            rows = conn.execute(
                "SELECT * FROM transactions WHERE user_id = ? AND category_id IS NOT NULL "
                "AND lower(description) LIKE ? ESCAPE '\\' ORDER BY transaction_date DESC LIMIT ?",
                (user_id, f"%{escaped}%", limit),
            ).fetchall()
            return [_row_to_transaction(row) for row in rows]

        return await self._run(query)

    # Sync runs

    async def create_sync_run(self, run: SyncRun) -> SyncRun:
        def insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO sync_runs (id, user_id, account_id, account_kind, sync_type, status, "
                "transactions_synced, started_at, completed_at, error_message) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    run.id,
                    run.user_id,
                    run.account_id,
                    run.account_kind.value if run.account_kind else None,
                    run.sync_type,
                    run.status.value,
                    run.transactions_synced,
                    _to_text(run.started_at),
                    _to_text(run.completed_at),
                    run.error_message,
                ),
            )

        await self._run(insert)
        return run

    async def complete_sync_run(
        self,
        run_id: str,
        *,
        status: SyncStatus,
        transactions_synced: int,
        error_message: str | None = None,
    ) -> SyncRun:
        if status is SyncStatus.IN_PROGRESS:
            raise StoreError("Terminal status required")

        def update(conn: sqlite3.Connection) -> SyncRun:
            # The status guard in the WHERE clause makes the terminal write happen at most once.
            cursor = conn.execute(
                "UPDATE sync_runs SET status = ?, transactions_synced = ?, error_message = ?, completed_at = ? "
                "WHERE id = ? AND status = ?",
                (
                    status.value,
                    transactions_synced,
                    error_message,
                    _to_text(utcnow()),
                    run_id,
                    SyncStatus.IN_PROGRESS.value,
                ),
            )
            row = conn.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                raise StoreError(f"Sync run {run_id} not found")
            if cursor.rowcount == 0:
                raise StoreError(f"Sync run {run_id} already finished with status {row['status']}")
            return _row_to_sync_run(row)

        return await self._run(update)

    async def list_sync_runs(self, user_id: str, account_id: str | None = None, limit: int = 10) -> list[SyncRun]:
        sql = "SELECT * FROM sync_runs WHERE user_id = ?"
        params: list[Any] = [user_id]
        if account_id is not None:
            sql += " AND account_id = ?"
            params.append(account_id)
        sql += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)

        def query(conn: sqlite3.Connection) -> list[SyncRun]:
            return [_row_to_sync_run(row) for row in conn.execute(sql, params).fetchall()]

        return await self._run(query)

    # Categories and rules

    async def find_category_by_name(self, user_id: str, name: str) -> Category | None:
        return await self._run(lambda conn: _select_category_by_name(conn, user_id, name))

    async def create_category(self, category: Category) -> Category:
        await self._run(lambda conn: _insert_category(conn, category))
        return category

    async def get_or_create_category(self, category: Category) -> Category:
        def upsert(conn: sqlite3.Connection) -> Category:
            existing = _select_category_by_name(conn, category.user_id, category.name)
            if existing is not None:
                return existing
            _insert_category(conn, category, or_ignore=True)
            # A writer in another process may have won the unique index.
            return _select_category_by_name(conn, category.user_id, category.name) or category

        return await self._run(upsert)

    async def get_category(self, user_id: str, category_id: str) -> Category | None:
        def query(conn: sqlite3.Connection) -> Category | None:
            row = conn.execute(
                "SELECT * FROM categories WHERE id = ? AND (user_id IS NULL OR user_id = ?)",
                (category_id, user_id),
            ).fetchone()
            return _row_to_category(row) if row else None

        return await self._run(query)

    async def list_categories(self, user_id: str) -> list[Category]:
        def query(conn: sqlite3.Connection) -> list[Category]:
            rows = conn.execute(
                "SELECT * FROM categories WHERE user_id IS NULL OR user_id = ? ORDER BY name_key",
                (user_id,),
            ).fetchall()
            return [_row_to_category(row) for row in rows]

        return await self._run(query)

    async def list_active_rules(self, user_id: str) -> list[CategorizationRule]:
        def query(conn: sqlite3.Connection) -> list[CategorizationRule]:
            rows = conn.execute(
                "SELECT r.*, c.name AS category_name FROM categorization_rules r "
                "LEFT JOIN categories c ON c.id = r.category_id "
                "WHERE r.user_id = ? AND r.is_active = 1 ORDER BY r.priority DESC",
                (user_id,),
            ).fetchall()
            rules = []
            for row in rows:
                data = dict(row)
                data["is_active"] = bool(data["is_active"])
                rules.append(CategorizationRule.model_validate(data))
            return rules

        return await self._run(query)

    async def add_rule(self, rule: CategorizationRule) -> CategorizationRule:
        def insert(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT INTO categorization_rules (id, user_id, category_id, rule_type, rule_value, "
                "is_active, priority) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    rule.id,
                    rule.user_id,
                    rule.category_id,
                    rule.rule_type.value,
                    rule.rule_value,
                    int(rule.is_active),
                    rule.priority,
                ),
            )

        await self._run(insert)
        return rule
