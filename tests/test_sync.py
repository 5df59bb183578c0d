import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from ledger_sync.core.errors import ProviderNetworkError, StoreError
from ledger_sync.integration.base import AdapterRegistry
from ledger_sync.manager import CategorizerService
from ledger_sync.models import (
    AccountKind,
    AccountSnapshot,
    LinkedAccount,
    Provider,
    ProviderFetchResult,
    SyncedTransaction,
    SyncProgress,
    SyncStatus,
    TransactionType,
)
from ledger_sync.services.categories import CategoryService
from ledger_sync.services.sync import SyncOrchestrator
from ledger_sync.store.memory import InMemoryStore
from ledger_sync.store.sqlite import SQLiteStore

USER = "user-1"
PHONE = "233241234567"


def momo(tx_id: str, description: str, amount: str = "25.00", direction=TransactionType.EXPENSE) -> SyncedTransaction:
    return SyncedTransaction(
        provider=Provider.MTN_MOMO,
        provider_transaction_id=tx_id,
        amount=Decimal(amount),
        direction=direction,
        occurred_at=datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc),
        description=description,
        provider_status="SUCCESSFUL",
        counterparty={"partyIdType": "MSISDN", "partyId": PHONE},
        metadata={"currency": "GHS"},
    )


def fetched(*transactions: SyncedTransaction, balance: str = "1500.50") -> ProviderFetchResult:
    return ProviderFetchResult(
        account=AccountSnapshot(name=f"MTN MoMo {PHONE}", balance=Decimal(balance), institution="MTN Mobile Money"),
        transactions=list(transactions),
    )


def make_adapter(kind: AccountKind = AccountKind.MOBILE_MONEY) -> MagicMock:
    adapter = MagicMock()
    adapter.account_kind = kind
    adapter.provider_name = "MTN MoMo" if kind is AccountKind.MOBILE_MONEY else "Mono"
    adapter.fetch_account_and_transactions = AsyncMock()
    return adapter


@pytest.fixture(params=["memory", "sqlite"])
async def store(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStore()
    else:
        backend = SQLiteStore(str(tmp_path / "ledger.db"))
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
def adapter():
    return make_adapter()


@pytest.fixture
async def account(store):
    return await store.link_account(LinkedAccount(
        id="acc-1",
        user_id=USER,
        account_name="My MoMo",
        account_kind=AccountKind.MOBILE_MONEY,
        mtn_phone_number=PHONE,
    ))


@pytest.fixture
def orchestrator(store, adapter):
    return SyncOrchestrator(store, AdapterRegistry([adapter]), CategorizerService(), window_days=30)


FIRST_BATCH = (
    momo("tx-a", "Lunch at KFC Accra Mall", "35.00"),
    momo("tx-b", "Uber ride to Osu", "25.00"),
    momo("tx-c", "Salary for January", "3000.00", TransactionType.INCOME),
)


async def stored_references(store) -> set[str]:
    found = set()
    for reference in ("tx-a", "tx-b", "tx-c"):
        if await store.find_transaction_by_provider_id(USER, Provider.MTN_MOMO, reference):
            found.add(reference)
    return found


@pytest.mark.anyio
async def test_first_sync_inserts_everything(store, adapter, account, orchestrator):
    adapter.fetch_account_and_transactions.return_value = fetched(*FIRST_BATCH)

    result = await orchestrator.sync_account(USER, "acc-1")

    assert result.ok
    outcome = result.outcome
    assert outcome.total_transactions == 3
    assert outcome.new_transactions == 3
    assert outcome.updated_transactions == 0
    assert outcome.errors == []
    assert outcome.account_kind == AccountKind.MOBILE_MONEY

    for tx_id in ("tx-a", "tx-b", "tx-c"):
        row = await store.find_transaction_by_provider_id(USER, Provider.MTN_MOMO, tx_id)
        assert row is not None
        assert row.is_synced is True
        assert row.auto_categorized is True
        assert row.account_id == "acc-1"
        assert row.sync_run_id == outcome.sync_run_id
        assert row.category_id is not None
        assert row.provider_metadata["counterparty"]["partyId"] == PHONE

    uber = await store.find_transaction_by_provider_id(USER, Provider.MTN_MOMO, "tx-b")
    assert uber.merchant_name == "Uber"
    salary = await store.find_transaction_by_provider_id(USER, Provider.MTN_MOMO, "tx-c")
    assert salary.type == TransactionType.INCOME


@pytest.mark.anyio
async def test_resync_updates_only_changed_rows(store, adapter, account, orchestrator):
    adapter.fetch_account_and_transactions.return_value = fetched(*FIRST_BATCH)
    await orchestrator.sync_account(USER, "acc-1")
    before_a = await store.find_transaction_by_provider_id(USER, Provider.MTN_MOMO, "tx-a")

    adapter.fetch_account_and_transactions.return_value = fetched(
        momo("tx-a", "Lunch at KFC Accra Mall", "35.00"),
        momo("tx-b", "Bolt ride to Airport", "25.00"),
    )
    result = await orchestrator.sync_account(USER, "acc-1")

    outcome = result.outcome
    assert outcome.total_transactions == 2
    assert outcome.new_transactions == 0
    assert outcome.updated_transactions == 1

    after_a = await store.find_transaction_by_provider_id(USER, Provider.MTN_MOMO, "tx-a")
    assert after_a.updated_at == before_a.updated_at
    updated_b = await store.find_transaction_by_provider_id(USER, Provider.MTN_MOMO, "tx-b")
    assert updated_b.description == "Bolt ride to Airport"
    assert updated_b.sync_run_id == outcome.sync_run_id
    # Outside the window, left alone
    assert await stored_references(store) == {"tx-a", "tx-b", "tx-c"}


@pytest.mark.anyio
async def test_resync_is_idempotent(store, adapter, account, orchestrator):
    adapter.fetch_account_and_transactions.return_value = fetched(*FIRST_BATCH)
    await orchestrator.sync_account(USER, "acc-1")
    result = await orchestrator.sync_account(USER, "acc-1")

    assert result.outcome.new_transactions == 0
    assert result.outcome.updated_transactions == 0
    assert await stored_references(store) == {"tx-a", "tx-b", "tx-c"}
    runs = await store.list_sync_runs(USER, account_id="acc-1")
    assert [run.transactions_synced for run in runs] == [3, 3]


@pytest.mark.anyio
async def test_manual_category_survives_resync(store, adapter, account, orchestrator):
    adapter.fetch_account_and_transactions.return_value = fetched(*FIRST_BATCH)
    await orchestrator.sync_account(USER, "acc-1")

    row = await store.find_transaction_by_provider_id(USER, Provider.MTN_MOMO, "tx-b")
    categories = CategoryService(store, CategorizerService())
    await categories.provide_category_feedback(USER, row.id, "uncategorized")

    adapter.fetch_account_and_transactions.return_value = fetched(momo("tx-b", "Uber ride to Labone", "27.00"))
    result = await orchestrator.sync_account(USER, "acc-1")

    assert result.outcome.updated_transactions == 1
    refreshed = await store.get_transaction(USER, row.id)
    assert refreshed.amount == Decimal("27.00")
    assert refreshed.category_id == "uncategorized"
    assert refreshed.auto_categorized is False


@pytest.mark.anyio
async def test_balance_and_last_synced_updated(store, adapter, account, orchestrator):
    adapter.fetch_account_and_transactions.return_value = fetched(balance="820.10")

    result = await orchestrator.sync_account(USER, "acc-1")

    assert result.outcome.total_transactions == 0
    refreshed = await store.get_account(USER, "acc-1")
    assert refreshed.balance == Decimal("820.10")
    assert refreshed.last_synced_at is not None
    assert refreshed.institution_name == "MTN Mobile Money"


@pytest.mark.anyio
async def test_partial_failure_is_isolated(store, adapter, account, orchestrator, monkeypatch):
    adapter.fetch_account_and_transactions.return_value = fetched(*FIRST_BATCH)
    original = store.insert_transaction

    async def failing_insert(transaction):
        if transaction.mtn_reference_id == "tx-b":
            raise StoreError("disk full")
        return await original(transaction)

    monkeypatch.setattr(store, "insert_transaction", failing_insert)

    result = await orchestrator.sync_account(USER, "acc-1")

    outcome = result.outcome
    assert outcome.total_transactions == 3
    assert outcome.new_transactions == 2
    assert outcome.errors == ["Transaction tx-b: disk full"]

    runs = await store.list_sync_runs(USER, account_id="acc-1")
    assert runs[0].status == SyncStatus.SUCCESS
    assert runs[0].transactions_synced == 3


@pytest.mark.anyio
async def test_provider_failure_fails_run(store, adapter, account, orchestrator):
    adapter.fetch_account_and_transactions.side_effect = ProviderNetworkError("MTN MoMo is down", provider="MTN MoMo")
    events: list[SyncProgress] = []

    result = await orchestrator.sync_account_with_progress(USER, "acc-1", events.append)

    assert not result.ok
    assert result.error.code == "NETWORK_ERROR"
    assert result.error.message == "MTN MoMo is down"
    assert [event.status for event in events] == ["fetching", "error"]

    runs = await store.list_sync_runs(USER, account_id="acc-1")
    assert len(runs) == 1
    assert runs[0].status == SyncStatus.FAILED
    assert runs[0].transactions_synced == 0
    assert runs[0].error_message == "MTN MoMo is down"
    assert runs[0].completed_at is not None
    assert await stored_references(store) == set()
    refreshed = await store.get_account(USER, "acc-1")
    assert refreshed.last_synced_at is None


@pytest.mark.anyio
async def test_missing_account(store, orchestrator):
    events: list[SyncProgress] = []

    result = await orchestrator.sync_account_with_progress(USER, "nope", events.append)

    assert result.error.code == "ACCOUNT_NOT_FOUND"
    assert [event.status for event in events] == ["error"]
    assert await store.list_sync_runs(USER) == []


@pytest.mark.anyio
async def test_other_users_account_is_not_found(store, account, orchestrator):
    result = await orchestrator.sync_account("someone-else", "acc-1")
    assert result.error.code == "ACCOUNT_NOT_FOUND"


@pytest.mark.anyio
async def test_inactive_account(store, account, orchestrator):
    await store.deactivate_account(USER, "acc-1")

    result = await orchestrator.sync_account(USER, "acc-1")

    assert result.error.code == "ACCOUNT_INACTIVE"
    assert await store.list_sync_runs(USER) == []


@pytest.mark.anyio
async def test_missing_phone_number(adapter):
    # Rows written before linking validated identifiers can still lack one.
    store = InMemoryStore()
    store.accounts["acc-2"] = LinkedAccount(
        id="acc-2", user_id=USER, account_name="No phone", account_kind=AccountKind.MOBILE_MONEY
    )
    orchestrator = SyncOrchestrator(store, AdapterRegistry([adapter]), CategorizerService())

    result = await orchestrator.sync_account(USER, "acc-2")

    assert result.error.code == "INVALID_ACCOUNT"
    adapter.fetch_account_and_transactions.assert_not_called()


@pytest.mark.anyio
async def test_progress_sequence(store, adapter, account, orchestrator):
    adapter.fetch_account_and_transactions.return_value = fetched(*FIRST_BATCH)
    events: list[SyncProgress] = []

    async def on_progress(event: SyncProgress) -> None:
        events.append(event)

    await orchestrator.sync_account_with_progress(USER, "acc-1", on_progress)

    assert [event.status for event in events] == ["fetching", "storing", "completed"]
    assert events[0].message == "Connecting to MTN Mobile Money..."
    assert events[1].transaction_count == 3
    assert events[2].message == "Successfully imported 3 mobile money transactions"
    assert events[2].institution_name == "MTN Mobile Money"


@pytest.mark.anyio
async def test_failing_observer_does_not_break_sync(store, adapter, account, orchestrator):
    adapter.fetch_account_and_transactions.return_value = fetched(*FIRST_BATCH)

    def on_progress(event: SyncProgress) -> None:
        raise RuntimeError("screen went away")

    result = await orchestrator.sync_account_with_progress(USER, "acc-1", on_progress)

    assert result.outcome.new_transactions == 3


@pytest.mark.anyio
async def test_stream_sync_yields_events(store, adapter, account, orchestrator):
    adapter.fetch_account_and_transactions.return_value = fetched(*FIRST_BATCH)

    statuses = [event.status async for event in orchestrator.stream_sync(USER, "acc-1")]

    assert statuses == ["fetching", "storing", "completed"]


@pytest.mark.anyio
async def test_stream_abandoned_sync_still_completes(store, adapter, account, orchestrator):
    adapter.fetch_account_and_transactions.return_value = fetched(*FIRST_BATCH)

    stream = orchestrator.stream_sync(USER, "acc-1")
    first = await stream.__anext__()
    await stream.aclose()
    if orchestrator._background:
        await asyncio.wait(set(orchestrator._background))

    assert first.status == "fetching"
    runs = await store.list_sync_runs(USER, account_id="acc-1")
    assert runs[0].status == SyncStatus.SUCCESS
    assert await stored_references(store) == {"tx-a", "tx-b", "tx-c"}


@pytest.mark.anyio
async def test_sync_all_accounts(store, adapter, account):
    bank_adapter = make_adapter(AccountKind.BANK)
    bank_adapter.fetch_account_and_transactions.return_value = ProviderFetchResult(
        account=AccountSnapshot(name="Savings", balance=Decimal("100"), institution="GTBank"),
        transactions=[],
    )
    adapter.fetch_account_and_transactions.return_value = fetched(*FIRST_BATCH)
    await store.link_account(LinkedAccount(
        id="acc-bank",
        user_id=USER,
        account_name="Savings",
        account_kind=AccountKind.BANK,
        mono_account_id="mono-1",
    ))
    orchestrator = SyncOrchestrator(store, AdapterRegistry([adapter, bank_adapter]), CategorizerService())

    results = await orchestrator.sync_all_accounts(USER)

    assert set(results) == {"acc-1", "acc-bank"}
    assert results["acc-1"].outcome.new_transactions == 3
    assert results["acc-bank"].outcome.institution_name == "GTBank"
    assert await store.total_active_balance(USER) == Decimal("1600.50")


def mono(tx_id: str, description: str, amount: str = "25.00") -> SyncedTransaction:
    return SyncedTransaction(
        provider=Provider.MONO,
        provider_transaction_id=tx_id,
        amount=Decimal(amount),
        direction=TransactionType.EXPENSE,
        occurred_at=datetime(2024, 1, 5, 12, 0, tzinfo=timezone.utc),
        description=description,
    )


async def link_bank(store) -> LinkedAccount:
    return await store.link_account(LinkedAccount(
        id="acc-bank",
        user_id=USER,
        account_name="Savings",
        account_kind=AccountKind.BANK,
        mono_account_id="mono-1",
    ))


@pytest.mark.anyio
async def test_sync_all_accounts_keeps_results_when_one_account_crashes(store, adapter, account):
    bank_adapter = make_adapter(AccountKind.BANK)
    bank_adapter.fetch_account_and_transactions.side_effect = RuntimeError("boom")
    adapter.fetch_account_and_transactions.return_value = fetched(*FIRST_BATCH)
    await link_bank(store)
    orchestrator = SyncOrchestrator(store, AdapterRegistry([adapter, bank_adapter]), CategorizerService())

    results = await orchestrator.sync_all_accounts(USER)

    assert set(results) == {"acc-1", "acc-bank"}
    assert results["acc-1"].outcome.new_transactions == 3
    assert results["acc-bank"].error.code == "SYNC_FAILED"
    assert results["acc-bank"].error.message == "boom"
    runs = await store.list_sync_runs(USER, account_id="acc-bank")
    assert runs[0].status == SyncStatus.FAILED


@pytest.mark.anyio
async def test_sync_all_accounts_creates_shared_category_once(store, adapter, account):
    bank_adapter = make_adapter(AccountKind.BANK)
    bank_adapter.fetch_account_and_transactions.return_value = ProviderFetchResult(
        account=AccountSnapshot(name="Savings", balance=Decimal("100"), institution="GTBank"),
        transactions=[mono("mono-tx-1", "Uber ride to Osu")],
    )
    adapter.fetch_account_and_transactions.return_value = fetched(momo("tx-b", "Uber ride to Osu"))
    await link_bank(store)
    orchestrator = SyncOrchestrator(store, AdapterRegistry([adapter, bank_adapter]), CategorizerService())

    results = await orchestrator.sync_all_accounts(USER)

    assert results["acc-1"].outcome.errors == []
    assert results["acc-bank"].outcome.errors == []
    owned = [category for category in await store.list_categories(USER) if category.user_id == USER]
    assert len(owned) == 1
    momo_row = await store.find_transaction_by_provider_id(USER, Provider.MTN_MOMO, "tx-b")
    bank_row = await store.find_transaction_by_provider_id(USER, Provider.MONO, "mono-tx-1")
    assert momo_row.category_id == bank_row.category_id == owned[0].id
