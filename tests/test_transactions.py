from decimal import Decimal

import pytest

from ledger_sync.core.errors import (
    CategoryNotFoundError,
    ErrorCode,
    ImmutableTransactionError,
    TransactionNotFoundError,
    ValidationError,
)
from ledger_sync.models import Category, Transaction, TransactionType, TransactionUpdate
from ledger_sync.services.transactions import TransactionEditor
from ledger_sync.store.memory import InMemoryStore

USER = "user-1"


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def editor(store):
    return TransactionEditor(store)


@pytest.fixture
async def synced(store):
    return await store.insert_transaction(Transaction(
        id="s1",
        user_id=USER,
        amount=Decimal("25.00"),
        type=TransactionType.EXPENSE,
        description="Uber ride to Osu",
        mtn_reference_id="tx-a",
        is_synced=True,
        auto_categorized=True,
        categorization_confidence=0.92,
    ))


@pytest.fixture
async def manual(store):
    return await store.insert_transaction(Transaction(
        id="m1",
        user_id=USER,
        amount=Decimal("40.00"),
        type=TransactionType.EXPENSE,
        description="Cash for lunch",
    ))


@pytest.mark.anyio
async def test_synced_row_accepts_category_only(store, editor, synced):
    groceries = await store.create_category(Category(user_id=USER, name="Groceries"))

    result = await editor.update(
        USER,
        "s1",
        TransactionUpdate(amount=Decimal("1"), description="edited", category_id=groceries.id),
    )

    assert result.ignored_fields == ["amount", "description"]
    assert result.transaction.category_id == groceries.id
    assert result.transaction.amount == Decimal("25.00")
    assert result.transaction.description == "Uber ride to Osu"
    assert result.transaction.auto_categorized is False
    assert result.transaction.categorization_confidence is None


@pytest.mark.anyio
async def test_synced_row_provider_fields_only_is_noop(store, editor, synced):
    result = await editor.update(USER, "s1", TransactionUpdate(amount=Decimal("1")))

    assert result.ignored_fields == ["amount"]
    stored = await store.get_transaction(USER, "s1")
    assert stored.amount == Decimal("25.00")
    assert stored.updated_at == synced.updated_at


@pytest.mark.anyio
async def test_synced_row_cannot_be_deleted(store, editor, synced):
    with pytest.raises(ImmutableTransactionError) as exc_info:
        await editor.delete(USER, "s1")
    assert exc_info.value.code == ErrorCode.TRANSACTION_IMMUTABLE
    assert await store.get_transaction(USER, "s1") is not None


@pytest.mark.anyio
async def test_manual_row_is_fully_editable(store, editor, manual):
    result = await editor.update(
        USER, "m1", TransactionUpdate(amount=Decimal("55.5"), description="Lunch with team")
    )

    assert result.ignored_fields == []
    assert result.transaction.amount == Decimal("55.5")
    assert result.transaction.description == "Lunch with team"


@pytest.mark.parametrize("amount", ["0", "-3", "100000.01"])
@pytest.mark.anyio
async def test_manual_amount_range(editor, manual, amount):
    with pytest.raises(ValidationError) as exc_info:
        await editor.update(USER, "m1", TransactionUpdate(amount=Decimal(amount)))
    assert exc_info.value.code == ErrorCode.VALIDATION_INVALID_RANGE


@pytest.mark.anyio
async def test_manual_amount_cannot_be_cleared(editor, manual):
    with pytest.raises(ValidationError) as exc_info:
        await editor.update(USER, "m1", TransactionUpdate(amount=None))
    assert exc_info.value.code == ErrorCode.VALIDATION_REQUIRED_FIELD


@pytest.mark.anyio
async def test_unknown_category_rejected(editor, manual):
    with pytest.raises(CategoryNotFoundError):
        await editor.update(USER, "m1", TransactionUpdate(category_id="cat-nope"))


@pytest.mark.anyio
async def test_manual_row_can_be_deleted(store, editor, manual):
    await editor.delete(USER, "m1")
    assert await store.get_transaction(USER, "m1") is None


@pytest.mark.anyio
async def test_missing_transaction(editor):
    with pytest.raises(TransactionNotFoundError):
        await editor.update(USER, "nope", TransactionUpdate(description="x"))
    with pytest.raises(TransactionNotFoundError):
        await editor.delete(USER, "nope")
