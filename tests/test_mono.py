from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest

from ledger_sync.core.errors import (
    ErrorCode,
    MalformedPayloadError,
    ProviderAuthError,
    ProviderNetworkError,
    ProviderTimeoutError,
)
from ledger_sync.integration.mono import MonoAdapter
from ledger_sync.models import Provider, TransactionType

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 1, 31, tzinfo=timezone.utc)

ACCOUNT_PAYLOAD = {
    "account": {
        "id": "acc-mono-1",
        "name": "Ama Mensah",
        "accountNumber": "0123456789",
        "type": "SAVINGS",
        "balance": 150000,
        "currency": "NGN",
    },
    "institution": {"name": "GTBank", "bankCode": "058", "type": "PERSONAL_BANKING"},
}

TRANSACTIONS_PAYLOAD = {
    "data": [
        {
            "id": "m1",
            "amount": 5000,
            "type": "debit",
            "narration": "POS PURCHASE JUMIA LAGOS",
            "date": "2024-01-05T10:00:00.000Z",
            "balance": 145000,
            "category": "shopping",
        },
        {
            "id": "m2",
            "amount": 200000,
            "type": "credit",
            "narration": "SALARY JAN",
            "date": "2024-01-01T00:00:00Z",
        },
    ],
}


def make_client(routes: list[tuple[str, Any]]) -> AsyncMock:
    async def request(method: str, url: str, **kwargs: Any) -> httpx.Response:
        for suffix, outcome in routes:
            if url.endswith(suffix):
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        raise AssertionError(f"unexpected request {method} {url}")

    client = AsyncMock()
    client.is_closed = False
    client.request = AsyncMock(side_effect=request)
    return client


def ok_routes() -> list[tuple[str, Any]]:
    return [
        ("/accounts/acc-mono-1/transactions", httpx.Response(200, json=TRANSACTIONS_PAYLOAD)),
        ("/accounts/acc-mono-1", httpx.Response(200, json=ACCOUNT_PAYLOAD)),
    ]


@pytest.mark.anyio
async def test_fetch_account_and_transactions():
    client = make_client(ok_routes())
    adapter = MonoAdapter(secret_key="live_sk_test", base_url="https://mono.test/v2", client=client)

    result = await adapter.fetch_account_and_transactions("acc-mono-1", START, END)

    assert result.account.balance == Decimal("150000")
    assert result.account.institution == "GTBank"
    assert result.account.account_number == "0123456789"

    debit, credit = result.transactions
    assert debit.provider == Provider.MONO
    assert debit.provider_transaction_id == "m1"
    assert debit.direction == TransactionType.EXPENSE
    assert debit.amount == Decimal("5000")
    assert debit.metadata["provider_category"] == "shopping"
    assert debit.occurred_at == datetime(2024, 1, 5, 10, 0, tzinfo=timezone.utc)
    assert credit.direction == TransactionType.INCOME
    assert credit.metadata["provider_category"] == "uncategorized"


@pytest.mark.anyio
async def test_transactions_request_shape():
    client = make_client(ok_routes())
    adapter = MonoAdapter(secret_key="live_sk_test", base_url="https://mono.test/v2/", client=client)

    await adapter.get_transactions("acc-mono-1", START, END)

    method, url = client.request.call_args.args
    kwargs = client.request.call_args.kwargs
    assert method == "GET"
    assert url == "https://mono.test/v2/accounts/acc-mono-1/transactions"
    assert kwargs["params"] == {"start": "2024-01-01", "end": "2024-01-31", "paginate": "false"}
    assert kwargs["headers"]["mono-sec-key"] == "live_sk_test"


@pytest.mark.anyio
async def test_wrapped_account_payload():
    client = make_client([
        ("/accounts/acc-mono-1", httpx.Response(200, json={"status": "successful", "data": ACCOUNT_PAYLOAD})),
    ])
    adapter = MonoAdapter(secret_key="live_sk_test", base_url="https://mono.test/v2", client=client)

    info = await adapter.get_account_info("acc-mono-1")
    assert info.account.name == "Ama Mensah"


@pytest.mark.anyio
async def test_missing_secret_key():
    client = make_client(ok_routes())
    adapter = MonoAdapter(secret_key="", base_url="https://mono.test/v2", client=client)

    with pytest.raises(ProviderAuthError):
        await adapter.fetch_account_and_transactions("acc-mono-1", START, END)
    client.request.assert_not_called()


@pytest.mark.anyio
async def test_unauthorized_response():
    client = make_client([("/accounts/acc-mono-1", httpx.Response(401, json={"message": "invalid key"}))])
    adapter = MonoAdapter(secret_key="bad", base_url="https://mono.test/v2", client=client)

    with pytest.raises(ProviderAuthError) as exc_info:
        await adapter.get_account_info("acc-mono-1")
    assert exc_info.value.code == ErrorCode.API_UNAUTHORIZED
    assert exc_info.value.status_code == 401


@pytest.mark.anyio
async def test_server_error():
    client = make_client([("/accounts/acc-mono-1", httpx.Response(503, text="maintenance"))])
    adapter = MonoAdapter(secret_key="live_sk_test", base_url="https://mono.test/v2", client=client)

    with pytest.raises(ProviderNetworkError) as exc_info:
        await adapter.get_account_info("acc-mono-1")
    assert exc_info.value.status_code == 503
    assert "maintenance" in exc_info.value.message


@pytest.mark.anyio
async def test_timeout():
    client = make_client([("/accounts/acc-mono-1", httpx.ReadTimeout("slow"))])
    adapter = MonoAdapter(secret_key="live_sk_test", base_url="https://mono.test/v2", client=client, timeout=2)

    with pytest.raises(ProviderTimeoutError) as exc_info:
        await adapter.get_account_info("acc-mono-1")
    assert exc_info.value.code == ErrorCode.API_TIMEOUT


@pytest.mark.anyio
async def test_connection_error():
    client = make_client([("/accounts/acc-mono-1", httpx.ConnectError("refused"))])
    adapter = MonoAdapter(secret_key="live_sk_test", base_url="https://mono.test/v2", client=client)

    with pytest.raises(ProviderNetworkError) as exc_info:
        await adapter.get_account_info("acc-mono-1")
    assert exc_info.value.code == ErrorCode.NETWORK_ERROR


@pytest.mark.anyio
async def test_non_json_body():
    client = make_client([("/accounts/acc-mono-1", httpx.Response(200, text="<html>oops</html>"))])
    adapter = MonoAdapter(secret_key="live_sk_test", base_url="https://mono.test/v2", client=client)

    with pytest.raises(MalformedPayloadError):
        await adapter.get_account_info("acc-mono-1")


@pytest.mark.anyio
async def test_malformed_transaction():
    payload = {"data": [{"amount": 10, "type": "debit", "date": "2024-01-02"}]}
    client = make_client([("/transactions", httpx.Response(200, json=payload))])
    adapter = MonoAdapter(secret_key="live_sk_test", base_url="https://mono.test/v2", client=client)

    with pytest.raises(MalformedPayloadError) as exc_info:
        await adapter.get_transactions("acc-mono-1", START, END)
    assert exc_info.value.code == ErrorCode.PROVIDER_MALFORMED_PAYLOAD


@pytest.mark.anyio
async def test_unparseable_date_is_malformed():
    payload = {"data": [{"id": "m9", "amount": 10, "type": "debit", "date": "yesterday"}]}
    client = make_client([("/transactions", httpx.Response(200, json=payload))])
    adapter = MonoAdapter(secret_key="live_sk_test", base_url="https://mono.test/v2", client=client)

    with pytest.raises(MalformedPayloadError):
        await adapter.get_transactions("acc-mono-1", START, END)
