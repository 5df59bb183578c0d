import asyncio
import os
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PayloadValidationError

from ledger_sync.core.errors import ProviderAuthError
from ledger_sync.core.settings import DEFAULT_MONO_BASE_URL
from ledger_sync.domain.transactions import parse_date
from ledger_sync.integration.base import ProviderAdapter
from ledger_sync.logger import get_logger
from ledger_sync.models import (
    AccountKind,
    AccountSnapshot,
    Provider,
    ProviderFetchResult,
    SyncedTransaction,
    TransactionType,
)

logger = get_logger(__name__)

DEFAULT_NARRATION = "Bank transaction"


class MonoAccountDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    name: str = ""
    account_number: str | None = Field(default=None, alias="accountNumber")
    type: str | None = None
    balance: Decimal
    currency: str | None = None


class MonoInstitution(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = ""
    bank_code: str | None = Field(default=None, alias="bankCode")
    type: str | None = None


class MonoAccountInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account: MonoAccountDetails
    institution: MonoInstitution = Field(default_factory=MonoInstitution)


class MonoTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["mono"] = "mono"
    id: str
    amount: Decimal
    type: Literal["debit", "credit"]
    narration: str | None = None
    date: str
    balance: Decimal | None = None
    reference: str | None = None
    category: str | None = None
    meta: dict[str, Any] | None = None

    def to_synced(self) -> SyncedTransaction:
        occurred_at = parse_date(self.date)
        if occurred_at is None:
            raise ValueError(f"unparseable date {self.date!r} on transaction {self.id}")
        metadata: dict[str, Any] = {
            "reference": self.reference,
            "provider_category": self.category or "uncategorized",
            "running_balance": str(self.balance) if self.balance is not None else None,
        }
        if self.meta:
            metadata["meta"] = self.meta
        return SyncedTransaction(
            provider=Provider.MONO,
            provider_transaction_id=self.id,
            amount=abs(self.amount),
            direction=TransactionType.INCOME if self.type == "credit" else TransactionType.EXPENSE,
            occurred_at=occurred_at,
            description=self.narration or DEFAULT_NARRATION,
            metadata=metadata,
        )


def _unwrap(payload: Any) -> Any:
    # v2 responses sometimes nest the body under "data" next to a status field.
    if isinstance(payload, dict) and "account" not in payload and isinstance(payload.get("data"), dict):
        return payload["data"]
    return payload


class MonoAdapter(ProviderAdapter):
    provider_name = "Mono"
    account_kind = AccountKind.BANK

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        super().__init__(
            base_url or os.getenv("MONO_BASE_URL") or DEFAULT_MONO_BASE_URL,
            client=client,
            timeout=timeout,
        )
        self.secret_key = secret_key if secret_key is not None else os.getenv("MONO_SECRET_KEY", "")

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "mono-sec-key": self.secret_key,
        }

    def _require_credentials(self) -> None:
        if not self.secret_key:
            raise ProviderAuthError("MONO_SECRET_KEY is not configured", provider=self.provider_name)

    async def get_account_info(self, mono_account_id: str) -> MonoAccountInfo:
        self._require_credentials()
        payload = await self._request("GET", f"/accounts/{mono_account_id}", headers=self.headers)
        try:
            return MonoAccountInfo.model_validate(_unwrap(payload))
        except PayloadValidationError as exc:
            raise self._malformed(f"account {mono_account_id}: {exc.error_count()} invalid field(s)") from exc

    async def get_transactions(self, mono_account_id: str, start: datetime, end: datetime) -> list[SyncedTransaction]:
        self._require_credentials()
        params = {
            "start": start.strftime("%Y-%m-%d"),
            "end": end.strftime("%Y-%m-%d"),
            "paginate": "false",
        }
        payload = await self._request(
            "GET",
            f"/accounts/{mono_account_id}/transactions",
            headers=self.headers,
            params=params,
        )
        items = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise self._malformed("transactions response has no data list")

        transactions = []
        for item in items:
            try:
                transactions.append(MonoTransaction.model_validate(item).to_synced())
            except (PayloadValidationError, ValueError) as exc:
                raise self._malformed(str(exc)) from exc
        return transactions

    async def fetch_account_and_transactions(
        self, reference: str, start: datetime, end: datetime
    ) -> ProviderFetchResult:
        info, transactions = await asyncio.gather(
            self.get_account_info(reference),
            self.get_transactions(reference, start, end),
        )
        logger.info(
            "[MONO] Fetched %d transactions for account %s (%s)",
            len(transactions),
            reference,
            info.institution.name or "unknown institution",
        )
        return ProviderFetchResult(
            account=AccountSnapshot(
                name=info.account.name,
                balance=info.account.balance,
                institution=info.institution.name,
                account_number=info.account.account_number,
                currency=info.account.currency,
            ),
            transactions=transactions,
        )
