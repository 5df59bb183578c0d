import asyncio
import os
from datetime import datetime
from decimal import Decimal
from time import monotonic
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PayloadValidationError

from ledger_sync.core.errors import ProviderAuthError
from ledger_sync.core.settings import DEFAULT_MTN_BASE_URL
from ledger_sync.domain.transactions import parse_amount, parse_date
from ledger_sync.integration.base import ProviderAdapter
from ledger_sync.logger import get_logger
from ledger_sync.models import (
    AccountKind,
    AccountSnapshot,
    Provider,
    ProviderFetchResult,
    SyncedTransaction,
    TransactionType,
    utcnow,
)

logger = get_logger(__name__)

DEFAULT_TARGET_ENVIRONMENT = "sandbox"
DEFAULT_DESCRIPTION = "Mobile money transaction"
INSTITUTION_NAME = "MTN Mobile Money"
# Refresh a little before the provider's stated expiry.
TOKEN_EXPIRY_MARGIN_SECONDS = 60.0


class MoMoParty(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    party_id_type: str | None = Field(default=None, alias="partyIdType")
    party_id: str | None = Field(default=None, alias="partyId")


class MoMoTransaction(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: Literal["mtn_momo"] = "mtn_momo"
    external_id: str = Field(alias="externalId")
    amount: str
    currency: str | None = None
    payer_message: str | None = Field(default=None, alias="payerMessage")
    payee_note: str | None = Field(default=None, alias="payeeNote")
    status: str | None = None
    payer: MoMoParty | None = None
    financial_transaction_id: str | None = Field(default=None, alias="financialTransactionId")
    created_at: str | None = Field(default=None, alias="createdAt")

    def direction(self) -> TransactionType | None:
        """Only an explicitly signed amount says which way the money moved."""
        raw = self.amount.strip()
        if raw.startswith("-"):
            return TransactionType.EXPENSE
        if raw.startswith("+"):
            return TransactionType.INCOME
        return None

    def to_synced(self) -> SyncedTransaction:
        amount = parse_amount(self.amount)
        if amount is None:
            raise ValueError(f"amount {self.amount!r} on transaction {self.external_id} is not numeric")
        if self.created_at:
            occurred_at = parse_date(self.created_at)
            if occurred_at is None:
                raise ValueError(f"unparseable createdAt {self.created_at!r} on transaction {self.external_id}")
        else:
            occurred_at = utcnow()

        counterparty = None
        if self.payer is not None:
            counterparty = {"partyIdType": self.payer.party_id_type, "partyId": self.payer.party_id}

        return SyncedTransaction(
            provider=Provider.MTN_MOMO,
            provider_transaction_id=self.external_id,
            amount=abs(amount),
            direction=self.direction(),
            occurred_at=occurred_at,
            description=self.payer_message or self.payee_note or DEFAULT_DESCRIPTION,
            payee_note=self.payee_note,
            counterparty=counterparty,
            provider_status=self.status,
            metadata={
                "financial_transaction_id": self.financial_transaction_id,
                "currency": self.currency,
                "payee_note": self.payee_note,
            },
        )


class MoMoBalance(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    available_balance: Decimal = Field(alias="availableBalance")
    currency: str | None = None


class MTNMoMoAdapter(ProviderAdapter):
    provider_name = "MTN MoMo"
    account_kind = AccountKind.MOBILE_MONEY

    def __init__(
        self,
        api_key: str | None = None,
        api_secret: str | None = None,
        subscription_key: str | None = None,
        target_environment: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        super().__init__(
            base_url or os.getenv("MTN_API_BASE_URL") or DEFAULT_MTN_BASE_URL,
            client=client,
            timeout=timeout,
        )
        self.api_key = api_key if api_key is not None else os.getenv("MTN_API_KEY", "")
        self.api_secret = api_secret if api_secret is not None else os.getenv("MTN_API_SECRET", "")
        self.subscription_key = (
            subscription_key
            if subscription_key is not None
            else os.getenv("MTN_SUBSCRIPTION_KEY") or self.api_key
        )
        self.target_environment = (
            target_environment or os.getenv("MTN_TARGET_ENVIRONMENT") or DEFAULT_TARGET_ENVIRONMENT
        )
        self._token: str | None = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def _get_token(self) -> str:
        if self._token and monotonic() < self._token_expires_at:
            return self._token

        async with self._token_lock:
            if self._token and monotonic() < self._token_expires_at:
                return self._token
            if not self.api_key or not self.api_secret:
                raise ProviderAuthError("MTN API credentials are not configured", provider=self.provider_name)

            payload = await self._request(
                "POST",
                "/collection/token/",
                headers={"Ocp-Apim-Subscription-Key": self.subscription_key},
                auth=(self.api_key, self.api_secret),
            )
            token = payload.get("access_token") if isinstance(payload, dict) else None
            if not token:
                raise ProviderAuthError("MTN token response carried no access_token", provider=self.provider_name)
            try:
                expires_in = float(payload.get("expires_in") or 0)
            except (TypeError, ValueError):
                expires_in = 0.0
            self._token = token
            self._token_expires_at = monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN_SECONDS, 0.0)
            logger.debug("[MTN] Obtained access token valid for %.0fs", expires_in)
            return token

    async def _headers(self) -> dict[str, str]:
        token = await self._get_token()
        return {
            "Authorization": f"Bearer {token}",
            "X-Target-Environment": self.target_environment,
            "Ocp-Apim-Subscription-Key": self.subscription_key,
        }

    async def get_balance(self) -> MoMoBalance:
        payload = await self._request("GET", "/collection/v1_0/account/balance", headers=await self._headers())
        try:
            return MoMoBalance.model_validate(payload)
        except PayloadValidationError as exc:
            raise self._malformed(f"balance: {exc.error_count()} invalid field(s)") from exc

    async def get_transactions(self, phone_number: str, start: datetime, end: datetime) -> list[SyncedTransaction]:
        params = {"partyId": phone_number, "start": start.isoformat(), "end": end.isoformat()}
        payload = await self._request(
            "GET",
            "/collection/v1_0/transactions",
            headers=await self._headers(),
            params=params,
        )
        items: Any = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise self._malformed("transactions response is not a list")

        transactions = []
        for item in items:
            try:
                transactions.append(MoMoTransaction.model_validate(item).to_synced())
            except (PayloadValidationError, ValueError) as exc:
                raise self._malformed(str(exc)) from exc
        return transactions

    async def fetch_account_and_transactions(
        self, reference: str, start: datetime, end: datetime
    ) -> ProviderFetchResult:
        try:
            balance = await self.get_balance()
            transactions = await self.get_transactions(reference, start, end)
        except ProviderAuthError:
            # A revoked token should not outlive the failed sync.
            self.invalidate_token()
            raise
        logger.info("[MTN] Fetched %d transactions for %s", len(transactions), reference)
        return ProviderFetchResult(
            account=AccountSnapshot(
                name=f"MTN MoMo {reference}",
                balance=balance.available_balance,
                institution=INSTITUTION_NAME,
                account_number=reference,
                currency=balance.currency,
            ),
            transactions=transactions,
        )
