import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import httpx

from ledger_sync.core.errors import (
    MalformedPayloadError,
    ProviderAuthError,
    ProviderNetworkError,
    ProviderTimeoutError,
)
from ledger_sync.core.settings import get_provider_timeout
from ledger_sync.logger import get_logger
from ledger_sync.models import AccountKind, ProviderFetchResult

logger = get_logger(__name__)


class ProviderAdapter(ABC):
    """
    Fetches one account snapshot plus its transactions for a date window.

    Adapters never write locally. Every failure leaves as a ``ProviderError``
    subclass so the orchestrator can record it on the sync run.
    """

    provider_name: str = "provider"
    account_kind: AccountKind

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else get_provider_timeout()
        self._client = client
        self._client_lock = asyncio.Lock()

    async def aclose(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _get_client(self) -> httpx.AsyncClient:
        client = self._client
        if client is not None and not client.is_closed:
            return client

        async with self._client_lock:
            client = self._client
            if client is None or client.is_closed:
                client = httpx.AsyncClient(timeout=self.timeout)
                self._client = client
            return client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        auth: httpx.Auth | tuple[str, str] | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body, mapping failures onto provider errors."""
        client = await self._get_client()
        url = f"{self.base_url}{path}"
        kwargs: dict[str, Any] = {"headers": headers, "params": params, "timeout": self.timeout}
        if auth is not None:
            kwargs["auth"] = auth
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(
                f"{self.provider_name} request timed out after {self.timeout:.1f}s",
                provider=self.provider_name,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderNetworkError(
                f"{self.provider_name} request failed: {exc}",
                provider=self.provider_name,
            ) from exc

        status = response.status_code
        if status in (401, 403):
            raise ProviderAuthError(
                f"{self.provider_name} rejected the credentials ({status})",
                provider=self.provider_name,
                status_code=status,
            )
        if status < 200 or status >= 300:
            raise ProviderNetworkError(
                f"{self.provider_name} API error ({status}): {response.text[:200]}",
                provider=self.provider_name,
                status_code=status,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise MalformedPayloadError(
                f"{self.provider_name} returned a non-JSON body",
                provider=self.provider_name,
                status_code=status,
            ) from exc

    def _malformed(self, message: str) -> MalformedPayloadError:
        return MalformedPayloadError(f"{self.provider_name} payload invalid: {message}", provider=self.provider_name)

    @abstractmethod
    async def fetch_account_and_transactions(
        self, reference: str, start: datetime, end: datetime
    ) -> ProviderFetchResult:
        pass


class AdapterRegistry:
    """Account kind -> adapter."""

    def __init__(self, adapters: list[ProviderAdapter] | None = None):
        self._adapters: dict[AccountKind, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.account_kind] = adapter

    def get(self, kind: AccountKind) -> ProviderAdapter | None:
        return self._adapters.get(kind)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            try:
                await adapter.aclose()
            except httpx.HTTPError as exc:
                logger.warning("[SYNC] Failed to close %s client: %s", adapter.provider_name, exc)
