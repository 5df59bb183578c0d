from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    NETWORK_ERROR = "NETWORK_ERROR"
    API_TIMEOUT = "API_TIMEOUT"
    API_UNAUTHORIZED = "API_UNAUTHORIZED"
    PROVIDER_MALFORMED_PAYLOAD = "PROVIDER_MALFORMED_PAYLOAD"

    AUTH_USER_NOT_FOUND = "AUTH_USER_NOT_FOUND"

    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    INVALID_ACCOUNT = "INVALID_ACCOUNT"

    SYNC_FAILED = "SYNC_FAILED"

    VALIDATION_REQUIRED_FIELD = "VALIDATION_REQUIRED_FIELD"
    VALIDATION_INVALID_FORMAT = "VALIDATION_INVALID_FORMAT"
    VALIDATION_INVALID_RANGE = "VALIDATION_INVALID_RANGE"

    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    TRANSACTION_IMMUTABLE = "TRANSACTION_IMMUTABLE"
    CATEGORY_NOT_FOUND = "CATEGORY_NOT_FOUND"

    STORE_ERROR = "STORE_ERROR"
    STORE_TIMEOUT = "STORE_TIMEOUT"


class LedgerSyncError(Exception):
    """Base class for every error that crosses a public operation boundary."""

    code: ErrorCode = ErrorCode.SYNC_FAILED

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message}


class AuthenticationError(LedgerSyncError):
    code = ErrorCode.AUTH_USER_NOT_FOUND


class ValidationError(LedgerSyncError):
    code = ErrorCode.VALIDATION_INVALID_FORMAT

    def __init__(self, field: str, message: str, value: Any = None, *, code: ErrorCode | None = None) -> None:
        super().__init__(message, code=code, details={"field": field, "value": value})
        self.field = field
        self.value = value


class AccountStateError(LedgerSyncError):
    code = ErrorCode.ACCOUNT_NOT_FOUND


class ProviderError(LedgerSyncError):
    code = ErrorCode.NETWORK_ERROR

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
        code: ErrorCode | None = None,
    ) -> None:
        super().__init__(message, code=code, details={"provider": provider, "status_code": status_code})
        self.provider = provider
        self.status_code = status_code


class ProviderAuthError(ProviderError):
    code = ErrorCode.API_UNAUTHORIZED


class ProviderNetworkError(ProviderError):
    code = ErrorCode.NETWORK_ERROR


class ProviderTimeoutError(ProviderNetworkError):
    code = ErrorCode.API_TIMEOUT


class MalformedPayloadError(ProviderError):
    code = ErrorCode.PROVIDER_MALFORMED_PAYLOAD


class TransactionNotFoundError(LedgerSyncError):
    code = ErrorCode.TRANSACTION_NOT_FOUND


class CategoryNotFoundError(LedgerSyncError):
    code = ErrorCode.CATEGORY_NOT_FOUND


class StoreError(LedgerSyncError):
    code = ErrorCode.STORE_ERROR


class ImmutableTransactionError(LedgerSyncError):
    code = ErrorCode.TRANSACTION_IMMUTABLE
