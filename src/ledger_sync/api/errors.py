from fastapi import Request
from fastapi.responses import JSONResponse

from ledger_sync.core.errors import ErrorCode, LedgerSyncError
from ledger_sync.logger import get_logger

logger = get_logger(__name__)

STATUS_BY_CODE = {
    ErrorCode.AUTH_USER_NOT_FOUND: 401,
    ErrorCode.ACCOUNT_NOT_FOUND: 404,
    ErrorCode.TRANSACTION_NOT_FOUND: 404,
    ErrorCode.CATEGORY_NOT_FOUND: 404,
    ErrorCode.ACCOUNT_INACTIVE: 409,
    ErrorCode.TRANSACTION_IMMUTABLE: 409,
    ErrorCode.INVALID_ACCOUNT: 422,
    ErrorCode.VALIDATION_REQUIRED_FIELD: 422,
    ErrorCode.VALIDATION_INVALID_FORMAT: 422,
    ErrorCode.VALIDATION_INVALID_RANGE: 422,
    ErrorCode.NETWORK_ERROR: 502,
    ErrorCode.API_TIMEOUT: 502,
    ErrorCode.API_UNAUTHORIZED: 502,
    ErrorCode.PROVIDER_MALFORMED_PAYLOAD: 502,
    ErrorCode.STORE_TIMEOUT: 503,
}


def status_for(code: ErrorCode | str) -> int:
    try:
        return STATUS_BY_CODE.get(ErrorCode(code), 500)
    except ValueError:
        return 500


def error_response(code: ErrorCode | str, message: str) -> JSONResponse:
    value = code.value if isinstance(code, ErrorCode) else code
    return JSONResponse(status_code=status_for(code), content={"error": {"code": value, "message": message}})


async def ledger_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, LedgerSyncError):
        raise exc
    status = status_for(exc.code)
    if status >= 500:
        logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc.code, exc.message)
