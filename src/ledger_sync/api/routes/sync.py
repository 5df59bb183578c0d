from typing import Annotated, Any

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ledger_sync.api.dependencies import get_orchestrator, get_store, get_user_id
from ledger_sync.api.errors import error_response
from ledger_sync.api.schemas import SyncRequest
from ledger_sync.core import settings
from ledger_sync.core.errors import AccountStateError, ErrorCode
from ledger_sync.models import SyncOutcome, SyncResult, SyncRun
from ledger_sync.services.sync import SyncOrchestrator
from ledger_sync.store.base import LedgerStore

router = APIRouter(prefix="/accounts")


@router.post("/sync-all")
async def sync_all_accounts(
    user_id: Annotated[str, Depends(get_user_id)],
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> dict[str, SyncResult]:
    return await orchestrator.sync_all_accounts(user_id)


@router.post("/{account_id}/sync", response_model=SyncOutcome)
async def sync_account(
    account_id: str,
    user_id: Annotated[str, Depends(get_user_id)],
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
    req: SyncRequest | None = None,
) -> Any:
    req = req or SyncRequest()
    result = await orchestrator.sync_account(
        user_id, account_id, date_range=req.date_range, sync_type=req.sync_type
    )
    if result.error is not None:
        return error_response(result.error.code, result.error.message)
    return result.outcome


@router.get("/{account_id}/sync-stream")
async def sync_stream(
    account_id: str,
    user_id: Annotated[str, Depends(get_user_id)],
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> StreamingResponse:
    async def generate() -> Any:
        async for event in orchestrator.stream_sync(user_id, account_id):
            yield f"data: {event.model_dump_json(exclude_none=True)}\n\n"
        yield "event: done\ndata: {}\n\n"

    return StreamingResponse(generate(), media_type="text/event-stream", headers=settings.SSE_HEADERS)


@router.get("/{account_id}/sync-runs")
async def list_sync_runs(
    account_id: str,
    user_id: Annotated[str, Depends(get_user_id)],
    store: Annotated[LedgerStore, Depends(get_store)],
    limit: int = 10,
) -> list[SyncRun]:
    account = await store.get_account(user_id, account_id, active_only=False)
    if account is None:
        raise AccountStateError(f"Account {account_id} not found", code=ErrorCode.ACCOUNT_NOT_FOUND)
    return await store.list_sync_runs(user_id, account_id=account_id, limit=max(1, min(limit, 100)))


@router.get("/balance")
async def total_balance(
    user_id: Annotated[str, Depends(get_user_id)],
    store: Annotated[LedgerStore, Depends(get_store)],
) -> dict[str, str]:
    return {"total_balance": str(await store.total_active_balance(user_id))}
