from typing import Annotated

from fastapi import APIRouter, Depends

from ledger_sync.api.dependencies import get_category_service, get_editor, get_user_id
from ledger_sync.api.schemas import (
    BulkRecategorizeRequest,
    CategoryFeedbackRequest,
    TransactionEditResponse,
)
from ledger_sync.models import BulkResult, TransactionUpdate
from ledger_sync.services.categories import CategoryService
from ledger_sync.services.transactions import TransactionEditor

router = APIRouter(prefix="/transactions")


@router.post("/bulk-recategorize")
async def bulk_recategorize(
    req: BulkRecategorizeRequest,
    user_id: Annotated[str, Depends(get_user_id)],
    service: Annotated[CategoryService, Depends(get_category_service)],
) -> BulkResult:
    return await service.bulk_recategorize(user_id, req.transaction_ids, req.category_id)


@router.post("/{transaction_id}/category-feedback")
async def category_feedback(
    transaction_id: str,
    req: CategoryFeedbackRequest,
    user_id: Annotated[str, Depends(get_user_id)],
    service: Annotated[CategoryService, Depends(get_category_service)],
) -> dict[str, str]:
    await service.provide_category_feedback(user_id, transaction_id, req.category_id)
    return {"status": "success", "transaction_id": transaction_id, "category_id": req.category_id}


@router.patch("/{transaction_id}")
async def update_transaction(
    transaction_id: str,
    update: TransactionUpdate,
    user_id: Annotated[str, Depends(get_user_id)],
    editor: Annotated[TransactionEditor, Depends(get_editor)],
) -> TransactionEditResponse:
    result = await editor.update(user_id, transaction_id, update)
    return TransactionEditResponse(transaction=result.transaction, ignored_fields=result.ignored_fields)


@router.delete("/{transaction_id}")
async def delete_transaction(
    transaction_id: str,
    user_id: Annotated[str, Depends(get_user_id)],
    editor: Annotated[TransactionEditor, Depends(get_editor)],
) -> dict[str, str]:
    await editor.delete(user_id, transaction_id)
    return {"status": "deleted", "transaction_id": transaction_id}
