from typing import Annotated

from fastapi import APIRouter, Depends

from ledger_sync.api.dependencies import get_category_service, get_store, get_user_id
from ledger_sync.api.schemas import SuggestRequest
from ledger_sync.models import Category, CategorySuggestion
from ledger_sync.services.categories import CategoryService
from ledger_sync.store.base import LedgerStore

router = APIRouter(prefix="/categories")


@router.get("")
async def list_categories(
    user_id: Annotated[str, Depends(get_user_id)],
    store: Annotated[LedgerStore, Depends(get_store)],
) -> list[Category]:
    return await store.list_categories(user_id)


@router.post("/suggest")
async def suggest_categories(
    req: SuggestRequest,
    user_id: Annotated[str, Depends(get_user_id)],
    service: Annotated[CategoryService, Depends(get_category_service)],
) -> list[CategorySuggestion]:
    return await service.suggest_categories(
        user_id,
        req.description,
        req.amount,
        merchant_name=req.merchant_name,
        limit=req.limit,
    )
