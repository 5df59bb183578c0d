from typing import Annotated

from fastapi import Header, HTTPException, Request

from ledger_sync.services.categories import CategoryService
from ledger_sync.services.sync import SyncOrchestrator
from ledger_sync.services.transactions import TransactionEditor
from ledger_sync.store.base import LedgerStore


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id


def get_store(request: Request) -> LedgerStore:
    store = getattr(request.app.state, "store", None)
    if not store:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return store


def get_orchestrator(request: Request) -> SyncOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if not orchestrator:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return orchestrator


def get_category_service(request: Request) -> CategoryService:
    service = getattr(request.app.state, "category_service", None)
    if not service:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return service


def get_editor(request: Request) -> TransactionEditor:
    editor = getattr(request.app.state, "editor", None)
    if not editor:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return editor
