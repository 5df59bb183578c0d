from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ledger_sync.api.errors import ledger_error_handler
from ledger_sync.api.routes import categories, sync, transactions
from ledger_sync.core import settings
from ledger_sync.core.errors import LedgerSyncError
from ledger_sync.integration.base import AdapterRegistry
from ledger_sync.integration.mono import MonoAdapter
from ledger_sync.integration.mtn import MTNMoMoAdapter
from ledger_sync.logger import get_logger, setup_logging
from ledger_sync.manager import CategorizerService
from ledger_sync.services.categories import CategoryResolver, CategoryService
from ledger_sync.services.sync import SyncOrchestrator
from ledger_sync.services.transactions import TransactionEditor
from ledger_sync.store.base import LedgerStore
from ledger_sync.store.memory import InMemoryStore
from ledger_sync.store.sqlite import SQLiteStore

logger = get_logger(__name__)


def build_store() -> LedgerStore:
    """The in-memory backend keeps nothing across restarts; use it for demos and local runs."""
    if settings.get_store_backend() == "memory":
        logger.warning("Using the in-memory store. Data is lost when the service stops.")
        return InMemoryStore()
    return SQLiteStore(settings.DATABASE_PATH)


def create_app() -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        store = build_store()
        await store.initialize()

        mono = MonoAdapter()
        mtn = MTNMoMoAdapter()
        if not mono.secret_key:
            logger.warning("MONO_SECRET_KEY not set. Bank account syncs will fail with API_UNAUTHORIZED.")
        if not mtn.api_key or not mtn.api_secret:
            logger.warning("MTN_API_KEY or MTN_API_SECRET not set. Mobile money syncs will fail with API_UNAUTHORIZED.")
        adapters = AdapterRegistry([mono, mtn])

        categorizer = CategorizerService()
        resolver = CategoryResolver(store)

        app.state.store = store
        app.state.adapters = adapters
        app.state.orchestrator = SyncOrchestrator(store, adapters, categorizer, resolver=resolver)
        app.state.category_service = CategoryService(store, categorizer, resolver=resolver)
        app.state.editor = TransactionEditor(store)

        logger.info("Services initialized.")
        yield
        logger.info("Service shutting down.")
        await adapters.aclose()
        await store.close()

    app = FastAPI(title="Ledger Sync", lifespan=lifespan)
    app.add_exception_handler(LedgerSyncError, ledger_error_handler)

    app.include_router(sync.router)
    app.include_router(categories.router)
    app.include_router(transactions.router)

    return app


app = create_app()
