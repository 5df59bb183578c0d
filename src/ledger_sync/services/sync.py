import asyncio
import inspect
from collections.abc import AsyncGenerator, Awaitable, Callable, Sequence
from datetime import timedelta
from time import perf_counter
from typing import Any

from ledger_sync.core.errors import AccountStateError, ErrorCode, LedgerSyncError, ProviderError
from ledger_sync.core.settings import get_sync_window_days
from ledger_sync.domain.merchants import extract_merchant_name
from ledger_sync.domain.transactions import changed_fields
from ledger_sync.integration.base import AdapterRegistry
from ledger_sync.logger import get_logger
from ledger_sync.manager import CategorizerService
from ledger_sync.models import (
    AccountKind,
    CategorizationRule,
    DateRange,
    ErrorInfo,
    LinkedAccount,
    Provider,
    SyncedTransaction,
    SyncOutcome,
    SyncProgress,
    SyncResult,
    SyncRun,
    SyncStatus,
    Transaction,
    TransactionType,
    utcnow,
)
from ledger_sync.services.categories import CategoryResolver
from ledger_sync.store.base import LedgerStore

logger = get_logger(__name__)

ProgressCallback = Callable[[SyncProgress], Awaitable[None] | None]

_KIND_LABELS = {
    AccountKind.BANK: "bank",
    AccountKind.MOBILE_MONEY: "mobile money",
}
_FETCH_MESSAGES = {
    AccountKind.BANK: "Connecting to your bank via Mono...",
    AccountKind.MOBILE_MONEY: "Connecting to MTN Mobile Money...",
}


class _ProgressTracker:
    """Forwards events to an optional observer and remembers whether a terminal one went out."""

    def __init__(self, callback: ProgressCallback | None):
        self.callback = callback
        self.terminal = False
        self.account_kind: AccountKind | None = None

    async def emit(self, event: SyncProgress) -> None:
        if self.terminal:
            return
        self.account_kind = event.account_kind or self.account_kind
        if event.status in ("completed", "error"):
            self.terminal = True
        if self.callback is None:
            return
        try:
            result = self.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("[SYNC] Progress observer failed on '%s' event", event.status)

    async def fail(self, message: str) -> None:
        await self.emit(SyncProgress(
            status="error",
            message=message,
            account_kind=self.account_kind,
            error=message,
        ))


class SyncOrchestrator:
    """
    Pulls one linked account from its provider and reconciles the result into the store.

    Transactions are processed strictly one after another so lookups and
    writes for the same account never interleave within a run. A failure on
    one transaction is recorded and the loop moves on.
    """

    def __init__(
        self,
        store: LedgerStore,
        adapters: AdapterRegistry,
        categorizer: CategorizerService,
        resolver: CategoryResolver | None = None,
        window_days: int | None = None,
    ):
        self.store = store
        self.adapters = adapters
        self.categorizer = categorizer
        self.resolver = resolver or CategoryResolver(store)
        self.window_days = window_days if window_days is not None else get_sync_window_days()
        self._background: set[asyncio.Task[Any]] = set()

    def default_range(self) -> DateRange:
        end = utcnow()
        return DateRange(start_date=end - timedelta(days=self.window_days), end_date=end)

    async def _load_account(self, user_id: str, account_id: str) -> LinkedAccount:
        account = await self.store.get_account(user_id, account_id, active_only=False)
        if account is None:
            raise AccountStateError(f"Account {account_id} not found", code=ErrorCode.ACCOUNT_NOT_FOUND)
        if not account.is_active:
            raise AccountStateError(f"Account {account_id} is inactive", code=ErrorCode.ACCOUNT_INACTIVE)
        if not account.provider_reference:
            field = "mono_account_id" if account.account_kind is AccountKind.BANK else "mtn_phone_number"
            raise AccountStateError(
                f"Account {account_id} is missing {field}",
                code=ErrorCode.INVALID_ACCOUNT,
            )
        return account

    async def _execute(
        self,
        user_id: str,
        account_id: str,
        date_range: DateRange | None,
        sync_type: str,
        progress: _ProgressTracker,
    ) -> SyncOutcome:
        account = await self._load_account(user_id, account_id)
        adapter = self.adapters.get(account.account_kind)
        if adapter is None:
            raise AccountStateError(
                f"No provider configured for {account.account_kind.value} accounts",
                code=ErrorCode.INVALID_ACCOUNT,
            )
        window = date_range or self.default_range()
        kind_label = _KIND_LABELS[account.account_kind]

        run = await self.store.create_sync_run(SyncRun(
            user_id=user_id,
            account_id=account.id,
            account_kind=account.account_kind,
            sync_type=sync_type,
        ))
        outcome = SyncOutcome(
            account_kind=account.account_kind,
            institution_name=account.institution_name,
            sync_run_id=run.id,
        )
        logger.info(
            "[SYNC] Run %s started for account %s (%s) %s -> %s",
            run.id,
            account.id,
            kind_label,
            window.start_date.date(),
            window.end_date.date(),
        )
        started = perf_counter()

        try:
            await progress.emit(SyncProgress(
                status="fetching",
                message=_FETCH_MESSAGES[account.account_kind],
                account_kind=account.account_kind,
            ))
            fetched = await adapter.fetch_account_and_transactions(
                account.provider_reference, window.start_date, window.end_date
            )
            institution = fetched.account.institution or account.institution_name
            outcome.institution_name = institution
            # The snapshot is applied before any transaction is processed, even if some later fail.
            await self.store.update_account_sync_state(
                account.id,
                balance=fetched.account.balance,
                last_synced_at=utcnow(),
                institution_name=institution,
            )

            await progress.emit(SyncProgress(
                status="storing",
                message=f"Processing {kind_label} transactions...",
                account_kind=account.account_kind,
                transaction_count=len(fetched.transactions),
                institution_name=institution,
            ))

            rules = await self.store.list_active_rules(user_id)
            for synced in fetched.transactions:
                outcome.total_transactions += 1
                try:
                    result = await self._reconcile(account, run, synced, rules)
                except Exception as exc:
                    message = exc.message if isinstance(exc, LedgerSyncError) else str(exc)
                    outcome.errors.append(f"Transaction {synced.provider_transaction_id}: {message}")
                    logger.warning(
                        "[SYNC] Transaction %s failed in run %s: %s",
                        synced.provider_transaction_id,
                        run.id,
                        message,
                    )
                    continue
                if result == "new":
                    outcome.new_transactions += 1
                elif result == "updated":
                    outcome.updated_transactions += 1

            await self.store.complete_sync_run(
                run.id,
                status=SyncStatus.SUCCESS,
                transactions_synced=outcome.total_transactions,
            )
        except Exception as exc:
            await self._fail_run(run, exc.message if isinstance(exc, LedgerSyncError) else str(exc))
            raise

        logger.info(
            "[SYNC] Run %s finished in %.2fs: %d total, %d new, %d updated, %d errors",
            run.id,
            perf_counter() - started,
            outcome.total_transactions,
            outcome.new_transactions,
            outcome.updated_transactions,
            len(outcome.errors),
        )
        await progress.emit(SyncProgress(
            status="completed",
            message=f"Successfully imported {outcome.total_transactions} {kind_label} transactions",
            account_kind=account.account_kind,
            transaction_count=outcome.total_transactions,
            institution_name=outcome.institution_name,
        ))
        return outcome

    async def _fail_run(self, run: SyncRun, message: str) -> None:
        logger.error("[SYNC] Run %s failed: %s", run.id, message)
        try:
            await self.store.complete_sync_run(
                run.id,
                status=SyncStatus.FAILED,
                transactions_synced=0,
                error_message=message,
            )
        except LedgerSyncError as exc:
            logger.error("[SYNC] Could not record failure on run %s: %s", run.id, exc.message)

    async def _reconcile(
        self,
        account: LinkedAccount,
        run: SyncRun,
        synced: SyncedTransaction,
        rules: Sequence[CategorizationRule],
    ) -> str:
        """Insert or update one provider transaction. Returns "new", "updated" or "unchanged"."""
        user_id = account.user_id
        existing = await self.store.find_transaction_by_provider_id(
            user_id, synced.provider, synced.provider_transaction_id
        )

        merchant = extract_merchant_name(synced.description, synced.payee_note)
        signed_amount = -synced.amount if synced.direction is TransactionType.EXPENSE else synced.amount
        classification = self.categorizer.categorize(
            synced.description,
            signed_amount,
            counterparty=synced.counterparty,
            merchant_name=merchant,
            rules=rules,
        )
        category = await self.resolver.resolve_result(user_id, classification)
        tx_type = synced.direction or classification.suggested_type

        metadata = dict(synced.metadata)
        if synced.counterparty:
            metadata["counterparty"] = synced.counterparty

        incoming: dict[str, Any] = {
            "amount": synced.amount,
            "type": tx_type,
            "description": synced.description,
            "merchant_name": merchant,
            "category_id": category.id,
            "provider_status": synced.provider_status,
            "provider_metadata": metadata,
        }

        if existing is not None:
            if not existing.auto_categorized and existing.category_id:
                # A category the user picked by hand survives re-sync.
                incoming.pop("category_id")
            changes = changed_fields(existing, incoming)
            if not changes:
                return "unchanged"
            if "category_id" in changes:
                changes["auto_categorized"] = True
                changes["categorization_confidence"] = classification.confidence
            changes["sync_run_id"] = run.id
            await self.store.update_transaction(user_id, existing.id, changes)
            logger.debug(
                "[SYNC] Updated %s (%s)", synced.provider_transaction_id, ", ".join(sorted(changes))
            )
            return "updated"

        transaction = Transaction(
            user_id=user_id,
            account_id=account.id,
            transaction_date=synced.occurred_at,
            is_synced=True,
            auto_categorized=True,
            categorization_confidence=classification.confidence,
            sync_run_id=run.id,
            mono_transaction_id=(
                synced.provider_transaction_id if synced.provider is Provider.MONO else None
            ),
            mtn_reference_id=(
                synced.provider_transaction_id if synced.provider is Provider.MTN_MOMO else None
            ),
            **incoming,
        )
        await self.store.insert_transaction(transaction)
        return "new"

    async def sync_account_with_progress(
        self,
        user_id: str,
        account_id: str,
        on_progress: ProgressCallback | None,
        date_range: DateRange | None = None,
        sync_type: str = "manual",
    ) -> SyncResult:
        """
        Run one sync and report each stage to ``on_progress``.

        Events arrive in the order fetching, storing, then exactly one of
        completed or error. A precondition failure emits only the error event.
        """
        tracker = _ProgressTracker(on_progress)
        try:
            outcome = await self._execute(user_id, account_id, date_range, sync_type, tracker)
        except AccountStateError as exc:
            logger.warning("[SYNC] Refused sync of account %s: %s", account_id, exc.message)
            await tracker.fail(exc.message)
            return SyncResult(error=ErrorInfo(code=exc.code.value, message=exc.message))
        except ProviderError as exc:
            await tracker.fail(exc.message)
            return SyncResult(error=ErrorInfo(code=exc.code.value, message=exc.message))
        except LedgerSyncError as exc:
            await tracker.fail(exc.message)
            return SyncResult(error=ErrorInfo(code=ErrorCode.SYNC_FAILED.value, message=exc.message))
        except Exception as exc:
            await tracker.fail(str(exc) or exc.__class__.__name__)
            raise
        return SyncResult(outcome=outcome)

    async def sync_account(
        self,
        user_id: str,
        account_id: str,
        date_range: DateRange | None = None,
        sync_type: str = "manual",
    ) -> SyncResult:
        return await self.sync_account_with_progress(
            user_id, account_id, None, date_range=date_range, sync_type=sync_type
        )

    async def _sync_isolated(self, user_id: str, account_id: str, sync_type: str) -> SyncResult:
        # One crashing account must not discard the results of the others.
        try:
            return await self.sync_account(user_id, account_id, sync_type=sync_type)
        except Exception as exc:
            logger.exception("[SYNC] Account %s crashed during sync of all accounts", account_id)
            message = str(exc) or exc.__class__.__name__
            return SyncResult(error=ErrorInfo(code=ErrorCode.SYNC_FAILED.value, message=message))

    async def sync_all_accounts(self, user_id: str, sync_type: str = "manual") -> dict[str, SyncResult]:
        """Sync every active account of the user concurrently; accounts share nothing but the store."""
        accounts = await self.store.list_active_accounts(user_id)
        results = await asyncio.gather(*(
            self._sync_isolated(user_id, account.id, sync_type) for account in accounts
        ))
        return {account.id: result for account, result in zip(accounts, results)}

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._background.add(task)

        def done(finished: asyncio.Task[Any]) -> None:
            self._background.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error("[SYNC] Streamed sync crashed: %s", finished.exception())

        task.add_done_callback(done)

    async def stream_sync(
        self,
        user_id: str,
        account_id: str,
        date_range: DateRange | None = None,
        sync_type: str = "manual",
    ) -> AsyncGenerator[SyncProgress, None]:
        """
        Yield progress events for one sync.

        The sync itself runs in a separate task, so a consumer that stops
        listening does not stop it; the sync run row is still completed.
        """
        queue: asyncio.Queue[SyncProgress | None] = asyncio.Queue()

        async def run() -> SyncResult:
            try:
                return await self.sync_account_with_progress(
                    user_id, account_id, queue.put_nowait, date_range=date_range, sync_type=sync_type
                )
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(run())
        self._track(task)

        terminal_seen = False
        while True:
            event = await queue.get()
            if event is None:
                break
            terminal_seen = terminal_seen or event.status in ("completed", "error")
            yield event

        if not terminal_seen:
            message = "Sync ended unexpectedly"
            await asyncio.wait({task})
            if not task.cancelled() and task.exception() is not None:
                message = str(task.exception())
            yield SyncProgress(status="error", message=message, error=message)
