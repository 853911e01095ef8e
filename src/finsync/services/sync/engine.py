"""Cursor-based sync of balances and transactions from the aggregation provider.

Every user-level operation runs under the user's lock for that sync kind and
returns a summary instead of raising: one item failing is recorded in the
result and the batch moves on to the next item.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TypeVar

import loguru
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from finsync.adapters.clients.plaid import (
    AggregationProvider,
    RemoteAccountBalance,
    TransactionsPage,
)
from finsync.adapters.db.facade import DB, is_item_syncable
from finsync.adapters.db.models import ExternalItem, ItemStatus, SyncLockType
from finsync.adapters.security import TokenCipher
from finsync.core.errors import FinsyncError, SyncFailedError, classify_error
from finsync.core.retry import RetryConfig, with_retry
from finsync.services.sync.categories import map_provider_category
from finsync.services.sync.locks import SyncLockManager
from finsync.services.sync.types import (
    BalanceSyncResult,
    CombinedSyncResult,
    ItemBalanceResult,
    ItemTransactionsResult,
    SyncError,
    TransactionsSyncResult,
)

T = TypeVar("T")

DEFAULT_MAX_PAGES = 50
LOCK_CONTENTION_ITEM_ID = "N/A"

# Called after each applied page with (page number, rows written so far)
PageObserver = Callable[[int, int], None]


class SyncEngineLogger:
    """Handles all logging for the sync engine."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def sync_skipped(self, user_id: str, kind: str, message: str | None) -> None:
        self._logger.bind(user_id=user_id, kind=kind).info(
            "Skipping {} for user {}: {}", kind, user_id, message
        )

    def sync_start(self, user_id: str, kind: str, item_count: int) -> None:
        self._logger.bind(user_id=user_id, kind=kind, items=item_count).info(
            "Starting {} for user {} ({} items)", kind, user_id, item_count
        )

    def page_applied(
        self,
        item_id: str,
        page: int,
        added: int,
        modified: int,
        removed: int,
        has_more: bool,
    ) -> None:
        self._logger.bind(item_id=item_id, page=page).debug(
            "Item {} page {}: +{} ~{} -{} (has_more={})",
            item_id,
            page,
            added,
            modified,
            removed,
            has_more,
        )

    def page_cap_reached(self, item_id: str, max_pages: int) -> None:
        self._logger.bind(item_id=item_id, max_pages=max_pages).warning(
            "Item {} still has more pages after {} pages; resuming next sync",
            item_id,
            max_pages,
        )

    def item_not_syncable(self, item_id: str, status: str) -> None:
        self._logger.bind(item_id=item_id, status=status).warning(
            "Not syncing item {}: status is {}", item_id, status
        )

    def item_failed(self, item_id: str, error_code: str, error: BaseException) -> None:
        self._logger.bind(item_id=item_id, error_code=error_code).error(
            "Sync failed for item {} [{}]: {}", item_id, error_code, error
        )

    def mark_failed(self, item_id: str, error: BaseException) -> None:
        self._logger.bind(item_id=item_id).error(
            "Could not record failure on item {}: {}", item_id, error
        )

    def sync_complete(
        self, user_id: str, kind: str, successful: int, failed: int
    ) -> None:
        self._logger.bind(
            user_id=user_id, kind=kind, successful=successful, failed=failed
        ).info(
            "Finished {} for user {}: {} ok, {} failed",
            kind,
            user_id,
            successful,
            failed,
        )


class SyncEngine:
    """Synchronize linked items for a user into the local store."""

    def __init__(
        self,
        db: DB,
        provider: AggregationProvider,
        locks: SyncLockManager,
        cipher: TokenCipher,
        *,
        retry_config: RetryConfig | None = None,
        category_mapper: Callable[
            [list[str] | None], str
        ] = map_provider_category,
        max_pages: int = DEFAULT_MAX_PAGES,
        sleep: Callable[[float], object] | None = None,
        engine_logger: SyncEngineLogger | None = None,
    ) -> None:
        self._db = db
        self._provider = provider
        self._locks = locks
        self._cipher = cipher
        self._retry_config = retry_config or RetryConfig()
        self._category_mapper = category_mapper
        self._max_pages = max_pages
        self._sleep = sleep or asyncio.sleep
        self._logger = engine_logger or SyncEngineLogger()

    # Remote calls --------------------------------------------------------

    async def _call_remote(self, fn: Callable[..., T], *args: object) -> T:
        """Run a blocking provider call off the loop, with retries."""

        async def operation() -> T:
            return await asyncio.to_thread(fn, *args)

        return await with_retry(
            operation,
            self._retry_config,
            sleep=self._sleep,  # type: ignore[arg-type]
        )

    # Failure bookkeeping -------------------------------------------------

    def _record_failure(self, item_id: str, error: BaseException) -> SyncError:
        """Classify ``error``, mark the item and return the batch entry."""
        classification = classify_error(error)
        self._logger.item_failed(item_id, classification.error_code, error)
        try:
            self._db.mark_item_status(
                item_id,
                ItemStatus.ERROR.value,
                error_code=classification.error_code,
                error_message=classification.user_message,
            )
        except SQLAlchemyError as e:
            self._logger.mark_failed(item_id, e)
        return SyncError(
            item_id=item_id,
            error=classification.user_message,
            error_code=classification.error_code,
            requires_reconnect=classification.requires_reconnect,
        )

    def _clear_failure(self, item: ExternalItem) -> None:
        if item.status != ItemStatus.ACTIVE.value or item.error_code:
            self._db.reactivate_item(item.item_id)

    def _get_item(self, item_id: str) -> ExternalItem:
        item = self._db.get_item(item_id)
        if item is None:
            msg = f"Item not found: {item_id}"
            raise FinsyncError(msg)
        return item

    def _owner_of(self, item_id: str) -> str:
        return self._get_item(item_id).user_id

    def _load_syncable(self, item_id: str) -> tuple[ExternalItem, SyncError | None]:
        """Read the item under its lock and check it may be synced."""
        item = self._get_item(item_id)
        if is_item_syncable(item):
            return item, None
        self._logger.item_not_syncable(item_id, item.status)
        return item, SyncError(
            item_id=item_id,
            error=item.error_message or "Item needs to be reconnected",
            error_code=item.error_code or item.status.upper(),
            requires_reconnect=True,
        )

    # Balances ------------------------------------------------------------

    async def _sync_item_balances(self, item: ExternalItem) -> ItemBalanceResult:
        access_token = self._cipher.decrypt(item.access_token)
        balances: list[RemoteAccountBalance] = await self._call_remote(
            self._provider.fetch_balances, access_token
        )
        updated = self._db.upsert_account_balances(
            user_id=item.user_id, item_id=item.item_id, balances=balances
        )
        self._clear_failure(item)
        return ItemBalanceResult(
            item_id=item.item_id, success=True, accounts_updated=updated
        )

    async def _balances_for_items(
        self, user_id: str, items: list[ExternalItem]
    ) -> BalanceSyncResult:
        result = BalanceSyncResult()
        self._logger.sync_start(user_id, SyncLockType.BALANCE_SYNC, len(items))
        for item in items:
            try:
                item_result = await self._sync_item_balances(item)
            except Exception as e:
                error = self._record_failure(item.item_id, e)
                result.record(
                    ItemBalanceResult(
                        item_id=item.item_id, success=False, error=error.error
                    ),
                    error,
                )
                continue
            result.record(item_result)
        self._logger.sync_complete(
            user_id,
            SyncLockType.BALANCE_SYNC,
            result.items_successful,
            result.items_failed,
        )
        return result

    async def sync_account_balances(self, user_id: str) -> BalanceSyncResult:
        """Refresh balances for every syncable item the user has linked."""
        with self._locks.hold(user_id, SyncLockType.BALANCE_SYNC) as lock:
            if not lock.acquired:
                self._logger.sync_skipped(
                    user_id, SyncLockType.BALANCE_SYNC, lock.message
                )
                return BalanceSyncResult(
                    skipped=True,
                    errors=[
                        SyncError(
                            item_id=LOCK_CONTENTION_ITEM_ID, error=lock.message or ""
                        )
                    ],
                )
            items = self._db.list_syncable_items(user_id)
            return await self._balances_for_items(user_id, items)

    async def sync_item_balances(self, item_id: str) -> BalanceSyncResult:
        """Refresh balances for one item, under its owner's balance lock.

        An item that is not syncable is reported as skipped and left as is.

        Raises:
            FinsyncError: If the item does not exist
        """
        user_id = self._owner_of(item_id)
        with self._locks.hold(user_id, SyncLockType.BALANCE_SYNC) as lock:
            if not lock.acquired:
                self._logger.sync_skipped(
                    user_id, SyncLockType.BALANCE_SYNC, lock.message
                )
                return BalanceSyncResult(
                    skipped=True,
                    errors=[SyncError(item_id=item_id, error=lock.message or "")],
                )
            item, refused = self._load_syncable(item_id)
            if refused is not None:
                return BalanceSyncResult(skipped=True, errors=[refused])
            return await self._balances_for_items(item.user_id, [item])

    # Transactions --------------------------------------------------------

    async def _sync_item_transactions(
        self, item: ExternalItem, on_page: PageObserver | None = None
    ) -> ItemTransactionsResult:
        access_token = self._cipher.decrypt(item.access_token)
        cursor = item.transactions_cursor
        added = modified = removed = 0
        pages = 0

        while pages < self._max_pages:
            page: TransactionsPage = await self._call_remote(
                self._provider.fetch_transactions_incremental, access_token, cursor
            )
            pages += 1
            counts = self._db.apply_transactions_page(
                user_id=item.user_id,
                item_id=item.item_id,
                added=page.added,
                modified=page.modified,
                removed=page.removed,
                categorize=self._category_mapper,
            )
            added += counts.added
            modified += counts.modified
            removed += counts.removed
            self._logger.page_applied(
                item.item_id,
                pages,
                counts.added,
                counts.modified,
                counts.removed,
                page.has_more,
            )

            cursor = page.next_cursor
            self._db.save_transactions_cursor(
                item.item_id, cursor, completed=not page.has_more
            )
            if on_page is not None:
                on_page(pages, added + modified)
            if not page.has_more:
                break
        else:
            self._logger.page_cap_reached(item.item_id, self._max_pages)

        self._clear_failure(item)
        return ItemTransactionsResult(
            item_id=item.item_id,
            success=True,
            transactions_added=added,
            transactions_modified=modified,
            transactions_removed=removed,
            pages=pages,
            cursor=cursor,
        )

    async def _transactions_for_items(
        self,
        user_id: str,
        items: list[ExternalItem],
        on_page: PageObserver | None = None,
    ) -> TransactionsSyncResult:
        result = TransactionsSyncResult()
        self._logger.sync_start(user_id, SyncLockType.TRANSACTION_SYNC, len(items))
        for item in items:
            try:
                item_result = await self._sync_item_transactions(item, on_page)
            except Exception as e:
                error = self._record_failure(item.item_id, e)
                result.record(
                    ItemTransactionsResult(
                        item_id=item.item_id, success=False, error=error.error
                    ),
                    error,
                )
                continue
            result.record(item_result)
        self._logger.sync_complete(
            user_id,
            SyncLockType.TRANSACTION_SYNC,
            result.items_successful,
            result.items_failed,
        )
        return result

    async def sync_user_transactions(self, user_id: str) -> TransactionsSyncResult:
        """Reconcile transactions for every syncable item the user has linked."""
        with self._locks.hold(user_id, SyncLockType.TRANSACTION_SYNC) as lock:
            if not lock.acquired:
                self._logger.sync_skipped(
                    user_id, SyncLockType.TRANSACTION_SYNC, lock.message
                )
                return TransactionsSyncResult(
                    skipped=True,
                    errors=[
                        SyncError(
                            item_id=LOCK_CONTENTION_ITEM_ID, error=lock.message or ""
                        )
                    ],
                )
            items = self._db.list_syncable_items(user_id)
            return await self._transactions_for_items(user_id, items)

    async def sync_item_transactions(
        self, item_id: str, *, on_page: PageObserver | None = None
    ) -> TransactionsSyncResult:
        """Reconcile one item, under its owner's transaction lock.

        The item, and so its cursor, is read after the lock is taken. An item
        that is not syncable is reported as skipped and left as is.

        Raises:
            FinsyncError: If the item does not exist
        """
        user_id = self._owner_of(item_id)
        with self._locks.hold(user_id, SyncLockType.TRANSACTION_SYNC) as lock:
            if not lock.acquired:
                self._logger.sync_skipped(
                    user_id, SyncLockType.TRANSACTION_SYNC, lock.message
                )
                return TransactionsSyncResult(
                    skipped=True,
                    errors=[SyncError(item_id=item_id, error=lock.message or "")],
                )
            item, refused = self._load_syncable(item_id)
            if refused is not None:
                return TransactionsSyncResult(skipped=True, errors=[refused])
            return await self._transactions_for_items(item.user_id, [item], on_page)

    # Combined ------------------------------------------------------------

    async def sync_all(self, user_id: str) -> CombinedSyncResult:
        """Run balance and transaction sync concurrently.

        Raises:
            SyncFailedError: If both sides raised
        """
        balances, transactions = await asyncio.gather(
            self.sync_account_balances(user_id),
            self.sync_user_transactions(user_id),
            return_exceptions=True,
        )
        if isinstance(balances, BaseException) and isinstance(
            transactions, BaseException
        ):
            msg = f"Sync failed for user {user_id}: {balances}; {transactions}"
            raise SyncFailedError(msg) from transactions
        return CombinedSyncResult(
            balances=None if isinstance(balances, BaseException) else balances,
            transactions=None
            if isinstance(transactions, BaseException)
            else transactions,
            balances_error=str(balances)
            if isinstance(balances, BaseException)
            else None,
            transactions_error=str(transactions)
            if isinstance(transactions, BaseException)
            else None,
        )
