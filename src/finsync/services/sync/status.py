"""Background transaction sync with progress written to the item for polling.

Long first syncs can outlive a request, so ``start`` marks the item pending,
schedules the sync as an asyncio task and returns at once. Clients poll
``get_sync_status`` until the status is terminal.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import math
from typing import Literal

import loguru
from loguru import logger

from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import utcnow
from finsync.services.monitoring import ErrorTracker
from finsync.services.sync.engine import SyncEngine

SyncStatus = Literal["pending", "syncing", "completed", "failed", "timeout", "unknown"]

MAX_SYNC_DURATION = timedelta(minutes=5)
EARLY_STAGE_ESTIMATE_SECONDS = 20

MSG_PENDING = "Preparing to sync transactions..."
MSG_FETCHING = "Fetching transactions from your bank..."
MSG_TIMEOUT = "Sync taking longer than expected. Will retry automatically."
MSG_FAILED = "Failed to sync transactions. Please try again."
MSG_NO_TRANSACTIONS = "Account connected! No transactions found."


@dataclass(frozen=True, slots=True)
class SyncProgress:
    status: SyncStatus
    progress: int = 0
    transaction_count: int = 0
    message: str = "Syncing..."
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_time_remaining: int | None = None

    @property
    def is_in_progress(self) -> bool:
        return self.status in ("pending", "syncing")

    @property
    def is_complete(self) -> bool:
        return self.status == "completed"

    @property
    def is_failed(self) -> bool:
        return self.status in ("failed", "timeout")


def page_progress(page: int) -> int:
    """Estimated percent done after ``page`` pages; most syncs need 5-15."""
    return min(95, 5 + page * 6)


def estimate_time_remaining(
    progress: int, started_at: datetime, now: datetime
) -> int:
    """Seconds left, extrapolated from elapsed time once past 10%."""
    if progress > 10:
        elapsed = (now - started_at).total_seconds()
        estimated_total = elapsed / progress * 100
        return max(0, math.ceil(estimated_total - elapsed))
    return EARLY_STAGE_ESTIMATE_SECONDS


def get_sync_status(
    db: DB, item_id: str, *, now: datetime | None = None
) -> SyncProgress | None:
    """Read the background sync status of an item.

    Returns:
        SyncProgress, or None when the item does not exist. An item that has
        never been synced in the background reports ``status="unknown"``.
    """
    item = db.get_item(item_id)
    if item is None:
        return None

    status: SyncStatus = item.sync_status or "unknown"  # type: ignore[assignment]
    eta: int | None = None
    if status == "syncing" and item.sync_started_at is not None:
        eta = estimate_time_remaining(
            item.sync_progress or 0, item.sync_started_at, now or utcnow()
        )

    return SyncProgress(
        status=status,
        progress=item.sync_progress or 0,
        transaction_count=item.sync_transaction_count or 0,
        message=item.sync_message or "Syncing...",
        error=item.sync_error,
        started_at=item.sync_started_at,
        completed_at=item.sync_completed_at,
        estimated_time_remaining=eta,
    )


class BackgroundSyncLogger:
    """Handles all logging for background syncs."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def started(self, item_id: str) -> None:
        self._logger.bind(item_id=item_id).info(
            "Background sync scheduled for item {}", item_id
        )

    def progress(self, item_id: str, page: int, count: int) -> None:
        self._logger.bind(item_id=item_id, page=page, count=count).debug(
            "Background sync item {} page {}: {} transactions", item_id, page, count
        )

    def timed_out(self, item_id: str, seconds: float) -> None:
        self._logger.bind(item_id=item_id).warning(
            "Background sync for item {} timed out after {:.0f}s", item_id, seconds
        )

    def finished(self, item_id: str, status: str, count: int) -> None:
        self._logger.bind(item_id=item_id, status=status, count=count).info(
            "Background sync for item {} {}: {} transactions", item_id, status, count
        )


class BackgroundSyncRunner:
    """Run item transaction syncs as tasks and record their progress."""

    def __init__(
        self,
        db: DB,
        engine: SyncEngine,
        *,
        max_duration: timedelta = MAX_SYNC_DURATION,
        error_tracker: ErrorTracker | None = None,
        sync_logger: BackgroundSyncLogger | None = None,
    ) -> None:
        self._db = db
        self._engine = engine
        self._max_duration = max_duration
        self._error_tracker = error_tracker or ErrorTracker()
        self._logger = sync_logger or BackgroundSyncLogger()
        self._tasks: set[asyncio.Task[SyncProgress | None]] = set()

    def start(self, item_id: str) -> asyncio.Task[SyncProgress | None]:
        """Mark the item pending and schedule ``run`` without awaiting it.

        Must be called from a running event loop.
        """
        self._db.update_item(
            item_id,
            sync_status="pending",
            sync_progress=0,
            sync_transaction_count=0,
            sync_message=MSG_PENDING,
            sync_error=None,
            sync_started_at=utcnow(),
            sync_completed_at=None,
        )
        task = asyncio.get_running_loop().create_task(self.run(item_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._logger.started(item_id)
        return task

    async def run(self, item_id: str) -> SyncProgress | None:
        """Sync one item to completion, recording each stage on the item."""
        self._db.update_item(
            item_id,
            sync_status="syncing",
            sync_progress=5,
            sync_message=MSG_FETCHING,
        )

        def on_page(page: int, count: int) -> None:
            self._logger.progress(item_id, page, count)
            self._db.update_item(
                item_id,
                sync_status="syncing",
                sync_progress=page_progress(page),
                sync_transaction_count=count,
                sync_message=f"Syncing transactions... ({count} found)",
            )

        try:
            result = await asyncio.wait_for(
                self._engine.sync_item_transactions(item_id, on_page=on_page),
                timeout=self._max_duration.total_seconds(),
            )
        except asyncio.TimeoutError:
            self._logger.timed_out(item_id, self._max_duration.total_seconds())
            self._db.update_item(
                item_id,
                sync_status="timeout",
                sync_progress=90,
                sync_message=MSG_TIMEOUT,
                sync_completed_at=utcnow(),
            )
            return get_sync_status(self._db, item_id)
        except Exception as e:
            self._error_tracker.track_error(
                e, item_id=item_id, operation="background_sync"
            )
            self._fail(item_id, str(e))
            return get_sync_status(self._db, item_id)

        if result.items_failed or result.skipped:
            error = result.errors[0].error if result.errors else "Unknown error"
            self._fail(item_id, error)
            return get_sync_status(self._db, item_id)

        count = result.transactions_added + result.transactions_modified
        self._db.update_item(
            item_id,
            sync_status="completed",
            sync_progress=100,
            sync_transaction_count=count,
            sync_message=(
                f"Successfully synced {count} transactions!"
                if count > 0
                else MSG_NO_TRANSACTIONS
            ),
            sync_error=None,
            sync_completed_at=utcnow(),
        )
        self._logger.finished(item_id, "completed", count)
        return get_sync_status(self._db, item_id)

    def _fail(self, item_id: str, error: str) -> None:
        self._db.update_item(
            item_id,
            sync_status="failed",
            sync_progress=0,
            sync_transaction_count=0,
            sync_message=MSG_FAILED,
            sync_error=error,
            sync_completed_at=utcnow(),
        )
        self._logger.finished(item_id, "failed", 0)
