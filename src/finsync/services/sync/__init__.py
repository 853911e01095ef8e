"""Sync services: locks, cursor-based engine and background status."""

from __future__ import annotations

from finsync.services.sync.engine import SyncEngine
from finsync.services.sync.locks import LockResult, SyncLockManager
from finsync.services.sync.status import (
    BackgroundSyncRunner,
    SyncProgress,
    get_sync_status,
)
from finsync.services.sync.types import (
    BalanceSyncResult,
    CombinedSyncResult,
    SyncError,
    TransactionsSyncResult,
)

__all__ = [
    # Engine
    "SyncEngine",
    "BalanceSyncResult",
    "TransactionsSyncResult",
    "CombinedSyncResult",
    "SyncError",
    # Locks
    "LockResult",
    "SyncLockManager",
    # Background status
    "BackgroundSyncRunner",
    "SyncProgress",
    "get_sync_status",
]
