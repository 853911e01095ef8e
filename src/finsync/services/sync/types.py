from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class SyncError:
    """A per-item failure recorded in a batch result."""

    item_id: str
    error: str
    error_code: str | None = None
    requires_reconnect: bool = False


@dataclass(frozen=True, slots=True)
class ItemBalanceResult:
    item_id: str
    success: bool
    accounts_updated: int = 0
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ItemTransactionsResult:
    item_id: str
    success: bool
    transactions_added: int = 0
    transactions_modified: int = 0
    transactions_removed: int = 0
    pages: int = 0
    cursor: str | None = None
    error: str | None = None


@dataclass(slots=True)
class BalanceSyncResult:
    """Outcome of a balance sync over a user's active items."""

    items_processed: int = 0
    items_successful: int = 0
    items_failed: int = 0
    accounts_updated: int = 0
    skipped: bool = False
    errors: list[SyncError] = field(default_factory=list)
    results: list[ItemBalanceResult] = field(default_factory=list)

    def record(self, result: ItemBalanceResult, error: SyncError | None = None) -> None:
        self.items_processed += 1
        self.results.append(result)
        if result.success:
            self.items_successful += 1
            self.accounts_updated += result.accounts_updated
        else:
            self.items_failed += 1
            if error is not None:
                self.errors.append(error)


@dataclass(slots=True)
class TransactionsSyncResult:
    """Outcome of a transaction sync over a user's active items."""

    items_processed: int = 0
    items_successful: int = 0
    items_failed: int = 0
    transactions_added: int = 0
    transactions_modified: int = 0
    transactions_removed: int = 0
    skipped: bool = False
    errors: list[SyncError] = field(default_factory=list)
    results: list[ItemTransactionsResult] = field(default_factory=list)

    @property
    def total_transactions(self) -> int:
        return (
            self.transactions_added
            + self.transactions_modified
            + self.transactions_removed
        )

    def record(
        self, result: ItemTransactionsResult, error: SyncError | None = None
    ) -> None:
        self.items_processed += 1
        self.results.append(result)
        self.transactions_added += result.transactions_added
        self.transactions_modified += result.transactions_modified
        self.transactions_removed += result.transactions_removed
        if result.success:
            self.items_successful += 1
        else:
            self.items_failed += 1
            if error is not None:
                self.errors.append(error)


@dataclass(frozen=True, slots=True)
class CombinedSyncResult:
    """Outcome of running balance and transaction sync together.

    A side is None when it raised; its message is kept in ``*_error``.
    """

    balances: BalanceSyncResult | None
    transactions: TransactionsSyncResult | None
    balances_error: str | None = None
    transactions_error: str | None = None
