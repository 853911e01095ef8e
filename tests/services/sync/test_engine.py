from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from finsync.adapters.clients.plaid import (
    RemoteAccountBalance,
    RemoteTransaction,
    TransactionsPage,
)
from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import SyncLockType
from finsync.adapters.security import TokenCipher
from finsync.core.errors import FinsyncError, RemoteProviderError, SyncFailedError
from finsync.core.retry import RetryConfig
from finsync.services.sync.engine import LOCK_CONTENTION_ITEM_ID, SyncEngine
from finsync.services.sync.locks import SyncLockManager
from finsync.services.sync.types import BalanceSyncResult, TransactionsSyncResult

# Helper functions


def make_txn(
    txn_id: str,
    *,
    amount: float = 10.0,
    account: str = "acc-1",
    date: str = "2025-01-01",
    name: str = "Test Transaction",
    merchant_name: str | None = None,
    category: list[str] | None = None,
    pending: bool = False,
) -> RemoteTransaction:
    """Create a remote transaction."""
    return RemoteTransaction(
        remote_transaction_id=txn_id,
        remote_account_id=account,
        amount=amount,
        date=date,
        name=name,
        merchant_name=merchant_name,
        category=category,
        pending=pending,
    )


def ids_of(db: DB, user_id: str = "user-1") -> list[str]:
    return sorted(t.remote_transaction_id or "" for t in db.list_transactions(user_id))


async def no_sleep(_: float) -> None:
    return None


class TestTransactionSync:
    def test_two_pages_follow_cursor_chain(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")
        db.save_transactions_cursor("item-1", "c1", completed=False)
        provider.pages = {
            "c1": TransactionsPage(
                added=[make_txn("t1"), make_txn("t2")],
                next_cursor="c2",
                has_more=True,
            ),
            "c2": TransactionsPage(
                added=[make_txn("t3")], next_cursor="c3", has_more=False
            ),
        }

        # act
        result = asyncio.run(engine.sync_user_transactions("user-1"))

        # assert
        assert provider.cursors_used == ["c1", "c2"]
        assert result.items_successful == 1
        assert result.transactions_added == 3
        assert ids_of(db) == ["t1", "t2", "t3"]
        item = db.get_item("item-1")
        assert item is not None
        assert item.transactions_cursor == "c3"
        assert item.last_sync is not None

    def test_reconciles_added_modified_removed(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")
        provider.pages = {
            None: TransactionsPage(
                added=[make_txn("A"), make_txn("B"), make_txn("C")],
                next_cursor="c1",
            ),
            "c1": TransactionsPage(
                added=[make_txn("D")],
                modified=[make_txn("B", amount=42.5, pending=True)],
                removed=["C"],
                next_cursor="c2",
            ),
        }
        asyncio.run(engine.sync_user_transactions("user-1"))

        # act
        result = asyncio.run(engine.sync_user_transactions("user-1"))

        # assert
        assert (
            result.transactions_added,
            result.transactions_modified,
            result.transactions_removed,
        ) == (1, 1, 1)
        assert ids_of(db) == ["A", "B", "D"]
        [b] = [
            t for t in db.list_transactions("user-1") if t.remote_transaction_id == "B"
        ]
        assert b.amount == 42.5
        assert b.pending is True

    def test_replaying_a_page_does_not_duplicate(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")
        provider.pages = {
            None: TransactionsPage(
                added=[make_txn("t1"), make_txn("t2")], next_cursor="c1"
            )
        }
        asyncio.run(engine.sync_user_transactions("user-1"))
        db.update_item("item-1", transactions_cursor=None)

        # act
        result = asyncio.run(engine.sync_user_transactions("user-1"))

        # assert
        assert result.transactions_added == 0
        assert result.transactions_modified == 2
        assert db.count_transactions("user-1") == 2

    def test_fields_are_mapped_on_insert(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")
        provider.pages = {
            None: TransactionsPage(
                added=[
                    make_txn(
                        "t1",
                        amount=12.34,
                        date="2025-02-03",
                        name="SQ *BLUE BOTTLE",
                        merchant_name="Blue Bottle",
                        category=["Food and Drink", "Restaurants"],
                    )
                ],
                next_cursor="c1",
            )
        }

        # act
        asyncio.run(engine.sync_user_transactions("user-1"))

        # assert
        [txn] = db.list_transactions("user-1")
        assert txn.description == "Blue Bottle"
        assert txn.category == "food"
        assert txn.amount == 12.34
        assert txn.date.isoformat() == "2025-02-03"
        [account] = db.list_accounts("item-1")
        assert txn.account_id == account.id
        assert account.remote_account_id == "acc-1"

    def test_resumes_from_last_committed_page(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")
        provider.pages = {
            None: TransactionsPage(
                added=[make_txn("t1")], next_cursor="c1", has_more=True
            ),
            "c1": TransactionsPage(
                added=[make_txn("t2")], next_cursor="c2", has_more=False
            ),
        }
        provider.fail_on_cursor["c1"] = RemoteProviderError("INVALID_REQUEST")
        first = asyncio.run(engine.sync_item_transactions("item-1"))
        # Reconnected by the user
        db.mark_item_status("item-1", "active")

        # act
        second = asyncio.run(engine.sync_item_transactions("item-1"))

        # assert
        assert first.items_failed == 1
        assert second.items_successful == 1
        assert provider.cursors_used == [None, "c1", "c1"]
        assert ids_of(db) == ["t1", "t2"]
        item = db.get_item("item-1")
        assert item is not None
        assert item.transactions_cursor == "c2"
        assert item.status == "active"
        assert item.error_code is None

    def test_transient_failure_is_retried_within_sync(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")
        provider.pages = {None: TransactionsPage(added=[make_txn("t1")])}
        provider.fail_on_cursor[None] = RemoteProviderError("INSTITUTION_DOWN")

        # act
        result = asyncio.run(engine.sync_user_transactions("user-1"))

        # assert
        assert result.items_successful == 1
        assert provider.cursors_used == [None, None]
        assert db.count_transactions("user-1") == 1

    def test_one_failing_item_does_not_stop_batch(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-a", token="token-a")
        link_item("item-b", token="token-b")
        provider.always_fail["token-a"] = RemoteProviderError(
            "ITEM_LOGIN_REQUIRED", "login required"
        )
        provider.pages = {None: TransactionsPage(added=[make_txn("t1")])}

        # act
        result = asyncio.run(engine.sync_user_transactions("user-1"))

        # assert
        assert result.items_processed == 2
        assert result.items_successful == 1
        assert result.items_failed == 1
        [error] = result.errors
        assert error.item_id == "item-a"
        assert error.error_code == "ITEM_LOGIN_REQUIRED"
        assert error.requires_reconnect is True
        failed = db.get_item("item-a")
        assert failed is not None
        assert failed.status == "error"
        assert failed.error_code == "ITEM_LOGIN_REQUIRED"
        assert db.count_transactions("user-1") == 1

    def test_reconnect_failure_is_not_retried_or_resynced(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1", token="token-1")
        provider.always_fail["token-1"] = RemoteProviderError("ITEM_LOGIN_REQUIRED")
        asyncio.run(engine.sync_user_transactions("user-1"))

        # act
        second = asyncio.run(engine.sync_user_transactions("user-1"))

        # assert
        assert provider.cursors_used == [None]
        assert second.items_processed == 0

    def test_transient_error_item_is_synced_again(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1", token="token-1")
        provider.always_fail["token-1"] = RemoteProviderError("INSTITUTION_DOWN")
        first = asyncio.run(engine.sync_user_transactions("user-1"))
        del provider.always_fail["token-1"]

        # act
        second = asyncio.run(engine.sync_user_transactions("user-1"))

        # assert
        assert first.items_failed == 1
        assert first.errors[0].error_code == "INSTITUTION_DOWN"
        assert second.items_successful == 1
        item = db.get_item("item-1")
        assert item is not None
        assert item.status == "active"
        assert item.error_code is None

    def test_undecryptable_token_fails_item(
        self,
        db: DB,
        engine: SyncEngine,
    ) -> None:
        # helper setup
        other = TokenCipher(TokenCipher.generate_key())
        db.insert_item(
            item_id="item-1", user_id="user-1", access_token=other.encrypt("x")
        )

        # act
        result = asyncio.run(engine.sync_user_transactions("user-1"))

        # assert
        assert result.items_failed == 1
        item = db.get_item("item-1")
        assert item is not None
        assert item.status == "error"

    def test_skipped_when_lock_held(
        self,
        engine: SyncEngine,
        locks: SyncLockManager,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")
        locks.acquire("user-1", SyncLockType.TRANSACTION_SYNC)

        # act
        result = asyncio.run(engine.sync_user_transactions("user-1"))

        # assert
        assert result.skipped is True
        assert result.items_processed == 0
        [error] = result.errors
        assert error.item_id == LOCK_CONTENTION_ITEM_ID
        assert "already in progress" in error.error
        assert provider.cursors_used == []

    def test_lock_released_after_sync(
        self,
        engine: SyncEngine,
        locks: SyncLockManager,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")

        # act
        asyncio.run(engine.sync_user_transactions("user-1"))

        # assert
        assert locks.is_locked("user-1", SyncLockType.TRANSACTION_SYNC) is False

    def test_page_cap_stops_and_resumes(
        self,
        db: DB,
        provider: Any,
        locks: SyncLockManager,
        cipher: TokenCipher,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        capped = SyncEngine(
            db,
            provider,
            locks,
            cipher,
            retry_config=RetryConfig(max_retries=0),
            max_pages=3,
            sleep=no_sleep,
        )
        link_item("item-1")
        provider.pages = {
            None: TransactionsPage(
                added=[make_txn("t0")], next_cursor="p1", has_more=True
            ),
            **{
                f"p{i}": TransactionsPage(
                    added=[make_txn(f"t{i}")], next_cursor=f"p{i + 1}", has_more=True
                )
                for i in range(1, 5)
            },
        }

        # act
        first = asyncio.run(capped.sync_item_transactions("item-1"))
        item_after_first = db.get_item("item-1")
        asyncio.run(capped.sync_item_transactions("item-1"))

        # assert
        assert first.items_successful == 1
        assert first.results[0].pages == 3
        assert item_after_first is not None
        assert item_after_first.transactions_cursor == "p3"
        assert item_after_first.last_sync is None
        assert provider.cursors_used == [None, "p1", "p2", "p3", "p4", "p5"]

    def test_page_observer_sees_running_count(
        self,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")
        provider.pages = {
            None: TransactionsPage(
                added=[make_txn("t1"), make_txn("t2")], next_cursor="c1", has_more=True
            ),
            "c1": TransactionsPage(added=[make_txn("t3")], next_cursor="c2"),
        }
        seen: list[tuple[int, int]] = []

        # act
        asyncio.run(
            engine.sync_item_transactions(
                "item-1", on_page=lambda page, count: seen.append((page, count))
            )
        )

        # assert
        assert seen == [(1, 2), (2, 3)]

    @pytest.mark.parametrize("status", ["pending_expiration", "revoked"])
    def test_non_syncable_item_is_left_alone(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
        status: str,
    ) -> None:
        # helper setup
        link_item("item-1", status=status)
        provider.pages = {None: TransactionsPage(added=[make_txn("t1")])}

        # act
        result = asyncio.run(engine.sync_item_transactions("item-1"))

        # assert
        assert result.skipped is True
        assert result.items_processed == 0
        [error] = result.errors
        assert error.item_id == "item-1"
        assert error.requires_reconnect is True
        assert provider.cursors_used == []
        item = db.get_item("item-1")
        assert item is not None
        assert item.status == status

    def test_reconnect_error_item_is_not_synced(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")
        db.mark_item_status(
            "item-1",
            "error",
            error_code="ITEM_LOGIN_REQUIRED",
            error_message="Please reconnect",
        )

        # act
        result = asyncio.run(engine.sync_item_transactions("item-1"))

        # assert
        assert result.skipped is True
        assert result.errors[0].error_code == "ITEM_LOGIN_REQUIRED"
        assert result.errors[0].error == "Please reconnect"
        assert provider.cursors_used == []

    def test_cursor_is_read_after_lock_is_taken(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        locks: SyncLockManager,
        link_item: Callable[..., Any],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        # helper setup
        link_item("item-1")
        db.update_item("item-1", transactions_cursor="c1")
        provider.pages = {
            "c3": TransactionsPage(added=[make_txn("t4")], next_cursor="c4")
        }
        acquire = locks.acquire

        def acquire_after_other_worker(user_id: str, kind: str) -> Any:
            # Another worker finishes its sync while this one waits
            db.update_item("item-1", transactions_cursor="c3")
            return acquire(user_id, kind)

        monkeypatch.setattr(locks, "acquire", acquire_after_other_worker)

        # act
        asyncio.run(engine.sync_item_transactions("item-1"))

        # assert
        assert provider.cursors_used == ["c3"]
        item = db.get_item("item-1")
        assert item is not None
        assert item.transactions_cursor == "c4"

    def test_status_change_during_sync_is_kept(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")
        db.mark_item_status("item-1", "error", error_code="INSTITUTION_DOWN")
        fetch = provider.fetch_transactions_incremental

        def fetch_then_expire(access_token: str, cursor: str | None) -> Any:
            db.update_item("item-1", status="pending_expiration")
            return fetch(access_token, cursor)

        provider.fetch_transactions_incremental = fetch_then_expire

        # act
        result = asyncio.run(engine.sync_item_transactions("item-1"))

        # assert
        assert result.items_successful == 1
        item = db.get_item("item-1")
        assert item is not None
        assert item.status == "pending_expiration"

    def test_unknown_item_raises(self, engine: SyncEngine) -> None:
        with pytest.raises(FinsyncError):
            asyncio.run(engine.sync_item_transactions("missing"))


class TestBalanceSync:
    def test_balances_are_written_per_account(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1", token="token-1")
        provider.balances["token-1"] = [
            RemoteAccountBalance("acc-1", 100.0, 90.0, "USD", "Checking"),
            RemoteAccountBalance("acc-2", 2500.0, None, "USD", "Savings"),
        ]

        # act
        result = asyncio.run(engine.sync_account_balances("user-1"))

        # assert
        assert result.items_successful == 1
        assert result.accounts_updated == 2
        accounts = {a.remote_account_id: a for a in db.list_accounts("item-1")}
        assert accounts["acc-1"].current_balance == 100.0
        assert accounts["acc-1"].available_balance == 90.0
        assert accounts["acc-2"].name == "Savings"
        item = db.get_item("item-1")
        assert item is not None
        assert item.last_sync is not None

    def test_second_sync_updates_in_place(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1", token="token-1")
        provider.balances["token-1"] = [
            RemoteAccountBalance("acc-1", 100.0, 90.0, "USD", "Checking")
        ]
        asyncio.run(engine.sync_account_balances("user-1"))
        provider.balances["token-1"] = [
            RemoteAccountBalance("acc-1", 75.0, 70.0, "USD", "Checking")
        ]

        # act
        asyncio.run(engine.sync_account_balances("user-1"))

        # assert
        [account] = db.list_accounts("item-1")
        assert account.current_balance == 75.0

    def test_transient_failure_exhausts_retries(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1", token="token-1")
        provider.always_fail["token-1"] = RemoteProviderError("RATE_LIMIT_EXCEEDED")

        # act
        result = asyncio.run(engine.sync_account_balances("user-1"))

        # assert
        assert provider.balance_calls == ["token-1"] * 3
        assert result.items_failed == 1
        assert result.errors[0].error_code == "RATE_LIMIT_EXCEEDED"

    def test_one_failing_item_does_not_stop_batch(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        for name in ("a", "b", "c"):
            link_item(f"item-{name}", token=f"token-{name}")
            provider.balances[f"token-{name}"] = [
                RemoteAccountBalance(f"acc-{name}", 50.0, 50.0, "USD")
            ]
        provider.always_fail["token-b"] = RemoteProviderError(
            "ITEM_LOGIN_REQUIRED", "login required"
        )

        # act
        result = asyncio.run(engine.sync_account_balances("user-1"))

        # assert
        assert result.items_processed == 3
        assert result.items_successful == 2
        assert result.items_failed == 1
        assert result.items_failed + result.items_successful == result.items_processed
        assert [e.item_id for e in result.errors] == ["item-b"]
        assert len(db.list_accounts("item-a")) == 1
        assert len(db.list_accounts("item-c")) == 1
        assert db.list_accounts("item-b") == []
        failed = db.get_item("item-b")
        assert failed is not None
        assert failed.status == "error"

    def test_revoked_item_balances_are_not_fetched(
        self,
        db: DB,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1", token="token-1", status="revoked")

        # act
        result = asyncio.run(engine.sync_item_balances("item-1"))

        # assert
        assert result.skipped is True
        assert provider.balance_calls == []
        item = db.get_item("item-1")
        assert item is not None
        assert item.status == "revoked"

    def test_item_balances_skipped_when_lock_held(
        self,
        engine: SyncEngine,
        locks: SyncLockManager,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1")
        locks.acquire("user-1", SyncLockType.BALANCE_SYNC)

        # act
        result = asyncio.run(engine.sync_item_balances("item-1"))

        # assert
        assert result.skipped is True
        assert result.errors[0].item_id == "item-1"


class TestSyncAll:
    def test_runs_both_kinds(
        self,
        engine: SyncEngine,
        provider: Any,
        link_item: Callable[..., Any],
    ) -> None:
        # helper setup
        link_item("item-1", token="token-1")
        provider.balances["token-1"] = [
            RemoteAccountBalance("acc-1", 1.0, 1.0, "USD")
        ]
        provider.pages = {None: TransactionsPage(added=[make_txn("t1")])}

        # act
        result = asyncio.run(engine.sync_all("user-1"))

        # assert
        assert result.balances is not None
        assert result.balances.accounts_updated == 1
        assert result.transactions is not None
        assert result.transactions.transactions_added == 1

    def test_one_side_raising_is_reported(
        self, engine: SyncEngine, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        # helper setup
        async def broken(user_id: str) -> BalanceSyncResult:
            raise RuntimeError("balances down")

        monkeypatch.setattr(engine, "sync_account_balances", broken)

        # act
        result = asyncio.run(engine.sync_all("user-1"))

        # assert
        assert result.balances is None
        assert result.balances_error == "balances down"
        assert result.transactions is not None

    def test_both_sides_raising_fails(
        self, engine: SyncEngine, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        # helper setup
        async def broken_balances(user_id: str) -> BalanceSyncResult:
            raise RuntimeError("balances down")

        async def broken_transactions(user_id: str) -> TransactionsSyncResult:
            raise RuntimeError("transactions down")

        monkeypatch.setattr(engine, "sync_account_balances", broken_balances)
        monkeypatch.setattr(engine, "sync_user_transactions", broken_transactions)

        # act / assert
        with pytest.raises(SyncFailedError):
            asyncio.run(engine.sync_all("user-1"))
