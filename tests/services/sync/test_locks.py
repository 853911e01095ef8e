"""Tests for leased sync locks."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
import threading

from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import SyncLockType
from finsync.services.sync.locks import SyncLockManager


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class TestSyncLockManager:
    def test_second_acquire_is_refused(self, db: DB) -> None:
        # helper setup
        manager = SyncLockManager(db)

        # act
        first = manager.acquire("user-1", SyncLockType.BALANCE_SYNC)
        second = manager.acquire("user-1", SyncLockType.BALANCE_SYNC)

        # assert
        assert first.acquired is True
        assert first.lock_id is not None
        assert second.acquired is False
        assert second.message == (
            "A balance_sync operation is already in progress for this user"
        )

    def test_kinds_and_users_are_independent(self, db: DB) -> None:
        # helper setup
        manager = SyncLockManager(db)

        # act
        balance = manager.acquire("user-1", SyncLockType.BALANCE_SYNC)
        txns = manager.acquire("user-1", SyncLockType.TRANSACTION_SYNC)
        other_user = manager.acquire("user-2", SyncLockType.BALANCE_SYNC)

        # assert
        assert balance.acquired and txns.acquired and other_user.acquired

    def test_release_allows_reacquire(self, db: DB) -> None:
        # helper setup
        manager = SyncLockManager(db)
        first = manager.acquire("user-1", SyncLockType.TRANSACTION_SYNC)
        assert first.lock_id is not None

        # act
        released = manager.release(first.lock_id)
        again = manager.acquire("user-1", SyncLockType.TRANSACTION_SYNC)

        # assert
        assert released is True
        assert again.acquired is True

    def test_double_release_returns_false(self, db: DB) -> None:
        # helper setup
        manager = SyncLockManager(db)
        lock = manager.acquire("user-1", SyncLockType.FULL_SYNC)
        assert lock.lock_id is not None

        # act
        first = manager.release(lock.lock_id)
        second = manager.release(lock.lock_id)

        # assert
        assert first is True
        assert second is False

    def test_expired_lock_is_swept_on_acquire(self, db: DB) -> None:
        # helper setup
        clock = FakeClock(datetime(2025, 1, 1, 12, 0, 0))
        manager = SyncLockManager(db, lease=timedelta(minutes=5), clock=clock)
        stale = manager.acquire("user-1", SyncLockType.BALANCE_SYNC)

        # act
        clock.advance(timedelta(minutes=4))
        while_held = manager.acquire("user-1", SyncLockType.BALANCE_SYNC)
        clock.advance(timedelta(minutes=2))
        after_expiry = manager.acquire("user-1", SyncLockType.BALANCE_SYNC)

        # assert
        assert stale.acquired is True
        assert while_held.acquired is False
        assert after_expiry.acquired is True
        assert after_expiry.lock_id != stale.lock_id

    def test_cleanup_expired_counts_rows(self, db: DB) -> None:
        # helper setup
        clock = FakeClock(datetime(2025, 1, 1))
        manager = SyncLockManager(db, lease=timedelta(seconds=30), clock=clock)
        manager.acquire("user-1", SyncLockType.BALANCE_SYNC)
        manager.acquire("user-2", SyncLockType.BALANCE_SYNC)

        # act
        clock.advance(timedelta(minutes=1))
        count = manager.cleanup_expired()

        # assert
        assert count == 2

    def test_is_locked(self, db: DB) -> None:
        # helper setup
        manager = SyncLockManager(db)

        # act
        before = manager.is_locked("user-1", SyncLockType.BALANCE_SYNC)
        manager.acquire("user-1", SyncLockType.BALANCE_SYNC)
        after = manager.is_locked("user-1", SyncLockType.BALANCE_SYNC)

        # assert
        assert before is False
        assert after is True

    def test_force_release_user_locks(self, db: DB) -> None:
        # helper setup
        manager = SyncLockManager(db)
        manager.acquire("user-1", SyncLockType.BALANCE_SYNC)
        manager.acquire("user-1", SyncLockType.TRANSACTION_SYNC)
        manager.acquire("user-2", SyncLockType.BALANCE_SYNC)

        # act
        count = manager.force_release_user_locks("user-1")

        # assert
        assert count == 2
        assert manager.is_locked("user-2", SyncLockType.BALANCE_SYNC) is True

    def test_hold_releases_on_exit(self, db: DB) -> None:
        # helper setup
        manager = SyncLockManager(db)

        # act
        with manager.hold("user-1", SyncLockType.BALANCE_SYNC) as lock:
            inside = manager.is_locked("user-1", SyncLockType.BALANCE_SYNC)
        outside = manager.is_locked("user-1", SyncLockType.BALANCE_SYNC)

        # assert
        assert lock.acquired is True
        assert inside is True
        assert outside is False

    def test_hold_does_not_release_someone_elses_lock(self, db: DB) -> None:
        # helper setup
        manager = SyncLockManager(db)
        manager.acquire("user-1", SyncLockType.BALANCE_SYNC)

        # act
        with manager.hold("user-1", SyncLockType.BALANCE_SYNC) as lock:
            pass

        # assert
        assert lock.acquired is False
        assert manager.is_locked("user-1", SyncLockType.BALANCE_SYNC) is True


def test_concurrent_acquire_has_single_winner(db: DB) -> None:
    # helper setup
    manager = SyncLockManager(db)
    barrier = threading.Barrier(5)

    def contend() -> bool:
        barrier.wait()
        return manager.acquire("user-1", SyncLockType.TRANSACTION_SYNC).acquired

    # act
    with ThreadPoolExecutor(max_workers=5) as pool:
        results = list(pool.map(lambda _: contend(), range(5)))

    # assert
    assert results.count(True) == 1
