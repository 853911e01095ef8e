"""Leased per-(user, sync kind) mutual exclusion backed by the sync_locks table.

The unique (user_id, lock_type) constraint is the arbiter: two concurrent
acquisitions race on the insert and exactly one wins. Expired rows are swept
before every acquisition, so a crashed holder blocks others for at most one
lease.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
import uuid

import loguru
from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import SyncLock, SyncLockType, utcnow

DEFAULT_LEASE = timedelta(minutes=5)


@dataclass(frozen=True, slots=True)
class LockResult:
    acquired: bool
    lock_id: str | None = None
    message: str | None = None


def lock_held_message(lock_type: SyncLockType | str) -> str:
    kind = lock_type.value if isinstance(lock_type, SyncLockType) else lock_type
    return f"A {kind} operation is already in progress for this user"


class LockLogger:
    """Handles all logging for sync locks."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def acquired(self, user_id: str, lock_type: str, lock_id: str) -> None:
        self._logger.bind(user_id=user_id, lock_type=lock_type, lock_id=lock_id).debug(
            "Acquired {} lock for user {}", lock_type, user_id
        )

    def contended(self, user_id: str, lock_type: str) -> None:
        self._logger.bind(user_id=user_id, lock_type=lock_type).info(
            "{} lock already held for user {}", lock_type, user_id
        )

    def released(self, lock_id: str, released: bool) -> None:
        if released:
            self._logger.bind(lock_id=lock_id).debug("Released lock {}", lock_id)
        else:
            self._logger.bind(lock_id=lock_id).warning(
                "Lock {} was not held at release (expired or already released)",
                lock_id,
            )

    def swept(self, count: int) -> None:
        if count:
            self._logger.bind(count=count).info("Swept {} expired sync locks", count)

    def force_released(self, user_id: str, count: int) -> None:
        self._logger.bind(user_id=user_id, count=count).warning(
            "Force released {} sync locks for user {}", count, user_id
        )


class SyncLockManager:
    """Acquire and release leased sync locks."""

    def __init__(
        self,
        db: DB,
        *,
        lease: timedelta = DEFAULT_LEASE,
        clock: Callable[[], datetime] = utcnow,
        lock_logger: LockLogger | None = None,
    ) -> None:
        self._db = db
        self._lease = lease
        self._clock = clock
        self._logger = lock_logger or LockLogger()

    @property
    def lease(self) -> timedelta:
        return self._lease

    def cleanup_expired(self) -> int:
        """Delete every lock whose lease has ended. Returns rows deleted."""
        now = self._clock()
        with self._db.session() as session:
            result = session.execute(delete(SyncLock).where(SyncLock.expires_at < now))
            count = result.rowcount or 0
        self._logger.swept(count)
        return count

    def acquire(self, user_id: str, lock_type: SyncLockType) -> LockResult:
        """Try to take the (user, kind) lock without waiting.

        Returns:
            LockResult with ``acquired=True`` and the lock id, or
            ``acquired=False`` and a message when another holder exists
        """
        kind = SyncLockType(lock_type).value
        self.cleanup_expired()

        now = self._clock()
        lock_id = str(uuid.uuid4())
        try:
            with self._db.session() as session:
                session.add(
                    SyncLock(
                        id=lock_id,
                        user_id=user_id,
                        lock_type=kind,
                        acquired_at=now,
                        expires_at=now + self._lease,
                    )
                )
        except IntegrityError:
            self._logger.contended(user_id, kind)
            return LockResult(acquired=False, message=lock_held_message(kind))

        self._logger.acquired(user_id, kind, lock_id)
        return LockResult(acquired=True, lock_id=lock_id)

    def release(self, lock_id: str) -> bool:
        """Delete the lock row. False when it was already gone."""
        with self._db.session() as session:
            result = session.execute(delete(SyncLock).where(SyncLock.id == lock_id))
            released = bool(result.rowcount)
        self._logger.released(lock_id, released)
        return released

    def is_locked(self, user_id: str, lock_type: SyncLockType) -> bool:
        kind = SyncLockType(lock_type).value
        self.cleanup_expired()
        with self._db.session() as session:
            row = session.scalars(
                select(SyncLock.id).where(
                    SyncLock.user_id == user_id, SyncLock.lock_type == kind
                )
            ).first()
        return row is not None

    def force_release_user_locks(self, user_id: str) -> int:
        """Drop every lock a user holds, regardless of lease."""
        with self._db.session() as session:
            result = session.execute(
                delete(SyncLock).where(SyncLock.user_id == user_id)
            )
            count = result.rowcount or 0
        self._logger.force_released(user_id, count)
        return count

    @contextmanager
    def hold(self, user_id: str, lock_type: SyncLockType) -> Iterator[LockResult]:
        """Acquire for the duration of a block; release on exit if acquired."""
        result = self.acquire(user_id, lock_type)
        try:
            yield result
        finally:
            if result.acquired and result.lock_id is not None:
                self.release(result.lock_id)
