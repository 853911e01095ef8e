"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from finsync.adapters.clients.plaid import RemoteAccountBalance, TransactionsPage
from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import ExternalItem
from finsync.adapters.security import TokenCipher
from finsync.core.retry import RetryConfig
from finsync.services.sync.engine import SyncEngine
from finsync.services.sync.locks import SyncLockManager


class MockProvider:
    """In-memory aggregation provider.

    Transaction pages are looked up by the cursor they are requested with.
    Failures queued per access token are raised, in order, before any
    successful response; ``always_fail`` raises on every call and
    ``fail_on_cursor`` raises once for a given cursor.
    """

    def __init__(self) -> None:
        self.pages: dict[str | None, TransactionsPage] = {}
        self.balances: dict[str, list[RemoteAccountBalance]] = {}
        self.failures: dict[str, list[BaseException]] = {}
        self.always_fail: dict[str, BaseException] = {}
        self.fail_on_cursor: dict[str | None, BaseException] = {}
        self.cursors_used: list[str | None] = []
        self.balance_calls: list[str] = []

    def _maybe_raise(self, access_token: str) -> None:
        if access_token in self.always_fail:
            raise self.always_fail[access_token]
        queued = self.failures.get(access_token)
        if queued:
            raise queued.pop(0)

    def fetch_balances(self, access_token: str) -> list[RemoteAccountBalance]:
        self.balance_calls.append(access_token)
        self._maybe_raise(access_token)
        return list(self.balances.get(access_token, []))

    def fetch_transactions_incremental(
        self, access_token: str, cursor: str | None
    ) -> TransactionsPage:
        self.cursors_used.append(cursor)
        self._maybe_raise(access_token)
        if cursor in self.fail_on_cursor:
            raise self.fail_on_cursor.pop(cursor)
        page = self.pages.get(cursor)
        if page is None:
            return TransactionsPage(next_cursor=cursor or "")
        return page


async def no_sleep(_: float) -> None:
    return None


@pytest.fixture
def db(tmp_path) -> DB:
    """File-backed SQLite store with the schema created."""
    database = DB(f"sqlite:///{tmp_path / 'finsync.db'}")
    database.create_schema()
    return database


@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TokenCipher.generate_key())


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def locks(db: DB) -> SyncLockManager:
    return SyncLockManager(db)


@pytest.fixture
def engine(
    db: DB, provider: MockProvider, locks: SyncLockManager, cipher: TokenCipher
) -> SyncEngine:
    return SyncEngine(
        db,
        provider,
        locks,
        cipher,
        retry_config=RetryConfig(max_retries=2, base_delay=0.0, max_delay=0.0),
        sleep=no_sleep,
    )


@pytest.fixture
def link_item(db: DB, cipher: TokenCipher) -> Callable[..., ExternalItem]:
    """Insert an item whose stored token is the encryption of ``token``."""

    def _link(
        item_id: str,
        *,
        user_id: str = "user-1",
        token: str | None = None,
        status: str = "active",
    ) -> ExternalItem:
        return db.insert_item(
            item_id=item_id,
            user_id=user_id,
            access_token=cipher.encrypt(token or f"access-{item_id}"),
            institution_name="Test Bank",
            status=status,
        )

    return _link
