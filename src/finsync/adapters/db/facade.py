from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy import and_, create_engine, delete, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from finsync.adapters.clients.plaid import RemoteAccountBalance, RemoteTransaction
from finsync.adapters.db.models import (
    Base,
    ExternalItem,
    FinancialAccount,
    ItemStatus,
    LocalTransaction,
    Subscription,
    WebhookEventRecord,
    utcnow,
)
from finsync.core.errors import TRANSIENT_ERROR_CODES


def is_item_syncable(item: ExternalItem) -> bool:
    """Same rule as ``DB.list_syncable_items``, applied to one loaded item."""
    if item.status == ItemStatus.ACTIVE.value:
        return True
    return (
        item.status == ItemStatus.ERROR.value
        and item.error_code in TRANSIENT_ERROR_CODES
    )


@dataclass(frozen=True, slots=True)
class PageCounts:
    """Rows written while applying one page of the transaction feed."""

    added: int = 0
    modified: int = 0
    removed: int = 0


class DB:
    """Database service layer providing ORM models and helper methods."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///finsync.db")
        """
        self._url = url
        self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @property
    def url(self) -> str:
        return self._url

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create every table that does not exist yet."""
        Base.metadata.create_all(self._engine)

    # Items ---------------------------------------------------------------

    def insert_item(
        self,
        *,
        item_id: str,
        user_id: str,
        access_token: str,
        institution_id: str | None = None,
        institution_name: str | None = None,
        status: str = ItemStatus.ACTIVE.value,
    ) -> ExternalItem:
        """Insert a linked item. ``access_token`` must already be encrypted."""
        with self.session() as session:  # type: Session
            item = ExternalItem(
                item_id=item_id,
                user_id=user_id,
                access_token=access_token,
                institution_id=institution_id,
                institution_name=institution_name,
                status=status,
            )
            session.add(item)
            session.flush()
            session.refresh(item)
            session.expunge(item)
            return item

    def get_item(self, item_id: str) -> ExternalItem | None:
        with self.session() as session:  # type: Session
            item = session.get(ExternalItem, item_id)
            if item is not None:
                session.expunge(item)
            return item

    def list_syncable_items(self, user_id: str) -> list[ExternalItem]:
        """Active items plus items parked in ``error`` by a transient failure."""
        with self.session() as session:  # type: Session
            items = list(
                session.scalars(
                    select(ExternalItem)
                    .where(
                        ExternalItem.user_id == user_id,
                        or_(
                            ExternalItem.status == ItemStatus.ACTIVE.value,
                            and_(
                                ExternalItem.status == ItemStatus.ERROR.value,
                                ExternalItem.error_code.in_(
                                    sorted(TRANSIENT_ERROR_CODES)
                                ),
                            ),
                        ),
                    )
                    .order_by(ExternalItem.created_at, ExternalItem.item_id)
                )
            )
            for item in items:
                session.expunge(item)
            return items

    def update_item(self, item_id: str, **fields: Any) -> bool:
        """Set columns on an item. Returns False when the item does not exist."""
        with self.session() as session:  # type: Session
            item = session.get(ExternalItem, item_id)
            if item is None:
                return False
            for name, value in fields.items():
                setattr(item, name, value)
            item.updated_at = utcnow()
            return True

    def mark_item_status(
        self,
        item_id: str,
        status: str,
        *,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        return self.update_item(
            item_id,
            status=status,
            error_code=error_code,
            error_message=error_message,
        )

    def reactivate_item(self, item_id: str) -> bool:
        """Clear a recorded failure after a successful sync.

        Only ``active`` and ``error`` items are touched; an item that went to
        ``pending_expiration`` or ``revoked`` meanwhile keeps that status.
        """
        with self.session() as session:  # type: Session
            result = session.execute(
                update(ExternalItem)
                .where(
                    ExternalItem.item_id == item_id,
                    ExternalItem.status.in_(
                        [ItemStatus.ACTIVE.value, ItemStatus.ERROR.value]
                    ),
                )
                .values(
                    status=ItemStatus.ACTIVE.value,
                    error_code=None,
                    error_message=None,
                    updated_at=utcnow(),
                )
            )
            return result.rowcount == 1

    def save_transactions_cursor(
        self, item_id: str, cursor: str, *, completed: bool
    ) -> None:
        """Persist the feed cursor; ``completed`` also stamps ``last_sync``."""
        fields: dict[str, Any] = {"transactions_cursor": cursor}
        if completed:
            fields["last_sync"] = utcnow()
        self.update_item(item_id, **fields)

    # Accounts ------------------------------------------------------------

    def _get_or_create_account(
        self,
        session: Session,
        *,
        user_id: str,
        item_id: str,
        remote_account_id: str,
        name: str | None = None,
    ) -> FinancialAccount:
        account = session.scalars(
            select(FinancialAccount).where(
                FinancialAccount.item_id == item_id,
                FinancialAccount.remote_account_id == remote_account_id,
            )
        ).first()
        if account is None:
            account = FinancialAccount(
                user_id=user_id,
                item_id=item_id,
                remote_account_id=remote_account_id,
                name=name,
            )
            session.add(account)
            session.flush()
        return account

    def upsert_account_balances(
        self,
        *,
        user_id: str,
        item_id: str,
        balances: Iterable[RemoteAccountBalance],
    ) -> int:
        """Write balances for each remote account, creating rows as needed.

        Returns:
            Number of accounts updated
        """
        count = 0
        now = utcnow()
        with self.session() as session:  # type: Session
            for balance in balances:
                account = self._get_or_create_account(
                    session,
                    user_id=user_id,
                    item_id=item_id,
                    remote_account_id=balance.remote_account_id,
                    name=balance.name,
                )
                account.current_balance = balance.current
                account.available_balance = balance.available
                account.currency = balance.currency
                if balance.name:
                    account.name = balance.name
                account.updated_at = now
                count += 1
            item = session.get(ExternalItem, item_id)
            if item is not None:
                item.last_sync = now
                item.updated_at = now
        return count

    def list_accounts(self, item_id: str) -> list[FinancialAccount]:
        with self.session() as session:  # type: Session
            accounts = list(
                session.scalars(
                    select(FinancialAccount)
                    .where(FinancialAccount.item_id == item_id)
                    .order_by(FinancialAccount.id)
                )
            )
            for account in accounts:
                session.expunge(account)
            return accounts

    # Transactions --------------------------------------------------------

    def apply_transactions_page(
        self,
        *,
        user_id: str,
        item_id: str,
        added: Iterable[RemoteTransaction],
        modified: Iterable[RemoteTransaction],
        removed: Iterable[str],
        categorize: Callable[[list[str] | None], str],
    ) -> PageCounts:
        """Reconcile one feed page in a single transaction.

        Added rows already present (by remote id, within the user's rows) are
        treated as modifications; modified rows that are missing are
        inserted; removed ids that match nothing are ignored.

        Args:
            user_id: Owner of the rows
            item_id: Item the page belongs to
            added: New remote transactions
            modified: Changed remote transactions
            removed: Remote transaction ids to delete
            categorize: Callable mapping a provider category list to a label

        Returns:
            PageCounts with rows inserted, updated and deleted
        """
        n_added = n_modified = n_removed = 0
        with self.session() as session:  # type: Session
            accounts: dict[str, FinancialAccount] = {}

            def account_for(remote_account_id: str) -> FinancialAccount:
                if remote_account_id not in accounts:
                    accounts[remote_account_id] = self._get_or_create_account(
                        session,
                        user_id=user_id,
                        item_id=item_id,
                        remote_account_id=remote_account_id,
                    )
                return accounts[remote_account_id]

            def upsert(txn: RemoteTransaction) -> bool:
                existing = self._find_transaction(
                    session, user_id, txn.remote_transaction_id
                )
                account = account_for(txn.remote_account_id)
                if existing is None:
                    session.add(
                        LocalTransaction(
                            user_id=user_id,
                            account_id=account.id,
                            remote_transaction_id=txn.remote_transaction_id,
                            amount=txn.amount,
                            description=txn.description,
                            category=categorize(txn.category),
                            date=date.fromisoformat(txn.date),
                            pending=txn.pending,
                        )
                    )
                    # Later rows in the same page must see this insert
                    session.flush()
                    return True
                existing.account_id = account.id
                existing.amount = txn.amount
                existing.description = txn.description
                existing.category = categorize(txn.category)
                existing.date = date.fromisoformat(txn.date)
                existing.pending = txn.pending
                existing.updated_at = utcnow()
                return False

            for txn in added:
                if upsert(txn):
                    n_added += 1
                else:
                    n_modified += 1
            for txn in modified:
                if upsert(txn):
                    n_added += 1
                else:
                    n_modified += 1

            removed_ids = list(removed)
            if removed_ids:
                n_removed = self._delete_by_remote_ids(session, user_id, removed_ids)

        return PageCounts(added=n_added, modified=n_modified, removed=n_removed)

    @staticmethod
    def _find_transaction(
        session: Session, user_id: str, remote_transaction_id: str
    ) -> LocalTransaction | None:
        return session.scalars(
            select(LocalTransaction).where(
                LocalTransaction.user_id == user_id,
                LocalTransaction.remote_transaction_id == remote_transaction_id,
            )
        ).first()

    @staticmethod
    def _delete_by_remote_ids(
        session: Session, user_id: str, remote_ids: list[str]
    ) -> int:
        result = session.execute(
            delete(LocalTransaction).where(
                LocalTransaction.user_id == user_id,
                LocalTransaction.remote_transaction_id.in_(remote_ids),
            )
        )
        return result.rowcount or 0

    def delete_transactions_by_remote_ids(
        self, user_id: str, remote_ids: Iterable[str]
    ) -> int:
        """Delete a user's transactions by remote id, tolerating unknown ids."""
        ids = list(remote_ids)
        if not ids:
            return 0
        with self.session() as session:  # type: Session
            return self._delete_by_remote_ids(session, user_id, ids)

    def list_transactions(self, user_id: str) -> list[LocalTransaction]:
        with self.session() as session:  # type: Session
            txns = list(
                session.scalars(
                    select(LocalTransaction)
                    .where(LocalTransaction.user_id == user_id)
                    .order_by(LocalTransaction.date, LocalTransaction.id)
                )
            )
            for txn in txns:
                session.expunge(txn)
            return txns

    def count_transactions(self, user_id: str) -> int:
        with self.session() as session:  # type: Session
            return session.scalar(
                select(func.count())
                .select_from(LocalTransaction)
                .where(LocalTransaction.user_id == user_id)
            ) or 0

    # Webhook ledger ------------------------------------------------------

    def get_webhook_event(self, provider_event_id: str) -> WebhookEventRecord | None:
        with self.session() as session:  # type: Session
            record = session.scalars(
                select(WebhookEventRecord).where(
                    WebhookEventRecord.provider_event_id == provider_event_id
                )
            ).first()
            if record is not None:
                session.expunge(record)
            return record

    def insert_webhook_event(
        self,
        *,
        provider: str,
        provider_event_id: str,
        event_type: str,
        subject_id: str | None,
        payload: dict[str, Any],
    ) -> WebhookEventRecord:
        """Insert an unprocessed ledger row.

        Raises:
            sqlalchemy.exc.IntegrityError: If the event id is already recorded
        """
        with self.session() as session:  # type: Session
            record = WebhookEventRecord(
                provider=provider,
                provider_event_id=provider_event_id,
                event_type=event_type,
                subject_id=subject_id,
                payload=payload,
                processed=False,
                attempts=0,
            )
            session.add(record)
            session.flush()
            session.refresh(record)
            session.expunge(record)
            return record

    def reclaim_failed_webhook_event(self, provider_event_id: str) -> bool:
        """Clear the error on a dead-lettered row so one delivery can retry it.

        The conditional update only matches a row that is unprocessed and
        carries an error, so among concurrent redeliveries exactly one wins.
        """
        with self.session() as session:  # type: Session
            result = session.execute(
                update(WebhookEventRecord)
                .where(
                    WebhookEventRecord.provider_event_id == provider_event_id,
                    WebhookEventRecord.processed.is_(False),
                    WebhookEventRecord.error_message.is_not(None),
                )
                .values(error_message=None)
            )
            return result.rowcount == 1

    def finish_webhook_event(
        self,
        provider_event_id: str,
        *,
        processed: bool,
        attempts: int,
        error_message: str | None = None,
    ) -> None:
        """Record the terminal outcome of a processing run."""
        with self.session() as session:  # type: Session
            record = session.scalars(
                select(WebhookEventRecord).where(
                    WebhookEventRecord.provider_event_id == provider_event_id
                )
            ).first()
            if record is None:
                return
            record.processed = processed
            record.processed_at = utcnow() if processed else None
            record.attempts = (record.attempts or 0) + attempts
            record.error_message = error_message

    def list_failed_webhook_events(self) -> list[WebhookEventRecord]:
        """Dead-lettered events: attempted, unprocessed, with an error."""
        with self.session() as session:  # type: Session
            records = list(
                session.scalars(
                    select(WebhookEventRecord)
                    .where(
                        WebhookEventRecord.processed.is_(False),
                        WebhookEventRecord.error_message.is_not(None),
                    )
                    .order_by(WebhookEventRecord.id)
                )
            )
            for record in records:
                session.expunge(record)
            return records

    # Subscriptions -------------------------------------------------------

    def upsert_subscription(
        self, stripe_subscription_id: str, **fields: Any
    ) -> Subscription:
        with self.session() as session:  # type: Session
            sub = session.scalars(
                select(Subscription).where(
                    Subscription.stripe_subscription_id == stripe_subscription_id
                )
            ).first()
            if sub is None:
                sub = Subscription(stripe_subscription_id=stripe_subscription_id)
                session.add(sub)
            for name, value in fields.items():
                setattr(sub, name, value)
            sub.updated_at = utcnow()
            session.flush()
            session.refresh(sub)
            session.expunge(sub)
            return sub

    def update_subscription(self, stripe_subscription_id: str, **fields: Any) -> bool:
        with self.session() as session:  # type: Session
            sub = session.scalars(
                select(Subscription).where(
                    Subscription.stripe_subscription_id == stripe_subscription_id
                )
            ).first()
            if sub is None:
                return False
            for name, value in fields.items():
                setattr(sub, name, value)
            sub.updated_at = utcnow()
            return True

    def get_subscription(self, stripe_subscription_id: str) -> Subscription | None:
        with self.session() as session:  # type: Session
            sub = session.scalars(
                select(Subscription).where(
                    Subscription.stripe_subscription_id == stripe_subscription_id
                )
            ).first()
            if sub is not None:
                session.expunge(sub)
            return sub

