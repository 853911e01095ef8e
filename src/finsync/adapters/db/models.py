from __future__ import annotations

import datetime as dt
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Date,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def utcnow() -> datetime:
    """Naive UTC now, the representation stored in every TIMESTAMP column."""
    return datetime.now(UTC).replace(tzinfo=None)


class SyncLockType(StrEnum):
    BALANCE_SYNC = "balance_sync"
    TRANSACTION_SYNC = "transaction_sync"
    FULL_SYNC = "full_sync"


class ItemStatus(StrEnum):
    ACTIVE = "active"
    ERROR = "error"
    PENDING_EXPIRATION = "pending_expiration"
    REVOKED = "revoked"


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class SyncLock(Base):
    """Leased lock row; at most one per (user, lock type)."""

    __tablename__ = "sync_locks"
    __table_args__ = (
        UniqueConstraint("user_id", "lock_type", name="uq_sync_locks_user_type"),
        Index("idx_sync_locks_expires_at", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    lock_type: Mapped[str] = mapped_column(String, nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP, nullable=False)


class ExternalItem(Base):
    """A linked institution connection, with sync cursor and status columns."""

    __tablename__ = "external_items"

    item_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    access_token: Mapped[str] = mapped_column(String, nullable=False)
    institution_id: Mapped[str | None] = mapped_column(String, nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, default=ItemStatus.ACTIVE.value
    )
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_sync: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    transactions_cursor: Mapped[str | None] = mapped_column(String, nullable=True)

    # Background sync status, polled by clients
    sync_status: Mapped[str | None] = mapped_column(String, nullable=True)
    sync_progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sync_transaction_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    sync_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_started_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    sync_completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    accounts: Mapped[list[FinancialAccount]] = relationship(
        "FinancialAccount", back_populates="item", cascade="all, delete-orphan"
    )


class FinancialAccount(Base):
    """Account under an item, holding the latest known balances."""

    __tablename__ = "financial_accounts"
    __table_args__ = (
        UniqueConstraint(
            "item_id", "remote_account_id", name="uq_financial_accounts_item_remote"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    item_id: Mapped[str] = mapped_column(
        String, ForeignKey("external_items.item_id", ondelete="CASCADE"), nullable=False
    )
    remote_account_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    current_balance: Mapped[float | None] = mapped_column(Float, nullable=True)
    available_balance: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    item: Mapped[ExternalItem] = relationship("ExternalItem", back_populates="accounts")


class LocalTransaction(Base):
    """Transaction mirrored from the provider, deduplicated by remote id."""

    __tablename__ = "local_transactions"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "remote_transaction_id",
            name="uq_local_transactions_user_remote",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    account_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("financial_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    remote_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False, default="other")
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class WebhookEventRecord(Base):
    """Idempotency ledger row for an inbound webhook event."""

    __tablename__ = "webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    provider_event_id: Mapped[str] = mapped_column(
        String, unique=True, nullable=False
    )
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    subject_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class Subscription(Base):
    """Billing subscription mirrored from the billing provider."""

    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stripe_subscription_id: Mapped[str] = mapped_column(
        String, unique=True, nullable=False
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    current_period_start: Mapped[datetime | None] = mapped_column(
        TIMESTAMP, nullable=True
    )
    current_period_end: Mapped[datetime | None] = mapped_column(
        TIMESTAMP, nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    canceled_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    trial_start: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
