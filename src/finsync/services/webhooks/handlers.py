"""Webhook handlers for the aggregation and billing providers.

Handlers raise on failure so the processor can retry them; they return
normally for events that need no work (e.g. an item we do not know).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import loguru
from loguru import logger

from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import ExternalItem, ItemStatus, utcnow
from finsync.core.errors import WebhookPayloadError
from finsync.services.sync.engine import SyncEngine
from finsync.services.webhooks.events import WebhookEvent, stripe_object
from finsync.services.webhooks.registry import HandlerRegistry

TRANSACTIONS_UPDATE_TYPES = (
    "TRANSACTIONS.INITIAL_UPDATE",
    "TRANSACTIONS.HISTORICAL_UPDATE",
    "TRANSACTIONS.DEFAULT_UPDATE",
    "TRANSACTIONS.SYNC_UPDATES_AVAILABLE",
)


def epoch_to_datetime(value: int | float | None) -> datetime | None:
    """Convert provider epoch seconds to naive UTC."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, UTC).replace(tzinfo=None)


def _subscription_fields(subscription: dict[str, Any]) -> dict[str, Any]:
    user_id = (subscription.get("metadata") or {}).get("user_id")
    if not user_id:
        raise WebhookPayloadError("No user_id in subscription metadata")

    items = (subscription.get("items") or {}).get("data") or []
    price_id = items[0].get("price", {}).get("id") if items else None
    return {
        "user_id": user_id,
        "stripe_customer_id": subscription.get("customer"),
        "stripe_price_id": price_id,
        "status": subscription.get("status", "incomplete"),
        "current_period_start": epoch_to_datetime(
            subscription.get("current_period_start")
        ),
        "current_period_end": epoch_to_datetime(subscription.get("current_period_end")),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end", False)),
        "canceled_at": epoch_to_datetime(subscription.get("canceled_at")),
        "trial_start": epoch_to_datetime(subscription.get("trial_start")),
        "trial_end": epoch_to_datetime(subscription.get("trial_end")),
    }


class WebhookHandlers:
    """Default handlers, bound to the store and the sync engine."""

    def __init__(
        self,
        db: DB,
        engine: SyncEngine,
        logger_instance: loguru.Logger = logger,
    ) -> None:
        self._db = db
        self._engine = engine
        self._logger = logger_instance

    # Billing -------------------------------------------------------------

    def subscription_changed(self, event: WebhookEvent) -> None:
        subscription = stripe_object(event)
        sub_id = subscription.get("id")
        if not sub_id:
            raise WebhookPayloadError("Subscription has no id")
        fields = _subscription_fields(subscription)
        self._db.upsert_subscription(sub_id, **fields)
        self._logger.bind(subscription_id=sub_id, status=fields["status"]).info(
            "Subscription {}: {}", fields["status"], sub_id
        )

    def subscription_deleted(self, event: WebhookEvent) -> None:
        subscription = stripe_object(event)
        sub_id = subscription.get("id")
        if not sub_id:
            raise WebhookPayloadError("Subscription has no id")
        self._db.update_subscription(sub_id, status="canceled", canceled_at=utcnow())
        self._logger.bind(subscription_id=sub_id).info(
            "Subscription canceled: {}", sub_id
        )

    def invoice_payment_succeeded(self, event: WebhookEvent) -> None:
        # Status changes arrive through customer.subscription.updated
        invoice = stripe_object(event)
        self._logger.bind(invoice_id=invoice.get("id")).info(
            "Payment succeeded for invoice {}", invoice.get("id")
        )

    def invoice_payment_failed(self, event: WebhookEvent) -> None:
        invoice = stripe_object(event)
        sub_id = invoice.get("subscription")
        if not sub_id:
            self._logger.bind(invoice_id=invoice.get("id")).warning(
                "Payment failed for invoice {} with no subscription", invoice.get("id")
            )
            return
        self._db.update_subscription(sub_id, status="past_due")
        self._logger.bind(subscription_id=sub_id).warning(
            "Payment failed, subscription {} is past_due", sub_id
        )

    # Aggregation provider ------------------------------------------------

    def _known_item(self, event: WebhookEvent) -> ExternalItem | None:
        item_id = event.subject_id
        item = self._db.get_item(item_id) if item_id else None
        if item is None:
            self._logger.bind(item_id=item_id, event_type=event.event_type).warning(
                "Ignoring {} for unknown item {}", event.event_type, item_id
            )
            return None
        return item

    async def transactions_updated(self, event: WebhookEvent) -> None:
        item = self._known_item(event)
        if item is None:
            return
        item_id = item.item_id
        result = await self._engine.sync_item_transactions(item_id)
        self._logger.bind(item_id=item_id, skipped=result.skipped).info(
            "Webhook sync for item {}: +{} ~{} -{}",
            item_id,
            result.transactions_added,
            result.transactions_modified,
            result.transactions_removed,
        )

    def transactions_removed(self, event: WebhookEvent) -> None:
        item = self._known_item(event)
        if item is None:
            return
        item_id = item.item_id
        removed = event.payload.get("removed_transactions") or []
        count = self._db.delete_transactions_by_remote_ids(item.user_id, removed)
        self._logger.bind(item_id=item_id, count=count).info(
            "Removed {} transactions for item {}", count, item_id
        )

    def item_error(self, event: WebhookEvent) -> None:
        item = self._known_item(event)
        if item is None:
            return
        item_id = item.item_id
        error = event.payload.get("error") or {}
        self._db.mark_item_status(
            item_id,
            ItemStatus.ERROR.value,
            error_code=error.get("error_code"),
            error_message=error.get("error_message"),
        )
        self._logger.bind(item_id=item_id).warning(
            "Item {} marked as error: {}", item_id, error.get("error_code")
        )

    def item_pending_expiration(self, event: WebhookEvent) -> None:
        item = self._known_item(event)
        if item is None:
            return
        item_id = item.item_id
        self._db.update_item(item_id, status=ItemStatus.PENDING_EXPIRATION.value)
        self._logger.bind(item_id=item_id).warning(
            "Item {} consent is pending expiration", item_id
        )


def build_default_registry(db: DB, engine: SyncEngine) -> HandlerRegistry:
    """Registry with every built-in handler registered."""
    handlers = WebhookHandlers(db, engine)
    registry = HandlerRegistry()

    registry.register("customer.subscription.created", handlers.subscription_changed)
    registry.register("customer.subscription.updated", handlers.subscription_changed)
    registry.register("customer.subscription.deleted", handlers.subscription_deleted)
    registry.register("invoice.payment_succeeded", handlers.invoice_payment_succeeded)
    registry.register("invoice.payment_failed", handlers.invoice_payment_failed)

    for event_type in TRANSACTIONS_UPDATE_TYPES:
        registry.register(event_type, handlers.transactions_updated)
    registry.register(
        "TRANSACTIONS.TRANSACTIONS_REMOVED", handlers.transactions_removed
    )
    registry.register("ITEM.ERROR", handlers.item_error)
    registry.register("ITEM.PENDING_EXPIRATION", handlers.item_pending_expiration)
    return registry
