"""Webhook services: event normalization, handler registry and processor."""

from __future__ import annotations

from finsync.services.webhooks.events import (
    WebhookEvent,
    from_plaid_payload,
    from_stripe_payload,
)
from finsync.services.webhooks.handlers import build_default_registry
from finsync.services.webhooks.processor import (
    Disposition,
    WebhookProcessor,
    WebhookResult,
    WebhookRetryPolicy,
)
from finsync.services.webhooks.registry import HandlerRegistry

__all__ = [
    "Disposition",
    "HandlerRegistry",
    "WebhookEvent",
    "WebhookProcessor",
    "WebhookResult",
    "WebhookRetryPolicy",
    "build_default_registry",
    "from_plaid_payload",
    "from_stripe_payload",
]
