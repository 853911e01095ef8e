"""Normalize provider webhook payloads into a single event shape."""

from __future__ import annotations

from dataclasses import dataclass, field
import hashlib
import json
from typing import Any, Literal

from finsync.core.errors import WebhookPayloadError

Provider = Literal["plaid", "stripe"]


@dataclass(frozen=True, slots=True)
class WebhookEvent:
    """An inbound event, keyed by the provider's event id."""

    provider: Provider
    provider_event_id: str
    event_type: str
    subject_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


def _canonical_digest(payload: dict[str, Any]) -> str:
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def from_plaid_payload(payload: dict[str, Any]) -> WebhookEvent:
    """Build an event from a Plaid webhook body.

    Plaid bodies carry no guaranteed event id, so identical bodies are
    treated as the same delivery: the id is ``webhook_id`` when present and
    otherwise a SHA-256 of the canonical JSON body.

    Raises:
        WebhookPayloadError: If ``webhook_type`` or ``webhook_code`` is missing
    """
    webhook_type = payload.get("webhook_type")
    webhook_code = payload.get("webhook_code")
    if not isinstance(webhook_type, str) or not isinstance(webhook_code, str):
        raise WebhookPayloadError("Missing webhook_type or webhook_code")

    event_id = payload.get("webhook_id")
    if not isinstance(event_id, str) or not event_id:
        event_id = f"plaid_{_canonical_digest(payload)}"

    item_id = payload.get("item_id")
    return WebhookEvent(
        provider="plaid",
        provider_event_id=event_id,
        event_type=f"{webhook_type}.{webhook_code}",
        subject_id=item_id if isinstance(item_id, str) else None,
        payload=payload,
    )


def from_stripe_payload(payload: dict[str, Any]) -> WebhookEvent:
    """Build an event from a (signature-verified) Stripe event body.

    Raises:
        WebhookPayloadError: If ``id`` or ``type`` is missing
    """
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not isinstance(event_id, str) or not isinstance(event_type, str):
        raise WebhookPayloadError("Missing event id or type")

    obj = payload.get("data", {}).get("object", {})
    subject = obj.get("id") if isinstance(obj, dict) else None
    return WebhookEvent(
        provider="stripe",
        provider_event_id=event_id,
        event_type=event_type,
        subject_id=subject if isinstance(subject, str) else None,
        payload=payload,
    )


def stripe_object(event: WebhookEvent) -> dict[str, Any]:
    """The ``data.object`` of a Stripe event."""
    obj = event.payload.get("data", {}).get("object")
    if not isinstance(obj, dict):
        raise WebhookPayloadError(f"Event {event.provider_event_id} has no data.object")
    return obj
