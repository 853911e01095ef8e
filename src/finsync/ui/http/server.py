"""HTTP surface: provider webhooks, sync triggers and status polling."""

from __future__ import annotations

from dataclasses import asdict
import json
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from finsync.core.errors import SyncFailedError, WebhookPayloadError
from finsync.services.factory import Services
from finsync.services.sync.status import get_sync_status
from finsync.services.webhooks.events import (
    WebhookEvent,
    from_plaid_payload,
    from_stripe_payload,
)
from finsync.services.webhooks.processor import Disposition


async def _read_json(request: Request) -> dict[str, Any]:
    body = await request.body()
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload must be a JSON object")
    return payload


async def _acknowledge(services: Services, event: WebhookEvent) -> dict[str, Any]:
    """Process an event and build the acknowledgement body.

    Providers get a 200 for every parsed event so they stop redelivering;
    failures stay in the ledger for investigation.
    """
    try:
        result = await services.webhooks.process(event)
    except SQLAlchemyError as e:
        logger.bind(event_id=event.provider_event_id).error(
            "Ledger unavailable for event {}: {}", event.provider_event_id, e
        )
        services.error_tracker.track_error(e, event_id=event.provider_event_id)
        return {
            "received": True,
            "processed": False,
            "note": "Event could not be recorded and will need redelivery",
        }

    if result.disposition is Disposition.CACHED:
        return {"received": True, "cached": True}
    if result.disposition is Disposition.DEAD_LETTERED:
        return {
            "received": True,
            "processed": False,
            "note": "Event logged for manual review",
        }
    return {
        "received": True,
        "processed": True,
        "disposition": result.disposition.value,
        "attempts": result.attempts,
    }


def create_app(services: Services) -> FastAPI:
    app = FastAPI(title="finsync")
    app.state.services = services

    @app.post("/webhooks/plaid")
    async def plaid_webhook(request: Request) -> dict[str, Any]:
        payload = await _read_json(request)
        try:
            event = from_plaid_payload(payload)
        except WebhookPayloadError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return await _acknowledge(services, event)

    @app.post("/webhooks/stripe")
    async def stripe_webhook(request: Request) -> dict[str, Any]:
        payload = await _read_json(request)
        try:
            event = from_stripe_payload(payload)
        except WebhookPayloadError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return await _acknowledge(services, event)

    @app.post("/sync/{user_id}", response_model=None)
    async def sync_user(user_id: str) -> dict[str, Any] | JSONResponse:
        try:
            result = await services.engine.sync_all(user_id)
        except SyncFailedError as e:
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": "Sync failed", "details": str(e)},
            )
        return {"success": True, **asdict(result)}

    @app.post("/sync-status/{item_id}/start", status_code=202)
    async def start_background_sync(item_id: str) -> dict[str, Any]:
        if services.db.get_item(item_id) is None:
            raise HTTPException(status_code=404, detail="Item not found")
        services.background.start(item_id)
        return {"sync_id": item_id}

    @app.get("/sync-status/{item_id}")
    async def sync_status(item_id: str) -> dict[str, Any]:
        progress = get_sync_status(services.db, item_id)
        if progress is None:
            raise HTTPException(status_code=404, detail="Item not found")
        return {
            **asdict(progress),
            "is_complete": progress.is_complete,
            "is_failed": progress.is_failed,
        }

    return app
