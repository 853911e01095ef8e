"""Registry mapping webhook event types to handler functions."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
import inspect

from finsync.services.webhooks.events import WebhookEvent

WebhookHandler = Callable[[WebhookEvent], Awaitable[None] | None]


class HandlerRegistry:
    """
    Registry of webhook handlers keyed by event type.

    Event types are ``"{webhook_type}.{webhook_code}"`` for Plaid and the
    Stripe event type (e.g. ``"invoice.payment_failed"``).

    Example:
        registry = HandlerRegistry()

        @registry.handler("ITEM.ERROR")
        async def on_item_error(event: WebhookEvent) -> None:
            ...

        await registry.dispatch(event)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, WebhookHandler] = {}

    def register(self, event_type: str, handler: WebhookHandler) -> None:
        """
        Register a handler for an event type.

        Raises:
            ValueError: If a handler is already registered for the type
        """
        if event_type in self._handlers:
            raise ValueError(f"Handler for '{event_type}' already registered")
        self._handlers[event_type] = handler

    def handler(
        self, *event_types: str
    ) -> Callable[[WebhookHandler], WebhookHandler]:
        """Decorator form of ``register`` for one or more event types."""

        def decorator(fn: WebhookHandler) -> WebhookHandler:
            for event_type in event_types:
                self.register(event_type, fn)
            return fn

        return decorator

    def get(self, event_type: str) -> WebhookHandler | None:
        return self._handlers.get(event_type)

    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, event: WebhookEvent) -> bool:
        """Run the handler for ``event``.

        Returns:
            False when no handler is registered for the event type
        """
        handler = self._handlers.get(event.event_type)
        if handler is None:
            return False
        result = handler(event)
        if inspect.isawaitable(result):
            await result
        return True
