"""At-most-once processing of inbound webhook events.

The ``webhook_events`` ledger is keyed by the provider's event id. A row is
written before the handler runs and flipped to processed once it succeeds,
so a redelivered event whose handler already succeeded, or is still
running, is acknowledged without running again. Handlers are retried with
exponential backoff; an event that still fails is left unprocessed with its
error (dead letter).
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
import time
from typing import Any

import loguru
from loguru import logger
from sqlalchemy.exc import IntegrityError, OperationalError

from finsync.adapters.db.facade import DB
from finsync.core.errors import is_transient_error
from finsync.core.retry import RetryConfig, run_with_retry
from finsync.services.monitoring import ErrorTracker
from finsync.services.webhooks.events import WebhookEvent
from finsync.services.webhooks.registry import HandlerRegistry

_RETRYABLE_MESSAGE_FRAGMENTS = (
    "timeout",
    "timed out",
    "network",
    "connection",
    "econnrefused",
    "econnreset",
    "rate limit",
)


class Disposition(StrEnum):
    PROCESSED = "processed"
    CACHED = "cached"
    DEAD_LETTERED = "dead_lettered"
    UNHANDLED = "unhandled"


@dataclass(frozen=True, slots=True)
class WebhookRetryPolicy:
    """Handler retry policy. Delays and timeout are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 16.0
    timeout: float | None = 30.0

    def to_retry_config(
        self, on_retry: Callable[[int, BaseException, float], None] | None = None
    ) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            timeout=self.timeout,
            on_retry=on_retry,
        )


@dataclass(frozen=True, slots=True)
class WebhookResult:
    disposition: Disposition
    attempts: int = 0
    error: str | None = None
    processing_time_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.disposition is not Disposition.DEAD_LETTERED


def is_retryable_webhook_error(error: BaseException) -> bool:
    """Whether a handler failure is worth another attempt."""
    if isinstance(error, TimeoutError | ConnectionError | OperationalError):
        return True
    if is_transient_error(error):
        return True
    message = str(error).lower()
    return any(fragment in message for fragment in _RETRYABLE_MESSAGE_FRAGMENTS)


class WebhookLogger:
    """Handles all logging for webhook processing."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def duplicate(self, event: WebhookEvent) -> None:
        self._logger.bind(
            provider=event.provider, event_id=event.provider_event_id
        ).info("Event {} already processed, skipping", event.provider_event_id)

    def unhandled(self, event: WebhookEvent) -> None:
        self._logger.bind(
            provider=event.provider, event_type=event.event_type
        ).info("No handler for {} event {}", event.provider, event.event_type)

    def processed(self, event: WebhookEvent, attempts: int, elapsed_ms: int) -> None:
        self._logger.bind(
            provider=event.provider,
            event_id=event.provider_event_id,
            attempts=attempts,
            elapsed_ms=elapsed_ms,
        ).info(
            "Processed {} {} in {} attempt(s), {}ms",
            event.provider,
            event.event_type,
            attempts,
            elapsed_ms,
        )

    def dead_lettered(
        self, event: WebhookEvent, attempts: int, error: BaseException
    ) -> None:
        self._logger.bind(
            provider=event.provider,
            event_id=event.provider_event_id,
            attempts=attempts,
        ).error(
            "Giving up on {} {} after {} attempt(s): {}",
            event.provider,
            event.event_type,
            attempts,
            error,
        )


class WebhookProcessor:
    """Deduplicate, dispatch and retry webhook events."""

    def __init__(
        self,
        db: DB,
        registry: HandlerRegistry,
        *,
        policy: WebhookRetryPolicy | None = None,
        error_tracker: ErrorTracker | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        webhook_logger: WebhookLogger | None = None,
    ) -> None:
        self._db = db
        self._registry = registry
        self._policy = policy or WebhookRetryPolicy()
        self._error_tracker = error_tracker or ErrorTracker()
        self._sleep = sleep
        self._logger = webhook_logger or WebhookLogger()

    @property
    def error_tracker(self) -> ErrorTracker:
        return self._error_tracker

    def _claim(self, event: WebhookEvent) -> bool:
        """Take ownership of the event's ledger row.

        False when the event is done or another delivery is running it. Only
        a dead-lettered row is handed out again.
        """
        existing = self._db.get_webhook_event(event.provider_event_id)
        if existing is not None:
            if existing.processed or existing.error_message is None:
                return False
            return self._db.reclaim_failed_webhook_event(event.provider_event_id)
        try:
            self._db.insert_webhook_event(
                provider=event.provider,
                provider_event_id=event.provider_event_id,
                event_type=event.event_type,
                subject_id=event.subject_id,
                payload=event.payload,
            )
        except IntegrityError:
            # A concurrent delivery inserted the row first
            return False
        return True

    async def process(self, event: WebhookEvent) -> WebhookResult:
        """Process ``event`` at most once to success.

        Handler failures never raise; they end as ``dead_lettered``. Store
        failures while reading or writing the ledger propagate.
        """
        started = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - started) * 1000)

        if not self._claim(event):
            self._logger.duplicate(event)
            return WebhookResult(
                disposition=Disposition.CACHED, processing_time_ms=elapsed_ms()
            )

        if self._registry.get(event.event_type) is None:
            self._logger.unhandled(event)
            self._db.finish_webhook_event(
                event.provider_event_id, processed=True, attempts=0
            )
            return WebhookResult(
                disposition=Disposition.UNHANDLED, processing_time_ms=elapsed_ms()
            )

        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            self._error_tracker.track_event(
                "webhook_retry",
                provider=event.provider,
                event_type=event.event_type,
                event_id=event.provider_event_id,
                attempt=attempt,
                next_retry_in=delay,
            )

        outcome = await run_with_retry(
            lambda: self._registry.dispatch(event),
            self._policy.to_retry_config(on_retry),
            should_retry=is_retryable_webhook_error,
            sleep=self._sleep,
        )

        if outcome.succeeded:
            self._db.finish_webhook_event(
                event.provider_event_id, processed=True, attempts=outcome.attempts
            )
            ms = elapsed_ms()
            self._logger.processed(event, outcome.attempts, ms)
            self._error_tracker.track_event(
                "webhook_processed",
                provider=event.provider,
                event_type=event.event_type,
                event_id=event.provider_event_id,
                attempts=outcome.attempts,
                processing_time_ms=ms,
            )
            return WebhookResult(
                disposition=Disposition.PROCESSED,
                attempts=outcome.attempts,
                processing_time_ms=ms,
            )

        error = outcome.failure
        self._db.finish_webhook_event(
            event.provider_event_id,
            processed=False,
            attempts=outcome.attempts,
            error_message=str(error) or type(error).__name__,
        )
        self._logger.dead_lettered(event, outcome.attempts, error)
        self._error_tracker.track_error(
            error,
            provider=event.provider,
            event_type=event.event_type,
            event_id=event.provider_event_id,
            attempts=outcome.attempts,
        )
        return WebhookResult(
            disposition=Disposition.DEAD_LETTERED,
            attempts=outcome.attempts,
            error=str(error) or type(error).__name__,
            processing_time_ms=elapsed_ms(),
        )
