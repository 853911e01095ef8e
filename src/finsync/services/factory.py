from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from finsync.adapters.clients.plaid import AggregationProvider, PlaidClient
from finsync.adapters.db.facade import DB
from finsync.adapters.security import TokenCipher
from finsync.config import Settings, require_encryption_key
from finsync.core.errors import FinsyncError
from finsync.core.retry import RetryConfig
from finsync.services.monitoring import ErrorTracker
from finsync.services.sync.engine import SyncEngine
from finsync.services.sync.locks import SyncLockManager
from finsync.services.sync.status import BackgroundSyncRunner
from finsync.services.webhooks.handlers import build_default_registry
from finsync.services.webhooks.processor import WebhookProcessor


@dataclass(frozen=True, slots=True)
class Services:
    """Wired service graph shared by the CLI and the HTTP app."""

    settings: Settings
    db: DB
    locks: SyncLockManager
    engine: SyncEngine
    background: BackgroundSyncRunner
    webhooks: WebhookProcessor
    error_tracker: ErrorTracker


def create_provider(settings: Settings) -> PlaidClient:
    if not settings.plaid_client_id or not settings.plaid_secret:
        raise FinsyncError(
            "PLAID_CLIENT_ID and "
            f"PLAID_{settings.plaid_env.upper()}_SECRET must be set to sync"
        )
    return PlaidClient(
        client_id=settings.plaid_client_id,
        secret=settings.plaid_secret,
        env=settings.plaid_env,
    )


def create_services(
    settings: Settings,
    *,
    db: DB | None = None,
    provider: AggregationProvider | None = None,
    cipher: TokenCipher | None = None,
) -> Services:
    """Build the service graph from startup settings.

    ``db``, ``provider`` and ``cipher`` override what settings would build.
    """
    db = db or DB(settings.database_url)
    cipher = cipher or TokenCipher(require_encryption_key(settings))
    provider = provider or create_provider(settings)
    error_tracker = ErrorTracker()

    locks = SyncLockManager(db, lease=timedelta(seconds=settings.lock_lease_seconds))
    engine = SyncEngine(
        db,
        provider,
        locks,
        cipher,
        retry_config=RetryConfig(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        ),
        max_pages=settings.max_sync_pages,
    )
    background = BackgroundSyncRunner(db, engine, error_tracker=error_tracker)
    webhooks = WebhookProcessor(
        db, build_default_registry(db, engine), error_tracker=error_tracker
    )
    return Services(
        settings=settings,
        db=db,
        locks=locks,
        engine=engine,
        background=background,
        webhooks=webhooks,
        error_tracker=error_tracker,
    )
