from __future__ import annotations

from dataclasses import dataclass
import os

from finsync.adapters.clients.plaid import PLAID_ENV_MAP, PlaidEnv

LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True, slots=True)
class Settings:
    """Process configuration loaded at startup."""

    database_url: str = "sqlite:///finsync.db"
    plaid_env: PlaidEnv = "sandbox"
    plaid_client_id: str | None = None
    plaid_secret: str | None = None
    encryption_key: str | None = None
    lock_lease_seconds: int = 300
    max_sync_pages: int = 50
    retry_max_retries: int = 4
    retry_base_delay: float = 1.0
    retry_max_delay: float = 8.0
    log_level: str = "INFO"


def _require_env(name: str) -> str:
    value = os.environ.get(name, "").strip()
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def _optional_env(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


def _int_env(name: str, default: int, *, minimum: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value < 0:
        raise ValueError(f"{name} must be >= 0, got {value}")
    return value


def load_settings_from_env() -> Settings:
    """Load settings from env and validate them."""
    plaid_env = os.environ.get("PLAID_ENV", "sandbox").strip().lower()
    if plaid_env not in PLAID_ENV_MAP:
        raise ValueError("PLAID_ENV must be one of: sandbox, development, production")

    log_level = os.environ.get("FINSYNC_LOG_LEVEL", "INFO").strip().upper()
    if log_level not in LOG_LEVELS:
        raise ValueError(
            f"FINSYNC_LOG_LEVEL must be one of: {', '.join(sorted(LOG_LEVELS))}"
        )

    return Settings(
        database_url=os.environ.get("DATABASE_URL", "").strip()
        or "sqlite:///finsync.db",
        plaid_env=plaid_env,  # type: ignore[arg-type]
        plaid_client_id=_optional_env("PLAID_CLIENT_ID"),
        plaid_secret=_optional_env(f"PLAID_{plaid_env.upper()}_SECRET"),
        encryption_key=_optional_env("FINSYNC_ENCRYPTION_KEY"),
        lock_lease_seconds=_int_env("FINSYNC_LOCK_LEASE_SECONDS", 300, minimum=1),
        max_sync_pages=_int_env("FINSYNC_MAX_SYNC_PAGES", 50, minimum=1),
        retry_max_retries=_int_env("FINSYNC_RETRY_MAX_RETRIES", 4, minimum=0),
        retry_base_delay=_float_env("FINSYNC_RETRY_BASE_DELAY", 1.0),
        retry_max_delay=_float_env("FINSYNC_RETRY_MAX_DELAY", 8.0),
        log_level=log_level,
    )


def require_encryption_key(settings: Settings) -> str:
    """Return the Fernet key or fail naming the variable."""
    if settings.encryption_key:
        return settings.encryption_key
    return _require_env("FINSYNC_ENCRYPTION_KEY")
