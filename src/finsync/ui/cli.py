from __future__ import annotations

import asyncio
from dataclasses import asdict
import json
from typing import Any

from dotenv import load_dotenv
import typer

from finsync.adapters.db.facade import DB
from finsync.config import Settings, load_settings_from_env
from finsync.core.errors import FinsyncError, SyncFailedError
from finsync.logging import configure_logging
from finsync.services.factory import Services, create_services
from finsync.services.sync.locks import SyncLockManager
from finsync.services.sync.status import get_sync_status

# Load environment variables from .env
load_dotenv()

app = typer.Typer(help="finsync: account aggregation sync engine.")

sync_app = typer.Typer(help="Run syncs for a user.")
locks_app = typer.Typer(help="Inspect and release sync locks.")
db_app = typer.Typer(help="Database administration.")
app.add_typer(sync_app, name="sync")
app.add_typer(locks_app, name="locks")
app.add_typer(db_app, name="db")


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _config_error(e: Exception) -> typer.Exit:
    typer.echo(f"Configuration error: {e}", err=True)
    return typer.Exit(code=2)


def _settings() -> Settings:
    try:
        settings = load_settings_from_env()
    except ValueError as e:
        raise _config_error(e) from e
    configure_logging(settings.log_level)
    return settings


def _services() -> Services:
    settings = _settings()
    try:
        return create_services(settings)
    except (FinsyncError, ValueError) as e:
        raise _config_error(e) from e


@sync_app.command("balances")
def sync_balances_cmd(user_id: str = typer.Argument(..., help="User to sync")) -> None:
    """Refresh balances for every linked item of a user."""
    result = asyncio.run(_services().engine.sync_account_balances(user_id))
    _echo_json(asdict(result))
    if result.items_failed:
        raise typer.Exit(code=1)


@sync_app.command("transactions")
def sync_transactions_cmd(
    user_id: str = typer.Argument(..., help="User to sync"),
) -> None:
    """Reconcile transactions for every linked item of a user."""
    result = asyncio.run(_services().engine.sync_user_transactions(user_id))
    _echo_json(asdict(result))
    if result.items_failed:
        raise typer.Exit(code=1)


@sync_app.command("all")
def sync_all_cmd(user_id: str = typer.Argument(..., help="User to sync")) -> None:
    """Run balance and transaction sync together."""
    try:
        result = asyncio.run(_services().engine.sync_all(user_id))
    except SyncFailedError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1) from e
    _echo_json(asdict(result))


@app.command("status")
def status_cmd(item_id: str = typer.Argument(..., help="Item to inspect")) -> None:
    """Show the background sync status of an item."""
    settings = _settings()
    progress = get_sync_status(DB(settings.database_url), item_id)
    if progress is None:
        typer.echo(f"Item not found: {item_id}", err=True)
        raise typer.Exit(code=1)
    _echo_json(
        {
            **asdict(progress),
            "is_complete": progress.is_complete,
            "is_failed": progress.is_failed,
        }
    )


@locks_app.command("release")
def release_locks_cmd(
    user_id: str = typer.Argument(..., help="User whose locks to drop"),
) -> None:
    """Force release every sync lock a user holds."""
    settings = _settings()
    count = SyncLockManager(DB(settings.database_url)).force_release_user_locks(
        user_id
    )
    typer.echo(f"Released {count} lock(s) for {user_id}")


@db_app.command("init")
def db_init_cmd() -> None:
    """Create database tables."""
    settings = _settings()
    DB(settings.database_url).create_schema()
    typer.echo(f"Initialized schema at {settings.database_url}")


@app.command("serve")
def serve_cmd(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Bind port"),
) -> None:
    """Serve webhooks, sync triggers and status polling over HTTP."""
    import uvicorn

    from finsync.ui.http.server import create_app

    uvicorn.run(create_app(_services()), host=host, port=port)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
