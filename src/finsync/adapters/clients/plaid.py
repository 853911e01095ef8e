from __future__ import annotations

from dataclasses import dataclass, field
import json
import os
from typing import Any, Literal, Protocol, Self, cast
import urllib.error
import urllib.request

from pydantic import BaseModel, Field

from finsync.core.errors import RemoteProviderError

PlaidEnv = Literal["sandbox", "development", "production"]

NETWORK_ERROR_CODE = "NETWORK_ERROR"


class PlaidClientError(RemoteProviderError):
    """Plaid API failure carrying the provider ``error_code``."""


PLAID_ENV_MAP: dict[PlaidEnv, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}


@dataclass(frozen=True, slots=True)
class RemoteAccountBalance:
    remote_account_id: str
    current: float | None
    available: float | None
    currency: str | None
    name: str | None = None


@dataclass(frozen=True, slots=True)
class RemoteTransaction:
    remote_transaction_id: str
    remote_account_id: str
    amount: float
    date: str
    name: str | None = None
    merchant_name: str | None = None
    category: list[str] | None = None
    pending: bool = False

    @property
    def description(self) -> str | None:
        return self.merchant_name or self.name


@dataclass(frozen=True, slots=True)
class TransactionsPage:
    """One page of an incremental transaction feed."""

    added: list[RemoteTransaction] = field(default_factory=list)
    modified: list[RemoteTransaction] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    next_cursor: str = ""
    has_more: bool = False


class AggregationProvider(Protocol):
    """Remote account-aggregation provider used by the sync engine."""

    def fetch_balances(self, access_token: str) -> list[RemoteAccountBalance]: ...

    def fetch_transactions_incremental(
        self, access_token: str, cursor: str | None
    ) -> TransactionsPage: ...


class PlaidBaseModel(BaseModel):
    """Shared base for Plaid response models with a short parse alias."""

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class BalancesModel(PlaidBaseModel):
    current: float | None = None
    available: float | None = None
    iso_currency_code: str | None = None
    unofficial_currency_code: str | None = None


class BalanceAccountModel(PlaidBaseModel):
    account_id: str
    name: str | None = None
    balances: BalancesModel = Field(default_factory=BalancesModel)

    def to_balance(self) -> RemoteAccountBalance:
        return RemoteAccountBalance(
            remote_account_id=self.account_id,
            current=self.balances.current,
            available=self.balances.available,
            currency=self.balances.iso_currency_code
            or self.balances.unofficial_currency_code,
            name=self.name,
        )


class AccountsBalanceGetResponse(PlaidBaseModel):
    accounts: list[BalanceAccountModel] = Field(default_factory=list)


class PlaidTransactionModel(PlaidBaseModel):
    transaction_id: str
    account_id: str
    amount: float
    date: str
    name: str | None = None
    merchant_name: str | None = None
    pending: bool = False
    category: list[str] | None = None

    def to_remote(self) -> RemoteTransaction:
        return RemoteTransaction(
            remote_transaction_id=self.transaction_id,
            remote_account_id=self.account_id,
            amount=self.amount,
            date=self.date,
            name=self.name,
            merchant_name=self.merchant_name,
            category=self.category,
            pending=self.pending,
        )


class RemovedTransactionModel(PlaidBaseModel):
    transaction_id: str


class TransactionsSyncResponse(PlaidBaseModel):
    added: list[PlaidTransactionModel] = Field(default_factory=list)
    modified: list[PlaidTransactionModel] = Field(default_factory=list)
    removed: list[RemovedTransactionModel] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False

    def to_page(self, *, fallback_cursor: str | None) -> TransactionsPage:
        return TransactionsPage(
            added=[txn.to_remote() for txn in self.added],
            modified=[txn.to_remote() for txn in self.modified],
            removed=[r.transaction_id for r in self.removed],
            next_cursor=self.next_cursor or (fallback_cursor or ""),
            has_more=self.has_more,
        )


class PlaidErrorBody(PlaidBaseModel):
    error_type: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    display_message: str | None = None


class PlaidClient:
    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: PlaidEnv = "sandbox",
        timeout: float | None = 30.0,
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._env = env
        self._timeout = timeout

    @property
    def env(self) -> PlaidEnv:
        return self._env

    @classmethod
    def from_env(cls) -> PlaidClient:
        """Construct a PlaidClient from environment variables.

        Required:
        - PLAID_CLIENT_ID
        - PLAID_ENV (defaults to sandbox)
        - PLAID_<ENV>_SECRET (e.g. PLAID_SANDBOX_SECRET)
        """
        env_str = os.getenv("PLAID_ENV", "sandbox").lower()
        if env_str not in PLAID_ENV_MAP:
            raise PlaidClientError(
                "INVALID_CONFIGURATION",
                f"Invalid PLAID_ENV={env_str!r}. "
                "Expected one of: sandbox, development, production.",
            )
        env: PlaidEnv = env_str  # type: ignore[assignment]

        client_id = cls._getenv_or_die("PLAID_CLIENT_ID")
        secret = cls._getenv_or_die(f"PLAID_{env.upper()}_SECRET")
        return cls(client_id=client_id, secret=secret, env=env)

    @staticmethod
    def _getenv_or_die(name: str) -> str:
        value = os.getenv(name)
        if not value:
            raise PlaidClientError(
                "INVALID_CONFIGURATION",
                f"Missing required environment variable: {name}",
            )
        return value

    def _base_url(self) -> str:
        return PLAID_ENV_MAP[self._env]

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise PlaidClientError(
                "INVALID_RESPONSE",
                f"Failed to parse Plaid response as JSON: {e}: {body}",
            ) from e

    @staticmethod
    def _error_from_http(status: int, body: str) -> PlaidClientError:
        """Build a PlaidClientError from an HTTP error response body."""
        try:
            parsed = PlaidErrorBody.parse(json.loads(body))
        except (json.JSONDecodeError, ValueError):
            parsed = PlaidErrorBody()

        code = parsed.error_code
        if code is None:
            code = "INTERNAL_SERVER_ERROR" if status >= 500 else f"HTTP_{status}"
        return PlaidClientError(
            code,
            parsed.error_message or f"Plaid API error ({status}): {body}",
            display_message=parsed.display_message,
        )

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self._base_url().rstrip("/") + path
        data = json.dumps(
            {"client_id": self._client_id, "secret": self._secret, **payload}
        ).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=self._timeout
            ) as resp:
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            err_body = e.read().decode("utf-8", "ignore")
            raise self._error_from_http(e.code, err_body) from e
        except urllib.error.URLError as e:
            raise PlaidClientError(
                NETWORK_ERROR_CODE, f"Network error calling Plaid API: {e}"
            ) from e

        return self._parse_json_response(body)

    # High-level APIs -----------------------------------------------------

    def fetch_balances(self, access_token: str) -> list[RemoteAccountBalance]:
        """Return real-time balances for every account under an item."""
        resp = AccountsBalanceGetResponse.parse(
            self._post("/accounts/balance/get", {"access_token": access_token})
        )
        return [account.to_balance() for account in resp.accounts]

    def fetch_transactions_incremental(
        self,
        access_token: str,
        cursor: str | None,
        *,
        count: int = 500,
    ) -> TransactionsPage:
        """Thin wrapper around Plaid's /transactions/sync endpoint."""
        payload: dict[str, Any] = {"access_token": access_token, "count": count}
        if cursor is not None:
            payload["cursor"] = cursor

        resp = TransactionsSyncResponse.parse(self._post("/transactions/sync", payload))
        return resp.to_page(fallback_cursor=cursor)
