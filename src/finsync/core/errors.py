"""Remote error classification.

Maps aggregation-provider error codes to user-facing messages and retry
metadata. This table is the only place that decides whether a remote failure
is transient or needs the user to reconnect; the retry engine and the sync
engine both read it.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import re
from typing import Any

UNKNOWN_ERROR_CODE = "UNKNOWN_ERROR"

_GENERIC_USER_MESSAGE = (
    "An unexpected error occurred while connecting to your financial "
    "institution. Please try again."
)
_GENERIC_SUGGESTED_ACTION = "Contact support if this issue persists."

_CODE_IN_MESSAGE = re.compile(r"error_code:\s*(\w+)", re.IGNORECASE)


class FinsyncError(Exception):
    """Base error for finsync failures."""


class RemoteProviderError(FinsyncError):
    """Error reported by a remote provider, shaped as ``{code, message}``."""

    def __init__(
        self,
        code: str,
        message: str = "",
        *,
        display_message: str | None = None,
    ) -> None:
        self.error_code = code
        self.error_message = message
        self.display_message = display_message
        super().__init__(f"{code}: {message}" if message else code)


class CredentialError(FinsyncError):
    """Stored credential could not be encrypted or decrypted."""


class SyncFailedError(FinsyncError):
    """Every sync kind in a combined sync run failed."""


class WebhookPayloadError(FinsyncError):
    """Inbound webhook payload is missing required fields."""


@dataclass(frozen=True, slots=True)
class ErrorClassification:
    """Classification of a remote error."""

    user_message: str
    error_code: str
    requires_reconnect: bool
    is_transient: bool
    suggested_action: str | None = None


@dataclass(frozen=True, slots=True)
class _ErrorMapping:
    user_message: str
    requires_reconnect: bool
    is_transient: bool
    suggested_action: str | None = None


PLAID_ERROR_MAPPINGS: dict[str, _ErrorMapping] = {
    # Authentication errors
    "ITEM_LOGIN_REQUIRED": _ErrorMapping(
        user_message=(
            "Your account connection has expired. Please reconnect your "
            "account to continue syncing data."
        ),
        requires_reconnect=True,
        is_transient=False,
        suggested_action='Click "Reconnect" to update your credentials.',
    ),
    "INVALID_CREDENTIALS": _ErrorMapping(
        user_message=(
            "The username or password you provided is incorrect. Please check "
            "your credentials and try again."
        ),
        requires_reconnect=True,
        is_transient=False,
        suggested_action="Verify your login credentials with your bank.",
    ),
    "INVALID_MFA": _ErrorMapping(
        user_message=(
            "The multi-factor authentication code is invalid or has expired. "
            "Please try again."
        ),
        requires_reconnect=True,
        is_transient=False,
        suggested_action="Request a new verification code from your institution.",
    ),
    "ITEM_LOCKED": _ErrorMapping(
        user_message=(
            "Your account has been locked by your financial institution. "
            "Please contact your bank to unlock it."
        ),
        requires_reconnect=True,
        is_transient=False,
        suggested_action="Contact your financial institution for assistance.",
    ),
    "USER_SETUP_REQUIRED": _ErrorMapping(
        user_message=(
            "Your account requires additional setup at your financial "
            "institution before it can be connected."
        ),
        requires_reconnect=True,
        is_transient=False,
        suggested_action="Complete the setup process with your institution.",
    ),
    "ITEM_NOT_FOUND": _ErrorMapping(
        user_message=(
            "The account connection could not be found. It may have been removed."
        ),
        requires_reconnect=True,
        is_transient=False,
        suggested_action="Please reconnect your account.",
    ),
    # Availability errors
    "INSTITUTION_DOWN": _ErrorMapping(
        user_message=(
            "Your financial institution is currently unavailable. This is "
            "usually temporary."
        ),
        requires_reconnect=False,
        is_transient=True,
        suggested_action="Please try again in a few minutes.",
    ),
    "INSTITUTION_NOT_RESPONDING": _ErrorMapping(
        user_message=(
            "Your financial institution is not responding. This is typically "
            "temporary."
        ),
        requires_reconnect=False,
        is_transient=True,
        suggested_action="We will automatically retry this connection.",
    ),
    "RATE_LIMIT_EXCEEDED": _ErrorMapping(
        user_message=(
            "Too many requests have been made. Please wait a moment before "
            "trying again."
        ),
        requires_reconnect=False,
        is_transient=True,
        suggested_action="Wait a few minutes before retrying.",
    ),
    "PRODUCTS_NOT_READY": _ErrorMapping(
        user_message=(
            "Account data is still being retrieved. Please try again in a few "
            "moments."
        ),
        requires_reconnect=False,
        is_transient=True,
        suggested_action="Wait 30 seconds and try again.",
    ),
    "INTERNAL_SERVER_ERROR": _ErrorMapping(
        user_message=(
            "A server error occurred. We have been notified and are working to "
            "resolve it."
        ),
        requires_reconnect=False,
        is_transient=True,
        suggested_action="Please try again later.",
    ),
    "PLANNED_MAINTENANCE": _ErrorMapping(
        user_message=(
            "The account data provider is undergoing scheduled maintenance. "
            "Service will resume shortly."
        ),
        requires_reconnect=False,
        is_transient=True,
        suggested_action="Check back in 30 minutes.",
    ),
    # Request and configuration errors
    "INVALID_REQUEST": _ErrorMapping(
        user_message=(
            "An error occurred while processing your request. Please try again."
        ),
        requires_reconnect=False,
        is_transient=False,
        suggested_action=_GENERIC_SUGGESTED_ACTION,
    ),
    "INVALID_API_KEYS": _ErrorMapping(
        user_message=(
            "There is a configuration error. Please contact support for "
            "assistance."
        ),
        requires_reconnect=False,
        is_transient=False,
        suggested_action="Contact support for assistance.",
    ),
    "ITEM_NO_ERROR": _ErrorMapping(
        user_message="No error detected. Your account is connected successfully.",
        requires_reconnect=False,
        is_transient=False,
    ),
}


def _extract_code_and_display(error: Any) -> tuple[str, str | None]:
    """Pull the provider error code and display message out of ``error``."""
    code: str | None = None
    display: str | None = None

    if isinstance(error, Mapping):
        raw_code = error.get("error_code") or error.get("code")
        if isinstance(raw_code, str):
            code = raw_code
        raw_display = error.get("display_message")
        if isinstance(raw_display, str):
            display = raw_display
    else:
        raw_code = getattr(error, "error_code", None)
        if isinstance(raw_code, str):
            code = raw_code
        raw_display = getattr(error, "display_message", None)
        if isinstance(raw_display, str):
            display = raw_display

    if code is None and isinstance(error, BaseException):
        match = _CODE_IN_MESSAGE.search(str(error))
        if match:
            code = match.group(1)

    return code or UNKNOWN_ERROR_CODE, display


def classify_error(error: Any) -> ErrorClassification:
    """Classify a remote error.

    Args:
        error: Exception, mapping with ``error_code``/``code``, or None

    Returns:
        ErrorClassification. Unknown codes are neither transient nor
        reconnect-requiring, and still carry a user message and the code.
    """
    if error is None:
        return ErrorClassification(
            user_message="An unknown error occurred. Please try again.",
            error_code=UNKNOWN_ERROR_CODE,
            requires_reconnect=False,
            is_transient=False,
            suggested_action=_GENERIC_SUGGESTED_ACTION,
        )

    code, display = _extract_code_and_display(error)
    mapping = PLAID_ERROR_MAPPINGS.get(code)
    if mapping is not None:
        return ErrorClassification(
            user_message=display or mapping.user_message,
            error_code=code,
            requires_reconnect=mapping.requires_reconnect,
            is_transient=mapping.is_transient,
            suggested_action=mapping.suggested_action,
        )

    return ErrorClassification(
        user_message=display or _GENERIC_USER_MESSAGE,
        error_code=code,
        requires_reconnect=False,
        is_transient=False,
        suggested_action=_GENERIC_SUGGESTED_ACTION,
    )


def is_transient_error(error: Any) -> bool:
    return classify_error(error).is_transient


def requires_reconnection(error: Any) -> bool:
    return classify_error(error).requires_reconnect


def get_suggested_action(error: Any) -> str | None:
    return classify_error(error).suggested_action


TRANSIENT_ERROR_CODES = frozenset(
    code for code, mapping in PLAID_ERROR_MAPPINGS.items() if mapping.is_transient
)
