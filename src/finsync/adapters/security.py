from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken

from finsync.core.errors import CredentialError


class TokenCipher:
    """Symmetric encryption for stored provider access tokens."""

    def __init__(self, key: str | bytes) -> None:
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise CredentialError(
                "Invalid encryption key: must be 32 url-safe base64-encoded bytes"
            ) from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode()).decode()

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise CredentialError("Failed to decrypt stored access token") from e
