"""
Credential Vault

Encrypts connector credentials at rest with Fernet (AES-128-CBC + HMAC).
Plaintext credentials exist only in memory inside the dispatch worker.
"""
from __future__ import annotations

import json
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from app.core.config import settings
from app.core.exceptions import CredentialDecryptionError
from app.core.logging import get_logger

logger = get_logger(__name__)


class Vault:
    """Symmetric encryption of credential dicts"""

    def __init__(self, key: str | bytes) -> None:
        if not key:
            raise ValueError("Vault key is empty")
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, credentials: dict[str, Any]) -> str:
        """Serialize and encrypt; returns a url-safe token string"""
        payload = json.dumps(credentials, separators=(",", ":"), sort_keys=True)
        return self._fernet.encrypt(payload.encode("utf-8")).decode("ascii")

    def decrypt(self, blob: str) -> dict[str, Any]:
        """
        Decrypt a token produced by ``encrypt``.

        Raises:
            CredentialDecryptionError: bad token, wrong key, or the plaintext
                is not a JSON object. Never retryable.
        """
        if not blob:
            raise CredentialDecryptionError("Connector credentials are empty")
        try:
            raw = self._fernet.decrypt(blob.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as exc:
            # the token content stays out of the log
            logger.warning(
                "Credential decryption failed",
                extra_data={"error_type": type(exc).__name__},
            )
            raise CredentialDecryptionError(
                "Failed to decrypt connector credentials: invalid token or key"
            ) from exc

        try:
            credentials = json.loads(raw)
        except ValueError as exc:
            raise CredentialDecryptionError(
                "Decrypted connector credentials are not valid JSON"
            ) from exc
        if not isinstance(credentials, dict):
            raise CredentialDecryptionError(
                "Decrypted connector credentials are not an object"
            )
        return credentials

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")


@lru_cache
def get_vault() -> Vault:
    """Process-wide vault built from VAULT_ENCRYPTION_KEY"""
    return Vault(settings.VAULT_ENCRYPTION_KEY)
