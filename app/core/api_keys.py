"""
API Key Generation and Verification

Full key format: ``pk_live_<32 hex>_sk_live_<64 hex>``.
The public part identifies the key row; only a sha256 hash of the secret
is stored. The secrets are 256-bit random values, so a fast hash is
sufficient (no password stretching needed).
"""
from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass

PUBLIC_KEY_PREFIX = "pk_live_"
SECRET_KEY_PREFIX = "sk_live_"
_SEPARATOR = "_" + SECRET_KEY_PREFIX
_PUBLIC_KEY_BYTES = 16
_SECRET_KEY_BYTES = 32


@dataclass(frozen=True)
class GeneratedApiKey:
    full_key: str
    public_key: str
    secret_hash: str


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def verify_secret(secret: str, stored_hash: str) -> bool:
    """Constant-time comparison of a presented secret against the stored hash"""
    return hmac.compare_digest(hash_secret(secret), stored_hash or "")


def generate_api_key() -> GeneratedApiKey:
    """Create a new key; ``full_key`` is shown to the user once and never stored"""
    public_key = PUBLIC_KEY_PREFIX + secrets.token_hex(_PUBLIC_KEY_BYTES)
    secret = secrets.token_hex(_SECRET_KEY_BYTES)
    return GeneratedApiKey(
        full_key=f"{public_key}{_SEPARATOR}{secret}",
        public_key=public_key,
        secret_hash=hash_secret(secret),
    )


def split_api_key(full_key: str) -> tuple[str, str]:
    """
    Split a full key into (public_key, secret).

    Raises:
        ValueError: when the key does not match the expected format
    """
    if not full_key or not full_key.startswith(PUBLIC_KEY_PREFIX):
        raise ValueError("API key must start with pk_live_")
    public_key, sep, secret = full_key.partition(_SEPARATOR)
    if not sep or not secret or len(public_key) <= len(PUBLIC_KEY_PREFIX):
        raise ValueError("API key must have the form pk_live_<id>_sk_live_<secret>")
    return public_key, secret
