"""Protection of account credential material stored in the local database."""
from __future__ import annotations

import base64
import hashlib
import logging
import os
from functools import lru_cache
from typing import Any, Callable, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

SECRET_KEY_ENV = "WOLFSYNC_SECRET_KEY"
SENSITIVE_KEYS = frozenset({"password", "client_secret", "token", "access_token", "refresh_token"})
ENCRYPTED_PREFIX = "enc:"


class SecretEncryptionError(RuntimeError):
    """Raised when a secret cannot be encrypted or decrypted safely."""


class CredentialCipher:
    """Encrypts the sensitive entries of an account settings mapping.

    Values are stored as ``enc:<fernet token>`` so already protected entries
    are recognised and never encrypted twice.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise SecretEncryptionError(f"{SECRET_KEY_ENV} is not set; credentials cannot be protected.")
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
        self._fernet = Fernet(base64.urlsafe_b64encode(digest))

    def encrypt_value(self, value: str) -> str:
        if value.startswith(ENCRYPTED_PREFIX):
            return value
        token = self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")
        return ENCRYPTED_PREFIX + token

    def decrypt_value(self, value: str) -> str:
        if not value.startswith(ENCRYPTED_PREFIX):
            return value
        try:
            return self._fernet.decrypt(value[len(ENCRYPTED_PREFIX) :].encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            logger.error("Stored credential could not be decrypted: %s", exc)
            raise SecretEncryptionError("Stored secret could not be decrypted.") from exc

    def protect(self, settings: dict[str, Any]) -> dict[str, Any]:
        return _walk(settings, self.encrypt_value)

    def reveal(self, settings: dict[str, Any]) -> dict[str, Any]:
        return _walk(settings, self.decrypt_value)


def _walk(payload: Any, transform: Callable[[str], str], key: Optional[str] = None) -> Any:
    """Copy ``payload`` applying ``transform`` to string values of sensitive keys."""
    if isinstance(payload, dict):
        return {name: _walk(value, transform, name) for name, value in payload.items()}
    if isinstance(payload, list):
        return [_walk(item, transform, key) for item in payload]
    if key in SENSITIVE_KEYS and isinstance(payload, str) and payload:
        return transform(payload)
    return payload


@lru_cache(maxsize=1)
def default_cipher() -> CredentialCipher:
    return CredentialCipher(os.getenv(SECRET_KEY_ENV, ""))


def reset_cipher_cache() -> None:
    """Forget the cached cipher, e.g. after the secret key was rotated."""
    default_cipher.cache_clear()


def encrypt_account_settings(settings: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``settings`` with sensitive values encrypted."""
    if not isinstance(settings, dict):
        return settings
    return default_cipher().protect(settings)


def decrypt_account_settings(settings: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``settings`` with encrypted values restored."""
    if not isinstance(settings, dict):
        return settings
    return default_cipher().reveal(settings)
