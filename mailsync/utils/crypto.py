"""Reversible encryption of credential payloads.

Credentials are serialized to JSON and sealed with Fernet symmetric
encryption before they reach any store.
"""

from __future__ import annotations

import json
import os
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from ..core.exceptions import AuthConfigurationError

_KEY_ENV_VAR = "EMAIL_ENCRYPTION_KEY"


def _get_fernet() -> Fernet:
    """Return a :class:`Fernet` instance from the configured key.

    The key is sourced from the ``EMAIL_ENCRYPTION_KEY`` environment variable
    so it can be managed outside of version control.
    """
    key = os.environ.get(_KEY_ENV_VAR)
    if not key:
        raise RuntimeError(f"{_KEY_ENV_VAR} is not set")
    return Fernet(key.encode())


def encrypt(value: str) -> str:
    """Encrypt ``value`` using Fernet symmetric encryption."""
    return _get_fernet().encrypt(value.encode()).decode()


def decrypt(token: str) -> str:
    """Decrypt a Fernet ``token`` back into plaintext."""
    return _get_fernet().decrypt(token.encode()).decode()


def encrypt_object(obj: Any) -> str:
    """Serialize ``obj`` to JSON and encrypt it."""
    return encrypt(json.dumps(obj, sort_keys=True))


def decrypt_object(token: str) -> Any:
    """Decrypt a token produced by :func:`encrypt_object`.

    A token sealed with a different key surfaces as
    :class:`AuthConfigurationError` so the source is flagged for an operator.
    """
    try:
        return json.loads(decrypt(token))
    except InvalidToken as exc:
        raise AuthConfigurationError("Stored credentials cannot be decrypted with the configured key") from exc
