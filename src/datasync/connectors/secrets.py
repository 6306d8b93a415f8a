"""Encryption of provider tokens and stored adapter configs.

When ``TOKEN_ENCRYPTION_KEY`` is configured, access and refresh tokens (in
``connector_status``) and adapter configs of user-defined connectors (in
``connector_configs``, where database URLs carry passwords) are encrypted
with ``cryptography.fernet`` before they are written and decrypted when
read back.  Without a key, values are stored as given, which is only
appropriate for local development.
"""

from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from datasync.settings import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4)
def _fernet(key: str) -> Fernet:
    return Fernet(key.encode())


def _configured_key() -> str:
    return settings.TOKEN_ENCRYPTION_KEY


def encrypt_token(value: str | None, key: str | None = None) -> str | None:
    """Encrypt a provider token for storage.

    ``None`` passes through so callers can clear a token column directly.
    """
    if value is None:
        return None
    key = key if key is not None else _configured_key()
    if not key:
        return value
    return _fernet(key).encrypt(value.encode()).decode()


def decrypt_token(value: str | None, key: str | None = None) -> str | None:
    """Decrypt a stored provider token.

    Raises ``ValueError`` if the stored value cannot be decrypted with the
    configured key (rotated key or corrupted column).
    """
    if value is None:
        return None
    key = key if key is not None else _configured_key()
    if not key:
        return value
    try:
        return _fernet(key).decrypt(value.encode()).decode()
    except InvalidToken as exc:
        logger.error("decrypt_token: stored token could not be decrypted with the configured key")
        raise ValueError("stored token could not be decrypted; check TOKEN_ENCRYPTION_KEY") from exc


def encrypt_config(config: dict[str, Any], key: str | None = None) -> str:
    """Serialize an adapter config to JSON and encrypt it for storage."""
    return encrypt_token(json.dumps(config, sort_keys=True), key)


def decrypt_config(value: str | None, key: str | None = None) -> dict[str, Any]:
    if not value:
        return {}
    return json.loads(decrypt_token(value, key))
