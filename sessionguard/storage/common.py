"""Helpers shared by the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
import os
from datetime import datetime, timezone
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from sessionguard.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps from older rows as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(key_material: str | None) -> Fernet:
    """Fernet cipher for two-factor secrets at rest.

    Falls back to ``TWO_FACTOR_ENCRYPTION_KEY`` then ``JWT_SECRET`` from the
    environment when no explicit key material is supplied.
    """
    material = (
        key_material
        or os.getenv("TWO_FACTOR_ENCRYPTION_KEY")
        or os.getenv("JWT_SECRET")
    )
    if not material:
        raise RuntimeError("Two-factor encryption key is not configured")
    return Fernet(_derive_cipher_key(material))


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        logger.warning("two_factor_secret_decrypt_failed")
        return secret


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict row, tolerating columns added by later schema versions."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value
