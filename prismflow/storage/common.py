from __future__ import annotations

import base64
import hashlib
import os
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from prismflow.logging import get_logger

logger = get_logger(__name__)


def hash_token(token: str) -> str:
    """Digest stored in place of an opaque refresh/reset token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper used by both stores to keep TOTP secrets encrypted at rest."""

    def __init__(self, key_material: Optional[str] = None) -> None:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            raise RuntimeError(
                "MFA_SECRET_KEY or JWT_SECRET must be set to encrypt second-factor secrets"
            )
        try:
            self._fernet = Fernet(_derive_cipher_key(material))
        except (TypeError, ValueError) as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: str) -> str:
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored second-factor secret cannot be decrypted") from exc


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Read a column from a dict_row/tuple-ish row without KeyError."""
    if row is None:
        return default
    try:
        value = row[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value
