from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import time
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import quote, urlencode

from prismflow.config import Settings
from prismflow.logging import get_logger
from prismflow.service.errors import ConflictError, SecondFactorInvalidError
from prismflow.storage.models import Account, AccountMFAConfig

logger = get_logger(__name__)

# 160-bit secret encodes to exactly 32 base32 characters
_SECRET_BYTES = 20


class SecondFactorStore(Protocol):
    def set_account_mfa(
        self, account_id: str, secret: str, enabled: bool = False
    ) -> AccountMFAConfig: ...

    def get_account_mfa(self, account_id: str) -> Optional[AccountMFAConfig]: ...

    def clear_account_mfa(self, account_id: str) -> None: ...


@dataclass(frozen=True)
class Enrollment:
    secret: str
    provisioning_uri: str


def generate_secret() -> str:
    return base64.b32encode(os.urandom(_SECRET_BYTES)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    normalized = secret.strip().replace(" ", "").upper()
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return None


def generate_totp(secret: str, timestamp: float, *, step: int = 30, digits: int = 6) -> str:
    """RFC 6238 code (HMAC-SHA1, dynamic truncation) for ``timestamp``."""
    key = _decode_secret(secret)
    if key is None:
        return ""
    counter = int(timestamp // step).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    timestamp: float,
    step: int = 30,
    digits: int = 6,
    window: int = 2,
) -> bool:
    """Accept ``code`` if it matches any step within +/- ``window`` of ``timestamp``."""
    candidate = (code or "").strip().replace(" ", "")
    if len(candidate) != digits or not candidate.isdigit():
        return False
    matched = False
    # Check every offset so timing does not depend on which step matched
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, timestamp + offset * step, step=step, digits=digits)
        if generated and hmac.compare_digest(generated.encode(), candidate.encode()):
            matched = True
    return matched


class SecondFactorService:
    """TOTP enrollment and verification.

    A secret written by ``begin_enrollment`` stays pending until a code
    generated from it is confirmed; only enabled secrets are consulted at
    login.
    """

    def __init__(self, store: SecondFactorStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> float:
        return time.time()

    def provisioning_uri(self, account: Account, secret: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{account.email}", safe="@:")
        params = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "algorithm": "SHA1",
                "digits": self.settings.totp_digits,
                "period": self.settings.totp_step_seconds,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    def _check(self, secret: str, code: str) -> bool:
        return verify_totp(
            secret,
            code,
            timestamp=self._now(),
            step=self.settings.totp_step_seconds,
            digits=self.settings.totp_digits,
            window=self.settings.totp_window,
        )

    async def begin_enrollment(self, account: Account) -> Enrollment:
        existing = self.store.get_account_mfa(account.id)
        if existing and existing.enabled:
            raise ConflictError("second factor already enabled")
        secret = generate_secret()
        self.store.set_account_mfa(account.id, secret, enabled=False)
        self.logger.info("mfa_enrollment_started", account_id=account.id)
        return Enrollment(secret=secret, provisioning_uri=self.provisioning_uri(account, secret))

    async def confirm_enrollment(self, account: Account, code: str) -> bool:
        cfg = self.store.get_account_mfa(account.id)
        if not cfg:
            return False
        if cfg.enabled:
            return self._check(cfg.secret, code)
        if not self._check(cfg.secret, code):
            self.logger.info("mfa_enrollment_code_rejected", account_id=account.id)
            return False
        self.store.set_account_mfa(account.id, cfg.secret, enabled=True)
        self.logger.info("mfa_enabled", account_id=account.id)
        return True

    async def verify(self, account: Account, code: str) -> bool:
        cfg = self.store.get_account_mfa(account.id)
        if not cfg or not cfg.enabled:
            return False
        return self._check(cfg.secret, code)

    async def is_enabled(self, account: Account) -> bool:
        cfg = self.store.get_account_mfa(account.id)
        return bool(cfg and cfg.enabled)

    async def status(self, account: Account) -> dict:
        cfg = self.store.get_account_mfa(account.id)
        return {"enabled": bool(cfg and cfg.enabled), "configured": cfg is not None}

    async def disable(self, account: Account, code: str) -> None:
        if not await self.verify(account, code):
            raise SecondFactorInvalidError("invalid second factor code")
        self.store.clear_account_mfa(account.id)
        self.logger.info("mfa_disabled", account_id=account.id)
