from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Optional

from prismflow.config import Settings

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


class CsrfProtector:
    """Double-submit tokens bound to the authenticated account.

    A token is ``<nonce>.<mac>`` where the mac covers the account id and the
    nonce, so a cookie planted for one account cannot be replayed by another.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._key = hashlib.sha256(b"csrf:" + settings.jwt_secret.encode()).digest()

    def _mac(self, account_id: str, nonce: str) -> str:
        message = f"{account_id}:{nonce}".encode()
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def issue(self, account_id: str) -> str:
        nonce = secrets.token_hex(32)
        return f"{nonce}.{self._mac(account_id, nonce)}"

    def validate(
        self, account_id: str, header_token: Optional[str], cookie_token: Optional[str]
    ) -> bool:
        if not header_token or not cookie_token:
            return False
        if not hmac.compare_digest(header_token.encode(), cookie_token.encode()):
            return False
        nonce, _, mac = header_token.partition(".")
        if not nonce or not mac:
            return False
        return hmac.compare_digest(self._mac(account_id, nonce).encode(), mac.encode())

    @staticmethod
    def requires_check(method: str) -> bool:
        return method.upper() not in SAFE_METHODS
