from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from prismflow.config import Settings
from prismflow.logging import get_logger
from prismflow.service.errors import AuthenticationError, InvalidCredentialError
from prismflow.storage.common import hash_token
from prismflow.storage.models import Account, Credential, CredentialKind, new_id

logger = get_logger(__name__)

_INVALID_REFRESH = "invalid or expired refresh token"


class CredentialStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def create_credential(self, credential: Credential) -> Credential: ...

    def get_credential_by_hash(self, token_hash: str) -> Optional[Credential]: ...

    def revoke_credential(self, credential_id: str, *, revoked_at: datetime) -> bool: ...

    def rotate_credential(
        self, old_id: str, replacement: Credential, *, revoked_at: datetime
    ) -> bool: ...

    def revoke_credential_family(self, family_id: str, *, revoked_at: datetime) -> int: ...

    def revoke_account_credentials(
        self,
        account_id: str,
        *,
        revoked_at: datetime,
        kind: Optional[CredentialKind] = None,
    ) -> int: ...

    def delete_expired_credentials(self, before: datetime) -> int: ...


@dataclass(frozen=True)
class AccessClaims:
    account_id: str
    issued_at: datetime
    expires_at: datetime
    jti: str


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenService:
    """Issues signed access tokens and rotates opaque refresh credentials.

    Access tokens are HS256 JWTs verified without touching the store. Refresh
    tokens are random strings whose SHA-256 digest is persisted; rotation
    relies on the store's compare-and-swap so at most one concurrent caller
    can exchange a given refresh token.
    """

    def __init__(self, store: CredentialStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- JWT helpers --------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input).encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp():
            return None
        return payload

    # -- access tokens ------------------------------------------------------

    def issue_access_token(self, account: Account) -> tuple[str, datetime]:
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def verify_access_token(self, token: Optional[str]) -> AccessClaims:
        """Check signature, issuer, audience, type and expiry; no store access."""
        payload = self._decode_jwt(token) if token else None
        if not payload or payload.get("token_type") != "access" or not payload.get("sub"):
            raise AuthenticationError("invalid or expired access token")
        return AccessClaims(
            account_id=str(payload["sub"]),
            issued_at=datetime.fromtimestamp(float(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            jti=str(payload.get("jti", "")),
        )

    # -- refresh credentials ------------------------------------------------

    def _new_credential(
        self,
        account_id: str,
        kind: CredentialKind,
        ttl: timedelta,
        *,
        family_id: Optional[str] = None,
    ) -> tuple[str, Credential]:
        token = secrets.token_urlsafe(48)
        now = self._now()
        credential = Credential(
            id=new_id(),
            account_id=account_id,
            token_hash=hash_token(token),
            kind=kind,
            expires_at=now + ttl,
            family_id=family_id,
            created_at=now,
        )
        return token, credential

    def _refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    async def issue_session(self, account: Account) -> TokenPair:
        """Issue an access token and a refresh credential starting a new family."""
        family_id = new_id()
        refresh_token, credential = self._new_credential(
            account.id, CredentialKind.REFRESH, self._refresh_ttl(), family_id=family_id
        )
        self.store.create_credential(credential)
        access_token, access_exp = self.issue_access_token(account)
        self.logger.info("session_issued", account_id=account.id, family_id=family_id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=credential.expires_at,
        )

    async def refresh(self, refresh_token: str) -> tuple[Account, TokenPair]:
        """Exchange a live refresh token for a new pair, revoking the old one.

        Raises ``InvalidCredentialError`` for unknown, revoked, expired or
        concurrently consumed tokens, and for inactive accounts.
        """
        if not refresh_token:
            raise InvalidCredentialError(_INVALID_REFRESH)
        record = self.store.get_credential_by_hash(hash_token(refresh_token))
        now = self._now()
        if not record or record.kind != CredentialKind.REFRESH:
            raise InvalidCredentialError(_INVALID_REFRESH)
        if record.revoked:
            self._handle_replay(record, now)
            raise InvalidCredentialError(_INVALID_REFRESH)
        if record.is_expired(now):
            raise InvalidCredentialError(_INVALID_REFRESH)
        account = self.store.get_account(record.account_id)
        if not account or not account.is_active:
            raise InvalidCredentialError(_INVALID_REFRESH)

        new_token, successor = self._new_credential(
            account.id,
            CredentialKind.REFRESH,
            self._refresh_ttl(),
            family_id=record.family_id or record.id,
        )
        if not self.store.rotate_credential(record.id, successor, revoked_at=now):
            # Lost the race to a concurrent refresh of the same token
            self.logger.info("refresh_rotation_conflict", account_id=account.id)
            raise InvalidCredentialError(_INVALID_REFRESH)
        access_token, access_exp = self.issue_access_token(account)
        return account, TokenPair(
            access_token=access_token,
            refresh_token=new_token,
            access_expires_at=access_exp,
            refresh_expires_at=successor.expires_at,
        )

    def _handle_replay(self, record: Credential, now: datetime) -> None:
        grace = timedelta(seconds=self.settings.refresh_reuse_grace_seconds)
        if record.revoked_at and now - record.revoked_at < grace:
            return
        family_id = record.family_id or record.id
        revoked = self.store.revoke_credential_family(family_id, revoked_at=now)
        self.logger.warning(
            "refresh_token_replayed",
            account_id=record.account_id,
            family_id=family_id,
            revoked=revoked,
        )

    async def revoke(self, refresh_token: str, *, account_id: Optional[str] = None) -> bool:
        """Revoke a single credential; unknown tokens are ignored.

        With ``account_id`` set, tokens owned by another account are ignored too.
        """
        record = self.store.get_credential_by_hash(hash_token(refresh_token)) if refresh_token else None
        if not record or (account_id is not None and record.account_id != account_id):
            return False
        revoked = self.store.revoke_credential(record.id, revoked_at=self._now())
        if revoked:
            self.logger.info("credential_revoked", account_id=record.account_id)
        return revoked

    async def revoke_all(self, account_id: str) -> int:
        count = self.store.revoke_account_credentials(account_id, revoked_at=self._now())
        self.logger.info("credentials_revoked_all", account_id=account_id, count=count)
        return count

    # -- password reset -----------------------------------------------------

    async def issue_reset_token(self, account: Account) -> str:
        # Older outstanding reset links stop working once a new one is issued
        self.store.revoke_account_credentials(
            account.id, revoked_at=self._now(), kind=CredentialKind.RESET
        )
        token, credential = self._new_credential(
            account.id,
            CredentialKind.RESET,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        self.store.create_credential(credential)
        return token

    async def consume_reset_token(self, token: str) -> str:
        """Single-use redemption of a reset token; returns the account id."""
        record = self.store.get_credential_by_hash(hash_token(token)) if token else None
        now = self._now()
        if (
            not record
            or record.kind != CredentialKind.RESET
            or record.revoked
            or record.is_expired(now)
        ):
            raise InvalidCredentialError("invalid or expired reset token")
        if not self.store.revoke_credential(record.id, revoked_at=now):
            raise InvalidCredentialError("invalid or expired reset token")
        return record.account_id

    # -- housekeeping -------------------------------------------------------

    async def sweep_expired(self) -> int:
        removed = self.store.delete_expired_credentials(self._now())
        if removed:
            self.logger.info("expired_credentials_swept", count=removed)
        return removed
