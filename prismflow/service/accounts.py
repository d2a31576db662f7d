from __future__ import annotations

import hashlib
import secrets
from datetime import datetime
from typing import Iterable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from prismflow.config import Settings
from prismflow.logging import get_logger
from prismflow.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialError,
    NotFoundError,
    ValidationError,
)
from prismflow.service.permissions import ADMINISTRATOR, TEAM_MEMBER, PermissionEngine
from prismflow.service.tokens import TokenService
from prismflow.storage.errors import ConstraintViolation
from prismflow.storage.models import Account, ProjectMembership

logger = get_logger(__name__)

_PASSWORD_MIN = 8
_PASSWORD_MAX = 128
_DISPLAY_NAME_MAX = 100


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        display_name: str,
        password_hash: Optional[str],
        *,
        is_active: bool = True,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(self, *, limit: int = 100, active_only: bool = False) -> List[Account]: ...

    def set_account_active(self, account_id: str, is_active: bool) -> Optional[Account]: ...

    def update_account_profile(
        self,
        account_id: str,
        *,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Account]: ...

    def update_password(self, account_id: str, password_hash: str) -> bool: ...

    def touch_last_login(self, account_id: str, at: datetime) -> None: ...

    def delete_account(self, account_id: str) -> bool: ...

    def list_account_memberships(self, account_id: str) -> List[ProjectMembership]: ...


def validate_password_strength(password: str) -> str:
    if not isinstance(password, str) or len(password) < _PASSWORD_MIN:
        raise ValidationError(
            f"password must be at least {_PASSWORD_MIN} characters", detail={"field": "password"}
        )
    if len(password) > _PASSWORD_MAX:
        raise ValidationError(
            f"password must be at most {_PASSWORD_MAX} characters", detail={"field": "password"}
        )
    return password


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()


class AccountService:
    """Account lifecycle: registration, activation, passwords and resets.

    Deactivation and deletion share the permission engine's invariant lock so
    they cannot race a role change into removing the last administrator.
    """

    def __init__(
        self,
        store: AccountStore,
        permissions: PermissionEngine,
        tokens: TokenService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.permissions = permissions
        self.tokens = tokens
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    # -- passwords ----------------------------------------------------------

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, password: str) -> bool:
        if not account.password_hash:
            self.logger.warning("password_record_missing", account_id=account.id)
            return False
        try:
            self._pwd_hasher.verify(account.password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_verification_failed", account_id=account.id)
            return False
        if self._pwd_hasher.check_needs_rehash(account.password_hash):
            self.store.update_password(account.id, self.hash_password(password))
        return True

    def authenticate(self, email: str, password: str) -> Optional[Account]:
        """Return the active account matching ``email``/``password`` or None."""
        account = self.store.get_account_by_email(email)
        if account is None:
            # Spend the same hashing work as a real check so timing does not reveal unknown emails
            if self._dummy_hash is None:
                self._dummy_hash = self.hash_password(secrets.token_urlsafe(16))
            try:
                self._pwd_hasher.verify(self._dummy_hash, password)
            except VerificationError:
                pass
            return None
        if not self.verify_password(account, password) or not account.is_active:
            return None
        return account

    # -- lifecycle ----------------------------------------------------------

    async def _create(self, email: str, password: str, display_name: Optional[str]) -> Account:
        validate_password_strength(password)
        name = (display_name or "").strip() or email.split("@", 1)[0]
        if len(name) > _DISPLAY_NAME_MAX:
            raise ValidationError("display name too long", detail={"field": "display_name"})
        try:
            return self.store.create_account(email, name, self.hash_password(password))
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc

    async def register(
        self, email: str, password: str, display_name: Optional[str] = None
    ) -> Account:
        """Self-service signup; the first account ever becomes an Administrator."""
        roles = self.permissions.ensure_system_roles()
        async with self.permissions.invariant_lock:
            bootstrap = not self.permissions.has_active_admin()
            if not bootstrap and not self.settings.allow_signup:
                raise ForbiddenError("signup disabled")
            account = await self._create(email, password, display_name)
            role = roles[ADMINISTRATOR] if bootstrap else roles[TEAM_MEMBER]
            await self.permissions.assign_role(account.id, role.id)
        self.logger.info(
            "account_registered", account_id=account.id, role=role.name, bootstrap=bootstrap
        )
        return account

    async def provision_account(
        self,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        *,
        role_ids: Iterable[str] = (),
    ) -> Account:
        """Administrative creation with an explicit role set (defaults to Team Member)."""
        role_ids = list(role_ids)
        for role_id in role_ids:
            await self.permissions.get_role(role_id)
        if not role_ids:
            role_ids = [self.permissions.system_role(TEAM_MEMBER).id]
        account = await self._create(email, password, display_name)
        for role_id in role_ids:
            await self.permissions.assign_role(account.id, role_id)
        self.logger.info("account_provisioned", account_id=account.id)
        return account

    async def get_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    async def list_accounts(self, *, limit: int = 100) -> List[Account]:
        return self.store.list_accounts(limit=limit)

    async def update_profile(
        self,
        account_id: str,
        *,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Account:
        """Change the display name and/or email; the email must stay unique."""
        await self.get_account(account_id)
        if display_name is not None:
            display_name = display_name.strip()
            if not display_name or len(display_name) > _DISPLAY_NAME_MAX:
                raise ValidationError("invalid display name", detail={"field": "display_name"})
        try:
            account = self.store.update_account_profile(
                account_id, display_name=display_name, email=email
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        self.logger.info(
            "account_profile_updated",
            account_id=account_id,
            email_changed=email is not None,
        )
        return account

    async def deactivate_account(self, account_id: str) -> Account:
        async with self.permissions.invariant_lock:
            await self.get_account(account_id)
            self.permissions.ensure_admin_remains(without_account=account_id)
            account = self.store.set_account_active(account_id, False)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        await self.tokens.revoke_all(account_id)
        self.logger.info("account_deactivated", account_id=account_id)
        return account

    async def reactivate_account(self, account_id: str) -> Account:
        await self.get_account(account_id)
        account = self.store.set_account_active(account_id, True)
        if account is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        self.logger.info("account_reactivated", account_id=account_id)
        return account

    async def delete_account(self, account_id: str) -> None:
        """Hard delete; refused while the account still belongs to a project."""
        async with self.permissions.invariant_lock:
            await self.get_account(account_id)
            if self.store.list_account_memberships(account_id):
                raise ConflictError(
                    "account still holds project memberships; deactivate it instead",
                    detail={"account_id": account_id},
                )
            self.permissions.ensure_admin_remains(without_account=account_id)
            self.store.delete_account(account_id)
        self.logger.info("account_deleted", account_id=account_id)

    # -- password changes ---------------------------------------------------

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> None:
        account = await self.get_account(account_id)
        if not self.verify_password(account, current_password):
            raise InvalidCredentialError("current password is incorrect")
        validate_password_strength(new_password)
        self.store.update_password(account_id, self.hash_password(new_password))
        await self.tokens.revoke_all(account_id)
        self.logger.info("password_changed", account_id=account_id)

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Return a reset token for an active account, or None without revealing why."""
        account = self.store.get_account_by_email(email)
        if not account or not account.is_active:
            self.logger.info("password_reset_unknown_account", email_hash=_email_hash(email))
            return None
        token = await self.tokens.issue_reset_token(account)
        self.logger.info("password_reset_requested", account_id=account.id)
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> None:
        validate_password_strength(new_password)
        account_id = await self.tokens.consume_reset_token(token)
        self.store.update_password(account_id, self.hash_password(new_password))
        await self.tokens.revoke_all(account_id)
        self.logger.info("password_reset_completed", account_id=account_id)
