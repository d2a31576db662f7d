from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from prismflow.storage.common import SecretCipher, normalize_email
from prismflow.storage.errors import ConstraintViolation
from prismflow.storage.models import (
    Account,
    AccountMFAConfig,
    Credential,
    CredentialKind,
    MembershipRole,
    Permission,
    ProjectMembership,
    Role,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-memory backing store used for tests and single-process development.

    Every public method takes ``_data_lock`` so compound operations such as
    refresh rotation are atomic with respect to other threads.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.accounts: Dict[str, Account] = {}
        # account_id -> (encrypted secret, enabled)
        self.mfa_secrets: Dict[str, Tuple[str, bool]] = {}
        self.credentials: Dict[str, Credential] = {}
        self.roles: Dict[str, Role] = {}
        self.account_roles: set[Tuple[str, str]] = set()
        self.memberships: Dict[Tuple[str, str], ProjectMembership] = {}
        # RLock so helpers can be composed inside a locked section
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)

    # -- accounts -----------------------------------------------------------

    def create_account(
        self,
        email: str,
        display_name: str,
        password_hash: Optional[str],
        *,
        is_active: bool = True,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=new_id(),
                email=normalized,
                display_name=display_name,
                password_hash=password_hash,
                is_active=is_active,
            )
            self.accounts[account.id] = account
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )
            return replace(account) if account else None

    def list_accounts(self, *, limit: int = 100, active_only: bool = False) -> List[Account]:
        with self._data_lock:
            results = [
                replace(a)
                for a in self.accounts.values()
                if a.is_active or not active_only
            ]
        return sorted(results, key=lambda a: a.created_at)[:limit]

    def update_account_profile(
        self,
        account_id: str,
        *,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if email is not None:
                normalized = normalize_email(email)
                if any(
                    other.email == normalized and other.id != account_id
                    for other in self.accounts.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
                account.email = normalized
            if display_name is not None:
                account.display_name = display_name
            return replace(account)

    def set_account_active(self, account_id: str, is_active: bool) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.is_active = is_active
            return replace(account)

    def update_password(self, account_id: str, password_hash: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.password_hash = password_hash
            return True

    def touch_last_login(self, account_id: str, at: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.last_login_at = at

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self.accounts.pop(account_id, None)
            self.mfa_secrets.pop(account_id, None)
            for cred_id, cred in list(self.credentials.items()):
                if cred.account_id == account_id:
                    self.credentials.pop(cred_id, None)
            self.account_roles = {
                pair for pair in self.account_roles if pair[0] != account_id
            }
            for key in [k for k in self.memberships if k[1] == account_id]:
                self.memberships.pop(key, None)
            return True

    # -- second factor ------------------------------------------------------

    def set_account_mfa(
        self, account_id: str, secret: str, enabled: bool = False
    ) -> AccountMFAConfig:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found for mfa", {"account_id": account_id})
            self.mfa_secrets[account_id] = (self._cipher.encrypt(secret), enabled)
            account.mfa_enabled = enabled
            return AccountMFAConfig(account_id=account_id, secret=secret, enabled=enabled)

    def get_account_mfa(self, account_id: str) -> Optional[AccountMFAConfig]:
        with self._data_lock:
            record = self.mfa_secrets.get(account_id)
            if not record:
                return None
            encrypted, enabled = record
            return AccountMFAConfig(
                account_id=account_id,
                secret=self._cipher.decrypt(encrypted),
                enabled=enabled,
            )

    def clear_account_mfa(self, account_id: str) -> None:
        with self._data_lock:
            self.mfa_secrets.pop(account_id, None)
            account = self.accounts.get(account_id)
            if account:
                account.mfa_enabled = False

    # -- credentials --------------------------------------------------------

    def create_credential(self, credential: Credential) -> Credential:
        with self._data_lock:
            if credential.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": credential.account_id}
                )
            if any(c.token_hash == credential.token_hash for c in self.credentials.values()):
                raise ConstraintViolation("credential token already exists", {"field": "token"})
            self.credentials[credential.id] = replace(credential)
            return replace(credential)

    def get_credential_by_hash(self, token_hash: str) -> Optional[Credential]:
        with self._data_lock:
            cred = next(
                (c for c in self.credentials.values() if c.token_hash == token_hash), None
            )
            return replace(cred) if cred else None

    def revoke_credential(self, credential_id: str, *, revoked_at: datetime) -> bool:
        """Compare-and-swap revoke; False when missing or already revoked."""
        with self._data_lock:
            cred = self.credentials.get(credential_id)
            if not cred or cred.revoked:
                return False
            cred.revoked = True
            cred.revoked_at = revoked_at
            return True

    def rotate_credential(
        self, old_id: str, replacement: Credential, *, revoked_at: datetime
    ) -> bool:
        """Revoke ``old_id`` and insert ``replacement`` as one step.

        Returns False without inserting anything when ``old_id`` was already
        revoked by a concurrent caller.
        """
        with self._data_lock:
            cred = self.credentials.get(old_id)
            if not cred or cred.revoked:
                return False
            self.create_credential(replacement)
            cred.revoked = True
            cred.revoked_at = revoked_at
            return True

    def revoke_credential_family(self, family_id: str, *, revoked_at: datetime) -> int:
        with self._data_lock:
            count = 0
            for cred in self.credentials.values():
                if cred.family_id == family_id and not cred.revoked:
                    cred.revoked = True
                    cred.revoked_at = revoked_at
                    count += 1
            return count

    def revoke_account_credentials(
        self,
        account_id: str,
        *,
        revoked_at: datetime,
        kind: Optional[CredentialKind] = None,
    ) -> int:
        with self._data_lock:
            count = 0
            for cred in self.credentials.values():
                if cred.account_id != account_id or cred.revoked:
                    continue
                if kind is not None and cred.kind != kind:
                    continue
                cred.revoked = True
                cred.revoked_at = revoked_at
                count += 1
            return count

    def delete_expired_credentials(self, before: datetime) -> int:
        with self._data_lock:
            stale = [cid for cid, c in self.credentials.items() if c.expires_at < before]
            for cid in stale:
                self.credentials.pop(cid, None)
            return len(stale)

    # -- roles --------------------------------------------------------------

    def create_role(
        self,
        name: str,
        permissions: Iterable[Permission],
        *,
        description: str = "",
        is_system: bool = False,
    ) -> Role:
        with self._data_lock:
            if any(r.name.lower() == name.lower() for r in self.roles.values()):
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role = Role(
                id=new_id(),
                name=name,
                permissions=frozenset(permissions),
                description=description,
                is_system=is_system,
            )
            self.roles[role.id] = role
            return replace(role)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role = next(
                (r for r in self.roles.values() if r.name.lower() == name.lower()), None
            )
            return replace(role) if role else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            roles = [replace(r) for r in self.roles.values()]
        return sorted(roles, key=lambda r: (not r.is_system, r.name))

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[Iterable[Permission]] = None,
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if name is not None and name.lower() != role.name.lower():
                if any(
                    r.name.lower() == name.lower() for r in self.roles.values() if r.id != role_id
                ):
                    raise ConstraintViolation("role name already exists", {"field": "name"})
            if name is not None:
                role.name = name
            if description is not None:
                role.description = description
            if permissions is not None:
                role.permissions = frozenset(permissions)
            role.updated_at = utcnow()
            return replace(role)

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            self.account_roles = {
                pair for pair in self.account_roles if pair[1] != role_id
            }
            return True

    def assign_role(self, account_id: str, role_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if role_id not in self.roles:
                raise ConstraintViolation("role does not exist", {"role_id": role_id})
            if (account_id, role_id) in self.account_roles:
                return False
            self.account_roles.add((account_id, role_id))
            return True

    def unassign_role(self, account_id: str, role_id: str) -> bool:
        with self._data_lock:
            if (account_id, role_id) not in self.account_roles:
                return False
            self.account_roles.discard((account_id, role_id))
            return True

    def list_account_roles(self, account_id: str) -> List[Role]:
        with self._data_lock:
            roles = [
                replace(self.roles[role_id])
                for acc_id, role_id in self.account_roles
                if acc_id == account_id and role_id in self.roles
            ]
        return sorted(roles, key=lambda r: r.name)

    def list_role_account_ids(self, role_id: str) -> List[str]:
        with self._data_lock:
            return sorted(acc_id for acc_id, r_id in self.account_roles if r_id == role_id)

    # -- project memberships ------------------------------------------------

    def add_membership(
        self, project_id: str, account_id: str, role: MembershipRole
    ) -> ProjectMembership:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            key = (project_id, account_id)
            if key in self.memberships:
                raise ConstraintViolation(
                    "membership already exists",
                    {"project_id": project_id, "account_id": account_id},
                )
            membership = ProjectMembership(
                project_id=project_id, account_id=account_id, role=MembershipRole(role)
            )
            self.memberships[key] = membership
            return replace(membership)

    def get_membership(self, project_id: str, account_id: str) -> Optional[ProjectMembership]:
        with self._data_lock:
            membership = self.memberships.get((project_id, account_id))
            return replace(membership) if membership else None

    def list_memberships(self, project_id: str) -> List[ProjectMembership]:
        with self._data_lock:
            members = [replace(m) for (p_id, _), m in self.memberships.items() if p_id == project_id]
        return sorted(members, key=lambda m: m.created_at)

    def list_account_memberships(self, account_id: str) -> List[ProjectMembership]:
        with self._data_lock:
            return [replace(m) for (_, a_id), m in self.memberships.items() if a_id == account_id]

    def update_membership_role(
        self, project_id: str, account_id: str, role: MembershipRole
    ) -> Optional[ProjectMembership]:
        with self._data_lock:
            membership = self.memberships.get((project_id, account_id))
            if not membership:
                return None
            membership.role = MembershipRole(role)
            return replace(membership)

    def remove_membership(self, project_id: str, account_id: str) -> bool:
        with self._data_lock:
            return self.memberships.pop((project_id, account_id), None) is not None
