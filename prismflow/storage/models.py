from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Permission(str, Enum):
    """Closed set of global permission names."""

    USERS_VIEW = "users:view"
    USERS_CREATE = "users:create"
    USERS_EDIT = "users:edit"
    USERS_DELETE = "users:delete"
    USERS_MANAGE_ROLES = "users:manage_roles"

    PROJECTS_VIEW_ALL = "projects:view_all"
    PROJECTS_VIEW_OWN = "projects:view_own"
    PROJECTS_CREATE = "projects:create"
    PROJECTS_EDIT = "projects:edit"
    PROJECTS_DELETE = "projects:delete"
    PROJECTS_ARCHIVE = "projects:archive"

    TASKS_VIEW_ALL = "tasks:view_all"
    TASKS_VIEW_OWN = "tasks:view_own"
    TASKS_CREATE = "tasks:create"
    TASKS_EDIT = "tasks:edit"
    TASKS_DELETE = "tasks:delete"
    TASKS_ASSIGN = "tasks:assign"

    TEAMS_VIEW = "teams:view"
    TEAMS_CREATE = "teams:create"
    TEAMS_EDIT = "teams:edit"
    TEAMS_DELETE = "teams:delete"
    TEAMS_MANAGE_MEMBERS = "teams:manage_members"

    BOARDS_VIEW = "boards:view"
    BOARDS_CREATE = "boards:create"
    BOARDS_EDIT = "boards:edit"
    BOARDS_DELETE = "boards:delete"

    ADMIN_ACCESS = "admin:access"
    ADMIN_SETTINGS = "admin:settings"
    ADMIN_ROLES = "admin:roles"
    ADMIN_LOGS = "admin:logs"

    REPORTS_VIEW = "reports:view"
    REPORTS_EXPORT = "reports:export"


class MembershipRole(str, Enum):
    OWNER = "owner"
    MEMBER = "member"
    VIEWER = "viewer"


class CredentialKind(str, Enum):
    REFRESH = "refresh"
    RESET = "reset"


@dataclass
class Account:
    id: str
    email: str
    display_name: str
    password_hash: Optional[str] = field(default=None, repr=False)
    is_active: bool = True
    mfa_enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class AccountMFAConfig:
    """Second-factor state of an account; ``secret`` is plaintext base32 here."""

    account_id: str
    secret: str = field(repr=False)
    enabled: bool = False


@dataclass
class Credential:
    """Server-side record of an opaque refresh or reset token.

    Only the SHA-256 digest of the token is kept; the raw value is returned to
    the client once at issuance.
    """

    id: str
    account_id: str
    token_hash: str = field(repr=False)
    kind: CredentialKind
    expires_at: datetime
    family_id: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Role:
    id: str
    name: str
    permissions: FrozenSet[Permission]
    description: str = ""
    is_system: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ProjectMembership:
    project_id: str
    account_id: str
    role: MembershipRole
    created_at: datetime = field(default_factory=utcnow)
