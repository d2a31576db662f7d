from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from prismflow.logging import get_correlation_id
from prismflow.storage.models import Account, ProjectMembership, Role


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters.

    Both are usable for spoofing look-alike addresses.
    """
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "invalid_credential",
    "second_factor_required",
    "second_factor_invalid",
    "unauthorized",
    "forbidden",
    "access_denied",
    "immutable_role",
    "last_admin_violation",
    "last_owner_violation",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response body."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


# -- auth -------------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    mfa_code: Optional[str] = Field(default=None, max_length=10)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class AuthResponse(BaseModel):
    account_id: str
    account: AccountResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    csrf_token: str
    # A pending second factor is reported as a 401 second_factor_required instead
    requires_second_factor: bool = False


class CsrfTokenResponse(BaseModel):
    csrf_token: str


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=2048)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordResetResponse(BaseModel):
    requested: bool = True
    # Only populated in TEST_MODE; delivery is out of band otherwise
    reset_token: Optional[str] = None


# -- second factor ----------------------------------------------------------


class MFAEnrollResponse(BaseModel):
    secret: str
    provisioning_uri: str


class MFAVerifyRequest(BaseModel):
    code: str = Field(..., min_length=6, max_length=10)


class MFADisableRequest(BaseModel):
    code: str = Field(..., max_length=10, description="Current TOTP code to verify identity")


class MFAStatusResponse(BaseModel):
    enabled: bool = Field(..., description="Whether MFA is currently enabled")
    configured: bool = Field(..., description="Whether an MFA secret is stored (possibly pending)")


# -- accounts ---------------------------------------------------------------


class AccountResponse(BaseModel):
    id: str
    email: str
    display_name: str
    is_active: bool
    mfa_enabled: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None
    roles: List[str] = Field(default_factory=list)

    @classmethod
    def from_account(cls, account: Account, roles: Optional[List[Role]] = None) -> "AccountResponse":
        return cls(
            id=account.id,
            email=account.email,
            display_name=account.display_name,
            is_active=account.is_active,
            mfa_enabled=account.mfa_enabled,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
            roles=[role.name for role in roles or []],
        )


class MeResponse(AccountResponse):
    permissions: List[str] = Field(default_factory=list)


class AccountListResponse(BaseModel):
    items: List[AccountResponse]


class AccountCreateRequest(BaseModel):
    email: str
    password: str
    display_name: Optional[str] = Field(default=None, max_length=100)
    role_ids: List[str] = Field(default_factory=list, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_account_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ProfileUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_profile_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


class SetupStatusResponse(BaseModel):
    needs_setup: bool


class AccountPermissionsResponse(BaseModel):
    account_id: str
    roles: List[str]
    permissions: List[str]


class RoleAssignmentResponse(BaseModel):
    account_id: str
    role_id: str
    changed: bool


# -- roles ------------------------------------------------------------------


class RoleResponse(BaseModel):
    id: str
    name: str
    description: str
    is_system: bool
    permissions: List[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            id=role.id,
            name=role.name,
            description=role.description,
            is_system=role.is_system,
            permissions=sorted(p.value for p in role.permissions),
            created_at=role.created_at,
            updated_at=role.updated_at,
        )


class RoleListResponse(BaseModel):
    items: List[RoleResponse]


class RoleCreateRequest(BaseModel):
    name: str = Field(..., max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: List[str] = Field(..., max_length=64)


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    permissions: Optional[List[str]] = Field(default=None, max_length=64)


# -- projects ---------------------------------------------------------------


class MembershipResponse(BaseModel):
    project_id: str
    account_id: str
    role: str
    created_at: datetime

    @classmethod
    def from_membership(cls, membership: ProjectMembership) -> "MembershipResponse":
        return cls(
            project_id=membership.project_id,
            account_id=membership.account_id,
            role=membership.role.value,
            created_at=membership.created_at,
        )


class MembershipListResponse(BaseModel):
    items: List[MembershipResponse]


class MembershipRequest(BaseModel):
    account_id: str = Field(..., max_length=128)
    role: str = Field(..., max_length=16)


class MembershipRoleRequest(BaseModel):
    role: str = Field(..., max_length=16)


class ProjectAccessResponse(BaseModel):
    project_id: str
    role: str
    access_level: str


class ProjectCreateRequest(BaseModel):
    project_id: str = Field(..., min_length=1, max_length=128, pattern=r"^[A-Za-z0-9_.:-]+$")


AuthResponse.model_rebuild()
