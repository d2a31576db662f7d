from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, FrozenSet, Optional, Protocol, Union

from prismflow.logging import get_logger
from prismflow.service.csrf import CsrfProtector
from prismflow.service.errors import AuthenticationError, ForbiddenError, ServerError
from prismflow.service.permissions import PermissionEngine
from prismflow.service.projects import AccessLevel, ProjectAccessControl
from prismflow.service.tokens import TokenService
from prismflow.storage.errors import StoreUnavailable
from prismflow.storage.models import Account, Permission

logger = get_logger(__name__)


class AccountLookup(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...


@dataclass(frozen=True)
class InboundCall:
    """What the guard needs to know about one request; built by the HTTP layer."""

    method: str
    authorization: Optional[str] = None
    csrf_header: Optional[str] = None
    csrf_cookie: Optional[str] = None
    required_permissions: FrozenSet[Permission] = field(default_factory=frozenset)
    project_id: Optional[str] = None
    minimum_access: Optional[AccessLevel] = None


@dataclass(frozen=True)
class Principal:
    account_id: str
    permissions: FrozenSet[Permission]
    project_id: Optional[str] = None
    project_access: Optional[AccessLevel] = None

    def can(self, permission: Union[str, Permission]) -> bool:
        return Permission(permission) in self.permissions


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class RequestGuard:
    """Single authorization checkpoint run before every protected handler.

    Order is fixed: token, CSRF (unsafe methods only), account status, global
    permissions, project access. The guard only reads; a read that fails with
    ``StoreUnavailable`` is retried once before surfacing as a server error.
    """

    def __init__(
        self,
        store: AccountLookup,
        tokens: TokenService,
        csrf: CsrfProtector,
        permissions: PermissionEngine,
        projects: ProjectAccessControl,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.csrf = csrf
        self.permissions = permissions
        self.projects = projects
        self.logger = logger

    async def _read(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        for attempt in (1, 2):
            try:
                result = func(*args)
                if inspect.isawaitable(result):
                    result = await result
                return result
            except StoreUnavailable as exc:
                if attempt == 2:
                    self.logger.error("guard_read_failed", operation=operation, error=str(exc))
                    raise ServerError("authorization backend unavailable") from exc
                self.logger.warning("guard_read_retry", operation=operation, error=str(exc))
        raise AssertionError("unreachable")

    async def authorize(self, call: InboundCall) -> Principal:
        claims = self.tokens.verify_access_token(extract_bearer(call.authorization))
        account_id = claims.account_id

        if self.csrf.requires_check(call.method) and not self.csrf.validate(
            account_id, call.csrf_header, call.csrf_cookie
        ):
            self.logger.info("csrf_rejected", account_id=account_id, method=call.method)
            raise ForbiddenError("missing or invalid CSRF token")

        account = await self._read("get_account", self.store.get_account, account_id)
        if not account or not account.is_active:
            raise AuthenticationError("invalid or expired access token")

        granted: FrozenSet[Permission] = await self._read(
            "effective_permissions", self.permissions.effective_permissions, account_id
        )
        missing = call.required_permissions - granted
        if missing:
            self.logger.info(
                "permission_denied",
                account_id=account_id,
                missing=sorted(p.value for p in missing),
            )
            raise ForbiddenError(
                "insufficient permissions",
                detail={"required": sorted(p.value for p in call.required_permissions)},
            )

        project_access: Optional[AccessLevel] = None
        if call.project_id is not None:
            minimum = call.minimum_access or AccessLevel.READ
            project_access = await self._read(
                "project_access",
                self.projects.require_access,
                call.project_id,
                account_id,
                minimum,
            )

        return Principal(
            account_id=account_id,
            permissions=granted,
            project_id=call.project_id,
            project_access=project_access,
        )
