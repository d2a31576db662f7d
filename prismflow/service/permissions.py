from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol, Tuple, Union

from prismflow.logging import get_logger
from prismflow.service.errors import (
    ConflictError,
    ImmutableRoleError,
    LastAdminViolationError,
    NotFoundError,
    ValidationError,
)
from prismflow.storage.errors import ConstraintViolation
from prismflow.storage.models import Account, Permission, Role

logger = get_logger(__name__)

ADMINISTRATOR = "Administrator"
PROJECT_MANAGER = "Project Manager"
TEAM_MEMBER = "Team Member"
VIEWER = "Viewer"

_ROLE_NAME_MIN = 2
_ROLE_NAME_MAX = 100
_ROLE_DESCRIPTION_MAX = 500


@dataclass(frozen=True)
class RoleDefinition:
    name: str
    description: str
    permissions: FrozenSet[Permission]


SYSTEM_ROLES: Tuple[RoleDefinition, ...] = (
    RoleDefinition(
        ADMINISTRATOR,
        "Full access to all features and settings",
        frozenset(Permission),
    ),
    RoleDefinition(
        PROJECT_MANAGER,
        "Can manage projects, tasks and boards",
        frozenset(
            {
                Permission.PROJECTS_VIEW_OWN,
                Permission.PROJECTS_CREATE,
                Permission.PROJECTS_EDIT,
                Permission.TASKS_VIEW_ALL,
                Permission.TASKS_CREATE,
                Permission.TASKS_EDIT,
                Permission.TASKS_DELETE,
                Permission.TASKS_ASSIGN,
                Permission.TEAMS_VIEW,
                Permission.BOARDS_VIEW,
                Permission.BOARDS_CREATE,
                Permission.BOARDS_EDIT,
                Permission.REPORTS_VIEW,
            }
        ),
    ),
    RoleDefinition(
        TEAM_MEMBER,
        "Can work on assigned projects and tasks",
        frozenset(
            {
                Permission.PROJECTS_VIEW_OWN,
                Permission.TASKS_VIEW_OWN,
                Permission.TASKS_CREATE,
                Permission.TASKS_EDIT,
                Permission.TEAMS_VIEW,
                Permission.BOARDS_VIEW,
            }
        ),
    ),
    RoleDefinition(
        VIEWER,
        "Read-only access to assigned projects",
        frozenset(
            {
                Permission.PROJECTS_VIEW_OWN,
                Permission.TASKS_VIEW_OWN,
                Permission.TEAMS_VIEW,
                Permission.BOARDS_VIEW,
            }
        ),
    ),
)


def parse_permissions(values: Iterable[Union[str, Permission]]) -> FrozenSet[Permission]:
    """Map permission names onto the closed enum, rejecting unknown names."""
    parsed = set()
    unknown: List[str] = []
    for value in values:
        try:
            parsed.add(Permission(value))
        except ValueError:
            unknown.append(str(value))
    if unknown:
        raise ValidationError("unknown permission", detail={"permissions": sorted(unknown)})
    return frozenset(parsed)


class RoleStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def create_role(
        self,
        name: str,
        permissions: Iterable[Permission],
        *,
        description: str = "",
        is_system: bool = False,
    ) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[Iterable[Permission]] = None,
    ) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    def assign_role(self, account_id: str, role_id: str) -> bool: ...

    def unassign_role(self, account_id: str, role_id: str) -> bool: ...

    def list_account_roles(self, account_id: str) -> List[Role]: ...

    def list_role_account_ids(self, role_id: str) -> List[str]: ...


class PermissionEngine:
    """Global role-based permissions.

    Effective permissions are recomputed from the store on every call so a
    role change is visible to the very next request. Mutations that could
    strand the system without an administrator run under ``invariant_lock``
    and are checked against the state they would produce.
    """

    def __init__(self, store: RoleStore) -> None:
        self.store = store
        self.logger = logger
        self.invariant_lock = asyncio.Lock()

    # -- bootstrap ----------------------------------------------------------

    def ensure_system_roles(self) -> Dict[str, Role]:
        roles: Dict[str, Role] = {}
        for definition in SYSTEM_ROLES:
            role = self.store.get_role_by_name(definition.name)
            if role is None:
                try:
                    role = self.store.create_role(
                        definition.name,
                        definition.permissions,
                        description=definition.description,
                        is_system=True,
                    )
                except ConstraintViolation:
                    # Seeded concurrently by another worker
                    role = self.store.get_role_by_name(definition.name)
                    if role is None:
                        raise
                else:
                    self.logger.info("system_role_seeded", role=definition.name)
            roles[definition.name] = role
        return roles

    def system_role(self, name: str) -> Role:
        role = self.store.get_role_by_name(name)
        if role is None or not role.is_system:
            role = self.ensure_system_roles()[name]
        return role

    # -- evaluation ---------------------------------------------------------

    async def effective_permissions(self, account_id: str) -> FrozenSet[Permission]:
        permissions: set[Permission] = set()
        for role in self.store.list_account_roles(account_id):
            permissions.update(role.permissions)
        return frozenset(permissions)

    async def has_permission(self, account_id: str, permission: Union[str, Permission]) -> bool:
        (required,) = parse_permissions([permission])
        return required in await self.effective_permissions(account_id)

    async def roles_for(self, account_id: str) -> List[Role]:
        return self.store.list_account_roles(account_id)

    async def is_admin(self, account_id: str) -> bool:
        return Permission.ADMIN_ACCESS in await self.effective_permissions(account_id)

    # -- last-admin invariant -----------------------------------------------

    def _active_admins(
        self,
        *,
        without_account: Optional[str] = None,
        without_assignment: Optional[Tuple[str, str]] = None,
        without_role: Optional[str] = None,
        role_override: Optional[Tuple[str, FrozenSet[Permission]]] = None,
    ) -> set[str]:
        holders: set[str] = set()
        for role in self.store.list_roles():
            if role.id == without_role:
                continue
            permissions = role.permissions
            if role_override and role_override[0] == role.id:
                permissions = role_override[1]
            if Permission.ADMIN_ACCESS not in permissions:
                continue
            for account_id in self.store.list_role_account_ids(role.id):
                if account_id == without_account:
                    continue
                if without_assignment == (account_id, role.id):
                    continue
                holders.add(account_id)
        active: set[str] = set()
        for account_id in holders:
            account = self.store.get_account(account_id)
            if account and account.is_active:
                active.add(account_id)
        return active

    def has_active_admin(self) -> bool:
        return bool(self._active_admins())

    def ensure_admin_remains(self, **change) -> None:
        """Raise ``LastAdminViolationError`` if ``change`` would remove the last admin.

        ``change`` takes the keyword arguments of ``_active_admins``; callers
        must hold ``invariant_lock``.
        """
        if not self._active_admins():
            return
        if not self._active_admins(**change):
            self.logger.warning("last_admin_violation", **{k: str(v) for k, v in change.items()})
            raise LastAdminViolationError("operation would leave no active administrator")

    # -- role management ----------------------------------------------------

    @staticmethod
    def _validate_name(name: str) -> str:
        cleaned = (name or "").strip()
        if not _ROLE_NAME_MIN <= len(cleaned) <= _ROLE_NAME_MAX:
            raise ValidationError(
                f"role name must be {_ROLE_NAME_MIN}-{_ROLE_NAME_MAX} characters",
                detail={"field": "name"},
            )
        return cleaned

    @staticmethod
    def _validate_description(description: Optional[str]) -> str:
        cleaned = (description or "").strip()
        if len(cleaned) > _ROLE_DESCRIPTION_MAX:
            raise ValidationError(
                f"description must be at most {_ROLE_DESCRIPTION_MAX} characters",
                detail={"field": "description"},
            )
        return cleaned

    @staticmethod
    def _validate_permissions(values: Iterable[Union[str, Permission]]) -> FrozenSet[Permission]:
        permissions = parse_permissions(values)
        if not permissions:
            raise ValidationError(
                "at least one permission is required", detail={"field": "permissions"}
            )
        return permissions

    def _require_role(self, role_id: str) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    async def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    async def get_role(self, role_id: str) -> Role:
        return self._require_role(role_id)

    async def create_role(
        self,
        name: str,
        permissions: Iterable[Union[str, Permission]],
        *,
        description: Optional[str] = None,
    ) -> Role:
        cleaned_name = self._validate_name(name)
        cleaned_description = self._validate_description(description)
        perms = self._validate_permissions(permissions)
        try:
            role = self.store.create_role(cleaned_name, perms, description=cleaned_description)
        except ConstraintViolation as exc:
            raise ConflictError("role name already exists", detail=exc.detail) from exc
        self.logger.info("role_created", role_id=role.id, role=role.name)
        return role

    async def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[Iterable[Union[str, Permission]]] = None,
    ) -> Role:
        async with self.invariant_lock:
            role = self._require_role(role_id)
            if role.is_system:
                raise ImmutableRoleError("system roles cannot be modified")
            cleaned_name = self._validate_name(name) if name is not None else None
            cleaned_description = (
                self._validate_description(description) if description is not None else None
            )
            perms = self._validate_permissions(permissions) if permissions is not None else None
            if perms is not None and Permission.ADMIN_ACCESS not in perms:
                self.ensure_admin_remains(role_override=(role.id, perms))
            try:
                updated = self.store.update_role(
                    role_id,
                    name=cleaned_name,
                    description=cleaned_description,
                    permissions=perms,
                )
            except ConstraintViolation as exc:
                raise ConflictError("role name already exists", detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        self.logger.info("role_updated", role_id=role_id)
        return updated

    async def delete_role(self, role_id: str) -> None:
        async with self.invariant_lock:
            role = self._require_role(role_id)
            if role.is_system:
                raise ImmutableRoleError("system roles cannot be deleted")
            self.ensure_admin_remains(without_role=role_id)
            self.store.delete_role(role_id)
        self.logger.info("role_deleted", role_id=role_id, role=role.name)

    async def assign_role(self, account_id: str, role_id: str) -> bool:
        """Grant ``role_id``; returns False when the assignment already existed."""
        if not self.store.get_account(account_id):
            raise NotFoundError("account not found", detail={"account_id": account_id})
        self._require_role(role_id)
        try:
            created = self.store.assign_role(account_id, role_id)
        except ConstraintViolation as exc:
            raise NotFoundError("account or role not found", detail=exc.detail) from exc
        if created:
            self.logger.info("role_assigned", account_id=account_id, role_id=role_id)
        return created

    async def unassign_role(self, account_id: str, role_id: str) -> bool:
        async with self.invariant_lock:
            self._require_role(role_id)
            if role_id not in {r.id for r in self.store.list_account_roles(account_id)}:
                return False
            self.ensure_admin_remains(without_assignment=(account_id, role_id))
            removed = self.store.unassign_role(account_id, role_id)
        if removed:
            self.logger.info("role_unassigned", account_id=account_id, role_id=role_id)
        return removed
