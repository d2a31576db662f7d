from __future__ import annotations

import asyncio
from enum import IntEnum
from typing import List, Optional, Protocol, Union

from prismflow.logging import get_logger
from prismflow.service.errors import (
    AccessDeniedError,
    ConflictError,
    LastOwnerViolationError,
    NotFoundError,
    ValidationError,
)
from prismflow.storage.errors import ConstraintViolation
from prismflow.storage.models import Account, MembershipRole, ProjectMembership

logger = get_logger(__name__)


class AccessLevel(IntEnum):
    READ = 1
    WRITE = 2
    ADMIN = 3


_ROLE_ACCESS = {
    MembershipRole.OWNER: AccessLevel.ADMIN,
    MembershipRole.MEMBER: AccessLevel.WRITE,
    MembershipRole.VIEWER: AccessLevel.READ,
}


def access_for_role(role: Optional[MembershipRole]) -> Optional[AccessLevel]:
    if role is None:
        return None
    return _ROLE_ACCESS[MembershipRole(role)]


def parse_membership_role(value: Union[str, MembershipRole]) -> MembershipRole:
    try:
        return MembershipRole(value)
    except ValueError as exc:
        raise ValidationError(
            "unknown membership role", detail={"role": str(value)}
        ) from exc


class MembershipStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def add_membership(
        self, project_id: str, account_id: str, role: MembershipRole
    ) -> ProjectMembership: ...

    def get_membership(self, project_id: str, account_id: str) -> Optional[ProjectMembership]: ...

    def list_memberships(self, project_id: str) -> List[ProjectMembership]: ...

    def update_membership_role(
        self, project_id: str, account_id: str, role: MembershipRole
    ) -> Optional[ProjectMembership]: ...

    def remove_membership(self, project_id: str, account_id: str) -> bool: ...


class ProjectAccessControl:
    """Per-project membership roles mapped onto ordered access levels.

    A project is known only through its memberships; one with no members is
    treated as nonexistent. Membership changes require the actor to hold
    ``AccessLevel.ADMIN`` and never leave a project without an owner.
    """

    def __init__(self, store: MembershipStore) -> None:
        self.store = store
        self.logger = logger
        self._membership_lock = asyncio.Lock()

    async def membership_role(self, project_id: str, account_id: str) -> Optional[MembershipRole]:
        membership = self.store.get_membership(project_id, account_id)
        return membership.role if membership else None

    async def access_level(self, project_id: str, account_id: str) -> Optional[AccessLevel]:
        return access_for_role(await self.membership_role(project_id, account_id))

    async def require_access(
        self, project_id: str, account_id: str, minimum: AccessLevel
    ) -> AccessLevel:
        level = await self.access_level(project_id, account_id)
        if level is None or level < minimum:
            self.logger.info(
                "project_access_denied",
                project_id=project_id,
                account_id=account_id,
                required=minimum.name,
                granted=level.name if level else None,
            )
            raise AccessDeniedError(
                "insufficient project access",
                detail={"project_id": project_id, "required": minimum.name.lower()},
            )
        return level

    def _owner_count(self, project_id: str, *, excluding: Optional[str] = None) -> int:
        return sum(
            1
            for m in self.store.list_memberships(project_id)
            if m.role == MembershipRole.OWNER and m.account_id != excluding
        )

    def _require_project(self, project_id: str) -> List[ProjectMembership]:
        members = self.store.list_memberships(project_id)
        if not members:
            raise NotFoundError("project not found", detail={"project_id": project_id})
        return members

    async def create_project(self, project_id: str, owner_id: str) -> ProjectMembership:
        """Install ``owner_id`` as the first owner of a new project."""
        if not self.store.get_account(owner_id):
            raise NotFoundError("account not found", detail={"account_id": owner_id})
        async with self._membership_lock:
            if self.store.list_memberships(project_id):
                raise ConflictError("project already exists", detail={"project_id": project_id})
            try:
                membership = self.store.add_membership(project_id, owner_id, MembershipRole.OWNER)
            except ConstraintViolation as exc:
                raise ConflictError("project already exists", detail=exc.detail) from exc
        self.logger.info("project_created", project_id=project_id, owner_id=owner_id)
        return membership

    async def list_members(self, project_id: str, actor_id: str) -> List[ProjectMembership]:
        await self.require_access(project_id, actor_id, AccessLevel.READ)
        return self.store.list_memberships(project_id)

    async def add_member(
        self,
        project_id: str,
        actor_id: str,
        account_id: str,
        role: Union[str, MembershipRole],
    ) -> ProjectMembership:
        membership_role = parse_membership_role(role)
        await self.require_access(project_id, actor_id, AccessLevel.ADMIN)
        if not self.store.get_account(account_id):
            raise NotFoundError("account not found", detail={"account_id": account_id})
        try:
            membership = self.store.add_membership(project_id, account_id, membership_role)
        except ConstraintViolation as exc:
            raise ConflictError("account is already a member", detail=exc.detail) from exc
        self.logger.info(
            "project_member_added",
            project_id=project_id,
            account_id=account_id,
            role=membership_role.value,
            actor_id=actor_id,
        )
        return membership

    async def change_member_role(
        self,
        project_id: str,
        actor_id: str,
        account_id: str,
        role: Union[str, MembershipRole],
    ) -> ProjectMembership:
        membership_role = parse_membership_role(role)
        await self.require_access(project_id, actor_id, AccessLevel.ADMIN)
        async with self._membership_lock:
            current = self.store.get_membership(project_id, account_id)
            if not current:
                raise NotFoundError(
                    "membership not found",
                    detail={"project_id": project_id, "account_id": account_id},
                )
            if (
                current.role == MembershipRole.OWNER
                and membership_role != MembershipRole.OWNER
                and self._owner_count(project_id, excluding=account_id) == 0
            ):
                raise LastOwnerViolationError(
                    "project must keep at least one owner", detail={"project_id": project_id}
                )
            updated = self.store.update_membership_role(project_id, account_id, membership_role)
        if updated is None:
            raise NotFoundError("membership not found", detail={"project_id": project_id})
        self.logger.info(
            "project_member_role_changed",
            project_id=project_id,
            account_id=account_id,
            role=membership_role.value,
            actor_id=actor_id,
        )
        return updated

    async def _remove(self, project_id: str, account_id: str) -> None:
        async with self._membership_lock:
            current = self.store.get_membership(project_id, account_id)
            if not current:
                raise NotFoundError(
                    "membership not found",
                    detail={"project_id": project_id, "account_id": account_id},
                )
            if (
                current.role == MembershipRole.OWNER
                and self._owner_count(project_id, excluding=account_id) == 0
            ):
                raise LastOwnerViolationError(
                    "project must keep at least one owner", detail={"project_id": project_id}
                )
            self.store.remove_membership(project_id, account_id)

    async def remove_member(self, project_id: str, actor_id: str, account_id: str) -> None:
        await self.require_access(project_id, actor_id, AccessLevel.ADMIN)
        await self._remove(project_id, account_id)
        self.logger.info(
            "project_member_removed",
            project_id=project_id,
            account_id=account_id,
            actor_id=actor_id,
        )

    async def leave_project(self, project_id: str, account_id: str) -> None:
        self._require_project(project_id)
        await self._remove(project_id, account_id)
        self.logger.info("project_left", project_id=project_id, account_id=account_id)
