"""Project membership access levels and the last-owner invariant."""

import asyncio

import pytest

from prismflow.service.errors import (
    AccessDeniedError,
    ConflictError,
    LastOwnerViolationError,
    NotFoundError,
    ValidationError,
)
from prismflow.service.projects import AccessLevel, ProjectAccessControl, access_for_role
from prismflow.storage.memory import MemoryStore
from prismflow.storage.models import MembershipRole

PROJECT = "proj-apollo"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def projects(store):
    return ProjectAccessControl(store)


@pytest.fixture
def people(store):
    return {
        name: store.create_account(f"{name}@example.com", name.title(), "x")
        for name in ("owner", "dev", "guest", "outsider")
    }


@pytest.fixture
def project(projects, people):
    async def _setup():
        await projects.create_project(PROJECT, people["owner"].id)
        await projects.add_member(PROJECT, people["owner"].id, people["dev"].id, "member")
        await projects.add_member(PROJECT, people["owner"].id, people["guest"].id, "viewer")

    asyncio.run(_setup())
    return PROJECT


class TestAccessLevels:
    def test_role_mapping_is_ordered(self):
        assert access_for_role(MembershipRole.OWNER) is AccessLevel.ADMIN
        assert access_for_role(MembershipRole.MEMBER) is AccessLevel.WRITE
        assert access_for_role(MembershipRole.VIEWER) is AccessLevel.READ
        assert access_for_role(None) is None
        assert AccessLevel.READ < AccessLevel.WRITE < AccessLevel.ADMIN

    @pytest.mark.asyncio
    async def test_levels_per_member(self, projects, people, project):
        assert await projects.access_level(project, people["owner"].id) is AccessLevel.ADMIN
        assert await projects.access_level(project, people["dev"].id) is AccessLevel.WRITE
        assert await projects.access_level(project, people["guest"].id) is AccessLevel.READ
        assert await projects.access_level(project, people["outsider"].id) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "who, minimum, allowed",
        [
            ("guest", AccessLevel.READ, True),
            ("guest", AccessLevel.WRITE, False),
            ("dev", AccessLevel.WRITE, True),
            ("dev", AccessLevel.ADMIN, False),
            ("owner", AccessLevel.ADMIN, True),
            ("outsider", AccessLevel.READ, False),
        ],
    )
    async def test_minimum_level(self, projects, people, project, who, minimum, allowed):
        if allowed:
            assert await projects.require_access(project, people[who].id, minimum) >= minimum
        else:
            with pytest.raises(AccessDeniedError):
                await projects.require_access(project, people[who].id, minimum)

    @pytest.mark.asyncio
    async def test_require_access_denied(self, projects, people, project):
        with pytest.raises(AccessDeniedError) as exc:
            await projects.require_access(project, people["dev"].id, AccessLevel.ADMIN)
        assert exc.value.status_code == 403
        assert exc.value.error_code == "access_denied"

    @pytest.mark.asyncio
    async def test_unknown_project_denies(self, projects, people):
        with pytest.raises(AccessDeniedError):
            await projects.require_access("no-such-project", people["owner"].id, AccessLevel.READ)


class TestMembershipChanges:
    @pytest.mark.asyncio
    async def test_create_existing_project_conflicts(self, projects, people, project):
        with pytest.raises(ConflictError):
            await projects.create_project(project, people["outsider"].id)

    @pytest.mark.asyncio
    async def test_only_admins_manage_members(self, projects, people, project):
        with pytest.raises(AccessDeniedError):
            await projects.add_member(project, people["dev"].id, people["outsider"].id, "viewer")
        with pytest.raises(AccessDeniedError):
            await projects.remove_member(project, people["dev"].id, people["guest"].id)

    @pytest.mark.asyncio
    async def test_duplicate_member(self, projects, people, project):
        with pytest.raises(ConflictError):
            await projects.add_member(project, people["owner"].id, people["dev"].id, "viewer")

    @pytest.mark.asyncio
    async def test_unknown_role_name(self, projects, people, project):
        with pytest.raises(ValidationError):
            await projects.add_member(project, people["owner"].id, people["outsider"].id, "admin")

    @pytest.mark.asyncio
    async def test_unknown_account(self, projects, people, project):
        with pytest.raises(NotFoundError):
            await projects.add_member(project, people["owner"].id, "ghost", "viewer")

    @pytest.mark.asyncio
    async def test_promote_and_demote(self, projects, people, project):
        await projects.change_member_role(project, people["owner"].id, people["dev"].id, "owner")
        # With two owners the original one may step down
        await projects.change_member_role(
            project, people["dev"].id, people["owner"].id, MembershipRole.VIEWER
        )

        assert await projects.access_level(project, people["owner"].id) is AccessLevel.READ
        assert await projects.access_level(project, people["dev"].id) is AccessLevel.ADMIN

    @pytest.mark.asyncio
    async def test_change_missing_membership(self, projects, people, project):
        with pytest.raises(NotFoundError):
            await projects.change_member_role(
                project, people["owner"].id, people["outsider"].id, "member"
            )

    @pytest.mark.asyncio
    async def test_list_members_requires_read(self, projects, people, project):
        members = await projects.list_members(project, people["guest"].id)
        assert {m.account_id for m in members} == {
            people["owner"].id,
            people["dev"].id,
            people["guest"].id,
        }
        with pytest.raises(AccessDeniedError):
            await projects.list_members(project, people["outsider"].id)


def _snapshot(store, project_id):
    return sorted((m.account_id, m.role) for m in store.list_memberships(project_id))


class TestLastOwner:
    @pytest.mark.asyncio
    async def test_cannot_demote_last_owner(self, projects, store, people, project):
        before = _snapshot(store, project)

        with pytest.raises(LastOwnerViolationError) as exc:
            await projects.change_member_role(
                project, people["owner"].id, people["owner"].id, "member"
            )
        assert exc.value.status_code == 409
        assert exc.value.error_code == "last_owner_violation"
        assert _snapshot(store, project) == before

    @pytest.mark.asyncio
    async def test_cannot_remove_last_owner(self, projects, store, people, project):
        before = _snapshot(store, project)

        with pytest.raises(LastOwnerViolationError):
            await projects.remove_member(project, people["owner"].id, people["owner"].id)
        assert _snapshot(store, project) == before

    @pytest.mark.asyncio
    async def test_last_owner_cannot_leave(self, projects, store, people, project):
        before = _snapshot(store, project)

        with pytest.raises(LastOwnerViolationError):
            await projects.leave_project(project, people["owner"].id)
        assert _snapshot(store, project) == before

    @pytest.mark.asyncio
    async def test_ownership_handover(self, projects, store, people):
        b, c = people["owner"].id, people["dev"].id
        await projects.create_project("handover", b)

        with pytest.raises(LastOwnerViolationError):
            await projects.leave_project("handover", b)
        assert _snapshot(store, "handover") == [(b, MembershipRole.OWNER)]

        await projects.add_member("handover", b, c, "owner")
        await projects.leave_project("handover", b)

        assert _snapshot(store, "handover") == [(c, MembershipRole.OWNER)]

    @pytest.mark.asyncio
    async def test_member_can_leave(self, projects, people, project):
        await projects.leave_project(project, people["guest"].id)

        assert await projects.access_level(project, people["guest"].id) is None

    @pytest.mark.asyncio
    async def test_leave_unknown_project(self, projects, people):
        with pytest.raises(NotFoundError):
            await projects.leave_project("no-such-project", people["guest"].id)

    @pytest.mark.asyncio
    async def test_leave_without_membership(self, projects, people, project):
        with pytest.raises(NotFoundError):
            await projects.leave_project(project, people["outsider"].id)

    @pytest.mark.asyncio
    async def test_concurrent_owner_removals_keep_one(self, projects, store, people, project):
        await projects.change_member_role(project, people["owner"].id, people["dev"].id, "owner")

        results = await asyncio.gather(
            projects.leave_project(project, people["owner"].id),
            projects.leave_project(project, people["dev"].id),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, LastOwnerViolationError)]
        assert len(failures) == 1
        owners = [m for m in store.list_memberships(project) if m.role == MembershipRole.OWNER]
        assert len(owners) == 1
