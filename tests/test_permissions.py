"""Tests for the global permission engine and the last-admin invariant."""

import pytest

from prismflow.service.errors import (
    ConflictError,
    ImmutableRoleError,
    LastAdminViolationError,
    NotFoundError,
    ValidationError,
)
from prismflow.service.permissions import (
    ADMINISTRATOR,
    PROJECT_MANAGER,
    TEAM_MEMBER,
    VIEWER,
    PermissionEngine,
    parse_permissions,
)
from prismflow.storage.memory import MemoryStore
from prismflow.storage.models import Permission


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def engine(store):
    engine = PermissionEngine(store)
    engine.ensure_system_roles()
    return engine


@pytest.fixture
def admin(store, engine):
    account = store.create_account("root@example.com", "Root", "x")
    store.assign_role(account.id, engine.system_role(ADMINISTRATOR).id)
    return account


@pytest.fixture
def member(store, engine):
    account = store.create_account("member@example.com", "Member", "x")
    store.assign_role(account.id, engine.system_role(TEAM_MEMBER).id)
    return account


class TestSystemRoles:
    def test_seeding_is_idempotent(self, store, engine):
        before = {role.name: role.id for role in store.list_roles()}
        engine.ensure_system_roles()

        assert {role.name: role.id for role in store.list_roles()} == before
        assert set(before) == {ADMINISTRATOR, PROJECT_MANAGER, TEAM_MEMBER, VIEWER}

    def test_administrator_holds_every_permission(self, engine):
        assert engine.system_role(ADMINISTRATOR).permissions == frozenset(Permission)

    @pytest.mark.asyncio
    async def test_system_roles_cannot_be_updated(self, engine):
        viewer = engine.system_role(VIEWER)

        with pytest.raises(ImmutableRoleError) as exc:
            await engine.update_role(viewer.id, name="Readers")
        assert exc.value.status_code == 403
        assert exc.value.error_code == "immutable_role"

    @pytest.mark.asyncio
    async def test_system_roles_cannot_be_deleted(self, engine):
        with pytest.raises(ImmutableRoleError):
            await engine.delete_role(engine.system_role(PROJECT_MANAGER).id)


class TestEvaluation:
    @pytest.mark.asyncio
    async def test_union_of_roles(self, store, engine, member):
        auditor = await engine.create_role("Auditor", ["reports:view", "admin:logs"])
        await engine.assign_role(member.id, auditor.id)

        effective = await engine.effective_permissions(member.id)
        assert Permission.ADMIN_LOGS in effective
        assert Permission.TASKS_CREATE in effective
        assert Permission.USERS_VIEW not in effective

    @pytest.mark.asyncio
    async def test_role_change_visible_immediately(self, engine, member):
        role = await engine.create_role("Reporter", ["reports:view"])
        await engine.assign_role(member.id, role.id)
        assert await engine.has_permission(member.id, "reports:view")

        await engine.update_role(role.id, permissions=["reports:export"])

        assert not await engine.has_permission(member.id, "reports:view")
        assert await engine.has_permission(member.id, Permission.REPORTS_EXPORT)

    @pytest.mark.asyncio
    async def test_account_without_roles_has_nothing(self, store, engine):
        account = store.create_account("plain@example.com", "Plain", "x")
        assert await engine.effective_permissions(account.id) == frozenset()

    @pytest.mark.asyncio
    async def test_unknown_permission_name(self, engine, member):
        with pytest.raises(ValidationError):
            await engine.has_permission(member.id, "projects:launch")

    def test_parse_permissions_reports_all_unknown(self):
        with pytest.raises(ValidationError) as exc:
            parse_permissions(["users:view", "zzz", "aaa"])
        assert exc.value.detail == {"permissions": ["aaa", "zzz"]}


class TestRoleManagement:
    @pytest.mark.asyncio
    async def test_create_role_validates(self, engine):
        with pytest.raises(ValidationError):
            await engine.create_role("X", ["users:view"])
        with pytest.raises(ValidationError):
            await engine.create_role("Empty", [])
        with pytest.raises(ValidationError):
            await engine.create_role("Bogus", ["not:real"])

    @pytest.mark.asyncio
    async def test_duplicate_role_name(self, engine):
        await engine.create_role("Support", ["users:view"])

        with pytest.raises(ConflictError):
            await engine.create_role("support", ["users:view"])

    @pytest.mark.asyncio
    async def test_assign_is_idempotent(self, engine, member):
        role = await engine.create_role("Support", ["users:view"])

        assert await engine.assign_role(member.id, role.id) is True
        assert await engine.assign_role(member.id, role.id) is False
        assert [r.id for r in await engine.roles_for(member.id)].count(role.id) == 1

    @pytest.mark.asyncio
    async def test_assign_unknown_role_or_account(self, engine, member):
        with pytest.raises(NotFoundError):
            await engine.assign_role(member.id, "missing-role")
        role = await engine.create_role("Support", ["users:view"])
        with pytest.raises(NotFoundError):
            await engine.assign_role("missing-account", role.id)

    @pytest.mark.asyncio
    async def test_unassign_missing_assignment(self, engine, member):
        role = await engine.create_role("Support", ["users:view"])
        assert await engine.unassign_role(member.id, role.id) is False

    @pytest.mark.asyncio
    async def test_delete_custom_role_drops_assignments(self, store, engine, member):
        role = await engine.create_role("Support", ["users:view"])
        await engine.assign_role(member.id, role.id)

        await engine.delete_role(role.id)

        assert store.get_role(role.id) is None
        assert not await engine.has_permission(member.id, "users:view")


class TestLastAdmin:
    @pytest.mark.asyncio
    async def test_cannot_unassign_last_admin(self, engine, admin):
        with pytest.raises(LastAdminViolationError) as exc:
            await engine.unassign_role(admin.id, engine.system_role(ADMINISTRATOR).id)
        assert exc.value.status_code == 409
        assert await engine.is_admin(admin.id)

    @pytest.mark.asyncio
    async def test_unassign_allowed_with_second_admin(self, store, engine, admin, member):
        admin_role = engine.system_role(ADMINISTRATOR)
        await engine.assign_role(member.id, admin_role.id)

        assert await engine.unassign_role(admin.id, admin_role.id) is True
        assert not await engine.is_admin(admin.id)

    @pytest.mark.asyncio
    async def test_inactive_admin_does_not_count(self, store, engine, admin, member):
        admin_role = engine.system_role(ADMINISTRATOR)
        await engine.assign_role(member.id, admin_role.id)
        store.set_account_active(member.id, False)

        with pytest.raises(LastAdminViolationError):
            await engine.unassign_role(admin.id, admin_role.id)

    @pytest.mark.asyncio
    async def test_custom_admin_role_counts(self, engine, admin, member):
        deputy = await engine.create_role("Deputy", ["admin:access"])
        await engine.assign_role(member.id, deputy.id)

        await engine.unassign_role(admin.id, engine.system_role(ADMINISTRATOR).id)

        assert engine.has_active_admin()

    @pytest.mark.asyncio
    async def test_cannot_strip_admin_access_from_only_admin_role(self, engine, member):
        deputy = await engine.create_role("Deputy", ["admin:access"])
        await engine.assign_role(member.id, deputy.id)

        with pytest.raises(LastAdminViolationError):
            await engine.update_role(deputy.id, permissions=["users:view"])
        with pytest.raises(LastAdminViolationError):
            await engine.delete_role(deputy.id)

    @pytest.mark.asyncio
    async def test_no_admins_means_nothing_to_protect(self, store, engine, member):
        role = await engine.create_role("Support", ["users:view"])
        await engine.assign_role(member.id, role.id)

        assert await engine.unassign_role(member.id, role.id) is True
