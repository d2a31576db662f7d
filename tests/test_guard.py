"""Request guard ordering, CSRF binding and store-failure handling."""

from datetime import timedelta

import pytest

from prismflow.config import Settings
from prismflow.service.csrf import CsrfProtector
from prismflow.service.errors import (
    AccessDeniedError,
    AuthenticationError,
    ForbiddenError,
    ServerError,
)
from prismflow.service.guard import InboundCall, RequestGuard, extract_bearer
from prismflow.service.permissions import ADMINISTRATOR, TEAM_MEMBER, PermissionEngine
from prismflow.service.projects import AccessLevel, ProjectAccessControl
from prismflow.service.tokens import TokenService
from prismflow.storage.errors import StoreUnavailable
from prismflow.storage.memory import MemoryStore
from prismflow.storage.models import Permission

SECRET = "unit-test-secret-for-request-guard-0123456789"


class FlakyLookup:
    """Account lookup that fails a configurable number of times first."""

    def __init__(self, store, failures):
        self.store = store
        self.failures = failures
        self.calls = 0

    def get_account(self, account_id):
        self.calls += 1
        if self.calls <= self.failures:
            raise StoreUnavailable("connection reset")
        return self.store.get_account(account_id)


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET)


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key=SECRET)


@pytest.fixture
def parts(store, settings):
    permissions = PermissionEngine(store)
    permissions.ensure_system_roles()
    return {
        "tokens": TokenService(store, settings),
        "csrf": CsrfProtector(settings),
        "permissions": permissions,
        "projects": ProjectAccessControl(store),
    }


@pytest.fixture
def guard(store, parts):
    return RequestGuard(store, **parts)


@pytest.fixture
def member(store, parts):
    account = store.create_account("dana@example.com", "Dana", "x")
    store.assign_role(account.id, parts["permissions"].system_role(TEAM_MEMBER).id)
    return account


def _call(parts, account, method="POST", **overrides):
    token, _ = parts["tokens"].issue_access_token(account)
    csrf = parts["csrf"].issue(account.id)
    values = {
        "method": method,
        "authorization": f"Bearer {token}",
        "csrf_header": csrf,
        "csrf_cookie": csrf,
    }
    values.update(overrides)
    return InboundCall(**values)


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header, expected",
        [
            ("Bearer abc", "abc"),
            ("bearer  abc ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("Bearer   ", None),
            ("", None),
            (None, None),
        ],
    )
    def test_parsing(self, header, expected):
        assert extract_bearer(header) == expected


class TestCsrfProtector:
    def test_issued_token_validates_for_owner_only(self, settings):
        csrf = CsrfProtector(settings)
        token = csrf.issue("acct-1")

        assert csrf.validate("acct-1", token, token)
        assert not csrf.validate("acct-2", token, token)

    def test_header_must_match_cookie(self, settings):
        csrf = CsrfProtector(settings)
        first, second = csrf.issue("acct-1"), csrf.issue("acct-1")

        assert not csrf.validate("acct-1", first, second)
        assert not csrf.validate("acct-1", None, first)
        assert not csrf.validate("acct-1", first, None)

    def test_forged_token_rejected(self, settings):
        csrf = CsrfProtector(settings)
        assert not csrf.validate("acct-1", "nonce.deadbeef", "nonce.deadbeef")
        assert not csrf.validate("acct-1", "no-separator", "no-separator")

    @pytest.mark.parametrize(
        "method, required",
        [("GET", False), ("head", False), ("OPTIONS", False), ("POST", True), ("delete", True)],
    )
    def test_safe_methods(self, method, required):
        assert CsrfProtector.requires_check(method) is required


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_valid_request(self, guard, parts, member):
        call = _call(parts, member, required_permissions=frozenset({Permission.TASKS_CREATE}))

        principal = await guard.authorize(call)

        assert principal.account_id == member.id
        assert principal.can("tasks:create")
        assert not principal.can(Permission.USERS_VIEW)

    @pytest.mark.asyncio
    async def test_missing_token(self, guard, parts, member):
        with pytest.raises(AuthenticationError):
            await guard.authorize(_call(parts, member, authorization=None))

    @pytest.mark.asyncio
    async def test_expired_token_wins_over_valid_csrf(self, guard, parts, member):
        call = _call(parts, member)
        parts["tokens"]._now = lambda: TokenService._now(parts["tokens"]) + timedelta(hours=1)

        with pytest.raises(AuthenticationError) as exc:
            await guard.authorize(call)
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_csrf_mismatch_forbidden(self, guard, parts, member):
        call = _call(parts, member, csrf_cookie=parts["csrf"].issue(member.id))

        with pytest.raises(ForbiddenError) as exc:
            await guard.authorize(call)
        assert exc.value.error_code == "forbidden"

    @pytest.mark.asyncio
    async def test_csrf_from_other_account_forbidden(self, guard, store, parts, member):
        other = store.create_account("eve@example.com", "Eve", "x")
        stolen = parts["csrf"].issue(other.id)

        with pytest.raises(ForbiddenError):
            await guard.authorize(_call(parts, member, csrf_header=stolen, csrf_cookie=stolen))

    @pytest.mark.asyncio
    async def test_safe_method_skips_csrf(self, guard, parts, member):
        call = _call(parts, member, method="GET", csrf_header=None, csrf_cookie=None)

        principal = await guard.authorize(call)
        assert principal.account_id == member.id

    @pytest.mark.asyncio
    async def test_inactive_account_unauthorized(self, guard, store, parts, member):
        call = _call(parts, member)
        store.set_account_active(member.id, False)

        with pytest.raises(AuthenticationError) as exc:
            await guard.authorize(call)
        assert exc.value.error_code == "unauthorized"

    @pytest.mark.asyncio
    async def test_deleted_account_unauthorized(self, guard, store, parts, member):
        call = _call(parts, member)
        store.delete_account(member.id)

        with pytest.raises(AuthenticationError):
            await guard.authorize(call)

    @pytest.mark.asyncio
    async def test_missing_permission_forbidden(self, guard, parts, member):
        call = _call(
            parts,
            member,
            required_permissions=frozenset({Permission.TASKS_CREATE, Permission.USERS_DELETE}),
        )

        with pytest.raises(ForbiddenError) as exc:
            await guard.authorize(call)
        assert exc.value.detail == {"required": ["tasks:create", "users:delete"]}

    @pytest.mark.asyncio
    async def test_role_change_applies_to_next_request(self, guard, store, parts, member):
        required = frozenset({Permission.USERS_VIEW})
        with pytest.raises(ForbiddenError):
            await guard.authorize(_call(parts, member, required_permissions=required))

        store.assign_role(member.id, parts["permissions"].system_role(ADMINISTRATOR).id)

        principal = await guard.authorize(_call(parts, member, required_permissions=required))
        assert principal.can(Permission.USERS_VIEW)


class TestProjectAccess:
    @pytest.mark.asyncio
    async def test_project_access_granted(self, guard, parts, member):
        await parts["projects"].create_project("board-1", member.id)
        call = _call(parts, member, project_id="board-1", minimum_access=AccessLevel.ADMIN)

        principal = await guard.authorize(call)

        assert principal.project_id == "board-1"
        assert principal.project_access is AccessLevel.ADMIN

    @pytest.mark.asyncio
    async def test_project_access_defaults_to_read(self, guard, store, parts, member):
        owner = store.create_account("olga@example.com", "Olga", "x")
        await parts["projects"].create_project("board-2", owner.id)
        await parts["projects"].add_member("board-2", owner.id, member.id, "viewer")

        principal = await guard.authorize(_call(parts, member, project_id="board-2"))
        assert principal.project_access is AccessLevel.READ

    @pytest.mark.asyncio
    async def test_non_member_denied(self, guard, parts, member):
        call = _call(parts, member, project_id="someone-elses")

        with pytest.raises(AccessDeniedError) as exc:
            await guard.authorize(call)
        assert exc.value.error_code == "access_denied"

    @pytest.mark.asyncio
    async def test_permission_checked_before_project(self, guard, parts, member):
        call = _call(
            parts,
            member,
            required_permissions=frozenset({Permission.ADMIN_SETTINGS}),
            project_id="someone-elses",
        )

        with pytest.raises(ForbiddenError) as exc:
            await guard.authorize(call)
        assert exc.value.error_code == "forbidden"


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_single_failure_is_retried(self, store, parts, member):
        lookup = FlakyLookup(store, failures=1)
        guard = RequestGuard(lookup, **parts)

        principal = await guard.authorize(_call(parts, member))

        assert principal.account_id == member.id
        assert lookup.calls == 2

    @pytest.mark.asyncio
    async def test_repeated_failure_is_server_error(self, store, parts, member):
        lookup = FlakyLookup(store, failures=2)
        guard = RequestGuard(lookup, **parts)

        with pytest.raises(ServerError) as exc:
            await guard.authorize(_call(parts, member))
        assert exc.value.status_code == 500
        assert lookup.calls == 2
