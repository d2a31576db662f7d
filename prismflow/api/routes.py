from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from prismflow.api.schemas import (
    AccountCreateRequest,
    AccountPermissionsResponse,
    AccountListResponse,
    AccountResponse,
    AuthResponse,
    CsrfTokenResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MeResponse,
    MembershipListResponse,
    MembershipRequest,
    MembershipResponse,
    MembershipRoleRequest,
    MFADisableRequest,
    MFAEnrollResponse,
    MFAStatusResponse,
    MFAVerifyRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordResetResponse,
    ProfileUpdateRequest,
    ProjectAccessResponse,
    ProjectCreateRequest,
    RegisterRequest,
    RoleAssignmentResponse,
    RoleCreateRequest,
    RoleListResponse,
    RoleResponse,
    RoleUpdateRequest,
    SetupStatusResponse,
    TokenRefreshRequest,
)
from prismflow.logging import get_logger
from prismflow.service.auth import LoginResult
from prismflow.service.errors import ForbiddenError, RateLimitedError, SecondFactorInvalidError
from prismflow.service.guard import InboundCall, Principal
from prismflow.service.projects import AccessLevel
from prismflow.service.runtime import check_rate_limit, get_runtime
from prismflow.storage.models import Permission

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_ID_PATTERN = r"^[A-Za-z0-9_.:-]+$"


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_auth_rate_limit(runtime, request: Request, scope: str) -> None:
    """Throttle credential-guessing routes per client address."""
    allowed, _remaining, reset_after = await check_rate_limit(
        runtime,
        f"{scope}:{_client_ip(request)}",
        runtime.settings.auth_rate_limit_per_window,
        runtime.settings.auth_rate_limit_window_seconds,
    )
    if not allowed:
        logger.warning("auth_rate_limited", scope=scope)
        raise RateLimitedError(
            "too many attempts, please try again later", retry_after=reset_after
        )


def _set_csrf_cookie(response: Response, token: str) -> None:
    settings = get_runtime().settings
    # Readable by scripts so the client can echo it back in the header
    response.set_cookie(
        settings.csrf_cookie_name,
        token,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


async def _account_payload(runtime, account) -> AccountResponse:
    roles = await runtime.permissions.roles_for(account.id)
    return AccountResponse.from_account(account, roles)


async def _auth_envelope(runtime, result: LoginResult, response: Response) -> Envelope:
    _set_csrf_cookie(response, result.csrf_token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            account_id=result.account.id,
            account=await _account_payload(runtime, result.account),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
            access_expires_at=result.tokens.access_expires_at,
            refresh_expires_at=result.tokens.refresh_expires_at,
            csrf_token=result.csrf_token,
            requires_second_factor=False,
        ),
    )


def require(*permissions: Permission, project_access: Optional[AccessLevel] = None):
    """Build a dependency that runs the request guard for a route.

    ``permissions`` are global permissions that must all be held;
    ``project_access`` makes the call project-scoped on the ``project_id``
    path parameter.
    """
    required = frozenset(permissions)

    async def _dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> Principal:
        runtime = get_runtime()
        call = InboundCall(
            method=request.method,
            authorization=authorization,
            csrf_header=request.headers.get(runtime.settings.csrf_header_name),
            csrf_cookie=request.cookies.get(runtime.settings.csrf_cookie_name),
            required_permissions=required,
            project_id=request.path_params.get("project_id") if project_access else None,
            minimum_access=project_access,
        )
        return await runtime.guard.authorize(call)

    return _dependency


get_principal = require()


# -- auth -------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and start a session.

    The first account registered on an empty system becomes an administrator.

    Raises:
        403: If signup is disabled and an administrator already exists
        409: If the email is already registered
        429: If the client exceeded the auth rate limit
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request, "register")
    account = await runtime.accounts.register(body.email, body.password, body.display_name)
    result = await runtime.auth.start_session(account)
    return await _auth_envelope(runtime, result, response)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password, plus a TOTP code when enrolled.

    A correct password for an account with an enabled second factor and no
    code answers 401 ``second_factor_required`` whose details carry
    ``requires_second_factor`` and the ``account_id``; the client resubmits
    with ``mfa_code``.

    Raises:
        401: ``invalid_credential``, ``second_factor_required`` or
            ``second_factor_invalid``
        429: If the client exceeded the auth rate limit
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request, "login")
    result = await runtime.auth.login(body.email, body.password, body.mfa_code)
    return await _auth_envelope(runtime, result, response)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return await _auth_envelope(runtime, result, response)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    revoked = await runtime.auth.logout(
        principal.account_id, body.refresh_token if body else None
    )
    response.delete_cookie(runtime.settings.csrf_cookie_name, path="/")
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    count = await runtime.auth.logout_all(principal.account_id)
    response.delete_cookie(runtime.settings.csrf_cookie_name, path="/")
    return Envelope(status="ok", data={"revoked": count})


@router.get("/auth/csrf", response_model=Envelope, tags=["auth"])
async def issue_csrf_token(response: Response, principal: Principal = Depends(get_principal)):
    """Rotate the CSRF token for the authenticated account."""
    token = get_runtime().csrf.issue(principal.account_id)
    _set_csrf_cookie(response, token)
    return Envelope(status="ok", data=CsrfTokenResponse(csrf_token=token))


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: Principal = Depends(get_principal)
):
    """Change the password; every outstanding refresh credential is revoked."""
    runtime = get_runtime()
    await runtime.accounts.change_password(
        principal.account_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"changed": True})


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(body: PasswordResetRequest, request: Request):
    """Start a password reset.

    The response is identical whether or not the email is registered. The
    token is only echoed back in TEST_MODE; otherwise it is delivered out of
    band.
    """
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request, "password-reset")
    token = await runtime.accounts.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data=PasswordResetResponse(
            requested=True,
            reset_token=token if runtime.settings.test_mode else None,
        ),
    )


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await _enforce_auth_rate_limit(runtime, request, "password-reset")
    await runtime.accounts.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"reset": True})


@router.post("/auth/mfa/enroll", response_model=Envelope, tags=["auth"])
async def mfa_enroll(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    account = await runtime.accounts.get_account(principal.account_id)
    enrollment = await runtime.mfa.begin_enrollment(account)
    return Envelope(
        status="ok",
        data=MFAEnrollResponse(
            secret=enrollment.secret, provisioning_uri=enrollment.provisioning_uri
        ),
    )


@router.post("/auth/mfa/confirm", response_model=Envelope, tags=["auth"])
async def mfa_confirm(body: MFAVerifyRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    account = await runtime.accounts.get_account(principal.account_id)
    if not await runtime.mfa.confirm_enrollment(account, body.code):
        raise SecondFactorInvalidError("invalid second factor code")
    return Envelope(status="ok", data=MFAStatusResponse(enabled=True, configured=True))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["auth"])
async def mfa_disable(body: MFADisableRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    account = await runtime.accounts.get_account(principal.account_id)
    await runtime.mfa.disable(account, body.code)
    return Envelope(status="ok", data=MFAStatusResponse(enabled=False, configured=False))


@router.get("/auth/mfa/status", response_model=Envelope, tags=["auth"])
async def mfa_status(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    account = await runtime.accounts.get_account(principal.account_id)
    status = await runtime.mfa.status(account)
    return Envelope(status="ok", data=MFAStatusResponse(**status))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    account = await runtime.accounts.get_account(principal.account_id)
    roles = await runtime.permissions.roles_for(account.id)
    base = AccountResponse.from_account(account, roles)
    return Envelope(
        status="ok",
        data=MeResponse(
            **base.model_dump(),
            permissions=sorted(p.value for p in principal.permissions),
        ),
    )


@router.patch("/me", response_model=Envelope, tags=["auth"])
async def update_me(body: ProfileUpdateRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    account = await runtime.accounts.update_profile(
        principal.account_id, display_name=body.display_name, email=body.email
    )
    return Envelope(status="ok", data=await _account_payload(runtime, account))


@router.get("/setup/status", response_model=Envelope, tags=["auth"])
async def setup_status():
    """Report whether the system still needs its first administrator."""
    runtime = get_runtime()
    runtime.permissions.ensure_system_roles()
    needs_setup = not runtime.permissions.has_active_admin()
    return Envelope(status="ok", data=SetupStatusResponse(needs_setup=needs_setup))


# -- admin: roles -----------------------------------------------------------


@router.get("/admin/roles", response_model=Envelope, tags=["admin"])
async def admin_list_roles(_: Principal = Depends(require(Permission.ADMIN_ROLES))):
    roles = await get_runtime().permissions.list_roles()
    return Envelope(
        status="ok", data=RoleListResponse(items=[RoleResponse.from_role(r) for r in roles])
    )


@router.post("/admin/roles", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_role(
    body: RoleCreateRequest, principal: Principal = Depends(require(Permission.ADMIN_ROLES))
):
    role = await get_runtime().permissions.create_role(
        body.name, body.permissions, description=body.description
    )
    logger.info("admin_role_created", actor_id=principal.account_id, role_id=role.id)
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.get("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def admin_get_role(
    role_id: str = Path(..., max_length=64),
    _: Principal = Depends(require(Permission.ADMIN_ROLES)),
):
    role = await get_runtime().permissions.get_role(role_id)
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.patch("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def admin_update_role(
    body: RoleUpdateRequest,
    role_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require(Permission.ADMIN_ROLES)),
):
    role = await get_runtime().permissions.update_role(
        role_id,
        name=body.name,
        description=body.description,
        permissions=body.permissions,
    )
    logger.info("admin_role_updated", actor_id=principal.account_id, role_id=role_id)
    return Envelope(status="ok", data=RoleResponse.from_role(role))


@router.delete("/admin/roles/{role_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_role(
    role_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require(Permission.ADMIN_ROLES)),
):
    await get_runtime().permissions.delete_role(role_id)
    logger.info("admin_role_deleted", actor_id=principal.account_id, role_id=role_id)
    return Envelope(status="ok", data={"deleted": True})


# -- admin: accounts --------------------------------------------------------


@router.get("/admin/accounts", response_model=Envelope, tags=["admin"])
async def admin_list_accounts(
    limit: int = Query(100, ge=1, le=500),
    _: Principal = Depends(require(Permission.USERS_VIEW)),
):
    runtime = get_runtime()
    accounts = await runtime.accounts.list_accounts(limit=limit)
    items = [await _account_payload(runtime, a) for a in accounts]
    return Envelope(status="ok", data=AccountListResponse(items=items))


@router.post("/admin/accounts", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_account(
    body: AccountCreateRequest,
    principal: Principal = Depends(require(Permission.USERS_CREATE)),
):
    runtime = get_runtime()
    if body.role_ids and not principal.can(Permission.USERS_MANAGE_ROLES):
        raise ForbiddenError(
            "insufficient permissions",
            detail={"required": [Permission.USERS_MANAGE_ROLES.value]},
        )
    account = await runtime.accounts.provision_account(
        body.email, body.password, body.display_name, role_ids=body.role_ids
    )
    logger.info("admin_account_created", actor_id=principal.account_id, account_id=account.id)
    return Envelope(status="ok", data=await _account_payload(runtime, account))


@router.get("/admin/accounts/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_get_account(
    account_id: str = Path(..., max_length=64),
    _: Principal = Depends(require(Permission.USERS_VIEW)),
):
    runtime = get_runtime()
    account = await runtime.accounts.get_account(account_id)
    return Envelope(status="ok", data=await _account_payload(runtime, account))


@router.patch("/admin/accounts/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_update_account(
    body: ProfileUpdateRequest,
    account_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require(Permission.USERS_EDIT)),
):
    runtime = get_runtime()
    account = await runtime.accounts.update_profile(
        account_id, display_name=body.display_name, email=body.email
    )
    logger.info("admin_account_updated", actor_id=principal.account_id, account_id=account_id)
    return Envelope(status="ok", data=await _account_payload(runtime, account))


@router.get("/admin/accounts/{account_id}/permissions", response_model=Envelope, tags=["admin"])
async def admin_get_account_permissions(
    account_id: str = Path(..., max_length=64),
    _: Principal = Depends(require(Permission.USERS_VIEW)),
):
    runtime = get_runtime()
    account = await runtime.accounts.get_account(account_id)
    roles = await runtime.permissions.roles_for(account.id)
    permissions = await runtime.permissions.effective_permissions(account.id)
    return Envelope(
        status="ok",
        data=AccountPermissionsResponse(
            account_id=account.id,
            roles=[role.name for role in roles],
            permissions=sorted(p.value for p in permissions),
        ),
    )


@router.post("/admin/accounts/{account_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_account(
    account_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require(Permission.USERS_EDIT)),
):
    runtime = get_runtime()
    account = await runtime.accounts.deactivate_account(account_id)
    logger.info("admin_account_deactivated", actor_id=principal.account_id, account_id=account_id)
    return Envelope(status="ok", data=await _account_payload(runtime, account))


@router.post("/admin/accounts/{account_id}/reactivate", response_model=Envelope, tags=["admin"])
async def admin_reactivate_account(
    account_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require(Permission.USERS_EDIT)),
):
    runtime = get_runtime()
    account = await runtime.accounts.reactivate_account(account_id)
    logger.info("admin_account_reactivated", actor_id=principal.account_id, account_id=account_id)
    return Envelope(status="ok", data=await _account_payload(runtime, account))


@router.delete("/admin/accounts/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_account(
    account_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require(Permission.USERS_DELETE)),
):
    await get_runtime().accounts.delete_account(account_id)
    logger.info("admin_account_deleted", actor_id=principal.account_id, account_id=account_id)
    return Envelope(status="ok", data={"deleted": True})


@router.put(
    "/admin/accounts/{account_id}/roles/{role_id}", response_model=Envelope, tags=["admin"]
)
async def admin_assign_role(
    account_id: str = Path(..., max_length=64),
    role_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require(Permission.USERS_MANAGE_ROLES)),
):
    changed = await get_runtime().permissions.assign_role(account_id, role_id)
    logger.info(
        "admin_role_assigned", actor_id=principal.account_id, account_id=account_id, role_id=role_id
    )
    return Envelope(
        status="ok",
        data=RoleAssignmentResponse(account_id=account_id, role_id=role_id, changed=changed),
    )


@router.delete(
    "/admin/accounts/{account_id}/roles/{role_id}", response_model=Envelope, tags=["admin"]
)
async def admin_unassign_role(
    account_id: str = Path(..., max_length=64),
    role_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require(Permission.USERS_MANAGE_ROLES)),
):
    changed = await get_runtime().permissions.unassign_role(account_id, role_id)
    logger.info(
        "admin_role_unassigned",
        actor_id=principal.account_id,
        account_id=account_id,
        role_id=role_id,
    )
    return Envelope(
        status="ok",
        data=RoleAssignmentResponse(account_id=account_id, role_id=role_id, changed=changed),
    )


# -- projects ---------------------------------------------------------------


@router.post("/projects", response_model=Envelope, status_code=201, tags=["projects"])
async def create_project(
    body: ProjectCreateRequest,
    principal: Principal = Depends(require(Permission.PROJECTS_CREATE)),
):
    """Register a project's first owner (the caller)."""
    membership = await get_runtime().projects.create_project(body.project_id, principal.account_id)
    return Envelope(status="ok", data=MembershipResponse.from_membership(membership))


@router.get("/projects/{project_id}/access", response_model=Envelope, tags=["projects"])
async def get_project_access(
    project_id: str = Path(..., max_length=128, pattern=_ID_PATTERN),
    principal: Principal = Depends(require(project_access=AccessLevel.READ)),
):
    runtime = get_runtime()
    role = await runtime.projects.membership_role(project_id, principal.account_id)
    return Envelope(
        status="ok",
        data=ProjectAccessResponse(
            project_id=project_id,
            role=role.value if role else "",
            access_level=principal.project_access.name.lower() if principal.project_access else "",
        ),
    )


@router.get("/projects/{project_id}/members", response_model=Envelope, tags=["projects"])
async def list_project_members(
    project_id: str = Path(..., max_length=128, pattern=_ID_PATTERN),
    principal: Principal = Depends(require(project_access=AccessLevel.READ)),
):
    members = await get_runtime().projects.list_members(project_id, principal.account_id)
    return Envelope(
        status="ok",
        data=MembershipListResponse(
            items=[MembershipResponse.from_membership(m) for m in members]
        ),
    )


@router.post(
    "/projects/{project_id}/members", response_model=Envelope, status_code=201, tags=["projects"]
)
async def add_project_member(
    body: MembershipRequest,
    project_id: str = Path(..., max_length=128, pattern=_ID_PATTERN),
    principal: Principal = Depends(require(project_access=AccessLevel.ADMIN)),
):
    membership = await get_runtime().projects.add_member(
        project_id, principal.account_id, body.account_id, body.role
    )
    return Envelope(status="ok", data=MembershipResponse.from_membership(membership))


@router.patch(
    "/projects/{project_id}/members/{account_id}", response_model=Envelope, tags=["projects"]
)
async def change_project_member_role(
    body: MembershipRoleRequest,
    project_id: str = Path(..., max_length=128, pattern=_ID_PATTERN),
    account_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require(project_access=AccessLevel.ADMIN)),
):
    membership = await get_runtime().projects.change_member_role(
        project_id, principal.account_id, account_id, body.role
    )
    return Envelope(status="ok", data=MembershipResponse.from_membership(membership))


@router.delete(
    "/projects/{project_id}/members/{account_id}", response_model=Envelope, tags=["projects"]
)
async def remove_project_member(
    project_id: str = Path(..., max_length=128, pattern=_ID_PATTERN),
    account_id: str = Path(..., max_length=64),
    principal: Principal = Depends(require(project_access=AccessLevel.ADMIN)),
):
    await get_runtime().projects.remove_member(project_id, principal.account_id, account_id)
    return Envelope(status="ok", data={"removed": True})


@router.post("/projects/{project_id}/leave", response_model=Envelope, tags=["projects"])
async def leave_project(
    project_id: str = Path(..., max_length=128, pattern=_ID_PATTERN),
    principal: Principal = Depends(require(project_access=AccessLevel.READ)),
):
    await get_runtime().projects.leave_project(project_id, principal.account_id)
    return Envelope(status="ok", data={"left": True})
