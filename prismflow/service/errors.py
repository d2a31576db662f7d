from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients can branch on. Messages are deliberately generic for the
    authentication family so a response never reveals which check failed.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing, malformed, expired or otherwise unusable access token (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialError(AuthenticationError):
    """Wrong password, unknown account, or unusable refresh/reset token (401)."""
    error_code = "invalid_credential"


class SecondFactorRequiredError(AuthenticationError):
    """Password accepted but the account's second factor has not been supplied."""
    error_code = "second_factor_required"

    def __init__(self, message: str = "second factor required", *, account_id: Optional[str] = None) -> None:
        detail = {"requires_second_factor": True}
        if account_id:
            detail["account_id"] = account_id
        super().__init__(message, detail=detail)
        self.account_id = account_id


class SecondFactorInvalidError(AuthenticationError):
    """Submitted second-factor code did not verify (401)."""
    error_code = "second_factor_invalid"


class ForbiddenError(ServiceError):
    """Caller lacks a required global permission, or CSRF check failed (403)."""
    status_code = 403
    error_code = "forbidden"


class AccessDeniedError(ForbiddenError):
    """Project membership grants less than the required access level (403)."""
    error_code = "access_denied"


class ImmutableRoleError(ForbiddenError):
    """Attempt to update or delete a system role (403)."""
    error_code = "immutable_role"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class LastAdminViolationError(ConflictError):
    """Operation would leave no active administrator (409)."""
    error_code = "last_admin_violation"


class LastOwnerViolationError(ConflictError):
    """Operation would leave a project without an owner (409)."""
    error_code = "last_owner_violation"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: int = 0) -> None:
        super().__init__(message, detail={"retry_after": retry_after} if retry_after else None)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialError",
    "SecondFactorRequiredError",
    "SecondFactorInvalidError",
    "ForbiddenError",
    "AccessDeniedError",
    "ImmutableRoleError",
    "NotFoundError",
    "ConflictError",
    "LastAdminViolationError",
    "LastOwnerViolationError",
    "RateLimitedError",
    "ServerError",
]
