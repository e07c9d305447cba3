from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    - service_unavailable (503)
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
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class WeakPasswordError(ValidationError):
    """Password does not satisfy the strength policy (400)."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason, detail={"reason": reason})
        self.reason = reason


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two cases are indistinguishable."""

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class AccountLockedError(AuthenticationError):
    """Too many failed logins for this email (401)."""

    def __init__(self, remaining_minutes: int) -> None:
        super().__init__(
            f"Account temporarily locked. Try again in {remaining_minutes} minutes",
            detail={"retry_after_minutes": remaining_minutes},
        )
        self.remaining_minutes = remaining_minutes


class InvalidRefreshTokenError(AuthenticationError):
    """Refresh token rejected (401).

    Subclasses record why internally; callers only ever see this class's
    generic message.
    """

    reason = "invalid"

    def __init__(self, message: str = "Invalid refresh token") -> None:
        super().__init__(message)


class RefreshTokenRevokedError(InvalidRefreshTokenError):
    reason = "revoked"


class RefreshTokenExpiredError(InvalidRefreshTokenError):
    reason = "expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitExceededError(ForbiddenError):
    """Request ceiling reached for the current window (403)."""

    def __init__(
        self,
        *,
        limit: int,
        retry_after: int,
        reset_at: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        super().__init__(
            "Rate limit exceeded",
            detail={
                "limit": limit,
                "remaining": 0,
                "reset": reset_at,
                "retry_after": retry_after,
            },
            headers=headers,
        )
        self.limit = limit
        self.retry_after = retry_after


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailAlreadyExistsError(ConflictError):
    def __init__(self, message: str = "Email already exists") -> None:
        super().__init__(message, detail={"field": "email"})


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A backing service (cache, directory) could not be reached (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "InvalidRefreshTokenError",
    "RefreshTokenRevokedError",
    "RefreshTokenExpiredError",
    "ForbiddenError",
    "RateLimitExceededError",
    "NotFoundError",
    "ConflictError",
    "EmailAlreadyExistsError",
    "ServerError",
    "ServiceUnavailableError",
]
