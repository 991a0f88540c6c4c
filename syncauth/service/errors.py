from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    machine-readable ``error_code`` that clients can branch on.
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class MissingTokenError(AuthenticationError):
    error_code = "missing_token"

    def __init__(self, message: str = "access token required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ExpiredTokenError(AuthenticationError):
    error_code = "expired_token"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class WrongTokenTypeError(AuthenticationError):
    error_code = "wrong_token_type"

    def __init__(self, message: str = "wrong token type", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialError(AuthenticationError):
    """Login failed; deliberately silent about which part was wrong."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class InsufficientPermissionError(ForbiddenError):
    error_code = "insufficient_permission"

    def __init__(self, permission: str, **kwargs) -> None:
        super().__init__(
            f"{permission} permission required",
            detail={"required": permission},
            **kwargs,
        )
        self.permission = permission


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: Optional[str] = None, **kwargs) -> None:
        super().__init__(
            "user not found",
            detail={"user_id": user_id} if user_id else None,
            **kwargs,
        )


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MissingTokenError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "WrongTokenTypeError",
    "InvalidCredentialError",
    "ForbiddenError",
    "InsufficientPermissionError",
    "NotFoundError",
    "UserNotFoundError",
]
