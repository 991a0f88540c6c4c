from __future__ import annotations

from typing import Optional

from syncauth.logging import get_logger
from syncauth.service.errors import (
    AuthenticationError,
    ExpiredTokenError,
    InsufficientPermissionError,
    InvalidTokenError,
    MissingTokenError,
    WrongTokenTypeError,
)
from syncauth.service.tokens import (
    ACCESS,
    TokenClaims,
    TokenFailure,
    TokenInvalid,
    TokenService,
    extract_bearer,
    has_permission,
)

logger = get_logger(__name__)

_FAILURE_ERRORS = {
    TokenFailure.MALFORMED: InvalidTokenError,
    TokenFailure.SIGNATURE_INVALID: InvalidTokenError,
    TokenFailure.EXPIRED: ExpiredTokenError,
    TokenFailure.WRONG_TYPE: WrongTokenTypeError,
}


def error_for_failure(failure: TokenInvalid) -> AuthenticationError:
    return _FAILURE_ERRORS[failure.reason]()


class PermissionGuard:
    """Request-time authorization over verified access-token claims.

    Decisions use the permission set embedded in the token only; the store is
    never consulted, so a permission change takes effect once the holder's
    current access token expires.
    """

    def __init__(self, tokens: TokenService) -> None:
        self.tokens = tokens

    def authenticate(self, authorization: Optional[str]) -> TokenClaims:
        token = extract_bearer(authorization)
        if not token:
            raise MissingTokenError()
        return self.verify_access(token)

    def verify_access(self, token: str) -> TokenClaims:
        result = self.tokens.verify(token, expected_type=ACCESS)
        if isinstance(result, TokenInvalid):
            logger.info("access_token_rejected", reason=result.reason.value)
            raise error_for_failure(result)
        return result

    @staticmethod
    def allows(claims: TokenClaims, permission: str) -> bool:
        return has_permission(claims, permission)

    def require(self, claims: TokenClaims, permission: str) -> TokenClaims:
        if not self.allows(claims, permission):
            logger.warning(
                "permission_denied",
                user_id=claims.sub,
                username=claims.username,
                required=permission,
            )
            raise InsufficientPermissionError(permission)
        return claims
