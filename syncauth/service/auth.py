from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from syncauth.config import Settings
from syncauth.logging import get_logger
from syncauth.service import audit as audit_actions
from syncauth.service.errors import (
    InvalidCredentialError,
    InvalidTokenError,
    UserNotFoundError,
    ValidationError,
)
from syncauth.service.permissions import PermissionGuard, error_for_failure
from syncauth.service.tokens import REFRESH, TokenClaims, TokenInvalid, TokenService
from syncauth.storage.base import CredentialStore
from syncauth.storage.errors import DuplicateUser
from syncauth.storage.models import (
    ADMIN_PERMISSIONS,
    AuditStat,
    ClientMeta,
    NewUser,
    User,
)

logger = get_logger(__name__)

MIN_USERNAME_LENGTH = 3


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    user: User


class AuthGateway:
    """Login, refresh, logout and password flows over a single credential store.

    The store is chosen once by ``start`` and held for the process lifetime.
    Refresh tokens are persisted and checked only when the store advertises
    ``revocation_supported``; otherwise a refresh token is valid on signature
    and expiry alone.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        tokens: Optional[TokenService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens or TokenService(settings)
        self.guard = PermissionGuard(self.tokens)
        self.logger = logger

    @classmethod
    def start(
        cls,
        settings: Settings,
        *,
        primary: Optional[CredentialStore] = None,
        fallback: CredentialStore,
        tokens: Optional[TokenService] = None,
    ) -> "AuthGateway":
        """Probe ``primary``, fall back to ``fallback``, then seed the default admin."""
        store: Optional[CredentialStore] = None
        if primary is not None:
            if primary.initialize():
                store = primary
            else:
                logger.warning(
                    "credential_store_fallback",
                    primary=primary.backend,
                    fallback=fallback.backend,
                    message="durable store unreachable; running on the local users file",
                )
        if store is None:
            if not fallback.initialize():
                raise RuntimeError("no credential store could be initialized")
            store = fallback
        gateway = cls(store, settings, tokens=tokens)
        logger.info(
            "credential_store_selected",
            backend=store.backend,
            revocation_supported=store.revocation_supported,
            audit_supported=store.audit_supported,
        )
        if not store.revocation_supported:
            logger.warning(
                "refresh_revocation_unsupported",
                backend=store.backend,
                message="logout and password change cannot revoke refresh tokens on this backend",
            )
        gateway.ensure_default_admin()
        return gateway

    @property
    def backend(self) -> str:
        return self.store.backend

    def ensure_default_admin(self) -> Optional[User]:
        if self.store.count_users() > 0:
            return None
        username = self.settings.default_admin_username
        try:
            user = self.store.create_user(
                NewUser(
                    username=username,
                    password=self.settings.default_admin_password,
                    permissions=list(ADMIN_PERMISSIONS),
                    profile={"role": "administrator", "created_by": "system"},
                )
            )
        except DuplicateUser:
            return None
        logger.warning(
            "default_admin_created",
            username=username,
            backend=self.store.backend,
            message="default admin account created; change its password after first login",
        )
        return user

    def _validate_password(self, password: str) -> None:
        if len(password or "") < self.settings.min_password_length:
            raise ValidationError(
                f"password must be at least {self.settings.min_password_length} characters long",
                detail={"field": "password"},
            )

    def _refresh_expiry(self) -> datetime:
        return datetime.fromtimestamp(self.tokens.refresh_expiry(), timezone.utc)

    async def login(
        self, username: str, password: str, client: Optional[ClientMeta] = None
    ) -> LoginResult:
        user = await asyncio.to_thread(self.store.authenticate, username, password, client)
        if not user:
            raise InvalidCredentialError()
        access_token = self.tokens.issue_access(user)
        refresh_token = self.tokens.issue_refresh(user)
        if self.store.revocation_supported:
            await asyncio.to_thread(
                self.store.store_refresh_token,
                user.id,
                self.tokens.fingerprint(refresh_token),
                self._refresh_expiry(),
                client,
            )
        return LoginResult(access_token=access_token, refresh_token=refresh_token, user=user)

    async def refresh(
        self, refresh_token: str, client: Optional[ClientMeta] = None
    ) -> str:
        """Exchange a refresh token for a new access token; the refresh token is not rotated."""
        result = self.tokens.verify(refresh_token, expected_type=REFRESH)
        if isinstance(result, TokenInvalid):
            await asyncio.to_thread(
                self.store.audit.record,
                audit_actions.REFRESH_FAILED,
                False,
                client=client,
                reason=result.reason.value,
            )
            raise error_for_failure(result)
        if self.store.revocation_supported:
            session = await asyncio.to_thread(
                self.store.verify_refresh_token, self.tokens.fingerprint(refresh_token)
            )
            user = session.user if session else None
            reason = "revoked_or_expired"
        else:
            user = await asyncio.to_thread(self.store.get_user, result.sub)
            if user is not None and not user.is_active:
                user = None
            reason = "user_not_found"
        if user is None:
            await asyncio.to_thread(
                self.store.audit.record,
                audit_actions.REFRESH_FAILED,
                False,
                user_id=result.sub,
                username=result.username,
                client=client,
                reason=reason,
            )
            raise InvalidTokenError("invalid or revoked refresh token")
        return self.tokens.issue_access(user)

    async def logout(
        self, refresh_token: str, client: Optional[ClientMeta] = None
    ) -> bool:
        """Revoke a refresh token by its hash. Repeating it, or passing junk, is not an error."""
        claims = self.tokens.verify(refresh_token, expected_type=REFRESH)
        revoked = False
        if self.store.revocation_supported:
            revoked = await asyncio.to_thread(
                self.store.revoke_refresh_token, self.tokens.fingerprint(refresh_token)
            )
        await asyncio.to_thread(
            self.store.audit.record,
            audit_actions.LOGOUT,
            True,
            user_id=claims.sub if claims else None,
            username=claims.username if claims else None,
            client=client,
            revoked=revoked,
        )
        return revoked

    async def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        client: Optional[ClientMeta] = None,
    ) -> None:
        self._validate_password(new_password)
        changed = await asyncio.to_thread(
            self.store.change_password, user_id, old_password, new_password, client
        )
        if not changed:
            raise InvalidCredentialError("invalid current password")

    async def me(self, claims: TokenClaims) -> dict:
        user = await asyncio.to_thread(self.store.get_user, claims.sub)
        return {
            "username": claims.username,
            "permissions": list(claims.permissions),
            "profile": dict(user.profile) if user else {},
        }

    async def create_user(
        self, new_user: NewUser, client: Optional[ClientMeta] = None
    ) -> User:
        if len(new_user.username or "") < MIN_USERNAME_LENGTH:
            raise ValidationError(
                f"username must be at least {MIN_USERNAME_LENGTH} characters long",
                detail={"field": "username"},
            )
        self._validate_password(new_user.password)
        try:
            return await asyncio.to_thread(self.store.create_user, new_user, client=client)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "permissions"}) from exc

    async def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        profile: Optional[dict] = None,
        permissions: Optional[List[str]] = None,
    ) -> User:
        try:
            user = await asyncio.to_thread(
                self.store.update_user,
                user_id,
                email=email,
                profile=profile,
                permissions=permissions,
            )
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "permissions"}) from exc
        if not user:
            raise UserNotFoundError(user_id)
        return user

    async def list_users(self, limit: int = 50, offset: int = 0) -> Tuple[List[User], int]:
        users = await asyncio.to_thread(self.store.list_users, limit=limit, offset=offset)
        return users, await asyncio.to_thread(self.store.count_users)

    async def deactivate_user(self, user_id: str) -> None:
        """Soft delete: the record stays, logins stop and refresh tokens are revoked."""
        if not await asyncio.to_thread(self.store.deactivate_user, user_id):
            raise UserNotFoundError(user_id)

    async def delete_user(self, user_id: str, *, actor_id: Optional[str] = None) -> None:
        if actor_id is not None:
            # Compare stored ids: the store may accept several spellings of one id.
            target = await asyncio.to_thread(self.store.get_user, user_id)
            if target is None:
                raise UserNotFoundError(user_id)
            if target.id == actor_id:
                raise ValidationError("cannot delete your own account", detail={"user_id": user_id})
            user_id = target.id
        if not await asyncio.to_thread(self.store.delete_user, user_id):
            raise UserNotFoundError(user_id)

    def authenticate_websocket(self, token: Optional[str]) -> Optional[TokenClaims]:
        if not token:
            return None
        result = self.tokens.verify(token, expected_type="access")
        if isinstance(result, TokenInvalid):
            logger.info("websocket_auth_rejected", reason=result.reason.value)
            return None
        return result

    async def cleanup_expired(self) -> dict:
        removed = await asyncio.to_thread(self.store.cleanup_expired)
        logger.info("expired_credentials_cleaned", backend=self.store.backend, **removed)
        return removed

    async def auth_stats(self, days: int = 7) -> List[AuditStat]:
        return await asyncio.to_thread(self.store.auth_stats, days)

    def health(self) -> dict:
        report = self.store.health_check()
        report.setdefault("backend", self.store.backend)
        report["revocation_supported"] = self.store.revocation_supported
        report["audit_supported"] = self.store.audit_supported
        return report
