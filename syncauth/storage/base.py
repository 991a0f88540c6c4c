from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from syncauth.service.audit import AuditLog
from syncauth.storage.models import (
    AuditStat,
    ClientMeta,
    NewUser,
    RefreshSession,
    RefreshToken,
    User,
)


class CredentialStore(Protocol):
    """Contract shared by the durable and the file-backed credential stores.

    ``revocation_supported`` and ``audit_supported`` advertise what a backend
    can persist; callers branch on them instead of on the concrete type.
    """

    backend: str
    revocation_supported: bool
    audit_supported: bool
    audit: AuditLog

    def initialize(self) -> bool: ...

    def close(self) -> None: ...

    def create_user(
        self, new_user: NewUser, *, client: Optional[ClientMeta] = None
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def authenticate(
        self, username: str, password: str, client: Optional[ClientMeta] = None
    ) -> Optional[User]: ...

    def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        client: Optional[ClientMeta] = None,
    ) -> bool: ...

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        profile: Optional[dict] = None,
        permissions: Optional[List[str]] = None,
    ) -> Optional[User]: ...

    def deactivate_user(self, user_id: str) -> bool: ...

    def delete_user(self, user_id: str) -> bool: ...

    def list_users(self, limit: int = 50, offset: int = 0) -> List[User]: ...

    def count_users(self, *, active_only: bool = False) -> int: ...

    def store_refresh_token(
        self,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        client: Optional[ClientMeta] = None,
    ) -> Optional[RefreshToken]: ...

    def verify_refresh_token(self, token_hash: str) -> Optional[RefreshSession]: ...

    def revoke_refresh_token(self, token_hash: str) -> bool: ...

    def revoke_all_refresh_tokens(self, user_id: str) -> int: ...

    def cleanup_expired(self) -> dict: ...

    def auth_stats(self, days: int = 7) -> List[AuditStat]: ...

    def health_check(self) -> dict: ...
