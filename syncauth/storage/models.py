from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

PERMISSIONS = ("read", "write", "delete", "admin")
DEFAULT_PERMISSIONS = ["read", "write"]
ADMIN_PERMISSIONS = ["admin", "read", "write", "delete"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_permissions(permissions: Optional[List[str]]) -> List[str]:
    """Deduplicate and validate a permission list, preserving order.

    ``admin`` implies every other permission, so an admin set is expanded to the
    full list.
    """
    if permissions is None:
        return list(DEFAULT_PERMISSIONS)
    result: List[str] = []
    for perm in permissions:
        if perm not in PERMISSIONS:
            raise ValueError(f"unknown permission '{perm}'")
        if perm not in result:
            result.append(perm)
    if "admin" in result:
        return list(ADMIN_PERMISSIONS)
    return result


@dataclass
class User:
    id: str
    username: str
    email: Optional[str] = None
    permissions: List[str] = field(default_factory=lambda: list(DEFAULT_PERMISSIONS))
    profile: Dict = field(default_factory=dict)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None

    def has_permission(self, permission: str) -> bool:
        return "admin" in self.permissions or permission in self.permissions

    def public_view(self) -> dict:
        """Serializable view without credential material."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "permissions": list(self.permissions),
            "profile": dict(self.profile or {}),
            "isActive": self.is_active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
        }


@dataclass
class UserCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class NewUser:
    """Input for ``CredentialStore.create_user``."""

    username: str
    password: str
    email: Optional[str] = None
    permissions: Optional[List[str]] = None
    profile: Optional[Dict] = None


@dataclass
class ClientMeta:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def as_dict(self) -> dict:
        return {"ip_address": self.ip_address, "user_agent": self.user_agent}


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    client_info: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        client: Optional[ClientMeta] = None,
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            issued_at=utcnow(),
            expires_at=expires_at,
            client_info=client.as_dict() if client else None,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.revoked_at is None and self.expires_at > now


@dataclass
class RefreshSession:
    """Result of a successful refresh-token lookup joined with its owner."""

    token_id: str
    user: User
    expires_at: datetime


@dataclass
class AuditEvent:
    action: str
    success: bool
    user_id: Optional[str] = None
    username: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass
class AuditStat:
    action: str
    success: bool
    count: int
    date: str
