from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from syncauth.logging import get_logger
from syncauth.service import audit as audit_actions
from syncauth.service.audit import AuditLog
from syncauth.storage.common import (
    PasswordManager,
    deserialize_datetime,
    serialize_datetime,
)
from syncauth.storage.errors import DuplicateEmail, DuplicateUsername
from syncauth.storage.models import (
    AuditStat,
    ClientMeta,
    NewUser,
    RefreshSession,
    RefreshToken,
    User,
    UserCredential,
    normalize_permissions,
    utcnow,
)


class FileStore:
    """Degraded credential store backed by a single JSON file.

    The file maps username to user record and is rewritten atomically on every
    mutation. Refresh tokens and audit rows are not persisted here, so token
    operations are neutral no-ops and ``revocation_supported`` is False.
    """

    backend = "file"
    revocation_supported = False
    audit_supported = False

    def __init__(
        self,
        users_file: str,
        *,
        passwords: Optional[PasswordManager] = None,
        audit: Optional[AuditLog] = None,
    ) -> None:
        self.path = Path(users_file)
        self.logger = get_logger(__name__)
        self.passwords = passwords or PasswordManager()
        self.audit = audit or AuditLog()
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        # RLock so mutators can call other locked helpers
        self._data_lock = threading.RLock()

    def initialize(self) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self._data_lock:
                self._load_state()
        except (OSError, ValueError, KeyError, TypeError) as exc:
            self.logger.error(
                "file_store_init_failed", path=str(self.path), error=str(exc)
            )
            return False
        self.logger.info(
            "file_store_ready", path=str(self.path), users=len(self.users)
        )
        return True

    def close(self) -> None:
        return None

    # persistence
    @staticmethod
    def _serialize_user(user: User, cred: Optional[UserCredential]) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "passwordHash": cred.password_hash if cred else None,
            "passwordAlgo": cred.password_algo if cred else None,
            "permissions": list(user.permissions),
            "profile": user.profile or {},
            "isActive": user.is_active,
            "createdAt": serialize_datetime(user.created_at),
            "updatedAt": serialize_datetime(user.updated_at),
            "lastLogin": serialize_datetime(user.last_login),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> tuple[User, Optional[UserCredential]]:
        now = utcnow()
        user = User(
            id=data.get("id") or data["username"],
            username=data["username"],
            email=data.get("email"),
            permissions=list(data.get("permissions") or []),
            profile=data.get("profile") or {},
            is_active=data.get("isActive", True),
            created_at=deserialize_datetime(data.get("createdAt")) or now,
            updated_at=deserialize_datetime(data.get("updatedAt")) or now,
            last_login=deserialize_datetime(data.get("lastLogin")),
        )
        cred = None
        if data.get("passwordHash"):
            cred = UserCredential(
                user_id=user.id,
                password_hash=data["passwordHash"],
                password_algo=data.get("passwordAlgo") or "",
            )
        return user, cred

    def _persist_state(self) -> None:
        state = {
            user.username: self._serialize_user(user, self.credentials.get(user.id))
            for user in self.users.values()
        }
        payload = json.dumps(state, indent=2)
        # Write to a sibling temp file then rename over the target
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            self.users = {}
            self.credentials = {}
            return False
        if not isinstance(data, dict):
            raise ValueError("users file must contain a JSON object")
        users: Dict[str, User] = {}
        credentials: Dict[str, UserCredential] = {}
        for record in data.values():
            user, cred = self._deserialize_user(record)
            users[user.id] = user
            if cred:
                credentials[user.id] = cred
        self.users = users
        self.credentials = credentials
        return True

    # users
    def create_user(
        self, new_user: NewUser, *, client: Optional[ClientMeta] = None
    ) -> User:
        with self._data_lock:
            try:
                if self._find_by_username(new_user.username):
                    raise DuplicateUsername(new_user.username)
                if new_user.email and any(u.email == new_user.email for u in self.users.values()):
                    raise DuplicateEmail(new_user.email)
            except (DuplicateUsername, DuplicateEmail) as exc:
                self.audit.record(
                    audit_actions.USER_CREATION_FAILED,
                    False,
                    username=new_user.username,
                    client=client,
                    reason=exc.detail.get("field", "conflict"),
                )
                raise
            password_hash, algo = self.passwords.hash(new_user.password)
            now = utcnow()
            user = User(
                id=new_user.username,
                username=new_user.username,
                email=new_user.email,
                permissions=normalize_permissions(new_user.permissions),
                profile=dict(new_user.profile or {}),
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self.credentials[user.id] = UserCredential(
                user_id=user.id, password_hash=password_hash, password_algo=algo
            )
            try:
                self._persist_state()
            except OSError:
                self.users.pop(user.id, None)
                self.credentials.pop(user.id, None)
                raise
        self.audit.record(
            audit_actions.USER_CREATED,
            True,
            user_id=user.id,
            username=user.username,
            client=client,
            permissions=user.permissions,
        )
        return user

    def _replace_user(self, previous: User, updated: User) -> User:
        """Swap in ``updated`` and persist; the old record stays if the write fails."""
        self.users[previous.id] = updated
        try:
            self._persist_state()
        except OSError:
            self.users[previous.id] = previous
            raise
        return updated

    def _find_by_username(self, username: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.username == username), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return self._find_by_username(username)

    def authenticate(
        self, username: str, password: str, client: Optional[ClientMeta] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_username(username)
            cred = self.credentials.get(user.id) if user else None
        if not user or not cred or not user.is_active:
            self.passwords.verify_dummy(password)
            reason = "user_not_found" if not user else "user_inactive"
            self.audit.record(
                audit_actions.LOGIN_FAILED,
                False,
                user_id=user.id if user else None,
                username=username,
                client=client,
                reason=reason,
            )
            return None
        if not self.passwords.verify(cred.password_hash, cred.password_algo, password):
            self.audit.record(
                audit_actions.LOGIN_FAILED,
                False,
                user_id=user.id,
                username=username,
                client=client,
                reason="invalid_password",
            )
            return None
        with self._data_lock:
            user = self._replace_user(user, replace(user, last_login=utcnow()))
        self.audit.record(
            audit_actions.LOGIN_SUCCESS,
            True,
            user_id=user.id,
            username=user.username,
            client=client,
        )
        return user

    def change_password(
        self,
        user_id: str,
        old_password: str,
        new_password: str,
        client: Optional[ClientMeta] = None,
    ) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            cred = self.credentials.get(user_id)
            if not user or not cred:
                self.passwords.verify_dummy(old_password)
                self.audit.record(
                    audit_actions.PASSWORD_CHANGE_FAILED,
                    False,
                    user_id=user_id,
                    client=client,
                    reason="user_not_found",
                )
                return False
            if not self.passwords.verify(cred.password_hash, cred.password_algo, old_password):
                self.audit.record(
                    audit_actions.PASSWORD_CHANGE_FAILED,
                    False,
                    user_id=user_id,
                    username=user.username,
                    client=client,
                    reason="invalid_current_password",
                )
                return False
            previous = cred
            password_hash, algo = self.passwords.hash(new_password)
            self.credentials[user_id] = UserCredential(
                user_id=user_id, password_hash=password_hash, password_algo=algo
            )
            try:
                self._replace_user(user, replace(user, updated_at=utcnow()))
            except OSError:
                self.credentials[user_id] = previous
                raise
        self.audit.record(
            audit_actions.PASSWORD_CHANGED,
            True,
            user_id=user_id,
            username=user.username,
            client=client,
        )
        return True

    def update_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        profile: Optional[dict] = None,
        permissions: Optional[List[str]] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if email is not None and any(
                u.email == email and u.id != user_id for u in self.users.values()
            ):
                raise DuplicateEmail(email)
            changes = {"updated_at": utcnow()}
            if email is not None:
                changes["email"] = email
            if profile is not None:
                changes["profile"] = dict(profile)
            if permissions is not None:
                changes["permissions"] = normalize_permissions(permissions)
            user = self._replace_user(user, replace(user, **changes))
        self.audit.record(
            audit_actions.USER_UPDATED,
            True,
            user_id=user_id,
            username=user.username,
            fields=[
                name
                for name, value in (("email", email), ("profile", profile), ("permissions", permissions))
                if value is not None
            ],
        )
        return user

    def deactivate_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user = self._replace_user(user, replace(user, is_active=False, updated_at=utcnow()))
        self.audit.record(
            audit_actions.USER_DEACTIVATED, True, user_id=user_id, username=user.username
        )
        return True

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if not user:
                return False
            cred = self.credentials.pop(user_id, None)
            try:
                self._persist_state()
            except OSError:
                self.users[user_id] = user
                if cred:
                    self.credentials[user_id] = cred
                raise
        self.audit.record(
            audit_actions.USER_DELETED, True, user_id=user_id, username=user.username
        )
        return True

    def list_users(self, limit: int = 50, offset: int = 0) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return ordered[offset : offset + limit]

    def count_users(self, *, active_only: bool = False) -> int:
        with self._data_lock:
            if active_only:
                return sum(1 for u in self.users.values() if u.is_active)
            return len(self.users)

    # refresh tokens are not tracked by this backend
    def store_refresh_token(
        self,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        client: Optional[ClientMeta] = None,
    ) -> Optional[RefreshToken]:
        return None

    def verify_refresh_token(self, token_hash: str) -> Optional[RefreshSession]:
        return None

    def revoke_refresh_token(self, token_hash: str) -> bool:
        return False

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        return 0

    def cleanup_expired(self) -> dict:
        return {"refresh_tokens": 0, "sessions": 0, "audit_events": 0}

    def auth_stats(self, days: int = 7) -> List[AuditStat]:
        return []

    def health_check(self) -> dict:
        writable = os.access(self.path.parent, os.W_OK)
        return {
            "status": "healthy" if writable else "unhealthy",
            "backend": self.backend,
            "users_file": str(self.path),
            "total_users": self.count_users(),
            "active_users": self.count_users(active_only=True),
        }
