from __future__ import annotations

import json
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from ipaddress import ip_address
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from syncauth.logging import get_logger
from syncauth.service import audit as audit_actions
from syncauth.service.audit import AuditLog
from syncauth.storage.common import PasswordManager, parse_json_meta, safe_row_value
from syncauth.storage.errors import (
    DuplicateEmail,
    DuplicateUsername,
    StoreUnavailable,
    TransactionFailure,
)
from syncauth.storage.models import (
    AuditEvent,
    AuditStat,
    ClientMeta,
    NewUser,
    RefreshSession,
    RefreshToken,
    User,
    normalize_permissions,
    utcnow,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        username VARCHAR(50) UNIQUE NOT NULL,
        email VARCHAR(255) UNIQUE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        permissions TEXT[] NOT NULL DEFAULT ARRAY['read', 'write'],
        profile JSONB NOT NULL DEFAULT '{}',
        is_active BOOLEAN NOT NULL DEFAULT true,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked_at TIMESTAMPTZ,
        client_info JSONB DEFAULT '{}'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_sessions (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        session_token TEXT NOT NULL,
        ip_address INET,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_audit_log (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_id UUID REFERENCES users(id) ON DELETE SET NULL,
        username VARCHAR(50),
        action VARCHAR(50) NOT NULL,
        success BOOLEAN NOT NULL,
        ip_address INET,
        user_agent TEXT,
        details JSONB DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_users_active ON users(is_active)",
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user_id ON refresh_tokens(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_hash ON refresh_tokens(token_hash)",
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_expires ON refresh_tokens(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_user_sessions_user_id ON user_sessions(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_user_sessions_expires ON user_sessions(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_auth_audit_user_id ON auth_audit_log(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_auth_audit_created ON auth_audit_log(created_at)",
)

REQUIRED_TABLES = ("users", "refresh_tokens", "user_sessions", "auth_audit_log")


def _inet(value: Optional[str]) -> Optional[str]:
    """Return ``value`` if it parses as an IP address, else None (INET column)."""
    if not value:
        return None
    try:
        return str(ip_address(value.strip()))
    except ValueError:
        return None


def _is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Durable, transactional credential store with refresh-token revocation and audit."""

    backend = "postgres"
    revocation_supported = True
    audit_supported = True

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 20,
        max_idle: float = 30.0,
        acquire_timeout: float = 2.0,
        connect_timeout: float = 5.0,
        audit_retention_days: int = 90,
        passwords: Optional[PasswordManager] = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.passwords = passwords or PasswordManager()
        self.audit = AuditLog(self, retention_days=audit_retention_days)
        self.connect_timeout = connect_timeout
        self._pool_options = {
            "min_size": min_size,
            "max_size": max_size,
            "max_idle": max_idle,
            "timeout": acquire_timeout,
            "kwargs": {
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(connect_timeout)),
            },
        }
        self.pool = self._new_pool()

    def _new_pool(self) -> ConnectionPool:
        return ConnectionPool(self.dsn, open=False, **self._pool_options)

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("db_pool_acquire_timeout", error=str(exc))
            raise StoreUnavailable(cause=str(exc)) from exc
        except psycopg.OperationalError as exc:
            self.logger.error("db_connection_failed", error=str(exc))
            raise StoreUnavailable(cause=str(exc)) from exc

    def initialize(self) -> bool:
        """Open the pool and provision the schema; False if the database is unreachable.

        Safe to call again after a failure: a closed pool cannot be reopened,
        so each attempt after a failed one starts from a fresh pool.
        """
        if self.pool.closed:
            self.pool = self._new_pool()
        try:
            self.pool.open(wait=True, timeout=self.connect_timeout)
            self._ensure_schema()
        except Exception as exc:
            self.logger.error(
                "postgres_store_init_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                timeout=self.connect_timeout,
            )
            self.close()
            return False
        self.logger.info("postgres_store_ready")
        return True

    def close(self) -> None:
        try:
            self.pool.close()
        except Exception as exc:
            self.logger.warning("db_pool_close_failed", error=str(exc))

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            missing = [
                table
                for table in REQUIRED_TABLES
                if conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()["oid"]
                is None
            ]
            if not missing:
                return
            with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    conn.execute(statement)
        self.logger.warning("db_schema_provisioned", created=missing)

    @staticmethod
    def _row_to_user(row: Any) -> User:
        now = utcnow()
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=safe_row_value(row, "email"),
            permissions=list(safe_row_value(row, "permissions") or []),
            profile=parse_json_meta(safe_row_value(row, "profile")) or {},
            is_active=bool(safe_row_value(row, "is_active", True)),
            created_at=safe_row_value(row, "created_at") or now,
            updated_at=safe_row_value(row, "updated_at") or now,
            last_login=safe_row_value(row, "last_login"),
        )

    # users
    def create_user(
        self, new_user: NewUser, *, client: Optional[ClientMeta] = None
    ) -> User:
        user_id = str(uuid.uuid4())
        permissions = normalize_permissions(new_user.permissions)
        password_hash, algo = self.passwords.hash(new_user.password)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, username, email, password_hash, password_algo, permissions, profile)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        new_user.username,
                        new_user.email,
                        password_hash,
                        algo,
                        permissions,
                        json.dumps(new_user.profile or {}),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
            field = "email" if "email" in constraint else "username"
            self.audit.record(
                audit_actions.USER_CREATION_FAILED,
                False,
                username=new_user.username,
                client=client,
                reason=field,
            )
            if field == "email":
                raise DuplicateEmail(new_user.email or "") from exc
            raise DuplicateUsername(new_user.username) from exc
        user = self._row_to_user(row)
        self.audit.record(
            audit_actions.USER_CREATED,
            True,
            user_id=user.id,
            username=user.username,
            client=client,
            permissions=user.permissions,
        )
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def authenticate(
        self, username: str, password: str, client: Optional[ClientMeta] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE username = %s", (username,)
            ).fetchone()
        if not row or not row.get("is_active", True):
            self.passwords.verify_dummy(password)
            self.audit.record(
                audit_actions.LOGIN_FAILED,
                False,
                user_id=str(row["id"]) if row else None,
                username=username,
                client=client,
                reason="user_not_found" if not row else "user_inactive",
            )
            return None
        if not self.passwords.verify(
            row["password_hash"], row.get("password_algo") or "", password
        ):
            self.audit.record(
                audit_actions.LOGIN_FAILED,
                False,
                user_id=str(row["id"]),
                username=username,
                client=client,
                reason="invalid_password",
            )
            return None
        user = self._row_to_user(row)
        with self._connect() as conn:
            conn.execute("UPDATE users SET last_login = now() WHERE id = %s", (user.id,))
        user.last_login = utcnow()
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
        if not _is_uuid(user_id):
            self.passwords.verify_dummy(old_password)
            return False
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, username, password_hash, password_algo FROM users WHERE id = %s AND is_active",
                (user_id,),
            ).fetchone()
        if not row:
            self.passwords.verify_dummy(old_password)
            self.audit.record(
                audit_actions.PASSWORD_CHANGE_FAILED,
                False,
                client=client,
                reason="user_not_found",
                target_user_id=user_id,
            )
            return False
        if not self.passwords.verify(
            row["password_hash"], row.get("password_algo") or "", old_password
        ):
            self.audit.record(
                audit_actions.PASSWORD_CHANGE_FAILED,
                False,
                user_id=user_id,
                username=row["username"],
                client=client,
                reason="invalid_current_password",
            )
            return False
        password_hash, algo = self.passwords.hash(new_password)
        revoked = None
        try:
            with self._connect() as conn:
                with conn.transaction():
                    # Only the row that was verified above: still active, hash unchanged.
                    updated = conn.execute(
                        """
                        UPDATE users SET password_hash = %s, password_algo = %s, updated_at = now()
                        WHERE id = %s AND is_active AND password_hash = %s
                        """,
                        (password_hash, algo, user_id, row["password_hash"]),
                    ).rowcount
                    if updated:
                        revoked = conn.execute(
                            """
                            UPDATE refresh_tokens SET revoked_at = now()
                            WHERE user_id = %s AND revoked_at IS NULL
                            """,
                            (user_id,),
                        ).rowcount
        except psycopg.Error as exc:
            self.logger.error("password_change_rolled_back", user_id=user_id, error=str(exc))
            raise TransactionFailure(
                "password change failed", operation="change_password", cause=str(exc)
            ) from exc
        if revoked is None:
            self.audit.record(
                audit_actions.PASSWORD_CHANGE_FAILED,
                False,
                user_id=user_id,
                username=row["username"],
                client=client,
                reason="user_changed_concurrently",
            )
            return False
        self.audit.record(
            audit_actions.PASSWORD_CHANGED,
            True,
            user_id=user_id,
            username=row["username"],
            client=client,
            revoked_tokens=revoked,
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
        if not _is_uuid(user_id):
            return None
        perms = normalize_permissions(permissions) if permissions is not None else None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE users
                    SET email = COALESCE(%s, email),
                        profile = COALESCE(%s::jsonb, profile),
                        permissions = COALESCE(%s::text[], permissions),
                        updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        email,
                        json.dumps(profile) if profile is not None else None,
                        perms,
                        user_id,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise DuplicateEmail(email or "") from exc
        if not row:
            return None
        user = self._row_to_user(row)
        self.audit.record(
            audit_actions.USER_UPDATED,
            True,
            user_id=user.id,
            username=user.username,
            fields=[
                name
                for name, value in (("email", email), ("profile", profile), ("permissions", permissions))
                if value is not None
            ],
        )
        return user

    def deactivate_user(self, user_id: str) -> bool:
        if not _is_uuid(user_id):
            return False
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE users SET is_active = false, updated_at = now()
                        WHERE id = %s RETURNING username
                        """,
                        (user_id,),
                    ).fetchone()
                    if not row:
                        return False
                    revoked = conn.execute(
                        """
                        UPDATE refresh_tokens SET revoked_at = now()
                        WHERE user_id = %s AND revoked_at IS NULL
                        """,
                        (user_id,),
                    ).rowcount
        except psycopg.Error as exc:
            self.logger.error("deactivate_user_rolled_back", user_id=user_id, error=str(exc))
            raise TransactionFailure(
                "user deactivation failed", operation="deactivate_user", cause=str(exc)
            ) from exc
        self.audit.record(
            audit_actions.USER_DEACTIVATED,
            True,
            user_id=user_id,
            username=row["username"],
            revoked_tokens=revoked,
        )
        return True

    def delete_user(self, user_id: str) -> bool:
        """Hard delete: tokens, audit rows, sessions and the user in one transaction."""
        if not _is_uuid(user_id):
            return False
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute("DELETE FROM refresh_tokens WHERE user_id = %s", (user_id,))
                    conn.execute("DELETE FROM auth_audit_log WHERE user_id = %s", (user_id,))
                    conn.execute("DELETE FROM user_sessions WHERE user_id = %s", (user_id,))
                    row = conn.execute(
                        "DELETE FROM users WHERE id = %s RETURNING username", (user_id,)
                    ).fetchone()
        except psycopg.Error as exc:
            self.logger.error("delete_user_rolled_back", user_id=user_id, error=str(exc))
            raise TransactionFailure(
                "user deletion failed", operation="delete_user", cause=str(exc)
            ) from exc
        if not row:
            return False
        # The user row is gone, so the event cannot reference it by FK
        self.audit.record(
            audit_actions.USER_DELETED,
            True,
            username=row["username"],
            deleted_user_id=user_id,
        )
        return True

    def list_users(self, limit: int = 50, offset: int = 0) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def count_users(self, *, active_only: bool = False) -> int:
        query = "SELECT COUNT(*) AS total FROM users"
        if active_only:
            query += " WHERE is_active"
        with self._connect() as conn:
            row = conn.execute(query).fetchone()
        return int(row["total"]) if row else 0

    # refresh tokens
    def store_refresh_token(
        self,
        user_id: str,
        token_hash: str,
        expires_at: datetime,
        client: Optional[ClientMeta] = None,
    ) -> Optional[RefreshToken]:
        record = RefreshToken.new(user_id, token_hash, expires_at, client)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, token_hash, expires_at, created_at, client_info)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        user_id,
                        token_hash,
                        expires_at,
                        record.issued_at,
                        json.dumps(record.client_info or {}),
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise TransactionFailure(
                "refresh token owner missing", operation="store_refresh_token", cause=str(exc)
            ) from exc
        return record

    def verify_refresh_token(self, token_hash: str) -> Optional[RefreshSession]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT rt.id AS token_id, rt.expires_at AS token_expires_at, u.*
                FROM refresh_tokens rt
                JOIN users u ON u.id = rt.user_id
                WHERE rt.token_hash = %s
                  AND rt.expires_at > now()
                  AND rt.revoked_at IS NULL
                  AND u.is_active
                """,
                (token_hash,),
            ).fetchone()
        if not row:
            return None
        return RefreshSession(
            token_id=str(row["token_id"]),
            user=self._row_to_user(row),
            expires_at=row["token_expires_at"],
        )

    def revoke_refresh_token(self, token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = now()
                WHERE token_hash = %s AND revoked_at IS NULL
                """,
                (token_hash,),
            )
            return cur.rowcount > 0

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = now()
                WHERE user_id = %s AND revoked_at IS NULL
                """,
                (user_id,),
            )
            return cur.rowcount

    # maintenance
    def cleanup_expired(self) -> dict:
        with self._connect() as conn:
            with conn.transaction():
                tokens = conn.execute(
                    "DELETE FROM refresh_tokens WHERE expires_at < now()"
                ).rowcount
                sessions = conn.execute(
                    "DELETE FROM user_sessions WHERE expires_at < now()"
                ).rowcount
        pruned = self.audit.prune()
        return {"refresh_tokens": tokens, "sessions": sessions, "audit_events": pruned}

    def auth_stats(self, days: int = 7) -> List[AuditStat]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT action, success, COUNT(*) AS count, DATE(created_at) AS date
                FROM auth_audit_log
                WHERE created_at > now() - make_interval(days => %s)
                GROUP BY action, success, DATE(created_at)
                ORDER BY date DESC, action
                """,
                (days,),
            ).fetchall()
        return [
            AuditStat(
                action=row["action"],
                success=bool(row["success"]),
                count=int(row["count"]),
                date=str(row["date"]),
            )
            for row in rows
        ]

    def health_check(self) -> dict:
        started = time.monotonic()
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
                row = conn.execute(
                    "SELECT COUNT(*) AS total FROM users WHERE is_active"
                ).fetchone()
        except (StoreUnavailable, psycopg.Error) as exc:
            self.logger.error("db_health_check_failed", error=str(exc))
            return {
                "status": "unhealthy",
                "backend": self.backend,
                "error_type": type(exc).__name__,
            }
        stats = self.pool.get_stats()
        return {
            "status": "healthy",
            "backend": self.backend,
            "active_users": int(row["total"]) if row else 0,
            "latency_ms": round((time.monotonic() - started) * 1000, 2),
            "pool": {
                "size": stats.get("pool_size"),
                "available": stats.get("pool_available"),
                "waiting": stats.get("requests_waiting"),
            },
        }

    # audit sink
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_audit_log (id, user_id, username, action, success, ip_address, user_agent, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.user_id,
                    event.username,
                    event.action,
                    event.success,
                    _inet(event.ip_address),
                    event.user_agent,
                    json.dumps(event.details or {}, default=str),
                    event.created_at,
                ),
            )

    def prune_audit_events(self, older_than: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_audit_log WHERE created_at < %s", (older_than,)
            )
            return cur.rowcount

    def list_audit_events(
        self, *, limit: int = 100, user_id: Optional[str] = None
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            if user_id:
                rows = conn.execute(
                    "SELECT * FROM auth_audit_log WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                    (user_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM auth_audit_log ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [
            AuditEvent(
                id=str(row["id"]),
                user_id=str(row["user_id"]) if row.get("user_id") else None,
                username=row.get("username"),
                action=row["action"],
                success=bool(row["success"]),
                ip_address=str(row["ip_address"]) if row.get("ip_address") else None,
                user_agent=row.get("user_agent"),
                details=parse_json_meta(row.get("details")) or {},
                created_at=row.get("created_at") or utcnow(),
            )
            for row in rows
        ]
