"""PostgresStore unit tests against a scripted fake pool.

No database is needed: every statement is recorded and answered by a
responder function, so the tests check the SQL contract and error mapping.
"""

import importlib.util
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from syncauth.logging import get_logger
from syncauth.service import audit as audit_actions
from syncauth.service.audit import AuditLog
from syncauth.storage.errors import (
    DuplicateEmail,
    DuplicateUsername,
    StoreUnavailable,
    TransactionFailure,
)
from syncauth.storage.models import NewUser
from syncauth.storage.postgres import PostgresStore, _inet


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def execute(self, sql, params=None):
        normalized = " ".join(sql.split())
        self.pool.statements.append((normalized, params, self.pool.in_transaction))
        result = self.pool.responder(normalized, params)
        if isinstance(result, Exception):
            raise result
        return result or FakeCursor()

    @contextmanager
    def transaction(self):
        self.pool.in_transaction = True
        try:
            yield
        finally:
            self.pool.in_transaction = False


class FakePool:
    def __init__(self, responder=None, *, fail_with=None):
        self.responder = responder or (lambda sql, params: None)
        self.fail_with = fail_with
        self.statements = []
        self.in_transaction = False
        self.closed = False

    @contextmanager
    def connection(self):
        if self.fail_with is not None:
            raise self.fail_with
        yield FakeConnection(self)

    def open(self, wait=True, timeout=None):
        if self.fail_with is not None:
            raise self.fail_with

    def close(self):
        self.closed = True

    def get_stats(self):
        return {"pool_size": 2, "pool_available": 1, "requests_waiting": 0}

    def sql(self):
        return [statement for statement, _, _ in self.statements]


class EmailUniqueViolation(errors.UniqueViolation):
    diag = type("Diag", (), {"constraint_name": "users_email_key"})()


class RecordingAudit:
    def __init__(self):
        self.events = []

    def record(self, action, success, **kwargs):
        self.events.append((action, success, kwargs))


def load_setup_script():
    path = Path(__file__).resolve().parent.parent / "scripts" / "setup_database.py"
    module_spec = importlib.util.spec_from_file_location("setup_database", path)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


def make_store(pool, passwords) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://test"
    store.logger = get_logger("test")
    store.passwords = passwords
    store.audit = AuditLog(store, retention_days=90)
    store.connect_timeout = 1.0
    store.pool = pool
    return store


def user_row(user_id=None, username="alice", **overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.UUID(user_id) if user_id else uuid.uuid4(),
        "username": username,
        "email": None,
        "password_hash": "",
        "password_algo": "argon2id",
        "permissions": ["read", "write"],
        "profile": {},
        "is_active": True,
        "created_at": now,
        "updated_at": now,
        "last_login": None,
    }
    row.update(overrides)
    return row


class TestConnectionErrors:
    """Connection failures surface as StoreUnavailable."""

    def test_pool_timeout_maps_to_store_unavailable(self, fast_passwords):
        store = make_store(FakePool(fail_with=PoolTimeout("no connection")), fast_passwords)
        with pytest.raises(StoreUnavailable):
            store.count_users()

    def test_operational_error_maps_to_store_unavailable(self, fast_passwords):
        store = make_store(
            FakePool(fail_with=psycopg.OperationalError("server closed")), fast_passwords
        )
        with pytest.raises(StoreUnavailable):
            store.get_user_by_username("alice")

    def test_initialize_returns_false_and_closes_pool(self, fast_passwords):
        pool = FakePool(fail_with=PoolTimeout("unreachable"))
        store = make_store(pool, fast_passwords)

        assert store.initialize() is False
        assert pool.closed

    def test_initialize_retries_on_a_fresh_pool(self, fast_passwords):
        first = FakePool(fail_with=PoolTimeout("starting up"))
        second = FakePool(fail_with=psycopg.OperationalError("connection refused"))
        third = FakePool(lambda sql, params: FakeCursor([{"oid": "users"}]))
        store = make_store(first, fast_passwords)
        spares = iter([second, third])
        store._new_pool = lambda: next(spares)

        assert store.initialize() is False
        assert store.initialize() is False
        assert store.initialize() is True
        assert store.pool is third
        assert first.closed and second.closed
        assert not third.closed

    def test_setup_script_waits_for_database(self, fast_passwords, monkeypatch):
        script = load_setup_script()
        monkeypatch.setattr(script.time, "sleep", lambda seconds: None)
        pools = [FakePool(fail_with=PoolTimeout("starting up")) for _ in range(2)]
        pools.append(FakePool(lambda sql, params: FakeCursor([{"oid": "users"}])))
        store = make_store(pools[0], fast_passwords)
        spares = iter(pools[1:])
        store._new_pool = lambda: next(spares)

        assert script.wait_for_store(store, retries=3, delay=0) is True
        assert store.pool is pools[2]

    def test_health_check_reports_unhealthy(self, fast_passwords):
        store = make_store(FakePool(fail_with=PoolTimeout("busy")), fast_passwords)
        report = store.health_check()
        assert report["status"] == "unhealthy"
        assert report["error_type"] == "StoreUnavailable"

    def test_audit_write_failure_is_swallowed(self, fast_passwords):
        def responder(sql, params):
            if sql.startswith("INSERT INTO auth_audit_log"):
                return psycopg.errors.ForeignKeyViolation("user gone")
            if sql.startswith("INSERT INTO users"):
                return FakeCursor([user_row(username=params[1])])
            return None

        store = make_store(FakePool(responder), fast_passwords)
        user = store.create_user(NewUser(username="alice", password="secret1"))
        assert user.username == "alice"


class TestSchema:
    def test_schema_created_when_tables_missing(self, fast_passwords):
        pool = FakePool(lambda sql, params: FakeCursor([{"oid": None}]))
        store = make_store(pool, fast_passwords)

        assert store.initialize() is True
        created = [sql for sql, _, in_tx in pool.statements if sql.startswith("CREATE")]
        assert any("CREATE TABLE IF NOT EXISTS user_sessions" in sql for sql in created)
        assert all(in_tx for sql, _, in_tx in pool.statements if sql.startswith("CREATE"))

    def test_schema_left_alone_when_present(self, fast_passwords):
        pool = FakePool(lambda sql, params: FakeCursor([{"oid": "users"}]))
        store = make_store(pool, fast_passwords)

        assert store.initialize() is True
        assert not any(sql.startswith("CREATE") for sql in pool.sql())


class TestUsers:
    """Tests for user statements and constraint mapping."""

    def test_create_user_inserts_hash_and_audits(self, fast_passwords):
        def responder(sql, params):
            if sql.startswith("INSERT INTO users"):
                return FakeCursor([user_row(user_id=params[0], username=params[1], permissions=params[5])])
            return None

        pool = FakePool(responder)
        store = make_store(pool, fast_passwords)

        user = store.create_user(NewUser(username="alice", password="secret1", permissions=["admin"]))

        insert_params = pool.statements[0][1]
        assert insert_params[3].startswith("$argon2id$")
        assert insert_params[4] == "argon2id"
        assert "secret1" not in insert_params
        assert user.permissions == ["admin", "read", "write", "delete"]
        audit = [p for sql, p, _ in pool.statements if sql.startswith("INSERT INTO auth_audit_log")]
        assert audit[0][3] == audit_actions.USER_CREATED

    def test_duplicate_username(self, fast_passwords):
        def responder(sql, params):
            if sql.startswith("INSERT INTO users"):
                return errors.UniqueViolation("duplicate key")
            return None

        store = make_store(FakePool(responder), fast_passwords)
        with pytest.raises(DuplicateUsername):
            store.create_user(NewUser(username="alice", password="secret1"))

    def test_duplicate_email(self, fast_passwords):
        def responder(sql, params):
            if sql.startswith("INSERT INTO users"):
                return EmailUniqueViolation("duplicate key")
            return None

        store = make_store(FakePool(responder), fast_passwords)
        with pytest.raises(DuplicateEmail):
            store.create_user(NewUser(username="alice", password="secret1", email="a@example.com"))

    def test_non_uuid_ids_never_reach_the_database(self, fast_passwords):
        store = make_store(FakePool(fail_with=AssertionError("db touched")), fast_passwords)

        assert store.get_user("alice") is None
        assert store.delete_user("alice") is False
        assert store.deactivate_user("alice") is False
        assert store.update_user("alice", profile={}) is None

    def test_authenticate_unknown_user_audits_failure(self, fast_passwords):
        pool = FakePool(lambda sql, params: None)
        store = make_store(pool, fast_passwords)

        assert store.authenticate("nobody", "secret1") is None
        audit = [p for sql, p, _ in pool.statements if sql.startswith("INSERT INTO auth_audit_log")]
        assert audit[0][3] == audit_actions.LOGIN_FAILED
        assert audit[0][1] is None

    @pytest.mark.parametrize(
        "found,active,password,expected_call,reason",
        [
            (False, True, "secret1", "verify_dummy", "user_not_found"),
            (True, False, "secret1", "verify_dummy", "user_inactive"),
            (True, True, "wrong-password", "verify", "invalid_password"),
        ],
    )
    def test_failed_login_costs_one_comparison_and_one_event(
        self, counting_passwords, found, active, password, expected_call, reason
    ):
        password_hash, _ = counting_passwords.hash("secret1")
        row = user_row(password_hash=password_hash, is_active=active)

        def responder(sql, params):
            if found and sql.startswith("SELECT * FROM users WHERE username"):
                return FakeCursor([row])
            return None

        store = make_store(FakePool(responder), counting_passwords)
        audit = store.audit = RecordingAudit()

        assert store.authenticate("alice", password) is None
        assert counting_passwords.calls == [expected_call]
        assert len(audit.events) == 1
        action, success, kwargs = audit.events[0]
        assert (action, success, kwargs["reason"]) == (audit_actions.LOGIN_FAILED, False, reason)

    def test_successful_login_costs_one_comparison_and_one_event(self, counting_passwords):
        password_hash, _ = counting_passwords.hash("secret1")

        def responder(sql, params):
            if sql.startswith("SELECT * FROM users WHERE username"):
                return FakeCursor([user_row(password_hash=password_hash)])
            return None

        store = make_store(FakePool(responder), counting_passwords)
        audit = store.audit = RecordingAudit()

        assert store.authenticate("alice", "secret1") is not None
        assert counting_passwords.calls == ["verify"]
        assert [action for action, _, _ in audit.events] == [audit_actions.LOGIN_SUCCESS]

    def test_authenticate_success_updates_last_login(self, fast_passwords):
        password_hash, _ = fast_passwords.hash("secret1")
        row = user_row(password_hash=password_hash)

        def responder(sql, params):
            if sql.startswith("SELECT * FROM users WHERE username"):
                return FakeCursor([row])
            return None

        pool = FakePool(responder)
        store = make_store(pool, fast_passwords)

        user = store.authenticate("alice", "secret1")
        assert user is not None
        assert user.last_login is not None
        assert any(sql.startswith("UPDATE users SET last_login") for sql in pool.sql())

    def test_change_password_revokes_tokens_in_one_transaction(self, fast_passwords):
        user_id = str(uuid.uuid4())
        password_hash, _ = fast_passwords.hash("secret1")

        def responder(sql, params):
            if sql.startswith("SELECT id, username, password_hash"):
                return FakeCursor([user_row(user_id=user_id, password_hash=password_hash)])
            if sql.startswith("UPDATE users SET password_hash"):
                return FakeCursor(rowcount=1)
            if sql.startswith("UPDATE refresh_tokens"):
                return FakeCursor(rowcount=2)
            return None

        pool = FakePool(responder)
        store = make_store(pool, fast_passwords)

        assert store.change_password(user_id, "secret1", "newsecret") is True
        tx_statements = [sql for sql, _, in_tx in pool.statements if in_tx]
        assert tx_statements[0].startswith("UPDATE users SET password_hash")
        assert tx_statements[1].startswith("UPDATE refresh_tokens SET revoked_at")

    def test_change_password_skips_revocation_when_row_changed(self, fast_passwords):
        user_id = str(uuid.uuid4())
        password_hash, _ = fast_passwords.hash("secret1")

        def responder(sql, params):
            if sql.startswith("SELECT id, username, password_hash"):
                return FakeCursor([user_row(user_id=user_id, password_hash=password_hash)])
            if sql.startswith("UPDATE users SET password_hash"):
                return FakeCursor(rowcount=0)
            return None

        pool = FakePool(responder)
        store = make_store(pool, fast_passwords)
        audit = store.audit = RecordingAudit()

        assert store.change_password(user_id, "secret1", "newsecret") is False
        update = next(s for s in pool.statements if s[0].startswith("UPDATE users SET password_hash"))
        assert "AND is_active AND password_hash = %s" in update[0]
        assert update[1][-1] == password_hash
        assert not any(sql.startswith("UPDATE refresh_tokens") for sql in pool.sql())
        assert [(a, kw["reason"]) for a, _, kw in audit.events] == [
            (audit_actions.PASSWORD_CHANGE_FAILED, "user_changed_concurrently")
        ]

    def test_change_password_rollback_raises_transaction_failure(self, fast_passwords):
        user_id = str(uuid.uuid4())
        password_hash, _ = fast_passwords.hash("secret1")

        def responder(sql, params):
            if sql.startswith("SELECT id, username, password_hash"):
                return FakeCursor([user_row(user_id=user_id, password_hash=password_hash)])
            if sql.startswith("UPDATE users SET password_hash"):
                return FakeCursor(rowcount=1)
            if sql.startswith("UPDATE refresh_tokens"):
                return errors.CheckViolation("constraint failed")
            return None

        store = make_store(FakePool(responder), fast_passwords)
        with pytest.raises(TransactionFailure) as exc:
            store.change_password(user_id, "secret1", "newsecret")
        assert exc.value.operation == "change_password"

    def test_delete_user_removes_dependents_first(self, fast_passwords):
        user_id = str(uuid.uuid4())

        def responder(sql, params):
            if sql.startswith("DELETE FROM users"):
                return FakeCursor([{"username": "alice"}])
            return None

        pool = FakePool(responder)
        store = make_store(pool, fast_passwords)

        assert store.delete_user(user_id) is True
        deletes = [sql.split(" WHERE")[0] for sql, _, in_tx in pool.statements if in_tx]
        assert deletes == [
            "DELETE FROM refresh_tokens",
            "DELETE FROM auth_audit_log",
            "DELETE FROM user_sessions",
            "DELETE FROM users",
        ]
        audit = [p for sql, p, _ in pool.statements if sql.startswith("INSERT INTO auth_audit_log")]
        assert audit[0][1] is None
        assert user_id in audit[0][7]


class TestRefreshTokens:
    """Tests for refresh-token persistence."""

    def test_verify_returns_session_with_owner(self, fast_passwords):
        user_id = str(uuid.uuid4())
        expires = datetime.now(timezone.utc) + timedelta(days=1)

        def responder(sql, params):
            if "FROM refresh_tokens rt" in sql:
                row = user_row(user_id=user_id)
                row.update({"token_id": uuid.uuid4(), "token_expires_at": expires})
                return FakeCursor([row])
            return None

        pool = FakePool(responder)
        store = make_store(pool, fast_passwords)

        session = store.verify_refresh_token("abc")
        assert session.user.id == user_id
        assert session.expires_at == expires
        sql = pool.sql()[0]
        assert "rt.revoked_at IS NULL" in sql
        assert "rt.expires_at > now()" in sql

    def test_verify_unknown_hash(self, fast_passwords):
        store = make_store(FakePool(), fast_passwords)
        assert store.verify_refresh_token("abc") is None

    def test_revoke_reports_whether_anything_changed(self, fast_passwords):
        counts = iter([1, 0])

        def responder(sql, params):
            return FakeCursor(rowcount=next(counts))

        pool = FakePool(responder)
        store = make_store(pool, fast_passwords)

        assert store.revoke_refresh_token("abc") is True
        assert store.revoke_refresh_token("abc") is False
        assert all("revoked_at IS NULL" in sql for sql in pool.sql())

    def test_store_for_missing_user_is_transaction_failure(self, fast_passwords):
        def responder(sql, params):
            return errors.ForeignKeyViolation("no such user")

        store = make_store(FakePool(responder), fast_passwords)
        with pytest.raises(TransactionFailure):
            store.store_refresh_token(
                str(uuid.uuid4()), "abc", datetime.now(timezone.utc) + timedelta(days=1)
            )


class TestMaintenance:
    def test_cleanup_expired_counts_and_prunes(self, fast_passwords):
        def responder(sql, params):
            if sql.startswith("DELETE FROM refresh_tokens"):
                return FakeCursor(rowcount=3)
            if sql.startswith("DELETE FROM user_sessions"):
                return FakeCursor(rowcount=1)
            if sql.startswith("DELETE FROM auth_audit_log"):
                return FakeCursor(rowcount=5)
            return None

        store = make_store(FakePool(responder), fast_passwords)
        assert store.cleanup_expired() == {"refresh_tokens": 3, "sessions": 1, "audit_events": 5}

    def test_auth_stats(self, fast_passwords):
        def responder(sql, params):
            return FakeCursor(
                [{"action": "login_success", "success": True, "count": 4, "date": "2024-05-01"}]
            )

        store = make_store(FakePool(responder), fast_passwords)
        [stat] = store.auth_stats(7)
        assert stat.action == "login_success"
        assert stat.count == 4


@pytest.mark.parametrize(
    "value,expected",
    [("10.0.0.1", "10.0.0.1"), ("::1", "::1"), ("testclient", None), (None, None)],
)
def test_inet(value, expected):
    assert _inet(value) == expected
