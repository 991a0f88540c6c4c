import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="syncauth_test_")
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_FILE_STORE", "true")
os.environ.setdefault("USERS_FILE", os.path.join(_test_tmp_dir, "users.json"))
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("CLEANUP_INTERVAL_SECONDS", "0")
os.environ.pop("DATABASE_URL", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from syncauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from syncauth.storage.common import PasswordManager  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Each test gets its own users file so the seeded admin starts fresh
    monkeypatch.setenv("USERS_FILE", str(tmp_path / "runtime" / "users.json"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def fast_passwords():
    """argon2id with minimal cost parameters so store tests stay quick."""
    return PasswordManager(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


class CountingPasswordManager(PasswordManager):
    """Records every hash comparison made during a call."""

    def __init__(self, hasher):
        super().__init__(hasher)
        self.calls = []

    def verify(self, stored_hash, algo, password):
        self.calls.append("verify")
        return super().verify(stored_hash, algo, password)

    def verify_dummy(self, password):
        self.calls.append("verify_dummy")
        super().verify_dummy(password)


@pytest.fixture
def counting_passwords():
    return CountingPasswordManager(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
