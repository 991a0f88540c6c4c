from __future__ import annotations

import threading
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse, urlunparse

from syncauth.config import get_settings, reset_settings_cache
from syncauth.logging import get_logger
from syncauth.service.auth import AuthGateway
from syncauth.service.tokens import TokenClaims
from syncauth.storage.filestore import FileStore
from syncauth.storage.postgres import PostgresStore

logger = get_logger(__name__)

# Receives an accepted sync connection and the claims it authenticated with
SyncHandler = Callable[[Any, Optional[TokenClaims]], Awaitable[None]]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Composition root: builds the candidate stores and the gateway bound to one of them."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_file_store=self.settings.use_file_store,
            database_url=_mask_url_password(self.settings.database_url),
            test_mode=self.settings.test_mode,
        )
        primary: Optional[PostgresStore] = None
        if self.settings.database_url and not self.settings.use_file_store:
            primary = PostgresStore(
                self.settings.database_url,
                min_size=self.settings.db_pool_min_size,
                max_size=self.settings.db_pool_max_size,
                max_idle=self.settings.db_pool_idle_timeout_seconds,
                acquire_timeout=self.settings.db_pool_acquire_timeout_seconds,
                connect_timeout=self.settings.db_connect_timeout_seconds,
                audit_retention_days=self.settings.audit_retention_days,
            )
        fallback = FileStore(self.settings.users_file)
        self.auth = AuthGateway.start(self.settings, primary=primary, fallback=fallback)
        self.sync_handler: Optional[SyncHandler] = None
        logger.info("runtime_init_completed", backend=self.auth.backend)

    @property
    def store(self):
        return self.auth.store

    def set_sync_handler(self, handler: Optional[SyncHandler]) -> None:
        self.sync_handler = handler

    def close(self) -> None:
        self.auth.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
