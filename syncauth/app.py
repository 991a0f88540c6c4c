from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from syncauth.api.error_handling import register_exception_handlers
from syncauth.api.routes import router
from syncauth.config import get_settings
from syncauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0

_cleanup_task: asyncio.Task | None = None


async def _run_periodic_cleanup(interval_seconds: int) -> None:
    """Sweep expired refresh tokens, session rows and stale audit events."""
    from syncauth.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await get_runtime().auth.cleanup_expired()
        except Exception as exc:
            logger.warning("periodic_cleanup_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    from syncauth.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.cleanup_interval_seconds
    if interval > 0:
        _cleanup_task = asyncio.create_task(_run_periodic_cleanup(interval))
    logger.info("startup_complete", backend=runtime.auth.backend)

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Sync Server Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    origins = get_settings().cors_allow_origins
    if origins:
        return origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Use the client's X-Request-ID (or a fresh UUID) as the log correlation ID and echo it."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/auth/"):
        # Token-bearing responses must never be cached
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report credential store health and which backend is active."""
    from syncauth.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        store = await asyncio.wait_for(
            asyncio.to_thread(runtime.auth.health), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store = {"status": "unhealthy", "backend": runtime.auth.backend, "error_type": "timeout"}
    return {
        "status": store.get("status", "unhealthy"),
        "backend": runtime.auth.backend,
        "store": store,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
