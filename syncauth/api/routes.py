from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, WebSocket, WebSocketDisconnect

from syncauth.api.schemas import (
    ChangePasswordRequest,
    CreateUserRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    Pagination,
    RefreshRequest,
    RefreshResponse,
    UpdateUserRequest,
    UserListResponse,
    UserSummary,
)
from syncauth.logging import get_logger
from syncauth.service.runtime import get_runtime
from syncauth.service.tokens import TokenClaims, extract_bearer
from syncauth.storage.models import ClientMeta, NewUser

logger = get_logger(__name__)

router = APIRouter()

# Policy violation close code, sent before the sync hand-off
WS_CLOSE_POLICY_VIOLATION = 1008
WS_CLOSE_TRY_AGAIN_LATER = 1013


def _client_meta(request: Request) -> ClientMeta:
    forwarded = request.headers.get("X-Forwarded-For")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    if not ip and request.client:
        ip = request.client.host
    return ClientMeta(ip_address=ip, user_agent=request.headers.get("User-Agent"))


def _ok(data) -> Envelope:
    if hasattr(data, "model_dump"):
        data = data.model_dump(by_alias=True)
    return Envelope(status="ok", data=data)


async def get_claims(authorization: Optional[str] = Header(None)) -> TokenClaims:
    runtime = get_runtime()
    return runtime.auth.guard.authenticate(authorization)


def require_permission(permission: str):
    async def _dependency(claims: TokenClaims = Depends(get_claims)) -> TokenClaims:
        return get_runtime().auth.guard.require(claims, permission)

    return _dependency


get_admin_claims = require_permission("admin")


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with username and password and receive an access/refresh token pair.

    Raises:
        401: invalid credentials, regardless of which part was wrong
        503: credential store unavailable
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.username, body.password, _client_meta(request))
    return _ok(
        LoginResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            user={"username": result.user.username, "permissions": result.user.permissions},
        )
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    """Exchange a refresh token for a new access token."""
    runtime = get_runtime()
    access_token = await runtime.auth.refresh(body.refresh_token, _client_meta(request))
    return _ok(RefreshResponse(access_token=access_token))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token, _client_meta(request))
    return _ok(MessageResponse(message="Logged out successfully"))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    claims: TokenClaims = Depends(get_claims),
):
    """Change the caller's password; every refresh token they hold is revoked."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        claims.sub, body.current_password, body.new_password, _client_meta(request)
    )
    return _ok(MessageResponse(message="Password changed successfully"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: TokenClaims = Depends(get_claims)):
    runtime = get_runtime()
    return _ok(MeResponse(**await runtime.auth.me(claims)))


@router.get("/auth/users", response_model=Envelope, tags=["admin"])
async def list_users(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    claims: TokenClaims = Depends(get_admin_claims),
):
    runtime = get_runtime()
    users, total = await runtime.auth.list_users(limit=limit, offset=offset)
    return _ok(
        UserListResponse(
            users=[UserSummary.model_validate(u.public_view()) for u in users],
            pagination=Pagination(limit=limit, offset=offset, total=total),
        )
    )


@router.post("/auth/users", response_model=Envelope, status_code=201, tags=["admin"])
async def create_user(
    body: CreateUserRequest,
    request: Request,
    claims: TokenClaims = Depends(get_admin_claims),
):
    runtime = get_runtime()
    user = await runtime.auth.create_user(
        NewUser(
            username=body.username,
            password=body.password,
            email=body.email,
            permissions=body.permissions,
            profile=body.profile,
        ),
        _client_meta(request),
    )
    logger.info("user_created_by_admin", user_id=user.id, actor=claims.sub)
    return _ok(UserSummary.model_validate(user.public_view()))


@router.patch("/auth/users/{user_id}", response_model=Envelope, tags=["admin"])
async def update_user(
    body: UpdateUserRequest,
    user_id: str = Path(..., min_length=1),
    claims: TokenClaims = Depends(get_admin_claims),
):
    runtime = get_runtime()
    user = await runtime.auth.update_user(
        user_id, email=body.email, profile=body.profile, permissions=body.permissions
    )
    return _ok(UserSummary.model_validate(user.public_view()))


@router.post("/auth/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def deactivate_user(
    user_id: str = Path(..., min_length=1),
    claims: TokenClaims = Depends(get_admin_claims),
):
    runtime = get_runtime()
    await runtime.auth.deactivate_user(user_id)
    return _ok(MessageResponse(message="User deactivated successfully", user_id=user_id))


@router.delete("/auth/users/{user_id}", response_model=Envelope, tags=["admin"])
async def delete_user(
    user_id: str = Path(..., min_length=1),
    claims: TokenClaims = Depends(get_admin_claims),
):
    """Permanently delete a user and everything that references them."""
    runtime = get_runtime()
    await runtime.auth.delete_user(user_id, actor_id=claims.sub)
    return _ok(MessageResponse(message="User deleted successfully", user_id=user_id))


@router.get("/auth/stats", response_model=Envelope, tags=["admin"])
async def auth_stats(
    days: int = Query(7, ge=1, le=365),
    claims: TokenClaims = Depends(get_admin_claims),
):
    runtime = get_runtime()
    stats = await runtime.auth.auth_stats(days)
    return _ok(
        {
            "days": days,
            "backend": runtime.auth.backend,
            "stats": [
                {"action": s.action, "success": s.success, "count": s.count, "date": s.date}
                for s in stats
            ],
        }
    )


@router.get("/ws/info", response_model=Envelope, tags=["sync"])
async def websocket_info(request: Request):
    runtime = get_runtime()
    required = runtime.settings.require_ws_auth
    scheme = "wss" if request.url.scheme == "https" else "ws"
    return _ok(
        {
            "websocketUrl": f"{scheme}://{request.url.netloc}/sync",
            "authenticationRequired": required,
            "connectionMethod": (
                "Query parameter: ?token=YOUR_JWT_TOKEN or Authorization header: Bearer YOUR_JWT_TOKEN"
                if required
                else "No authentication required"
            ),
        }
    )


@router.websocket("/sync")
async def sync_socket(ws: WebSocket):
    """Authenticate the upgrade once, then hand the connection to the sync handler."""
    runtime = get_runtime()
    token = ws.query_params.get("token") or extract_bearer(ws.headers.get("authorization"))
    claims = runtime.auth.authenticate_websocket(token) if token else None
    if runtime.settings.require_ws_auth and claims is None:
        logger.warning("websocket_auth_failed", has_token=bool(token))
        await ws.close(code=WS_CLOSE_POLICY_VIOLATION, reason="Authentication required")
        return
    await ws.accept()
    handler = runtime.sync_handler
    if handler is None:
        logger.warning("sync_handler_missing")
        await ws.close(code=WS_CLOSE_TRY_AGAIN_LATER, reason="sync unavailable")
        return
    logger.info("websocket_authenticated", user_id=claims.sub if claims else None)
    try:
        await handler(ws, claims)
    except WebSocketDisconnect:
        logger.info("websocket_disconnected", user_id=claims.sub if claims else None)
