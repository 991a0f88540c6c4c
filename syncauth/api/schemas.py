from __future__ import annotations

import unicodedata
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bound on nested JSON in free-form profile payloads
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_username(value: str) -> str:
    """NFKC-normalize and strip zero-width characters so lookalike names collide."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned).strip()


def _check_email(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    local, sep, domain = value.rpartition("@")
    if not sep or not local or "." not in domain:
        raise ValueError("invalid email address")
    return value.lower()


def _check_profile(value: Optional[dict]) -> Optional[dict]:
    if value is not None:
        _validate_json_depth(value)
    return value


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "missing_token",
    "invalid_token",
    "expired_token",
    "wrong_token_type",
    "invalid_credentials",
    "forbidden",
    "insufficient_permission",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "service_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class LoginRequest(_CamelModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("username")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_username(value)


class RefreshRequest(_CamelModel):
    refresh_token: str = Field(..., alias="refreshToken", min_length=1)


class LogoutRequest(_CamelModel):
    refresh_token: str = Field(..., alias="refreshToken", min_length=1)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(..., alias="currentPassword", min_length=1, max_length=1024)
    new_password: str = Field(..., alias="newPassword", min_length=1, max_length=1024)


class CreateUserRequest(_CamelModel):
    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=1, max_length=1024)
    email: Optional[str] = Field(None, max_length=255)
    permissions: Optional[List[str]] = None
    profile: Optional[dict] = None

    @field_validator("username")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_username(value)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)

    @field_validator("profile")
    @classmethod
    def _validate_profile(cls, value: Optional[dict]) -> Optional[dict]:
        return _check_profile(value)


class UpdateUserRequest(_CamelModel):
    email: Optional[str] = Field(None, max_length=255)
    permissions: Optional[List[str]] = None
    profile: Optional[dict] = None

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        return _check_email(value)

    @field_validator("profile")
    @classmethod
    def _validate_profile(cls, value: Optional[dict]) -> Optional[dict]:
        return _check_profile(value)


class UserSummary(_CamelModel):
    id: str
    username: str
    email: Optional[str] = None
    permissions: List[str]
    profile: dict = Field(default_factory=dict)
    is_active: bool = Field(True, alias="isActive")
    created_at: Optional[str] = Field(None, alias="createdAt")
    last_login: Optional[str] = Field(None, alias="lastLogin")


class LoginResponse(_CamelModel):
    message: str = "Login successful"
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")
    user: dict


class RefreshResponse(_CamelModel):
    access_token: str = Field(..., alias="accessToken")


class MeResponse(_CamelModel):
    username: str
    permissions: List[str]
    profile: dict = Field(default_factory=dict)


class Pagination(_CamelModel):
    limit: int
    offset: int
    total: int


class UserListResponse(_CamelModel):
    users: List[UserSummary]
    pagination: Pagination


class MessageResponse(_CamelModel):
    message: str
    user_id: Optional[str] = Field(None, alias="userId")
