from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Union

from syncauth.config import Settings
from syncauth.logging import get_logger
from syncauth.storage.common import fingerprint_token
from syncauth.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


class TokenFailure(str, Enum):
    MALFORMED = "malformed"
    SIGNATURE_INVALID = "signature_invalid"
    EXPIRED = "expired"
    WRONG_TYPE = "wrong_type"


@dataclass(frozen=True)
class TokenInvalid:
    reason: TokenFailure

    def __bool__(self) -> bool:
        return False


@dataclass
class TokenClaims:
    sub: str
    username: str
    type: str
    iat: int
    exp: int
    jti: str
    permissions: List[str] = field(default_factory=list)
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenClaims":
        return cls(
            sub=str(payload["sub"]),
            username=str(payload.get("username", "")),
            type=str(payload["type"]),
            iat=int(payload.get("iat", 0)),
            exp=int(payload["exp"]),
            jti=str(payload.get("jti", "")),
            permissions=list(payload.get("permissions") or []),
            raw=payload,
        )


VerifyResult = Union[TokenClaims, TokenInvalid]


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def has_permission(claims: TokenClaims, permission: str) -> bool:
    return "admin" in claims.permissions or permission in claims.permissions


class TokenService:
    """Stateless HS256 signing and verification of access and refresh tokens.

    ``verify`` never raises: every rejection is a ``TokenInvalid`` carrying one
    of the ``TokenFailure`` reasons. Issuer or audience mismatches report
    ``MALFORMED``.
    """

    def __init__(self, settings: Settings, *, clock=time.time) -> None:
        self.settings = settings
        self._secret = (settings.jwt_secret or "").encode()
        self._clock = clock
        self._leeway = settings.clock_skew_leeway_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _issue(self, user: User, token_type: str, ttl_minutes: int, extra: dict) -> str:
        now = int(self._clock())
        payload = {
            "sub": user.id,
            "username": user.username,
            **extra,
            "type": token_type,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": now,
            "exp": now + ttl_minutes * 60,
            "jti": str(uuid.uuid4()),
        }
        return self._encode(payload)

    def issue_access(self, user: User) -> str:
        return self._issue(
            user,
            ACCESS,
            self.settings.access_token_ttl_minutes,
            {"permissions": list(user.permissions)},
        )

    def issue_refresh(self, user: User) -> str:
        return self._issue(user, REFRESH, self.settings.refresh_token_ttl_minutes, {})

    def refresh_expiry(self) -> float:
        """Epoch seconds at which a refresh token issued now would expire."""
        return self._clock() + self.settings.refresh_token_ttl_minutes * 60

    def verify(self, token: Optional[str], expected_type: Optional[str] = None) -> VerifyResult:
        if not token or not isinstance(token, str):
            return TokenInvalid(TokenFailure.MALFORMED)
        parts = token.split(".")
        if len(parts) != 3:
            return TokenInvalid(TokenFailure.MALFORMED)
        header_b64, payload_b64, sig_b64 = parts
        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            return TokenInvalid(TokenFailure.MALFORMED)
        if not isinstance(header, dict) or not isinstance(payload, dict):
            return TokenInvalid(TokenFailure.MALFORMED)
        # Reject anything but HS256 to rule out algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return TokenInvalid(TokenFailure.MALFORMED)
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return TokenInvalid(TokenFailure.SIGNATURE_INVALID)
        if payload.get("iss") != self.settings.jwt_issuer:
            return TokenInvalid(TokenFailure.MALFORMED)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return TokenInvalid(TokenFailure.MALFORMED)
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return TokenInvalid(TokenFailure.MALFORMED)
        if exp_ts <= self._clock() - self._leeway:
            return TokenInvalid(TokenFailure.EXPIRED)
        if not payload.get("sub") or payload.get("type") not in (ACCESS, REFRESH):
            return TokenInvalid(TokenFailure.MALFORMED)
        if expected_type and payload["type"] != expected_type:
            return TokenInvalid(TokenFailure.WRONG_TYPE)
        try:
            return TokenClaims.from_payload(payload)
        except (KeyError, TypeError, ValueError):
            return TokenInvalid(TokenFailure.MALFORMED)

    # Re-exported for callers that only hold the service
    extract_bearer = staticmethod(extract_bearer)
    has_permission = staticmethod(has_permission)
    fingerprint = staticmethod(fingerprint_token)
