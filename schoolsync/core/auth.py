"""
Authentication for the sync endpoints.

Supports:
- JWT bearer tokens issued by the main API (HS256, shared secret)
- Redis-backed revocation list keyed by token ID
- Principal lookup for the WebSocket handshake (token query parameter)
- Role-based authorization dependencies
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog
from fastapi import Depends, HTTPException
from fastapi.security import APIKeyHeader

from schoolsync.core.config import get_settings
from schoolsync.core.errors import AuthenticationError
from schoolsync.core.redis import get_redis, revoked_key

log = structlog.get_logger()
settings = get_settings()

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)

ROLES = ("admin", "teacher", "student", "parent")


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def create_jwt(
    principal_id: str,
    role: str,
    *,
    expires_delta: timedelta | None = None,
) -> tuple[str, str]:
    """Create a signed JWT. Returns (token, jti)."""
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": str(principal_id),
        "role": role,
        "iat": now,
        "exp": exp,
        "jti": jti,
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, jti


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


# ---------------------------------------------------------------------------
# JWT Revocation (Redis)
# ---------------------------------------------------------------------------

async def revoke_jwt(jti: str, ttl_seconds: int = 3600) -> None:
    """Add a JWT ID to the revocation list in Redis."""
    redis = await get_redis()
    await redis.setex(revoked_key(jti), ttl_seconds, "1")


async def is_jwt_revoked(jti: str) -> bool:
    """Check if a JWT ID has been revoked.

    Redis being unreachable is not treated as a revocation.
    """
    try:
        redis = await get_redis()
        return await redis.exists(revoked_key(jti)) > 0
    except Exception as exc:
        log.warning("auth.revocation_check_failed", jti=jti, error=str(exc))
        return False


# ---------------------------------------------------------------------------
# Principal
# ---------------------------------------------------------------------------

class Principal:
    """An authenticated identity addressable by the connection registry."""

    def __init__(self, principal_id: str, role: str, jti: str | None = None):
        self.id = principal_id
        self.role = role
        self.jti = jti

    def __repr__(self) -> str:
        return f"Principal(id={self.id!r}, role={self.role!r})"


async def authenticate_token(token: Optional[str]) -> Principal:
    """Resolve a bearer token into a Principal.

    Raises AuthenticationError with ``missing=True`` when no token was given.
    """
    if not token:
        raise AuthenticationError("Authentication required", missing=True)

    try:
        payload = decode_jwt(token)
    except jwt.PyJWTError as exc:
        raise AuthenticationError(f"Invalid or expired token: {exc}") from exc

    # Tokens from the legacy Express API carry `id` instead of `sub`.
    principal_id = payload.get("sub") or payload.get("id")
    role = payload.get("role")
    if principal_id is None or not isinstance(role, str):
        raise AuthenticationError("Invalid token payload")
    if role not in ROLES:
        raise AuthenticationError(f"Unknown role: {role}")

    jti = payload.get("jti")
    if jti and await is_jwt_revoked(jti):
        raise AuthenticationError("Session has been revoked")

    return Principal(str(principal_id), role, jti)


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

async def get_principal(
    authorization: Optional[str] = Depends(api_key_header),
) -> Principal:
    """Main authentication dependency: `Authorization: Bearer <jwt>`."""
    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:].strip()
    try:
        return await authenticate_token(token)
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=exc.message)


async def get_optional_principal(
    authorization: Optional[str] = Depends(api_key_header),
) -> Optional[Principal]:
    """Like get_principal, but anonymous/invalid callers resolve to None."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    try:
        return await authenticate_token(authorization[7:].strip())
    except AuthenticationError:
        return None


async def require_admin(
    principal: Principal = Depends(get_principal),
) -> Principal:
    """Requires the admin role."""
    if principal.role != "admin":
        raise HTTPException(status_code=403, detail="Administrator access required")
    return principal
