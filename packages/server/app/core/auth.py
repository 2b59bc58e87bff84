"""
Authentication and Authorization for Atom Gym.

Supports:
- Email/Password login issuing a signed JWT session (cookie or Bearer header)
- Session revocation list in Redis
- A shared scheduler token for the daily batch endpoints
- Principal resolution (one profile lookup per request)
- Typed authorization decisions over the policy table, and the
  require_user / require_staff / require_admin gates built on them
"""

from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

import bcrypt
import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_session
from app.core.errors import AuthenticationError, AuthorizationError
from app.core.middleware import SESSION_COOKIE
from app.core.policy import (
    ACCESS_ROLES,
    POLICY,
    SCHEDULER_OPERATIONS,
    AccessLevel,
    Operation,
    coerce_role,
)
from app.core.redis import get_redis, revoked_session_key, seconds_until
from app.models.profile import Profile
from atom_shared.schemas.common import Role

log = structlog.get_logger()
settings = get_settings()

bearer_header = APIKeyHeader(name="Authorization", auto_error=False)

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(password: str) -> str:
    """Hash a password using bcrypt with cost factor 12."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=12)).decode()


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against a bcrypt hash."""
    return bcrypt.checkpw(password.encode(), hashed.encode())


# ---------------------------------------------------------------------------
# JWT sessions
# ---------------------------------------------------------------------------

def create_session_token(
    user_id: uuid.UUID,
    *,
    expires_delta: timedelta | None = None,
) -> tuple[str, str]:
    """Create a signed session JWT. Returns (token, jti).

    The role is not embedded: it is read from the profile on every request so
    that an admin's role change applies immediately.
    """
    jti = str(uuid.uuid4())
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.jwt_expire_minutes))
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": exp,
        "jti": jti,
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, jti


def decode_session_token(token: str) -> dict:
    """Decode and verify a session JWT. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


async def revoke_session(jti: str, expires_at: Optional[int] = None) -> None:
    """Add a session id to the revocation list until the token would have expired."""
    redis = await get_redis()
    ttl = seconds_until(expires_at, default=settings.jwt_expire_minutes * 60)
    await redis.setex(revoked_session_key(jti), ttl, "1")


async def is_session_revoked(jti: str) -> bool:
    """Check if a session id has been revoked."""
    redis = await get_redis()
    return await redis.exists(revoked_session_key(jti)) > 0


def generate_csrf_token() -> str:
    """Generate a random CSRF token."""
    return secrets.token_urlsafe(32)


# ---------------------------------------------------------------------------
# Principal
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Principal:
    """The authenticated caller for one request."""

    id: Optional[uuid.UUID]
    email: Optional[str]
    role: Role
    is_scheduler: bool = False

    @classmethod
    def scheduler(cls) -> "Principal":
        return cls(id=None, email=None, role=Role.ADMIN, is_scheduler=True)


async def resolve_principal(
    request: Request,
    authorization: Optional[str] = Depends(bearer_header),
    session: AsyncSession = Depends(get_session),
) -> Optional[Principal]:
    """Resolve the caller from a Bearer token or the session cookie.

    Returns None when there is no usable session; the gates turn that into
    NOT_AUTHENTICATED.
    """
    token: Optional[str] = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:].strip()
        if settings.scheduler_token and secrets.compare_digest(token, settings.scheduler_token):
            return Principal.scheduler()
    else:
        token = request.cookies.get(SESSION_COOKIE)

    if not token:
        return None

    try:
        payload = decode_session_token(token)
        user_id = uuid.UUID(payload["sub"])
    except (jwt.PyJWTError, KeyError, ValueError):
        log.info("auth.session_rejected", reason="invalid_token")
        return None

    jti = payload.get("jti")
    if jti and await is_session_revoked(jti):
        log.info("auth.session_rejected", reason="revoked", user_id=str(user_id))
        return None

    profile = await session.get(Profile, user_id)
    if profile is None:
        log.info("auth.session_rejected", reason="unknown_user", user_id=str(user_id))
        return None

    principal = Principal(id=profile.id, email=profile.email, role=coerce_role(profile.role))
    request.state.principal = principal
    return principal


# ---------------------------------------------------------------------------
# Authorization decisions
# ---------------------------------------------------------------------------

class Decision(str, Enum):
    ALLOWED = "allowed"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"


def decide(
    principal: Optional[Principal],
    level: AccessLevel,
    operation: Optional[Operation] = None,
) -> Decision:
    """Authenticate first, then authorize.

    The scheduler principal passes only for the operations in
    ``SCHEDULER_OPERATIONS``; a bare level check never admits it.
    """
    if principal is None:
        return Decision.NOT_AUTHENTICATED
    if principal.is_scheduler:
        return Decision.ALLOWED if operation in SCHEDULER_OPERATIONS else Decision.FORBIDDEN
    if principal.role not in ACCESS_ROLES[level]:
        return Decision.FORBIDDEN
    return Decision.ALLOWED


def authorize(principal: Optional[Principal], operation: Operation) -> Decision:
    """Look the operation up in the policy table and decide for this caller."""
    return decide(principal, POLICY[operation], operation)


def _enforce(
    principal: Optional[Principal],
    level: AccessLevel,
    operation: Optional[Operation] = None,
) -> Principal:
    decision = decide(principal, level, operation)
    if decision is Decision.NOT_AUTHENTICATED:
        raise AuthenticationError(detail="Authentication required")
    if decision is Decision.FORBIDDEN:
        raise AuthorizationError(detail=f"{level.value.capitalize()} access required")
    return principal


# ---------------------------------------------------------------------------
# Gates (FastAPI dependencies, also callable directly)
# ---------------------------------------------------------------------------

def require_user(
    principal: Optional[Principal] = Depends(resolve_principal),
) -> Principal:
    """Any signed-in profile."""
    return _enforce(principal, AccessLevel.USER)


def require_staff(
    principal: Optional[Principal] = Depends(resolve_principal),
) -> Principal:
    """Reception, coaches and admins."""
    return _enforce(principal, AccessLevel.STAFF)


def require_admin(
    principal: Optional[Principal] = Depends(resolve_principal),
) -> Principal:
    """Admin or super_admin."""
    return _enforce(principal, AccessLevel.ADMIN)


GATES: dict[AccessLevel, Callable[..., Principal]] = {
    AccessLevel.USER: require_user,
    AccessLevel.STAFF: require_staff,
    AccessLevel.ADMIN: require_admin,
}


def _operation_gate(operation: Operation) -> Callable[..., Principal]:
    level = POLICY[operation]

    def gate(principal: Optional[Principal] = Depends(resolve_principal)) -> Principal:
        return _enforce(principal, level, operation)

    gate.__name__ = f"require_{operation.value}"
    gate.__doc__ = GATES[level].__doc__
    return gate


OPERATION_GATES: dict[Operation, Callable[..., Principal]] = {
    operation: _operation_gate(operation) for operation in Operation
}


def requires(operation: Operation) -> Callable[..., Principal]:
    """The gate for ``operation``: its policy level, plus the scheduler allow-list."""
    return OPERATION_GATES[operation]
