"""
Session endpoints.

- Email/Password login issuing a JWT session cookie plus a CSRF cookie
- Logout with server-side revocation
- ``me``: the resolved Principal
"""

from __future__ import annotations

import jwt
import structlog
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import (
    Principal,
    create_session_token,
    decode_session_token,
    generate_csrf_token,
    require_user,
    revoke_session,
)
from app.core.config import get_settings
from app.core.database import get_session
from app.core.middleware import CSRF_COOKIE, SESSION_COOKIE
from app.core.policy import coerce_role
from app.services.users import authenticate
from atom_shared.schemas.users import LoginRequest, SessionResponse

log = structlog.get_logger()
settings = get_settings()
router = APIRouter()

# Cookie config
COOKIE_KWARGS = {
    "secure": not settings.debug,  # allow non-HTTPS in dev
    "samesite": "lax",
    "path": "/",
    "max_age": settings.jwt_expire_minutes * 60,
}


def _set_session_cookies(response: Response, token: str, csrf: str) -> None:
    """Set the session JWT and CSRF cookies on a response."""
    response.set_cookie(key=SESSION_COOKIE, value=token, httponly=True, **COOKIE_KWARGS)
    # JS must read the CSRF cookie to echo it in the header
    response.set_cookie(key=CSRF_COOKIE, value=csrf, httponly=False, **COOKIE_KWARGS)


@router.post("/login", response_model=SessionResponse)
async def login(
    body: LoginRequest,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    """Authenticate with email/password and receive a session cookie."""
    profile = await authenticate(session, body.email, body.password)

    token, _jti = create_session_token(profile.id)
    _set_session_cookies(response, token, generate_csrf_token())

    log.info("auth.login_success", user_id=str(profile.id))
    return SessionResponse(
        user_id=str(profile.id),
        email=profile.email,
        role=coerce_role(profile.role),
    )


@router.post("/logout")
async def logout(request: Request, response: Response):
    """Revoke the current session and clear its cookies."""
    token = request.cookies.get(SESSION_COOKIE)
    if token:
        try:
            payload = decode_session_token(token)
        except jwt.PyJWTError:
            payload = {}
        jti = payload.get("jti")
        if jti:
            await revoke_session(jti, payload.get("exp"))
            log.info("auth.logout", user_id=payload.get("sub"))

    response.delete_cookie(SESSION_COOKIE, path="/")
    response.delete_cookie(CSRF_COOKIE, path="/")
    return {"ok": True}


@router.get("/me", response_model=SessionResponse)
async def me(principal: Principal = Depends(require_user)):
    return SessionResponse(
        user_id=str(principal.id),
        email=principal.email,
        role=principal.role,
    )
