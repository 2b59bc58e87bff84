"""
Member directory service: staff search, role administration, password login.
"""

from __future__ import annotations

import re
import uuid
from typing import Optional

import structlog
from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.auth import Principal, verify_password
from app.core.errors import AuthenticationError, AuthorizationError, InputError, NotFoundError
from app.core.policy import can_assign_role, coerce_role
from app.models.profile import Profile
from atom_shared.schemas.common import Role

log = structlog.get_logger()

SEARCH_LIMIT_MAX = 200
PHONE_DIGITS_MIN = 4
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)
PHONE_SEPARATORS = (" ", "-", "+", "(", ")", ".", "/")


def clamp_paging(page: int, limit: int) -> tuple[int, int]:
    return max(page, 1), min(max(limit, 1), SEARCH_LIMIT_MAX)


def _phone_digits(column):
    expr = column
    for sep in PHONE_SEPARATORS:
        expr = func.replace(expr, sep, "")
    return expr


async def search_members(
    session: AsyncSession,
    q: str = "",
    page: int = 1,
    limit: int = 50,
) -> tuple[list[Profile], int, int, int]:
    """Search profiles with the ``member`` role. Returns (rows, page, limit, total).

    Matches first/last name, email, member code and phone as substrings; a
    query with at least four digits also matches phones with separators
    stripped, and a UUID query matches the profile id exactly.
    """
    page, limit = clamp_paging(page, limit)
    q = (q or "").strip()

    conditions = [Profile.role == Role.MEMBER.value]
    if q:
        pattern = f"%{q}%"
        ors = [
            Profile.first_name.ilike(pattern),
            Profile.last_name.ilike(pattern),
            Profile.email.ilike(pattern),
            Profile.member_code.ilike(pattern),
            Profile.phone.ilike(pattern),
        ]
        digits = re.sub(r"\D+", "", q)
        if len(digits) >= PHONE_DIGITS_MIN:
            ors.append(_phone_digits(Profile.phone).like(f"%{digits}%"))
        if UUID_RE.match(q):
            ors.append(Profile.id == uuid.UUID(q))
        conditions.append(or_(*ors))

    total = (
        await session.execute(select(func.count()).select_from(Profile).where(*conditions))
    ).scalar_one()

    result = await session.execute(
        select(Profile)
        .where(*conditions)
        .order_by(Profile.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), page, limit, total


async def change_role(
    session: AsyncSession,
    actor: Principal,
    user_id: uuid.UUID,
    new_role: Role,
) -> Profile:
    """Assign ``new_role`` to a profile on behalf of an admin."""
    if actor.id is not None and actor.id == user_id:
        raise InputError(detail="You cannot change your own role")

    profile = await session.get(Profile, user_id)
    if not profile:
        raise NotFoundError(code="UNKNOWN_MEMBER", detail="Profile not found")

    current = coerce_role(profile.role)
    if not can_assign_role(actor.role, current, new_role):
        raise AuthorizationError(detail="Only a super_admin can grant or revoke admin roles")

    profile.role = new_role.value
    session.add(profile)
    await session.flush()

    log.info(
        "user.role_changed",
        user_id=str(user_id),
        old_role=current.value,
        new_role=new_role.value,
        actor=str(actor.id),
    )
    return profile


async def authenticate(session: AsyncSession, email: str, password: str) -> Profile:
    result = await session.execute(select(Profile).where(Profile.email == email.lower()))
    profile: Optional[Profile] = result.scalar_one_or_none()
    if not profile or not profile.password_hash or not verify_password(password, profile.password_hash):
        log.info("auth.login_failed", email=email)
        raise AuthenticationError(detail="Invalid email or password")
    return profile
