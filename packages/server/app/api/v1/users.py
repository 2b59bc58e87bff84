"""Role administration."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Principal, requires
from app.core.database import get_session
from app.core.policy import Operation
from app.services.users import change_role
from atom_shared.schemas.users import MemberRead, MemberResponse, RoleChangeRequest

router = APIRouter()


@router.post("/role", response_model=MemberResponse)
async def set_role(
    body: RoleChangeRequest,
    principal: Principal = Depends(requires(Operation.CHANGE_ROLE)),
    session: AsyncSession = Depends(get_session),
):
    """Change a profile's role. Admin roles are managed by super_admins only."""
    profile = await change_role(session, principal, body.user_id, body.new_role)
    return MemberResponse(member=MemberRead.model_validate(profile))
