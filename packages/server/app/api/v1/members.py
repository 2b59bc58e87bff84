"""Member directory search for front-desk staff."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Principal, requires
from app.core.database import get_session
from app.core.policy import Operation
from app.services.users import search_members
from atom_shared.schemas.users import MemberRead, MemberSearchRequest, MemberSearchResponse

router = APIRouter()


@router.post("/search", response_model=MemberSearchResponse)
async def search(
    body: MemberSearchRequest,
    principal: Principal = Depends(requires(Operation.SEARCH_MEMBERS)),
    session: AsyncSession = Depends(get_session),
):
    rows, page, limit, total = await search_members(session, body.q, body.page, body.limit)
    return MemberSearchResponse(
        members=[MemberRead.model_validate(p) for p in rows],
        page=page,
        limit=limit,
        total=total,
    )
