"""Self-service endpoints for the signed-in member."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Principal, requires
from app.core.database import get_session
from app.core.policy import Operation
from app.services.subscriptions import list_member_subscriptions
from atom_shared.schemas.subscriptions import SubscriptionListResponse, SubscriptionRead

router = APIRouter()


@router.get("/subscriptions", response_model=SubscriptionListResponse)
async def my_subscriptions(
    principal: Principal = Depends(requires(Operation.VIEW_OWN_SUBSCRIPTIONS)),
    session: AsyncSession = Depends(get_session),
):
    """The caller's subscription history, newest first."""
    if principal.id is None:
        return SubscriptionListResponse()
    subs = await list_member_subscriptions(session, principal.id)
    return SubscriptionListResponse(
        subscriptions=[SubscriptionRead.model_validate(s) for s in subs]
    )
