"""
Subscription endpoints: creation, expiry sweep, cancellation, class top-up.

- Creation supersedes the member's active subscription
- The sweep is callable by admins and by the scheduler token
- Every state change goes through the lifecycle service's conditional updates
"""

from __future__ import annotations

import uuid
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Principal, requires
from app.core.clock import Clock, get_clock
from app.core.database import get_session
from app.core.policy import Operation
from app.services import subscriptions as lifecycle
from atom_shared.schemas.subscriptions import (
    ClassTopUp,
    ExpirySummary,
    SubscriptionCreate,
    SubscriptionRead,
    SubscriptionResponse,
)

router = APIRouter()


@router.post("", response_model=SubscriptionResponse, status_code=201)
async def create_subscription(
    body: SubscriptionCreate,
    principal: Principal = Depends(requires(Operation.CREATE_SUBSCRIPTION)),
    clock: Clock = Depends(get_clock),
    session: AsyncSession = Depends(get_session),
):
    """Open a subscription for a member. Dates default to the gym-local today."""
    sub = await lifecycle.create_subscription(
        session,
        body.member_id,
        body.plan_kind,
        today=clock.today(),
        remaining_classes=body.remaining_classes,
        start_date=body.start_date,
        end_date=body.end_date,
        actor_id=principal.id,
        now=clock.now(),
    )
    return SubscriptionResponse(subscription=SubscriptionRead.model_validate(sub))


@router.post("/expire", response_model=ExpirySummary)
async def run_expiry_sweep(
    on: Optional[date] = Query(None, alias="date", description="Sweep as of this date (defaults to today)"),
    principal: Principal = Depends(requires(Operation.RUN_EXPIRY_SWEEP)),
    clock: Clock = Depends(get_clock),
    session: AsyncSession = Depends(get_session),
):
    """Expire every due subscription. Safe to call any number of times."""
    result = await lifecycle.run_expiry_sweep(session, on or clock.today())
    return ExpirySummary(
        date=result.current_date,
        time_expired=result.time_expired,
        sessions_expired=result.sessions_expired,
    )


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    principal: Principal = Depends(requires(Operation.CANCEL_SUBSCRIPTION)),
    clock: Clock = Depends(get_clock),
    session: AsyncSession = Depends(get_session),
):
    sub = await lifecycle.get_subscription_or_404(session, subscription_id)
    sub = await lifecycle.cancel_subscription(session, sub, now=clock.now())
    return SubscriptionResponse(subscription=SubscriptionRead.model_validate(sub))


@router.post("/{subscription_id}/classes", response_model=SubscriptionResponse)
async def add_classes(
    subscription_id: uuid.UUID,
    body: ClassTopUp,
    principal: Principal = Depends(requires(Operation.ADD_CLASSES)),
    session: AsyncSession = Depends(get_session),
):
    """Top up a pay-per-class subscription."""
    sub = await lifecycle.get_subscription_or_404(session, subscription_id)
    sub = await lifecycle.add_classes(session, sub, body.count)
    return SubscriptionResponse(subscription=SubscriptionRead.model_validate(sub))
