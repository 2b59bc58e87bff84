"""
Kiosk check-in endpoint.

Staff scan a member's QR code; the response carries what the kiosk shows:
remaining classes for packs, end date and days left for time-bounded plans.
"""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Principal, requires
from app.core.clock import Clock, get_clock
from app.core.config import get_settings
from app.core.database import get_session
from app.core.policy import Operation
from app.services.checkin import check_in, resolve_member
from atom_shared.schemas.checkin import CheckInRequest, CheckInResult

router = APIRouter()
settings = get_settings()


@router.post("", response_model=CheckInResult)
async def scan(
    body: CheckInRequest,
    principal: Principal = Depends(requires(Operation.CHECK_IN)),
    clock: Clock = Depends(get_clock),
    session: AsyncSession = Depends(get_session),
):
    member = await resolve_member(session, body.code)
    outcome = await check_in(
        session,
        member.id,
        clock.now(),
        tz=settings.timezone,
        scanned_by=principal.id,
        duplicate_window=timedelta(minutes=settings.checkin_duplicate_window_minutes),
    )
    sub = outcome.subscription
    return CheckInResult(
        member_id=outcome.member_id,
        subscription_id=sub.id,
        plan_kind=sub.plan_kind,
        status=sub.status,
        remaining_classes=sub.remaining_classes,
        end_date=sub.end_date,
        days_left=outcome.days_left,
        duplicate=outcome.duplicate,
        checked_in_at=outcome.checked_in_at,
    )
