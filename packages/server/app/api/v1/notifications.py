"""
Reminder run endpoint.

``dry=1`` previews without writing; ``mark=1`` marks pending tickets sent when
no delivery provider is configured.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import Principal, requires
from app.core.clock import Clock, get_clock
from app.core.database import get_session
from app.core.delivery import DeliveryChannel, get_delivery_channel
from app.core.policy import Operation
from app.services.reminders import compute_due
from atom_shared.schemas.notifications import KindCounts, ReminderRunResult, TicketPreview

router = APIRouter()


def _flag(value: Optional[str]) -> bool:
    return (value or "").lower() in ("1", "true", "yes")


@router.post("/run", response_model=ReminderRunResult)
async def run_reminders(
    dry: Optional[str] = Query(None),
    mark: Optional[str] = Query(None),
    principal: Principal = Depends(requires(Operation.RUN_REMINDERS)),
    clock: Clock = Depends(get_clock),
    channel: Optional[DeliveryChannel] = Depends(get_delivery_channel),
    session: AsyncSession = Depends(get_session),
):
    run = await compute_due(
        session,
        clock.today(),
        dry_run=_flag(dry),
        mark=_flag(mark),
        channel=channel,
        now=clock.now(),
    )
    return ReminderRunResult(
        date=run.date,
        candidates=KindCounts(**run.candidates),
        queued=KindCounts(**run.queued),
        sent=run.sent,
        dry=run.dry,
        marked=run.marked,
        tickets=[
            TicketPreview(
                member_id=t.member_id,
                subscription_id=t.subscription_id,
                kind=t.kind,
                dedupe_key=t.dedupe_key,
                email=t.email,
                subject=t.subject,
            )
            for t in run.tickets
        ],
    )
