"""
Kiosk check-in: resolve the scanned member, re-validate their subscription
against the scan date, consume a class when applicable and record attendance.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.errors import InputError, NotFoundError, StateError, StoreConflict
from app.models.attendance import AttendanceRecord
from app.models.profile import Profile
from app.models.subscription import Subscription
from app.services.subscriptions import (
    claim_visit,
    consume_one_class,
    current_subscription,
    is_time_bounded,
    validity_problem,
)

log = structlog.get_logger()

CODE_PREFIXES = ("atom:", "ATOM:")
UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)

# One re-read and reapply after a lost conditional update
MAX_ATTEMPTS = 2


@dataclass
class CheckInOutcome:
    member_id: uuid.UUID
    subscription: Subscription
    checked_in_at: datetime
    scan_date: date
    duplicate: bool = False

    @property
    def days_left(self) -> Optional[int]:
        end = self.subscription.end_date
        if end is None:
            return None
        return (end - self.scan_date).days


def parse_member_code(raw: str) -> Optional[uuid.UUID]:
    """Extract a member id from ``atom:<uuid>`` or a bare uuid; None otherwise."""
    text = (raw or "").strip()
    for prefix in CODE_PREFIXES:
        if text.startswith(prefix):
            text = text[len(prefix):]
            break
    if not UUID_RE.match(text):
        return None
    return uuid.UUID(text)


async def resolve_member(session: AsyncSession, raw: str) -> Profile:
    code = (raw or "").strip()
    if not code:
        raise InputError(detail="Scanned code is empty")

    member_id = parse_member_code(code)
    if member_id is not None:
        profile = await session.get(Profile, member_id)
    else:
        result = await session.execute(select(Profile).where(Profile.qr_code == code))
        profile = result.scalar_one_or_none()

    if profile is None:
        raise NotFoundError(code="UNKNOWN_MEMBER", detail="No member matches the scanned code")
    return profile


async def _recent_visit(
    session: AsyncSession,
    member_id: uuid.UUID,
    scan_timestamp: datetime,
    window: timedelta,
) -> Optional[AttendanceRecord]:
    result = await session.execute(
        select(AttendanceRecord)
        .where(
            AttendanceRecord.member_id == member_id,
            AttendanceRecord.checked_in_at >= scan_timestamp - window,
            AttendanceRecord.checked_in_at <= scan_timestamp,
        )
        .order_by(AttendanceRecord.checked_in_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def check_in(
    session: AsyncSession,
    member_id: uuid.UUID,
    scan_timestamp: datetime,
    *,
    tz: str = "UTC",
    scanned_by: Optional[uuid.UUID] = None,
    duplicate_window: Optional[timedelta] = None,
    source: str = "kiosk",
) -> CheckInOutcome:
    """Validate and record one visit.

    Validity is re-derived from the scan date, so a time-bounded plan that
    ended yesterday is refused even if the sweep has not run yet. The
    consumption (or, for time-bounded plans, a version bump) is a conditional
    update; losing it to a concurrent scan triggers one re-read, after which
    the member's state decides the answer.
    """
    if scan_timestamp.tzinfo is None:
        scan_timestamp = scan_timestamp.replace(tzinfo=timezone.utc)
    scan_timestamp = scan_timestamp.astimezone(timezone.utc)
    scan_date = scan_timestamp.astimezone(ZoneInfo(tz)).date()

    for attempt in range(1, MAX_ATTEMPTS + 1):
        sub = await current_subscription(session, member_id)
        if sub is None:
            raise NotFoundError(code="NO_SUBSCRIPTION", detail="Member has no subscription")

        problem = validity_problem(sub, scan_date)
        if problem:
            log.info(
                "checkin.refused",
                member_id=str(member_id),
                subscription_id=str(sub.id),
                reason=problem,
            )
            raise StateError(detail=problem)

        if duplicate_window:
            previous = await _recent_visit(session, member_id, scan_timestamp, duplicate_window)
            if previous is not None:
                log.info(
                    "checkin.duplicate",
                    member_id=str(member_id),
                    previous_at=previous.checked_in_at.isoformat(),
                )
                return CheckInOutcome(
                    member_id=member_id,
                    subscription=sub,
                    checked_in_at=previous.checked_in_at,
                    scan_date=scan_date,
                    duplicate=True,
                )

        try:
            if is_time_bounded(sub):
                await claim_visit(session, sub)
            else:
                await consume_one_class(session, sub, on_date=scan_date)
        except StoreConflict:
            log.warning("checkin.conflict", member_id=str(member_id), attempt=attempt)
            continue

        record = AttendanceRecord(
            member_id=member_id,
            subscription_id=sub.id,
            checked_in_at=scan_timestamp,
            scanned_by=scanned_by,
            source=source,
        )
        session.add(record)
        await session.flush()

        log.info(
            "checkin.accepted",
            member_id=str(member_id),
            subscription_id=str(sub.id),
            plan_kind=sub.plan_kind,
            remaining=sub.remaining_classes,
        )
        return CheckInOutcome(
            member_id=member_id,
            subscription=sub,
            checked_in_at=scan_timestamp,
            scan_date=scan_date,
        )

    raise StateError(detail="Subscription changed during check-in")
