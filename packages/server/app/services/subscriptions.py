"""
Subscription lifecycle: the single source of truth for subscription state.

Handles:
- Plan boundaries (calendar-month arithmetic clamped to month length)
- Creation, superseding any subscription that is still active
- Conditional (optimistic) state updates keyed on status + version
- Consumption of pay-per-class plans, class top-ups, cancellation
- The idempotent expiry sweep
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.config import get_settings
from app.core.errors import InputError, NotFoundError, StateError, StoreConflict
from app.models.base import utcnow
from app.models.profile import Profile
from app.models.subscription import Subscription
from atom_shared.schemas.common import (
    PLAN_MONTHS,
    SUBSCRIPTION_TRANSITIONS,
    PlanKind,
    SubscriptionStatus,
)

log = structlog.get_logger()
settings = get_settings()

ACTIVE = SubscriptionStatus.ACTIVE.value
EXPIRED = SubscriptionStatus.EXPIRED.value
CANCELED = SubscriptionStatus.CANCELED.value
PAY_PER_CLASS = PlanKind.PAY_PER_CLASS.value

# One re-read and retry after losing a conditional update
UPDATE_ATTEMPTS = 2


# ---------------------------------------------------------------------------
# Plan arithmetic
# ---------------------------------------------------------------------------


def parse_plan_kind(value: Optional[str]) -> PlanKind:
    try:
        return PlanKind(value)
    except ValueError:
        raise InputError(
            code="INVALID_PLAN",
            detail=f"Unknown plan kind {value!r}. Expected one of: {[k.value for k in PlanKind]}",
        )


def add_months(start: date, months: int) -> date:
    """Calendar-month addition; Jan 31 + 1 month lands on the last day of February."""
    return start + relativedelta(months=months)


def plan_window(
    plan_kind: PlanKind,
    start_date: date,
    *,
    end_date: Optional[date] = None,
    remaining_classes: Optional[int] = None,
    default_pack: Optional[int] = None,
) -> tuple[Optional[date], Optional[int]]:
    """Return the (end_date, remaining_classes) pair a new subscription gets.

    Fields that do not belong to the plan kind are rejected rather than dropped.
    """
    if plan_kind == PlanKind.PAY_PER_CLASS:
        if end_date is not None:
            raise InputError(detail="end_date does not apply to a pay_per_class subscription")
        classes = remaining_classes if remaining_classes is not None else (
            default_pack if default_pack is not None else settings.default_class_pack
        )
        if classes < 1:
            raise InputError(detail="remaining_classes must be at least 1")
        return None, classes

    if remaining_classes is not None:
        raise InputError(detail=f"remaining_classes does not apply to a {plan_kind.value} subscription")
    if end_date is None:
        end_date = add_months(start_date, PLAN_MONTHS[plan_kind])
    elif end_date < start_date:
        raise InputError(detail="end_date cannot be before start_date")
    return end_date, None


def is_time_bounded(sub: Subscription) -> bool:
    return sub.plan_kind != PAY_PER_CLASS


def due_for_expiry(sub: Subscription, current_date: date) -> bool:
    """The sweep rule for one row."""
    if sub.status != ACTIVE:
        return False
    if is_time_bounded(sub):
        return sub.end_date is not None and current_date > sub.end_date
    return (sub.remaining_classes or 0) <= 0


def validity_problem(sub: Subscription, on_date: date) -> Optional[str]:
    """Re-derive validity for ``on_date``; None means the subscription admits a visit."""
    if sub.status != ACTIVE:
        return sub.status
    if on_date < sub.start_date:
        return "not_started"
    if is_time_bounded(sub):
        if sub.end_date is None or on_date > sub.end_date:
            return "expired"
    elif (sub.remaining_classes or 0) <= 0:
        return "no_classes_left"
    return None


def can_transition(from_status: str, to_status: str) -> bool:
    allowed = SUBSCRIPTION_TRANSITIONS.get(SubscriptionStatus(from_status), [])
    return SubscriptionStatus(to_status) in allowed


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def get_subscription_or_404(
    session: AsyncSession, subscription_id: uuid.UUID
) -> Subscription:
    sub = await session.get(Subscription, subscription_id)
    if not sub:
        raise NotFoundError(code="NO_SUBSCRIPTION", detail="Subscription not found")
    return sub


async def current_subscription(
    session: AsyncSession, member_id: uuid.UUID
) -> Optional[Subscription]:
    """The member's active subscription, else their most recent one.

    Always re-reads the row so a retry after a lost conditional update sees
    the winner's committed state.
    """
    result = await session.execute(
        select(Subscription)
        .where(Subscription.member_id == member_id)
        .order_by(
            (Subscription.status == ACTIVE).desc(),
            Subscription.start_date.desc(),
            Subscription.created_at.desc(),
        )
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def active_subscription(
    session: AsyncSession, member_id: uuid.UUID
) -> Optional[Subscription]:
    result = await session.execute(
        select(Subscription)
        .where(Subscription.member_id == member_id, Subscription.status == ACTIVE)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_member_subscriptions(
    session: AsyncSession, member_id: uuid.UUID
) -> list[Subscription]:
    result = await session.execute(
        select(Subscription)
        .where(Subscription.member_id == member_id)
        .order_by(Subscription.start_date.desc(), Subscription.created_at.desc())
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Conditional updates
# ---------------------------------------------------------------------------


async def _conditional_update(
    session: AsyncSession,
    sub: Subscription,
    *conditions: Any,
    **values: Any,
) -> bool:
    """Apply ``values`` only if the row is still active at the version we read.

    Returns False when another writer got there first; the caller decides
    whether to re-read and retry.
    """
    stmt = (
        update(Subscription)
        .where(
            Subscription.id == sub.id,
            Subscription.status == ACTIVE,
            Subscription.version == sub.version,
            *conditions,
        )
        .values(version=Subscription.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        return False
    await session.refresh(sub)
    return True


async def _update_with_retry(
    session: AsyncSession,
    sub: Subscription,
    precondition: Callable[[Subscription], None],
    *conditions: Any,
    conflict_detail: str,
    **values: Any,
) -> Subscription:
    """Check ``precondition`` and apply the update; on a lost race re-read and try again.

    The precondition raises when the re-read row no longer admits the change,
    so callers see the state error rather than a conflict.
    """
    for _ in range(UPDATE_ATTEMPTS):
        precondition(sub)
        if await _conditional_update(session, sub, *conditions, **values):
            return sub
        await session.refresh(sub)
    raise StoreConflict(detail=conflict_detail)


async def consume_one_class(
    session: AsyncSession, sub: Subscription, *, on_date: date
) -> Subscription:
    """Decrement a pay-per-class plan; the last class flips it to expired in the same update."""
    if sub.plan_kind != PAY_PER_CLASS or sub.status != ACTIVE:
        raise StateError(
            code="NOT_CONSUMABLE",
            detail=f"A {sub.status} {sub.plan_kind} subscription has no classes to consume",
        )

    remaining = sub.remaining_classes or 0
    if remaining <= 0:
        raise StateError(detail="no_classes_left")

    left = remaining - 1
    values: dict[str, Any] = {"remaining_classes": left}
    if left <= 0:
        values.update(status=EXPIRED, expired_on=on_date)

    applied = await _conditional_update(
        session,
        sub,
        Subscription.remaining_classes == remaining,
        Subscription.remaining_classes > 0,
        **values,
    )
    if not applied:
        raise StoreConflict(detail="Subscription changed while consuming a class")

    log.info(
        "subscription.class_consumed",
        subscription_id=str(sub.id),
        remaining=sub.remaining_classes,
        status=sub.status,
    )
    return sub


async def claim_visit(session: AsyncSession, sub: Subscription) -> Subscription:
    """Version bump for time-bounded plans so concurrent scans serialize on the row."""
    if not await _conditional_update(session, sub):
        raise StoreConflict(detail="Subscription changed while recording a visit")
    return sub


# ---------------------------------------------------------------------------
# Admin actions
# ---------------------------------------------------------------------------


async def create_subscription(
    session: AsyncSession,
    member_id: Optional[uuid.UUID],
    plan_kind: Optional[str],
    *,
    today: date,
    remaining_classes: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    actor_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    """Open a new active subscription, superseding the member's current one.

    Renewing a time-bounded plan that is still in force carries its coverage
    over: the new plan runs from today to ``months`` after the later of the
    current end date and the requested start, so an early renewal never
    leaves the member without a valid plan.
    """
    if member_id is None:
        raise InputError(code="MISSING_MEMBER", detail="member_id is required")
    kind = parse_plan_kind(plan_kind)

    member = await session.get(Profile, member_id)
    if not member:
        raise NotFoundError(code="UNKNOWN_MEMBER", detail="Member not found")

    start = start_date or today
    end, classes = plan_window(
        kind, start, end_date=end_date, remaining_classes=remaining_classes
    )

    renewed_from: Optional[date] = None
    previous = await active_subscription(session, member_id)
    if previous is not None and validity_problem(previous, today) is None:
        if kind != PlanKind.PAY_PER_CLASS and end_date is None and is_time_bounded(previous):
            if start > previous.end_date + timedelta(days=1):
                raise InputError(
                    detail=(
                        f"start_date {start.isoformat()} leaves a gap after the current plan "
                        f"ending {previous.end_date.isoformat()}"
                    )
                )
            renewed_from = max(previous.end_date, start)
            end = add_months(renewed_from, PLAN_MONTHS[kind])
            start = min(start, today)
        elif start > today:
            raise InputError(
                detail=(
                    "The member's current plan is still in force; "
                    f"a replacement cannot start after {today.isoformat()}"
                )
            )

    await _supersede_active(session, member_id, now=now or utcnow())

    sub = Subscription(
        member_id=member_id,
        plan_kind=kind.value,
        status=ACTIVE,
        start_date=start,
        end_date=end,
        remaining_classes=classes,
        created_by=actor_id,
    )
    session.add(sub)
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent create for the same member won the partial unique index
        raise StoreConflict(detail="Another active subscription was created concurrently")

    log.info(
        "subscription.created",
        subscription_id=str(sub.id),
        member_id=str(member_id),
        plan_kind=kind.value,
        start_date=start.isoformat(),
        end_date=end.isoformat() if end else None,
        renewed_from=renewed_from.isoformat() if renewed_from else None,
        remaining_classes=classes,
        actor=str(actor_id) if actor_id else None,
    )
    return sub


async def _supersede_active(
    session: AsyncSession, member_id: uuid.UUID, *, now: datetime
) -> None:
    for _ in range(UPDATE_ATTEMPTS):
        previous = await active_subscription(session, member_id)
        if previous is None:
            return
        if await _conditional_update(session, previous, status=CANCELED, canceled_at=now):
            log.info(
                "subscription.superseded",
                subscription_id=str(previous.id),
                member_id=str(member_id),
            )
            return
    raise StoreConflict(detail="Active subscription kept changing while superseding it")


def _require_cancelable(sub: Subscription) -> None:
    if not can_transition(sub.status, CANCELED):
        raise StateError(detail=f"Cannot cancel a subscription that is {sub.status}")


def _require_open_pack(sub: Subscription) -> None:
    if sub.plan_kind != PAY_PER_CLASS or sub.status != ACTIVE:
        raise StateError(
            code="NOT_CONSUMABLE",
            detail="Classes can only be added to an active pay_per_class subscription",
        )


async def cancel_subscription(
    session: AsyncSession, sub: Subscription, *, now: datetime
) -> Subscription:
    await _update_with_retry(
        session,
        sub,
        _require_cancelable,
        conflict_detail="Subscription kept changing while canceling it",
        status=CANCELED,
        canceled_at=now,
    )
    log.info("subscription.canceled", subscription_id=str(sub.id), member_id=str(sub.member_id))
    return sub


async def add_classes(
    session: AsyncSession, sub: Subscription, count: int
) -> Subscription:
    """Top up an active pay-per-class plan and open a new remaining-count era."""
    if count < 1:
        raise InputError(detail="count must be at least 1")
    await _update_with_retry(
        session,
        sub,
        _require_open_pack,
        conflict_detail="Subscription kept changing while adding classes",
        remaining_classes=Subscription.remaining_classes + count,
        class_grants=Subscription.class_grants + 1,
    )
    log.info(
        "subscription.classes_added",
        subscription_id=str(sub.id),
        added=count,
        remaining=sub.remaining_classes,
    )
    return sub


# ---------------------------------------------------------------------------
# Expiry sweep
# ---------------------------------------------------------------------------


@dataclass
class SweepResult:
    current_date: date
    time_expired: int = 0
    sessions_expired: int = 0

    @property
    def total(self) -> int:
        return self.time_expired + self.sessions_expired


async def run_expiry_sweep(session: AsyncSession, current_date: date) -> SweepResult:
    """Expire every due active subscription.

    Both statements are guarded on ``status = 'active'``, so re-running for the
    same date, or two sweeps overlapping, changes nothing the second time and
    the counts only reflect rows this call transitioned.
    """
    time_result = await session.execute(
        update(Subscription)
        .where(
            Subscription.status == ACTIVE,
            Subscription.plan_kind != PAY_PER_CLASS,
            Subscription.end_date < current_date,
        )
        .values(status=EXPIRED, expired_on=current_date, version=Subscription.version + 1)
        .execution_options(synchronize_session=False)
    )
    sessions_result = await session.execute(
        update(Subscription)
        .where(
            Subscription.status == ACTIVE,
            Subscription.plan_kind == PAY_PER_CLASS,
            Subscription.remaining_classes <= 0,
        )
        .values(status=EXPIRED, expired_on=current_date, version=Subscription.version + 1)
        .execution_options(synchronize_session=False)
    )
    summary = SweepResult(
        current_date=current_date,
        time_expired=time_result.rowcount or 0,
        sessions_expired=sessions_result.rowcount or 0,
    )
    log.info(
        "sweep.completed",
        date=current_date.isoformat(),
        time_expired=summary.time_expired,
        sessions_expired=summary.sessions_expired,
    )
    return summary
