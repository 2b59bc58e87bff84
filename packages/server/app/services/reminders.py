"""
Reminder scheduler.

Finds members who need an ``expire_7d`` or ``sessions_low`` email, queues at
most one ticket per dedupe key in the notification ledger and hands pending
tickets to the delivery channel.

Dedupe keys:
- expire_7d:    ``expire_7d:<member>:<subscription>:<end_date>``
- sessions_low: ``sessions_low:<member>:<subscription>:era<class_grants>``

A class top-up bumps ``class_grants``, so a member who runs low again after
buying more classes gets a fresh reminder.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.config import get_settings
from app.core.delivery import DeliveryChannel, DeliveryResult
from app.models.base import utcnow
from app.models.notification import NotificationTicket
from app.models.profile import Profile
from app.models.subscription import Subscription
from atom_shared.schemas.common import NotificationKind, PlanKind, SubscriptionStatus, TicketStatus

log = structlog.get_logger()
settings = get_settings()

EXPIRE = NotificationKind.EXPIRE_7D.value
SESSIONS_LOW = NotificationKind.SESSIONS_LOW.value
QUEUED = TicketStatus.QUEUED.value
SENT = TicketStatus.SENT.value
MARKED_NO_PROVIDER = "MARKED_SENT_NO_PROVIDER"


@dataclass
class Reminder:
    member_id: uuid.UUID
    subscription_id: uuid.UUID
    kind: str
    dedupe_key: str
    email: str
    subject: str
    body: str


@dataclass
class ReminderRun:
    date: date
    candidates: dict[str, int] = field(default_factory=lambda: {EXPIRE: 0, SESSIONS_LOW: 0})
    queued: dict[str, int] = field(default_factory=lambda: {EXPIRE: 0, SESSIONS_LOW: 0})
    sent: int = 0
    dry: bool = False
    marked: bool = False
    tickets: list[Reminder] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Keys and templates
# ---------------------------------------------------------------------------


def expiry_key(sub: Subscription) -> str:
    return f"{EXPIRE}:{sub.member_id}:{sub.id}:{sub.end_date.isoformat()}"


def sessions_low_key(sub: Subscription) -> str:
    return f"{SESSIONS_LOW}:{sub.member_id}:{sub.id}:era{sub.class_grants}"


def expiry_message(name: str, end_date: date, lead_days: int) -> tuple[str, str]:
    subject = f"Your membership expires in {lead_days} days"
    body = (
        f"Hello {name},\n\n"
        f"This is a friendly reminder that your membership will expire in {lead_days} days "
        f"(on {end_date.isoformat()}).\n"
        "If you need any help renewing, just reply to this email or visit the front desk.\n\n"
        "Thank you!"
    )
    return subject, body


def sessions_low_message(name: str, left: int) -> tuple[str, str]:
    subject = f"Only {left} session(s) left"
    body = (
        f"Hello {name},\n\n"
        f"You have only {left} session(s) remaining on your current pack.\n"
        "If you want to top up or have questions, reply to this email or visit the front desk.\n\n"
        "See you soon!"
    )
    return subject, body


# ---------------------------------------------------------------------------
# Candidate selection
# ---------------------------------------------------------------------------


async def _expiring(session: AsyncSession, target: date) -> list[Subscription]:
    result = await session.execute(
        select(Subscription).where(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.plan_kind != PlanKind.PAY_PER_CLASS.value,
            Subscription.end_date == target,
        )
    )
    return list(result.scalars().all())


async def _running_low(session: AsyncSession, threshold: int) -> list[Subscription]:
    result = await session.execute(
        select(Subscription).where(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.plan_kind == PlanKind.PAY_PER_CLASS.value,
            Subscription.remaining_classes <= threshold,
        )
    )
    return list(result.scalars().all())


async def _profiles(session: AsyncSession, member_ids: set[uuid.UUID]) -> dict[uuid.UUID, Profile]:
    if not member_ids:
        return {}
    result = await session.execute(select(Profile).where(Profile.id.in_(member_ids)))
    return {p.id: p for p in result.scalars().all()}


async def _existing_keys(session: AsyncSession, keys: list[str]) -> set[str]:
    if not keys:
        return set()
    result = await session.execute(
        select(NotificationTicket.dedupe_key).where(NotificationTicket.dedupe_key.in_(keys))
    )
    return set(result.scalars().all())


def _insert_if_absent(session: AsyncSession, values: dict):
    dialect = session.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    return (
        insert(NotificationTicket)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["dedupe_key"])
    )


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------


async def compute_due(
    session: AsyncSession,
    current_date: date,
    *,
    dry_run: bool = False,
    mark: bool = False,
    channel: Optional[DeliveryChannel] = None,
    lead_days: Optional[int] = None,
    threshold: Optional[int] = None,
    now: Optional[datetime] = None,
) -> ReminderRun:
    """Queue (or, with ``dry_run``, preview) the reminders due on ``current_date``.

    Running twice for the same date queues each ticket once. A dry run reads
    only. A live run commits the queued tickets before delivering them.
    """
    lead_days = settings.expiry_reminder_days if lead_days is None else lead_days
    threshold = settings.sessions_low_threshold if threshold is None else threshold
    now = now or utcnow()

    run = ReminderRun(date=current_date, dry=dry_run)

    expiring = await _expiring(session, current_date + timedelta(days=lead_days))
    low = await _running_low(session, threshold)
    run.candidates = {EXPIRE: len(expiring), SESSIONS_LOW: len(low)}

    profiles = await _profiles(session, {s.member_id for s in expiring} | {s.member_id for s in low})

    reminders: list[Reminder] = []
    for sub in expiring:
        profile = profiles.get(sub.member_id)
        if profile is None or not profile.email:
            continue
        subject, body = expiry_message(profile.full_name, sub.end_date, lead_days)
        reminders.append(
            Reminder(sub.member_id, sub.id, EXPIRE, expiry_key(sub), profile.email, subject, body)
        )
    for sub in low:
        profile = profiles.get(sub.member_id)
        if profile is None or not profile.email:
            continue
        subject, body = sessions_low_message(profile.full_name, max(sub.remaining_classes or 0, 0))
        reminders.append(
            Reminder(sub.member_id, sub.id, SESSIONS_LOW, sessions_low_key(sub), profile.email, subject, body)
        )

    existing = await _existing_keys(session, [r.dedupe_key for r in reminders])
    fresh = [r for r in reminders if r.dedupe_key not in existing]

    if dry_run:
        run.tickets = fresh
        for r in fresh:
            run.queued[r.kind] += 1
        log.info("reminders.previewed", date=current_date.isoformat(), would_queue=len(fresh))
        return run

    for r in fresh:
        result = await session.execute(
            _insert_if_absent(
                session,
                {
                    "id": uuid.uuid4(),
                    "member_id": r.member_id,
                    "subscription_id": r.subscription_id,
                    "kind": r.kind,
                    "dedupe_key": r.dedupe_key,
                    "email": r.email,
                    "subject": r.subject,
                    "body": r.body,
                    "status": QUEUED,
                    "created_at": now,
                },
            )
        )
        if result.rowcount:
            run.queued[r.kind] += 1
            run.tickets.append(r)
    await session.commit()

    log.info(
        "reminders.queued",
        date=current_date.isoformat(),
        expire_7d=run.queued[EXPIRE],
        sessions_low=run.queued[SESSIONS_LOW],
    )

    if channel is not None:
        run.sent = await deliver_pending(session, channel, now=now)
    elif mark:
        run.sent = await mark_pending_sent(session, now=now)
        run.marked = True

    return run


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


async def deliver_pending(
    session: AsyncSession,
    channel: DeliveryChannel,
    *,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> int:
    """Send queued tickets, each claimed first so overlapping runs never send it twice."""
    now = now or utcnow()
    batch_size = batch_size or settings.reminder_batch_size
    run_id = uuid.uuid4().hex

    result = await session.execute(
        select(NotificationTicket.id)
        .where(NotificationTicket.status == QUEUED, NotificationTicket.claimed_by.is_(None))
        .order_by(NotificationTicket.created_at)
        .limit(batch_size)
    )
    pending = list(result.scalars().all())

    sent = 0
    for ticket_id in pending:
        claim = await session.execute(
            update(NotificationTicket)
            .where(
                NotificationTicket.id == ticket_id,
                NotificationTicket.status == QUEUED,
                NotificationTicket.claimed_by.is_(None),
            )
            .values(claimed_by=run_id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if claim.rowcount != 1:
            continue

        ticket = await session.get(NotificationTicket, ticket_id, populate_existing=True)
        try:
            outcome = await channel.send(ticket.email, ticket.subject, ticket.body)
        except Exception as exc:
            log.warning("reminders.send_raised", ticket_id=str(ticket_id), error=repr(exc))
            outcome = DeliveryResult(ok=False, error=f"SEND_RAISED:{type(exc).__name__}")
        if outcome.ok:
            ticket.status = SENT
            ticket.sent_at = now
            ticket.error = None
            sent += 1
        else:
            # Release the claim so the next run retries
            ticket.error = outcome.error or "SEND_FAILED"
            ticket.claimed_by = None
            log.warning("reminders.send_failed", ticket_id=str(ticket_id), error=ticket.error)
        session.add(ticket)
        await session.commit()

    log.info("reminders.delivered", attempted=len(pending), sent=sent)
    return sent


async def mark_pending_sent(session: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """Test mode without a provider: mark every queued ticket as sent."""
    now = now or utcnow()
    result = await session.execute(
        update(NotificationTicket)
        .where(NotificationTicket.status == QUEUED, NotificationTicket.claimed_by.is_(None))
        .values(status=SENT, sent_at=now, error=MARKED_NO_PROVIDER)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    marked = result.rowcount or 0
    log.info("reminders.marked_sent", count=marked)
    return marked
