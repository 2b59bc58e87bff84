"""Notification ledger (outbox of reminder emails)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin, utcnow


class NotificationTicket(UUIDMixin, SQLModel, table=True):
    __tablename__ = "notification_tickets"

    member_id: uuid.UUID = Field(foreign_key="profiles.id", nullable=False, index=True)
    subscription_id: uuid.UUID = Field(foreign_key="subscriptions.id", nullable=False)
    kind: str = Field(nullable=False)  # expire_7d | sessions_low
    dedupe_key: str = Field(nullable=False, unique=True)
    email: str = Field(nullable=False)
    subject: str = Field(nullable=False)
    body: str = Field(nullable=False)
    status: str = Field(nullable=False, default="queued", index=True)  # queued | sent
    error: Optional[str] = None
    claimed_by: Optional[str] = None  # run id holding the ticket while it is being delivered
    created_at: datetime = Field(
        default_factory=utcnow,
        nullable=False,
        sa_column_kwargs={"server_default": sa.func.now()},
        sa_type=sa.DateTime(timezone=True),
    )
    sent_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
