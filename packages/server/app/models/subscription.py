"""Subscription model.

A member may hold many historical rows but at most one ``active`` row; the
partial unique index backs up the lifecycle's own supersede step.
"""

from datetime import date, datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class Subscription(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (
        sa.Index(
            "uq_subscriptions_one_active_per_member",
            "member_id",
            unique=True,
            postgresql_where=sa.text("status = 'active'"),
            sqlite_where=sa.text("status = 'active'"),
        ),
    )

    member_id: uuid.UUID = Field(foreign_key="profiles.id", nullable=False, index=True)
    plan_kind: str = Field(nullable=False)  # monthly | quarterly | yearly | pay_per_class
    status: str = Field(nullable=False, default="active", index=True)  # active | expired | canceled
    start_date: date = Field(nullable=False)
    end_date: Optional[date] = Field(default=None, index=True)  # null only for pay_per_class
    remaining_classes: Optional[int] = None  # pay_per_class only
    class_grants: int = Field(nullable=False, default=1)
    version: int = Field(nullable=False, default=1)
    expired_on: Optional[date] = None
    canceled_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    created_by: Optional[uuid.UUID] = None
