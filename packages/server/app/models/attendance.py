"""Attendance record (immutable, one per accepted check-in)."""

from datetime import datetime
from typing import Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from .base import UUIDMixin


class AttendanceRecord(UUIDMixin, SQLModel, table=True):
    __tablename__ = "attendance"

    member_id: uuid.UUID = Field(foreign_key="profiles.id", nullable=False, index=True)
    subscription_id: uuid.UUID = Field(foreign_key="subscriptions.id", nullable=False, index=True)
    checked_in_at: datetime = Field(
        nullable=False,
        index=True,
        sa_type=sa.DateTime(timezone=True),
    )
    scanned_by: Optional[uuid.UUID] = None
    source: str = Field(nullable=False, default="kiosk")
