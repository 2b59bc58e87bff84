"""Reminder run schemas."""

from __future__ import annotations

import datetime as dt
from typing import List

from pydantic import BaseModel, Field, UUID4

from .common import NotificationKind


class KindCounts(BaseModel):
    expire_7d: int = 0
    sessions_low: int = 0


class TicketPreview(BaseModel):
    """A ticket that was (or, in a dry run, would be) queued."""
    member_id: UUID4
    subscription_id: UUID4
    kind: NotificationKind
    dedupe_key: str
    email: str
    subject: str


class ReminderRunResult(BaseModel):
    ok: bool = True
    date: dt.date
    candidates: KindCounts = Field(default_factory=KindCounts)
    queued: KindCounts = Field(default_factory=KindCounts)
    sent: int = 0
    dry: bool = False
    marked: bool = False
    tickets: List[TicketPreview] = Field(default_factory=list)
