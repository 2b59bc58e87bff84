"""Subscription schemas shared by the server and the admin frontend."""

from __future__ import annotations

import datetime as dt
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field, UUID4


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class SubscriptionCreate(BaseModel):
    """Admin request to open a subscription.

    ``member_id`` and ``plan_kind`` are deliberately loose here so the
    lifecycle can answer with ``MISSING_MEMBER`` / ``INVALID_PLAN`` instead of
    a generic validation error.
    """
    member_id: Optional[UUID4] = None
    plan_kind: Optional[str] = None
    remaining_classes: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class ClassTopUp(BaseModel):
    count: int = Field(default=5, ge=1, le=500)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class SubscriptionRead(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID4
    member_id: UUID4
    plan_kind: str
    status: str
    start_date: date
    end_date: Optional[date] = None
    remaining_classes: Optional[int] = None
    expired_on: Optional[date] = None
    canceled_at: Optional[datetime] = None
    created_at: datetime


class SubscriptionResponse(BaseModel):
    ok: bool = True
    subscription: SubscriptionRead


class SubscriptionListResponse(BaseModel):
    ok: bool = True
    subscriptions: List[SubscriptionRead] = Field(default_factory=list)


class ExpirySummary(BaseModel):
    ok: bool = True
    date: Optional[dt.date] = None
    time_expired: int = 0
    sessions_expired: int = 0
