"""Kiosk check-in schemas."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, UUID4


class CheckInRequest(BaseModel):
    # Raw scanner payload: "atom:<uuid>", a bare member id, or a profile QR code
    code: str = ""


class CheckInResult(BaseModel):
    ok: bool = True
    member_id: UUID4
    subscription_id: UUID4
    plan_kind: str
    status: str
    remaining_classes: Optional[int] = None
    end_date: Optional[date] = None
    days_left: Optional[int] = None
    duplicate: bool = False
    checked_in_at: datetime
