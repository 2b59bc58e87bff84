from enum import Enum
from typing import Optional

from pydantic import BaseModel


class Role(str, Enum):
    MEMBER = "member"
    ASSISTANT_COACH = "assistant_coach"
    COACH = "coach"
    RECEPTION = "reception"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class PlanKind(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    PAY_PER_CLASS = "pay_per_class"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"


class NotificationKind(str, Enum):
    EXPIRE_7D = "expire_7d"
    SESSIONS_LOW = "sessions_low"


class TicketStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"


# Calendar length of each time-bounded plan
PLAN_MONTHS: dict[PlanKind, int] = {
    PlanKind.MONTHLY: 1,
    PlanKind.QUARTERLY: 3,
    PlanKind.YEARLY: 12,
}

# Valid state transitions for the subscription lifecycle
SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, list[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: [SubscriptionStatus.EXPIRED, SubscriptionStatus.CANCELED],
    SubscriptionStatus.EXPIRED: [],
    SubscriptionStatus.CANCELED: [],
}


class Pagination(BaseModel):
    page: int
    limit: int
    total: Optional[int] = None


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    detail: Optional[str] = None
