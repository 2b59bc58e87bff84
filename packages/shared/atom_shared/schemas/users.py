"""Member directory, role administration and session schemas."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, UUID4

from .common import Role


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class MemberSearchRequest(BaseModel):
    q: str = ""
    page: int = 1
    limit: int = 50


class RoleChangeRequest(BaseModel):
    user_id: UUID4
    new_role: Role


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class MemberRead(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID4
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    role: Role
    member_code: Optional[str] = None
    created_at: datetime


class MemberSearchResponse(BaseModel):
    ok: bool = True
    members: List[MemberRead] = Field(default_factory=list)
    page: int
    limit: int
    total: int


class MemberResponse(BaseModel):
    ok: bool = True
    member: MemberRead


class SessionResponse(BaseModel):
    ok: bool = True
    user_id: str
    email: Optional[str] = None
    role: Role
