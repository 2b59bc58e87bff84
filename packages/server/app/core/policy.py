"""
Role sets and the operation policy table.

The allow-lists live here and nowhere else: every gate and every endpoint
asks ``authorize(principal, operation)`` or one of the ``require_*`` checks
built on top of it.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from atom_shared.schemas.common import Role

ALL_ROLES: frozenset[Role] = frozenset(Role)

STAFF: frozenset[Role] = frozenset(
    {Role.RECEPTION, Role.ASSISTANT_COACH, Role.COACH, Role.ADMIN, Role.SUPER_ADMIN}
)

ADMIN: frozenset[Role] = frozenset({Role.ADMIN, Role.SUPER_ADMIN})

# Roles only a super_admin may grant or take away
PRIVILEGED: frozenset[Role] = ADMIN


class AccessLevel(str, Enum):
    USER = "user"
    STAFF = "staff"
    ADMIN = "admin"


ACCESS_ROLES: dict[AccessLevel, frozenset[Role]] = {
    AccessLevel.USER: ALL_ROLES,
    AccessLevel.STAFF: STAFF,
    AccessLevel.ADMIN: ADMIN,
}


class Operation(str, Enum):
    VIEW_OWN_SUBSCRIPTIONS = "view_own_subscriptions"
    CREATE_SUBSCRIPTION = "create_subscription"
    CANCEL_SUBSCRIPTION = "cancel_subscription"
    ADD_CLASSES = "add_classes"
    RUN_EXPIRY_SWEEP = "run_expiry_sweep"
    CHECK_IN = "check_in"
    RUN_REMINDERS = "run_reminders"
    SEARCH_MEMBERS = "search_members"
    CHANGE_ROLE = "change_role"


POLICY: dict[Operation, AccessLevel] = {
    Operation.VIEW_OWN_SUBSCRIPTIONS: AccessLevel.USER,
    Operation.CREATE_SUBSCRIPTION: AccessLevel.ADMIN,
    Operation.CANCEL_SUBSCRIPTION: AccessLevel.ADMIN,
    Operation.ADD_CLASSES: AccessLevel.ADMIN,
    Operation.RUN_EXPIRY_SWEEP: AccessLevel.ADMIN,
    Operation.CHECK_IN: AccessLevel.STAFF,
    Operation.RUN_REMINDERS: AccessLevel.ADMIN,
    Operation.SEARCH_MEMBERS: AccessLevel.STAFF,
    Operation.CHANGE_ROLE: AccessLevel.ADMIN,
}

# The shared scheduler token is not a profile: it may run the daily batches and nothing else
SCHEDULER_OPERATIONS: frozenset[Operation] = frozenset(
    {Operation.RUN_EXPIRY_SWEEP, Operation.RUN_REMINDERS}
)


def coerce_role(value: Optional[str]) -> Role:
    """Map a stored role string to a Role; unknown or missing values mean member."""
    try:
        return Role(value) if value else Role.MEMBER
    except ValueError:
        return Role.MEMBER


def is_staff(role: Role) -> bool:
    return role in STAFF


def is_admin(role: Role) -> bool:
    return role in ADMIN


def can_assign_role(actor_role: Role, current_role: Role, new_role: Role) -> bool:
    """Admins manage members and staff; only a super_admin touches admin roles."""
    if actor_role not in ADMIN:
        return False
    if actor_role == Role.SUPER_ADMIN:
        return True
    return current_role not in PRIVILEGED and new_role not in PRIVILEGED
