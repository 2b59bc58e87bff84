"""
API v1 Router

Every endpoint is gated by exactly one policy-table check before it touches state.
"""

from fastapi import APIRouter
from . import auth, checkin, me, members, notifications, subscriptions, users

router = APIRouter()

router.include_router(auth.router, prefix="/auth", tags=["Authentication"])
router.include_router(subscriptions.router, prefix="/subscriptions", tags=["Subscriptions"])
router.include_router(me.router, prefix="/me", tags=["Me"])
router.include_router(checkin.router, prefix="/checkin", tags=["Check-in"])
router.include_router(notifications.router, prefix="/notifications", tags=["Notifications"])
router.include_router(members.router, prefix="/members", tags=["Members"])
router.include_router(users.router, prefix="/users", tags=["Users"])


@router.get("/", tags=["API"])
async def api_root():
    """API root: returns version and available endpoints."""
    return {
        "api": "v1",
        "version": "0.1.0",
        "endpoints": [
            "/auth",
            "/subscriptions",
            "/me/subscriptions",
            "/checkin",
            "/notifications/run",
            "/members/search",
            "/users/role",
        ],
    }
