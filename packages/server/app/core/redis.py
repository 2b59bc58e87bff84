"""
Redis access for the session revocation list.

A logged-out session id is stored under ``atom:session:revoked:<jti>`` and
expires together with the token it revokes, so the list only ever holds
tokens that could still be presented. The client is created on first use and
closed when the application shuts down.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as redis

from app.core.config import get_settings

settings = get_settings()

REVOKED_SESSION_KEY_PREFIX = "atom:session:revoked:"

_client: Optional[redis.Redis] = None


def revoked_session_key(jti: str) -> str:
    return f"{REVOKED_SESSION_KEY_PREFIX}{jti}"


def seconds_until(exp: Optional[int], *, default: int) -> int:
    """TTL for a revocation entry: the token's remaining lifetime, at least one second."""
    if exp is None:
        return default
    remaining = int(exp - datetime.now(timezone.utc).timestamp())
    return max(remaining, 1)


async def get_redis() -> redis.Redis:
    global _client
    if _client is None:
        _client = redis.from_url(settings.redis_url, decode_responses=True)
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
