"""
ARQ background tasks: the daily expiry sweep and reminder run.

Both are idempotent per date, so a retried or doubled cron fire is harmless.
Run with ``arq app.tasks.daily.WorkerSettings``.
"""

from __future__ import annotations

import structlog
from arq import cron
from arq.connections import RedisSettings

from app.core.clock import Clock
from app.core.config import get_settings
from app.core.database import create_schema, get_session_context
from app.core.delivery import build_channel
from app.core.logging import configure_logging
from app.services.reminders import compute_due
from app.services.subscriptions import run_expiry_sweep

log = structlog.get_logger()
settings = get_settings()


def _clock(ctx: dict) -> Clock:
    return ctx.get("clock") or Clock(settings.timezone)


async def expire_subscriptions(ctx: dict) -> dict:
    """Transition every due subscription to expired for today's gym-local date."""
    today = _clock(ctx).today()
    async with get_session_context() as session:
        result = await run_expiry_sweep(session, today)
    return {
        "date": today.isoformat(),
        "time_expired": result.time_expired,
        "sessions_expired": result.sessions_expired,
    }


async def send_reminders(ctx: dict) -> dict:
    """Queue today's reminders and deliver them if a provider is configured."""
    clock = _clock(ctx)
    owned = build_channel(settings) if "channel" not in ctx else None
    channel = ctx.get("channel", owned)
    try:
        async with get_session_context() as session:
            run = await compute_due(session, clock.today(), channel=channel, now=clock.now())
    finally:
        if owned is not None:
            await owned.close()
    log.info("worker.reminders_done", date=run.date.isoformat(), sent=run.sent)
    return {"date": run.date.isoformat(), "queued": run.queued, "sent": run.sent}


async def startup(ctx: dict) -> None:
    configure_logging(settings.log_level, settings.log_format)
    log.info("worker.starting", timezone=settings.timezone)
    if settings.create_schema_on_startup:
        await create_schema()


# ARQ worker settings
class WorkerSettings:
    """ARQ worker configuration."""

    functions = [expire_subscriptions, send_reminders]
    cron_jobs = [
        # Sweep just after midnight, reminders once the sweep has settled
        cron(expire_subscriptions, hour={0}, minute={5}),
        cron(send_reminders, hour={8}, minute={0}),
    ]
    on_startup = startup
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
