"""Gamification arq worker: replays XP awards deferred after a failure.

Run with: arq fif.gamification.worker.WorkerSettings
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from arq.connections import RedisSettings
from arq.cron import cron

from fif.config import get_settings
from fif.database import close_db, init_db, run_in_transaction
from fif.gamification.xp_service import retry_pending_awards

logger = logging.getLogger(__name__)


async def gamification_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB and pub/sub connections on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)
    ctx["redis"] = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=10,
    )
    logger.info("Gamification worker started")


async def gamification_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client: aioredis.Redis | None = ctx.get("redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Gamification worker shut down")


async def replay_pending_xp_awards(ctx: dict) -> int:  # type: ignore[type-arg]
    """Scheduled task: grant XP awards that failed after their progress committed."""
    settings = get_settings()
    resolved = await run_in_transaction(
        lambda db: retry_pending_awards(db, limit=settings.pending_award_retry_batch),
        redis=ctx.get("redis"),
    )
    if resolved:
        logger.info("Resolved %d pending XP awards", resolved)
    return resolved


class WorkerSettings:
    """arq worker settings for the gamification worker."""

    functions = [replay_pending_xp_awards]
    cron_jobs = [
        # Every five minutes
        cron(replay_pending_xp_awards, minute=set(range(0, 60, 5)), run_at_startup=True),
    ]
    on_startup = gamification_startup
    on_shutdown = gamification_shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().arq_redis_url)
    max_jobs = 2
    job_timeout = 300
