"""Redis for best-effort pub/sub events (level-ups, achievement unlocks).

Redis is optional: with an empty ``FIF_REDIS_URL`` no pool is created and
every publish is skipped. Services queue events on their session;
``run_in_transaction`` publishes them once the transaction has committed.
"""

from __future__ import annotations

import json
import logging

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_pool: redis.Redis | None = None

_QUEUED_EVENTS = "fif.queued_events"


async def init_redis(url: str) -> None:
    global _pool  # noqa: PLW0603
    if not url:
        logger.info("Redis URL not set, event publishing disabled")
        _pool = None
        return
    _pool = redis.from_url(  # type: ignore[no-untyped-call]
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )


async def close_redis() -> None:
    global _pool  # noqa: PLW0603
    if _pool is not None:
        await _pool.aclose()
        _pool = None


def get_redis_or_none() -> redis.Redis | None:
    """The shared client, or None when publishing is disabled."""
    return _pool


async def publish_event(client: object, channel: str, payload: dict) -> None:
    """Publish a JSON event on a pub/sub channel. Failures are logged, never raised."""
    if client is None:
        return
    try:
        await client.publish(channel, json.dumps(payload, default=str))  # type: ignore[attr-defined]
    except Exception:
        logger.warning("Failed to publish %s event", channel, exc_info=True)


def queue_event(db: AsyncSession, channel: str, payload: dict) -> None:
    """Hold an event on the session until its transaction commits."""
    db.info.setdefault(_QUEUED_EVENTS, []).append((channel, payload))


def take_queued_events(db: AsyncSession) -> list[tuple[str, dict]]:
    return db.info.pop(_QUEUED_EVENTS, [])


async def publish_events(client: object, events: list[tuple[str, dict]]) -> None:
    for channel, payload in events:
        await publish_event(client, channel, payload)
