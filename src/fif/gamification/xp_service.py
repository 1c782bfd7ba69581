"""XP award service: locked read-modify-write, append-only ledger, level-up detection."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fif.database import is_retryable_conflict
from fif.db.models import (
    AchievementDefinition,
    PendingXPAward,
    UserAchievement,
    UserGamification,
    XPLedger,
)
from fif.gamification.level_thresholds import calculate_level, level_title
from fif.redis_client import queue_event

logger = logging.getLogger(__name__)

XP_SOURCES = ("task_complete", "lesson_complete", "achievement")


async def get_or_create_gamification(
    db: AsyncSession,
    user_id: int,
    *,
    for_update: bool = False,
) -> UserGamification:
    """Get or create the denormalized counter row for a user.

    With ``for_update`` the row is locked until the surrounding transaction
    ends, serializing concurrent awards for the same user.
    """
    stmt = select(UserGamification).where(UserGamification.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    gam = result.scalar_one_or_none()
    if gam is not None:
        return gam

    gam = UserGamification(
        user_id=user_id,
        total_xp=0,
        level=1,
        level_title=level_title(1),
        updated_at=datetime.now(timezone.utc),
    )
    try:
        async with db.begin_nested():
            db.add(gam)
    except IntegrityError:
        # Another transaction created the row first.
        result = await db.execute(stmt)
        gam = result.scalar_one()
    return gam


async def award_xp(
    db: AsyncSession,
    user_id: int,
    amount: int,
    source: str,
    source_id: str | None = None,
    *,
    description: str | None = None,
    idempotency_key: str | None = None,
) -> dict | None:
    """Award XP to a user. The only code path that changes total_xp.

    Returns {total_xp, level, leveled_up, previous_level}, or None if the
    idempotency key was already used.

    1. Lock user_gamification row
    2. Check idempotency key
    3. Update total_xp and recompute level
    4. Append xp_ledger entry with total_after
    5. If level changed, queue level_up for publishing after commit
    """
    if source not in XP_SOURCES:
        raise ValueError(f"Unknown XP source: {source}")

    gam = await get_or_create_gamification(db, user_id, for_update=True)

    if idempotency_key is not None:
        existing = await db.execute(
            select(XPLedger.id).where(XPLedger.idempotency_key == idempotency_key)
        )
        if existing.scalar_one_or_none() is not None:
            return None

    now = datetime.now(timezone.utc)
    previous_level = gam.level
    new_total = gam.total_xp + amount
    new_level = calculate_level(new_total)

    gam.total_xp = new_total
    gam.level = new_level
    gam.level_title = level_title(new_level)
    gam.updated_at = now

    db.add(XPLedger(
        user_id=user_id,
        amount=amount,
        source=source,
        source_id=source_id,
        description=description,
        total_after=new_total,
        idempotency_key=idempotency_key,
        created_at=now,
    ))
    await db.flush()

    leveled_up = new_level > previous_level
    if leveled_up:
        logger.info("User %s leveled up %d -> %d", user_id, previous_level, new_level)
        queue_event(db, "pubsub:level_up", {
            "user_id": user_id,
            "old_level": previous_level,
            "new_level": new_level,
            "title": gam.level_title,
        })

    return {
        "total_xp": new_total,
        "level": new_level,
        "leveled_up": leveled_up,
        "previous_level": previous_level,
    }


async def award_xp_or_defer(
    db: AsyncSession,
    user_id: int,
    amount: int,
    source: str,
    source_id: str | None,
    *,
    idempotency_key: str,
    description: str | None = None,
) -> int:
    """Award XP inside a savepoint so a failure never undoes the caller's progress.

    On failure the award is recorded in pending_xp_awards for replay and 0
    is returned. Lock conflicts propagate so the whole unit is retried.
    """
    try:
        async with db.begin_nested():
            result = await award_xp(
                db, user_id, amount, source, source_id,
                description=description,
                idempotency_key=idempotency_key,
            )
    except SQLAlchemyError as exc:
        if is_retryable_conflict(exc):
            raise
        logger.exception("XP award failed for user %s (%s), deferring", user_id, idempotency_key)
        await _defer_award(db, user_id, amount, source, source_id, idempotency_key, description, exc)
        return 0

    return amount if result is not None else 0


async def _defer_award(
    db: AsyncSession,
    user_id: int,
    amount: int,
    source: str,
    source_id: str | None,
    idempotency_key: str,
    description: str | None,
    error: Exception,
) -> None:
    try:
        async with db.begin_nested():
            db.add(PendingXPAward(
                user_id=user_id,
                amount=amount,
                source=source,
                source_id=source_id,
                description=description,
                idempotency_key=idempotency_key,
                last_error=str(error)[:1000],
                attempts=1,
                created_at=datetime.now(timezone.utc),
            ))
    except IntegrityError:
        logger.info("Pending XP award %s already recorded", idempotency_key)


async def _credit_achievement_unlock(db: AsyncSession, award: PendingXPAward) -> None:
    definition_id = (
        select(AchievementDefinition.id)
        .where(AchievementDefinition.code == award.source_id)
        .scalar_subquery()
    )
    await db.execute(
        update(UserAchievement)
        .where(UserAchievement.user_id == award.user_id, UserAchievement.achievement_id == definition_id)
        .values(xp_awarded=award.amount)
    )


async def retry_pending_awards(
    db: AsyncSession,
    user_id: int | None = None,
    limit: int = 100,
) -> int:
    """Replay deferred XP awards. Returns the number resolved.

    Replays reuse the original idempotency key, so an award that did land
    before failing is resolved without being granted twice.
    """
    stmt = (
        select(PendingXPAward)
        .where(PendingXPAward.resolved_at.is_(None))
        .order_by(PendingXPAward.id)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    if user_id is not None:
        stmt = stmt.where(PendingXPAward.user_id == user_id)
    result = await db.execute(stmt)
    pending = list(result.scalars())

    resolved = 0
    for award in pending:
        try:
            async with db.begin_nested():
                await award_xp(
                    db, award.user_id, award.amount, award.source, award.source_id,
                    description=award.description,
                    idempotency_key=award.idempotency_key,
                )
        except SQLAlchemyError as exc:
            if is_retryable_conflict(exc):
                raise
            award.attempts += 1
            award.last_error = str(exc)[:1000]
            logger.warning("Pending XP award %s failed again (attempt %d)", award.idempotency_key, award.attempts)
            continue
        award.resolved_at = datetime.now(timezone.utc)
        if award.source == "achievement":
            await _credit_achievement_unlock(db, award)
        resolved += 1

    await db.flush()
    if pending:
        logger.info("Replayed pending XP awards: %d/%d resolved", resolved, len(pending))
    return resolved


async def get_xp_history(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[XPLedger], int]:
    """XP ledger entries, newest first, with the total count."""
    total_result = await db.execute(
        select(func.count()).select_from(XPLedger).where(XPLedger.user_id == user_id)
    )
    total = total_result.scalar_one()

    result = await db.execute(
        select(XPLedger)
        .where(XPLedger.user_id == user_id)
        .order_by(XPLedger.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars()), total
