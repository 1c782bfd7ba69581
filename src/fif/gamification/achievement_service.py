"""Achievement unlocks with at-most-once enforcement and XP rewards."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fif.db.models import (
    AchievementDefinition,
    LessonProgress,
    Streak,
    UserAchievement,
    UserGamification,
    UserLanguage,
)
from fif.gamification.achievement_rules import AchievementStats, evaluate
from fif.gamification.xp_service import award_xp_or_defer, retry_pending_awards
from fif.redis_client import queue_event

logger = logging.getLogger(__name__)


async def load_stats(db: AsyncSession, user_id: int) -> AchievementStats:
    """Snapshot every counter the rules need in a single statement."""
    completed = (
        select(func.count())
        .select_from(LessonProgress)
        .where(LessonProgress.user_id == user_id, LessonProgress.is_completed.is_(True))
        .scalar_subquery()
    )
    languages = (
        select(func.count())
        .select_from(UserLanguage)
        .where(UserLanguage.user_id == user_id)
        .scalar_subquery()
    )
    current_streak = select(Streak.current_streak).where(Streak.user_id == user_id).scalar_subquery()
    longest_streak = select(Streak.longest_streak).where(Streak.user_id == user_id).scalar_subquery()
    total_xp = (
        select(UserGamification.total_xp)
        .where(UserGamification.user_id == user_id)
        .scalar_subquery()
    )
    total_time = (
        select(func.sum(LessonProgress.time_spent_seconds))
        .where(LessonProgress.user_id == user_id)
        .scalar_subquery()
    )

    result = await db.execute(
        select(
            completed,
            languages,
            func.coalesce(current_streak, 0),
            func.coalesce(longest_streak, 0),
            func.coalesce(total_xp, 0),
            func.coalesce(total_time, 0),
        )
    )
    row = result.one()
    return AchievementStats(
        completed_lessons=int(row[0]),
        languages_started=int(row[1]),
        current_streak=int(row[2]),
        longest_streak=int(row[3]),
        total_xp=int(row[4]),
        total_time_seconds=int(row[5]),
    )


async def load_unlocked_ids(db: AsyncSession, user_id: int) -> set[int]:
    result = await db.execute(
        select(UserAchievement.achievement_id).where(UserAchievement.user_id == user_id)
    )
    return set(result.scalars())


async def unlock_achievement(
    db: AsyncSession,
    user_id: int,
    definition: AchievementDefinition,
) -> dict | None:
    """Unlock one achievement. Returns the unlock, or None if already unlocked.

    The unique (user_id, achievement_id) constraint decides races: the losing
    insert rolls back its savepoint and is treated as a no-op.
    """
    now = datetime.now(timezone.utc)
    unlock = UserAchievement(
        user_id=user_id,
        achievement_id=definition.id,
        unlocked_at=now,
        xp_awarded=0,
    )
    try:
        async with db.begin_nested():
            db.add(unlock)
    except IntegrityError:
        logger.debug("Achievement %s already unlocked for user %s", definition.code, user_id)
        return None

    xp_awarded = 0
    if definition.xp_reward > 0:
        xp_awarded = await award_xp_or_defer(
            db, user_id, definition.xp_reward, "achievement", definition.code,
            idempotency_key=f"achievement:{user_id}:{definition.code}",
            description=f'Unlocked achievement: "{definition.name}"',
        )
        # 0 while deferred; set when the pending award is replayed.
        unlock.xp_awarded = xp_awarded
        await db.flush()

    logger.info("User %s unlocked achievement %s", user_id, definition.code)
    queue_event(db, "pubsub:achievement_unlocked", {
        "user_id": user_id,
        "code": definition.code,
        "name": definition.name,
        "xp_reward": definition.xp_reward,
    })

    return {
        "id": definition.id,
        "code": definition.code,
        "name": definition.name,
        "description": definition.description,
        "icon": definition.icon,
        "xp_reward": definition.xp_reward,
        "xp_awarded": xp_awarded,
        "unlocked_at": now,
    }


async def check_achievements(
    db: AsyncSession,
    user_id: int,
) -> list[dict]:
    """Unlock every active achievement the user now satisfies.

    Deferred XP awards for the user are replayed first so the stats
    snapshot reflects everything earned.
    """
    await retry_pending_awards(db, user_id=user_id)

    stats = await load_stats(db, user_id)
    unlocked_ids = await load_unlocked_ids(db, user_id)

    result = await db.execute(
        select(AchievementDefinition)
        .where(AchievementDefinition.is_active.is_(True))
        .order_by(AchievementDefinition.display_order, AchievementDefinition.id)
    )

    newly_unlocked: list[dict] = []
    for definition in result.scalars():
        if definition.id in unlocked_ids:
            continue
        if not evaluate(definition.requirement_type, definition.requirement_value, stats):
            continue
        unlock = await unlock_achievement(db, user_id, definition)
        if unlock is not None:
            newly_unlocked.append(unlock)

    return newly_unlocked


async def get_achievements(db: AsyncSession, user_id: int) -> list[dict]:
    """All active definitions with the user's unlock state."""
    result = await db.execute(
        select(AchievementDefinition, UserAchievement.unlocked_at)
        .outerjoin(
            UserAchievement,
            (UserAchievement.achievement_id == AchievementDefinition.id)
            & (UserAchievement.user_id == user_id),
        )
        .where(AchievementDefinition.is_active.is_(True))
        .order_by(AchievementDefinition.display_order, AchievementDefinition.id)
    )

    return [
        {
            "id": definition.id,
            "code": definition.code,
            "name": definition.name,
            "description": definition.description,
            "icon": definition.icon,
            "requirement_type": definition.requirement_type,
            "requirement_value": definition.requirement_value,
            "xp_reward": definition.xp_reward,
            "is_unlocked": unlocked_at is not None,
            "unlocked_at": unlocked_at,
        }
        for definition, unlocked_at in result.all()
    ]


async def get_achievement_progress(db: AsyncSession, user_id: int) -> dict:
    stats = await load_stats(db, user_id)
    return stats.as_dict()
