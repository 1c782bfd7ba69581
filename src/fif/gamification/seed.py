"""Achievement seed data and idempotent upsert."""

from __future__ import annotations

import logging

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from fif.db.models import AchievementDefinition

logger = logging.getLogger(__name__)

ACHIEVEMENT_SEED_DATA: list[dict] = [
    # Lessons
    {
        "code": "first_lesson",
        "name": "First Steps",
        "description": "Complete your first lesson",
        "icon": "Trophy",
        "requirement_type": "lessons_completed",
        "requirement_value": 1,
        "xp_reward": 50,
        "display_order": 1,
    },
    {
        "code": "lessons_5",
        "name": "Getting Serious",
        "description": "Complete 5 lessons",
        "icon": "BookOpen",
        "requirement_type": "lessons_completed",
        "requirement_value": 5,
        "xp_reward": 75,
        "display_order": 6,
    },
    {
        "code": "lessons_10",
        "name": "Double Digits",
        "description": "Complete 10 lessons",
        "icon": "BookMarked",
        "requirement_type": "lessons_completed",
        "requirement_value": 10,
        "xp_reward": 100,
        "display_order": 7,
    },
    {
        "code": "lessons_25",
        "name": "Quarter Century",
        "description": "Complete 25 lessons",
        "icon": "Award",
        "requirement_type": "lessons_completed",
        "requirement_value": 25,
        "xp_reward": 200,
        "display_order": 8,
    },
    # Languages
    {
        "code": "first_language",
        "name": "Romance Begins",
        "description": "Start learning a language",
        "icon": "Heart",
        "requirement_type": "languages_started",
        "requirement_value": 1,
        "xp_reward": 25,
        "display_order": 2,
    },
    {
        "code": "two_languages",
        "name": "Bilingual Path",
        "description": "Start learning 2 languages",
        "icon": "Languages",
        "requirement_type": "languages_started",
        "requirement_value": 2,
        "xp_reward": 100,
        "display_order": 9,
    },
    {
        "code": "four_languages",
        "name": "Romance Master",
        "description": "Start learning all 4 languages",
        "icon": "Globe",
        "requirement_type": "languages_started",
        "requirement_value": 4,
        "xp_reward": 300,
        "display_order": 10,
    },
    # Streaks
    {
        "code": "streak_7",
        "name": "Weekly Warrior",
        "description": "Maintain a 7-day streak",
        "icon": "Flame",
        "requirement_type": "streak_days",
        "requirement_value": 7,
        "xp_reward": 100,
        "display_order": 3,
    },
    {
        "code": "streak_30",
        "name": "Monthly Master",
        "description": "Maintain a 30-day streak",
        "icon": "Flame",
        "requirement_type": "streak_days",
        "requirement_value": 30,
        "xp_reward": 250,
        "display_order": 4,
    },
    {
        "code": "streak_100",
        "name": "Century Club",
        "description": "Maintain a 100-day streak",
        "icon": "Crown",
        "requirement_type": "streak_days",
        "requirement_value": 100,
        "xp_reward": 500,
        "display_order": 5,
    },
    # Study time
    {
        "code": "hours_10",
        "name": "Dedicated Learner",
        "description": "Study for 10 hours total",
        "icon": "Clock",
        "requirement_type": "time_spent_hours",
        "requirement_value": 10,
        "xp_reward": 100,
        "display_order": 11,
    },
    {
        "code": "hours_100",
        "name": "Time Investor",
        "description": "Study for 100 hours total",
        "icon": "Timer",
        "requirement_type": "time_spent_hours",
        "requirement_value": 100,
        "xp_reward": 500,
        "display_order": 12,
    },
    # XP
    {
        "code": "xp_1000",
        "name": "Rising Star",
        "description": "Earn 1,000 XP",
        "icon": "Star",
        "requirement_type": "total_xp",
        "requirement_value": 1000,
        "xp_reward": 50,
        "display_order": 13,
    },
    {
        "code": "xp_5000",
        "name": "High Achiever",
        "description": "Earn 5,000 XP",
        "icon": "Sparkles",
        "requirement_type": "total_xp",
        "requirement_value": 5000,
        "xp_reward": 100,
        "display_order": 14,
    },
    {
        "code": "xp_10000",
        "name": "XP Legend",
        "description": "Earn 10,000 XP",
        "icon": "Gem",
        "requirement_type": "total_xp",
        "requirement_value": 10000,
        "xp_reward": 200,
        "display_order": 15,
    },
]


def _insert_for(db: AsyncSession):  # type: ignore[no-untyped-def]
    dialect = db.get_bind().dialect.name
    return sqlite_insert if dialect == "sqlite" else pg_insert


async def seed_achievements(db: AsyncSession) -> int:
    """Upsert all achievement definitions. Returns number seeded.

    The caller owns the transaction.
    """
    insert = _insert_for(db)
    seeded = 0
    for data in ACHIEVEMENT_SEED_DATA:
        stmt = insert(AchievementDefinition).values(**data, is_active=True)
        stmt = stmt.on_conflict_do_update(
            index_elements=["code"],
            set_={
                "name": stmt.excluded.name,
                "description": stmt.excluded.description,
                "icon": stmt.excluded.icon,
                "requirement_type": stmt.excluded.requirement_type,
                "requirement_value": stmt.excluded.requirement_value,
                "xp_reward": stmt.excluded.xp_reward,
                "display_order": stmt.excluded.display_order,
            },
        )
        await db.execute(stmt)
        seeded += 1

    logger.info("Seeded %d achievement definitions", seeded)
    return seeded
