"""XP leaderboards, global or restricted to learners of one language."""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fif.db.models import Language, User, UserGamification, UserLanguage

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "global"

_total_xp = func.coalesce(UserGamification.total_xp, 0)
_level = func.coalesce(UserGamification.level, 1)


async def _resolve_language(db: AsyncSession, scope: str) -> uuid.UUID | None:
    result = await db.execute(select(Language.id).where(Language.code == scope))
    return result.scalar_one_or_none()


def _scoped(stmt: Select, language_id: uuid.UUID | None) -> Select:
    if language_id is not None:
        stmt = stmt.join(UserLanguage, UserLanguage.user_id == User.id).where(
            UserLanguage.language_id == language_id
        )
    return stmt


async def get_leaderboard(
    db: AsyncSession,
    scope: str = GLOBAL_SCOPE,
    limit: int = 10,
    offset: int = 0,
) -> list[dict]:
    """Users ordered by total XP. ``scope`` is "global" or a language code.

    An unknown language code yields an empty board.
    """
    language_id = None
    if scope != GLOBAL_SCOPE:
        language_id = await _resolve_language(db, scope)
        if language_id is None:
            return []

    stmt = (
        select(User.id, User.display_name, User.avatar_url, _total_xp.label("total_xp"), _level.label("level"))
        .outerjoin(UserGamification, UserGamification.user_id == User.id)
    )
    stmt = _scoped(stmt, language_id).order_by(_total_xp.desc(), User.id).limit(limit).offset(offset)
    result = await db.execute(stmt)

    return [
        {
            "rank": offset + index + 1,
            "user_id": row.id,
            "display_name": row.display_name,
            "avatar_url": row.avatar_url,
            "total_xp": int(row.total_xp),
            "level": int(row.level),
        }
        for index, row in enumerate(result.all())
    ]


async def get_user_rank(db: AsyncSession, user_id: int, scope: str = GLOBAL_SCOPE) -> dict:
    """1-based rank (ties share a rank) and the size of the board.

    Users outside the board, or an unknown scope, get rank 0.
    """
    language_id = None
    if scope != GLOBAL_SCOPE:
        language_id = await _resolve_language(db, scope)
        if language_id is None:
            return {"rank": 0, "total_users": 0}

    member = _scoped(select(User.id, _total_xp.label("total_xp")), language_id).outerjoin(
        UserGamification, UserGamification.user_id == User.id
    ).where(User.id == user_id)
    row = (await db.execute(member)).one_or_none()

    total_stmt = _scoped(select(func.count(User.id)), language_id)
    total_users = (await db.execute(total_stmt)).scalar_one()

    if row is None:
        return {"rank": 0, "total_users": total_users}

    ahead_stmt = _scoped(
        select(func.count(User.id)).outerjoin(UserGamification, UserGamification.user_id == User.id),
        language_id,
    ).where(_total_xp > row.total_xp)
    ahead = (await db.execute(ahead_stmt)).scalar_one()

    return {"rank": ahead + 1, "total_users": total_users}
