"""Gamification API endpoints: XP, streak, achievements, leaderboard, levels."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fif.auth.dependencies import get_current_user_id
from fif.database import get_session, run_in_transaction
from fif.gamification.achievement_service import (
    check_achievements,
    get_achievement_progress,
    get_achievements,
)
from fif.gamification.leaderboard_service import GLOBAL_SCOPE, get_leaderboard, get_user_rank
from fif.gamification.level_thresholds import LEVEL_THRESHOLDS, get_level_progress
from fif.gamification.schemas import (
    AchievementCheckResponse,
    AchievementProgressResponse,
    AchievementResponse,
    AchievementsResponse,
    AllLevelsResponse,
    LeaderboardEntry,
    LeaderboardResponse,
    LevelEntry,
    StreakResponse,
    UnlockedAchievement,
    UserRank,
    XPHistoryEntry,
    XPHistoryResponse,
    XPResponse,
)
from fif.gamification.streak_service import get_streak
from fif.gamification.xp_service import get_or_create_gamification, get_xp_history
from fif.redis_client import get_redis_or_none

router = APIRouter(prefix="/api/v1/gamification", tags=["Gamification"])


# ── Public endpoints ──


@router.get("/levels", response_model=AllLevelsResponse)
async def list_levels():
    """All level thresholds with titles."""
    levels = []
    previous = 0
    for entry in LEVEL_THRESHOLDS:
        levels.append(LevelEntry(
            level=entry["level"],
            title=entry["title"],
            xp_required=entry["cumulative"] - previous,
            cumulative=entry["cumulative"],
        ))
        previous = entry["cumulative"]
    return AllLevelsResponse(levels=levels)


# ── Authenticated endpoints ──


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def leaderboard(
    scope: str = Query(GLOBAL_SCOPE, max_length=10),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    """Top users by XP, globally or among learners of one language code."""
    entries = await get_leaderboard(db, scope, limit, offset)
    me = await get_user_rank(db, user_id, scope)
    return LeaderboardResponse(
        scope=scope,
        entries=[LeaderboardEntry(**e) for e in entries],
        me=UserRank(**me),
    )


@router.get("/xp", response_model=XPResponse)
async def get_my_xp(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    """Current XP and progress toward the next level."""
    gam = await get_or_create_gamification(db, user_id)
    await db.commit()
    return XPResponse(**get_level_progress(gam.total_xp))


@router.get("/xp/history", response_model=XPHistoryResponse)
async def get_my_xp_history(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    """Paginated XP ledger, newest first."""
    entries, total = await get_xp_history(db, user_id, page, per_page)
    return XPHistoryResponse(
        entries=[XPHistoryEntry.model_validate(e) for e in entries],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/streak", response_model=StreakResponse)
async def get_my_streak(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    return StreakResponse(**await get_streak(db, user_id))


@router.get("/achievements", response_model=AchievementsResponse)
async def get_my_achievements(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    """All achievements with the user's unlock state."""
    items = await get_achievements(db, user_id)
    return AchievementsResponse(
        achievements=[AchievementResponse(**a) for a in items],
        total_unlocked=sum(1 for a in items if a["is_unlocked"]),
        total_available=len(items),
    )


@router.get("/achievements/progress", response_model=AchievementProgressResponse)
async def get_my_achievement_progress(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    """The counters achievement rules are evaluated against."""
    return AchievementProgressResponse(**await get_achievement_progress(db, user_id))


@router.post("/achievements/check", response_model=AchievementCheckResponse)
async def check_my_achievements(
    user_id: int = Depends(get_current_user_id),
):
    """Unlock every achievement the user now satisfies."""
    redis = get_redis_or_none()
    unlocked = await run_in_transaction(lambda db: check_achievements(db, user_id), redis=redis)
    return AchievementCheckResponse(newly_unlocked=[UnlockedAchievement(**u) for u in unlocked])
