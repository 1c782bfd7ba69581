"""Progress API endpoints: task, lesson and batch sync, plus progress reads."""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, Header
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fif.auth.dependencies import get_current_user_id
from fif.database import get_session, run_in_transaction
from fif.gamification.achievement_service import check_achievements
from fif.progress import service
from fif.progress.schemas import (
    BatchItemResult,
    BatchUpdateRequest,
    BatchUpdateResponse,
    LessonDetailResponse,
    LessonProgressResponse,
    LessonProgressUpdate,
    LessonUpdateResponse,
    StreakUpdateResponse,
    TaskProgressResponse,
    TaskProgressUpdate,
    TaskUpdateResponse,
    UserLanguageResponse,
    UserProgressResponse,
    UserStatsResponse,
)
from fif.redis_client import get_redis_or_none

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/progress", tags=["Progress"])

IdempotencyKey = Header(default=None, alias="Idempotency-Key", max_length=64)


async def _unlock_achievements(user_id: int, redis: object) -> list[str]:
    """Re-evaluate achievements after a committed mutation.

    Runs in its own transaction: a failure here never undoes the progress,
    and the next check (or POST /gamification/achievements/check) catches up.
    """
    try:
        unlocked = await run_in_transaction(lambda db: check_achievements(db, user_id), redis=redis)
    except SQLAlchemyError:
        logger.exception("Achievement check failed for user %s", user_id)
        return []
    return [u["code"] for u in unlocked]


def _lesson_response(row) -> LessonProgressResponse | None:  # type: ignore[no-untyped-def]
    return LessonProgressResponse.model_validate(row) if row is not None else None


def _streak_response(streak: dict | None) -> StreakUpdateResponse | None:
    return StreakUpdateResponse(**streak) if streak is not None else None


# ── Mutations ──


@router.post("/lessons/{lesson_id}/tasks/{task_number}", response_model=TaskUpdateResponse)
async def submit_task_progress(
    lesson_id: uuid.UUID,
    task_number: int,
    body: TaskProgressUpdate,
    idempotency_key: str | None = IdempotencyKey,
    user_id: int = Depends(get_current_user_id),
):
    """Merge one task update. Task XP and the lesson bonus are awarded once."""
    redis = get_redis_or_none()
    delta = body.to_delta()
    result = await run_in_transaction(
        lambda db: service.apply_task_progress(
            db, user_id, lesson_id, task_number, delta,
            mutation_id=idempotency_key,
        ),
        redis=redis,
    )

    unlocked = [] if result["duplicate"] else await _unlock_achievements(user_id, redis)
    task = result["task"]
    return TaskUpdateResponse(
        task=TaskProgressResponse.model_validate(task) if task is not None else None,
        lesson=_lesson_response(result["lesson"]),
        xp_awarded=result["xp_awarded"],
        lesson_bonus_awarded=result["lesson_bonus_awarded"],
        streak=_streak_response(result["streak"]),
        duplicate=result["duplicate"],
        achievements_unlocked=unlocked,
    )


@router.post("/lessons/{lesson_id}", response_model=LessonUpdateResponse)
async def submit_lesson_progress(
    lesson_id: uuid.UUID,
    body: LessonProgressUpdate,
    idempotency_key: str | None = IdempotencyKey,
    user_id: int = Depends(get_current_user_id),
):
    """Merge one lesson-level update (time, percent, completion claim)."""
    redis = get_redis_or_none()
    delta = body.to_delta()
    result = await run_in_transaction(
        lambda db: service.apply_lesson_progress(
            db, user_id, lesson_id, delta,
            mutation_id=idempotency_key,
        ),
        redis=redis,
    )

    unlocked = [] if result["duplicate"] else await _unlock_achievements(user_id, redis)
    return LessonUpdateResponse(
        lesson=_lesson_response(result["lesson"]),
        xp_awarded=result["xp_awarded"],
        lesson_bonus_awarded=result["lesson_bonus_awarded"],
        completion_ignored=result["completion_ignored"],
        streak=_streak_response(result["streak"]),
        duplicate=result["duplicate"],
        achievements_unlocked=unlocked,
    )


@router.post("/sync", response_model=BatchUpdateResponse)
async def submit_batch(
    body: BatchUpdateRequest,
    user_id: int = Depends(get_current_user_id),
):
    """Apply queued offline mutations in order, one transaction each."""
    redis = get_redis_or_none()
    outcome = await service.sync_batch(user_id, body.updates, redis=redis)

    results = [BatchItemResult(**r) for r in outcome["results"]]
    applied = any(r.status == "applied" for r in results)
    unlocked = await _unlock_achievements(user_id, redis) if applied else []
    return BatchUpdateResponse(
        results=results,
        total_xp_awarded=outcome["total_xp_awarded"],
        achievements_unlocked=unlocked,
    )


# ── Reads ──


@router.get("", response_model=UserProgressResponse)
async def get_my_progress(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    data = await service.get_user_progress(db, user_id)
    return UserProgressResponse(
        lessons=[LessonProgressResponse.model_validate(r) for r in data["lessons"]],
        tasks=[TaskProgressResponse.model_validate(r) for r in data["tasks"]],
        languages=[UserLanguageResponse.model_validate(r) for r in data["languages"]],
    )


@router.get("/stats", response_model=UserStatsResponse)
async def get_my_stats(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    return UserStatsResponse(**await service.get_user_stats(db, user_id))


@router.get("/lessons/{lesson_id}", response_model=LessonDetailResponse)
async def get_my_lesson_progress(
    lesson_id: uuid.UUID,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
):
    data = await service.get_lesson_progress(db, user_id, lesson_id)
    return LessonDetailResponse(
        lesson=_lesson_response(data["lesson"]),
        tasks=[TaskProgressResponse.model_validate(r) for r in data["tasks"]],
    )
