"""Progress sync service: idempotent merge of client mutations into the ledger store.

Every mutating function expects to run inside one transaction (see
``fif.database.run_in_transaction``) and takes row locks in a fixed order,
lesson before task, so concurrent updates to sibling tasks serialize on the
lesson row and the lesson bonus is decided exactly once.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fif.database import run_in_transaction
from fif.db.models import AppliedMutation, Lesson, LessonProgress, TaskProgress, UserLanguage
from fif.gamification.achievement_service import load_stats
from fif.gamification.level_thresholds import calculate_level
from fif.gamification.streak_service import record_activity
from fif.gamification.xp_service import award_xp_or_defer
from fif.progress.errors import InvalidTaskNumberError, LessonNotFoundError, ProgressValidationError
from fif.progress.merge import (
    LessonDelta,
    LessonSnapshot,
    TaskDelta,
    TaskSnapshot,
    merge_lesson,
    merge_task,
)
from fif.progress.schemas import BatchItem, LessonProgressUpdate, TaskProgressUpdate

logger = logging.getLogger(__name__)

# Listen & Read, Shadowing, Scriptorium, Translation Written, Translation Verbal
TASK_XP: dict[int, int] = {1: 20, 2: 30, 3: 25, 4: 25, 5: 30}

LESSON_BONUS_XP = 50


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------


async def _load_lesson(db: AsyncSession, lesson_id: uuid.UUID) -> Lesson:
    result = await db.execute(select(Lesson).where(Lesson.id == lesson_id))
    lesson = result.scalar_one_or_none()
    if lesson is None:
        raise LessonNotFoundError(lesson_id)
    return lesson


async def _claim_mutation(
    db: AsyncSession,
    user_id: int,
    mutation_id: str,
    lesson_id: uuid.UUID,
    task_number: int | None,
    now: datetime,
) -> bool:
    """Record the mutation id. False if it was already applied."""
    try:
        async with db.begin_nested():
            db.add(AppliedMutation(
                user_id=user_id,
                mutation_id=mutation_id,
                lesson_id=lesson_id,
                task_number=task_number,
                applied_at=now,
            ))
    except IntegrityError:
        logger.info("Mutation %s already applied for user %s", mutation_id, user_id)
        return False
    return True


async def ensure_user_language(
    db: AsyncSession,
    user_id: int,
    language_id: uuid.UUID,
    now: datetime | None = None,
) -> UserLanguage:
    """Get or create the (user, language) row and mark it practiced."""
    if now is None:
        now = datetime.now(timezone.utc)
    stmt = select(UserLanguage).where(
        UserLanguage.user_id == user_id,
        UserLanguage.language_id == language_id,
    )
    row = (await db.execute(stmt)).scalar_one_or_none()
    if row is None:
        row = UserLanguage(user_id=user_id, language_id=language_id, started_at=now, last_practiced_at=now)
        try:
            async with db.begin_nested():
                db.add(row)
            logger.info("User %s started language %s", user_id, language_id)
            return row
        except IntegrityError:
            row = (await db.execute(stmt)).scalar_one()

    row.last_practiced_at = now
    return row


async def _lock_or_create_lesson_progress(
    db: AsyncSession,
    user_id: int,
    lesson: Lesson,
    now: datetime,
) -> LessonProgress:
    stmt = (
        select(LessonProgress)
        .where(LessonProgress.user_id == user_id, LessonProgress.lesson_id == lesson.id)
        .with_for_update()
    )
    row = (await db.execute(stmt)).scalar_one_or_none()
    if row is not None:
        return row

    # First touch of this lesson: the language counts as started.
    await ensure_user_language(db, user_id, lesson.language_id, now)

    row = LessonProgress(
        user_id=user_id,
        lesson_id=lesson.id,
        percent_complete=0,
        time_spent_seconds=0,
        is_completed=False,
        xp_earned=0,
        started_at=now,
        completed_at=None,
        last_accessed_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(row)
    except IntegrityError:
        row = (await db.execute(stmt)).scalar_one()
    return row


async def _lock_or_create_task_progress(
    db: AsyncSession,
    user_id: int,
    lesson_id: uuid.UUID,
    task_number: int,
    now: datetime,
) -> TaskProgress:
    stmt = (
        select(TaskProgress)
        .where(
            TaskProgress.user_id == user_id,
            TaskProgress.lesson_id == lesson_id,
            TaskProgress.task_number == task_number,
        )
        .with_for_update()
    )
    row = (await db.execute(stmt)).scalar_one_or_none()
    if row is not None:
        return row

    row = TaskProgress(
        user_id=user_id,
        lesson_id=lesson_id,
        task_number=task_number,
        percent_complete=0,
        time_spent_seconds=0,
        reps_completed=0,
        sentences_completed=0,
        current_sentence_index=0,
        is_completed=False,
        completed_at=None,
        updated_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(row)
    except IntegrityError:
        row = (await db.execute(stmt)).scalar_one()
    return row


async def _count_completed_tasks(db: AsyncSession, user_id: int, lesson_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count())
        .select_from(TaskProgress)
        .where(
            TaskProgress.user_id == user_id,
            TaskProgress.lesson_id == lesson_id,
            TaskProgress.is_completed.is_(True),
        )
    )
    return result.scalar_one()


async def _get_task_row(
    db: AsyncSession, user_id: int, lesson_id: uuid.UUID, task_number: int
) -> TaskProgress | None:
    result = await db.execute(
        select(TaskProgress).where(
            TaskProgress.user_id == user_id,
            TaskProgress.lesson_id == lesson_id,
            TaskProgress.task_number == task_number,
        )
    )
    return result.scalar_one_or_none()


async def _get_lesson_row(db: AsyncSession, user_id: int, lesson_id: uuid.UUID) -> LessonProgress | None:
    result = await db.execute(
        select(LessonProgress).where(
            LessonProgress.user_id == user_id,
            LessonProgress.lesson_id == lesson_id,
        )
    )
    return result.scalar_one_or_none()


def _task_snapshot(row: TaskProgress) -> TaskSnapshot:
    return TaskSnapshot(
        percent_complete=row.percent_complete,
        time_spent_seconds=row.time_spent_seconds,
        reps_completed=row.reps_completed,
        sentences_completed=row.sentences_completed,
        current_sentence_index=row.current_sentence_index,
        is_completed=row.is_completed,
    )


def _lesson_snapshot(row: LessonProgress) -> LessonSnapshot:
    return LessonSnapshot(
        percent_complete=row.percent_complete,
        time_spent_seconds=row.time_spent_seconds,
        is_completed=row.is_completed,
    )


# ---------------------------------------------------------------------------
# Lesson aggregation
# ---------------------------------------------------------------------------


async def _apply_to_lesson(
    db: AsyncSession,
    user_id: int,
    lesson_row: LessonProgress,
    delta: LessonDelta,
    now: datetime,
) -> tuple[int, bool]:
    """Merge a delta into the locked lesson row; award the bonus on the latch flip.

    Returns (xp_awarded, lesson_bonus_awarded).
    """
    completed = await _count_completed_tasks(db, user_id, lesson_row.lesson_id)
    merged, just_completed = merge_lesson(_lesson_snapshot(lesson_row), delta, completed)

    lesson_row.percent_complete = merged.percent_complete
    lesson_row.time_spent_seconds = merged.time_spent_seconds
    lesson_row.is_completed = merged.is_completed
    lesson_row.last_accessed_at = now

    if not just_completed:
        return 0, False

    lesson_row.completed_at = now
    lesson_row.xp_earned += LESSON_BONUS_XP
    xp = await award_xp_or_defer(
        db, user_id, LESSON_BONUS_XP, "lesson_complete", str(lesson_row.lesson_id),
        idempotency_key=f"lesson:{user_id}:{lesson_row.lesson_id}",
        description="Completed all five tasks",
    )
    logger.info("User %s completed lesson %s", user_id, lesson_row.lesson_id)
    return xp, True


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


async def apply_task_progress(
    db: AsyncSession,
    user_id: int,
    lesson_id: uuid.UUID,
    task_number: int,
    delta: TaskDelta,
    *,
    mutation_id: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Merge one task mutation.

    Task XP is awarded only on the first completion transition, the lesson
    bonus only on the call that completes the fifth task. A repeated
    ``mutation_id`` applies nothing and reports ``duplicate=True``.
    """
    if task_number not in TASK_XP:
        raise InvalidTaskNumberError(task_number)
    if now is None:
        now = datetime.now(timezone.utc)

    lesson = await _load_lesson(db, lesson_id)

    if mutation_id is not None and not await _claim_mutation(
        db, user_id, mutation_id, lesson_id, task_number, now
    ):
        return {
            "task": await _get_task_row(db, user_id, lesson_id, task_number),
            "lesson": await _get_lesson_row(db, user_id, lesson_id),
            "xp_awarded": 0,
            "lesson_bonus_awarded": False,
            "streak": None,
            "duplicate": True,
        }

    lesson_row = await _lock_or_create_lesson_progress(db, user_id, lesson, now)
    task_row = await _lock_or_create_task_progress(db, user_id, lesson_id, task_number, now)

    merged, just_completed = merge_task(_task_snapshot(task_row), delta)
    task_row.percent_complete = merged.percent_complete
    task_row.time_spent_seconds = merged.time_spent_seconds
    task_row.reps_completed = merged.reps_completed
    task_row.sentences_completed = merged.sentences_completed
    task_row.current_sentence_index = merged.current_sentence_index
    task_row.is_completed = merged.is_completed
    task_row.updated_at = now

    xp_awarded = 0
    if just_completed:
        task_row.completed_at = now
        lesson_row.xp_earned += TASK_XP[task_number]
        xp_awarded += await award_xp_or_defer(
            db, user_id, TASK_XP[task_number], "task_complete", f"{lesson_id}:{task_number}",
            idempotency_key=f"task:{user_id}:{lesson_id}:{task_number}",
            description=f"Completed task {task_number}",
        )
    await db.flush()

    # Task time also counts toward the lesson.
    bonus_xp, bonus_awarded = await _apply_to_lesson(
        db, user_id, lesson_row, LessonDelta(time_spent_seconds=delta.time_spent_seconds), now
    )
    xp_awarded += bonus_xp

    streak = None
    if delta.is_completed:
        streak = await record_activity(db, user_id, now)

    await db.flush()
    return {
        "task": task_row,
        "lesson": lesson_row,
        "xp_awarded": xp_awarded,
        "lesson_bonus_awarded": bonus_awarded,
        "streak": streak,
        "duplicate": False,
    }


async def apply_lesson_progress(
    db: AsyncSession,
    user_id: int,
    lesson_id: uuid.UUID,
    delta: LessonDelta,
    *,
    mutation_id: str | None = None,
    now: datetime | None = None,
) -> dict:
    """Merge one lesson-level mutation.

    A completion claim latches the lesson only if all five tasks are
    complete; otherwise the claim is ignored (and logged) but still counts
    as practice for the streak.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    lesson = await _load_lesson(db, lesson_id)

    if mutation_id is not None and not await _claim_mutation(db, user_id, mutation_id, lesson_id, None, now):
        return {
            "lesson": await _get_lesson_row(db, user_id, lesson_id),
            "xp_awarded": 0,
            "lesson_bonus_awarded": False,
            "completion_ignored": False,
            "streak": None,
            "duplicate": True,
        }

    lesson_row = await _lock_or_create_lesson_progress(db, user_id, lesson, now)
    xp_awarded, bonus_awarded = await _apply_to_lesson(db, user_id, lesson_row, delta, now)

    completion_ignored = delta.is_completed and not lesson_row.is_completed
    if completion_ignored:
        logger.warning(
            "Ignoring completion claim for lesson %s by user %s: not all tasks complete",
            lesson_id, user_id,
        )

    streak = None
    if delta.is_completed:
        streak = await record_activity(db, user_id, now)

    await db.flush()
    return {
        "lesson": lesson_row,
        "xp_awarded": xp_awarded,
        "lesson_bonus_awarded": bonus_awarded,
        "completion_ignored": completion_ignored,
        "streak": streak,
        "duplicate": False,
    }


async def apply_batch_item(
    db: AsyncSession,
    user_id: int,
    item: BatchItem,
    *,
    now: datetime | None = None,
) -> dict:
    """Validate one queued mutation and route it to the task or lesson merge."""
    try:
        if item.task_number is not None:
            delta = TaskProgressUpdate.model_validate(item.data).to_delta()
        else:
            lesson_delta = LessonProgressUpdate.model_validate(item.data).to_delta()
    except ValidationError as exc:
        raise ProgressValidationError(f"Invalid progress payload: {exc.error_count()} error(s)") from exc

    if item.task_number is not None:
        return await apply_task_progress(
            db, user_id, item.lesson_id, item.task_number, delta,
            mutation_id=item.mutation_id, now=now,
        )
    return await apply_lesson_progress(
        db, user_id, item.lesson_id, lesson_delta,
        mutation_id=item.mutation_id, now=now,
    )


async def sync_batch(
    user_id: int,
    items: list[BatchItem],
    *,
    now: datetime | None = None,
    redis: object = None,
) -> dict:
    """Apply queued mutations in order, one transaction per item.

    Invalid items are rejected and skipped. A storage failure that survives
    the transaction retries stops the batch; everything after it is
    reported ``not_attempted`` so the client keeps it queued.
    """
    results: list[dict] = []
    total_xp = 0
    stopped = False

    for index, item in enumerate(items):
        entry = {
            "index": index,
            "mutation_id": item.mutation_id,
            "lesson_id": item.lesson_id,
            "task_number": item.task_number,
            "xp_awarded": 0,
            "error": None,
        }
        if stopped:
            results.append({**entry, "status": "not_attempted"})
            continue

        try:
            outcome = await run_in_transaction(
                lambda db, item=item: apply_batch_item(db, user_id, item, now=now),
                redis=redis,
            )
        except ProgressValidationError as exc:
            logger.warning("Rejected batch item %d for user %s: %s", index, user_id, exc)
            results.append({**entry, "status": "rejected", "error": str(exc)})
            continue
        except SQLAlchemyError:
            logger.exception("Batch item %d for user %s failed, stopping batch", index, user_id)
            results.append({**entry, "status": "failed", "error": "storage error"})
            stopped = True
            continue

        total_xp += outcome["xp_awarded"]
        results.append({
            **entry,
            "status": "duplicate" if outcome["duplicate"] else "applied",
            "xp_awarded": outcome["xp_awarded"],
        })

    return {"results": results, "total_xp_awarded": total_xp}


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_user_progress(db: AsyncSession, user_id: int) -> dict:
    lessons = await db.execute(
        select(LessonProgress).where(LessonProgress.user_id == user_id).order_by(LessonProgress.started_at)
    )
    tasks = await db.execute(
        select(TaskProgress)
        .where(TaskProgress.user_id == user_id)
        .order_by(TaskProgress.lesson_id, TaskProgress.task_number)
    )
    languages = await db.execute(
        select(UserLanguage).where(UserLanguage.user_id == user_id).order_by(UserLanguage.started_at)
    )
    return {
        "lessons": list(lessons.scalars()),
        "tasks": list(tasks.scalars()),
        "languages": list(languages.scalars()),
    }


async def get_lesson_progress(db: AsyncSession, user_id: int, lesson_id: uuid.UUID) -> dict:
    tasks = await db.execute(
        select(TaskProgress)
        .where(TaskProgress.user_id == user_id, TaskProgress.lesson_id == lesson_id)
        .order_by(TaskProgress.task_number)
    )
    return {
        "lesson": await _get_lesson_row(db, user_id, lesson_id),
        "tasks": list(tasks.scalars()),
    }


async def get_user_stats(db: AsyncSession, user_id: int) -> dict:
    """Aggregate totals for the profile page."""
    stats = await load_stats(db, user_id)
    completed_tasks = await db.execute(
        select(func.count())
        .select_from(TaskProgress)
        .where(TaskProgress.user_id == user_id, TaskProgress.is_completed.is_(True))
    )
    return {
        "total_xp": stats.total_xp,
        "level": calculate_level(stats.total_xp),
        "completed_lessons": stats.completed_lessons,
        "completed_tasks": completed_tasks.scalar_one(),
        "languages_started": stats.languages_started,
        "total_time_spent_seconds": stats.total_time_seconds,
    }
