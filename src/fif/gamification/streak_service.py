"""Daily streak tracking: UTC day-boundary state machine over one row per user."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fif.config import get_settings
from fif.db.models import Streak

logger = logging.getLogger(__name__)

STREAK_MILESTONES = frozenset({7, 14, 30, 60, 100, 365})


@dataclass(frozen=True)
class StreakState:
    current_streak: int = 0
    longest_streak: int = 0
    last_activity_date: date | None = None


def utc_today(now: datetime | None = None) -> date:
    """Calendar date in UTC, the single reference zone for streak bookkeeping."""
    if now is None:
        now = datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.date()


def next_streak_state(state: StreakState | None, today: date) -> tuple[StreakState, bool]:
    """Apply "practiced today" to a streak. Returns (new_state, changed).

    - no record               -> 1 / 1
    - last activity today     -> unchanged
    - last activity yesterday -> +1, longest = max(longest, current)
    - anything else           -> reset to 1, longest unchanged
    """
    if state is None:
        return StreakState(1, 1, today), True

    last = state.last_activity_date
    if last == today:
        return state, False

    if last is not None and last == today - timedelta(days=1):
        current = state.current_streak + 1
    else:
        current = 1

    longest = max(state.longest_streak, current)
    return StreakState(current, longest, today), True


def check_milestone(current_streak: int) -> int | None:
    """Return the streak length if it is a celebration milestone."""
    return current_streak if current_streak in STREAK_MILESTONES else None


async def _lock_streak(db: AsyncSession, user_id: int) -> Streak | None:
    result = await db.execute(
        select(Streak).where(Streak.user_id == user_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def record_activity(
    db: AsyncSession,
    user_id: int,
    now: datetime | None = None,
) -> dict:
    """Record that the user practiced today and advance the streak.

    Idempotent within a UTC day. Returns the new streak values plus
    ``streak_increased``, ``is_new_streak`` and ``milestone``.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    today = utc_today(now)

    row = await _lock_streak(db, user_id)
    if row is None:
        new_state, _ = next_streak_state(None, today)
        row = Streak(
            user_id=user_id,
            current_streak=new_state.current_streak,
            longest_streak=new_state.longest_streak,
            last_activity_date=new_state.last_activity_date,
            updated_at=now,
        )
        try:
            async with db.begin_nested():
                db.add(row)
        except IntegrityError:
            # Lost the creation race; apply the transition to the winner's row.
            return await record_activity(db, user_id, now)
        logger.info("Started streak for user %s", user_id)
        return _result(new_state, increased=True, is_new=True)

    old = StreakState(row.current_streak, row.longest_streak, row.last_activity_date)
    new_state, changed = next_streak_state(old, today)
    if not changed:
        return _result(new_state, increased=False, is_new=False)

    row.current_streak = new_state.current_streak
    row.longest_streak = new_state.longest_streak
    row.last_activity_date = new_state.last_activity_date
    row.updated_at = now
    await db.flush()

    increased = new_state.current_streak > old.current_streak
    if not increased:
        logger.info("Streak for user %s reset after %d days", user_id, old.current_streak)
    return _result(new_state, increased=increased, is_new=not increased)


def _result(state: StreakState, *, increased: bool, is_new: bool) -> dict:
    return {
        "current_streak": state.current_streak,
        "longest_streak": state.longest_streak,
        "last_activity_date": state.last_activity_date,
        "streak_increased": increased,
        "is_new_streak": is_new,
        "milestone": check_milestone(state.current_streak) if increased else None,
    }


async def get_streak(
    db: AsyncSession,
    user_id: int,
    now: datetime | None = None,
) -> dict:
    """Read-only streak view.

    A streak whose last activity is older than yesterday (UTC) has already
    lapsed and is reported as 0; the row itself is only rewritten by the
    next ``record_activity``. ``streak_at_risk`` uses the same UTC clock:
    not practiced today and past ``streak_risk_hour_utc``.
    """
    if now is None:
        now = datetime.now(timezone.utc)
    today = utc_today(now)
    risk_hour = get_settings().streak_risk_hour_utc

    result = await db.execute(select(Streak).where(Streak.user_id == user_id))
    row = result.scalar_one_or_none()

    if row is None:
        return {
            "current_streak": 0,
            "longest_streak": 0,
            "last_activity_date": None,
            "has_practiced_today": False,
            "streak_at_risk": False,
        }

    last = row.last_activity_date
    has_practiced_today = last == today
    alive = last is not None and last >= today - timedelta(days=1)
    current = row.current_streak if alive else 0

    return {
        "current_streak": current,
        "longest_streak": row.longest_streak,
        "last_activity_date": last,
        "has_practiced_today": has_practiced_today,
        "streak_at_risk": current > 0 and not has_practiced_today and now.astimezone(timezone.utc).hour >= risk_hour,
    }
