"""Achievement requirement evaluators.

Each requirement type maps to one pure predicate over an ``AchievementStats``
snapshot. New types are added with ``@evaluator("type")``; a definition
whose type has no evaluator never unlocks.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AchievementStats:
    """Point-in-time snapshot of everything achievement rules look at."""

    completed_lessons: int = 0
    languages_started: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    total_xp: int = 0
    total_time_seconds: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


Evaluator = Callable[[AchievementStats, int], bool]

_EVALUATORS: dict[str, Evaluator] = {}


def evaluator(requirement_type: str) -> Callable[[Evaluator], Evaluator]:
    def register(fn: Evaluator) -> Evaluator:
        _EVALUATORS[requirement_type] = fn
        return fn
    return register


def registered_types() -> frozenset[str]:
    return frozenset(_EVALUATORS)


@evaluator("lessons_completed")
def _lessons_completed(stats: AchievementStats, value: int) -> bool:
    return stats.completed_lessons >= value


@evaluator("languages_started")
def _languages_started(stats: AchievementStats, value: int) -> bool:
    return stats.languages_started >= value


@evaluator("streak_days")
def _streak_days(stats: AchievementStats, value: int) -> bool:
    # Longest counts too: a streak reached once stays earned after a reset.
    return max(stats.current_streak, stats.longest_streak) >= value


@evaluator("total_xp")
def _total_xp(stats: AchievementStats, value: int) -> bool:
    return stats.total_xp >= value


@evaluator("time_spent_hours")
def _time_spent_hours(stats: AchievementStats, value: int) -> bool:
    return stats.total_time_seconds >= value * 3600


def evaluate(requirement_type: str, requirement_value: int, stats: AchievementStats) -> bool:
    """True if the requirement is met. Unknown requirement types never unlock."""
    fn = _EVALUATORS.get(requirement_type)
    if fn is None:
        logger.warning("No evaluator for achievement requirement type %r", requirement_type)
        return False
    return fn(stats, requirement_value)
