"""Achievement evaluator registry tests."""

import pytest

from fif.gamification.achievement_rules import (
    AchievementStats,
    evaluate,
    evaluator,
    registered_types,
)
from fif.gamification.seed import ACHIEVEMENT_SEED_DATA


class TestEvaluators:

    def test_lessons_completed(self):
        assert evaluate("lessons_completed", 1, AchievementStats(completed_lessons=1))
        assert not evaluate("lessons_completed", 5, AchievementStats(completed_lessons=4))

    def test_languages_started(self):
        assert evaluate("languages_started", 2, AchievementStats(languages_started=2))
        assert not evaluate("languages_started", 4, AchievementStats(languages_started=3))

    def test_streak_days_counts_longest(self):
        """A 7-day streak that later reset still earned the achievement."""
        assert evaluate("streak_days", 7, AchievementStats(current_streak=1, longest_streak=7))
        assert evaluate("streak_days", 7, AchievementStats(current_streak=7, longest_streak=7))
        assert not evaluate("streak_days", 7, AchievementStats(current_streak=6, longest_streak=6))

    def test_total_xp(self):
        assert evaluate("total_xp", 1000, AchievementStats(total_xp=1000))
        assert not evaluate("total_xp", 1000, AchievementStats(total_xp=999))

    def test_time_spent_hours_uses_seconds(self):
        assert evaluate("time_spent_hours", 10, AchievementStats(total_time_seconds=36_000))
        assert not evaluate("time_spent_hours", 10, AchievementStats(total_time_seconds=35_999))

    def test_unknown_type_never_unlocks(self):
        maxed = AchievementStats(
            completed_lessons=10**6,
            languages_started=4,
            current_streak=10**6,
            longest_streak=10**6,
            total_xp=10**9,
            total_time_seconds=10**9,
        )
        assert not evaluate("perfect_scriptorium", 1, maxed)


class TestRegistry:

    def test_every_seeded_requirement_type_has_an_evaluator(self):
        seeded = {a["requirement_type"] for a in ACHIEVEMENT_SEED_DATA}
        assert seeded <= registered_types()

    def test_seed_codes_unique(self):
        codes = [a["code"] for a in ACHIEVEMENT_SEED_DATA]
        assert len(codes) == len(set(codes))

    def test_decorator_registers_new_type(self, monkeypatch):
        from fif.gamification import achievement_rules

        monkeypatch.setattr(achievement_rules, "_EVALUATORS", dict(achievement_rules._EVALUATORS))

        @evaluator("tasks_completed")
        def _tasks(stats, value):
            return value == 0

        assert "tasks_completed" in registered_types()
        assert evaluate("tasks_completed", 0, AchievementStats())

    @pytest.mark.parametrize("value", [0, 1])
    def test_zero_requirement_always_met(self, value):
        assert evaluate("lessons_completed", 0, AchievementStats(completed_lessons=value))
