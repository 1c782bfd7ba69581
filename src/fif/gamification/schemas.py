"""Pydantic response models for gamification endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict


# --- XP ---


class XPResponse(BaseModel):
    level: int
    title: str
    total_xp: int
    xp_for_current_level: int
    xp_for_next_level: int
    progress_percent: float


class XPHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    amount: int
    source: str
    source_id: str | None = None
    description: str | None = None
    total_after: int
    created_at: datetime | None = None


class XPHistoryResponse(BaseModel):
    entries: list[XPHistoryEntry]
    total: int
    page: int
    per_page: int


# --- Streak ---


class StreakResponse(BaseModel):
    current_streak: int
    longest_streak: int
    last_activity_date: date | None = None
    has_practiced_today: bool = False
    streak_at_risk: bool = False


# --- Achievements ---


class AchievementResponse(BaseModel):
    id: int
    code: str
    name: str
    description: str
    icon: str
    requirement_type: str
    requirement_value: int
    xp_reward: int
    is_unlocked: bool = False
    unlocked_at: datetime | None = None


class AchievementsResponse(BaseModel):
    achievements: list[AchievementResponse]
    total_unlocked: int
    total_available: int


class UnlockedAchievement(BaseModel):
    id: int
    code: str
    name: str
    description: str
    icon: str
    xp_reward: int
    xp_awarded: int
    unlocked_at: datetime


class AchievementCheckResponse(BaseModel):
    newly_unlocked: list[UnlockedAchievement]


class AchievementProgressResponse(BaseModel):
    completed_lessons: int
    languages_started: int
    current_streak: int
    longest_streak: int
    total_xp: int
    total_time_seconds: int


# --- Leaderboard ---


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: int
    display_name: str | None = None
    avatar_url: str | None = None
    total_xp: int
    level: int


class UserRank(BaseModel):
    rank: int
    total_users: int


class LeaderboardResponse(BaseModel):
    scope: str
    entries: list[LeaderboardEntry]
    me: UserRank


# --- Levels ---


class LevelEntry(BaseModel):
    level: int
    title: str
    xp_required: int
    cumulative: int


class AllLevelsResponse(BaseModel):
    levels: list[LevelEntry]
