"""Pydantic request and response models for progress endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from fif.progress.merge import LessonDelta, TaskDelta


# --- Requests ---


class TaskProgressUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    percent_complete: int | None = Field(default=None, ge=0, le=100)
    time_spent_seconds: int = Field(default=0, ge=0)
    reps_completed: int | None = Field(default=None, ge=0)
    sentences_completed: int | None = Field(default=None, ge=0)
    current_sentence_index: int | None = Field(default=None, ge=0)
    is_completed: bool = False

    def to_delta(self) -> TaskDelta:
        return TaskDelta(**self.model_dump())


class LessonProgressUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    percent_complete: int | None = Field(default=None, ge=0, le=100)
    time_spent_seconds: int = Field(default=0, ge=0)
    is_completed: bool = False

    def to_delta(self) -> LessonDelta:
        return LessonDelta(**self.model_dump())


class BatchItem(BaseModel):
    """One queued mutation. ``data`` is validated per item so a bad item cannot sink the batch."""

    mutation_id: str | None = Field(default=None, max_length=64)
    lesson_id: uuid.UUID
    task_number: int | None = None
    data: dict = {}


class BatchUpdateRequest(BaseModel):
    updates: list[BatchItem] = Field(max_length=500)


# --- Responses ---


class TaskProgressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    lesson_id: uuid.UUID
    task_number: int
    percent_complete: int
    time_spent_seconds: int
    reps_completed: int
    sentences_completed: int
    current_sentence_index: int
    is_completed: bool
    completed_at: datetime | None = None
    updated_at: datetime


class LessonProgressResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    lesson_id: uuid.UUID
    percent_complete: int
    time_spent_seconds: int
    is_completed: bool
    xp_earned: int
    started_at: datetime
    completed_at: datetime | None = None
    last_accessed_at: datetime


class UserLanguageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    language_id: uuid.UUID
    started_at: datetime
    last_practiced_at: datetime | None = None


class StreakUpdateResponse(BaseModel):
    current_streak: int
    longest_streak: int
    streak_increased: bool
    is_new_streak: bool
    milestone: int | None = None


class TaskUpdateResponse(BaseModel):
    task: TaskProgressResponse | None = None
    lesson: LessonProgressResponse | None = None
    xp_awarded: int = 0
    lesson_bonus_awarded: bool = False
    streak: StreakUpdateResponse | None = None
    duplicate: bool = False
    achievements_unlocked: list[str] = []


class LessonUpdateResponse(BaseModel):
    lesson: LessonProgressResponse | None = None
    xp_awarded: int = 0
    lesson_bonus_awarded: bool = False
    completion_ignored: bool = False
    streak: StreakUpdateResponse | None = None
    duplicate: bool = False
    achievements_unlocked: list[str] = []


class BatchItemResult(BaseModel):
    index: int
    mutation_id: str | None = None
    lesson_id: uuid.UUID
    task_number: int | None = None
    status: Literal["applied", "duplicate", "rejected", "failed", "not_attempted"]
    xp_awarded: int = 0
    error: str | None = None


class BatchUpdateResponse(BaseModel):
    results: list[BatchItemResult]
    total_xp_awarded: int
    achievements_unlocked: list[str] = []


class UserProgressResponse(BaseModel):
    lessons: list[LessonProgressResponse]
    tasks: list[TaskProgressResponse]
    languages: list[UserLanguageResponse]


class LessonDetailResponse(BaseModel):
    lesson: LessonProgressResponse | None = None
    tasks: list[TaskProgressResponse]


class UserStatsResponse(BaseModel):
    total_xp: int
    level: int
    completed_lessons: int
    completed_tasks: int
    languages_started: int
    total_time_spent_seconds: int
