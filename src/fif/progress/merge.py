"""Pure progress merge rules, shared by the server ledger and the client cache.

Field semantics:

- ``percent_complete``       max-merge, clamped to 0..100
- ``time_spent_seconds``     additive
- ``reps_completed``         overwrite when given
- ``sentences_completed``    max-merge
- ``current_sentence_index`` overwrite when given
- ``is_completed``           latch: once true, never false again
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace

TASKS_PER_LESSON = 5


@dataclass(frozen=True)
class TaskDelta:
    percent_complete: int | None = None
    time_spent_seconds: int = 0
    reps_completed: int | None = None
    sentences_completed: int | None = None
    current_sentence_index: int | None = None
    is_completed: bool = False


@dataclass(frozen=True)
class LessonDelta:
    percent_complete: int | None = None
    time_spent_seconds: int = 0
    is_completed: bool = False


@dataclass(frozen=True)
class TaskSnapshot:
    percent_complete: int = 0
    time_spent_seconds: int = 0
    reps_completed: int = 0
    sentences_completed: int = 0
    current_sentence_index: int = 0
    is_completed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> TaskSnapshot:
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


@dataclass(frozen=True)
class LessonSnapshot:
    percent_complete: int = 0
    time_spent_seconds: int = 0
    is_completed: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> LessonSnapshot:
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


def _clamp_percent(value: int) -> int:
    return min(100, max(0, value))


def merge_task(old: TaskSnapshot | None, delta: TaskDelta) -> tuple[TaskSnapshot, bool]:
    """Merge a delta into a task. Returns (merged, just_completed)."""
    if old is None:
        old = TaskSnapshot()

    percent = old.percent_complete
    if delta.percent_complete is not None:
        percent = max(percent, _clamp_percent(delta.percent_complete))

    sentences = old.sentences_completed
    if delta.sentences_completed is not None:
        sentences = max(sentences, delta.sentences_completed)

    just_completed = delta.is_completed and not old.is_completed
    is_completed = old.is_completed or delta.is_completed
    if is_completed:
        percent = 100

    merged = replace(
        old,
        percent_complete=percent,
        time_spent_seconds=old.time_spent_seconds + max(0, delta.time_spent_seconds),
        reps_completed=old.reps_completed if delta.reps_completed is None else delta.reps_completed,
        sentences_completed=sentences,
        current_sentence_index=(
            old.current_sentence_index
            if delta.current_sentence_index is None
            else delta.current_sentence_index
        ),
        is_completed=is_completed,
    )
    return merged, just_completed


def lesson_percent(completed_tasks: int) -> int:
    """Derived lesson percentage from the number of completed tasks."""
    return _clamp_percent(completed_tasks * 100 // TASKS_PER_LESSON)


def merge_lesson(
    old: LessonSnapshot | None,
    delta: LessonDelta,
    completed_tasks: int,
) -> tuple[LessonSnapshot, bool]:
    """Merge a delta into a lesson. Returns (merged, just_completed).

    The lesson latches complete only when all five tasks are complete, either
    because the delta claims it or because the task count got there. A claim
    made earlier is ignored.
    """
    if old is None:
        old = LessonSnapshot()

    percent = max(old.percent_complete, lesson_percent(completed_tasks))
    if delta.percent_complete is not None:
        percent = max(percent, _clamp_percent(delta.percent_complete))

    all_tasks_done = completed_tasks >= TASKS_PER_LESSON
    just_completed = all_tasks_done and not old.is_completed
    is_completed = old.is_completed or all_tasks_done
    if is_completed:
        percent = 100

    merged = replace(
        old,
        percent_complete=percent,
        time_spent_seconds=old.time_spent_seconds + max(0, delta.time_spent_seconds),
        is_completed=is_completed,
    )
    return merged, just_completed
