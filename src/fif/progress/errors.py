"""Domain errors raised by the progress sync service."""

from __future__ import annotations

import uuid


class ProgressValidationError(Exception):
    """A mutation that can never succeed as sent. Retrying it is pointless."""

    status_code = 422


class LessonNotFoundError(ProgressValidationError):
    status_code = 404

    def __init__(self, lesson_id: uuid.UUID) -> None:
        super().__init__(f"Lesson not found: {lesson_id}")
        self.lesson_id = lesson_id


class InvalidTaskNumberError(ProgressValidationError):
    def __init__(self, task_number: int) -> None:
        super().__init__(f"Task number must be between 1 and 5, got {task_number}")
        self.task_number = task_number
