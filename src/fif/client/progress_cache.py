"""Optimistic client-side progress, merged with the same rules as the server."""

from __future__ import annotations

import logging
from dataclasses import asdict

from fif.client.local_store import LocalStateStore
from fif.client.offline_queue import OfflineQueue
from fif.progress.merge import (
    LessonDelta,
    LessonSnapshot,
    TaskDelta,
    TaskSnapshot,
    merge_lesson,
    merge_task,
)

logger = logging.getLogger(__name__)


def task_key(lesson_id: str, task_number: int) -> str:
    return f"{lesson_id}:{task_number}"


def _delta_payload(delta: TaskDelta | LessonDelta) -> dict:
    return {k: v for k, v in asdict(delta).items() if v is not None}


class ProgressCache:
    """Task and lesson snapshots keyed by ``lesson:task`` and ``lesson``.

    Recording progress applies the merge locally for immediate feedback and
    enqueues the delta, never the merged state, so the server merges each
    change exactly once.
    """

    def __init__(self, store: LocalStateStore, queue: OfflineQueue) -> None:
        self.store = store
        self.queue = queue

    def get_task(self, lesson_id: str, task_number: int) -> TaskSnapshot | None:
        data = self.store.state["tasks"].get(task_key(str(lesson_id), task_number))
        return TaskSnapshot.from_dict(data) if data is not None else None

    def get_lesson(self, lesson_id: str) -> LessonSnapshot | None:
        data = self.store.state["lessons"].get(str(lesson_id))
        return LessonSnapshot.from_dict(data) if data is not None else None

    def _completed_tasks(self, lesson_id: str) -> int:
        prefix = f"{lesson_id}:"
        return sum(
            1 for key, data in self.store.state["tasks"].items()
            if key.startswith(prefix) and data.get("is_completed")
        )

    def _merge_lesson(self, lesson_id: str, delta: LessonDelta) -> LessonSnapshot:
        merged, _ = merge_lesson(self.get_lesson(lesson_id), delta, self._completed_tasks(lesson_id))
        self.store.state["lessons"][lesson_id] = merged.to_dict()
        return merged

    def _apply_task(self, lesson_id: str, task_number: int, delta: TaskDelta) -> TaskSnapshot:
        merged, _ = merge_task(self.get_task(lesson_id, task_number), delta)
        self.store.state["tasks"][task_key(lesson_id, task_number)] = merged.to_dict()
        self._merge_lesson(lesson_id, LessonDelta(time_spent_seconds=delta.time_spent_seconds))
        return merged

    def _replay(self, item: dict) -> None:
        if item.get("task_number") is not None:
            self._apply_task(item["lesson_id"], item["task_number"], TaskDelta(**item["payload"]))
        else:
            self._merge_lesson(item["lesson_id"], LessonDelta(**item["payload"]))

    def record_task_progress(self, lesson_id: str, task_number: int, delta: TaskDelta) -> TaskSnapshot:
        lesson_id = str(lesson_id)
        merged = self._apply_task(lesson_id, task_number, delta)
        # enqueue() persists the cache together with the new item.
        self.queue.enqueue(lesson_id, _delta_payload(delta), task_number=task_number)
        return merged

    def record_lesson_progress(self, lesson_id: str, delta: LessonDelta) -> LessonSnapshot:
        lesson_id = str(lesson_id)
        merged = self._merge_lesson(lesson_id, delta)
        self.queue.enqueue(lesson_id, _delta_payload(delta))
        return merged

    def load(self, tasks: list[dict], lessons: list[dict]) -> None:
        """Replace the cache with server state (GET /api/v1/progress).

        Items still queued have not reached the server, so they are merged
        again on top of the fresh state.
        """
        self.store.state["tasks"] = {
            task_key(str(t["lesson_id"]), int(t["task_number"])): TaskSnapshot.from_dict(t).to_dict()
            for t in tasks
        }
        self.store.state["lessons"] = {
            str(lesson["lesson_id"]): LessonSnapshot.from_dict(lesson).to_dict()
            for lesson in lessons
        }
        for item in self.queue.items:
            self._replay(item)
        self.store.save()
        logger.info("Progress cache loaded: %d tasks, %d lessons", len(tasks), len(lessons))
