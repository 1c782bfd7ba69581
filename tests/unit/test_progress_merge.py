"""Merge rules shared by the server ledger and the client cache."""

from fif.progress.merge import (
    LessonDelta,
    LessonSnapshot,
    TaskDelta,
    TaskSnapshot,
    lesson_percent,
    merge_lesson,
    merge_task,
)


class TestMergeTask:

    def test_new_task_from_delta(self):
        merged, just_completed = merge_task(None, TaskDelta(percent_complete=40, time_spent_seconds=30))
        assert merged.percent_complete == 40
        assert merged.time_spent_seconds == 30
        assert not merged.is_completed
        assert not just_completed

    def test_percent_is_max_merged(self):
        old = TaskSnapshot(percent_complete=70)
        merged, _ = merge_task(old, TaskDelta(percent_complete=30))
        assert merged.percent_complete == 70

    def test_time_is_additive(self):
        old = TaskSnapshot(time_spent_seconds=100)
        merged, _ = merge_task(old, TaskDelta(time_spent_seconds=25))
        assert merged.time_spent_seconds == 125

    def test_reps_overwrite_only_when_given(self):
        old = TaskSnapshot(reps_completed=5)
        merged, _ = merge_task(old, TaskDelta(reps_completed=2))
        assert merged.reps_completed == 2
        merged, _ = merge_task(merged, TaskDelta())
        assert merged.reps_completed == 2

    def test_sentences_max_and_index_overwrite(self):
        old = TaskSnapshot(sentences_completed=8, current_sentence_index=8)
        merged, _ = merge_task(old, TaskDelta(sentences_completed=3, current_sentence_index=3))
        assert merged.sentences_completed == 8
        assert merged.current_sentence_index == 3

    def test_completion_latches(self):
        merged, just_completed = merge_task(TaskSnapshot(), TaskDelta(is_completed=True))
        assert merged.is_completed and just_completed
        assert merged.percent_complete == 100

        again, just_completed = merge_task(merged, TaskDelta(is_completed=False, percent_complete=10))
        assert again.is_completed
        assert not just_completed
        assert again.percent_complete == 100

    def test_second_completion_is_not_a_transition(self):
        done = TaskSnapshot(is_completed=True, percent_complete=100)
        _, just_completed = merge_task(done, TaskDelta(is_completed=True))
        assert not just_completed

    def test_negative_time_ignored(self):
        merged, _ = merge_task(TaskSnapshot(time_spent_seconds=10), TaskDelta(time_spent_seconds=-50))
        assert merged.time_spent_seconds == 10


class TestMergeLesson:

    def test_percent_derived_from_completed_tasks(self):
        merged, just_completed = merge_lesson(None, LessonDelta(), completed_tasks=2)
        assert merged.percent_complete == 40
        assert not just_completed

    def test_explicit_percent_max_merged_with_derived(self):
        merged, _ = merge_lesson(LessonSnapshot(percent_complete=10), LessonDelta(percent_complete=55), 1)
        assert merged.percent_complete == 55
        merged, _ = merge_lesson(merged, LessonDelta(percent_complete=5), 1)
        assert merged.percent_complete == 55

    def test_completion_claim_ignored_until_all_tasks_done(self):
        merged, just_completed = merge_lesson(None, LessonDelta(is_completed=True), completed_tasks=4)
        assert not merged.is_completed
        assert not just_completed

    def test_fifth_task_latches_lesson(self):
        merged, just_completed = merge_lesson(LessonSnapshot(percent_complete=80), LessonDelta(), 5)
        assert merged.is_completed and just_completed
        assert merged.percent_complete == 100

    def test_latched_lesson_is_not_completed_twice(self):
        done = LessonSnapshot(percent_complete=100, is_completed=True)
        merged, just_completed = merge_lesson(done, LessonDelta(is_completed=True), 5)
        assert merged.is_completed
        assert not just_completed

    def test_lesson_percent_steps(self):
        assert [lesson_percent(n) for n in range(6)] == [0, 20, 40, 60, 80, 100]


class TestSnapshotSerialization:

    def test_from_dict_ignores_unknown_keys(self):
        data = {"percent_complete": 60, "is_completed": False, "xp_earned": 20, "lesson_id": "x"}
        assert LessonSnapshot.from_dict(data) == LessonSnapshot(percent_complete=60)

    def test_task_snapshot_round_trip(self):
        snap = TaskSnapshot(percent_complete=50, time_spent_seconds=12, reps_completed=3)
        assert TaskSnapshot.from_dict(snap.to_dict()) == snap
