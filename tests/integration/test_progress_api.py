"""Progress endpoints end to end, including the offline queue draining into the API."""

from __future__ import annotations

import asyncio
import contextlib
import uuid
from datetime import timedelta

import pytest
from httpx import ASGITransport

from fif.client.session import create_offline_session
from fif.config import Settings
from fif.main import create_app
from fif.progress.merge import LessonDelta, TaskDelta


def task_url(lesson_id, n: int) -> str:
    return f"/api/v1/progress/lessons/{lesson_id}/tasks/{n}"


class TestAuth:

    @pytest.mark.asyncio
    async def test_missing_token(self, client, seed):
        response = await client.get("/api/v1/progress", headers={"Authorization": ""})
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_refresh_token_rejected(self, client, seed, token_for):
        response = await client.get(
            "/api/v1/progress",
            headers={"Authorization": f"Bearer {token_for(seed.user_id, type='refresh')}"},
        )
        assert response.status_code == 401


class TestTaskEndpoint:

    @pytest.mark.asyncio
    async def test_complete_task(self, client, seed):
        response = await client.post(task_url(seed.lesson_id, 1), json={"is_completed": True, "time_spent_seconds": 45})

        assert response.status_code == 200
        body = response.json()
        assert body["xp_awarded"] == 20
        assert body["task"]["is_completed"] is True
        assert body["lesson"]["percent_complete"] == 20
        assert body["streak"]["current_streak"] == 1
        assert body["achievements_unlocked"] == ["first_language"]

    @pytest.mark.asyncio
    async def test_idempotency_key_replay(self, client, seed):
        headers = {"Idempotency-Key": "tap-42"}
        payload = {"time_spent_seconds": 30, "percent_complete": 40}

        first = await client.post(task_url(seed.lesson_id, 2), json=payload, headers=headers)
        second = await client.post(task_url(seed.lesson_id, 2), json=payload, headers=headers)

        assert first.json()["duplicate"] is False
        assert second.json()["duplicate"] is True
        assert second.json()["task"]["time_spent_seconds"] == 30

    @pytest.mark.asyncio
    async def test_whole_lesson_over_http(self, client, seed):
        responses = [
            await client.post(task_url(seed.lesson_id, n), json={"is_completed": True}) for n in range(1, 6)
        ]

        last = responses[-1].json()
        assert last["lesson_bonus_awarded"] is True
        assert last["xp_awarded"] == 30 + 50
        assert "first_lesson" in last["achievements_unlocked"]

        stats = (await client.get("/api/v1/progress/stats")).json()
        assert stats["completed_lessons"] == 1
        assert stats["completed_tasks"] == 5
        # 180 from the lesson, 25 + 50 from the two achievements
        assert stats["total_xp"] == 255

    @pytest.mark.asyncio
    async def test_unknown_lesson_is_404(self, client, seed):
        response = await client.post(task_url(uuid.uuid4(), 1), json={"is_completed": True})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_task_number_out_of_range(self, client, seed):
        response = await client.post(task_url(seed.lesson_id, 9), json={"is_completed": True})
        assert response.status_code == 422

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"percent_complete": 150},
        {"time_spent_seconds": -10},
        {"is_completed": True, "xp": 1000},
    ])
    async def test_invalid_payload(self, client, seed, payload):
        response = await client.post(task_url(seed.lesson_id, 1), json=payload)

        assert response.status_code == 422
        assert response.json()["detail"] == "Validation error"


class TestLessonEndpoint:

    @pytest.mark.asyncio
    async def test_premature_completion_claim(self, client, seed):
        response = await client.post(
            f"/api/v1/progress/lessons/{seed.lesson_id}",
            json={"is_completed": True, "time_spent_seconds": 120},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["completion_ignored"] is True
        assert body["lesson"]["is_completed"] is False
        assert body["lesson"]["time_spent_seconds"] == 120


class TestBatchSync:

    @pytest.mark.asyncio
    async def test_batch_results_per_item(self, client, seed):
        body = {"updates": [
            {"mutation_id": "q1", "lesson_id": str(seed.lesson_id), "task_number": 1, "data": {"is_completed": True}},
            {"mutation_id": "q2", "lesson_id": str(seed.lesson_id), "task_number": 2, "data": {"bogus": 1}},
            {"mutation_id": "q1", "lesson_id": str(seed.lesson_id), "task_number": 1, "data": {"is_completed": True}},
            {"mutation_id": "q3", "lesson_id": str(seed.lesson_id), "data": {"time_spent_seconds": 12}},
        ]}

        response = await client.post("/api/v1/progress/sync", json=body)

        assert response.status_code == 200
        data = response.json()
        assert [r["status"] for r in data["results"]] == ["applied", "rejected", "duplicate", "applied"]
        assert data["total_xp_awarded"] == 20
        assert data["achievements_unlocked"] == ["first_language"]


class TestReads:

    @pytest.mark.asyncio
    async def test_progress_snapshot(self, client, seed):
        await client.post(task_url(seed.lesson_id, 3), json={"percent_complete": 50, "time_spent_seconds": 20})

        data = (await client.get("/api/v1/progress")).json()
        assert len(data["lessons"]) == 1
        assert data["tasks"][0]["task_number"] == 3
        assert data["languages"][0]["language_id"] == str(seed.languages["es"])

        detail = (await client.get(f"/api/v1/progress/lessons/{seed.lesson_id}")).json()
        assert detail["lesson"]["time_spent_seconds"] == 20
        assert [t["task_number"] for t in detail["tasks"]] == [3]

    @pytest.mark.asyncio
    async def test_untouched_lesson(self, client, seed):
        detail = (await client.get(f"/api/v1/progress/lessons/{seed.lessons['pt'][1]}")).json()
        assert detail == {"lesson": None, "tasks": []}


class TestOfflineQueueAgainstAPI:

    @pytest.fixture
    def offline(self, tmp_path, seed, token_for):
        settings = Settings(offline_state_dir=str(tmp_path / "offline"), sync_api_base_url="http://test")
        transport = ASGITransport(app=create_app())
        return create_offline_session(seed.user_id, token_for(seed.user_id), settings=settings, transport=transport)

    @pytest.mark.asyncio
    async def test_offline_work_syncs_on_reconnect(self, client, seed, offline):
        offline.queue.set_online(False)
        for n in range(1, 6):
            offline.cache.record_task_progress(seed.lesson_id, n, TaskDelta(is_completed=True, time_spent_seconds=60))
        offline.cache.record_lesson_progress(seed.lesson_id, LessonDelta(time_spent_seconds=15))

        local = offline.cache.get_lesson(str(seed.lesson_id))
        assert local.is_completed is True
        assert local.time_spent_seconds == 315
        assert offline.queue.pending_count == 6

        drain = offline.queue.set_online(True)
        result = await drain
        await offline.aclose()

        assert result.sent == 6
        assert offline.queue.pending_count == 0
        stats = (await client.get("/api/v1/progress/stats")).json()
        assert stats["completed_lessons"] == 1
        assert stats["total_time_spent_seconds"] == 315

    @pytest.mark.asyncio
    async def test_resend_after_lost_response_is_deduplicated(self, client, seed, offline):
        offline.cache.record_task_progress(seed.lesson_id, 1, TaskDelta(time_spent_seconds=30))
        item = offline.queue.items[0]

        # the server applied it but the client never saw the response
        await offline.client.send(item)
        result = await offline.queue.drain()
        await offline.aclose()

        assert result.sent == 1
        detail = (await client.get(f"/api/v1/progress/lessons/{seed.lesson_id}")).json()
        assert detail["tasks"][0]["time_spent_seconds"] == 30

    @pytest.mark.asyncio
    async def test_rejected_item_does_not_block_queue(self, client, seed, offline):
        offline.cache.record_task_progress(uuid.uuid4(), 1, TaskDelta(is_completed=True))
        offline.cache.record_task_progress(seed.lesson_id, 1, TaskDelta(is_completed=True))

        result = await offline.queue.drain()
        await offline.aclose()

        assert (result.sent, result.rejected) == (1, 1)
        assert offline.queue.dead_letters[0]["status_code"] == 404
        stats = (await client.get("/api/v1/progress/stats")).json()
        assert stats["completed_tasks"] == 1

    @pytest.mark.asyncio
    async def test_expired_token_holds_queue_until_refreshed(self, tmp_path, client, seed, token_for):
        settings = Settings(
            offline_state_dir=str(tmp_path / "offline"),
            sync_api_base_url="http://test",
            sync_max_attempts=1,
        )
        expired = token_for(seed.user_id, expires_in=timedelta(seconds=-30))
        session = create_offline_session(
            seed.user_id, expired, settings=settings, transport=ASGITransport(app=create_app())
        )
        session.cache.record_task_progress(seed.lesson_id, 1, TaskDelta(is_completed=True))

        result = await session.queue.drain()
        assert result.halted
        assert session.queue.pending_count == 1
        assert session.queue.dead_letters == []

        drain = session.refresh_token(token_for(seed.user_id))
        result = await drain
        await session.aclose()

        assert result.sent == 1
        assert session.queue.pending_count == 0
        stats = (await client.get("/api/v1/progress/stats")).json()
        assert stats["completed_tasks"] == 1

    @pytest.mark.asyncio
    async def test_background_sync_drains_leftovers(self, client, seed, offline):
        offline.cache.record_task_progress(seed.lesson_id, 1, TaskDelta(is_completed=True))

        background = offline.start_background_sync()
        for _ in range(500):
            if offline.queue.pending_count == 0 and not offline.queue.is_draining:
                break
            await asyncio.sleep(0.01)
        background.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await background
        await offline.aclose()

        assert offline.queue.pending_count == 0
        stats = (await client.get("/api/v1/progress/stats")).json()
        assert stats["completed_tasks"] == 1
