"""XP service tests: ledger consistency, idempotency keys, level-ups, deferred awards."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from fif.database import get_session_factory, run_in_transaction
from fif.db.models import PendingXPAward, UserGamification, XPLedger
from fif.gamification import xp_service
from fif.gamification.xp_service import (
    award_xp,
    award_xp_or_defer,
    get_xp_history,
    retry_pending_awards,
)
from fif.redis_client import take_queued_events

# SQLite fails the losing writer with "database is locked"; each loss costs a retry.
RACE_RETRIES = 20


async def ledger_sum(db, user_id: int) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(XPLedger.amount), 0)).where(XPLedger.user_id == user_id)
    )
    return result.scalar_one()


class TestAwardXP:

    @pytest.mark.asyncio
    async def test_first_award_creates_counter(self, db, seed):
        result = await award_xp(db, seed.user_id, 20, "task_complete", "x:1")
        await db.commit()

        assert result == {"total_xp": 20, "level": 1, "leveled_up": False, "previous_level": 1}
        gam = (await db.execute(select(UserGamification))).scalar_one()
        assert gam.total_xp == 20
        assert gam.level_title == "Novice"

    @pytest.mark.asyncio
    async def test_level_up_detected_and_queued(self, db, seed):
        await award_xp(db, seed.user_id, 90, "task_complete")
        result = await award_xp(db, seed.user_id, 10, "lesson_complete")

        assert result["leveled_up"] is True
        assert result["level"] == 2
        assert result["previous_level"] == 1
        assert take_queued_events(db) == [
            ("pubsub:level_up", {"user_id": seed.user_id, "old_level": 1, "new_level": 2, "title": "Beginner"}),
        ]
        await db.commit()

    @pytest.mark.asyncio
    async def test_idempotency_key_used_once(self, db, seed):
        first = await award_xp(db, seed.user_id, 30, "task_complete", idempotency_key="task:k")
        second = await award_xp(db, seed.user_id, 30, "task_complete", idempotency_key="task:k")
        await db.commit()

        assert first is not None
        assert second is None
        assert await ledger_sum(db, seed.user_id) == 30

    @pytest.mark.asyncio
    async def test_unknown_source_rejected(self, db, seed):
        with pytest.raises(ValueError, match="Unknown XP source"):
            await award_xp(db, seed.user_id, 10, "mining")

    @pytest.mark.asyncio
    async def test_ledger_sum_matches_total(self, db, seed):
        amounts = [20, 30, 25, 25, 30, 50, 100, 250]
        for i, amount in enumerate(amounts):
            await award_xp(db, seed.user_id, amount, "task_complete", idempotency_key=f"k{i}")
        # replays of the same keys change nothing
        for i, amount in enumerate(amounts):
            await award_xp(db, seed.user_id, amount, "task_complete", idempotency_key=f"k{i}")
        await db.commit()

        gam = (await db.execute(select(UserGamification))).scalar_one()
        assert gam.total_xp == sum(amounts)
        assert await ledger_sum(db, seed.user_id) == gam.total_xp

        entries = (await db.execute(select(XPLedger).order_by(XPLedger.id))).scalars().all()
        assert [e.total_after for e in entries][-1] == gam.total_xp


class TestDeferredAwards:

    @pytest.mark.asyncio
    async def test_failure_is_deferred_and_replayed(self, db, seed, monkeypatch):
        real_award = xp_service.award_xp

        async def failing_award(*args, **kwargs):
            raise OperationalError("INSERT INTO xp_ledger", {}, Exception("disk I/O error"))

        monkeypatch.setattr(xp_service, "award_xp", failing_award)
        credited = await award_xp_or_defer(
            db, seed.user_id, 20, "task_complete", "l:1", idempotency_key="task:deferred",
        )
        await db.commit()

        assert credited == 0
        pending = (await db.execute(select(PendingXPAward))).scalar_one()
        assert pending.idempotency_key == "task:deferred"
        assert pending.resolved_at is None
        assert "disk I/O error" in pending.last_error

        monkeypatch.setattr(xp_service, "award_xp", real_award)
        resolved = await retry_pending_awards(db, user_id=seed.user_id)
        await db.commit()

        assert resolved == 1
        assert await ledger_sum(db, seed.user_id) == 20
        await db.refresh(pending)
        assert pending.resolved_at is not None

        # already resolved: nothing more to do
        assert await retry_pending_awards(db, user_id=seed.user_id) == 0

    @pytest.mark.asyncio
    async def test_replay_of_award_that_landed_does_not_double_grant(self, db, seed):
        await award_xp(db, seed.user_id, 25, "task_complete", idempotency_key="task:landed")
        db.add(PendingXPAward(
            user_id=seed.user_id, amount=25, source="task_complete", idempotency_key="task:landed",
            attempts=1, created_at=datetime.now(timezone.utc),
        ))
        await db.commit()

        assert await retry_pending_awards(db) == 1
        await db.commit()
        assert await ledger_sum(db, seed.user_id) == 25

    @pytest.mark.asyncio
    async def test_successful_award_returns_amount(self, db, seed):
        credited = await award_xp_or_defer(
            db, seed.user_id, 30, "task_complete", "l:2", idempotency_key="task:ok",
        )
        await db.commit()
        assert credited == 30
        assert (await db.execute(select(func.count()).select_from(PendingXPAward))).scalar_one() == 0


class TestXPHistory:

    @pytest.mark.asyncio
    async def test_newest_first_with_pagination(self, db, seed):
        for i in range(5):
            await award_xp(db, seed.user_id, 10 + i, "task_complete", idempotency_key=f"h{i}")
        await db.commit()

        entries, total = await get_xp_history(db, seed.user_id, page=1, per_page=2)
        assert total == 5
        assert [e.amount for e in entries] == [14, 13]

        entries, _ = await get_xp_history(db, seed.user_id, page=3, per_page=2)
        assert [e.amount for e in entries] == [10]


class TestEventsAfterCommit:

    @pytest.mark.asyncio
    async def test_level_up_published_after_commit(self, seed):
        redis = AsyncMock()

        result = await run_in_transaction(
            lambda db: award_xp(db, seed.user_id, 100, "task_complete"), redis=redis,
        )

        assert result["leveled_up"] is True
        channel, payload = redis.publish.await_args.args
        assert channel == "pubsub:level_up"
        assert json.loads(payload)["new_level"] == 2

    @pytest.mark.asyncio
    async def test_retried_attempt_publishes_once(self, seed):
        redis = AsyncMock()
        attempts = []

        async def work(db):
            result = await award_xp(db, seed.user_id, 100, "task_complete", idempotency_key="task:retry")
            attempts.append(result)
            if len(attempts) == 1:
                raise OperationalError("UPDATE user_gamification", {}, Exception("database is locked"))
            return result

        await run_in_transaction(work, redis=redis)

        assert len(attempts) == 2
        assert redis.publish.await_count == 1
        async with get_session_factory()() as session:
            assert await ledger_sum(session, seed.user_id) == 100

    @pytest.mark.asyncio
    async def test_rolled_back_work_publishes_nothing(self, seed):
        redis = AsyncMock()

        async def work(db):
            await award_xp(db, seed.user_id, 100, "task_complete")
            raise ValueError("abort")

        with pytest.raises(ValueError):
            await run_in_transaction(work, redis=redis)

        redis.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_failure_is_not_raised(self, seed):
        redis = AsyncMock()
        redis.publish.side_effect = ConnectionError("redis down")

        result = await run_in_transaction(
            lambda db: award_xp(db, seed.user_id, 500, "achievement"), redis=redis,
        )

        assert result["leveled_up"] is True
        async with get_session_factory()() as session:
            assert await ledger_sum(session, seed.user_id) == 500


class TestConcurrentAwards:

    @pytest.mark.asyncio
    async def test_parallel_awards_lose_no_update(self, seed):
        async def award(i: int) -> dict | None:
            return await run_in_transaction(
                lambda db: award_xp(db, seed.user_id, 10, "task_complete", idempotency_key=f"par:{i}"),
                retries=RACE_RETRIES,
            )

        await asyncio.gather(*(award(i) for i in range(10)))

        async with get_session_factory()() as session:
            gam = (await session.execute(select(UserGamification))).scalar_one()
            assert gam.total_xp == 100
            assert await ledger_sum(session, seed.user_id) == 100
            totals = (await session.execute(select(XPLedger.total_after))).scalars().all()
            assert sorted(totals) == list(range(10, 101, 10))

    @pytest.mark.asyncio
    async def test_parallel_awards_with_one_key_grant_once(self, seed):
        results = await asyncio.gather(*(
            run_in_transaction(
                lambda db: award_xp(db, seed.user_id, 25, "task_complete", idempotency_key="task:same"),
                retries=RACE_RETRIES,
            )
            for _ in range(4)
        ))

        assert sum(r is not None for r in results) == 1
        async with get_session_factory()() as session:
            assert await ledger_sum(session, seed.user_id) == 25
