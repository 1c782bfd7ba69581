"""Shared test fixtures: a throwaway SQLite database per test, seeded content, API client."""

from __future__ import annotations

import os
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

TEST_JWT_SECRET = "test-secret-not-for-production-use-000000"

os.environ["FIF_JWT_ALGORITHM"] = "HS256"
os.environ["FIF_JWT_SECRET"] = TEST_JWT_SECRET
os.environ["FIF_LOG_FORMAT"] = "console"
os.environ["FIF_DB_CONFLICT_BACKOFF_SECONDS"] = "0"

from fif.config import get_settings  # noqa: E402

get_settings.cache_clear()

from fif.database import close_db, get_engine, get_session_factory, init_db  # noqa: E402
from fif.db.base import Base  # noqa: E402
from fif.db.models import Language, Lesson, User  # noqa: E402
from fif.gamification.seed import seed_achievements  # noqa: E402


@dataclass
class SeedData:
    user_ids: list[int]
    languages: dict[str, uuid.UUID]
    # language code -> lesson ids, in lesson_number order
    lessons: dict[str, list[uuid.UUID]] = field(default_factory=dict)

    @property
    def user_id(self) -> int:
        return self.user_ids[0]

    @property
    def lesson_id(self) -> uuid.UUID:
        return self.lessons["es"][0]


def make_token(user_id: int, *, expires_in: timedelta = timedelta(hours=1), **claims: object) -> str:
    """Access token shaped like the auth service issues them."""
    settings = get_settings()
    payload = {
        "sub": str(user_id),
        "iss": settings.jwt_issuer,
        "exp": datetime.now(timezone.utc) + expires_in,
        "type": "access",
        **claims,
    }
    return jwt.encode(payload, TEST_JWT_SECRET, algorithm="HS256")


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[None, None]:
    """Fresh SQLite file with the full schema; the module-level engine points at it."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'fif-test.db'}")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()


@pytest_asyncio.fixture
async def seed(database) -> SeedData:
    """Three users, the four languages with two lessons each, and achievement definitions."""
    data = SeedData(user_ids=[], languages={})
    async with get_session_factory()() as session:
        now = datetime.now(timezone.utc)
        users = [User(display_name=name, created_at=now) for name in ("ana", "bruno", "chiara")]
        session.add_all(users)

        for code, name in (("es", "Spanish"), ("fr", "French"), ("it", "Italian"), ("pt", "Portuguese")):
            language = Language(id=uuid.uuid4(), code=code, name=name)
            session.add(language)
            data.languages[code] = language.id
            data.lessons[code] = []
            for number in (1, 2):
                lesson = Lesson(
                    id=uuid.uuid4(),
                    language_id=language.id,
                    title=f"{name} lesson {number}",
                    lesson_number=number,
                )
                session.add(lesson)
                data.lessons[code].append(lesson.id)

        await session.flush()
        data.user_ids = [u.id for u in users]
        await seed_achievements(session)
        await session.commit()
    return data


@pytest_asyncio.fixture
async def db(seed) -> AsyncGenerator[AsyncSession, None]:
    """A session on the seeded database. Tests commit explicitly."""
    async with get_session_factory()() as session:
        yield session


@pytest_asyncio.fixture
async def client(seed) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, authenticated as the first seeded user."""
    from fif.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        ac.headers["Authorization"] = f"Bearer {make_token(seed.user_id)}"
        yield ac


@pytest.fixture
def token_for():
    """Factory for bearer tokens of arbitrary users."""
    return make_token
