"""Async SQLAlchemy engine, session management and retried transactions."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fif.config import get_settings
from fif.redis_client import publish_events, take_queued_events

logger = logging.getLogger(__name__)

T = TypeVar("T")

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

# Deadlock, serialization failure, lock-not-available.
RETRYABLE_SQLSTATES = {"40P01", "40001", "55P03"}


def _engine_kwargs(url: str) -> dict[str, Any]:
    if url.startswith("postgresql"):
        return {
            "pool_size": 20,
            "max_overflow": 10,
            "pool_pre_ping": True,
            "connect_args": {"statement_cache_size": 0},
        }
    return {}


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT works on the pysqlite family of drivers."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")


async def init_db(url: str) -> None:
    """Initialize the database engine and session factory."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = create_async_engine(url, echo=False, **_engine_kwargs(url))
    if url.startswith("sqlite"):
        _enable_sqlite_savepoints(_engine)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def close_db() -> None:
    """Dispose of the database engine."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    """Get the async engine instance."""
    if _engine is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory (used by workers and retried transactions)."""
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session (FastAPI dependency)."""
    async with get_session_factory()() as session:
        yield session


def is_retryable_conflict(exc: BaseException) -> bool:
    """True for lock contention errors that are safe to retry as a whole unit."""
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    # SQLite reports contention as "database is locked".
    return isinstance(exc, OperationalError) and "database is locked" in str(exc)


async def run_in_transaction(
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    retries: int | None = None,
    redis: object = None,
) -> T:
    """Run ``work`` inside one committed transaction, retrying on lock conflicts.

    The callable must be safe to re-run from scratch: every attempt gets a
    fresh session and a fresh transaction. Events it queued are published
    to ``redis`` after the commit, so a retried or rolled back attempt
    publishes nothing.
    """
    settings = get_settings()
    attempts = 1 + (settings.db_conflict_retries if retries is None else retries)
    factory = get_session_factory()

    for attempt in range(1, attempts + 1):
        try:
            async with factory() as session:
                async with session.begin():
                    result = await work(session)
                await publish_events(redis, take_queued_events(session))
                return result
        except DBAPIError as exc:
            if attempt >= attempts or not is_retryable_conflict(exc):
                raise
            delay = settings.db_conflict_backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "Transaction conflict (attempt %d/%d), retrying in %.2fs: %s",
                attempt, attempts, delay, exc.orig,
            )
            await asyncio.sleep(delay)

    msg = "unreachable"
    raise RuntimeError(msg)
