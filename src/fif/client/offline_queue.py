"""Durable FIFO queue of progress mutations awaiting server confirmation.

Items are sent strictly in order, one request at a time, and removed only
after the server confirms them. A transient failure halts the drain with
the item (and everything behind it) still queued; a rejected item is moved
to the dead-letter list so it cannot block the rest of the queue.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from fif.client.errors import RejectedMutationError, TransientSyncError
from fif.client.local_store import LocalStateStore
from fif.client.sync_client import SyncClient

logger = logging.getLogger(__name__)

RejectedCallback = Callable[[dict, RejectedMutationError], None]


def _log_drain_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background sync failed", exc_info=exc)


@dataclass
class QueueItem:
    lesson_id: str
    payload: dict
    task_number: int | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    enqueued_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DrainResult:
    sent: int = 0
    rejected: int = 0
    halted: bool = False
    skipped: bool = False


class OfflineQueue:
    def __init__(
        self,
        store: LocalStateStore,
        client: SyncClient,
        *,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        on_rejected: RejectedCallback | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.client = client
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.on_rejected = on_rejected
        self._sleep = sleep
        self._draining = False
        self._online = True
        self._tasks: set[asyncio.Task] = set()

    @property
    def items(self) -> list[dict]:
        return self.store.state["queue"]

    @property
    def dead_letters(self) -> list[dict]:
        return self.store.state["dead_letters"]

    @property
    def pending_count(self) -> int:
        return len(self.items)

    @property
    def is_draining(self) -> bool:
        return self._draining

    def status(self) -> dict:
        """What the UI shows, e.g. "3 changes pending sync"."""
        return {
            "pending": self.pending_count,
            "dead_letters": len(self.dead_letters),
            "syncing": self._draining,
            "online": self._online,
            "last_sync_time": self.store.state["last_sync_time"],
        }

    def enqueue(self, lesson_id: str, payload: dict, task_number: int | None = None) -> QueueItem:
        """Append a mutation and persist. Never deduplicates."""
        item = QueueItem(lesson_id=str(lesson_id), payload=payload, task_number=task_number)
        self.items.append(item.to_dict())
        self.store.save()
        return item

    # -- triggers --

    def _spawn_drain(self) -> asyncio.Task | None:
        if self._draining or not self.items:
            return None
        task = asyncio.get_running_loop().create_task(self.drain())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_log_drain_failure)
        return task

    def set_online(self, online: bool) -> asyncio.Task | None:
        """Record connectivity. Coming back online starts a drain."""
        came_online = online and not self._online
        self._online = online
        if came_online:
            logger.info("Back online with %d pending changes", self.pending_count)
            return self._spawn_drain()
        return None

    def start(self) -> asyncio.Task | None:
        """Drain leftovers from a previous session, if any."""
        return self._spawn_drain()

    async def run_periodic(self, interval: float) -> None:
        """Drain every ``interval`` seconds while online. Runs until cancelled.

        A drain that fails unexpectedly is logged and tried again on the
        next tick; the item it stopped on stays at the head of the queue.
        """
        while True:
            await self._sleep(interval)
            if not (self._online and self.items):
                continue
            try:
                await self.drain()
            except Exception:
                logger.exception("Periodic sync failed with %d pending", self.pending_count)

    # -- draining --

    async def _send_with_retry(self, item: dict) -> dict:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.client.send(item)
            except TransientSyncError as exc:
                if attempt >= self.max_attempts:
                    raise
                delay = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
                logger.warning(
                    "Sync of %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    item["id"], attempt, self.max_attempts, delay, exc,
                )
                await self._sleep(delay)
        msg = "unreachable"
        raise RuntimeError(msg)

    async def drain(self) -> DrainResult:
        """Send queued items in order until empty or a transient failure.

        Single-flight: a call made while another drain runs returns
        immediately with ``skipped=True``.
        """
        result = DrainResult()
        if self._draining or not self._online:
            result.skipped = True
            return result

        self._draining = True
        try:
            while self.items:
                item = self.items[0]
                try:
                    await self._send_with_retry(item)
                except TransientSyncError as exc:
                    logger.warning("Sync halted with %d pending: %s", self.pending_count, exc)
                    result.halted = True
                    break
                except RejectedMutationError as exc:
                    logger.error("Mutation %s rejected, moved to dead letters: %s", item["id"], exc)
                    self.items.pop(0)
                    self.dead_letters.append({**item, "error": str(exc), "status_code": exc.status_code})
                    self.store.save()
                    result.rejected += 1
                    if self.on_rejected is not None:
                        self.on_rejected(item, exc)
                    continue

                self.items.pop(0)
                self.store.state["last_sync_time"] = datetime.now(timezone.utc).isoformat()
                self.store.save()
                result.sent += 1
        finally:
            self._draining = False

        return result
