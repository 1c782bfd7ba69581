"""Wire the client pieces together from settings."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import httpx

from fif.client.local_store import LocalStateStore
from fif.client.offline_queue import OfflineQueue, RejectedCallback
from fif.client.progress_cache import ProgressCache
from fif.client.sync_client import SyncClient
from fif.config import Settings, get_settings


@dataclass
class OfflineSession:
    store: LocalStateStore
    client: SyncClient
    queue: OfflineQueue
    cache: ProgressCache
    sync_interval: float = 60.0

    def start_background_sync(self) -> asyncio.Task:
        """Drain leftovers now, then every ``sync_interval`` seconds until cancelled."""
        self.queue.start()
        return asyncio.get_running_loop().create_task(self.queue.run_periodic(self.sync_interval))

    def refresh_token(self, token: str) -> asyncio.Task | None:
        """Swap in a new access token and resend what 401/403 held back."""
        self.client.set_token(token)
        return self.queue.start()

    async def aclose(self) -> None:
        await self.client.aclose()


def create_offline_session(
    user_id: int,
    token: str | None,
    *,
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    on_rejected: RejectedCallback | None = None,
) -> OfflineSession:
    """Load the user's persisted state and build queue, cache and transport."""
    if settings is None:
        settings = get_settings()
    store = LocalStateStore(settings.offline_state_dir, user_id)
    client = SyncClient(
        settings.sync_api_base_url,
        token,
        timeout=settings.sync_request_timeout_seconds,
        transport=transport,
    )
    queue = OfflineQueue(
        store,
        client,
        max_attempts=settings.sync_max_attempts,
        backoff_base=settings.sync_backoff_base_seconds,
        backoff_max=settings.sync_backoff_max_seconds,
        on_rejected=on_rejected,
    )
    return OfflineSession(
        store=store,
        client=client,
        queue=queue,
        cache=ProgressCache(store, queue),
        sync_interval=settings.sync_interval_seconds,
    )
