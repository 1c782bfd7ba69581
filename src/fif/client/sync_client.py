"""HTTP transport for queued progress mutations."""

from __future__ import annotations

import logging

import httpx

from fif.client.errors import RejectedMutationError, TransientSyncError

logger = logging.getLogger(__name__)

# Retryable statuses. 401/403 mean the session needs refreshing, not that
# the mutation is bad, so they keep the item queued as well.
TRANSIENT_STATUSES = frozenset({401, 403, 408, 425, 429})


class SyncClient:
    """Sends one mutation per request with its id as the Idempotency-Key."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def set_token(self, token: str) -> None:
        """Use a refreshed access token for every following request."""
        self._http.headers["Authorization"] = f"Bearer {token}"

    async def send(self, item: dict) -> dict:
        """POST one queued item. Raises TransientSyncError or RejectedMutationError."""
        lesson_id = item["lesson_id"]
        if item.get("task_number") is not None:
            path = f"/api/v1/progress/lessons/{lesson_id}/tasks/{item['task_number']}"
        else:
            path = f"/api/v1/progress/lessons/{lesson_id}"

        try:
            response = await self._http.post(
                path,
                json=item["payload"],
                headers={"Idempotency-Key": item["id"]},
            )
        except httpx.TransportError as exc:
            raise TransientSyncError(f"{type(exc).__name__}: {exc}") from exc

        status = response.status_code
        if status < 400:
            # Applied either way; a resend would be a duplicate.
            try:
                return response.json()
            except ValueError:
                logger.warning("Mutation %s confirmed with a non-JSON body (HTTP %d)", item["id"], status)
                return {}
        if status >= 500 or status in TRANSIENT_STATUSES:
            raise TransientSyncError(f"HTTP {status}")

        try:
            body = response.json()
        except ValueError:
            body = None
        detail = body.get("detail", response.text) if isinstance(body, dict) else response.text
        raise RejectedMutationError(status, str(detail))

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> SyncClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
