"""Sync failure classes the offline queue acts on."""

from __future__ import annotations


class SyncError(Exception):
    pass


class TransientSyncError(SyncError):
    """Network failure or a retryable response. The item stays queued."""


class RejectedMutationError(SyncError):
    """The server refused the mutation as invalid. Resending it cannot succeed."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
