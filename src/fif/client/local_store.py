"""Durable per-user client state: queue, dead letters, progress cache."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


def empty_state() -> dict:
    return {
        "queue": [],
        "dead_letters": [],
        "tasks": {},
        "lessons": {},
        "last_sync_time": None,
    }


class LocalStateStore:
    """JSON file at ``<state_dir>/<user_id>.json``, rewritten atomically on every save.

    The whole state is one document so the queue and the optimistic cache
    can never be persisted out of step with each other.
    """

    def __init__(self, state_dir: str | Path, user_id: int | str) -> None:
        self.path = Path(state_dir) / f"{user_id}.json"
        self.state = self._load()

    def _load(self) -> dict:
        if not self.path.exists():
            return empty_state()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            # Moved aside, never overwritten.
            corrupt = self.path.with_suffix(".corrupt")
            logger.exception("Unreadable offline state %s, moved to %s", self.path, corrupt)
            os.replace(self.path, corrupt)
            return empty_state()
        state = empty_state()
        state.update(data)
        return state

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.state, f, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
