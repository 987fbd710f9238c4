"""Durable client-side record of in-flight submissions.

One JSON file per job survives process restarts so an interrupted submission
can be resumed. The server's job row stays authoritative: entries here are
only a hint about unfinished work and how far it got.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, List, Optional

from . import config
from .models import TERMINAL_UPLOAD_STATUSES, UPLOAD_STATUSES, PersistedUploadState

logger = logging.getLogger(__name__)

KEY_PREFIX = "deckreview_upload_"


class UploadStateStore:
    def __init__(
        self,
        root_dir: Path,
        ttl_seconds: float = config.UPLOAD_STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root_dir = Path(root_dir)
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _path(self, job_id: str) -> Path:
        return self.root_dir / f"{KEY_PREFIX}{job_id}.json"

    def _is_stale(self, state: PersistedUploadState) -> bool:
        return self._clock() - state.last_touched_at > self.ttl_seconds

    def _read(self, path: Path) -> Optional[PersistedUploadState]:
        try:
            with path.open("r", encoding="utf-8") as f:
                return PersistedUploadState.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Discarding unreadable upload state %s: %s", path, exc)
            path.unlink(missing_ok=True)
            return None

    def save(self, state: PersistedUploadState) -> PersistedUploadState:
        """Write the state, stamping ``last_touched_at`` with the current time."""
        if state.status not in UPLOAD_STATUSES:
            raise ValueError(f"Unknown upload status: {state.status}")
        if state.uploaded_page_count > state.page_count:
            raise ValueError(
                f"uploaded_page_count {state.uploaded_page_count} exceeds page_count {state.page_count}"
            )
        state.last_touched_at = self._clock()
        self.root_dir.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(dir=self.root_dir, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
            os.replace(tmp_name, self._path(state.job_id))
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Saved upload state for %s (%s)", state.job_id, state.status)
        return state

    def get(self, job_id: str) -> Optional[PersistedUploadState]:
        path = self._path(job_id)
        state = self._read(path)
        if state is None:
            return None
        if self._is_stale(state):
            logger.info("Upload state for %s expired; removing", job_id)
            path.unlink(missing_ok=True)
            return None
        return state

    def update(self, job_id: str, **changes) -> Optional[PersistedUploadState]:
        state = self.get(job_id)
        if state is None:
            return None
        for key, value in changes.items():
            if not hasattr(state, key):
                raise AttributeError(f"PersistedUploadState has no field {key!r}")
            setattr(state, key, value)
        return self.save(state)

    def remove(self, job_id: str) -> None:
        self._path(job_id).unlink(missing_ok=True)
        logger.debug("Removed upload state for %s", job_id)

    def list_active(self, owner_id: Optional[str] = None) -> List[PersistedUploadState]:
        """Return resumable entries, purging stale and terminal ones on the way."""
        if not self.root_dir.exists():
            return []

        active: List[PersistedUploadState] = []
        for path in sorted(self.root_dir.glob(f"{KEY_PREFIX}*.json")):
            state = self._read(path)
            if state is None:
                continue
            if self._is_stale(state) or state.status in TERMINAL_UPLOAD_STATUSES:
                path.unlink(missing_ok=True)
                logger.info("Purged upload state for %s (%s)", state.job_id, state.status)
                continue
            if owner_id is not None and state.owner_id != owner_id:
                continue
            active.append(state)

        active.sort(key=lambda s: s.last_touched_at)
        return active
