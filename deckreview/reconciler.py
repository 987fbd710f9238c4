"""Resume unfinished submissions and poll jobs until they finish.

Server job rows are authoritative: local upload state is corrected or purged
to match whatever the server reports.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from . import config
from .client import JobApiClient
from .errors import ApiError, DeckReviewError, ExtractionError, JobNotFoundError
from .models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    TERMINAL_JOB_STATUSES,
    UPLOAD_ANALYZING,
    UPLOAD_EXTRACTING,
    UPLOAD_FINALIZING,
    UPLOAD_UPLOADING,
    PersistedUploadState,
)
from .pipeline import SubmissionPipeline
from .state_store import UploadStateStore

logger = logging.getLogger(__name__)

PHASE_QUEUED = "queued"
PHASE_ANALYZING = "analyzing"
PHASE_FINALIZING = "finalizing"

RESUMABLE_UPLOAD_STATUSES = (UPLOAD_EXTRACTING, UPLOAD_UPLOADING)


@dataclass
class JobProgress:
    job_id: str
    phase: str
    current_page: int
    total_pages: int
    status: str
    error_message: Optional[str] = None


@dataclass
class ReconcileOutcome:
    job_id: str
    action: str
    server_status: Optional[str] = None
    detail: Optional[str] = None


def progress_from_status(job_id: str, status: Dict[str, Any]) -> JobProgress:
    server_status = status["status"]
    total = int(status.get("pageCount") or 0)
    current = int(status.get("analyzedPageCount") or 0)
    if server_status == JOB_PENDING:
        phase = PHASE_QUEUED
    elif server_status == JOB_PROCESSING:
        phase = PHASE_FINALIZING if total and current >= total else PHASE_ANALYZING
    else:
        phase = server_status
    return JobProgress(
        job_id=job_id,
        phase=phase,
        current_page=current,
        total_pages=total,
        status=server_status,
        error_message=status.get("errorMessage"),
    )


class StatusReconciler:
    def __init__(
        self,
        api: JobApiClient,
        store: UploadStateStore,
        pipeline: Optional[SubmissionPipeline] = None,
        poll_interval: float = config.POLL_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api = api
        self.store = store
        self.pipeline = pipeline
        self.poll_interval = poll_interval
        self._sleep = sleep

    def reconcile(self, owner_id: str) -> List[ReconcileOutcome]:
        """Match every locally persisted submission against the server."""
        outcomes: List[ReconcileOutcome] = []
        for state in self.store.list_active(owner_id):
            outcomes.append(self._reconcile_one(state))
        return outcomes

    def _reconcile_one(self, state: PersistedUploadState) -> ReconcileOutcome:
        job_id = state.job_id
        try:
            status = self.api.get_job_status(job_id)
        except JobNotFoundError:
            self.store.remove(job_id)
            logger.info("Job %s unknown to server; dropped local state", job_id)
            return ReconcileOutcome(job_id, "purged_missing")
        except (ApiError, httpx.HTTPError) as exc:
            logger.warning("Could not reconcile job %s: %s", job_id, exc)
            return ReconcileOutcome(job_id, "unreachable", detail=str(exc))

        server_status = status["status"]
        if server_status in TERMINAL_JOB_STATUSES:
            self.store.remove(job_id)
            logger.info("Job %s already %s; dropped local state", job_id, server_status)
            return ReconcileOutcome(job_id, "purged_terminal", server_status)

        if (
            server_status == JOB_PENDING
            and state.status in RESUMABLE_UPLOAD_STATUSES
            and self.pipeline is not None
        ):
            try:
                self.pipeline.resume(state)
            except ExtractionError as exc:
                # The checkpoint can no longer be continued.
                logger.error("Abandoning job %s: %s", job_id, exc)
                try:
                    self.pipeline.abandon(job_id, str(exc))
                except (ApiError, httpx.HTTPError) as abandon_exc:
                    logger.warning("Could not abandon job %s: %s", job_id, abandon_exc)
                    return ReconcileOutcome(job_id, "resume_failed", server_status, str(exc))
                return ReconcileOutcome(job_id, "abandoned", server_status, str(exc))
            except DeckReviewError as exc:
                logger.error("Could not resume job %s: %s", job_id, exc)
                return ReconcileOutcome(job_id, "resume_failed", server_status, str(exc))
            return ReconcileOutcome(job_id, "resumed", server_status)

        self._sync_local(progress_from_status(job_id, status))
        return ReconcileOutcome(job_id, "polling", server_status)

    def _sync_local(self, progress: JobProgress) -> None:
        if progress.status in TERMINAL_JOB_STATUSES:
            self.store.remove(progress.job_id)
            return
        local_status = UPLOAD_FINALIZING if progress.phase == PHASE_FINALIZING else UPLOAD_ANALYZING
        self.store.update(
            progress.job_id, status=local_status, analyzed_page_count=progress.current_page
        )

    def poll(
        self,
        job_id: str,
        on_progress: Optional[Callable[[JobProgress], None]] = None,
        max_attempts: Optional[int] = None,
    ) -> JobProgress:
        """Poll at a fixed interval until the job is terminal or attempts run out."""
        attempts = 0
        while True:
            attempts += 1
            try:
                status = self.api.get_job_status(job_id)
            except JobNotFoundError:
                self.store.remove(job_id)
                raise
            except (ApiError, httpx.HTTPError) as exc:
                logger.warning("Polling attempt %s for job %s failed: %s", attempts, job_id, exc)
                if max_attempts is not None and attempts >= max_attempts:
                    raise
                self._sleep(self.poll_interval)
                continue

            progress = progress_from_status(job_id, status)
            self._sync_local(progress)
            if on_progress is not None:
                on_progress(progress)
            if progress.status in (JOB_COMPLETED, JOB_FAILED):
                logger.info("Job %s finished: %s", job_id, progress.status)
                return progress
            if max_attempts is not None and attempts >= max_attempts:
                return progress
            self._sleep(self.poll_interval)
