"""Create jobs and hand them to the analysis worker in the background."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import httpx

from . import config
from .client import JobApiClient
from .errors import DeckReviewError

logger = logging.getLogger(__name__)

TIMEOUT_HEADROOM = 1.5


@dataclass
class JobMeta:
    file_name: str
    file_size: int
    page_count: int


class DispatchHandle:
    """Outcome of one background dispatch; the job row stays the source of truth."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self.response: Optional[Dict[str, Any]] = None
        self.error: Optional[str] = None
        self._done = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)


class JobOrchestrator:
    def __init__(
        self,
        api: JobApiClient,
        dispatch_timeout_floor: float = config.DISPATCH_TIMEOUT_FLOOR_SECONDS,
        page_latency: float = config.PAGE_LATENCY_SECONDS,
        inter_page_delay: float = config.INTER_PAGE_DELAY_SECONDS,
    ) -> None:
        self.api = api
        self.dispatch_timeout_floor = dispatch_timeout_floor
        self.page_latency = page_latency
        self.inter_page_delay = inter_page_delay

    def create_job(self, meta: JobMeta) -> str:
        job_id = self.api.create_job(meta.file_name, meta.file_size, meta.page_count)
        logger.info("Created job %s for %s (%s pages)", job_id, meta.file_name, meta.page_count)
        return job_id

    def dispatch_timeout(self, page_count: int) -> float:
        """Budget for a worker that handles pages one after another."""
        sequential = page_count * (self.page_latency + self.inter_page_delay) * TIMEOUT_HEADROOM
        return float(max(self.dispatch_timeout_floor, math.ceil(sequential)))

    def dispatch(
        self,
        job_id: str,
        page_urls: Sequence[str],
        file_name: str,
        file_size: int,
    ) -> DispatchHandle:
        """Send the job to the worker without blocking the caller.

        Failures of the request itself (transport error, timeout, error status)
        are written to the job row, since nothing else observes this call.
        """
        handle = DispatchHandle(job_id)
        thread = threading.Thread(
            target=self._run_dispatch,
            args=(handle, list(page_urls), file_name, file_size),
            name=f"dispatch-{job_id}",
            daemon=True,
        )
        handle._thread = thread
        thread.start()
        logger.info("Background analysis request sent for %s", job_id)
        return handle

    def _run_dispatch(
        self,
        handle: DispatchHandle,
        page_urls: Sequence[str],
        file_name: str,
        file_size: int,
    ) -> None:
        job_id = handle.job_id
        timeout = self.dispatch_timeout(len(page_urls))
        try:
            handle.response = self.api.dispatch_analysis(
                job_id, page_urls, file_name, file_size, timeout=timeout
            )
            logger.info("Background analysis finished for %s: %s", job_id, handle.response.get("status"))
        except httpx.TimeoutException:
            handle.error = f"Analysis request timed out after {timeout:.0f}s"
        except httpx.HTTPError as exc:
            handle.error = f"Failed to start analysis: {exc}"
        except DeckReviewError as exc:
            handle.error = str(exc)
        except Exception as exc:
            logger.exception("Unexpected dispatch error for %s", job_id)
            handle.error = f"Failed to start analysis: {exc}"

        try:
            if handle.error is not None:
                logger.error("Background analysis failed for %s: %s", job_id, handle.error)
                self._record_failure(job_id, handle.error)
        finally:
            handle._done.set()

    def _record_failure(self, job_id: str, message: str) -> None:
        try:
            self.api.mark_failed(job_id, message)
        except (httpx.HTTPError, DeckReviewError):
            logger.exception("Could not record failure for job %s", job_id)
