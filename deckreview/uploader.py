"""Push rendered pages to object storage, resuming from what is already there."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from . import config
from .errors import UploadError
from .models import PageImage
from .storage import LocalObjectStore, page_key

logger = logging.getLogger(__name__)

# Reused signed URLs must stay valid at least this long for the worker to fetch them.
MIN_REUSED_URL_LIFETIME = 600


@dataclass
class UploadProgress:
    current_page: int
    total_pages: int
    status: str
    message: str = ""
    url: Optional[str] = None


ProgressCallback = Callable[[UploadProgress], None]


class AssetUploader:
    def __init__(
        self,
        store: LocalObjectStore,
        is_online: Optional[Callable[[], bool]] = None,
        offline_timeout: float = config.OFFLINE_WAIT_SECONDS,
        offline_poll_interval: float = 1.0,
        url_expiry: int = config.SIGNED_URL_EXPIRY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.is_online = is_online or (lambda: True)
        self.offline_timeout = offline_timeout
        self.offline_poll_interval = offline_poll_interval
        self.url_expiry = url_expiry
        self._sleep = sleep
        self._clock = clock
        self.last_summary: Dict[str, int] = {"uploaded": 0, "skipped": 0}

    def upload(
        self,
        page_images: Sequence[PageImage],
        job_id: str,
        on_progress: Optional[ProgressCallback] = None,
        resume_hint: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """Upload pages in order and return one signed URL per page.

        Pages already present under ``job_id/`` are not re-sent. On failure the
        pages stored so far stay in place so a retry resumes from there.
        """
        total = len(page_images)
        present = set(self.store.list(job_id))
        hints = list(resume_hint or [])
        summary = {"uploaded": 0, "skipped": 0}
        urls: List[str] = []

        if present:
            logger.info("Job %s: %s of %s pages already stored", job_id, len(present), total)

        for index, image in enumerate(page_images):
            key = page_key(job_id, image.page_number)
            name = key.rsplit("/", 1)[-1]

            if name in present:
                url = self._reuse_url(key, hints[index] if index < len(hints) else None)
                summary["skipped"] += 1
                urls.append(url)
                self._report(
                    on_progress,
                    UploadProgress(
                        index + 1, total, "skipped",
                        f"Page {image.page_number} already uploaded", url,
                    ),
                )
                continue

            self._report(
                on_progress,
                UploadProgress(
                    index + 1, total, "uploading",
                    f"Uploading page {image.page_number} of {total}...",
                ),
            )
            self._wait_until_online(image.page_number)
            try:
                self.store.put(key, image.data, content_type="image/jpeg")
                url = self.store.create_signed_url(key, expires_in=self.url_expiry)
            except (OSError, ValueError) as exc:
                message = f"Failed to upload page {image.page_number}: {exc}"
                self._report(on_progress, UploadProgress(index + 1, total, "error", message))
                raise UploadError(message, page_number=image.page_number) from exc

            summary["uploaded"] += 1
            urls.append(url)
            self._report(
                on_progress,
                UploadProgress(index + 1, total, "uploaded", f"Uploaded page {image.page_number}", url),
            )

        self.last_summary = summary
        self._report(
            on_progress, UploadProgress(total, total, "complete", "All images uploaded successfully")
        )
        logger.info(
            "Job %s: uploaded %s pages, skipped %s", job_id, summary["uploaded"], summary["skipped"]
        )
        return urls

    def _reuse_url(self, key: str, hint: Optional[str]) -> str:
        if hint and self.store.is_url_valid(hint, min_remaining=MIN_REUSED_URL_LIFETIME):
            if self.store.verify_signed_url(hint) == key:
                return hint
        return self.store.create_signed_url(key, expires_in=self.url_expiry)

    def _wait_until_online(self, page_number: int) -> None:
        if self.is_online():
            return
        logger.warning("Network offline before page %s; waiting up to %ss", page_number, self.offline_timeout)
        deadline = self._clock() + self.offline_timeout
        while not self.is_online():
            if self._clock() >= deadline:
                raise UploadError(
                    f"Network offline for more than {self.offline_timeout:.0f}s while uploading page {page_number}",
                    page_number=page_number,
                )
            self._sleep(self.offline_poll_interval)
        logger.info("Network back online; resuming at page %s", page_number)

    @staticmethod
    def _report(on_progress: Optional[ProgressCallback], progress: UploadProgress) -> None:
        if on_progress is not None:
            on_progress(progress)
