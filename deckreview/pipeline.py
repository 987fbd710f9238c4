"""Client-side submission flow: extract, upload, create and dispatch a job."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from . import config
from .errors import ExtractionError
from .extractor import SUPPORTED_EXTENSIONS, ExtractionProgress, extract
from .models import UPLOAD_ANALYZING, UPLOAD_UPLOADING, PageImage, PersistedUploadState
from .orchestrator import DispatchHandle, JobMeta, JobOrchestrator
from .state_store import UploadStateStore
from .uploader import AssetUploader, UploadProgress

logger = logging.getLogger(__name__)


@dataclass
class Submission:
    job_id: str
    page_urls: List[str]
    dispatch: DispatchHandle


class SubmissionPipeline:
    def __init__(
        self,
        uploader: AssetUploader,
        orchestrator: JobOrchestrator,
        store: UploadStateStore,
        extract_pages: Callable[..., List[PageImage]] = extract,
        max_pages: int = config.MAX_PAGES,
        max_file_size: int = config.MAX_FILE_SIZE,
    ) -> None:
        self.uploader = uploader
        self.orchestrator = orchestrator
        self.store = store
        self.extract_pages = extract_pages
        self.max_pages = max_pages
        self.max_file_size = max_file_size

    def validate(self, source_path: Path) -> None:
        if not source_path.is_file():
            raise ValueError(f"File not found: {source_path}")
        if source_path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            raise ValueError(f"Unsupported file type: {source_path.suffix or '<none>'}")
        size = source_path.stat().st_size
        if size == 0:
            raise ValueError("File is empty")
        if size > self.max_file_size:
            raise ValueError(f"File size exceeds {self.max_file_size // (1024 * 1024)}MB limit")

    def submit(
        self,
        source_path: Path,
        owner_id: str,
        on_extract: Optional[Callable[[ExtractionProgress], None]] = None,
        on_upload: Optional[Callable[[UploadProgress], None]] = None,
    ) -> Submission:
        source_path = Path(source_path)
        self.validate(source_path)

        images = self.extract_pages(source_path, on_extract)
        if len(images) > self.max_pages:
            raise ExtractionError(
                f"Document has {len(images)} pages; the limit is {self.max_pages}"
            )

        size = source_path.stat().st_size
        job_id = self.orchestrator.create_job(JobMeta(source_path.name, size, len(images)))
        state = self.store.save(
            PersistedUploadState(
                job_id=job_id,
                owner_id=owner_id,
                source_file_name=source_path.name,
                source_file_size=size,
                page_count=len(images),
                status=UPLOAD_UPLOADING,
                source_path=str(source_path.resolve()),
            )
        )
        return self._upload_and_dispatch(state, images, on_upload)

    def resume(
        self,
        state: PersistedUploadState,
        on_upload: Optional[Callable[[UploadProgress], None]] = None,
    ) -> Submission:
        """Continue a submission from its last checkpoint."""
        if not state.source_path or not Path(state.source_path).is_file():
            raise ExtractionError(f"Source document for job {state.job_id} is no longer available")

        logger.info(
            "Resuming job %s from page %s of %s",
            state.job_id, state.uploaded_page_count + 1, state.page_count,
        )
        images = self.extract_pages(Path(state.source_path), None)
        if len(images) != state.page_count:
            raise ExtractionError(
                f"Source document changed: expected {state.page_count} pages, found {len(images)}"
            )
        return self._upload_and_dispatch(state, images, on_upload, resume_hint=state.uploaded_page_urls)

    def _upload_and_dispatch(
        self,
        state: PersistedUploadState,
        images: Sequence[PageImage],
        on_upload: Optional[Callable[[UploadProgress], None]],
        resume_hint: Optional[Sequence[str]] = None,
    ) -> Submission:
        job_id = state.job_id
        collected: List[str] = []

        def checkpoint(progress: UploadProgress) -> None:
            if progress.status in ("uploaded", "skipped") and progress.url:
                collected.append(progress.url)
                self.store.update(
                    job_id,
                    status=UPLOAD_UPLOADING,
                    uploaded_page_urls=list(collected),
                    uploaded_page_count=len(collected),
                )
            if on_upload is not None:
                on_upload(progress)

        try:
            urls = self.uploader.upload(images, job_id, checkpoint, resume_hint=resume_hint)
        except Exception as exc:
            self.store.update(job_id, error=str(exc))
            raise

        self.store.update(
            job_id,
            status=UPLOAD_ANALYZING,
            uploaded_page_urls=urls,
            uploaded_page_count=len(urls),
            error=None,
        )
        handle = self.orchestrator.dispatch(job_id, urls, state.source_file_name, state.source_file_size)
        return Submission(job_id=job_id, page_urls=urls, dispatch=handle)

    def abandon(self, job_id: str, reason: str = "Submission cancelled") -> None:
        """Acknowledge a failed submission: fail the job, drop its images and local state."""
        self.orchestrator.api.mark_failed(job_id, reason)
        self.uploader.store.delete_prefix(job_id)
        self.store.remove(job_id)
