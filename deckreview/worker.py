"""Worker that runs the per-page analysis for one dispatched job."""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from . import config, db, ledger
from .analysis import PageAnalyzer
from .errors import AnalysisError, JobNotFoundError
from .models import JOB_COMPLETED, JOB_FAILED, JOB_PROCESSING, PageResult

logger = logging.getLogger(__name__)


@dataclass
class WorkerSummary:
    job_id: str
    status: str
    pages_total: int
    pages_succeeded: int = 0
    pages_failed: int = 0
    credits_charged: int = 0
    error: Optional[str] = None
    settlement_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": self.status,
            "pagesTotal": self.pages_total,
            "pagesSucceeded": self.pages_succeeded,
            "pagesFailed": self.pages_failed,
            "creditsCharged": self.credits_charged,
            "error": self.error,
            "settlementError": self.settlement_error,
        }


def _to_page_result(job_id: str, page_number: int, url: str, result: Dict[str, Any]) -> PageResult:
    score = result.get("score")
    return PageResult(
        job_id=job_id,
        page_number=page_number,
        title=str(result.get("title") or f"Page {page_number}"),
        content=str(result.get("content") or ""),
        score=int(score) if score is not None else None,
        feedback=str(result.get("feedback") or ""),
        image_url=url,
        succeeded=bool(result),
    )


def _analyze_pages(
    conn: sqlite3.Connection,
    job_id: str,
    page_urls: Sequence[str],
    analyzer: PageAnalyzer,
    inter_page_delay: float,
    sleep: Callable[[float], None],
) -> Tuple[List[Dict[str, Any]], List[PageResult]]:
    """Call the analyzer once per page, in order, pausing between calls.

    A page that fails, or whose result cannot be read, contributes an empty
    result instead of failing the job.
    """
    raw_results: List[Dict[str, Any]] = []
    page_results: List[PageResult] = []
    total = len(page_urls)
    for page_number, url in enumerate(page_urls, start=1):
        try:
            result = analyzer.analyze_page(page_number, url) or {}
            page_result = _to_page_result(job_id, page_number, url, result)
            logger.info("Job %s: analyzed page %s/%s", job_id, page_number, total)
        except Exception:
            logger.exception("Job %s: page %s analysis failed", job_id, page_number)
            result = {}
            page_result = _to_page_result(job_id, page_number, url, result)
        raw_results.append(result)
        page_results.append(page_result)
        db.set_analyzed_page_count(conn, job_id, page_number)
        if page_number < total:
            sleep(inter_page_delay)
    return raw_results, page_results


def run_job(
    conn: sqlite3.Connection,
    job_id: str,
    page_urls: Sequence[str],
    analyzer: PageAnalyzer,
    inter_page_delay: float = config.INTER_PAGE_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    credits_per_page: int = config.CREDITS_PER_PAGE,
) -> WorkerSummary:
    job = db.get_job(conn, job_id)
    if job is None:
        raise JobNotFoundError(f"Job {job_id} not found")

    db.set_job_status(conn, job_id, JOB_PROCESSING)
    summary = WorkerSummary(job_id=job_id, status=JOB_PROCESSING, pages_total=len(page_urls))

    try:
        raw_results, page_results = _analyze_pages(
            conn, job_id, page_urls, analyzer, inter_page_delay, sleep
        )
        summary.pages_succeeded = sum(1 for result in page_results if result.succeeded)
        summary.pages_failed = summary.pages_total - summary.pages_succeeded
        if summary.pages_succeeded == 0:
            raise AnalysisError(f"All {summary.pages_total} pages failed analysis")

        try:
            overall = analyzer.aggregate(raw_results)
        except AnalysisError:
            raise
        except Exception as exc:
            raise AnalysisError(f"Aggregate analysis failed: {exc}") from exc

        db.complete_job(conn, job_id, page_results, overall)
        summary.status = JOB_COMPLETED
    except Exception as exc:
        logger.exception("Job %s failed", job_id)
        db.mark_job_failed(conn, job_id, str(exc))
        summary.status = JOB_FAILED
        summary.error = str(exc)
        return summary

    # Results are durable; only now is the owner charged.
    cost = job.page_count * credits_per_page
    try:
        result = ledger.deduct(
            conn,
            job.owner_id,
            cost,
            f"Analysis: {job.source_file_name} ({job.page_count} pages)",
            {"jobId": job_id, "pageCount": job.page_count, "fileName": job.source_file_name},
        )
    except sqlite3.Error as exc:
        logger.exception("Job %s: settlement failed", job_id)
        summary.settlement_error = str(exc)
        return summary

    if result.success:
        summary.credits_charged = cost
    else:
        logger.warning(
            "Job %s completed but %s could not be charged %s credits: %s",
            job_id, job.owner_id, cost, result.error,
        )
        summary.settlement_error = result.error
    return summary
