"""HTTP API for jobs, credits and signed page assets."""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from . import db, ledger, worker
from .analysis import HttpPageAnalyzer, PageAnalyzer, TesseractPageAnalyzer, store_fetcher
from .config import Config
from .credentials import verify_token
from .errors import AuthenticationError, InvalidTransitionError, SignedUrlError
from .models import JOB_COMPLETED, JOB_PENDING, Job, PageAsset
from .storage import LocalObjectStore

logger = logging.getLogger(__name__)


class CreateJobRequest(BaseModel):
    fileName: str = Field(min_length=1)
    fileSize: int = Field(ge=0)
    pageCount: int = Field(ge=1)


class AnalyzeRequest(BaseModel):
    jobId: str
    pageAssetUrls: List[str] = Field(min_length=1)
    fileName: str
    fileSize: int = Field(ge=0)


class FailJobRequest(BaseModel):
    errorMessage: str = "Analysis failed"


class DeductRequest(BaseModel):
    amount: int = Field(gt=0)
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AddCreditsRequest(BaseModel):
    amount: int = Field(gt=0)
    transactionType: str
    description: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


def job_view(job: Job) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "errorMessage": job.error_message,
        "fileName": job.source_file_name,
        "fileSize": job.source_file_size,
        "pageCount": job.page_count,
        "analyzedPageCount": job.analyzed_page_count,
        "createdAt": job.created_at,
        "updatedAt": job.updated_at,
    }


def _payment_required(current_balance: int, required: int) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content={
            "error": "Insufficient credits",
            "requiresUpgrade": True,
            "currentBalance": current_balance,
            "requiredCredits": required,
        },
    )


def record_page_assets(
    conn: sqlite3.Connection, store: LocalObjectStore, job_id: str, page_urls: List[str]
) -> None:
    for page_number, url in enumerate(page_urls, start=1):
        try:
            storage_path = store.verify_signed_url(url)
        except SignedUrlError:
            storage_path = url
        db.upsert_page_asset(
            conn,
            PageAsset(job_id=job_id, page_number=page_number, storage_path=storage_path, signed_url=url),
        )


def default_analyzer(config: Config, store: LocalObjectStore) -> PageAnalyzer:
    if config.analysis_endpoint:
        return HttpPageAnalyzer(config.analysis_endpoint, config.analysis_api_key or "")
    return TesseractPageAnalyzer(store_fetcher(store))


def create_app(
    config: Config,
    analyzer: Optional[PageAnalyzer] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> FastAPI:
    config.validate()
    db.init_db(config.db_path).close()
    store = LocalObjectStore(
        config.storage_root, config.secret, bucket=config.bucket, base_url=config.base_url
    )
    page_analyzer = analyzer or default_analyzer(config, store)

    app = FastAPI(title="deckreview")
    app.state.config = config
    app.state.store = store
    app.state.analyzer = page_analyzer

    @app.on_event("shutdown")
    def _close_analyzer() -> None:
        # Injected analyzers belong to the caller.
        if analyzer is None and isinstance(page_analyzer, HttpPageAnalyzer):
            page_analyzer.close()

    @app.exception_handler(RequestValidationError)
    async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "Invalid request body", "detail": str(exc)})

    def get_conn() -> Iterator[sqlite3.Connection]:
        conn = db.get_connection(config.db_path)
        try:
            yield conn
        finally:
            conn.close()

    def current_owner(authorization: Optional[str] = Header(default=None)) -> str:
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Authentication required")
        try:
            return verify_token(authorization[len("Bearer "):], config.secret)
        except AuthenticationError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc

    def owned_job(conn: sqlite3.Connection, job_id: str, owner_id: str) -> Job:
        job = db.get_job(conn, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        if job.owner_id != owner_id:
            raise HTTPException(status_code=403, detail="Unauthorized")
        return job

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/jobs")
    def create_job(
        body: CreateJobRequest,
        owner_id: str = Depends(current_owner),
        conn: sqlite3.Connection = Depends(get_conn),
    ) -> Dict[str, Any]:
        if body.pageCount > config.max_pages:
            raise HTTPException(
                status_code=400,
                detail=f"Documents are limited to {config.max_pages} pages",
            )
        job_id = db.create_job(conn, owner_id, body.fileName, body.fileSize, body.pageCount)
        return {"jobId": job_id, "status": JOB_PENDING}

    @app.post("/jobs/{job_id}/analyze")
    def analyze(
        job_id: str,
        body: AnalyzeRequest,
        owner_id: str = Depends(current_owner),
        conn: sqlite3.Connection = Depends(get_conn),
    ):
        if body.jobId != job_id:
            raise HTTPException(status_code=400, detail="jobId does not match the URL")
        job = owned_job(conn, job_id, owner_id)
        if job.status != JOB_PENDING:
            raise HTTPException(status_code=409, detail=f"Job is already {job.status}")
        if len(body.pageAssetUrls) != job.page_count:
            raise HTTPException(
                status_code=400,
                detail=f"Expected {job.page_count} page URLs, got {len(body.pageAssetUrls)}",
            )

        required = job.page_count * config.credits_per_page
        if not ledger.check_sufficient(conn, owner_id, required):
            account = ledger.get_balance(conn, owner_id)
            return _payment_required(account.credits_balance if account else 0, required)

        record_page_assets(conn, store, job_id, body.pageAssetUrls)
        logger.info("Starting analysis of job %s (%s pages)", job_id, job.page_count)
        try:
            summary = worker.run_job(
                conn,
                job_id,
                body.pageAssetUrls,
                page_analyzer,
                inter_page_delay=config.inter_page_delay,
                sleep=sleep,
                credits_per_page=config.credits_per_page,
            )
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return summary.to_dict()

    @app.get("/jobs/{job_id}")
    def get_job_status(
        job_id: str,
        owner_id: str = Depends(current_owner),
        conn: sqlite3.Connection = Depends(get_conn),
    ) -> Dict[str, Any]:
        return job_view(owned_job(conn, job_id, owner_id))

    @app.get("/jobs/{job_id}/result")
    def get_job_result(
        job_id: str,
        owner_id: str = Depends(current_owner),
        conn: sqlite3.Connection = Depends(get_conn),
    ) -> Dict[str, Any]:
        job = owned_job(conn, job_id, owner_id)
        if job.status != JOB_COMPLETED:
            raise HTTPException(status_code=404, detail=f"Job is {job.status}; no result yet")
        view = job_view(job)
        view["result"] = job.result_payload
        view["pages"] = [
            {
                "pageNumber": page.page_number,
                "title": page.title,
                "content": page.content,
                "score": page.score,
                "feedback": page.feedback,
                "imageUrl": page.image_url,
                "succeeded": page.succeeded,
            }
            for page in db.list_page_results(conn, job_id)
        ]
        return view

    @app.post("/jobs/{job_id}/fail")
    def fail_job(
        job_id: str,
        body: FailJobRequest,
        owner_id: str = Depends(current_owner),
        conn: sqlite3.Connection = Depends(get_conn),
    ) -> Dict[str, Any]:
        owned_job(conn, job_id, owner_id)
        applied = db.mark_job_failed(conn, job_id, body.errorMessage)
        job = db.get_job(conn, job_id)
        return {"applied": applied, "status": job.status}

    @app.get("/credits/balance")
    def get_balance(
        owner_id: str = Depends(current_owner),
        conn: sqlite3.Connection = Depends(get_conn),
    ) -> Dict[str, Any]:
        account = ledger.get_balance(conn, owner_id)
        if account is None:
            raise HTTPException(status_code=404, detail="No credit account")
        return {
            "ownerId": account.owner_id,
            "creditsBalance": account.credits_balance,
            "subscriptionCredits": account.subscription_credits,
            "purchasedCredits": account.purchased_credits,
            "updatedAt": account.updated_at,
        }

    @app.get("/credits/history")
    def get_history(
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        owner_id: str = Depends(current_owner),
        conn: sqlite3.Connection = Depends(get_conn),
    ) -> List[Dict[str, Any]]:
        return [
            {
                "id": tx.id,
                "amount": tx.amount,
                "transactionType": tx.transaction_type,
                "description": tx.description,
                "balanceAfter": tx.balance_after,
                "metadata": tx.metadata,
                "createdAt": tx.created_at,
            }
            for tx in ledger.get_history(conn, owner_id, limit=limit, offset=offset)
        ]

    @app.post("/credits/deduct")
    def deduct(
        body: DeductRequest,
        owner_id: str = Depends(current_owner),
        conn: sqlite3.Connection = Depends(get_conn),
    ):
        result = ledger.deduct(conn, owner_id, body.amount, body.description, body.metadata)
        if not result.success:
            return _payment_required(result.new_balance or 0, body.amount)
        return {"success": True, "newBalance": result.new_balance}

    @app.post("/credits/add")
    def add_credits(
        body: AddCreditsRequest,
        owner_id: str = Depends(current_owner),
        conn: sqlite3.Connection = Depends(get_conn),
    ) -> Dict[str, Any]:
        try:
            result = ledger.add(
                conn, owner_id, body.amount, body.transactionType, body.description, body.metadata
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"success": True, "newBalance": result.new_balance}

    @app.get("/storage/{bucket}/{key:path}")
    def read_asset(bucket: str, key: str, expires: int, token: str) -> Response:
        if bucket != store.bucket:
            raise HTTPException(status_code=404, detail="Unknown bucket")
        try:
            store.verify_token(key, expires, token)
        except SignedUrlError as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        try:
            data = store.read(key)
        except (FileNotFoundError, ValueError) as exc:
            raise HTTPException(status_code=404, detail="Object not found") from exc
        return Response(content=data, media_type="image/jpeg")

    return app
