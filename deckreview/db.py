"""SQLite helpers and schema management."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from . import models
from .errors import InvalidTransitionError, JobNotFoundError

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 30_000


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Return a connection with a Row factory, WAL journaling and a busy timeout.

    Connections may be handed between threads (the API opens one per request),
    but never used by two threads at once.
    """
    conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_MS / 1000, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
    return conn


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database schema."""
    if db_path.parent and not db_path.parent.exists():
        db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = get_connection(db_path)
    cursor = conn.cursor()

    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            source_file_name TEXT NOT NULL,
            source_file_size INTEGER NOT NULL,
            page_count INTEGER NOT NULL,
            status TEXT NOT NULL,
            error_message TEXT,
            result_payload TEXT,
            analyzed_page_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS page_assets (
            job_id TEXT NOT NULL,
            page_number INTEGER NOT NULL,
            storage_path TEXT NOT NULL,
            signed_url TEXT NOT NULL,
            width INTEGER,
            height INTEGER,
            FOREIGN KEY(job_id) REFERENCES jobs(id),
            PRIMARY KEY(job_id, page_number)
        )
        """
    )
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS page_results (
            job_id TEXT NOT NULL,
            page_number INTEGER NOT NULL,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            score INTEGER,
            feedback TEXT NOT NULL,
            image_url TEXT,
            succeeded INTEGER NOT NULL,
            FOREIGN KEY(job_id) REFERENCES jobs(id),
            PRIMARY KEY(job_id, page_number)
        )
        """
    )
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS credit_accounts (
            owner_id TEXT PRIMARY KEY,
            credits_balance INTEGER NOT NULL DEFAULT 0 CHECK (credits_balance >= 0),
            subscription_credits INTEGER NOT NULL DEFAULT 0 CHECK (subscription_credits >= 0),
            purchased_credits INTEGER NOT NULL DEFAULT 0 CHECK (purchased_credits >= 0),
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            CHECK (credits_balance = subscription_credits + purchased_credits)
        )
        """
    )
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS credit_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            owner_id TEXT NOT NULL,
            amount INTEGER NOT NULL,
            transaction_type TEXT NOT NULL,
            description TEXT NOT NULL,
            balance_after INTEGER NOT NULL,
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_jobs_owner_status ON jobs(owner_id, status)")
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_credit_tx_owner ON credit_transactions(owner_id, id)"
    )

    conn.commit()
    logger.info("Database initialized at %s", db_path)
    return conn


def _row_to_job(row: sqlite3.Row) -> models.Job:
    payload = row["result_payload"]
    return models.Job(
        id=row["id"],
        owner_id=row["owner_id"],
        source_file_name=row["source_file_name"],
        source_file_size=row["source_file_size"],
        page_count=row["page_count"],
        status=row["status"],
        error_message=row["error_message"],
        result_payload=json.loads(payload) if payload else None,
        analyzed_page_count=row["analyzed_page_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_page_result(row: sqlite3.Row) -> models.PageResult:
    return models.PageResult(
        job_id=row["job_id"],
        page_number=row["page_number"],
        title=row["title"],
        content=row["content"],
        score=row["score"],
        feedback=row["feedback"],
        image_url=row["image_url"],
        succeeded=bool(row["succeeded"]),
    )


def create_job(
    conn: sqlite3.Connection,
    owner_id: str,
    source_file_name: str,
    source_file_size: int,
    page_count: int,
) -> str:
    job_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT INTO jobs (
            id, owner_id, source_file_name, source_file_size, page_count, status
        ) VALUES (?, ?, ?, ?, ?, 'pending')
        """,
        (job_id, owner_id, source_file_name, source_file_size, page_count),
    )
    conn.commit()
    logger.info("Created job %s for owner %s (%s pages)", job_id, owner_id, page_count)
    return job_id


def get_job(conn: sqlite3.Connection, job_id: str) -> Optional[models.Job]:
    cur = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
    row = cur.fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    conn: sqlite3.Connection, owner_id: Optional[str] = None, status: Optional[str] = None
) -> List[models.Job]:
    params = []
    clauses = []
    if owner_id is not None:
        clauses.append("owner_id = ?")
        params.append(owner_id)
    if status is not None:
        clauses.append("status = ?")
        params.append(status)
    query = "SELECT * FROM jobs"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    query += " ORDER BY created_at ASC, rowid ASC"
    cur = conn.execute(query, tuple(params))
    return [_row_to_job(row) for row in cur.fetchall()]


def _transition(
    conn: sqlite3.Connection,
    job_id: str,
    status: str,
    extra_sql: str = "",
    extra_params: Iterable[Any] = (),
) -> None:
    allowed = models.JOB_TRANSITIONS.get(status)
    if allowed is None:
        raise InvalidTransitionError(f"Unknown target status: {status}")
    placeholders = ", ".join("?" for _ in allowed)
    cur = conn.execute(
        f"""
        UPDATE jobs
        SET status = ?, updated_at = CURRENT_TIMESTAMP{extra_sql}
        WHERE id = ? AND status IN ({placeholders})
        """,
        (status, *extra_params, job_id, *allowed),
    )
    if cur.rowcount == 0:
        job = get_job(conn, job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        raise InvalidTransitionError(f"Job {job_id} cannot move from {job.status} to {status}")


def set_job_status(
    conn: sqlite3.Connection,
    job_id: str,
    status: str,
    error_message: Optional[str] = None,
) -> None:
    """Apply a state-machine transition; terminal jobs are never changed."""
    try:
        _transition(conn, job_id, status, ", error_message = ?", (error_message,))
    except Exception:
        conn.rollback()
        raise
    conn.commit()
    logger.info("Job %s -> %s", job_id, status)


def mark_job_failed(conn: sqlite3.Connection, job_id: str, error_message: str) -> bool:
    """Fail a job unless it already reached a terminal status. Returns True if applied."""
    try:
        set_job_status(conn, job_id, models.JOB_FAILED, error_message)
    except InvalidTransitionError:
        logger.info("Job %s already terminal; ignoring failure: %s", job_id, error_message)
        return False
    return True


def set_analyzed_page_count(conn: sqlite3.Connection, job_id: str, count: int) -> None:
    conn.execute(
        """
        UPDATE jobs SET analyzed_page_count = ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ? AND status = 'processing'
        """,
        (count, job_id),
    )
    conn.commit()


def complete_job(
    conn: sqlite3.Connection,
    job_id: str,
    page_results: List[models.PageResult],
    result_payload: Dict[str, Any],
) -> None:
    """Store normalized result rows and mark the job completed in one transaction."""
    try:
        conn.execute("DELETE FROM page_results WHERE job_id = ?", (job_id,))
        conn.executemany(
            """
            INSERT INTO page_results (
                job_id, page_number, title, content, score, feedback, image_url, succeeded
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    result.job_id,
                    result.page_number,
                    result.title,
                    result.content,
                    result.score,
                    result.feedback,
                    result.image_url,
                    int(result.succeeded),
                )
                for result in page_results
            ],
        )
        _transition(
            conn,
            job_id,
            models.JOB_COMPLETED,
            ", result_payload = ?, error_message = NULL",
            (json.dumps(result_payload),),
        )
    except Exception:
        conn.rollback()
        raise
    conn.commit()
    logger.info("Job %s completed with %s page results", job_id, len(page_results))


def list_page_results(conn: sqlite3.Connection, job_id: str) -> List[models.PageResult]:
    cur = conn.execute(
        "SELECT * FROM page_results WHERE job_id = ? ORDER BY page_number ASC", (job_id,)
    )
    return [_row_to_page_result(row) for row in cur.fetchall()]


def upsert_page_asset(conn: sqlite3.Connection, asset: models.PageAsset) -> None:
    conn.execute(
        """
        INSERT OR REPLACE INTO page_assets (
            job_id, page_number, storage_path, signed_url, width, height
        ) VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            asset.job_id,
            asset.page_number,
            asset.storage_path,
            asset.signed_url,
            asset.width,
            asset.height,
        ),
    )
    conn.commit()


def list_page_assets(conn: sqlite3.Connection, job_id: str) -> List[models.PageAsset]:
    cur = conn.execute(
        "SELECT * FROM page_assets WHERE job_id = ? ORDER BY page_number ASC", (job_id,)
    )
    return [
        models.PageAsset(
            job_id=row["job_id"],
            page_number=row["page_number"],
            storage_path=row["storage_path"],
            signed_url=row["signed_url"],
            width=row["width"],
            height=row["height"],
        )
        for row in cur.fetchall()
    ]


def count_jobs_by_status(
    conn: sqlite3.Connection, owner_id: Optional[str] = None
) -> Dict[str, int]:
    params = []
    query = "SELECT status, COUNT(*) as count FROM jobs"
    if owner_id is not None:
        query += " WHERE owner_id = ?"
        params.append(owner_id)
    query += " GROUP BY status"
    cur = conn.execute(query, tuple(params))
    return {row["status"]: row["count"] for row in cur.fetchall()}


def total_pages(conn: sqlite3.Connection, owner_id: Optional[str] = None) -> int:
    params = []
    query = "SELECT COALESCE(SUM(page_count), 0) as pages FROM jobs WHERE status = 'completed'"
    if owner_id is not None:
        query += " AND owner_id = ?"
        params.append(owner_id)
    row = conn.execute(query, tuple(params)).fetchone()
    return int(row["pages"]) if row else 0


def credit_totals_by_type(
    conn: sqlite3.Connection, owner_id: Optional[str] = None
) -> Dict[str, int]:
    params = []
    query = "SELECT transaction_type, SUM(amount) as total FROM credit_transactions"
    if owner_id is not None:
        query += " WHERE owner_id = ?"
        params.append(owner_id)
    query += " GROUP BY transaction_type"
    cur = conn.execute(query, tuple(params))
    return {row["transaction_type"]: int(row["total"]) for row in cur.fetchall()}
