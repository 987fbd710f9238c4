"""Command-line entrypoints for deckreview."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional

import httpx

from . import config, db, ledger, reporting
from .client import JobApiClient
from .credentials import CredentialProvider, issue_token, local_refresher
from .errors import DeckReviewError
from .extractor import ExtractionProgress
from .models import TX_PURCHASE, TX_REFUND, TX_SUBSCRIPTION_RENEWAL
from .orchestrator import JobOrchestrator
from .pipeline import SubmissionPipeline
from .reconciler import JobProgress, StatusReconciler
from .state_store import UploadStateStore
from .storage import LocalObjectStore
from .uploader import AssetUploader, UploadProgress


def _configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")


def _load_config(args) -> config.Config:
    return config.load_config(
        db_path=getattr(args, "db_path", None),
        data_root=getattr(args, "data_root", None),
        base_url=getattr(args, "api_url", None),
    )


def _get_connection(db_path: Path):
    return db.init_db(db_path)


class ClientSide:
    """The submitting side of the pipeline, wired against a running API."""

    def __init__(self, cfg: config.Config, owner_id: str) -> None:
        cfg.validate()
        self.http = httpx.Client(base_url=cfg.base_url, timeout=30.0)
        credentials = CredentialProvider(local_refresher(owner_id, cfg.secret, ttl=cfg.token_ttl))
        self.api = JobApiClient(self.http, credentials)
        store = LocalObjectStore(cfg.storage_root, cfg.secret, bucket=cfg.bucket, base_url=cfg.base_url)
        self.orchestrator = JobOrchestrator(
            self.api,
            dispatch_timeout_floor=cfg.dispatch_timeout_floor,
            inter_page_delay=cfg.inter_page_delay,
        )
        self.state_store = UploadStateStore(cfg.state_dir)
        self.pipeline = SubmissionPipeline(
            AssetUploader(store, url_expiry=cfg.signed_url_expiry),
            self.orchestrator,
            self.state_store,
            max_pages=cfg.max_pages,
            max_file_size=cfg.max_file_size,
        )
        self.reconciler = StatusReconciler(
            self.api, self.state_store, self.pipeline, poll_interval=cfg.poll_interval
        )

    def close(self) -> None:
        self.http.close()


def _print_progress(progress: JobProgress) -> None:
    if progress.phase == "finalizing":
        print("  finalizing results...")
    elif progress.total_pages:
        print(f"  {progress.phase}: page {progress.current_page}/{progress.total_pages}")
    else:
        print(f"  {progress.phase}")


def cmd_init_db(args) -> None:
    conn = _get_connection(args.db_path)
    conn.close()
    print(f"Database initialized at {args.db_path}")


def cmd_grant_credits(args) -> None:
    conn = _get_connection(args.db_path)
    result = ledger.add(
        conn,
        args.owner,
        args.amount,
        args.type,
        args.description or f"Granted {args.amount} {args.type} credits",
    )
    conn.close()
    print(f"Granted {args.amount} credits to {args.owner}. New balance: {result.new_balance}")


def cmd_balance(args) -> None:
    conn = _get_connection(args.db_path)
    account = ledger.get_balance(conn, args.owner)
    conn.close()
    if account is None:
        raise SystemExit(f"No credit account for {args.owner}")
    print(
        f"{account.owner_id}: {account.credits_balance} credits "
        f"(subscription {account.subscription_credits}, purchased {account.purchased_credits})"
    )


def cmd_history(args) -> None:
    conn = _get_connection(args.db_path)
    transactions = ledger.get_history(conn, args.owner, limit=args.limit, offset=args.offset)
    conn.close()
    for tx in transactions:
        print(
            f"{tx.created_at}  {tx.amount:+d}  {tx.transaction_type:<20} "
            f"balance={tx.balance_after}  {tx.description}"
        )


def cmd_issue_token(args) -> None:
    cfg = _load_config(args).validate()
    credential = issue_token(args.owner, cfg.secret, ttl=args.ttl)
    print(credential.access_token)


def cmd_submit(args) -> None:
    side = ClientSide(_load_config(args), args.owner)

    def on_extract(progress: ExtractionProgress) -> None:
        if progress.status == "processing":
            print(f"  extracting page {progress.current_page}/{progress.total_pages}")

    def on_upload(progress: UploadProgress) -> None:
        if progress.status in ("uploaded", "skipped"):
            print(f"  {progress.status} page {progress.current_page}/{progress.total_pages}")

    try:
        submission = side.pipeline.submit(Path(args.file), args.owner, on_extract, on_upload)
        print(f"Submitted job {submission.job_id} ({len(submission.page_urls)} pages)")
        if args.no_wait:
            # The dispatch runs on a daemon thread; keep the process alive until it returns.
            submission.dispatch.wait()
            return
        final = side.reconciler.poll(submission.job_id, on_progress=_print_progress)
        print(f"Job {final.job_id}: {final.status}")
        if final.error_message:
            print(f"  error: {final.error_message}")
    except (DeckReviewError, ValueError) as exc:
        raise SystemExit(f"Submission failed: {exc}") from exc
    finally:
        side.close()


def cmd_status(args) -> None:
    side = ClientSide(_load_config(args), args.owner)
    try:
        status = side.api.get_job_status(args.job_id)
        if args.result and status["status"] == "completed":
            status = side.api.get_job_result(args.job_id)
        print(json.dumps(status, indent=2))
    except DeckReviewError as exc:
        raise SystemExit(str(exc)) from exc
    finally:
        side.close()


def cmd_resume(args) -> None:
    side = ClientSide(_load_config(args), args.owner)
    try:
        outcomes = side.reconciler.reconcile(args.owner)
        if not outcomes:
            print("No unfinished submissions.")
        for outcome in outcomes:
            print(f"Job {outcome.job_id}: {outcome.action}" + (f" ({outcome.detail})" if outcome.detail else ""))
        for outcome in outcomes:
            if outcome.action in ("resumed", "polling"):
                final = side.reconciler.poll(outcome.job_id, on_progress=_print_progress)
                print(f"Job {final.job_id}: {final.status}")
    except DeckReviewError as exc:
        raise SystemExit(f"Resume failed: {exc}") from exc
    finally:
        side.close()


def cmd_report(args) -> None:
    conn = _get_connection(args.db_path)
    report_data = reporting.generate_report(conn, owner_id=args.owner)
    print(reporting.format_report(report_data))
    conn.close()


def cmd_serve(args) -> None:
    import uvicorn

    from .api import create_app

    cfg = _load_config(args)
    app = create_app(cfg)
    uvicorn.run(app, host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="deckreview CLI")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--db-path",
        type=Path,
        default=config.DEFAULT_DB_PATH,
        help="Path to SQLite database file",
    )
    client = argparse.ArgumentParser(add_help=False)
    client.add_argument("--owner", required=True, help="Owner (user) id")
    client.add_argument("--api-url", help="Base URL of the deckreview API")
    client.add_argument("--data-root", type=Path, help="Root folder for stored page images")

    init_db_parser = subparsers.add_parser("init-db", parents=[common], help="Initialize the database schema")
    init_db_parser.set_defaults(func=cmd_init_db)

    grant = subparsers.add_parser("grant-credits", parents=[common], help="Add credits to an account")
    grant.add_argument("--owner", required=True, help="Owner (user) id")
    grant.add_argument("--amount", required=True, type=int, help="Number of credits")
    grant.add_argument(
        "--type",
        default=TX_PURCHASE,
        choices=[TX_PURCHASE, TX_SUBSCRIPTION_RENEWAL, TX_REFUND],
        help="Transaction type (default purchase)",
    )
    grant.add_argument("--description", help="Ledger description")
    grant.set_defaults(func=cmd_grant_credits)

    balance = subparsers.add_parser("balance", parents=[common], help="Show an account balance")
    balance.add_argument("--owner", required=True, help="Owner (user) id")
    balance.set_defaults(func=cmd_balance)

    history = subparsers.add_parser("history", parents=[common], help="Show credit transactions")
    history.add_argument("--owner", required=True, help="Owner (user) id")
    history.add_argument("--limit", type=int, default=50, help="Number of rows (default 50)")
    history.add_argument("--offset", type=int, default=0, help="Rows to skip")
    history.set_defaults(func=cmd_history)

    token = subparsers.add_parser("issue-token", help="Print a bearer token for an owner")
    token.add_argument("--owner", required=True, help="Owner (user) id")
    token.add_argument("--ttl", type=int, default=config.TOKEN_TTL_SECONDS, help="Lifetime in seconds")
    token.set_defaults(func=cmd_issue_token)

    submit = subparsers.add_parser("submit", parents=[client], help="Submit a document for analysis")
    submit.add_argument("file", help="PDF or image to analyze")
    submit.add_argument("--no-wait", action="store_true", help="Return once the worker has answered, without polling")
    submit.set_defaults(func=cmd_submit)

    status = subparsers.add_parser("status", parents=[client], help="Show job status")
    status.add_argument("job_id", help="Job id")
    status.add_argument("--result", action="store_true", help="Include results when completed")
    status.set_defaults(func=cmd_status)

    resume = subparsers.add_parser("resume", parents=[client], help="Resume unfinished submissions")
    resume.set_defaults(func=cmd_resume)

    report_parser = subparsers.add_parser("report", parents=[common], help="Generate a usage report")
    report_parser.add_argument("--owner", help="Owner id to report on")
    report_parser.set_defaults(func=cmd_report)

    serve = subparsers.add_parser("serve", parents=[common], help="Run the API server")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve.add_argument("--port", type=int, default=8000, help="Port")
    serve.add_argument("--data-root", type=Path, help="Root folder for stored page images")
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(verbose=args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
