"""Reporting utilities for job and credit summaries."""

from __future__ import annotations

from collections import Counter
from typing import Dict, List, Optional

from . import db, ledger


def generate_report(conn, owner_id: Optional[str] = None) -> Dict[str, object]:
    """Build a summary data structure for jobs and credit usage."""
    status_counts = db.count_jobs_by_status(conn, owner_id)
    credit_totals = db.credit_totals_by_type(conn, owner_id)

    owners: List[Dict[str, object]] = []
    jobs: List[Dict[str, object]] = []
    if owner_id is not None:
        jobs = [
            {
                "id": job.id,
                "file_name": job.source_file_name,
                "status": job.status,
                "page_count": job.page_count,
                "error_message": job.error_message,
            }
            for job in db.list_jobs(conn, owner_id)
        ]
        account = ledger.get_balance(conn, owner_id)
        if account is not None:
            owners.append(
                {
                    "owner_id": account.owner_id,
                    "credits_balance": account.credits_balance,
                    "subscription_credits": account.subscription_credits,
                    "purchased_credits": account.purchased_credits,
                }
            )

    spent = -credit_totals.get("deduction", 0)
    added: Counter[str] = Counter(
        {kind: total for kind, total in credit_totals.items() if kind != "deduction"}
    )
    return {
        "owner_id": owner_id,
        "total_jobs": sum(status_counts.values()),
        "status_counts": status_counts,
        "pages_analyzed": db.total_pages(conn, owner_id),
        "credits_spent": spent,
        "credits_added": dict(added),
        "accounts": owners,
        "jobs": jobs,
    }


def format_report(report: Dict[str, object]) -> str:
    lines: List[str] = []
    title = "deckreview report"
    if report["owner_id"]:
        title += f" for {report['owner_id']}"
    lines.append(title)
    lines.append("-" * len(title))
    lines.append(f"Total jobs: {report['total_jobs']}")
    lines.append(f"Pages analyzed: {report['pages_analyzed']}")
    lines.append("")

    if report["status_counts"]:
        lines.append("Statuses:")
        for status, count in sorted(report["status_counts"].items()):
            lines.append(f"  {status}: {count}")
        lines.append("")

    lines.append(f"Credits spent: {report['credits_spent']}")
    if report["credits_added"]:
        lines.append("Credits added:")
        for kind, total in sorted(report["credits_added"].items()):
            lines.append(f"  {kind}: {total}")

    for account in report["accounts"]:
        lines.append("")
        lines.append(
            f"Balance: {account['credits_balance']} "
            f"(subscription {account['subscription_credits']}, "
            f"purchased {account['purchased_credits']})"
        )

    if report["jobs"]:
        lines.append("")
        lines.append("Jobs:")
        for job in report["jobs"]:
            line = f"  {job['id']}  {job['status']:<10} {job['page_count']:>3}p  {job['file_name']}"
            if job["error_message"]:
                line += f"  ({job['error_message']})"
            lines.append(line)

    return "\n".join(lines)
