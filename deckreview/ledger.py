"""Two-pool credit ledger with an append-only transaction log.

Every mutation runs inside a single ``BEGIN IMMEDIATE`` transaction that
updates the account row and appends the matching ``credit_transactions`` row,
so concurrent jobs for the same owner serialize on the write lock instead of
racing on a stale balance read.

Settlement policy: bounded synchronous operations call :func:`deduct` before
doing the work and refuse on ``insufficient_credits``; the multi-page analysis
pipeline only checks with :func:`check_sufficient` when it is dispatched and
calls :func:`deduct` after results are stored.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import models

logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS = "insufficient_credits"

# Which pool an incoming credit lands in.
_ADD_POOLS = {
    models.TX_PURCHASE: "purchased_credits",
    models.TX_REFUND: "purchased_credits",
    models.TX_SUBSCRIPTION_RENEWAL: "subscription_credits",
}


@dataclass
class LedgerResult:
    success: bool
    new_balance: Optional[int] = None
    error: Optional[str] = None


def _row_to_account(row: sqlite3.Row) -> models.CreditAccount:
    return models.CreditAccount(
        owner_id=row["owner_id"],
        credits_balance=row["credits_balance"],
        subscription_credits=row["subscription_credits"],
        purchased_credits=row["purchased_credits"],
        updated_at=row["updated_at"],
    )


def _row_to_transaction(row: sqlite3.Row) -> models.CreditTransaction:
    return models.CreditTransaction(
        id=row["id"],
        owner_id=row["owner_id"],
        amount=row["amount"],
        transaction_type=row["transaction_type"],
        description=row["description"],
        balance_after=row["balance_after"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=row["created_at"],
    )


def get_balance(conn: sqlite3.Connection, owner_id: str) -> Optional[models.CreditAccount]:
    cur = conn.execute("SELECT * FROM credit_accounts WHERE owner_id = ?", (owner_id,))
    row = cur.fetchone()
    return _row_to_account(row) if row else None


def check_sufficient(conn: sqlite3.Connection, owner_id: str, required: int) -> bool:
    account = get_balance(conn, owner_id)
    return account is not None and account.credits_balance >= required


def _append_transaction(
    conn: sqlite3.Connection,
    owner_id: str,
    amount: int,
    transaction_type: str,
    description: str,
    balance_after: int,
    metadata: Optional[Dict[str, Any]],
) -> None:
    conn.execute(
        """
        INSERT INTO credit_transactions (
            owner_id, amount, transaction_type, description, balance_after, metadata
        ) VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            owner_id,
            amount,
            transaction_type,
            description,
            balance_after,
            json.dumps(metadata or {}, sort_keys=True),
        ),
    )


def deduct(
    conn: sqlite3.Connection,
    owner_id: str,
    amount: int,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Spend credits, subscription pool first. Never partially succeeds."""
    if amount <= 0:
        raise ValueError(f"Deduction amount must be positive, got {amount}")

    conn.execute("BEGIN IMMEDIATE")
    try:
        row = conn.execute(
            "SELECT * FROM credit_accounts WHERE owner_id = ?", (owner_id,)
        ).fetchone()
        if row is None or row["credits_balance"] < amount:
            conn.rollback()
            balance = row["credits_balance"] if row else 0
            logger.info(
                "Refused deduction of %s credits for %s (balance %s)", amount, owner_id, balance
            )
            return LedgerResult(success=False, new_balance=balance, error=INSUFFICIENT_CREDITS)

        from_subscription = min(row["subscription_credits"], amount)
        subscription = row["subscription_credits"] - from_subscription
        purchased = row["purchased_credits"] - (amount - from_subscription)
        new_balance = subscription + purchased

        conn.execute(
            """
            UPDATE credit_accounts
            SET credits_balance = ?, subscription_credits = ?, purchased_credits = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE owner_id = ?
            """,
            (new_balance, subscription, purchased, owner_id),
        )
        _append_transaction(
            conn, owner_id, -amount, models.TX_DEDUCTION, description, new_balance, metadata
        )
    except Exception:
        conn.rollback()
        raise
    conn.commit()
    logger.info("Deducted %s credits from %s; balance %s", amount, owner_id, new_balance)
    return LedgerResult(success=True, new_balance=new_balance)


def add(
    conn: sqlite3.Connection,
    owner_id: str,
    amount: int,
    transaction_type: str,
    description: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Credit an account, creating it on first use."""
    if amount <= 0:
        raise ValueError(f"Credit amount must be positive, got {amount}")
    pool = _ADD_POOLS.get(transaction_type)
    if pool is None:
        raise ValueError(f"Unsupported transaction type: {transaction_type}")

    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            "INSERT OR IGNORE INTO credit_accounts (owner_id) VALUES (?)", (owner_id,)
        )
        conn.execute(
            f"""
            UPDATE credit_accounts
            SET {pool} = {pool} + ?, credits_balance = credits_balance + ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE owner_id = ?
            """,
            (amount, amount, owner_id),
        )
        new_balance = conn.execute(
            "SELECT credits_balance FROM credit_accounts WHERE owner_id = ?", (owner_id,)
        ).fetchone()["credits_balance"]
        _append_transaction(
            conn, owner_id, amount, transaction_type, description, new_balance, metadata
        )
    except Exception:
        conn.rollback()
        raise
    conn.commit()
    logger.info("Added %s %s credits to %s; balance %s", amount, transaction_type, owner_id, new_balance)
    return LedgerResult(success=True, new_balance=new_balance)


def get_history(
    conn: sqlite3.Connection, owner_id: str, limit: int = 50, offset: int = 0
) -> List[models.CreditTransaction]:
    cur = conn.execute(
        """
        SELECT * FROM credit_transactions
        WHERE owner_id = ?
        ORDER BY id DESC
        LIMIT ? OFFSET ?
        """,
        (owner_id, limit, offset),
    )
    return [_row_to_transaction(row) for row in cur.fetchall()]
