"""
Wallet: a running balance plus an append-only transaction ledger.

The balance column is only ever changed together with a ledger insert, in the
same transaction, so `balance == SUM(amount)` holds for every user.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict, Optional, Tuple

from storefront.constants import TX_CREDIT, TX_METHODS, TX_PAYMENT, TX_REFERRAL, TX_REFUND
from storefront.db.sqlite import connect, now_ts, rows
from storefront.utils.formatters import to_money
from storefront.utils.validators import require_positive_number

log = logging.getLogger(__name__)


def ensure_wallet(conn: sqlite3.Connection, user_id: int) -> None:
    conn.execute("INSERT OR IGNORE INTO wallets(user_id, balance) VALUES(?, 0)", (user_id,))


def get_balance(conn: sqlite3.Connection, user_id: int) -> float:
    r = conn.execute("SELECT balance FROM wallets WHERE user_id=?", (user_id,)).fetchone()
    return to_money(r["balance"]) if r else 0.0


def post_transaction(
    conn: sqlite3.Connection,
    user_id: int,
    amount: float,
    method: str,
    order_id: Optional[int] = None,
    description: str = "",
) -> None:
    """Signed amount: credits are positive, payments negative. Caller owns the transaction."""
    if method not in TX_METHODS:
        raise ValueError(f"unknown wallet transaction method: {method}")
    amount = to_money(amount)
    ensure_wallet(conn, user_id)
    conn.execute(
        "UPDATE wallets SET balance = ROUND(balance + ?, 2) WHERE user_id=?",
        (amount, user_id),
    )
    conn.execute(
        "INSERT INTO wallet_transactions(user_id, amount, method, order_id, description, created_at) "
        "VALUES(?,?,?,?,?,?)",
        (user_id, amount, method, order_id, description, now_ts()),
    )


def debit(
    conn: sqlite3.Connection,
    user_id: int,
    amount: float,
    order_id: Optional[int] = None,
    description: str = "",
) -> bool:
    """Takes `amount` only when the balance covers it."""
    amount = to_money(amount)
    ensure_wallet(conn, user_id)
    cur = conn.execute(
        "UPDATE wallets SET balance = ROUND(balance - ?, 2) WHERE user_id=? AND balance >= ?",
        (amount, user_id, amount),
    )
    if cur.rowcount != 1:
        return False
    conn.execute(
        "INSERT INTO wallet_transactions(user_id, amount, method, order_id, description, created_at) "
        "VALUES(?,?,?,?,?,?)",
        (user_id, -amount, TX_PAYMENT, order_id, description, now_ts()),
    )
    return True


def wallet_credit(
    user_id: int,
    amount: float,
    method: str = TX_CREDIT,
    order_id: Optional[int] = None,
    description: str = "",
) -> None:
    require_positive_number(amount, "amount")
    conn = connect()
    try:
        conn.execute("BEGIN")
        post_transaction(conn, user_id, amount, method, order_id, description)
        conn.commit()
        log.info("wallet %s credited %.2f (%s)", user_id, amount, method)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def wallet_debit(
    user_id: int,
    amount: float,
    order_id: Optional[int] = None,
    description: str = "",
) -> Tuple[bool, Any]:
    require_positive_number(amount, "amount")
    conn = connect()
    try:
        conn.execute("BEGIN")
        if not debit(conn, user_id, amount, order_id, description):
            conn.rollback()
            return False, "Insufficient wallet balance"
        conn.commit()
        return True, get_balance(conn, user_id)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def describe(tx: Dict[str, Any]) -> str:
    if tx.get("description"):
        return tx["description"]
    ref = f" #{tx['order_number']}" if tx.get("order_number") else ""
    if tx["method"] == TX_REFUND:
        return f"Refund for order{ref}"
    if tx["method"] == TX_PAYMENT:
        return f"Payment for order{ref}"
    if tx["method"] == TX_REFERRAL:
        return "Referral bonus"
    return "Wallet credit"


def get_wallet(user_id: int, limit: int = 50) -> Dict[str, Any]:
    conn = connect()
    try:
        txs = rows(
            conn,
            """
            SELECT t.id, t.amount, t.method, t.order_id, t.description, t.created_at,
                   o.number AS order_number
            FROM wallet_transactions t
            LEFT JOIN orders o ON o.id = t.order_id
            WHERE t.user_id = ?
            ORDER BY t.id DESC
            LIMIT ?
            """,
            (user_id, int(limit)),
        )
        for t in txs:
            t["description"] = describe(t)
        return {"balance": get_balance(conn, user_id), "transactions": txs}
    finally:
        conn.close()


def verify_wallet(user_id: int) -> Tuple[bool, str]:
    conn = connect()
    try:
        balance = get_balance(conn, user_id)
        total = conn.execute(
            "SELECT COALESCE(SUM(amount), 0) AS s FROM wallet_transactions WHERE user_id=?", (user_id,)
        ).fetchone()["s"]
        total = to_money(total)
        if abs(balance - total) > 0.005:
            return False, f"balance {balance:.2f} != ledger {total:.2f}"
        return True, "ok"
    finally:
        conn.close()
