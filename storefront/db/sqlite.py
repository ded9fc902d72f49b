from __future__ import annotations

import os
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from storefront.config import settings
from storefront.constants import TS_FORMAT


def now_ts(dt: Optional[datetime] = None) -> str:
    return (dt or datetime.now()).strftime(TS_FORMAT)


def connect() -> sqlite3.Connection:
    os.makedirs(os.path.dirname(settings.db_path) or ".", exist_ok=True)
    conn = sqlite3.connect(settings.db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db() -> None:
    conn = connect()
    try:
        with open(os.path.join(os.path.dirname(__file__), "schema.sql"), "r", encoding="utf-8") as f:
            conn.executescript(f.read())
        conn.commit()
    finally:
        conn.close()


def rows(conn: sqlite3.Connection, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
    return [dict(r) for r in conn.execute(sql, params).fetchall()]


def row(conn: sqlite3.Connection, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
    r = conn.execute(sql, params).fetchone()
    return dict(r) if r else None


# ---------------- stock primitives ----------------
# All of these expect the caller to own the transaction.

def get_stock_qty(conn: sqlite3.Connection, product_id: int, size: str) -> Optional[int]:
    r = conn.execute(
        "SELECT qty FROM stock WHERE product_id=? AND size=?",
        (product_id, size),
    ).fetchone()
    return int(r["qty"]) if r else None


def set_stock_qty(conn: sqlite3.Connection, product_id: int, size: str, qty: int) -> None:
    conn.execute(
        "INSERT INTO stock(product_id, size, qty) VALUES(?,?,?) "
        "ON CONFLICT(product_id, size) DO UPDATE SET qty=excluded.qty",
        (product_id, size, qty),
    )


def take_stock(conn: sqlite3.Connection, product_id: int, size: str, qty: int) -> bool:
    """Decrement stock only if enough is left. Returns False when it is not."""
    cur = conn.execute(
        "UPDATE stock SET qty = qty - ? WHERE product_id=? AND size=? AND qty >= ?",
        (qty, product_id, size, qty),
    )
    return cur.rowcount == 1


def put_back_stock(conn: sqlite3.Connection, product_id: int, size: str, qty: int) -> None:
    conn.execute(
        "INSERT INTO stock(product_id, size, qty) VALUES(?,?,?) "
        "ON CONFLICT(product_id, size) DO UPDATE SET qty = qty + excluded.qty",
        (product_id, size, qty),
    )
