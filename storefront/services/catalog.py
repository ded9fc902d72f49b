from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from storefront.constants import PRODUCT_AVAILABLE, PRODUCT_OUT_OF_STOCK
from storefront.db.sqlite import connect, now_ts, row, rows, set_stock_qty
from storefront.services.pricing import price_info
from storefront.utils.validators import require_non_negative, require_positive_number

log = logging.getLogger(__name__)

SORTS = {
    "newest": "p.created_at DESC, p.id DESC",
    "price_asc": "p.price ASC, p.id ASC",
    "price_desc": "p.price DESC, p.id ASC",
    "name_asc": "p.name COLLATE NOCASE ASC",
    "name_desc": "p.name COLLATE NOCASE DESC",
}

_PRODUCT_SELECT = """
    SELECT p.id, p.name, p.description, p.category_id, p.price, p.is_blocked,
           p.created_at, p.updated_at,
           c.name AS category_name, c.is_active AS category_active
    FROM products p
    JOIN categories c ON c.id = p.category_id
"""


# ---------------- categories ----------------

def add_category(name: str) -> Tuple[bool, Any]:
    name = (name or "").strip()
    if not name:
        return False, "Category name is required"
    conn = connect()
    try:
        if conn.execute("SELECT id FROM categories WHERE name = ?", (name,)).fetchone():
            return False, "Category already exists"
        cur = conn.execute(
            "INSERT INTO categories(name, is_active, created_at) VALUES(?,1,?)", (name, now_ts())
        )
        conn.commit()
        return True, int(cur.lastrowid)
    finally:
        conn.close()


def rename_category(category_id: int, name: str) -> Tuple[bool, str]:
    name = (name or "").strip()
    if not name:
        return False, "Category name is required"
    conn = connect()
    try:
        dup = conn.execute(
            "SELECT id FROM categories WHERE name = ? AND id != ?", (name, category_id)
        ).fetchone()
        if dup:
            return False, "Category already exists"
        cur = conn.execute("UPDATE categories SET name=? WHERE id=?", (name, category_id))
        conn.commit()
        return (True, "ok") if cur.rowcount else (False, "Category not found")
    finally:
        conn.close()


def set_category_active(category_id: int, active: bool) -> Tuple[bool, str]:
    conn = connect()
    try:
        cur = conn.execute("UPDATE categories SET is_active=? WHERE id=?", (1 if active else 0, category_id))
        conn.commit()
        return (True, "ok") if cur.rowcount else (False, "Category not found")
    finally:
        conn.close()


def list_categories(active_only: bool = False) -> List[Dict[str, Any]]:
    conn = connect()
    try:
        sql = "SELECT id, name, is_active, created_at FROM categories"
        if active_only:
            sql += " WHERE is_active = 1"
        return rows(conn, sql + " ORDER BY name COLLATE NOCASE")
    finally:
        conn.close()


# ---------------- products ----------------

def _stock_map(conn: sqlite3.Connection, product_id: int) -> Dict[str, int]:
    return {
        r["size"]: int(r["qty"])
        for r in conn.execute("SELECT size, qty FROM stock WHERE product_id=? ORDER BY size", (product_id,))
    }


def _hydrate(conn: sqlite3.Connection, p: Dict[str, Any], now: Optional[datetime]) -> Dict[str, Any]:
    p["stock"] = _stock_map(conn, int(p["id"]))
    p["total_stock"] = sum(p["stock"].values())
    p["status"] = PRODUCT_AVAILABLE if p["total_stock"] > 0 else PRODUCT_OUT_OF_STOCK
    p["sellable"] = not p["is_blocked"] and bool(p["category_active"])
    p["offer"] = price_info(p, now=now, conn=conn)
    return p


def add_product(
    name: str,
    description: str,
    category_id: int,
    price: float,
    stock: Dict[str, int],
) -> Tuple[bool, Any]:
    name = (name or "").strip()
    if not name:
        return False, "Product name is required"
    try:
        require_positive_number(float(price), "price")
        for size, qty in stock.items():
            require_non_negative(int(qty), f"stock for {size}")
    except ValueError as e:
        return False, str(e)

    conn = connect()
    try:
        if not conn.execute("SELECT id FROM categories WHERE id=?", (category_id,)).fetchone():
            return False, "Category not found"
        conn.execute("BEGIN")
        ts = now_ts()
        cur = conn.execute(
            "INSERT INTO products(name, description, category_id, price, is_blocked, created_at, updated_at) "
            "VALUES(?,?,?,?,0,?,?)",
            (name, description or "", category_id, float(price), ts, ts),
        )
        pid = int(cur.lastrowid)
        for size, qty in stock.items():
            set_stock_qty(conn, pid, str(size).strip().upper(), int(qty))
        conn.commit()
        log.info("product %s added: %s", pid, name)
        return True, pid
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def update_product(
    product_id: int,
    name: Optional[str] = None,
    description: Optional[str] = None,
    category_id: Optional[int] = None,
    price: Optional[float] = None,
    stock: Optional[Dict[str, int]] = None,
) -> Tuple[bool, str]:
    fields: Dict[str, Any] = {}
    if name is not None:
        if not name.strip():
            return False, "Product name is required"
        fields["name"] = name.strip()
    if description is not None:
        fields["description"] = description
    if price is not None:
        if float(price) <= 0:
            return False, "price must be > 0"
        fields["price"] = float(price)
    if category_id is not None:
        fields["category_id"] = int(category_id)

    conn = connect()
    try:
        if not conn.execute("SELECT id FROM products WHERE id=?", (product_id,)).fetchone():
            return False, "Product not found"
        if category_id is not None and not conn.execute(
            "SELECT id FROM categories WHERE id=?", (category_id,)
        ).fetchone():
            return False, "Category not found"

        conn.execute("BEGIN")
        fields["updated_at"] = now_ts()
        assignments = ", ".join(f"{k}=?" for k in fields)
        conn.execute(f"UPDATE products SET {assignments} WHERE id=?", (*fields.values(), product_id))
        for size, qty in (stock or {}).items():
            if int(qty) < 0:
                conn.rollback()
                return False, f"stock for {size} must be >= 0"
            set_stock_qty(conn, product_id, str(size).strip().upper(), int(qty))
        conn.commit()
        return True, "ok"
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def set_product_blocked(product_id: int, blocked: bool) -> Tuple[bool, str]:
    conn = connect()
    try:
        cur = conn.execute(
            "UPDATE products SET is_blocked=?, updated_at=? WHERE id=?",
            (1 if blocked else 0, now_ts(), product_id),
        )
        conn.commit()
        return (True, "ok") if cur.rowcount else (False, "Product not found")
    finally:
        conn.close()


def get_product(product_id: int, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    conn = connect()
    try:
        p = row(conn, _PRODUCT_SELECT + " WHERE p.id = ?", (product_id,))
        if not p:
            return None
        _hydrate(conn, p, now)
        rating = conn.execute(
            "SELECT COUNT(*) AS n, AVG(rating) AS avg FROM reviews WHERE product_id=?", (product_id,)
        ).fetchone()
        p["review_count"] = int(rating["n"])
        p["rating"] = round(float(rating["avg"]), 1) if rating["avg"] is not None else None
        return p
    finally:
        conn.close()


def list_products(
    search: Optional[str] = None,
    category_id: Optional[int] = None,
    sort: str = "newest",
    page: int = 1,
    per_page: int = 12,
    include_hidden: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    where: List[str] = []
    params: List[Any] = []
    if not include_hidden:
        where.append("p.is_blocked = 0 AND c.is_active = 1")
    if search:
        where.append("(p.name LIKE ? OR p.description LIKE ?)")
        params += [f"%{search}%", f"%{search}%"]
    if category_id:
        where.append("p.category_id = ?")
        params.append(int(category_id))
    where_sql = (" WHERE " + " AND ".join(where)) if where else ""
    order_sql = SORTS.get(sort, SORTS["newest"])

    page = max(1, int(page))
    per_page = max(1, int(per_page))

    conn = connect()
    try:
        total = int(
            conn.execute(
                "SELECT COUNT(*) FROM products p JOIN categories c ON c.id = p.category_id" + where_sql,
                tuple(params),
            ).fetchone()[0]
        )
        items = rows(
            conn,
            _PRODUCT_SELECT + where_sql + f" ORDER BY {order_sql} LIMIT ? OFFSET ?",
            (*params, per_page, (page - 1) * per_page),
        )
        for p in items:
            _hydrate(conn, p, now)
        return {
            "items": items,
            "total": total,
            "page": page,
            "pages": max(1, math.ceil(total / per_page)),
        }
    finally:
        conn.close()


# ---------------- stock ----------------

def set_stock(product_id: int, size: str, qty: int) -> Tuple[bool, str]:
    if int(qty) < 0:
        return False, "qty must be >= 0"
    conn = connect()
    try:
        if not conn.execute("SELECT id FROM products WHERE id=?", (product_id,)).fetchone():
            return False, "Product not found"
        set_stock_qty(conn, product_id, size.strip().upper(), int(qty))
        conn.commit()
        return True, "ok"
    finally:
        conn.close()


def get_stock(product_id: int) -> Dict[str, int]:
    conn = connect()
    try:
        return _stock_map(conn, product_id)
    finally:
        conn.close()


def low_stock(threshold: int) -> List[Dict[str, Any]]:
    conn = connect()
    try:
        return rows(
            conn,
            """
            SELECT p.id AS product_id, p.name, s.size, s.qty
            FROM stock s
            JOIN products p ON p.id = s.product_id
            WHERE s.qty <= ? AND p.is_blocked = 0
            ORDER BY s.qty ASC, p.name, s.size
            """,
            (int(threshold),),
        )
    finally:
        conn.close()


# ---------------- reviews ----------------

def add_review(product_id: int, user_name: str, rating: int, comment: str) -> Tuple[bool, Any]:
    if not 1 <= int(rating) <= 5:
        return False, "Rating must be between 1 and 5"
    if not (comment or "").strip() or not (user_name or "").strip():
        return False, "Name and comment are required"
    conn = connect()
    try:
        if not conn.execute("SELECT id FROM products WHERE id=?", (product_id,)).fetchone():
            return False, "Product not found"
        cur = conn.execute(
            "INSERT INTO reviews(product_id, user_name, rating, comment, created_at) VALUES(?,?,?,?,?)",
            (product_id, user_name.strip(), int(rating), comment.strip(), now_ts()),
        )
        conn.commit()
        return True, int(cur.lastrowid)
    finally:
        conn.close()


def list_reviews(product_id: int) -> List[Dict[str, Any]]:
    conn = connect()
    try:
        return rows(
            conn,
            "SELECT id, user_name, rating, comment, created_at FROM reviews "
            "WHERE product_id=? ORDER BY created_at DESC, id DESC",
            (product_id,),
        )
    finally:
        conn.close()


# ---------------- wishlist ----------------

def wishlist_add(user_id: int, product_id: int) -> Tuple[bool, str]:
    conn = connect()
    try:
        if not conn.execute("SELECT id FROM products WHERE id=?", (product_id,)).fetchone():
            return False, "Product not found"
        cur = conn.execute(
            "INSERT OR IGNORE INTO wishlist(user_id, product_id, added_at) VALUES(?,?,?)",
            (user_id, product_id, now_ts()),
        )
        conn.commit()
        if not cur.rowcount:
            return False, "Product already in wishlist"
        return True, "ok"
    finally:
        conn.close()


def wishlist_remove(user_id: int, product_id: int) -> Tuple[bool, str]:
    conn = connect()
    try:
        cur = conn.execute("DELETE FROM wishlist WHERE user_id=? AND product_id=?", (user_id, product_id))
        conn.commit()
        return (True, "ok") if cur.rowcount else (False, "Product not in wishlist")
    finally:
        conn.close()


def wishlist_list(user_id: int, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    conn = connect()
    try:
        items = rows(
            conn,
            _PRODUCT_SELECT + " JOIN wishlist w ON w.product_id = p.id WHERE w.user_id = ? "
            "ORDER BY w.added_at DESC",
            (user_id,),
        )
        for p in items:
            _hydrate(conn, p, now)
        return items
    finally:
        conn.close()
