from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from storefront.config import settings
from storefront.db.sqlite import connect, get_stock_qty, now_ts, row, rows
from storefront.services.pricing import offer_price
from storefront.utils.formatters import to_money


def _sellable_product(conn: sqlite3.Connection, product_id: int) -> Optional[Dict[str, Any]]:
    return row(
        conn,
        """
        SELECT p.id, p.name, p.price, p.category_id
        FROM products p JOIN categories c ON c.id = p.category_id
        WHERE p.id = ? AND p.is_blocked = 0 AND c.is_active = 1
        """,
        (product_id,),
    )


def _check_line(conn: sqlite3.Connection, product_id: int, size: str, qty: int) -> Optional[str]:
    stock_qty = get_stock_qty(conn, product_id, size)
    if stock_qty is None:
        return f"Size {size} is not available for this product"
    if stock_qty < 1:
        return f"Out of stock in size {size}"
    if qty > settings.max_qty_per_item:
        return f"Maximum {settings.max_qty_per_item} items allowed per product"
    if qty > stock_qty:
        return f"Only {stock_qty} items available for size {size}"
    return None


def _cart_total(conn: sqlite3.Connection, user_id: int) -> float:
    r = conn.execute(
        "SELECT COALESCE(SUM(price * qty), 0) AS s FROM cart_items WHERE user_id=?", (user_id,)
    ).fetchone()
    return to_money(r["s"])


def cart_add(
    user_id: int,
    product_id: int,
    size: str = "M",
    qty: int = 1,
    now: Optional[datetime] = None,
) -> Tuple[bool, Any]:
    if int(qty) < 1:
        return False, "Invalid quantity"
    size = (size or "").strip().upper()

    conn = connect()
    try:
        product = _sellable_product(conn, product_id)
        if not product:
            return False, "Product unavailable"

        existing = row(
            conn,
            "SELECT id, qty FROM cart_items WHERE user_id=? AND product_id=? AND size=?",
            (user_id, product_id, size),
        )
        in_cart = int(existing["qty"]) if existing else 0
        new_qty = in_cart + int(qty)
        if new_qty > settings.max_qty_per_item:
            return False, (
                f"You can only add up to {settings.max_qty_per_item} units of this product. "
                f"You already have {in_cart} in your cart."
            )
        err = _check_line(conn, product_id, size, new_qty)
        if err:
            return False, err

        price, offer = offer_price(
            float(product["price"]), product_id, int(product["category_id"]), now=now, conn=conn
        )
        offer_id = offer["id"] if offer else None

        conn.execute("BEGIN")
        if existing:
            conn.execute(
                "UPDATE cart_items SET qty=?, price=?, offer_id=? WHERE id=?",
                (new_qty, price, offer_id, existing["id"]),
            )
        else:
            conn.execute(
                "INSERT INTO cart_items(user_id, product_id, size, qty, price, offer_id, added_at) "
                "VALUES(?,?,?,?,?,?,?)",
                (user_id, product_id, size, new_qty, price, offer_id, now_ts(now)),
            )
        conn.execute("DELETE FROM wishlist WHERE user_id=? AND product_id=?", (user_id, product_id))
        conn.commit()
        return True, {"qty": new_qty, "price": price, "cart_total": _cart_total(conn, user_id)}
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def cart_update(user_id: int, item_id: int, action: str) -> Tuple[bool, Any]:
    if action not in ("increment", "decrement"):
        return False, "Invalid action"
    conn = connect()
    try:
        item = row(conn, "SELECT * FROM cart_items WHERE id=? AND user_id=?", (item_id, user_id))
        if not item:
            return False, "Item not found in cart"
        if not _sellable_product(conn, int(item["product_id"])):
            return False, "Product is no longer available"

        new_qty = int(item["qty"]) + 1 if action == "increment" else max(1, int(item["qty"]) - 1)
        if new_qty > int(item["qty"]):
            err = _check_line(conn, int(item["product_id"]), item["size"], new_qty)
            if err:
                return False, err

        # stored price stays: it is the price the customer saw when adding
        conn.execute("UPDATE cart_items SET qty=? WHERE id=?", (new_qty, item_id))
        conn.commit()
        return True, {
            "qty": new_qty,
            "line_total": to_money(new_qty * float(item["price"])),
            "cart_total": _cart_total(conn, user_id),
        }
    finally:
        conn.close()


def cart_remove(user_id: int, item_id: int) -> Tuple[bool, Any]:
    conn = connect()
    try:
        cur = conn.execute("DELETE FROM cart_items WHERE id=? AND user_id=?", (item_id, user_id))
        conn.commit()
        if not cur.rowcount:
            return False, "Item not found in cart"
        return True, {"cart_total": _cart_total(conn, user_id)}
    finally:
        conn.close()


def cart_clear(user_id: int) -> None:
    conn = connect()
    try:
        conn.execute("DELETE FROM cart_items WHERE user_id=?", (user_id,))
        conn.commit()
    finally:
        conn.close()


def cart_items(conn: sqlite3.Connection, user_id: int) -> List[Dict[str, Any]]:
    return rows(
        conn,
        """
        SELECT ci.id, ci.product_id, ci.size, ci.qty, ci.price, ci.offer_id, ci.added_at,
               p.name AS product_name, p.is_blocked, p.price AS regular_price,
               c.is_active AS category_active, s.qty AS stock_qty
        FROM cart_items ci
        LEFT JOIN products p ON p.id = ci.product_id
        LEFT JOIN categories c ON c.id = p.category_id
        LEFT JOIN stock s ON s.product_id = ci.product_id AND s.size = ci.size
        WHERE ci.user_id = ?
        ORDER BY ci.id
        """,
        (user_id,),
    )


def cart_show(user_id: int) -> Dict[str, Any]:
    conn = connect()
    try:
        items = cart_items(conn, user_id)
    finally:
        conn.close()

    total = 0.0
    for it in items:
        it["line_total"] = to_money(float(it["price"]) * int(it["qty"]))
        it["available"] = bool(
            it["product_name"] is not None
            and not it["is_blocked"]
            and it["category_active"]
            and it["stock_qty"] is not None
            and int(it["stock_qty"]) >= int(it["qty"])
        )
        total += it["line_total"]
    return {"items": items, "total": to_money(total), "count": len(items)}


def cart_count(user_id: int) -> int:
    conn = connect()
    try:
        return int(conn.execute("SELECT COUNT(*) FROM cart_items WHERE user_id=?", (user_id,)).fetchone()[0])
    finally:
        conn.close()
