"""
Order placement and the order lifecycle.

Placing an order turns the cart into an immutable snapshot (unit price, qty,
size, line total per item) and takes the stock in the same transaction.
Every later status change goes through _apply(), which:

  - moves an item only if it is still in the status we read (compare-and-set),
  - gives stock back exactly once, when an item first becomes Cancelled or
    Returned,
  - refunds paid orders down to what the still-active items are worth,
  - re-derives the order status from its items.
"""
from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from storefront.config import settings
from storefront.constants import (
    CANCELLED,
    DELIVERED,
    ITEM_TRANSITIONS,
    PAY_FAILED,
    PAY_PAID,
    PAY_PARTIAL_REFUND,
    PAY_PENDING,
    PAY_REFUNDED,
    PAYMENT_COD,
    PAYMENT_METHODS,
    PAYMENT_ONLINE,
    PAYMENT_WALLET,
    PENDING,
    REFUNDABLE_PAY_STATUSES,
    RELEASED_STATUSES,
    RETURN_REJECTED,
    RETURN_REQUESTED,
    RETURNED,
    SHIPPED,
    TX_REFUND,
)
from storefront.db.sqlite import connect, now_ts, put_back_stock, row, rows, take_stock
from storefront.services.cart import cart_items
from storefront.services.coupons import coupon_discount, validate_coupon
from storefront.services.wallet import debit, get_balance, post_transaction
from storefront.utils.formatters import to_money

log = logging.getLogger(__name__)

# one change: (item_id, expected current status, new status, extra columns)
Change = Tuple[int, str, str, Dict[str, Any]]


# ---------------- pure helpers ----------------

def coupon_snapshot(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if not order.get("coupon_code"):
        return None
    return {
        "type": order["coupon_type"],
        "discount": order["coupon_value"],
        "min_purchase": order["coupon_min_purchase"] or 0,
        "max_discount": order["coupon_max_discount"],
    }


def active_items(items: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [it for it in items if it["status"] not in RELEASED_STATUSES]


def payable(order: Dict[str, Any], items: Sequence[Dict[str, Any]]) -> float:
    """What the customer owes for the items that are still active."""
    active = active_items(items)
    if not active:
        return 0.0
    subtotal = to_money(sum(float(it["line_total"]) for it in active))
    discount = coupon_discount(coupon_snapshot(order), subtotal)
    return to_money(subtotal + float(order["shipping"]) - discount)


def refund_due(order: Dict[str, Any], items_after: Sequence[Dict[str, Any]]) -> float:
    if order["payment_status"] not in REFUNDABLE_PAY_STATUSES:
        return 0.0
    kept = float(order["paid_amount"]) - float(order["refunded_amount"])
    return to_money(max(0.0, kept - payable(order, items_after)))


def derive_status(items: Sequence[Dict[str, Any]]) -> str:
    statuses = [it["status"] for it in items]
    if all(s == CANCELLED for s in statuses):
        return CANCELLED
    if all(s in RELEASED_STATUSES for s in statuses):
        return RETURNED
    live = [s for s in statuses if s not in RELEASED_STATUSES]
    if PENDING in live:
        return PENDING
    if SHIPPED in live:
        return SHIPPED
    return DELIVERED


def split_amount(amount: float, weights: Sequence[float]) -> List[float]:
    """Proportional split that adds up to `amount` exactly (last share takes the rounding)."""
    if not weights:
        return []
    total = sum(weights)
    shares: List[float] = []
    for w in weights[:-1]:
        shares.append(to_money(amount * w / total) if total else 0.0)
    shares.append(to_money(amount - sum(shares)))
    return shares


# ---------------- loading ----------------

def _items(conn: sqlite3.Connection, order_id: int) -> List[Dict[str, Any]]:
    return rows(conn, "SELECT * FROM order_items WHERE order_id=? ORDER BY id", (order_id,))


def _load(conn: sqlite3.Connection, order_id: int, user_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
    if user_id is None:
        order = row(conn, "SELECT * FROM orders WHERE id=?", (order_id,))
    else:
        order = row(conn, "SELECT * FROM orders WHERE id=? AND user_id=?", (order_id, user_id))
    if order:
        order["items"] = _items(conn, order_id)
    return order


def _find_item(order: Dict[str, Any], item_id: int) -> Optional[Dict[str, Any]]:
    for it in order["items"]:
        if int(it["id"]) == int(item_id):
            return it
    return None


# ---------------- the one place that changes item statuses ----------------

def _apply(
    conn: sqlite3.Connection,
    order: Dict[str, Any],
    changes: Sequence[Change],
    now: Optional[datetime] = None,
) -> Tuple[bool, Any]:
    """Caller owns the transaction and rolls back on (False, ...)."""
    ts = now_ts(now)
    released: List[Dict[str, Any]] = []

    for item_id, old, new, extra in changes:
        if old == new:
            continue
        cols = {"status": new, **extra}
        if new == CANCELLED:
            cols["cancelled_at"] = ts
        assignments = ", ".join(f"{k}=?" for k in cols)
        cur = conn.execute(
            f"UPDATE order_items SET {assignments} WHERE id=? AND order_id=? AND status=?",
            (*cols.values(), item_id, order["id"], old),
        )
        if cur.rowcount != 1:
            return False, "Order changed in the meantime, please retry"

        if new in RELEASED_STATUSES and old not in RELEASED_STATUSES:
            item = _find_item(order, item_id)
            put_back_stock(conn, int(item["product_id"]), item["size"], int(item["qty"]))
            released.append(item)
            log.info(
                "order %s item %s -> %s, restored %s x %s (%s)",
                order["number"], item_id, new, item["qty"], item["product_id"], item["size"],
            )

    items_after = _items(conn, int(order["id"]))
    fields: Dict[str, Any] = {}

    refund = refund_due(order, items_after) if released else 0.0
    if refund > 0:
        names = ", ".join(it["product_name"] for it in released)
        post_transaction(
            conn, int(order["user_id"]), refund, TX_REFUND, order_id=int(order["id"]),
            description=f"Refund for order #{order['number']}: {names}",
        )
        for it, share in zip(released, split_amount(refund, [float(it["line_total"]) for it in released])):
            conn.execute(
                "UPDATE order_items SET refund_amount = refund_amount + ? WHERE id=?", (share, it["id"])
            )
        fields["refunded_amount"] = to_money(float(order["refunded_amount"]) + refund)
        fields["payment_status"] = PAY_REFUNDED if payable(order, items_after) == 0 else PAY_PARTIAL_REFUND
        log.info("order %s refunded %.2f to wallet of user %s", order["number"], refund, order["user_id"])

    status = derive_status(items_after)
    if status != order["status"]:
        fields["status"] = status
        if status == SHIPPED and not order["shipped_at"]:
            fields["shipped_at"] = ts
        if status == DELIVERED and not order["delivered_at"]:
            fields["delivered_at"] = ts
        if status == CANCELLED:
            fields["cancelled_at"] = ts

    # cash on delivery is collected when the last active item arrives
    if (
        status == DELIVERED
        and order["payment_method"] == PAYMENT_COD
        and order["payment_status"] == PAY_PENDING
    ):
        fields["payment_status"] = PAY_PAID
        fields["paid_amount"] = payable(order, items_after)

    if fields:
        assignments = ", ".join(f"{k}=?" for k in fields)
        conn.execute(f"UPDATE orders SET {assignments} WHERE id=?", (*fields.values(), order["id"]))

    return True, {"status": status, "refund": refund, "restored": [int(it["id"]) for it in released]}


def _run(
    order_id: int,
    user_id: Optional[int],
    plan,
    now: Optional[datetime] = None,
    order_fields: Optional[Dict[str, Any]] = None,
) -> Tuple[bool, Any]:
    """
    Loads the order, asks `plan(order)` for either an error string or a list of
    changes, and applies them in one transaction. `order_fields` are written to
    the order row in the same transaction.
    """
    conn = connect()
    try:
        conn.execute("BEGIN IMMEDIATE")
        order = _load(conn, order_id, user_id)
        if not order:
            conn.rollback()
            return False, "Order not found"
        planned = plan(order)
        if isinstance(planned, str):
            conn.rollback()
            return False, planned
        ok, result = _apply(conn, order, planned, now)
        if not ok:
            conn.rollback()
            return False, result
        if order_fields:
            assignments = ", ".join(f"{k}=?" for k in order_fields)
            conn.execute(f"UPDATE orders SET {assignments} WHERE id=?", (*order_fields.values(), order_id))
        conn.commit()
        return True, result
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# ---------------- checkout ----------------

def stock_problems(conn: sqlite3.Connection, lines: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    problems = []
    for it in lines:
        name = it.get("product_name") or f"product {it['product_id']}"
        if it.get("product_name") is None:
            problems.append({"item_id": it["id"], "product": name, "type": "not_exists",
                             "message": "Product no longer exists"})
        elif it["is_blocked"] or not it["category_active"]:
            problems.append({"item_id": it["id"], "product": name, "type": "blocked",
                             "message": "Product is unavailable"})
        elif it["stock_qty"] is None:
            problems.append({"item_id": it["id"], "product": name, "type": "size_unavailable",
                             "message": f"Size {it['size']} not available"})
        elif int(it["stock_qty"]) <= 0:
            problems.append({"item_id": it["id"], "product": name, "type": "out_of_stock",
                             "message": f"Out of stock in size {it['size']}"})
        elif int(it["stock_qty"]) < int(it["qty"]):
            problems.append({"item_id": it["id"], "product": name, "type": "insufficient_stock",
                             "message": f"Only {it['stock_qty']} available in size {it['size']}"})
    return problems


def check_stock(user_id: int) -> List[Dict[str, Any]]:
    conn = connect()
    try:
        return stock_problems(conn, cart_items(conn, user_id))
    finally:
        conn.close()


def place_order(
    user_id: int,
    address_id: int,
    payment_method: str,
    coupon_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[bool, Any]:
    if payment_method not in PAYMENT_METHODS:
        return False, "Invalid payment method"

    conn = connect()
    try:
        user = row(conn, "SELECT id, is_blocked FROM users WHERE id=?", (user_id,))
        if not user:
            return False, "User not found"
        if user["is_blocked"]:
            return False, "User is blocked"
        if not conn.execute(
            "SELECT id FROM addresses WHERE id=? AND user_id=?", (address_id, user_id)
        ).fetchone():
            return False, "Delivery address is required"

        lines = cart_items(conn, user_id)
        if not lines:
            return False, "Cart is empty"
        problems = stock_problems(conn, lines)
        if problems:
            return False, "Stock validation failed: " + "; ".join(
                f"{p['product']}: {p['message']}" for p in problems
            )

        subtotal = to_money(sum(float(it["price"]) * int(it["qty"]) for it in lines))

        coupon = None
        discount = 0.0
        if coupon_code:
            ok, res = validate_coupon(coupon_code, subtotal, now=now, conn=conn)
            if not ok:
                return False, res
            coupon = res
            discount = coupon_discount(coupon, subtotal)

        shipping = to_money(settings.shipping_charge)
        amount = to_money(subtotal + shipping - discount)

        if payment_method == PAYMENT_WALLET and get_balance(conn, user_id) < amount:
            return False, f"Insufficient wallet balance (required {amount:.2f}, available {get_balance(conn, user_id):.2f})"

        ts = now_ts(now)
        conn.execute("BEGIN IMMEDIATE")
        cur = conn.execute(
            """
            INSERT INTO orders(user_id, address_id, subtotal, shipping, discount, amount,
                               coupon_code, coupon_type, coupon_value, coupon_min_purchase,
                               coupon_max_discount, payment_method, payment_status, status, created_at)
            VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                user_id, address_id, subtotal, shipping, discount, amount,
                coupon["code"] if coupon else None,
                coupon["type"] if coupon else None,
                coupon["discount"] if coupon else None,
                coupon["min_purchase"] if coupon else None,
                coupon["max_discount"] if coupon else None,
                payment_method, PAY_PENDING, PENDING, ts,
            ),
        )
        order_id = int(cur.lastrowid)
        number = f"ORD{order_id:06d}"
        conn.execute("UPDATE orders SET number=? WHERE id=?", (number, order_id))

        for it in lines:
            qty = int(it["qty"])
            price = float(it["price"])
            if not take_stock(conn, int(it["product_id"]), it["size"], qty):
                conn.rollback()
                return False, f"Stock changed for {it['product_name']} ({it['size']}), please review your cart"
            conn.execute(
                """
                INSERT INTO order_items(order_id, product_id, product_name, size, qty, price,
                                        line_total, status, offer_id)
                VALUES(?,?,?,?,?,?,?,?,?)
                """,
                (order_id, it["product_id"], it["product_name"], it["size"], qty, price,
                 to_money(price * qty), PENDING, it["offer_id"]),
            )

        if coupon:
            cur = conn.execute(
                "UPDATE coupons SET usage_limit = usage_limit - 1 WHERE id=? AND usage_limit > 0",
                (coupon["id"],),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return False, "Coupon is no longer available"

        if payment_method == PAYMENT_WALLET:
            if amount > 0 and not debit(conn, user_id, amount, order_id, f"Payment for order #{number}"):
                conn.rollback()
                return False, "Insufficient wallet balance"
            conn.execute(
                "UPDATE orders SET payment_status=?, paid_amount=? WHERE id=?", (PAY_PAID, amount, order_id)
            )

        conn.execute("DELETE FROM cart_items WHERE user_id=?", (user_id,))
        conn.commit()
        log.info("order %s placed by user %s: %.2f via %s", number, user_id, amount, payment_method)
        return True, _load(conn, order_id)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


# ---------------- payment stub (online) ----------------

def confirm_payment(order_id: int) -> Tuple[bool, Any]:
    conn = connect()
    try:
        conn.execute("BEGIN IMMEDIATE")
        order = _load(conn, order_id)
        if not order:
            conn.rollback()
            return False, "Order not found"
        if order["payment_method"] != PAYMENT_ONLINE or order["payment_status"] != PAY_PENDING:
            conn.rollback()
            return False, "Order is not awaiting payment"
        if order["status"] == CANCELLED:
            conn.rollback()
            return False, "Order is cancelled"
        paid = payable(order, order["items"])
        conn.execute(
            "UPDATE orders SET payment_status=?, paid_amount=? WHERE id=?", (PAY_PAID, paid, order_id)
        )
        conn.commit()
        log.info("order %s paid online: %.2f", order["number"], paid)
        return True, paid
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fail_payment(order_id: int, now: Optional[datetime] = None) -> Tuple[bool, Any]:
    def plan(order):
        if order["payment_method"] != PAYMENT_ONLINE or order["payment_status"] != PAY_PENDING:
            return "Order is not awaiting payment"
        if order["status"] != PENDING:
            return f"Order is already {order['status']}"
        if any(it["status"] != PENDING for it in active_items(order["items"])):
            return "Some items have already shipped"
        return [
            (int(it["id"]), it["status"], CANCELLED, {})
            for it in order["items"]
            if it["status"] not in RELEASED_STATUSES
        ]

    ok, res = _run(order_id, None, plan, now, order_fields={"payment_status": PAY_FAILED})
    if ok:
        log.warning("payment failed for order %s, order cancelled", order_id)
    return ok, res


# ---------------- customer actions ----------------

def cancel_order(user_id: int, order_id: int, now: Optional[datetime] = None) -> Tuple[bool, Any]:
    def plan(order):
        if order["status"] != PENDING:
            return f"Order cannot be cancelled as it's already {order['status']}"
        live = active_items(order["items"])
        if any(it["status"] != PENDING for it in live):
            return "Some items have already shipped, cancel the remaining items individually"
        return [(int(it["id"]), PENDING, CANCELLED, {}) for it in live]

    return _run(order_id, user_id, plan, now)


def cancel_item(user_id: int, order_id: int, item_id: int, now: Optional[datetime] = None) -> Tuple[bool, Any]:
    def plan(order):
        item = _find_item(order, item_id)
        if not item:
            return "Item not found in order"
        if item["status"] != PENDING:
            return f"Item cannot be cancelled because it's already {item['status']}"
        return [(int(item_id), PENDING, CANCELLED, {})]

    return _run(order_id, user_id, plan, now)


def request_return(
    user_id: int, order_id: int, item_id: int, reason: str, now: Optional[datetime] = None
) -> Tuple[bool, Any]:
    reason = (reason or "").strip()

    def plan(order):
        if not reason:
            return "Return reason is required"
        item = _find_item(order, item_id)
        if not item:
            return "Item not found in order"
        if item["status"] != DELIVERED:
            return "Only delivered items can be returned"
        return [(int(item_id), DELIVERED, RETURN_REQUESTED,
                 {"return_reason": reason, "return_requested_at": now_ts(now)})]

    return _run(order_id, user_id, plan, now)


def preview_return_refund(order_id: int, item_id: int, user_id: Optional[int] = None) -> Tuple[bool, Any]:
    conn = connect()
    try:
        order = _load(conn, order_id, user_id)
    finally:
        conn.close()
    if not order:
        return False, "Order not found"
    item = _find_item(order, item_id)
    if not item:
        return False, "Item not found in order"
    if item["status"] not in (DELIVERED, RETURN_REQUESTED):
        return False, "Item is not returnable"
    after = [dict(it, status=RETURNED) if int(it["id"]) == int(item_id) else it for it in order["items"]]
    refund = refund_due(order, after)
    snapshot = coupon_snapshot(order)
    active_sub = sum(float(it["line_total"]) for it in active_items(after))
    return True, {
        "refund": refund,
        "item_total": float(item["line_total"]),
        "coupon_lost": bool(snapshot) and coupon_discount(snapshot, active_sub) == 0 and float(order["discount"]) > 0,
    }


# ---------------- admin actions ----------------

def decide_return(
    order_id: int, item_id: int, approve: bool, notes: str = "", now: Optional[datetime] = None
) -> Tuple[bool, Any]:
    def plan(order):
        item = _find_item(order, item_id)
        if not item:
            return "Order item not found"
        if item["status"] != RETURN_REQUESTED:
            return "No return request found for this item"
        new = RETURNED if approve else RETURN_REJECTED
        return [(int(item_id), RETURN_REQUESTED, new,
                 {"return_decided_at": now_ts(now), "return_notes": notes or ""})]

    return _run(order_id, None, plan, now)


def _plan_move(item: Dict[str, Any], status: str) -> Optional[Change]:
    if item["status"] == status:
        return None
    if status in ITEM_TRANSITIONS.get(item["status"], ()):
        return (int(item["id"]), item["status"], status, {})
    return None


def update_order_status(order_id: int, status: str, now: Optional[datetime] = None) -> Tuple[bool, Any]:
    if status not in (SHIPPED, DELIVERED, CANCELLED):
        return False, f"Invalid status: {status}"

    def plan(order):
        if order["status"] == status:
            return []
        changes = [c for c in (_plan_move(it, status) for it in order["items"]) if c]
        if not changes:
            return f"Cannot move order from {order['status']} to {status}"
        return changes

    return _run(order_id, None, plan, now)


def update_item_status(
    order_id: int, item_id: int, status: str, now: Optional[datetime] = None
) -> Tuple[bool, Any]:
    if status not in (SHIPPED, DELIVERED, CANCELLED):
        return False, f"Invalid status: {status}"

    def plan(order):
        item = _find_item(order, item_id)
        if not item:
            return "Order item not found"
        if item["status"] == status:
            return []
        change = _plan_move(item, status)
        if not change:
            return f"Cannot move item from {item['status']} to {status}"
        return [change]

    return _run(order_id, None, plan, now)


# ---------------- queries ----------------

def get_order(order_id: int, user_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
    conn = connect()
    try:
        order = _load(conn, order_id, user_id)
        if order:
            order["address"] = row(conn, "SELECT * FROM addresses WHERE id=?", (order["address_id"],))
            order["customer"] = row(conn, "SELECT id, name, email FROM users WHERE id=?", (order["user_id"],))
        return order
    finally:
        conn.close()


def list_orders(
    user_id: Optional[int] = None,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    per_page: int = 10,
) -> Dict[str, Any]:
    where: List[str] = []
    params: List[Any] = []
    if user_id is not None:
        where.append("o.user_id = ?")
        params.append(user_id)
    if status:
        where.append("o.status = ?")
        params.append(status)
    if search:
        where.append("(o.number LIKE ? OR u.name LIKE ?)")
        params += [f"%{search}%", f"%{search}%"]
    where_sql = (" WHERE " + " AND ".join(where)) if where else ""
    page = max(1, int(page))
    per_page = max(1, int(per_page))

    conn = connect()
    try:
        base = " FROM orders o JOIN users u ON u.id = o.user_id" + where_sql
        total = int(conn.execute("SELECT COUNT(*)" + base, tuple(params)).fetchone()[0])
        items = rows(
            conn,
            "SELECT o.*, u.name AS customer_name" + base + " ORDER BY o.created_at DESC, o.id DESC LIMIT ? OFFSET ?",
            (*params, per_page, (page - 1) * per_page),
        )
        return {"items": items, "total": total, "page": page, "pages": max(1, math.ceil(total / per_page))}
    finally:
        conn.close()


def list_return_requests() -> List[Dict[str, Any]]:
    conn = connect()
    try:
        return rows(
            conn,
            """
            SELECT i.id AS item_id, i.order_id, o.number, i.product_name, i.size, i.qty,
                   i.line_total, i.return_reason, i.return_requested_at
            FROM order_items i JOIN orders o ON o.id = i.order_id
            WHERE i.status = ?
            ORDER BY i.return_requested_at, i.id
            """,
            (RETURN_REQUESTED,),
        )
    finally:
        conn.close()
