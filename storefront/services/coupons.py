from __future__ import annotations

import math
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from storefront.constants import COUPON_FLAT, COUPON_PERCENT, COUPON_TYPES
from storefront.db.sqlite import connect, now_ts, row, rows
from storefront.services.pricing import parse_when
from storefront.utils.validators import COUPON_CODE_RE


def coupon_discount(coupon: Optional[Dict[str, Any]], subtotal: float) -> float:
    """
    Discount a coupon gives on `subtotal`. `coupon` is either a coupons row or
    the snapshot kept on an order (type, discount, min_purchase, max_discount).
    """
    if not coupon or subtotal <= 0:
        return 0.0
    if subtotal < float(coupon["min_purchase"] or 0):
        return 0.0
    if coupon["type"] == COUPON_PERCENT:
        d = float(math.floor(subtotal * float(coupon["discount"]) / 100.0))
        if coupon.get("max_discount"):
            d = min(d, float(coupon["max_discount"]))
    else:
        d = float(coupon["discount"])
    return round(min(d, subtotal), 2)


def _validate(
    code: str,
    type_: str,
    discount: float,
    min_purchase: float,
    expiry: datetime,
    max_discount: Optional[float],
    usage_limit: int,
    today: datetime,
) -> Optional[str]:
    if not COUPON_CODE_RE.match(code):
        return "Coupon code must contain only letters and numbers"
    if type_ not in COUPON_TYPES:
        return "Invalid coupon type"
    if discount <= 0:
        return "Discount must be greater than 0"
    if type_ == COUPON_PERCENT:
        if discount >= 100:
            return "Percentage discount cannot exceed 100%"
        if not max_discount or max_discount <= 0:
            return "Max discount cap is required for percentage coupons"
    if min_purchase < 0:
        return "Minimum purchase amount cannot be negative"
    if type_ == COUPON_FLAT and discount > min_purchase:
        return "Fixed discount cannot be greater than minimum purchase amount"
    if expiry.date() < today.date():
        return "Expiry date must be today or in the future"
    if usage_limit < 1:
        return "Usage limit must be at least 1"
    return None


def create_coupon(
    code: str,
    type_: str,
    discount: float,
    min_purchase: float,
    expiry: Any,
    max_discount: Optional[float] = None,
    usage_limit: int = 100,
    description: str = "",
    today: Optional[datetime] = None,
) -> Tuple[bool, Any]:
    code = (code or "").strip().upper()
    try:
        expiry_dt = parse_when(expiry, end_of_day=True)
    except ValueError:
        return False, "Invalid expiry date"

    err = _validate(
        code, type_, float(discount), float(min_purchase), expiry_dt,
        float(max_discount) if max_discount else None, int(usage_limit), today or datetime.now(),
    )
    if err:
        return False, err

    conn = connect()
    try:
        if conn.execute("SELECT id FROM coupons WHERE code=?", (code,)).fetchone():
            return False, "Coupon code already exists"
        cur = conn.execute(
            """
            INSERT INTO coupons(code, type, discount, min_purchase, max_discount, usage_limit,
                                expiry, is_active, description, created_at)
            VALUES(?,?,?,?,?,?,?,1,?,?)
            """,
            (
                code, type_, float(discount), float(min_purchase),
                float(max_discount) if type_ == COUPON_PERCENT else None,
                int(usage_limit), now_ts(expiry_dt), description or "", now_ts(),
            ),
        )
        conn.commit()
        return True, int(cur.lastrowid)
    finally:
        conn.close()


def update_coupon(
    coupon_id: int,
    type_: str,
    discount: float,
    min_purchase: float,
    expiry: Any,
    max_discount: Optional[float] = None,
    usage_limit: int = 100,
    description: str = "",
) -> Tuple[bool, str]:
    try:
        expiry_dt = parse_when(expiry, end_of_day=True)
    except ValueError:
        return False, "Invalid expiry date"

    conn = connect()
    try:
        existing = row(conn, "SELECT code FROM coupons WHERE id=?", (coupon_id,))
        if not existing:
            return False, "Coupon not found"
        err = _validate(
            existing["code"], type_, float(discount), float(min_purchase), expiry_dt,
            float(max_discount) if max_discount else None, int(usage_limit), datetime.now(),
        )
        if err:
            return False, err
        conn.execute(
            """
            UPDATE coupons SET type=?, discount=?, min_purchase=?, max_discount=?, usage_limit=?,
                               expiry=?, description=?
            WHERE id=?
            """,
            (
                type_, float(discount), float(min_purchase),
                float(max_discount) if type_ == COUPON_PERCENT else None,
                int(usage_limit), now_ts(expiry_dt), description or "", coupon_id,
            ),
        )
        conn.commit()
        return True, "ok"
    finally:
        conn.close()


def toggle_coupon(coupon_id: int) -> Tuple[bool, Any]:
    conn = connect()
    try:
        c = row(conn, "SELECT is_active FROM coupons WHERE id=?", (coupon_id,))
        if not c:
            return False, "Coupon not found"
        new_status = 0 if c["is_active"] else 1
        conn.execute("UPDATE coupons SET is_active=? WHERE id=?", (new_status, coupon_id))
        conn.commit()
        return True, bool(new_status)
    finally:
        conn.close()


def list_coupons() -> List[Dict[str, Any]]:
    conn = connect()
    try:
        return rows(conn, "SELECT * FROM coupons ORDER BY created_at DESC, id DESC")
    finally:
        conn.close()


def available_coupons(subtotal: float, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    conn = connect()
    try:
        return rows(
            conn,
            """
            SELECT * FROM coupons
            WHERE is_active = 1 AND expiry >= ? AND usage_limit > 0 AND min_purchase <= ?
            ORDER BY min_purchase DESC, id
            """,
            (now_ts(now), float(subtotal)),
        )
    finally:
        conn.close()


def validate_coupon(
    code: str,
    subtotal: float,
    now: Optional[datetime] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> Tuple[bool, Any]:
    own = conn is None
    conn = conn or connect()
    try:
        coupon = row(
            conn,
            "SELECT * FROM coupons WHERE code=? AND is_active=1 AND expiry >= ? AND usage_limit > 0",
            ((code or "").strip().upper(), now_ts(now)),
        )
    finally:
        if own:
            conn.close()
    if not coupon:
        return False, "Invalid or expired coupon"
    if subtotal < float(coupon["min_purchase"]):
        return False, f"Minimum purchase of {float(coupon['min_purchase']):.2f} required for this coupon"
    return True, coupon
