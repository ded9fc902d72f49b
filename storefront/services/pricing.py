"""
Offers and offer-price resolution.

An offer is a percent discount on a set of products or on every product of a
set of categories, valid inside [start_at, end_at]. When several apply at the
same moment, the single best one wins (see pick_best).
"""
from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from storefront.constants import OFFER_CATEGORY, OFFER_PRODUCT, OFFER_TYPES, TS_FORMAT
from storefront.db.sqlite import connect, now_ts, row, rows

log = logging.getLogger(__name__)


def parse_when(v: Any, end_of_day: bool = False) -> datetime:
    """Accepts datetime, 'YYYY-MM-DD' or 'YYYY-MM-DD HH:MM:SS'."""
    if isinstance(v, datetime):
        return v
    s = str(v).strip()
    try:
        return datetime.strptime(s, TS_FORMAT)
    except ValueError:
        pass
    d = datetime.strptime(s, "%Y-%m-%d").date()
    return datetime.combine(d, time(23, 59, 59) if end_of_day else time(0, 0, 0))


def pick_best(
    product_offers: Sequence[Dict[str, Any]],
    category_offers: Sequence[Dict[str, Any]],
) -> Optional[Dict[str, Any]]:
    """
    Best product offer vs best category offer: the larger discount wins,
    a tie goes to the product offer.
    """
    best_product = max(product_offers, key=lambda o: float(o["discount"]), default=None)
    best_category = max(category_offers, key=lambda o: float(o["discount"]), default=None)

    if best_product and best_category:
        if float(best_product["discount"]) >= float(best_category["discount"]):
            return best_product
        return best_category
    return best_product or best_category


def _active_offers(
    conn: sqlite3.Connection, offer_type: str, target_id: int, at: str
) -> List[Dict[str, Any]]:
    return rows(
        conn,
        """
        SELECT o.id, o.name, o.discount, o.offer_type, o.start_at, o.end_at
        FROM offers o
        JOIN offer_targets t ON t.offer_id = o.id
        WHERE o.offer_type = ? AND t.target_id = ? AND o.is_active = 1
          AND o.start_at <= ? AND o.end_at >= ?
        ORDER BY o.discount DESC, o.id ASC
        """,
        (offer_type, target_id, at, at),
    )


def best_offer(
    product_id: int,
    category_id: int,
    now: Optional[datetime] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> Optional[Dict[str, Any]]:
    at = now_ts(now)
    own = conn is None
    conn = conn or connect()
    try:
        product_offers = _active_offers(conn, OFFER_PRODUCT, product_id, at)
        category_offers = _active_offers(conn, OFFER_CATEGORY, category_id, at)
    finally:
        if own:
            conn.close()
    return pick_best(product_offers, category_offers)


def apply_discount(price: float, discount_pct: float) -> float:
    return round(price - price * (discount_pct / 100.0), 2)


def offer_price(
    price: float,
    product_id: int,
    category_id: int,
    now: Optional[datetime] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> Tuple[float, Optional[Dict[str, Any]]]:
    offer = best_offer(product_id, category_id, now=now, conn=conn)
    if not offer:
        return round(float(price), 2), None
    return apply_discount(float(price), float(offer["discount"])), offer


def price_info(
    product: Dict[str, Any],
    now: Optional[datetime] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> Dict[str, Any]:
    regular = float(product["price"])
    final, offer = offer_price(regular, int(product["id"]), int(product["category_id"]), now=now, conn=conn)
    return {
        "has_offer": offer is not None,
        "offer_id": offer["id"] if offer else None,
        "offer_name": offer["name"] if offer else None,
        "offer_type": offer["offer_type"] if offer else None,
        "discount_percentage": float(offer["discount"]) if offer else 0.0,
        "regular_price": regular,
        "final_price": final,
        "savings": round(regular - final, 2),
    }


# ---------------- offer management ----------------

def _validate_offer(
    conn: sqlite3.Connection,
    name: str,
    discount: float,
    offer_type: str,
    target_ids: Iterable[int],
    start: datetime,
    end: datetime,
    today: datetime,
    exclude_id: Optional[int] = None,
) -> Optional[str]:
    if not name or len(name.strip()) < 3:
        return "Offer name must be at least 3 characters"
    if discount < 1 or discount > 100:
        return "Discount must be between 1% and 100%"
    if offer_type not in OFFER_TYPES:
        return "Invalid offer type"
    targets = list(target_ids)
    if not targets:
        return f"Please select at least one {offer_type}"

    dup = conn.execute(
        "SELECT id FROM offers WHERE name = ? AND id != ?",
        (name.strip(), exclude_id or 0),
    ).fetchone()
    if dup:
        return "An offer with this name already exists"

    if exclude_id is None and start.date() < today.date():
        return "Start date must be today or in the future"
    if end <= start:
        return "End date must be after start date"

    placeholders = ",".join("?" for _ in targets)
    overlap = conn.execute(
        f"""
        SELECT o.id FROM offers o
        JOIN offer_targets t ON t.offer_id = o.id
        WHERE o.offer_type = ? AND o.is_active = 1 AND o.id != ?
          AND o.start_at <= ? AND o.end_at >= ?
          AND t.target_id IN ({placeholders})
        LIMIT 1
        """,
        (offer_type, exclude_id or 0, now_ts(end), now_ts(start), *targets),
    ).fetchone()
    if overlap:
        return f"An active offer already exists for the selected {offer_type}(s) during this time period"
    return None


def create_offer(
    name: str,
    discount: float,
    offer_type: str,
    target_ids: Iterable[int],
    start_at: Any,
    end_at: Any,
    today: Optional[datetime] = None,
) -> Tuple[bool, Any]:
    targets = sorted({int(t) for t in target_ids})
    try:
        start = parse_when(start_at)
        end = parse_when(end_at, end_of_day=True)
    except ValueError:
        return False, "Invalid date"

    conn = connect()
    try:
        err = _validate_offer(
            conn, name, float(discount), offer_type, targets, start, end, today or datetime.now()
        )
        if err:
            return False, err

        conn.execute("BEGIN")
        cur = conn.execute(
            "INSERT INTO offers(name, discount, offer_type, start_at, end_at, is_active, created_at) "
            "VALUES(?,?,?,?,?,1,?)",
            (name.strip(), float(discount), offer_type, now_ts(start), now_ts(end), now_ts()),
        )
        offer_id = int(cur.lastrowid)
        conn.executemany(
            "INSERT INTO offer_targets(offer_id, target_id) VALUES(?,?)",
            [(offer_id, t) for t in targets],
        )
        conn.commit()
        log.info("offer %s created: %s%% on %s %s", offer_id, discount, offer_type, targets)
        return True, offer_id
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def update_offer(
    offer_id: int,
    name: str,
    discount: float,
    offer_type: str,
    target_ids: Iterable[int],
    start_at: Any,
    end_at: Any,
) -> Tuple[bool, str]:
    targets = sorted({int(t) for t in target_ids})
    try:
        start = parse_when(start_at)
        end = parse_when(end_at, end_of_day=True)
    except ValueError:
        return False, "Invalid date"

    conn = connect()
    try:
        if not conn.execute("SELECT id FROM offers WHERE id=?", (offer_id,)).fetchone():
            return False, "Offer not found"
        err = _validate_offer(
            conn, name, float(discount), offer_type, targets, start, end, datetime.now(), exclude_id=offer_id
        )
        if err:
            return False, err

        conn.execute("BEGIN")
        conn.execute(
            "UPDATE offers SET name=?, discount=?, offer_type=?, start_at=?, end_at=? WHERE id=?",
            (name.strip(), float(discount), offer_type, now_ts(start), now_ts(end), offer_id),
        )
        conn.execute("DELETE FROM offer_targets WHERE offer_id=?", (offer_id,))
        conn.executemany(
            "INSERT INTO offer_targets(offer_id, target_id) VALUES(?,?)",
            [(offer_id, t) for t in targets],
        )
        conn.commit()
        return True, "ok"
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def toggle_offer(offer_id: int, now: Optional[datetime] = None) -> Tuple[bool, Any]:
    today = (now or datetime.now()).date()
    conn = connect()
    try:
        offer = row(conn, "SELECT id, end_at, is_active FROM offers WHERE id=?", (offer_id,))
        if not offer:
            return False, "Offer not found"
        if parse_when(offer["end_at"]).date() < today:
            return False, "Cannot modify status of expired offer"
        new_status = 0 if offer["is_active"] else 1
        conn.execute("UPDATE offers SET is_active=? WHERE id=?", (new_status, offer_id))
        conn.commit()
        return True, bool(new_status)
    finally:
        conn.close()


def get_offer(offer_id: int) -> Optional[Dict[str, Any]]:
    conn = connect()
    try:
        offer = row(conn, "SELECT * FROM offers WHERE id=?", (offer_id,))
        if offer:
            offer["target_ids"] = [
                int(r["target_id"])
                for r in conn.execute(
                    "SELECT target_id FROM offer_targets WHERE offer_id=? ORDER BY target_id", (offer_id,)
                )
            ]
        return offer
    finally:
        conn.close()


def list_offers(search: Optional[str] = None) -> List[Dict[str, Any]]:
    conn = connect()
    try:
        if search:
            return rows(
                conn,
                "SELECT * FROM offers WHERE name LIKE ? ORDER BY created_at DESC, id DESC",
                (f"%{search}%",),
            )
        return rows(conn, "SELECT * FROM offers ORDER BY created_at DESC, id DESC")
    finally:
        conn.close()
