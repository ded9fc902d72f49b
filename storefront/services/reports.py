"""Sales dashboard numbers. All periods are inclusive [start, end] on created_at."""
from __future__ import annotations

import calendar
from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple

from storefront.constants import CANCELLED, RELEASED_STATUSES, REPORT_FILTERS
from storefront.db.sqlite import connect, now_ts, rows
from storefront.services.orders import payable
from storefront.services.pricing import parse_when
from storefront.utils.formatters import to_money

Period = Tuple[datetime, datetime]

_DAY_END = time(23, 59, 59)


def _day(d: datetime, end: bool = False) -> datetime:
    return datetime.combine(d.date(), _DAY_END if end else time(0, 0, 0))


def date_range(
    filter_: str = "daily",
    now: Optional[datetime] = None,
    start: Any = None,
    end: Any = None,
) -> Dict[str, Period]:
    """
    Current period for the filter and the previous period it is compared with.
    filter_="custom" takes start/end dates; the end is pushed to 23:59:59.
    """
    now = now or datetime.now()

    if filter_ == "custom":
        if not (start and end):
            raise ValueError("Start and end dates are required for a custom range")
        cur_start = _day(parse_when(start))
        cur_end = _day(parse_when(end), end=True)
        if cur_end < cur_start:
            raise ValueError("End date must not be before start date")
        span = (cur_end.date() - cur_start.date()).days + 1
        prev_start = cur_start - timedelta(days=span)
        prev_end = cur_start - timedelta(seconds=1)
    elif filter_ == "weekly":
        cur_start = _day(now - timedelta(days=6))
        cur_end = _day(now, end=True)
        prev_start, prev_end = cur_start - timedelta(days=7), cur_end - timedelta(days=7)
    elif filter_ == "monthly":
        cur_start = _day(now - timedelta(days=29))
        cur_end = _day(now, end=True)
        prev_start, prev_end = cur_start - timedelta(days=30), cur_end - timedelta(days=30)
    elif filter_ == "yearly":
        cur_start = datetime(now.year, 1, 1)
        cur_end = datetime(now.year, 12, 31, 23, 59, 59)
        prev_start = datetime(now.year - 1, 1, 1)
        prev_end = datetime(now.year - 1, 12, 31, 23, 59, 59)
    elif filter_ == "daily":
        cur_start = _day(now)
        cur_end = _day(now, end=True)
        prev_start, prev_end = cur_start - timedelta(days=1), cur_end - timedelta(days=1)
    else:
        raise ValueError(f"Unknown filter: {filter_}")

    return {"current": (cur_start, cur_end), "previous": (prev_start, prev_end)}


def percentage_change(old: float, new: float) -> float:
    if old == 0:
        return 100.0 if new > 0 else 0.0
    return round((new - old) / old * 100.0, 2)


def sales_stats(start: datetime, end: datetime) -> Dict[str, Any]:
    """Revenue is what is still owed for the active items of each order, paid or not."""
    conn = connect()
    try:
        found = rows(
            conn,
            "SELECT * FROM orders WHERE created_at BETWEEN ? AND ? AND status != ?",
            (now_ts(start), now_ts(end), CANCELLED),
        )
        items: Dict[int, List[Dict[str, Any]]] = {}
        if found:
            marks = ",".join("?" for _ in found)
            for it in rows(
                conn,
                f"SELECT * FROM order_items WHERE order_id IN ({marks}) ORDER BY id",
                tuple(int(o["id"]) for o in found),
            ):
                items.setdefault(int(it["order_id"]), []).append(it)
        active_products = conn.execute(
            """
            SELECT COUNT(*) FROM products p JOIN categories c ON c.id = p.category_id
            WHERE p.is_blocked = 0 AND c.is_active = 1
            """
        ).fetchone()[0]
    finally:
        conn.close()
    return {
        "total_revenue": to_money(sum(payable(o, items.get(int(o["id"]), [])) for o in found)),
        "total_orders": len(found),
        "total_discounts": to_money(sum(float(o["discount"]) for o in found)),
        "active_products": int(active_products),
    }


def _top(group_col: str, name_col: str, start: datetime, end: datetime, limit: int) -> List[Dict[str, Any]]:
    released = ",".join("?" for _ in RELEASED_STATUSES)
    conn = connect()
    try:
        out = rows(
            conn,
            f"""
            SELECT {group_col} AS id, {name_col} AS name,
                   SUM(i.qty) AS units_sold, SUM(i.line_total) AS revenue
            FROM order_items i
            JOIN orders o ON o.id = i.order_id
            JOIN products p ON p.id = i.product_id
            JOIN categories c ON c.id = p.category_id
            WHERE o.created_at BETWEEN ? AND ?
              AND i.status NOT IN ({released})
            GROUP BY {group_col}
            ORDER BY units_sold DESC, revenue DESC
            LIMIT ?
            """,
            (now_ts(start), now_ts(end), *RELEASED_STATUSES, int(limit)),
        )
    finally:
        conn.close()
    for r in out:
        r["units_sold"] = int(r["units_sold"])
        r["revenue"] = to_money(r["revenue"])
    return out


def top_products(start: datetime, end: datetime, limit: int = 10) -> List[Dict[str, Any]]:
    return _top("p.id", "p.name", start, end, limit)


def top_categories(start: datetime, end: datetime, limit: int = 10) -> List[Dict[str, Any]]:
    return _top("c.id", "c.name", start, end, limit)


def _bucket(filter_: str, start: datetime, end: datetime) -> str:
    if filter_ == "daily":
        return "hour"
    if filter_ == "yearly":
        return "month"
    if filter_ == "custom" and (end.date() - start.date()).days > 31:
        return "month"
    return "day"


def chart_data(filter_: str, start: datetime, end: datetime) -> Dict[str, List[Any]]:
    """Order counts per hour (daily), per month (yearly, long custom ranges) or per day."""
    bucket = _bucket(filter_, start, end)
    fmt = {"hour": "%H", "day": "%Y-%m-%d", "month": "%Y-%m"}[bucket]

    conn = connect()
    try:
        counts = {
            r["k"]: int(r["n"])
            for r in conn.execute(
                "SELECT strftime(?, created_at) AS k, COUNT(*) AS n FROM orders "
                "WHERE created_at BETWEEN ? AND ? GROUP BY k",
                (fmt, now_ts(start), now_ts(end)),
            ).fetchall()
        }
    finally:
        conn.close()

    labels: List[str] = []
    data: List[int] = []
    if bucket == "hour":
        for h in range(24):
            labels.append(f"{h:02d}:00")
            data.append(counts.get(f"{h:02d}", 0))
    elif bucket == "day":
        d = start.date()
        while d <= end.date():
            labels.append(d.strftime("%d %b"))
            data.append(counts.get(d.isoformat(), 0))
            d += timedelta(days=1)
    else:
        y, m = start.year, start.month
        while (y, m) <= (end.year, end.month):
            labels.append(f"{calendar.month_abbr[m]} {y}" if filter_ == "custom" else calendar.month_abbr[m])
            data.append(counts.get(f"{y:04d}-{m:02d}", 0))
            y, m = (y + 1, 1) if m == 12 else (y, m + 1)
    return {"labels": labels, "data": data}


def dashboard(
    filter_: str = "daily",
    now: Optional[datetime] = None,
    start: Any = None,
    end: Any = None,
) -> Dict[str, Any]:
    if filter_ not in REPORT_FILTERS and filter_ != "custom":
        raise ValueError(f"Unknown filter: {filter_}")
    ranges = date_range(filter_, now, start, end)
    cur_start, cur_end = ranges["current"]
    current = sales_stats(cur_start, cur_end)
    previous = sales_stats(*ranges["previous"])
    return {
        "filter": filter_,
        "period": {"start": now_ts(cur_start), "end": now_ts(cur_end)},
        "stats": current,
        "previous": previous,
        "revenue_change": percentage_change(previous["total_revenue"], current["total_revenue"]),
        "orders_change": percentage_change(previous["total_orders"], current["total_orders"]),
        "chart": chart_data(filter_, cur_start, cur_end),
        "top_products": top_products(cur_start, cur_end),
        "top_categories": top_categories(cur_start, cur_end),
    }
