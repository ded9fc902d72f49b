from typing import Any, Dict

from storefront.config import settings


def money(v: float) -> str:
    return f"{v:.{settings.decimals}f} {settings.currency}"


def to_money(v: float) -> float:
    return round(float(v), settings.decimals)


def order_line(order: Dict[str, Any]) -> str:
    return (
        f"• #{order['number']} | {order['status']} | {money(float(order['amount']))} "
        f"| {order['payment_method']}/{order['payment_status']} | {order['created_at']}"
    )


def order_text(order: Dict[str, Any]) -> str:
    lines = [
        f"<b>Order #{order['number']}</b> ({order['status']})",
        f"Created: {order['created_at']}",
        f"Payment: {order['payment_method']} / {order['payment_status']}",
        "",
    ]
    for it in order.get("items", []):
        lines.append(
            f"  [{it['id']}] {it['product_name']} ({it['size']}) × {it['qty']} "
            f"@ {float(it['price']):.2f} = {float(it['line_total']):.2f} | {it['status']}"
        )
    lines.append("")
    lines.append(f"Subtotal: {money(float(order['subtotal']))}")
    if float(order["shipping"]):
        lines.append(f"Shipping: {money(float(order['shipping']))}")
    if float(order["discount"]):
        lines.append(f"Coupon {order['coupon_code']}: -{money(float(order['discount']))}")
    lines.append(f"<b>Total: {money(float(order['amount']))}</b>")
    if float(order["refunded_amount"]):
        lines.append(f"Refunded: {money(float(order['refunded_amount']))}")
    return "\n".join(lines)
