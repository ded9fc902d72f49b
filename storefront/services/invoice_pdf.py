from __future__ import annotations

import os
from typing import Optional

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from storefront.config import settings
from storefront.services.orders import get_order


def generate_invoice_pdf(order_id: int, user_id: Optional[int] = None) -> Optional[str]:
    """Writes exports/invoice_<number>.pdf and returns its path, None if the order is unknown."""
    order = get_order(order_id, user_id)
    if not order:
        return None

    os.makedirs(settings.export_dir, exist_ok=True)
    path = os.path.join(settings.export_dir, f"invoice_{order['number']}.pdf")

    c = canvas.Canvas(path, pagesize=A4)
    w, h = A4

    y = h - 50
    c.setFont("Helvetica-Bold", 14)
    c.drawString(40, y, f"INVOICE #{order['number']}")
    y -= 20

    c.setFont("Helvetica", 11)
    customer = order.get("customer") or {}
    c.drawString(40, y, f"Customer: {customer.get('name', '')} <{customer.get('email', '')}>")
    y -= 16
    c.drawString(40, y, f"Date: {order['created_at']}")
    y -= 16
    c.drawString(40, y, f"Payment: {order['payment_method']} / {order['payment_status']}")
    y -= 16
    addr = order.get("address")
    if addr:
        c.drawString(40, y, f"Ship to: {addr['name']}, {addr['landmark']}, {addr['city']}, "
                            f"{addr['state']} {addr['pincode']}"[:90])
        y -= 16
    y -= 8

    c.setFont("Helvetica-Bold", 10)
    c.drawString(40, y, "Item")
    c.drawString(270, y, "Size")
    c.drawString(310, y, "Qty")
    c.drawString(360, y, "Price")
    c.drawString(430, y, "Status")
    c.drawString(510, y, "Total")
    y -= 10
    c.line(40, y, 550, y)
    y -= 16

    c.setFont("Helvetica", 10)
    for it in order["items"]:
        c.drawString(40, y, str(it["product_name"])[:40])
        c.drawString(270, y, str(it["size"]))
        c.drawRightString(330, y, str(it["qty"]))
        c.drawRightString(410, y, f"{float(it['price']):.2f}")
        c.drawString(430, y, str(it["status"])[:14])
        c.drawRightString(550, y, f"{float(it['line_total']):.2f}")
        y -= 14
        if y < 120:
            c.showPage()
            y = h - 50
            c.setFont("Helvetica", 10)

    y -= 10
    c.line(40, y, 550, y)
    y -= 18
    cur = settings.currency
    c.drawRightString(550, y, f"Subtotal: {float(order['subtotal']):.2f} {cur}")
    if float(order["shipping"]):
        y -= 14
        c.drawRightString(550, y, f"Shipping: {float(order['shipping']):.2f} {cur}")
    if float(order["discount"]):
        y -= 14
        c.drawRightString(550, y, f"Coupon {order['coupon_code']}: -{float(order['discount']):.2f} {cur}")
    y -= 18
    c.setFont("Helvetica-Bold", 12)
    c.drawRightString(550, y, f"TOTAL: {float(order['amount']):.2f} {cur}")
    if float(order["refunded_amount"]):
        y -= 16
        c.setFont("Helvetica", 10)
        c.drawRightString(550, y, f"Refunded to wallet: {float(order['refunded_amount']):.2f} {cur}")

    c.save()
    return path
