from aiogram import Router
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext
from aiogram.types import FSInputFile, Message, ReplyKeyboardRemove

from storefront.bot.keyboards import categories_kb, main_kb
from storefront.bot.states import ProductAdd
from storefront.config import settings
from storefront.constants import CANCELLED, DELIVERED, ORDER_STATUSES, REPORT_FILTERS, SHIPPED
from storefront.db.sqlite import init_db
from storefront.services import catalog, coupons, orders, pricing, reports
from storefront.services.invoice_pdf import generate_invoice_pdf
from storefront.utils.formatters import money, order_line, order_text
from storefront.utils.validators import parse_size_stock

router = Router()


def _is_admin(message: Message) -> bool:
    if message.from_user is None:
        return False
    return int(message.from_user.id) == int(settings.admin_id)


def _args(message: Message) -> list[str]:
    return (message.text or "").split()[1:]


def _int_args(message: Message, n: int) -> list[int] | None:
    args = _args(message)
    if len(args) < n or not all(a.isdigit() for a in args[:n]):
        return None
    return [int(a) for a in args[:n]]


def _parse_price(text: str) -> float:
    return float(text.strip().replace(",", "."))


@router.message(Command("start"))
async def cmd_start(message: Message):
    if not _is_admin(message):
        return
    init_db()
    await message.answer("✅ Storefront admin bot is running", reply_markup=main_kb())


@router.message(Command("cancel"))
async def cmd_cancel(message: Message, state: FSMContext):
    if not _is_admin(message):
        return
    await state.clear()
    await message.answer("❎ Cancelled.", reply_markup=ReplyKeyboardRemove())


@router.message(Command("help"))
async def cmd_help(message: Message):
    if not _is_admin(message):
        return

    text = (
        "<b>Storefront admin</b>\n\n"
        "<b>Orders</b>\n"
        "/orders [STATUS] - latest orders\n"
        "/order ID - order details\n"
        "/ship ID, /deliver ID, /cancel_order ID - move the whole order\n"
        "/invoice ID - PDF invoice\n\n"
        "<b>Returns</b>\n"
        "/returns - open return requests\n"
        "/return_ok ORDER ITEM [notes] - approve, restock and refund\n"
        "/return_no ORDER ITEM [notes] - reject\n\n"
        "<b>Catalog</b>\n"
        "/product_add - new product wizard\n"
        "/stock PRODUCT_ID - per-size stock\n"
        "/low_stock [N] - sizes at or below N\n\n"
        "<b>Marketing</b>\n"
        "/coupons, /offers\n\n"
        f"<b>Reports</b>\n/sales [{'|'.join(REPORT_FILTERS)}]\n"
    )
    await message.answer(text)


# ---------------- orders ----------------

@router.message(Command("orders"))
async def cmd_orders(message: Message):
    if not _is_admin(message):
        return
    args = _args(message)
    status = args[0].capitalize() if args else None
    if status and status not in ORDER_STATUSES:
        await message.answer(f"Unknown status. Use one of: {', '.join(ORDER_STATUSES)}")
        return
    page = orders.list_orders(status=status, per_page=15)
    if not page["items"]:
        await message.answer("No orders yet.")
        return
    lines = [f"<b>Orders</b> ({page['total']} total):"]
    lines += [order_line(o) for o in page["items"]]
    await message.answer("\n".join(lines))


@router.message(Command("order"))
async def cmd_order(message: Message):
    if not _is_admin(message):
        return
    ids = _int_args(message, 1)
    if not ids:
        await message.answer("Format: /order ID")
        return
    order = orders.get_order(ids[0])
    if not order:
        await message.answer("❌ Order not found")
        return
    await message.answer(order_text(order))


async def _move_order(message: Message, status: str) -> None:
    if not _is_admin(message):
        return
    ids = _int_args(message, 1)
    if not ids:
        await message.answer(f"Format: {(message.text or '').split()[0]} ID")
        return
    ok, res = orders.update_order_status(ids[0], status)
    if not ok:
        await message.answer(f"❌ {res}")
        return
    msg = f"✅ Order {ids[0]} is now {res['status']}"
    if res["refund"]:
        msg += f"\nRefunded to wallet: {money(res['refund'])}"
    await message.answer(msg)


@router.message(Command("ship"))
async def cmd_ship(message: Message):
    await _move_order(message, SHIPPED)


@router.message(Command("deliver"))
async def cmd_deliver(message: Message):
    await _move_order(message, DELIVERED)


@router.message(Command("cancel_order"))
async def cmd_cancel_order(message: Message):
    await _move_order(message, CANCELLED)


@router.message(Command("invoice"))
async def cmd_invoice(message: Message):
    if not _is_admin(message):
        return
    ids = _int_args(message, 1)
    if not ids:
        await message.answer("Format: /invoice ID")
        return
    path = generate_invoice_pdf(ids[0])
    if not path:
        await message.answer("❌ Order not found")
        return
    await message.answer_document(FSInputFile(path))


# ---------------- returns ----------------

@router.message(Command("returns"))
async def cmd_returns(message: Message):
    if not _is_admin(message):
        return
    reqs = orders.list_return_requests()
    if not reqs:
        await message.answer("No open return requests.")
        return
    lines = ["<b>Return requests:</b>"]
    for r in reqs:
        lines.append(
            f"• order {r['order_id']} (#{r['number']}) item {r['item_id']}: {r['product_name']} "
            f"({r['size']}) × {r['qty']} = {money(float(r['line_total']))}\n  reason: {r['return_reason']}"
        )
    await message.answer("\n".join(lines))


async def _decide(message: Message, approve: bool) -> None:
    if not _is_admin(message):
        return
    ids = _int_args(message, 2)
    if not ids:
        await message.answer(f"Format: {(message.text or '').split()[0]} ORDER_ID ITEM_ID [notes]")
        return
    notes = " ".join(_args(message)[2:])
    ok, res = orders.decide_return(ids[0], ids[1], approve, notes)
    if not ok:
        await message.answer(f"❌ {res}")
        return
    if approve:
        await message.answer(f"✅ Return approved. Refunded to wallet: {money(res['refund'])}")
    else:
        await message.answer("✅ Return rejected.")


@router.message(Command("return_ok"))
async def cmd_return_ok(message: Message):
    await _decide(message, True)


@router.message(Command("return_no"))
async def cmd_return_no(message: Message):
    await _decide(message, False)


# ---------------- stock ----------------

@router.message(Command("stock"))
async def cmd_stock(message: Message):
    if not _is_admin(message):
        return
    ids = _int_args(message, 1)
    if not ids:
        await message.answer("Format: /stock PRODUCT_ID")
        return
    p = catalog.get_product(ids[0])
    if not p:
        await message.answer("❌ Product not found")
        return
    lines = [f"<b>{p['name']}</b> ({p['category_name']}), {money(float(p['price']))}"]
    if p["offer"]["has_offer"]:
        lines.append(f"Offer: {p['offer']['offer_name']} -> {money(p['offer']['final_price'])}")
    lines += [f"• {size}: {qty}" for size, qty in p["stock"].items()] or ["no sizes"]
    await message.answer("\n".join(lines))


@router.message(Command("low_stock"))
async def cmd_low_stock(message: Message):
    if not _is_admin(message):
        return
    args = _args(message)
    threshold = int(args[0]) if args and args[0].isdigit() else settings.low_stock_threshold
    rows = catalog.low_stock(threshold)
    if not rows:
        await message.answer(f"Nothing at or below {threshold}.")
        return
    lines = [f"<b>Low stock (≤ {threshold}):</b>"]
    lines += [f"• [{r['product_id']}] {r['name']} {r['size']}: {r['qty']}" for r in rows]
    await message.answer("\n".join(lines))


# ---------------- marketing / reports ----------------

@router.message(Command("coupons"))
async def cmd_coupons(message: Message):
    if not _is_admin(message):
        return
    rows = coupons.list_coupons()
    if not rows:
        await message.answer("No coupons.")
        return
    lines = ["<b>Coupons:</b>"]
    for c in rows:
        state = "on" if c["is_active"] else "off"
        lines.append(
            f"• {c['code']} {c['type']} {float(c['discount']):g} min {float(c['min_purchase']):g} "
            f"left {c['usage_limit']} until {c['expiry'][:10]} [{state}]"
        )
    await message.answer("\n".join(lines))


@router.message(Command("offers"))
async def cmd_offers(message: Message):
    if not _is_admin(message):
        return
    rows = pricing.list_offers()
    if not rows:
        await message.answer("No offers.")
        return
    lines = ["<b>Offers:</b>"]
    for o in rows:
        state = "on" if o["is_active"] else "off"
        lines.append(
            f"• {o['name']}: {float(o['discount']):g}% on {o['offer_type']} "
            f"{o['start_at'][:10]}..{o['end_at'][:10]} [{state}]"
        )
    await message.answer("\n".join(lines))


@router.message(Command("sales"))
async def cmd_sales(message: Message):
    if not _is_admin(message):
        return
    args = _args(message)
    filter_ = args[0].lower() if args else "daily"
    if filter_ not in REPORT_FILTERS:
        await message.answer(f"Format: /sales [{'|'.join(REPORT_FILTERS)}]")
        return
    d = reports.dashboard(filter_)
    s = d["stats"]
    lines = [
        f"<b>Sales ({filter_})</b> {d['period']['start']} .. {d['period']['end']}",
        f"Revenue: {money(s['total_revenue'])} ({d['revenue_change']:+.1f}%)",
        f"Orders: {s['total_orders']} ({d['orders_change']:+.1f}%)",
        f"Coupon discounts: {money(s['total_discounts'])}",
        f"Active products: {s['active_products']}",
    ]
    if d["top_products"]:
        lines.append("\n<b>Top products:</b>")
        lines += [f"• {p['name']}: {p['units_sold']} pcs, {money(p['revenue'])}" for p in d["top_products"]]
    await message.answer("\n".join(lines))


# ---------------- product wizard ----------------

@router.message(Command("product_add"))
async def cmd_product_add(message: Message, state: FSMContext):
    if not _is_admin(message):
        return
    cats = catalog.list_categories(active_only=True)
    if not cats:
        await message.answer("No active categories yet. Add one through the web admin first.")
        return
    await state.clear()
    await state.set_state(ProductAdd.waiting_category)
    await message.answer("1/4) Choose a category\nCancel: /cancel", reply_markup=categories_kb(cats))


@router.message(ProductAdd.waiting_category)
async def product_add_category(message: Message, state: FSMContext):
    if not _is_admin(message):
        return
    raw = (message.text or "").strip()
    match = [c for c in catalog.list_categories(active_only=True) if c["name"].lower() == raw.lower()]
    if not match:
        await message.answer("Pick a category from the keyboard. Cancel: /cancel")
        return
    await state.update_data(category_id=match[0]["id"])
    await state.set_state(ProductAdd.waiting_name)
    await message.answer("2/4) Product name\nCancel: /cancel", reply_markup=ReplyKeyboardRemove())


@router.message(ProductAdd.waiting_name)
async def product_add_name(message: Message, state: FSMContext):
    if not _is_admin(message):
        return
    name = (message.text or "").strip()
    if not name or name.startswith("/"):
        await message.answer("Send the name as text. Cancel: /cancel")
        return
    await state.update_data(name=name)
    await state.set_state(ProductAdd.waiting_price)
    await message.answer(f"3/4) Price in {settings.currency} (e.g. 799 or 799.50)\nCancel: /cancel")


@router.message(ProductAdd.waiting_price)
async def product_add_price(message: Message, state: FSMContext):
    if not _is_admin(message):
        return
    try:
        price = _parse_price(message.text or "")
    except ValueError:
        await message.answer("❌ Not a number. Example: 799.50")
        return
    if price <= 0:
        await message.answer("❌ Price must be greater than 0")
        return
    await state.update_data(price=price)
    await state.set_state(ProductAdd.waiting_sizes)
    await message.answer("4/4) Stock per size, e.g. <code>S:10 M:5 L:0</code>\nCancel: /cancel")


@router.message(ProductAdd.waiting_sizes)
async def product_add_sizes(message: Message, state: FSMContext):
    if not _is_admin(message):
        return
    try:
        stock = parse_size_stock(message.text or "")
    except ValueError as e:
        await message.answer(f"❌ {e}")
        return

    data = await state.get_data()
    ok, res = catalog.add_product(data["name"], "", data["category_id"], data["price"], stock)
    await state.clear()
    if not ok:
        await message.answer(f"❌ {res}")
        return
    sizes = ", ".join(f"{s}:{q}" for s, q in stock.items())
    await message.answer(f"✅ Product {res} added: {data['name']} {money(data['price'])} [{sizes}]")
