"""Cart rules: per-line cap, stock checks, price-at-add."""

from datetime import datetime, timedelta

from storefront.services import cart, catalog, pricing


def _day(offset: int = 0) -> str:
    return (datetime.now() + timedelta(days=offset)).strftime("%Y-%m-%d")


def test_add_merges_lines_and_totals(customer, shirt):
    ok, res = cart.cart_add(customer["id"], shirt, "M", 1)
    assert ok
    ok, res = cart.cart_add(customer["id"], shirt, "m", 2)
    assert ok
    assert res["qty"] == 3
    assert res["cart_total"] == 3000
    assert cart.cart_count(customer["id"]) == 1


def test_per_line_cap(customer, category):
    ok, pid = catalog.add_product("Socks", "", category, 100, {"M": 50})
    assert cart.cart_add(customer["id"], pid, "M", 4)[0]
    ok, err = cart.cart_add(customer["id"], pid, "M", 2)
    assert not ok
    assert "up to 5" in err


def test_stock_and_size_checks(customer, shirt):
    assert cart.cart_add(customer["id"], shirt, "XXL", 1) == (
        False, "Size XXL is not available for this product")
    ok, err = cart.cart_add(customer["id"], shirt, "L", 3)
    assert err == "Only 2 items available for size L"
    catalog.set_stock(shirt, "L", 0)
    assert cart.cart_add(customer["id"], shirt, "L", 1) == (False, "Out of stock in size L")


def test_unsellable_product(customer, shirt, category):
    catalog.set_category_active(category, False)
    assert cart.cart_add(customer["id"], shirt, "M", 1) == (False, "Product unavailable")


def test_offer_price_is_stored_and_refreshed_on_readd(customer, shirt):
    cart.cart_add(customer["id"], shirt, "M", 1)
    assert cart.cart_show(customer["id"])["total"] == 1000

    pricing.create_offer("Half off", 50, "product", [shirt], _day(0), _day(3))
    shown = cart.cart_show(customer["id"])
    assert shown["items"][0]["price"] == 1000

    ok, res = cart.cart_add(customer["id"], shirt, "M", 1)
    assert res["price"] == 500
    assert res["cart_total"] == 1000


def test_update_keeps_price_and_floors_at_one(customer, shirt):
    cart.cart_add(customer["id"], shirt, "M", 1)
    item_id = cart.cart_show(customer["id"])["items"][0]["id"]

    ok, res = cart.cart_update(customer["id"], item_id, "decrement")
    assert res["qty"] == 1
    ok, res = cart.cart_update(customer["id"], item_id, "increment")
    assert res["qty"] == 2
    assert res["line_total"] == 2000
    assert not cart.cart_update(customer["id"], item_id, "explode")[0]


def test_update_respects_stock(customer, shirt):
    cart.cart_add(customer["id"], shirt, "L", 2)
    item_id = cart.cart_show(customer["id"])["items"][0]["id"]
    ok, err = cart.cart_update(customer["id"], item_id, "increment")
    assert not ok


def test_add_moves_product_out_of_wishlist(customer, shirt):
    catalog.wishlist_add(customer["id"], shirt)
    cart.cart_add(customer["id"], shirt, "M", 1)
    assert catalog.wishlist_list(customer["id"]) == []


def test_availability_flag_and_remove(customer, shirt, tee):
    cart.cart_add(customer["id"], shirt, "M", 2)
    cart.cart_add(customer["id"], tee, "M", 1)
    catalog.set_stock(shirt, "M", 1)

    shown = cart.cart_show(customer["id"])
    flags = {it["product_id"]: it["available"] for it in shown["items"]}
    assert flags == {shirt: False, tee: True}

    shirt_line = next(it for it in shown["items"] if it["product_id"] == shirt)
    ok, res = cart.cart_remove(customer["id"], shirt_line["id"])
    assert res["cart_total"] == 500
    assert not cart.cart_remove(customer["id"], shirt_line["id"])[0]

    cart.cart_clear(customer["id"])
    assert cart.cart_count(customer["id"]) == 0
