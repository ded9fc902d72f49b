"""Order placement, cancellation, returns and refunds."""

from datetime import datetime, timedelta

import pytest

from storefront.constants import (
    CANCELLED,
    DELIVERED,
    PAY_FAILED,
    PAY_PAID,
    PAY_PARTIAL_REFUND,
    PAY_PENDING,
    PAY_REFUNDED,
    PENDING,
    RETURN_REJECTED,
    RETURN_REQUESTED,
    RETURNED,
    SHIPPED,
)
from storefront.db.sqlite import connect, take_stock
from storefront.services import cart, catalog, coupons, orders, wallet


def _day(offset: int = 0) -> str:
    return (datetime.now() + timedelta(days=offset)).strftime("%Y-%m-%d")


def _place(user, method="wallet", coupon=None):
    ok, order = orders.place_order(user["id"], user["address_id"], method, coupon)
    assert ok, order
    return order


def _item(order, product_id):
    return next(it for it in order["items"] if it["product_id"] == product_id)


def _balance(user_id):
    return wallet.get_wallet(user_id)["balance"]


class TestPlaceOrder:
    def test_wallet_order_snapshots_and_takes_stock(self, filled_cart, shirt, tee):
        order = _place(filled_cart)

        assert order["number"] == f"ORD{order['id']:06d}"
        assert order["subtotal"] == 2500
        assert order["amount"] == 2500
        assert order["status"] == PENDING
        assert order["payment_status"] == PAY_PAID
        assert order["paid_amount"] == 2500
        assert [it["status"] for it in order["items"]] == [PENDING, PENDING]
        assert _item(order, shirt)["line_total"] == 2000

        assert catalog.get_stock(shirt)["M"] == 3
        assert catalog.get_stock(tee)["M"] == 4
        assert _balance(filled_cart["id"]) == 2500
        assert cart.cart_count(filled_cart["id"]) == 0
        assert wallet.verify_wallet(filled_cart["id"])[0]

    def test_cod_order_is_unpaid(self, filled_cart):
        order = _place(filled_cart, "cod")
        assert order["payment_status"] == PAY_PENDING
        assert order["paid_amount"] == 0
        assert _balance(filled_cart["id"]) == 5000

    def test_empty_cart(self, customer):
        ok, err = orders.place_order(customer["id"], customer["address_id"], "cod")
        assert not ok
        assert err == "Cart is empty"

    def test_invalid_payment_method(self, filled_cart):
        ok, err = orders.place_order(filled_cart["id"], filled_cart["address_id"], "cheque")
        assert not ok

    def test_foreign_address_rejected(self, filled_cart, make_user):
        other = make_user()
        ok, err = orders.place_order(filled_cart["id"], other["address_id"], "cod")
        assert not ok
        assert "address" in err.lower()

    def test_insufficient_wallet_places_nothing(self, make_user, shirt):
        poor = make_user(balance=100)
        cart.cart_add(poor["id"], shirt, "M", 1)

        ok, err = orders.place_order(poor["id"], poor["address_id"], "wallet")

        assert not ok
        assert "Insufficient wallet balance" in err
        assert catalog.get_stock(shirt)["M"] == 5
        assert cart.cart_count(poor["id"]) == 1
        assert orders.list_orders(user_id=poor["id"])["total"] == 0

    def test_stock_shortage_reports_and_places_nothing(self, filled_cart, shirt):
        catalog.set_stock(shirt, "M", 1)

        problems = orders.check_stock(filled_cart["id"])
        assert [p["type"] for p in problems] == ["insufficient_stock"]

        ok, err = orders.place_order(filled_cart["id"], filled_cart["address_id"], "wallet")
        assert not ok
        assert err.startswith("Stock validation failed")
        assert catalog.get_stock(shirt)["M"] == 1
        assert _balance(filled_cart["id"]) == 5000
        assert cart.cart_count(filled_cart["id"]) == 2

    def test_blocked_product_in_cart(self, filled_cart, tee):
        catalog.set_product_blocked(tee, True)
        problems = orders.check_stock(filled_cart["id"])
        assert [p["type"] for p in problems] == ["blocked"]

    def test_second_buyer_loses_the_race(self, make_user, shirt):
        a, b = make_user(balance=5000), make_user(balance=5000)
        cart.cart_add(a["id"], shirt, "M", 3)
        cart.cart_add(b["id"], shirt, "M", 3)

        _place(a)
        ok, err = orders.place_order(b["id"], b["address_id"], "wallet")

        assert not ok
        assert catalog.get_stock(shirt)["M"] == 2
        assert _balance(b["id"]) == 5000

    def test_conditional_stock_take(self, shirt):
        conn = connect()
        try:
            assert take_stock(conn, shirt, "M", 3)
            assert not take_stock(conn, shirt, "M", 3)
            conn.commit()
        finally:
            conn.close()
        assert catalog.get_stock(shirt)["M"] == 2

    def test_price_at_add_is_charged(self, customer, shirt):
        cart.cart_add(customer["id"], shirt, "M", 1)
        conn = connect()
        try:
            conn.execute("UPDATE products SET price=2000 WHERE id=?", (shirt,))
            conn.commit()
        finally:
            conn.close()
        order = _place(customer, "cod")
        assert order["amount"] == 1000


class TestCoupons:
    def test_coupon_discount_and_redemption(self, filled_cart):
        ok, _ = coupons.create_coupon("SAVE10", "percentageDiscount", 10, 1000, _day(5), max_discount=150, usage_limit=1)
        assert ok

        order = _place(filled_cart, coupon="save10")

        assert order["discount"] == 150
        assert order["amount"] == 2350
        assert order["coupon_code"] == "SAVE10"
        assert coupons.list_coupons()[0]["usage_limit"] == 0
        ok, err = coupons.validate_coupon("SAVE10", 2500)
        assert not ok

    def test_coupon_below_minimum(self, filled_cart):
        coupons.create_coupon("BIG", "flatDiscount", 300, 3000, _day(5))
        ok, err = orders.place_order(filled_cart["id"], filled_cart["address_id"], "wallet", "BIG")
        assert not ok
        assert "Minimum purchase" in err


class TestCancel:
    def test_cancel_whole_wallet_order_refunds_and_restocks_once(self, filled_cart, shirt, tee):
        order = _place(filled_cart)

        ok, res = orders.cancel_order(filled_cart["id"], order["id"])
        assert ok, res
        assert res["refund"] == 2500
        assert res["status"] == CANCELLED

        after = orders.get_order(order["id"])
        assert after["status"] == CANCELLED
        assert after["payment_status"] == PAY_REFUNDED
        assert after["refunded_amount"] == 2500
        assert catalog.get_stock(shirt)["M"] == 5
        assert catalog.get_stock(tee)["M"] == 5
        assert _balance(filled_cart["id"]) == 5000

        ok, err = orders.cancel_order(filled_cart["id"], order["id"])
        assert not ok
        assert catalog.get_stock(shirt)["M"] == 5
        assert _balance(filled_cart["id"]) == 5000
        assert wallet.verify_wallet(filled_cart["id"])[0]

    def test_cancel_other_users_order(self, filled_cart, make_user):
        order = _place(filled_cart)
        stranger = make_user()
        ok, err = orders.cancel_order(stranger["id"], order["id"])
        assert not ok
        assert err == "Order not found"

    def test_cannot_cancel_shipped_order(self, filled_cart):
        order = _place(filled_cart)
        orders.update_order_status(order["id"], SHIPPED)
        ok, err = orders.cancel_order(filled_cart["id"], order["id"])
        assert not ok
        assert "Shipped" in err

    def test_cancel_item_keeps_coupon_while_threshold_holds(self, filled_cart, shirt, tee):
        coupons.create_coupon("FLAT300", "flatDiscount", 300, 2000, _day(5))
        order = _place(filled_cart, coupon="FLAT300")
        assert order["amount"] == 2200

        ok, res = orders.cancel_item(filled_cart["id"], order["id"], _item(order, tee)["id"])
        assert ok
        assert res["refund"] == 500
        after = orders.get_order(order["id"])
        assert after["payment_status"] == PAY_PARTIAL_REFUND
        assert after["status"] == PENDING

        ok, res = orders.cancel_item(filled_cart["id"], order["id"], _item(order, shirt)["id"])
        assert ok
        assert res["refund"] == 1700
        after = orders.get_order(order["id"])
        assert after["refunded_amount"] == 2200
        assert after["payment_status"] == PAY_REFUNDED
        assert after["status"] == CANCELLED

    def test_cancel_item_below_threshold_never_over_refunds(self, filled_cart, shirt, tee):
        coupons.create_coupon("FLAT300", "flatDiscount", 300, 2000, _day(5))
        order = _place(filled_cart, coupon="FLAT300")

        ok, res = orders.cancel_item(filled_cart["id"], order["id"], _item(order, shirt)["id"])
        assert ok
        # tee alone no longer qualifies for the coupon, so it costs its full 500
        assert res["refund"] == 1700

        ok, res = orders.cancel_item(filled_cart["id"], order["id"], _item(order, tee)["id"])
        assert res["refund"] == 500
        assert orders.get_order(order["id"])["refunded_amount"] == order["paid_amount"]

    def test_cancel_item_twice(self, filled_cart, tee):
        order = _place(filled_cart)
        item_id = _item(order, tee)["id"]
        assert orders.cancel_item(filled_cart["id"], order["id"], item_id)[0]
        ok, err = orders.cancel_item(filled_cart["id"], order["id"], item_id)
        assert not ok
        assert catalog.get_stock(tee)["M"] == 5

    def test_cod_cancel_restocks_without_refund(self, filled_cart, shirt):
        order = _place(filled_cart, "cod")
        ok, res = orders.cancel_order(filled_cart["id"], order["id"])
        assert ok
        assert res["refund"] == 0
        assert catalog.get_stock(shirt)["M"] == 5
        assert _balance(filled_cart["id"]) == 5000


class TestAdminStatus:
    def test_cod_becomes_paid_on_delivery(self, filled_cart):
        order = _place(filled_cart, "cod")
        assert orders.update_order_status(order["id"], SHIPPED)[0]
        ok, res = orders.update_order_status(order["id"], DELIVERED)
        assert ok
        after = orders.get_order(order["id"])
        assert after["status"] == DELIVERED
        assert after["payment_status"] == PAY_PAID
        assert after["paid_amount"] == 2500
        assert after["delivered_at"]

    def test_setting_current_status_is_a_no_op(self, filled_cart):
        order = _place(filled_cart)
        assert orders.update_order_status(order["id"], SHIPPED)[0]
        ok, res = orders.update_order_status(order["id"], SHIPPED)
        assert ok
        assert res["status"] == SHIPPED

    def test_pending_cannot_jump_to_delivered(self, filled_cart):
        order = _place(filled_cart)
        ok, err = orders.update_order_status(order["id"], DELIVERED)
        assert not ok

    def test_admin_cancel_skips_terminal_items(self, filled_cart, shirt, tee):
        order = _place(filled_cart)
        orders.cancel_item(filled_cart["id"], order["id"], _item(order, tee)["id"])

        ok, res = orders.update_order_status(order["id"], CANCELLED)
        assert ok
        assert res["refund"] == 2000
        assert catalog.get_stock(tee)["M"] == 5
        assert catalog.get_stock(shirt)["M"] == 5
        assert _balance(filled_cart["id"]) == 5000

    def test_item_status_derives_order_status(self, filled_cart, shirt, tee):
        order = _place(filled_cart)
        orders.update_item_status(order["id"], _item(order, shirt)["id"], SHIPPED)
        assert orders.get_order(order["id"])["status"] == PENDING
        orders.update_item_status(order["id"], _item(order, tee)["id"], SHIPPED)
        assert orders.get_order(order["id"])["status"] == SHIPPED


class TestReturns:
    def _delivered(self, user, method="wallet"):
        order = _place(user, method)
        orders.update_order_status(order["id"], SHIPPED)
        orders.update_order_status(order["id"], DELIVERED)
        return orders.get_order(order["id"])

    def test_return_only_for_delivered_items(self, filled_cart, tee):
        order = _place(filled_cart)
        ok, err = orders.request_return(filled_cart["id"], order["id"], _item(order, tee)["id"], "too small")
        assert not ok

    def test_return_requires_reason(self, filled_cart, tee):
        order = self._delivered(filled_cart)
        ok, err = orders.request_return(filled_cart["id"], order["id"], _item(order, tee)["id"], "  ")
        assert not ok

    def test_approved_return_restocks_and_refunds(self, filled_cart, tee):
        order = self._delivered(filled_cart, "cod")
        item_id = _item(order, tee)["id"]

        ok, preview = orders.preview_return_refund(order["id"], item_id)
        assert ok
        assert preview["refund"] == 500

        assert orders.request_return(filled_cart["id"], order["id"], item_id, "wrong colour")[0]
        assert _item(orders.get_order(order["id"]), tee)["status"] == RETURN_REQUESTED
        assert len(orders.list_return_requests()) == 1

        ok, res = orders.decide_return(order["id"], item_id, True, "ok")
        assert ok
        assert res["refund"] == 500

        after = orders.get_order(order["id"])
        item = _item(after, tee)
        assert item["status"] == RETURNED
        assert item["refund_amount"] == 500
        assert after["status"] == DELIVERED
        assert after["payment_status"] == PAY_PARTIAL_REFUND
        assert catalog.get_stock(tee)["M"] == 5
        assert _balance(filled_cart["id"]) == 5500

        ok, err = orders.decide_return(order["id"], item_id, True)
        assert not ok
        assert catalog.get_stock(tee)["M"] == 5

    def test_rejected_return_keeps_stock_and_money(self, filled_cart, tee):
        order = self._delivered(filled_cart)
        item_id = _item(order, tee)["id"]
        orders.request_return(filled_cart["id"], order["id"], item_id, "changed my mind")

        ok, res = orders.decide_return(order["id"], item_id, False, "worn")
        assert ok
        assert res["refund"] == 0
        item = _item(orders.get_order(order["id"]), tee)
        assert item["status"] == RETURN_REJECTED
        assert item["return_notes"] == "worn"
        assert catalog.get_stock(tee)["M"] == 4
        assert _balance(filled_cart["id"]) == 2500

    def test_returning_everything_marks_order_returned(self, filled_cart, shirt, tee):
        order = self._delivered(filled_cart)
        for pid in (shirt, tee):
            item_id = _item(order, pid)["id"]
            orders.request_return(filled_cart["id"], order["id"], item_id, "bad fit")
            orders.decide_return(order["id"], item_id, True)

        after = orders.get_order(order["id"])
        assert after["status"] == RETURNED
        assert after["payment_status"] == PAY_REFUNDED
        assert after["refunded_amount"] == 2500


class TestOnlinePayment:
    def test_confirm_then_cancel_refunds(self, filled_cart):
        order = _place(filled_cart, "online")
        assert order["payment_status"] == PAY_PENDING

        ok, paid = orders.confirm_payment(order["id"])
        assert ok
        assert paid == 2500

        ok, res = orders.cancel_order(filled_cart["id"], order["id"])
        assert res["refund"] == 2500
        assert _balance(filled_cart["id"]) == 7500

    def test_failed_payment_cancels_and_restocks(self, filled_cart, shirt):
        order = _place(filled_cart, "online")
        ok, res = orders.fail_payment(order["id"])
        assert ok
        after = orders.get_order(order["id"])
        assert after["status"] == CANCELLED
        assert after["payment_status"] == PAY_FAILED
        assert catalog.get_stock(shirt)["M"] == 5
        assert not orders.confirm_payment(order["id"])[0]

    def test_failed_payment_after_shipping_is_refused(self, filled_cart, shirt):
        order = _place(filled_cart, "online")
        assert orders.update_order_status(order["id"], SHIPPED)[0]

        assert orders.fail_payment(order["id"]) == (False, "Order is already Shipped")
        assert orders.update_order_status(order["id"], DELIVERED)[0]
        assert orders.fail_payment(order["id"]) == (False, "Order is already Delivered")

        after = orders.get_order(order["id"])
        assert after["status"] == DELIVERED
        assert after["payment_status"] == PAY_PENDING
        assert all(it["status"] == DELIVERED for it in after["items"])
        assert catalog.get_stock(shirt)["M"] == 3

    def test_failed_payment_with_a_shipped_item_is_refused(self, filled_cart, shirt, tee):
        order = _place(filled_cart, "online")
        assert orders.update_item_status(order["id"], _item(order, shirt)["id"], SHIPPED)[0]

        assert orders.fail_payment(order["id"]) == (False, "Some items have already shipped")
        assert orders.get_order(order["id"])["payment_status"] == PAY_PENDING
        assert catalog.get_stock(shirt)["M"] == 3
        assert catalog.get_stock(tee)["M"] == 4

    def test_unpaid_cancel_refunds_nothing(self, make_user, tee):
        user = make_user()
        cart.cart_add(user["id"], tee, "M", 2)
        order = _place(user, "online")

        ok, res = orders.cancel_order(user["id"], order["id"])
        assert ok
        assert res["refund"] == 0
        assert _balance(user["id"]) == 0
        assert not orders.confirm_payment(order["id"])[0]


class TestQueries:
    def test_list_orders_paginates_and_filters(self, make_user, tee):
        u = make_user(balance=10000)
        for _ in range(3):
            cart.cart_add(u["id"], tee, "M", 1)
            _place(u)
        page = orders.list_orders(user_id=u["id"], per_page=2)
        assert page["total"] == 3
        assert page["pages"] == 2
        assert len(page["items"]) == 2
        assert orders.list_orders(status=CANCELLED)["total"] == 0
        assert orders.list_orders(search="ORD")["total"] == 3


class TestPureRules:
    ORDER = {
        "coupon_code": "X", "coupon_type": "flatDiscount", "coupon_value": 100,
        "coupon_min_purchase": 1000, "coupon_max_discount": None, "shipping": 50,
    }

    def test_payable_with_shipping_and_coupon(self):
        items = [{"status": PENDING, "line_total": 800}, {"status": SHIPPED, "line_total": 400}]
        assert orders.payable(self.ORDER, items) == 1150

    def test_payable_drops_coupon_below_threshold(self):
        items = [{"status": PENDING, "line_total": 800}, {"status": CANCELLED, "line_total": 400}]
        assert orders.payable(self.ORDER, items) == 850

    def test_payable_zero_when_nothing_active(self):
        items = [{"status": CANCELLED, "line_total": 800}, {"status": RETURNED, "line_total": 400}]
        assert orders.payable(self.ORDER, items) == 0

    @pytest.mark.parametrize(
        "statuses,expected",
        [
            ([CANCELLED, CANCELLED], CANCELLED),
            ([CANCELLED, RETURNED], RETURNED),
            ([PENDING, SHIPPED], PENDING),
            ([SHIPPED, CANCELLED], SHIPPED),
            ([DELIVERED, RETURN_REQUESTED], DELIVERED),
            ([RETURN_REJECTED, RETURNED], DELIVERED),
        ],
    )
    def test_derive_status(self, statuses, expected):
        assert orders.derive_status([{"status": s} for s in statuses]) == expected

    def test_split_amount_adds_up(self):
        shares = orders.split_amount(100, [1, 1, 1])
        assert shares == [33.33, 33.33, 33.34]
