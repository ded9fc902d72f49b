"""Offer resolution and offer management."""

from datetime import datetime, timedelta

from storefront.services import catalog, pricing


def _day(offset: int = 0) -> str:
    return (datetime.now() + timedelta(days=offset)).strftime("%Y-%m-%d")


class TestPickBest:
    def test_larger_discount_wins(self):
        best = pricing.pick_best([{"id": 1, "discount": 10}], [{"id": 2, "discount": 25}])
        assert best["id"] == 2

    def test_tie_goes_to_product_offer(self):
        best = pricing.pick_best([{"id": 1, "discount": 20}], [{"id": 2, "discount": 20}])
        assert best["id"] == 1

    def test_only_one_side(self):
        assert pricing.pick_best([], [{"id": 2, "discount": 5}])["id"] == 2
        assert pricing.pick_best([], []) is None


def test_apply_discount_rounds_to_cents():
    assert pricing.apply_discount(999, 15) == 849.15
    assert pricing.apply_discount(333.33, 33) == 223.33


class TestOffers:
    def test_product_offer_applies(self, shirt, category):
        ok, _ = pricing.create_offer("Summer sale", 20, "product", [shirt], _day(0), _day(10))
        assert ok
        p = catalog.get_product(shirt)
        assert p["offer"]["has_offer"]
        assert p["offer"]["final_price"] == 800
        assert p["offer"]["savings"] == 200

    def test_category_offer_beats_smaller_product_offer(self, shirt, category):
        pricing.create_offer("Shirt deal", 10, "product", [shirt], _day(0), _day(10))
        pricing.create_offer("Category deal", 30, "category", [category], _day(0), _day(10))
        price, offer = pricing.offer_price(1000, shirt, category)
        assert price == 700
        assert offer["name"] == "Category deal"

    def test_equal_offers_prefer_product(self, shirt, category):
        pricing.create_offer("Shirt deal", 25, "product", [shirt], _day(0), _day(10))
        pricing.create_offer("Category deal", 25, "category", [category], _day(0), _day(10))
        _, offer = pricing.offer_price(1000, shirt, category)
        assert offer["offer_type"] == "product"

    def test_future_offer_not_applied_yet(self, shirt, category):
        pricing.create_offer("Next week", 50, "product", [shirt], _day(7), _day(10))
        price, offer = pricing.offer_price(1000, shirt, category)
        assert offer is None
        assert price == 1000

    def test_offer_window_at_given_time(self, shirt, category):
        pricing.create_offer("Next week", 50, "product", [shirt], _day(7), _day(10))
        later = datetime.now() + timedelta(days=8)
        price, _ = pricing.offer_price(1000, shirt, category, now=later)
        assert price == 500

    def test_validation(self, shirt):
        assert pricing.create_offer("ab", 10, "product", [shirt], _day(0), _day(1)) == (
            False, "Offer name must be at least 3 characters")
        assert not pricing.create_offer("Too much", 101, "product", [shirt], _day(0), _day(1))[0]
        assert not pricing.create_offer("No targets", 10, "product", [], _day(0), _day(1))[0]
        assert not pricing.create_offer("Backwards", 10, "product", [shirt], _day(3), _day(1))[0]
        assert not pricing.create_offer("Yesterday", 10, "product", [shirt], _day(-1), _day(1))[0]

    def test_overlap_rejected_and_duplicate_name(self, shirt):
        assert pricing.create_offer("First", 10, "product", [shirt], _day(0), _day(10))[0]
        ok, err = pricing.create_offer("Second", 15, "product", [shirt], _day(5), _day(20))
        assert not ok
        assert "already exists" in err
        ok, err = pricing.create_offer("First", 15, "product", [shirt], _day(20), _day(30))
        assert err == "An offer with this name already exists"

    def test_toggle_and_update(self, shirt, category):
        ok, offer_id = pricing.create_offer("Flash", 10, "product", [shirt], _day(0), _day(3))
        assert pricing.toggle_offer(offer_id) == (True, False)
        assert pricing.offer_price(1000, shirt, category)[1] is None

        assert pricing.toggle_offer(offer_id) == (True, True)
        ok, _ = pricing.update_offer(offer_id, "Flash", 40, "product", [shirt], _day(0), _day(3))
        assert ok
        assert pricing.get_offer(offer_id)["target_ids"] == [shirt]
        assert pricing.offer_price(1000, shirt, category)[0] == 600

    def test_toggle_expired_refused(self, shirt):
        ok, offer_id = pricing.create_offer("Short", 10, "product", [shirt], _day(0), _day(1))
        ok, err = pricing.toggle_offer(offer_id, now=datetime.now() + timedelta(days=5))
        assert not ok
        assert "expired" in err
