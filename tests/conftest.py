"""Pytest fixtures for storefront tests."""

import os
import tempfile

_TMP = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DB_PATH"] = os.path.join(_TMP, "shop.db")
os.environ["EXPORT_DIR"] = os.path.join(_TMP, "exports")
os.environ["SHIPPING_CHARGE"] = "0"
os.environ["MAX_QTY_PER_ITEM"] = "5"
os.environ["REFERRAL_BONUS"] = "100"
os.environ["JWT_SECRET"] = "test-secret"

import pytest  # noqa: E402

from storefront.config import settings  # noqa: E402
from storefront.db.sqlite import init_db  # noqa: E402
from storefront.services import cart, catalog, users, wallet  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    """Every test starts from an empty schema."""
    if os.path.exists(settings.db_path):
        os.remove(settings.db_path)
    init_db()
    yield


@pytest.fixture
def category():
    ok, cid = catalog.add_category("Shirts")
    assert ok
    return cid


@pytest.fixture
def shirt(category):
    ok, pid = catalog.add_product("Oxford Shirt", "cotton", category, 1000, {"M": 5, "L": 2})
    assert ok
    return pid


@pytest.fixture
def tee(category):
    ok, pid = catalog.add_product("Basic Tee", "", category, 500, {"M": 5})
    assert ok
    return pid


@pytest.fixture
def make_user():
    counter = {"n": 0}

    def _make(balance: float = 0, **kwargs):
        counter["n"] += 1
        ok, user = users.register_user(
            kwargs.pop("name", f"User {counter['n']}"),
            kwargs.pop("email", f"user{counter['n']}@example.com"),
            kwargs.pop("password", "secret123"),
            **kwargs,
        )
        assert ok, user
        if balance:
            wallet.wallet_credit(user["id"], balance)
        ok, address_id = users.add_address(
            user["id"],
            {"name": "Home", "city": "Kochi", "landmark": "Near park", "state": "Kerala",
             "pincode": "682001", "phone": "9876543210"},
        )
        assert ok
        user["address_id"] = address_id
        return user

    return _make


@pytest.fixture
def customer(make_user):
    return make_user(balance=5000)


@pytest.fixture
def filled_cart(customer, shirt, tee):
    """Shirt M x2 (2000) + Tee M x1 (500)."""
    assert cart.cart_add(customer["id"], shirt, "M", 2)[0]
    assert cart.cart_add(customer["id"], tee, "M", 1)[0]
    return customer
