from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from storefront.config import settings
from storefront.db.sqlite import init_db
from storefront.services import cart as cart_svc
from storefront.services import catalog, coupons, orders, pricing, reports, users, wallet
from storefront.services.invoice_pdf import generate_invoice_pdf

app = FastAPI(title="Storefront API")


@app.on_event("startup")
def _startup() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    init_db()


def _ok(result) -> Any:
    """Unwraps an (ok, value) service result, mapping failures to HTTP errors."""
    ok, value = result
    if ok:
        return value
    msg = str(value)
    status = 404 if "not found" in msg.lower() else 400
    raise HTTPException(status_code=status, detail=msg)


def get_current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    token = authorization.replace("Bearer ", "").strip()
    user_id = users.decode_token(token)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    user = users.get_user(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid token user")
    if user["is_blocked"]:
        raise HTTPException(status_code=403, detail="User is blocked")
    return user


def require_admin(user=Depends(get_current_user)) -> Dict[str, Any]:
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin only")
    return user


# ---------------- request models ----------------

class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str
    phone: Optional[str] = None
    referral_code: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class PasswordRequest(BaseModel):
    old_password: str
    new_password: str


class AddressRequest(BaseModel):
    name: str
    city: str
    landmark: str
    state: str
    pincode: str
    phone: str


class ReviewRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str


class CartAddRequest(BaseModel):
    product_id: int
    size: str = "M"
    qty: int = 1


class CartUpdateRequest(BaseModel):
    action: str


class CouponCheckRequest(BaseModel):
    code: str


class PlaceOrderRequest(BaseModel):
    address_id: int
    payment_method: str
    coupon_code: Optional[str] = None


class ReturnRequest(BaseModel):
    reason: str


class CategoryRequest(BaseModel):
    name: str


class CategoryUpdateRequest(BaseModel):
    name: Optional[str] = None
    is_active: Optional[bool] = None


class ProductRequest(BaseModel):
    name: str
    description: str = ""
    category_id: int
    price: float
    stock: Dict[str, int] = {}


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category_id: Optional[int] = None
    price: Optional[float] = None
    stock: Optional[Dict[str, int]] = None


class StockRequest(BaseModel):
    size: str
    qty: int


class BlockRequest(BaseModel):
    blocked: bool


class OfferRequest(BaseModel):
    name: str
    discount: float
    offer_type: str
    target_ids: List[int]
    start_at: str
    end_at: str


class CouponRequest(BaseModel):
    code: str
    type: str
    discount: float
    min_purchase: float = 0
    expiry: str
    max_discount: Optional[float] = None
    usage_limit: int = 100
    description: str = ""


class StatusRequest(BaseModel):
    status: str


class ReturnDecisionRequest(BaseModel):
    approve: bool
    notes: str = ""


class WalletCreditRequest(BaseModel):
    amount: float = Field(gt=0)
    description: str = ""


# ---------------- auth / profile ----------------

@app.post("/api/auth/register")
def register(req: RegisterRequest):
    user = _ok(users.register_user(req.name, req.email, req.password, req.phone, req.referral_code))
    return {"user": user, "token": users.create_token(user)}


@app.post("/api/auth/login")
def login(req: LoginRequest):
    ok, res = users.authenticate(req.email, req.password)
    if not ok:
        raise HTTPException(status_code=401, detail=res)
    return {"user": res, "token": users.create_token(res)}


@app.get("/api/me")
def me(user=Depends(get_current_user)):
    return user


@app.post("/api/me/password")
def me_password(req: PasswordRequest, user=Depends(get_current_user)):
    _ok(users.change_password(user["id"], req.old_password, req.new_password))
    return {"ok": True}


@app.get("/api/addresses")
def addresses(user=Depends(get_current_user)):
    return users.list_addresses(user["id"])


@app.post("/api/addresses")
def address_add(req: AddressRequest, user=Depends(get_current_user)):
    return {"id": _ok(users.add_address(user["id"], req.model_dump()))}


@app.put("/api/addresses/{address_id}")
def address_update(address_id: int, req: AddressRequest, user=Depends(get_current_user)):
    _ok(users.update_address(user["id"], address_id, req.model_dump()))
    return {"ok": True}


@app.delete("/api/addresses/{address_id}")
def address_delete(address_id: int, user=Depends(get_current_user)):
    _ok(users.delete_address(user["id"], address_id))
    return {"ok": True}


@app.post("/api/addresses/{address_id}/default")
def address_default(address_id: int, user=Depends(get_current_user)):
    _ok(users.set_default_address(user["id"], address_id))
    return {"ok": True}


# ---------------- catalog (public) ----------------

@app.get("/api/categories")
def categories():
    return catalog.list_categories(active_only=True)


@app.get("/api/products")
def products(
    search: Optional[str] = None,
    category_id: Optional[int] = None,
    sort: str = "newest",
    page: int = 1,
    per_page: int = 12,
):
    return catalog.list_products(search, category_id, sort, page, per_page)


@app.get("/api/products/{product_id}")
def product_detail(product_id: int):
    p = catalog.get_product(product_id)
    if not p or not p["sellable"]:
        raise HTTPException(status_code=404, detail="Product not found")
    p["reviews"] = catalog.list_reviews(product_id)
    return p


@app.post("/api/products/{product_id}/reviews")
def product_review(product_id: int, req: ReviewRequest, user=Depends(get_current_user)):
    return {"id": _ok(catalog.add_review(product_id, user["name"], req.rating, req.comment))}


@app.get("/api/wishlist")
def wishlist(user=Depends(get_current_user)):
    return catalog.wishlist_list(user["id"])


@app.post("/api/wishlist/{product_id}")
def wishlist_add(product_id: int, user=Depends(get_current_user)):
    _ok(catalog.wishlist_add(user["id"], product_id))
    return {"ok": True}


@app.delete("/api/wishlist/{product_id}")
def wishlist_remove(product_id: int, user=Depends(get_current_user)):
    _ok(catalog.wishlist_remove(user["id"], product_id))
    return {"ok": True}


# ---------------- cart / checkout ----------------

@app.get("/api/cart")
def cart(user=Depends(get_current_user)):
    return cart_svc.cart_show(user["id"])


@app.post("/api/cart")
def cart_add(req: CartAddRequest, user=Depends(get_current_user)):
    return _ok(cart_svc.cart_add(user["id"], req.product_id, req.size, req.qty))


@app.patch("/api/cart/{item_id}")
def cart_update(item_id: int, req: CartUpdateRequest, user=Depends(get_current_user)):
    return _ok(cart_svc.cart_update(user["id"], item_id, req.action))


@app.delete("/api/cart/{item_id}")
def cart_remove(item_id: int, user=Depends(get_current_user)):
    return _ok(cart_svc.cart_remove(user["id"], item_id))


@app.get("/api/cart/stock")
def cart_stock(user=Depends(get_current_user)):
    problems = orders.check_stock(user["id"])
    return {"ok": not problems, "problems": problems}


@app.get("/api/coupons")
def coupons_available(user=Depends(get_current_user)):
    return coupons.available_coupons(cart_svc.cart_show(user["id"])["total"])


@app.post("/api/coupons/check")
def coupon_check(req: CouponCheckRequest, user=Depends(get_current_user)):
    subtotal = cart_svc.cart_show(user["id"])["total"]
    coupon = _ok(coupons.validate_coupon(req.code, subtotal))
    discount = coupons.coupon_discount(coupon, subtotal)
    return {
        "code": coupon["code"],
        "discount": discount,
        "total": round(subtotal + settings.shipping_charge - discount, 2),
    }


@app.post("/api/orders")
def place_order(req: PlaceOrderRequest, user=Depends(get_current_user)):
    return _ok(orders.place_order(user["id"], req.address_id, req.payment_method, req.coupon_code))


@app.get("/api/orders")
def my_orders(page: int = 1, per_page: int = 10, user=Depends(get_current_user)):
    return orders.list_orders(user_id=user["id"], page=page, per_page=per_page)


@app.get("/api/orders/{order_id}")
def my_order(order_id: int, user=Depends(get_current_user)):
    order = orders.get_order(order_id, user["id"])
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.post("/api/orders/{order_id}/cancel")
def order_cancel(order_id: int, user=Depends(get_current_user)):
    return _ok(orders.cancel_order(user["id"], order_id))


@app.post("/api/orders/{order_id}/items/{item_id}/cancel")
def order_item_cancel(order_id: int, item_id: int, user=Depends(get_current_user)):
    return _ok(orders.cancel_item(user["id"], order_id, item_id))


@app.get("/api/orders/{order_id}/items/{item_id}/return")
def order_item_return_preview(order_id: int, item_id: int, user=Depends(get_current_user)):
    return _ok(orders.preview_return_refund(order_id, item_id, user["id"]))


@app.post("/api/orders/{order_id}/items/{item_id}/return")
def order_item_return(order_id: int, item_id: int, req: ReturnRequest, user=Depends(get_current_user)):
    return _ok(orders.request_return(user["id"], order_id, item_id, req.reason))


@app.get("/api/orders/{order_id}/invoice")
def order_invoice(order_id: int, user=Depends(get_current_user)):
    path = generate_invoice_pdf(order_id, user["id"])
    if not path:
        raise HTTPException(status_code=404, detail="Order not found")
    return FileResponse(path, filename=path.rsplit("/", 1)[-1], media_type="application/pdf")


@app.get("/api/wallet")
def my_wallet(user=Depends(get_current_user)):
    return wallet.get_wallet(user["id"])


# ---------------- admin ----------------

@app.post("/api/admin/categories")
def admin_category_add(req: CategoryRequest, admin=Depends(require_admin)):
    return {"id": _ok(catalog.add_category(req.name))}


@app.get("/api/admin/categories")
def admin_categories(admin=Depends(require_admin)):
    return catalog.list_categories()


@app.patch("/api/admin/categories/{category_id}")
def admin_category_update(category_id: int, req: CategoryUpdateRequest, admin=Depends(require_admin)):
    if req.name is not None:
        _ok(catalog.rename_category(category_id, req.name))
    if req.is_active is not None:
        _ok(catalog.set_category_active(category_id, req.is_active))
    return {"ok": True}


@app.get("/api/admin/products")
def admin_products(search: Optional[str] = None, page: int = 1, admin=Depends(require_admin)):
    return catalog.list_products(search, page=page, include_hidden=True)


@app.post("/api/admin/products")
def admin_product_add(req: ProductRequest, admin=Depends(require_admin)):
    return {"id": _ok(catalog.add_product(req.name, req.description, req.category_id, req.price, req.stock))}


@app.put("/api/admin/products/{product_id}")
def admin_product_update(product_id: int, req: ProductUpdateRequest, admin=Depends(require_admin)):
    _ok(catalog.update_product(product_id, req.name, req.description, req.category_id, req.price, req.stock))
    return {"ok": True}


@app.post("/api/admin/products/{product_id}/block")
def admin_product_block(product_id: int, req: BlockRequest, admin=Depends(require_admin)):
    _ok(catalog.set_product_blocked(product_id, req.blocked))
    return {"ok": True}


@app.put("/api/admin/products/{product_id}/stock")
def admin_stock(product_id: int, req: StockRequest, admin=Depends(require_admin)):
    _ok(catalog.set_stock(product_id, req.size, req.qty))
    return catalog.get_stock(product_id)


@app.get("/api/admin/low-stock")
def admin_low_stock(threshold: Optional[int] = None, admin=Depends(require_admin)):
    return catalog.low_stock(threshold if threshold is not None else settings.low_stock_threshold)


@app.get("/api/admin/offers")
def admin_offers(search: Optional[str] = None, admin=Depends(require_admin)):
    return pricing.list_offers(search)


@app.post("/api/admin/offers")
def admin_offer_add(req: OfferRequest, admin=Depends(require_admin)):
    return {"id": _ok(pricing.create_offer(
        req.name, req.discount, req.offer_type, req.target_ids, req.start_at, req.end_at
    ))}


@app.put("/api/admin/offers/{offer_id}")
def admin_offer_update(offer_id: int, req: OfferRequest, admin=Depends(require_admin)):
    _ok(pricing.update_offer(
        offer_id, req.name, req.discount, req.offer_type, req.target_ids, req.start_at, req.end_at
    ))
    return {"ok": True}


@app.post("/api/admin/offers/{offer_id}/toggle")
def admin_offer_toggle(offer_id: int, admin=Depends(require_admin)):
    return {"is_active": _ok(pricing.toggle_offer(offer_id))}


@app.get("/api/admin/coupons")
def admin_coupons(admin=Depends(require_admin)):
    return coupons.list_coupons()


@app.post("/api/admin/coupons")
def admin_coupon_add(req: CouponRequest, admin=Depends(require_admin)):
    return {"id": _ok(coupons.create_coupon(
        req.code, req.type, req.discount, req.min_purchase, req.expiry,
        req.max_discount, req.usage_limit, req.description,
    ))}


@app.put("/api/admin/coupons/{coupon_id}")
def admin_coupon_update(coupon_id: int, req: CouponRequest, admin=Depends(require_admin)):
    _ok(coupons.update_coupon(
        coupon_id, req.type, req.discount, req.min_purchase, req.expiry,
        req.max_discount, req.usage_limit, req.description,
    ))
    return {"ok": True}


@app.post("/api/admin/coupons/{coupon_id}/toggle")
def admin_coupon_toggle(coupon_id: int, admin=Depends(require_admin)):
    return {"is_active": _ok(coupons.toggle_coupon(coupon_id))}


@app.get("/api/admin/users")
def admin_users(search: Optional[str] = None, admin=Depends(require_admin)):
    return users.list_users(search)


@app.post("/api/admin/users/{user_id}/block")
def admin_user_block(user_id: int, req: BlockRequest, admin=Depends(require_admin)):
    _ok(users.set_user_blocked(user_id, req.blocked))
    return {"ok": True}


@app.post("/api/admin/users/{user_id}/wallet")
def admin_wallet_credit(user_id: int, req: WalletCreditRequest, admin=Depends(require_admin)):
    if not users.get_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    wallet.wallet_credit(user_id, req.amount, description=req.description)
    return wallet.get_wallet(user_id)


@app.get("/api/admin/orders")
def admin_orders(
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    per_page: int = 10,
    admin=Depends(require_admin),
):
    return orders.list_orders(status=status, search=search, page=page, per_page=per_page)


@app.get("/api/admin/orders/{order_id}")
def admin_order(order_id: int, admin=Depends(require_admin)):
    order = orders.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@app.post("/api/admin/orders/{order_id}/payment")
def admin_payment_confirm(order_id: int, admin=Depends(require_admin)):
    return {"paid_amount": _ok(orders.confirm_payment(order_id))}


@app.post("/api/admin/orders/{order_id}/payment/fail")
def admin_payment_fail(order_id: int, admin=Depends(require_admin)):
    return _ok(orders.fail_payment(order_id))


@app.post("/api/admin/orders/{order_id}/status")
def admin_order_status(order_id: int, req: StatusRequest, admin=Depends(require_admin)):
    return _ok(orders.update_order_status(order_id, req.status))


@app.post("/api/admin/orders/{order_id}/items/{item_id}/status")
def admin_item_status(order_id: int, item_id: int, req: StatusRequest, admin=Depends(require_admin)):
    return _ok(orders.update_item_status(order_id, item_id, req.status))


@app.get("/api/admin/returns")
def admin_returns(admin=Depends(require_admin)):
    return orders.list_return_requests()


@app.post("/api/admin/orders/{order_id}/items/{item_id}/return")
def admin_return_decide(order_id: int, item_id: int, req: ReturnDecisionRequest, admin=Depends(require_admin)):
    return _ok(orders.decide_return(order_id, item_id, req.approve, req.notes))


@app.get("/api/admin/dashboard")
def admin_dashboard(
    filter: str = "daily",
    start: Optional[str] = None,
    end: Optional[str] = None,
    admin=Depends(require_admin),
):
    try:
        return reports.dashboard(filter, start=start, end=end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.web_host, port=settings.web_port)
