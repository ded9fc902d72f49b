TS_FORMAT = "%Y-%m-%d %H:%M:%S"

# order / order item lifecycle
PENDING = "Pending"
SHIPPED = "Shipped"
DELIVERED = "Delivered"
CANCELLED = "Cancelled"
RETURNED = "Returned"
RETURN_REQUESTED = "Return Requested"
RETURN_REJECTED = "Return Rejected"

ORDER_STATUSES = (PENDING, SHIPPED, DELIVERED, CANCELLED, RETURNED)

# stock was given back for these
RELEASED_STATUSES = (CANCELLED, RETURNED)

# admin-driven moves; return workflow has its own entry points
ITEM_TRANSITIONS = {
    PENDING: (SHIPPED, CANCELLED),
    SHIPPED: (DELIVERED, CANCELLED),
}

PAYMENT_COD = "cod"
PAYMENT_WALLET = "wallet"
PAYMENT_ONLINE = "online"
PAYMENT_METHODS = (PAYMENT_COD, PAYMENT_WALLET, PAYMENT_ONLINE)

PAY_PENDING = "Pending"
PAY_PAID = "Paid"
PAY_FAILED = "Failed"
PAY_PARTIAL_REFUND = "Partially Refunded"
PAY_REFUNDED = "Refunded"
REFUNDABLE_PAY_STATUSES = (PAY_PAID, PAY_PARTIAL_REFUND)

OFFER_PRODUCT = "product"
OFFER_CATEGORY = "category"
OFFER_TYPES = (OFFER_PRODUCT, OFFER_CATEGORY)

COUPON_PERCENT = "percentageDiscount"
COUPON_FLAT = "flatDiscount"
COUPON_TYPES = (COUPON_PERCENT, COUPON_FLAT)

TX_CREDIT = "Credit"
TX_REFERRAL = "Referral"
TX_REFUND = "Refund"
TX_PAYMENT = "Payment"
TX_METHODS = (TX_CREDIT, TX_REFERRAL, TX_REFUND, TX_PAYMENT)

PRODUCT_AVAILABLE = "Available"
PRODUCT_OUT_OF_STOCK = "out of stock"

REPORT_FILTERS = ("daily", "weekly", "monthly", "yearly")
