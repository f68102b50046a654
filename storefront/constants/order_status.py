from enum import Enum


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"
    refunded = "refunded"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"
    refunded = "refunded"


class Actor(str, Enum):
    customer = "customer"
    admin = "admin"
    system = "system"


ALLOWED_TRANSITIONS = {
    OrderStatus.pending: {OrderStatus.confirmed, OrderStatus.cancelled},
    OrderStatus.confirmed: {OrderStatus.processing, OrderStatus.cancelled, OrderStatus.refunded},
    OrderStatus.processing: {OrderStatus.shipped, OrderStatus.refunded},
    OrderStatus.shipped: {OrderStatus.delivered, OrderStatus.refunded},
    OrderStatus.delivered: set(),
    OrderStatus.cancelled: set(),
    OrderStatus.refunded: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.pending: {PaymentStatus.paid, PaymentStatus.failed},
    PaymentStatus.paid: {PaymentStatus.refunded},
    PaymentStatus.failed: set(),
    PaymentStatus.refunded: set(),
}

# Target statuses each actor may request
ACTOR_TARGETS = {
    Actor.customer: {OrderStatus.cancelled},
    Actor.admin: {
        OrderStatus.processing,
        OrderStatus.shipped,
        OrderStatus.delivered,
        OrderStatus.cancelled,
        OrderStatus.refunded,
    },
    # confirmation only ever happens through a verified payment
    Actor.system: {OrderStatus.confirmed, OrderStatus.cancelled},
}

TERMINAL_STATUSES = {OrderStatus.delivered, OrderStatus.cancelled, OrderStatus.refunded}

# Customers may only cancel early
CUSTOMER_CANCELLABLE = {OrderStatus.pending, OrderStatus.confirmed}

# Goods have not left the warehouse yet, so stock goes back on refund/cancel
STOCK_RETURNABLE = {OrderStatus.pending, OrderStatus.confirmed, OrderStatus.processing}
