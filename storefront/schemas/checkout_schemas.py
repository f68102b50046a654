# storefront/schemas/checkout_schemas.py
from pydantic import BaseModel
from typing import Optional

REQUIRED_ADDRESS_FIELDS = (
    "full_name",
    "phone",
    "address_line1",
    "city",
    "state",
    "postal_code",
)


class ShippingAddress(BaseModel):
    # all optional so a missing field reports InvalidAddress instead of a 422
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = "IN"


class QuoteRequest(BaseModel):
    coupon_code: Optional[str] = None


class CheckoutSessionRequest(BaseModel):
    shipping_address: ShippingAddress
    coupon_code: Optional[str] = None
    customer_notes: Optional[str] = None
    # what the client showed the shopper; compared, never trusted
    client_total: Optional[float] = None


class RazorpayPaymentVerifySchema(BaseModel):
    order_id: int
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class PaymentFailureSchema(BaseModel):
    order_id: int
    razorpay_order_id: Optional[str] = None
    reason: Optional[str] = None
    cancelled_by_user: bool = False
