from sqlmodel import SQLModel, Field, Relationship
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from storefront.constants.order_status import OrderStatus, PaymentStatus
from storefront.models.order_item import OrderItem


class Order(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    order_number: str = Field(index=True, unique=True)
    user_id: int = Field(foreign_key="user.id", index=True)

    # shipping address snapshot
    shipping_full_name: str
    shipping_phone: str
    shipping_address_line1: str
    shipping_address_line2: Optional[str] = None
    shipping_city: str
    shipping_state: str
    shipping_postal_code: str
    shipping_country: str = Field(default="IN")

    subtotal: Decimal = Field(max_digits=12, decimal_places=2)
    tax: Decimal = Field(max_digits=12, decimal_places=2)
    shipping_cost: Decimal = Field(max_digits=12, decimal_places=2)
    discount: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    total: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = Field(default="INR")
    coupon_code: Optional[str] = None

    status: OrderStatus = Field(default=OrderStatus.pending, index=True)
    payment_status: PaymentStatus = Field(default=PaymentStatus.pending, index=True)
    payment_method: str = Field(default="razorpay")

    gateway_order_id: Optional[str] = Field(default=None, index=True)
    gateway_payment_id: Optional[str] = Field(default=None, index=True)
    tracking_number: Optional[str] = None
    customer_notes: Optional[str] = None

    # True while this order holds decremented stock
    stock_reserved: bool = Field(default=False)

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    items: List["OrderItem"] = Relationship(back_populates="order")
