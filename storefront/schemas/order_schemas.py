from typing import Optional

from pydantic import BaseModel

from storefront.constants.order_status import OrderStatus


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None


class TrackingUpdate(BaseModel):
    tracking_number: str


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = None


def serialize_order(order, include_items: bool = True) -> dict:
    data = {
        "order_id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_method": order.payment_method,
        "subtotal": order.subtotal,
        "tax": order.tax,
        "shipping_cost": order.shipping_cost,
        "discount": order.discount,
        "total": order.total,
        "currency": order.currency,
        "coupon_code": order.coupon_code,
        "tracking_number": order.tracking_number,
        "shipping_address": {
            "full_name": order.shipping_full_name,
            "phone": order.shipping_phone,
            "address_line1": order.shipping_address_line1,
            "address_line2": order.shipping_address_line2,
            "city": order.shipping_city,
            "state": order.shipping_state,
            "postal_code": order.shipping_postal_code,
            "country": order.shipping_country,
        },
        "customer_notes": order.customer_notes,
        "created_at": order.created_at,
        "shipped_at": order.shipped_at,
        "delivered_at": order.delivered_at,
        "cancelled_at": order.cancelled_at,
    }
    if include_items:
        data["items"] = [
            {
                "product_id": i.product_id,
                "product_name": i.product_name,
                "sku": i.sku,
                "price": i.price,
                "quantity": i.quantity,
                "total": i.line_total,
            }
            for i in order.items
        ]
    return data
