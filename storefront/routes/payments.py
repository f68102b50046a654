import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlmodel import Session

from storefront.database import get_session
from storefront.dependencies.payments import get_checkout, raw_body
from storefront.errors import NotFound
from storefront.services.cart_repository import load_account_cart
from storefront.services.checkout import CheckoutOrchestrator
from storefront.services.order_service import Failed, Paid

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook")
def razorpay_webhook(
    body: bytes = Depends(raw_body),
    x_razorpay_signature: Optional[str] = Header(default=None),
    session: Session = Depends(get_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    """
    Razorpay server-to-server notifications.

    Any 2xx tells Razorpay to stop retrying, so unknown events and unknown
    orders are acknowledged. A bad signature is a 400.
    """
    delivery = checkout.gateway.parse_webhook(body, x_razorpay_signature or "")

    if not (delivery.is_paid or delivery.is_failed) or not delivery.gateway_order_id:
        logger.info(f"Ignoring Razorpay webhook event {delivery.event!r}")
        return {"status": "ignored"}

    try:
        order = checkout.orders.get_order_by_gateway_order_id(delivery.gateway_order_id)
    except NotFound:
        logger.warning(f"Webhook {delivery.event} for unknown Razorpay order {delivery.gateway_order_id}")
        return {"status": "ignored"}

    if delivery.is_paid:
        order = checkout.handle_outcome(
            order.id,
            Paid(delivery),
            cart=load_account_cart(session, order.user_id),
        )
    else:
        order = checkout.handle_outcome(
            order.id,
            Failed(
                reason=delivery.error_reason or "Payment failed",
                gateway_order_id=delivery.gateway_order_id,
                gateway_payment_id=delivery.gateway_payment_id,
                source="webhook",
            ),
        )

    return {
        "status": "ok",
        "order_number": order.order_number,
        "order_status": order.status,
        "payment_status": order.payment_status,
    }
