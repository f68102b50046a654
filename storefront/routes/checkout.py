import logging

from fastapi import APIRouter, Depends
from sqlmodel import Session

from storefront.database import get_session
from storefront.dependencies.payments import get_checkout
from storefront.errors import PermissionDenied
from storefront.models.user import User
from storefront.schemas.checkout_schemas import (
    CheckoutSessionRequest,
    PaymentFailureSchema,
    RazorpayPaymentVerifySchema,
)
from storefront.schemas.order_schemas import serialize_order
from storefront.services.cart_repository import load_account_cart
from storefront.services.checkout import CheckoutOrchestrator, CheckoutStart
from storefront.services.order_service import Failed
from storefront.services.payment_gateway import SUCCESS, CheckoutCallback, GatewayOutcome
from storefront.utils.token import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter()


def _session_response(started: CheckoutStart) -> dict:
    order = started.order
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "razorpay_order_id": started.handle.gateway_order_id,
        "razorpay_key": started.handle.key_id,
        "amount": order.total,
        "amount_minor": started.handle.amount_minor,
        "currency": started.handle.currency,
        "pricing": {
            "subtotal": order.subtotal,
            "tax": order.tax,
            "shipping": order.shipping_cost,
            "discount": order.discount,
            "total": order.total,
        },
        "checkout_options": started.options,
    }


@router.post("/session")
def create_checkout_session(
    data: CheckoutSessionRequest,
    session: Session = Depends(get_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    current_user: User = Depends(get_current_user),
):
    """Create the pending order from the account cart and open a Razorpay session for it."""
    cart = load_account_cart(session, current_user.id)
    started = checkout.start(
        current_user,
        cart,
        data.shipping_address,
        coupon_code=data.coupon_code,
        customer_notes=data.customer_notes,
        client_total=data.client_total,
    )
    return _session_response(started)


@router.post("/orders/{order_id}/session")
def retry_checkout_session(
    order_id: int,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    current_user: User = Depends(get_current_user),
):
    return _session_response(checkout.resume(order_id, current_user))


@router.post("/verify")
def verify_payment(
    payload: RazorpayPaymentVerifySchema,
    session: Session = Depends(get_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    current_user: User = Depends(get_current_user),
):
    order = checkout.orders.get_order(payload.order_id)
    if order.user_id != current_user.id:
        raise PermissionDenied("Not authorized to pay for this order")

    outcome = GatewayOutcome(
        kind=SUCCESS,
        callback=CheckoutCallback(
            gateway_order_id=payload.razorpay_order_id,
            gateway_payment_id=payload.razorpay_payment_id,
            signature=payload.razorpay_signature,
        ),
    )
    order = checkout.complete(order.id, outcome, cart=load_account_cart(session, current_user.id))

    return {
        "message": "Payment successful",
        "order": serialize_order(order),
    }


@router.post("/failure")
def report_payment_failure(
    payload: PaymentFailureSchema,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    current_user: User = Depends(get_current_user),
):
    """The widget reported a failure or the shopper closed it. The cart is left as it is."""
    order = checkout.orders.get_order(payload.order_id)
    if order.user_id != current_user.id:
        raise PermissionDenied("Not authorized to update this order")

    reason = payload.reason or (
        "Payment cancelled by user" if payload.cancelled_by_user else "Payment failed"
    )
    order = checkout.handle_outcome(
        order.id,
        Failed(reason=reason, gateway_order_id=payload.razorpay_order_id, source="client"),
    )

    return {
        "message": "Payment was not completed. Your cart has been kept so you can try again.",
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
    }
