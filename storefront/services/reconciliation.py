import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlmodel import Session, select

from storefront.constants.order_status import OrderStatus, PaymentStatus
from storefront.errors import DomainError
from storefront.models.order import Order
from storefront.models.payment import PaymentAttempt
from storefront.services.cart_repository import load_account_cart
from storefront.services.checkout import CheckoutOrchestrator
from storefront.services.order_service import Failed, Paid
from storefront.services.payment_gateway import GatewayRecord, PaymentGatewayAdapter
from storefront.services.pricing import PricingPolicy

logger = logging.getLogger(__name__)

IN_FLIGHT_STATUSES = {"created", "authorized"}


def reconcile_pending_orders(
    session: Session,
    gateway: PaymentGatewayAdapter,
    policy: Optional[PricingPolicy] = None,
    min_age_minutes: int = 5,
    expiry_minutes: int = 30,
    now: Optional[datetime] = None,
) -> dict:
    """
    Settle pending orders whose outcome never reached us.

    For each pending order old enough, ask Razorpay about every session we
    opened. A captured payment confirms the order through the normal
    checkout path. Orders past ``expiry_minutes`` with nothing captured or
    in flight are cancelled and their stock released.
    """
    now = now or datetime.utcnow()
    checkout = CheckoutOrchestrator(session, gateway, policy or PricingPolicy())
    summary = {"checked": 0, "confirmed": 0, "expired": 0, "errors": 0}

    orders = session.exec(
        select(Order)
        .where(Order.status == OrderStatus.pending)
        .where(Order.payment_status == PaymentStatus.pending)
        .where(Order.created_at < now - timedelta(minutes=min_age_minutes))
        .order_by(Order.created_at)
    ).all()

    for order in orders:
        summary["checked"] += 1
        try:
            result = _reconcile_order(session, checkout, gateway, order, now, expiry_minutes)
        except DomainError as e:
            session.rollback()
            summary["errors"] += 1
            logger.warning(f"Reconciliation skipped order {order.order_number}: {e.detail}")
            continue
        if result:
            summary[result] += 1

    logger.info(f"Reconciliation run: {summary}")
    return summary


def _reconcile_order(session, checkout, gateway, order, now, expiry_minutes) -> Optional[str]:
    attempts = session.exec(
        select(PaymentAttempt)
        .where(PaymentAttempt.order_id == order.id)
        .order_by(PaymentAttempt.created_at)
    ).all()

    in_flight = False
    for attempt in attempts:
        for payment in gateway.fetch_order_payments(attempt.gateway_order_id):
            status = payment.get("status")
            if status == "captured":
                logger.info(
                    f"Found captured payment {payment['id']} for pending order {order.order_number}"
                )
                order = checkout.handle_outcome(
                    order.id,
                    Paid(GatewayRecord(attempt.gateway_order_id, payment["id"])),
                    cart=load_account_cart(session, order.user_id),
                )
                if order.payment_status == PaymentStatus.paid:
                    return "confirmed"
                # a capture that could not pay the order (wrong amount) is already queued for refund
                continue
            if status in IN_FLIGHT_STATUSES:
                in_flight = True

    if in_flight or order.created_at > now - timedelta(minutes=expiry_minutes):
        return None

    checkout.handle_outcome(order.id, Failed(reason="Payment session expired", source="reconcile"))
    logger.info(f"Expired unpaid order {order.order_number}")
    return "expired"
