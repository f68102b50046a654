import logging
from datetime import datetime
from typing import List

from sqlmodel import Session, select

from storefront.constants.order_status import PaymentStatus
from storefront.errors import GatewayUnavailable
from storefront.models.order import Order
from storefront.models.refund import RefundRequest
from storefront.services.order_event_service import log_order_event
from storefront.services.order_state_machine import validate_payment_transition
from storefront.services.payment_gateway import PaymentGatewayAdapter

logger = logging.getLogger(__name__)

MAX_REFUND_ATTEMPTS = 5


def pending_refunds(session: Session, limit: int = 50) -> List[RefundRequest]:
    return session.exec(
        select(RefundRequest)
        .where(RefundRequest.status == "pending")
        .order_by(RefundRequest.created_at)
        .limit(limit)
    ).all()


def process_refund(session: Session, gateway: PaymentGatewayAdapter, refund: RefundRequest) -> RefundRequest:
    """
    Send one queued refund to Razorpay.

    A transient gateway error leaves the refund pending for the next run
    until MAX_REFUND_ATTEMPTS, after which it is marked failed for manual
    follow-up.
    """
    refund.attempts += 1

    try:
        result = gateway.refund(refund.gateway_payment_id, refund.amount)
    except GatewayUnavailable as e:
        refund.last_error = e.message
        if refund.attempts >= MAX_REFUND_ATTEMPTS:
            refund.status = "failed"
            logger.error(
                f"Refund {refund.id} for payment {refund.gateway_payment_id} failed "
                f"after {refund.attempts} attempts: {e.message}"
            )
            log_order_event(session, refund.order_id, "refund_failed",
                            "Refund could not be processed; manual follow-up needed",
                            meta={"gateway_payment_id": refund.gateway_payment_id})
        else:
            logger.warning(f"Refund {refund.id} attempt {refund.attempts} failed: {e.message}")
        session.add(refund)
        session.commit()
        session.refresh(refund)
        return refund

    refund.status = "processed"
    refund.gateway_refund_id = result.get("id")
    refund.processed_at = datetime.utcnow()
    refund.last_error = None
    session.add(refund)

    order = session.get(Order, refund.order_id)
    if order and order.gateway_payment_id == refund.gateway_payment_id \
            and order.payment_status == PaymentStatus.paid:
        # duplicate/late captures are refunded without touching the order's own payment
        validate_payment_transition(order.payment_status, PaymentStatus.refunded)
        order.payment_status = PaymentStatus.refunded
        order.updated_at = datetime.utcnow()
        session.add(order)

    log_order_event(
        session,
        refund.order_id,
        "refund_processed",
        f"Refund of {refund.amount} processed",
        meta={"gateway_payment_id": refund.gateway_payment_id, "gateway_refund_id": refund.gateway_refund_id},
    )
    session.commit()
    session.refresh(refund)
    logger.info(f"Refund {refund.gateway_refund_id} processed for payment {refund.gateway_payment_id}")
    return refund


def process_pending_refunds(session: Session, gateway: PaymentGatewayAdapter, limit: int = 50) -> dict:
    summary = {"processed": 0, "retrying": 0, "failed": 0}

    for refund in pending_refunds(session, limit):
        refund = process_refund(session, gateway, refund)
        if refund.status == "processed":
            summary["processed"] += 1
        elif refund.status == "failed":
            summary["failed"] += 1
        else:
            summary["retrying"] += 1

    if any(summary.values()):
        logger.info(f"Refund run: {summary}")
    return summary
