# -------- ADMIN ORDERS --------
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from storefront.config import settings
from storefront.constants.order_status import Actor, OrderStatus, PaymentStatus
from storefront.database import get_session
from storefront.dependencies.admin import require_admin
from storefront.dependencies.payments import get_checkout, get_gateway, get_pricing_policy
from storefront.models.user import User
from storefront.schemas.order_schemas import (
    CancelOrderRequest,
    OrderStatusUpdate,
    TrackingUpdate,
    serialize_order,
)
from storefront.services.checkout import CheckoutOrchestrator
from storefront.services.order_event_service import get_order_timeline
from storefront.services.order_state_machine import next_statuses
from storefront.services.payment_gateway import PaymentGatewayAdapter
from storefront.services.pricing import PricingPolicy
from storefront.services.reconciliation import reconcile_pending_orders
from storefront.services.refund_service import process_pending_refunds

router = APIRouter()


@router.get("")
def list_orders(
    page: int = 1,
    limit: int = 20,
    search: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    _: User = Depends(require_admin),
):
    page_data = checkout.orders.list_orders(
        status=status,
        payment_status=payment_status,
        search=search,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    page_data["results"] = [
        {
            "order_id": o.id,
            "order_number": o.order_number,
            "customer_name": o.shipping_full_name,
            "date": o.created_at.date(),
            "total_amount": o.total,
            "status": o.status,
            "payment_status": o.payment_status,
        }
        for o in page_data["results"]
    ]
    return page_data


@router.get("/stats")
def order_stats(
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    _: User = Depends(require_admin),
):
    return checkout.orders.order_stats()


@router.get("/{order_id}")
def order_details(
    order_id: int,
    session: Session = Depends(get_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    _: User = Depends(require_admin),
):
    order = checkout.orders.get_order(order_id)
    return {
        **serialize_order(order),
        "user_id": order.user_id,
        "gateway_order_id": order.gateway_order_id,
        "gateway_payment_id": order.gateway_payment_id,
        "next_statuses": sorted(s.value for s in next_statuses(order, Actor.admin)),
        "timeline": [
            {
                "event": e.event_type,
                "label": e.label,
                "by": e.created_by,
                "meta": e.meta,
                "at": e.created_at,
            }
            for e in get_order_timeline(session, order.id)
        ],
    }


@router.patch("/{order_id}/status")
def update_order_status(
    order_id: int,
    data: OrderStatusUpdate,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    admin: User = Depends(require_admin),
):
    order = checkout.orders.update_order_status(
        order_id,
        data.status,
        Actor.admin,
        tracking_number=data.tracking_number,
        changed_by=f"admin:{admin.id}",
    )
    return {
        "message": "Order status updated",
        "order_id": order.id,
        "status": order.status,
        "payment_status": order.payment_status,
        "tracking_number": order.tracking_number,
    }


@router.post("/{order_id}/tracking")
def add_tracking(
    order_id: int,
    data: TrackingUpdate,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    admin: User = Depends(require_admin),
):
    order = checkout.orders.add_tracking_number(order_id, data.tracking_number, changed_by=f"admin:{admin.id}")
    return {
        "message": "Tracking number added",
        "order_id": order.id,
        "tracking_number": order.tracking_number,
    }


@router.post("/{order_id}/cancel")
def admin_cancel_order(
    order_id: int,
    data: CancelOrderRequest,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    admin: User = Depends(require_admin),
):
    order = checkout.orders.cancel_order(
        order_id,
        Actor.admin,
        reason=data.reason,
        changed_by=f"admin:{admin.id}",
    )
    return {
        "message": "Order cancelled",
        "order_id": order.id,
        "status": order.status,
        "payment_status": order.payment_status,
    }


@router.post("/reconcile")
def run_reconciliation(
    session: Session = Depends(get_session),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    policy: PricingPolicy = Depends(get_pricing_policy),
    _: User = Depends(require_admin),
):
    return reconcile_pending_orders(
        session,
        gateway,
        policy,
        min_age_minutes=settings.reconcile_min_age_minutes,
        expiry_minutes=settings.payment_expiry_minutes,
    )


@router.post("/refunds/process")
def run_refunds(
    session: Session = Depends(get_session),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    _: User = Depends(require_admin),
):
    return process_pending_refunds(session, gateway)
