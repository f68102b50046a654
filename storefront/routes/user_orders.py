from fastapi import APIRouter, Depends
from sqlmodel import Session

from storefront.constants.order_status import Actor
from storefront.database import get_session
from storefront.dependencies.payments import get_checkout
from storefront.models.user import User
from storefront.schemas.order_schemas import CancelOrderRequest, serialize_order
from storefront.services.checkout import CheckoutOrchestrator
from storefront.services.order_event_service import get_order_timeline
from storefront.utils.token import get_current_user

router = APIRouter()


# My Orders

@router.get("")
def list_my_orders(
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    current_user: User = Depends(get_current_user),
):
    orders = checkout.orders.get_user_orders(current_user.id)
    return {
        "total": len(orders),
        "orders": [serialize_order(o, include_items=False) for o in orders],
    }


@router.get("/{order_number}")
def get_my_order(
    order_number: str,
    session: Session = Depends(get_session),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    current_user: User = Depends(get_current_user),
):
    order = checkout.orders.get_order_by_number(order_number, user_id=current_user.id)
    return {
        **serialize_order(order),
        "timeline": [
            {"event": e.event_type, "label": e.label, "at": e.created_at}
            for e in get_order_timeline(session, order.id)
        ],
    }


@router.post("/{order_number}/cancel")
def cancel_my_order(
    order_number: str,
    data: CancelOrderRequest,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    current_user: User = Depends(get_current_user),
):
    order = checkout.orders.get_order_by_number(order_number, user_id=current_user.id)
    order = checkout.orders.cancel_order(
        order.id,
        Actor.customer,
        user_id=current_user.id,
        reason=data.reason,
    )
    return {
        "message": "Order cancelled",
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
    }
