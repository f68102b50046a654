"""
Legal order and payment states.

Order status and payment status are two axes that move together at a few
points (payment success confirms the order, payment failure cancels it).
Every status change in the service goes through ``validate_transition``;
nothing is ever clamped to a "nearest legal" state.
"""
from typing import Optional, Set

from storefront.constants.order_status import (
    ACTOR_TARGETS,
    ALLOWED_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    TERMINAL_STATUSES,
    Actor,
    OrderStatus,
    PaymentStatus,
)
from storefront.errors import InvalidTransition


def validate_transition(
    order,
    new_status: OrderStatus,
    actor: Actor,
    tracking_number: Optional[str] = None,
) -> None:
    current = OrderStatus(order.status)
    new_status = OrderStatus(new_status)
    actor = Actor(actor)
    context = {"from": current.value, "to": new_status.value, "actor": actor.value}

    if current == new_status:
        raise InvalidTransition(f"Order is already {current.value}", details=context)

    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Order is {current.value} and can no longer change", details=context)

    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Cannot move order from {current.value} to {new_status.value}", details=context
        )

    if new_status not in ACTOR_TARGETS[actor]:
        raise InvalidTransition(
            f"{actor.value} may not move an order to {new_status.value}", details=context
        )

    payment = PaymentStatus(order.payment_status)

    if new_status == OrderStatus.confirmed and payment != PaymentStatus.paid:
        raise InvalidTransition("Order cannot be confirmed before payment is verified", details=context)

    if new_status == OrderStatus.shipped and not (tracking_number or order.tracking_number):
        raise InvalidTransition("A tracking number is required to ship an order", details=context)

    if new_status == OrderStatus.refunded and payment != PaymentStatus.paid:
        raise InvalidTransition("Only paid orders can be refunded", details=context)


def validate_payment_transition(current: PaymentStatus, new_status: PaymentStatus) -> None:
    current = PaymentStatus(current)
    new_status = PaymentStatus(new_status)
    if new_status not in PAYMENT_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Cannot move payment from {current.value} to {new_status.value}",
            details={"from": current.value, "to": new_status.value},
        )


def can_transition(order, new_status: OrderStatus, actor: Actor, tracking_number: Optional[str] = None) -> bool:
    try:
        validate_transition(order, new_status, actor, tracking_number)
    except InvalidTransition:
        return False
    return True


def next_statuses(order, actor: Actor) -> Set[OrderStatus]:
    """Statuses the admin screen can offer for this order."""
    return {
        status
        for status in ALLOWED_TRANSITIONS[OrderStatus(order.status)]
        if can_transition(order, status, actor, tracking_number="-")
    }
