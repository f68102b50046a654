import logging
from typing import List, Optional

from sqlmodel import Session, select

from storefront.models.order_event import OrderEvent

logger = logging.getLogger(__name__)


def log_order_event(
    session: Session,
    order_id: int,
    event_type: str,
    label: str,
    created_by: str = "system",
    meta: Optional[dict] = None,
) -> OrderEvent:
    """
    Add a timeline entry to the caller's session.

    Nothing is committed here; the event lands in the same transaction as
    the order change it describes, or not at all.
    """
    event = OrderEvent(
        order_id=order_id,
        event_type=event_type,
        label=label,
        meta=meta,
        created_by=created_by,
    )
    session.add(event)
    logger.debug(f"Order {order_id} event {event_type} by {created_by}")
    return event


def get_order_timeline(session: Session, order_id: int) -> List[OrderEvent]:
    return session.exec(
        select(OrderEvent)
        .where(OrderEvent.order_id == order_id)
        .order_by(OrderEvent.created_at, OrderEvent.id)
    ).all()
