import logging
from typing import Iterable, Tuple

from sqlalchemy import update
from sqlmodel import Session

from storefront.errors import InsufficientStock
from storefront.models.order import Order
from storefront.models.product import Product
from storefront.services.order_event_service import log_order_event

logger = logging.getLogger(__name__)


def reserve_stock(session: Session, lines: Iterable[Tuple[Product, int]]):
    """
    Decrement stock for each (product, quantity) as a check-and-set.

    The UPDATE only matches while enough stock is left, so two checkouts
    racing for the last unit cannot both win. Runs inside the caller's
    transaction; the caller rolls back if this raises.
    """
    for product, quantity in lines:
        result = session.execute(
            update(Product)
            .where(Product.id == product.id)
            .where(Product.stock_quantity >= quantity)
            .values(stock_quantity=Product.stock_quantity - quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.refresh(product)
            logger.info(
                f"Stock check failed for product {product.id}: "
                f"requested {quantity}, available {product.stock_quantity}"
            )
            raise InsufficientStock(product.id, quantity, product.stock_quantity, product.name)

        logger.info(f"Reserved {quantity} x product {product.id}")


def release_stock(session: Session, order: Order, created_by: str = "system") -> bool:
    """Put an order's reserved units back. Does nothing if already released."""
    if not order.stock_reserved:
        return False

    for item in order.items:
        session.execute(
            update(Product)
            .where(Product.id == item.product_id)
            .values(stock_quantity=Product.stock_quantity + item.quantity)
            .execution_options(synchronize_session=False)
        )

    order.stock_reserved = False
    session.add(order)
    log_order_event(
        session,
        order.id,
        "stock_released",
        "Reserved stock returned to inventory",
        created_by=created_by,
        meta={"items": [{"product_id": i.product_id, "quantity": i.quantity} for i in order.items]},
    )
    logger.info(f"Released stock for order {order.order_number}")
    return True
