import logging
import secrets
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, NamedTuple, Optional, Union

from sqlalchemy import String, cast, func, or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from storefront.constants.order_status import (
    CUSTOMER_CANCELLABLE,
    STOCK_RETURNABLE,
    Actor,
    OrderStatus,
    PaymentStatus,
)
from storefront.errors import (
    EmptyCart,
    InsufficientStock,
    InvalidAddress,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    SignatureInvalid,
    ValidationError,
)
from storefront.models.order import Order
from storefront.models.order_item import OrderItem
from storefront.models.payment import PaymentAttempt
from storefront.models.refund import RefundRequest
from storefront.schemas.checkout_schemas import REQUIRED_ADDRESS_FIELDS, ShippingAddress
from storefront.services.catalog import get_coupon, get_product
from storefront.services.inventory_service import release_stock, reserve_stock
from storefront.services.order_event_service import log_order_event
from storefront.services.order_state_machine import (
    validate_payment_transition,
    validate_transition,
)
from storefront.services.payment_gateway import (
    CheckoutCallback,
    GatewayRecord,
    PaymentGatewayAdapter,
    PaymentProof,
    SessionHandle,
    WebhookDelivery,
    to_minor_units,
)
from storefront.services.pricing import PricingBreakdown, PricingPolicy, compute_totals
from storefront.utils.pagination import paginate

logger = logging.getLogger(__name__)

SETTLED_ATTEMPTS = {"paid", "duplicate", "late", "mismatch"}


@dataclass(frozen=True)
class Paid:
    proof: PaymentProof

    @property
    def gateway_order_id(self) -> str:
        return self.proof.gateway_order_id

    @property
    def gateway_payment_id(self) -> str:
        return self.proof.gateway_payment_id

    @property
    def source(self) -> str:
        if isinstance(self.proof, WebhookDelivery):
            return "webhook"
        if isinstance(self.proof, GatewayRecord):
            return "reconcile"
        return "client"


@dataclass(frozen=True)
class Failed:
    reason: str
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    source: str = "client"


PaymentOutcome = Union[Paid, Failed]


class _PricedLine(NamedTuple):
    product_id: int
    unit_price: Decimal
    quantity: int


def generate_order_number() -> str:
    """Customer-facing id: date prefix plus random hex, never a row id."""
    return f"OT{datetime.utcnow():%y%m%d}{secrets.token_hex(4).upper()}"


def validate_address(address: Union[ShippingAddress, dict, None]) -> ShippingAddress:
    if address is None:
        raise InvalidAddress(list(REQUIRED_ADDRESS_FIELDS))
    if isinstance(address, dict):
        address = ShippingAddress(**address)

    missing = [
        name for name in REQUIRED_ADDRESS_FIELDS
        if not (getattr(address, name) or "").strip()
    ]
    if missing:
        raise InvalidAddress(missing)
    return address


class OrderService:
    def __init__(self, session: Session, gateway: PaymentGatewayAdapter, policy: PricingPolicy):
        self.session = session
        self.gateway = gateway
        self.policy = policy

    # -------------------------
    # QUERIES
    # -------------------------
    def get_order(self, order_id: int, for_update: bool = False) -> Order:
        query = select(Order).where(Order.id == order_id)
        if for_update:
            # re-read the locked row; the identity map may hold an older copy
            query = query.with_for_update().execution_options(populate_existing=True)
        order = self.session.exec(query).first()
        if not order:
            raise NotFound("Order", order_id)
        return order

    def get_order_by_number(self, order_number: str, user_id: Optional[int] = None) -> Order:
        query = select(Order).where(Order.order_number == order_number)
        if user_id is not None:
            query = query.where(Order.user_id == user_id)
        order = self.session.exec(query).first()
        if not order:
            raise NotFound("Order", order_number)
        return order

    def get_user_orders(self, user_id: int) -> List[Order]:
        return self.session.exec(
            select(Order)
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc())
        ).all()

    def get_order_by_gateway_order_id(self, gateway_order_id: str) -> Order:
        attempt = self.session.exec(
            select(PaymentAttempt).where(PaymentAttempt.gateway_order_id == gateway_order_id)
        ).first()
        if not attempt:
            raise NotFound("Payment session", gateway_order_id)
        return self.get_order(attempt.order_id)

    def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        payment_status: Optional[PaymentStatus] = None,
        search: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        query = select(Order)

        if status:
            query = query.where(Order.status == status)
        if payment_status:
            query = query.where(Order.payment_status == payment_status)
        if search:
            like = f"%{search}%"
            query = query.where(or_(
                Order.order_number.ilike(like),
                Order.shipping_full_name.ilike(like),
                cast(Order.id, String).ilike(like),
            ))
        if start_date:
            query = query.where(Order.created_at >= datetime.combine(start_date, datetime.min.time()))
        if end_date:
            query = query.where(Order.created_at < datetime.combine(end_date + timedelta(days=1), datetime.min.time()))

        query = query.order_by(Order.created_at.desc())
        return paginate(session=self.session, query=query, page=page, limit=limit)

    def order_stats(self) -> dict:
        counts = dict(self.session.exec(
            select(Order.status, func.count()).group_by(Order.status)
        ).all())
        revenue = self.session.exec(
            select(func.coalesce(func.sum(Order.total), 0))
            .where(Order.payment_status == PaymentStatus.paid)
        ).one()

        stats = {"total": sum(counts.values())}
        for status in OrderStatus:
            stats[status.value] = counts.get(status, counts.get(status.value, 0))
        stats["revenue"] = Decimal(str(revenue))
        return stats

    # -------------------------
    # CREATE
    # -------------------------
    def create_order(
        self,
        user_id: int,
        line_items: Iterable,
        shipping_address: Union[ShippingAddress, dict, None],
        coupon_code: Optional[str] = None,
        client_pricing: Optional[PricingBreakdown] = None,
        payment_method: str = "razorpay",
        customer_notes: Optional[str] = None,
    ) -> Order:
        """
        Persist a pending order and reserve its stock in one transaction.

        Prices and stock come from the live catalog; ``client_pricing`` is
        only compared against the server figures and never stored.
        """
        requested = OrderedDict()
        for line in line_items:
            if line.quantity < 1:
                raise ValidationError("Quantity must be at least 1", field="quantity")
            requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

        if not requested:
            raise EmptyCart()

        address = validate_address(shipping_address)

        products = []
        for product_id, quantity in requested.items():
            product = get_product(self.session, product_id)
            if quantity > product.stock_quantity:
                raise InsufficientStock(product.id, quantity, product.stock_quantity, product.name)
            products.append((product, quantity))

        priced = [_PricedLine(p.id, p.price, q) for p, q in products]
        coupon = get_coupon(self.session, coupon_code)
        pricing = compute_totals(priced, coupon, self.policy)

        if client_pricing is not None and client_pricing.total != pricing.total:
            logger.warning(
                f"Client total {client_pricing.total} differs from server total {pricing.total} "
                f"for user {user_id}; using server total"
            )

        order = Order(
            order_number=generate_order_number(),
            user_id=user_id,
            shipping_full_name=address.full_name.strip(),
            shipping_phone=address.phone.strip(),
            shipping_address_line1=address.address_line1.strip(),
            shipping_address_line2=address.address_line2,
            shipping_city=address.city.strip(),
            shipping_state=address.state.strip(),
            shipping_postal_code=address.postal_code.strip(),
            shipping_country=address.country or "IN",
            subtotal=pricing.subtotal,
            tax=pricing.tax_amount,
            shipping_cost=pricing.shipping_cost,
            discount=pricing.discount_amount,
            total=pricing.total,
            coupon_code=pricing.coupon_code,
            status=OrderStatus.pending,
            payment_status=PaymentStatus.pending,
            payment_method=payment_method,
            customer_notes=customer_notes,
            stock_reserved=True,
        )

        try:
            reserve_stock(self.session, products)

            self.session.add(order)
            self.session.flush()

            for product, quantity in products:
                self.session.add(OrderItem(
                    order_id=order.id,
                    product_id=product.id,
                    product_name=product.name,
                    sku=product.sku,
                    price=product.price,
                    quantity=quantity,
                    line_total=Decimal(str(product.price)) * quantity,
                ))

            log_order_event(
                self.session,
                order.id,
                "order_placed",
                f"Order {order.order_number} placed",
                created_by=f"user:{user_id}",
                meta={"total": str(order.total), "items": len(products)},
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        self.session.refresh(order)
        logger.info(f"Created order {order.order_number} for user {user_id}, total {order.total}")
        return order

    def record_session(self, order: Order, handle: SessionHandle) -> PaymentAttempt:
        attempt = PaymentAttempt(
            order_id=order.id,
            gateway_order_id=handle.gateway_order_id,
            amount=handle.amount,
            currency=handle.currency,
        )
        order.gateway_order_id = handle.gateway_order_id
        order.updated_at = datetime.utcnow()
        self.session.add(attempt)
        self.session.add(order)
        log_order_event(
            self.session,
            order.id,
            "payment_session_created",
            "Payment session opened",
            meta={"gateway_order_id": handle.gateway_order_id, "amount_minor": handle.amount_minor},
        )
        self.session.commit()
        self.session.refresh(attempt)
        return attempt

    # -------------------------
    # PAYMENT
    # -------------------------
    def update_order_payment(self, order_id: int, outcome: PaymentOutcome) -> Order:
        if isinstance(outcome, Paid):
            return self._apply_paid(order_id, outcome)
        return self._apply_failed(order_id, outcome)

    def _attempt_for_payment(self, gateway_payment_id: Optional[str]) -> Optional[PaymentAttempt]:
        if not gateway_payment_id:
            return None
        return self.session.exec(
            select(PaymentAttempt).where(PaymentAttempt.gateway_payment_id == gateway_payment_id)
        ).first()

    def _attempt_for_session(self, order: Order, gateway_order_id: Optional[str]) -> Optional[PaymentAttempt]:
        if not gateway_order_id:
            return None
        return self.session.exec(
            select(PaymentAttempt)
            .where(PaymentAttempt.order_id == order.id)
            .where(PaymentAttempt.gateway_order_id == gateway_order_id)
        ).first()

    def _refund_exists(self, gateway_payment_id: str) -> bool:
        return self.session.exec(
            select(RefundRequest).where(RefundRequest.gateway_payment_id == gateway_payment_id)
        ).first() is not None

    def _apply_paid(self, order_id: int, outcome: Paid) -> Order:
        order = self.get_order(order_id, for_update=True)
        payment_id = outcome.gateway_payment_id

        # at-least-once delivery: same payment id means already applied
        seen = self._attempt_for_payment(payment_id)
        if order.gateway_payment_id == payment_id \
                or (seen and seen.outcome in SETTLED_ATTEMPTS) \
                or self._refund_exists(payment_id):
            logger.info(f"Payment {payment_id} already applied to order {order.order_number}")
            return order

        attempt = self._attempt_for_session(order, outcome.gateway_order_id)
        if attempt is None:
            raise ValidationError("Payment does not belong to this order", field="gateway_order_id")

        if not self.gateway.verify_signature(outcome.proof):
            logger.warning(
                f"Invalid payment signature for order {order.order_number} "
                f"(gateway order {outcome.gateway_order_id}, payment {payment_id}, source {outcome.source})"
            )
            log_order_event(
                self.session,
                order.id,
                "signature_invalid",
                "Rejected payment confirmation with invalid signature",
                meta={"gateway_payment_id": payment_id, "source": outcome.source},
            )
            self.session.commit()
            raise SignatureInvalid()

        if isinstance(outcome.proof, WebhookDelivery) and outcome.proof.amount_minor is not None \
                and outcome.proof.amount_minor != to_minor_units(attempt.amount):
            return self._refund_mismatch(order, attempt, outcome)

        if order.payment_status == PaymentStatus.paid:
            # a second capture for an order that is already paid
            if attempt.outcome != "paid":
                self._stamp_attempt(attempt, outcome, "duplicate")
            self.schedule_refund(order, payment_id, attempt.amount, "Duplicate payment", attempt=attempt)
            log_order_event(self.session, order.id, "duplicate_payment",
                            "Duplicate payment received; refund scheduled",
                            meta={"gateway_payment_id": payment_id})
            logger.error(f"Duplicate payment {payment_id} for order {order.order_number}; refund scheduled")
            return self._commit_payment(order)

        if order.payment_status != PaymentStatus.pending or order.status != OrderStatus.pending:
            # the order was settled as failed/cancelled before the capture arrived
            self._stamp_attempt(attempt, outcome, "late")
            self.schedule_refund(order, payment_id, attempt.amount, "Payment captured after order was closed",
                                 attempt=attempt)
            logger.error(
                f"Late payment {payment_id} for {order.status.value} order {order.order_number}; refund scheduled"
            )
            return self._commit_payment(order)

        validate_payment_transition(order.payment_status, PaymentStatus.paid)
        order.payment_status = PaymentStatus.paid
        validate_transition(order, OrderStatus.confirmed, Actor.system)
        order.status = OrderStatus.confirmed
        order.gateway_order_id = attempt.gateway_order_id
        order.gateway_payment_id = payment_id
        order.updated_at = datetime.utcnow()
        self._stamp_attempt(attempt, outcome, "paid")
        self.session.add(order)
        log_order_event(
            self.session,
            order.id,
            "payment_success",
            "Payment received",
            meta={"gateway_payment_id": payment_id, "source": outcome.source, "amount": str(attempt.amount)},
        )
        order = self._commit_payment(order)
        logger.info(f"Order {order.order_number} confirmed, payment {payment_id} ({outcome.source})")
        return order

    def _refund_mismatch(self, order: Order, attempt: PaymentAttempt, outcome: Paid) -> Order:
        """A capture for a different amount than the session asked for never pays the order."""
        payment_id = outcome.gateway_payment_id
        captured = Decimal(outcome.proof.amount_minor) / 100
        expected = to_minor_units(attempt.amount)
        logger.error(
            f"Captured amount {outcome.proof.amount_minor} does not match session amount {expected} "
            f"for order {order.order_number}; refunding payment {payment_id}"
        )
        if attempt.outcome != "paid":
            self._stamp_attempt(attempt, outcome, "mismatch")
        self.schedule_refund(order, payment_id, captured, "Captured amount does not match the order total",
                             attempt=attempt)
        log_order_event(
            self.session,
            order.id,
            "amount_mismatch",
            "Payment captured for the wrong amount; refund scheduled",
            created_by=outcome.source,
            meta={
                "gateway_payment_id": payment_id,
                "captured_minor": outcome.proof.amount_minor,
                "expected_minor": expected,
            },
        )
        return self._commit_payment(order)

    def _stamp_attempt(self, attempt: PaymentAttempt, outcome: Paid, result: str):
        attempt.outcome = result
        attempt.gateway_payment_id = outcome.gateway_payment_id
        attempt.signature = outcome.proof.signature if isinstance(outcome.proof, CheckoutCallback) else None
        attempt.source = outcome.source
        attempt.updated_at = datetime.utcnow()
        self.session.add(attempt)

    def _commit_payment(self, order: Order) -> Order:
        order_id = order.id
        try:
            self.session.commit()
        except IntegrityError:
            # a concurrent delivery of the same payment won the unique key
            self.session.rollback()
            logger.info(f"Concurrent payment update for order {order_id}; keeping the stored result")
            return self.get_order(order_id)
        self.session.refresh(order)
        return order

    def _apply_failed(self, order_id: int, outcome: Failed) -> Order:
        order = self.get_order(order_id, for_update=True)

        attempt = self._attempt_for_session(order, outcome.gateway_order_id)
        if attempt is not None and attempt.outcome == "created":
            # failed payment ids are not stored; the unique key belongs to captures
            attempt.outcome = "failed"
            attempt.failure_reason = outcome.reason
            attempt.source = outcome.source
            attempt.updated_at = datetime.utcnow()
            self.session.add(attempt)

        settle = (
            outcome.source != "webhook"
            and order.status == OrderStatus.pending
            and order.payment_status == PaymentStatus.pending
        )

        if not settle:
            # gateway-side failures of single attempts don't close the order;
            # the shopper may still retry inside the same checkout
            log_order_event(self.session, order.id, "payment_attempt_failed",
                            f"Payment attempt failed: {outcome.reason}",
                            meta={"source": outcome.source})
            self.session.commit()
            self.session.refresh(order)
            logger.info(f"Recorded failed attempt for order {order.order_number} ({outcome.source})")
            return order

        validate_payment_transition(order.payment_status, PaymentStatus.failed)
        validate_transition(order, OrderStatus.cancelled, Actor.system)
        order.payment_status = PaymentStatus.failed
        order.status = OrderStatus.cancelled
        order.cancelled_at = datetime.utcnow()
        order.updated_at = order.cancelled_at
        self.session.add(order)

        release_stock(self.session, order)
        log_order_event(
            self.session,
            order.id,
            "payment_failed",
            f"Payment failed: {outcome.reason}",
            meta={"source": outcome.source},
        )
        self.session.commit()
        self.session.refresh(order)
        logger.info(f"Order {order.order_number} cancelled after failed payment: {outcome.reason}")
        return order

    # -------------------------
    # STATUS
    # -------------------------
    def update_order_status(
        self,
        order_id: int,
        new_status: OrderStatus,
        actor: Actor,
        tracking_number: Optional[str] = None,
        changed_by: Optional[str] = None,
    ) -> Order:
        new_status = OrderStatus(new_status)
        if new_status == OrderStatus.cancelled:
            return self.cancel_order(order_id, actor, changed_by=changed_by)

        order = self.get_order(order_id, for_update=True)
        validate_transition(order, new_status, actor, tracking_number)
        previous = order.status
        now = datetime.utcnow()
        created_by = changed_by or Actor(actor).value

        if new_status == OrderStatus.shipped:
            if tracking_number:
                order.tracking_number = tracking_number.strip()
            order.shipped_at = order.shipped_at or now
        elif new_status == OrderStatus.delivered:
            order.delivered_at = now
        elif new_status == OrderStatus.refunded:
            if previous in STOCK_RETURNABLE:
                release_stock(self.session, order, created_by=created_by)
            self.schedule_refund(order, order.gateway_payment_id, order.total, "Order refunded",
                                 requested_by=created_by)

        order.status = new_status
        order.updated_at = now
        self.session.add(order)
        log_order_event(
            self.session,
            order.id,
            "status_changed",
            f"Status changed from {previous.value} to {new_status.value}",
            created_by=created_by,
            meta={"from": previous.value, "to": new_status.value},
        )
        self.session.commit()
        self.session.refresh(order)
        logger.info(f"Order {order.order_number}: {previous.value} -> {new_status.value} by {created_by}")
        return order

    def add_tracking_number(self, order_id: int, tracking_number: str, changed_by: str = "admin") -> Order:
        order = self.get_order(order_id, for_update=True)
        if not tracking_number or not tracking_number.strip():
            raise ValidationError("Tracking number is required", field="tracking_number")

        if order.status in (OrderStatus.pending, OrderStatus.cancelled, OrderStatus.refunded):
            raise InvalidTransition(
                f"Cannot add tracking to a {order.status.value} order",
                details={"status": order.status.value},
            )

        order.tracking_number = tracking_number.strip()
        if order.status != OrderStatus.shipped and order.shipped_at is None:
            order.shipped_at = datetime.utcnow()
        order.updated_at = datetime.utcnow()
        self.session.add(order)
        log_order_event(
            self.session,
            order.id,
            "tracking_added",
            f"Tracking number {order.tracking_number} added",
            created_by=changed_by,
        )
        self.session.commit()
        self.session.refresh(order)
        return order

    def cancel_order(
        self,
        order_id: int,
        actor: Actor,
        user_id: Optional[int] = None,
        reason: Optional[str] = None,
        changed_by: Optional[str] = None,
    ) -> Order:
        order = self.get_order(order_id, for_update=True)
        actor = Actor(actor)
        created_by = changed_by or (f"user:{user_id}" if user_id else actor.value)

        if actor == Actor.customer and order.user_id != user_id:
            raise PermissionDenied("Not authorized to cancel this order")

        if order.status not in CUSTOMER_CANCELLABLE:
            raise InvalidTransition(
                f"Cannot cancel order. Current status: {order.status.value}",
                details={"status": order.status.value},
            )
        validate_transition(order, OrderStatus.cancelled, actor)

        was_paid = order.payment_status == PaymentStatus.paid
        if order.payment_status == PaymentStatus.pending:
            validate_payment_transition(order.payment_status, PaymentStatus.failed)
            order.payment_status = PaymentStatus.failed

        release_stock(self.session, order, created_by=created_by)

        order.status = OrderStatus.cancelled
        order.cancelled_at = datetime.utcnow()
        order.updated_at = order.cancelled_at
        self.session.add(order)

        if was_paid:
            self.schedule_refund(order, order.gateway_payment_id, order.total,
                                 reason or "Order cancelled", requested_by=created_by)

        log_order_event(
            self.session,
            order.id,
            "cancelled",
            f"Order cancelled{': ' + reason if reason else ''}",
            created_by=created_by,
            meta={"refund_scheduled": was_paid},
        )
        self.session.commit()
        self.session.refresh(order)
        logger.info(f"Order {order.order_number} cancelled by {created_by}")
        return order

    # -------------------------
    # REFUNDS
    # -------------------------
    def schedule_refund(
        self,
        order: Order,
        gateway_payment_id: Optional[str],
        amount: Decimal,
        reason: str,
        requested_by: str = "system",
        attempt: Optional[PaymentAttempt] = None,
    ) -> Optional[RefundRequest]:
        """Queue a gateway refund; the refund job sends it. Added to the caller's transaction."""
        if not gateway_payment_id:
            logger.error(f"Refund requested for order {order.order_number} without a payment id")
            return None

        existing = self.session.exec(
            select(RefundRequest)
            .where(RefundRequest.gateway_payment_id == gateway_payment_id)
            .where(RefundRequest.status != "failed")
        ).first()
        if existing:
            return existing

        refund = RefundRequest(
            order_id=order.id,
            payment_attempt_id=attempt.id if attempt else None,
            gateway_payment_id=gateway_payment_id,
            amount=amount,
            reason=reason,
            requested_by=requested_by,
        )
        self.session.add(refund)
        log_order_event(
            self.session,
            order.id,
            "refund_requested",
            f"Refund of {amount} requested: {reason}",
            created_by=requested_by,
            meta={"gateway_payment_id": gateway_payment_id},
        )
        return refund
