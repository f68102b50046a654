"""
Checkout sequencing.

    cart -> pricing -> pending order (stock reserved) -> gateway session
         -> shopper pays in the Razorpay widget -> outcome -> order settled
         -> cart cleared (success only)

The outcome can arrive three ways: the browser callback, the Razorpay
webhook, or the reconciliation job. All three end in ``handle_outcome``.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from storefront.constants.order_status import OrderStatus, PaymentStatus
from storefront.errors import (
    EmptyCart,
    InvalidTransition,
    PartialFailure,
    PaymentFailed,
    PermissionDenied,
)
from storefront.models.order import Order
from storefront.models.user import User
from storefront.schemas.checkout_schemas import ShippingAddress
from storefront.services.cart_store import CartStore
from storefront.services.catalog import get_coupon
from storefront.services.order_service import Failed, OrderService, Paid, PaymentOutcome
from storefront.services.payment_gateway import (
    SUCCESS,
    USER_CANCELLED,
    CustomerInfo,
    GatewayOutcome,
    PaymentGatewayAdapter,
    Presenter,
    SessionHandle,
)
from storefront.services.pricing import PricingBreakdown, PricingPolicy

logger = logging.getLogger(__name__)


@dataclass
class CheckoutStart:
    order: Order
    handle: SessionHandle
    options: dict


def customer_info(user: User, order: Optional[Order] = None) -> CustomerInfo:
    return CustomerInfo(
        name=user.full_name,
        email=user.email,
        phone=(order.shipping_phone if order else None) or user.phone,
    )


class CheckoutOrchestrator:
    def __init__(self, session: Session, gateway: PaymentGatewayAdapter, policy: PricingPolicy):
        self.session = session
        self.gateway = gateway
        self.policy = policy
        self.orders = OrderService(session, gateway, policy)

    def quote(self, cart: CartStore, coupon_code: Optional[str] = None) -> PricingBreakdown:
        return cart.summary(self.policy, get_coupon(self.session, coupon_code))

    # -------------------------
    # STEPS 1-4
    # -------------------------
    def start(
        self,
        user: Optional[User],
        cart: CartStore,
        shipping_address: Union[ShippingAddress, dict, None],
        coupon_code: Optional[str] = None,
        customer_notes: Optional[str] = None,
        client_total: Optional[Decimal] = None,
    ) -> CheckoutStart:
        if user is None or not user.can_login:
            raise PermissionDenied("Please log in to check out")
        if cart.is_empty:
            raise EmptyCart()

        pricing = self.quote(cart, coupon_code)
        if client_total is not None and Decimal(str(client_total)) != pricing.total:
            logger.info(f"Cart total changed for user {user.id}: shown {client_total}, now {pricing.total}")

        # nothing external has been contacted if this raises
        order = self.orders.create_order(
            user.id,
            cart.items,
            shipping_address,
            coupon_code=coupon_code,
            client_pricing=pricing,
            customer_notes=customer_notes,
        )

        handle = self.open_session(order)
        return CheckoutStart(
            order=order,
            handle=handle,
            options=self.gateway.checkout_options(handle, customer_info(user, order)),
        )

    def open_session(self, order: Order) -> SessionHandle:
        """New gateway session for a pending order. The amount is always the stored total."""
        handle = self.gateway.create_session(
            order.id,
            order.total,
            order.currency,
            order_number=order.order_number,
        )
        self.orders.record_session(order, handle)
        return handle

    def resume(self, order_id: int, user: User) -> CheckoutStart:
        order = self.orders.get_order(order_id)
        if order.user_id != user.id:
            raise PermissionDenied("Not authorized to pay for this order")
        if order.status != OrderStatus.pending or order.payment_status != PaymentStatus.pending:
            raise InvalidTransition(
                f"Order {order.order_number} is {order.status.value}/{order.payment_status.value} "
                "and cannot take a new payment"
            )

        handle = self.open_session(order)
        return CheckoutStart(
            order=order,
            handle=handle,
            options=self.gateway.checkout_options(handle, customer_info(user, order)),
        )

    # -------------------------
    # STEPS 6-7
    # -------------------------
    def handle_outcome(
        self,
        order_id: int,
        outcome: Union[GatewayOutcome, PaymentOutcome],
        cart: Optional[CartStore] = None,
    ) -> Order:
        """
        Settle an order from a gateway outcome, from whichever channel it came.

        The cart is cleared only when this call is the one that confirmed the
        payment; on failure it is left alone so the shopper can retry.
        """
        outcome = self._as_payment_outcome(outcome)

        if isinstance(outcome, Failed):
            return self.orders.update_order_payment(order_id, outcome)

        # lock first so was_paid and the update see the same row
        order = self.orders.get_order(order_id, for_update=True)
        was_paid = order.payment_status == PaymentStatus.paid
        order_number = order.order_number

        try:
            order = self.orders.update_order_payment(order_id, outcome)
        except SQLAlchemyError:
            self.session.rollback()
            logger.error(
                f"Payment {outcome.gateway_payment_id} captured but order {order_number} "
                "could not be updated; left for reconciliation",
                exc_info=True,
            )
            raise PartialFailure(order_number)

        if not was_paid and order.payment_status == PaymentStatus.paid \
                and order.gateway_payment_id == outcome.gateway_payment_id and cart is not None:
            cart.clear()

        return order

    def complete(
        self,
        order_id: int,
        outcome: Union[GatewayOutcome, PaymentOutcome],
        cart: Optional[CartStore] = None,
    ) -> Order:
        """``handle_outcome`` for the shopper-facing path: anything but a paid order is an error."""
        order = self.handle_outcome(order_id, outcome, cart)
        if order.payment_status == PaymentStatus.paid:
            if isinstance(outcome, GatewayOutcome) and outcome.kind != SUCCESS:
                # a late failure callback for an order that is already paid
                logger.info(f"Ignoring {outcome.kind} callback for paid order {order.order_number}")
            return order

        cancelled = isinstance(outcome, GatewayOutcome) and outcome.kind == USER_CANCELLED
        raise PaymentFailed(
            "Payment was cancelled. Your cart has been kept so you can try again."
            if cancelled else
            "Payment failed. Your cart has been kept so you can try again.",
            details={"order_number": order.order_number, "status": order.status.value},
        )

    async def run_checkout(
        self,
        user: Optional[User],
        cart: CartStore,
        shipping_address: Union[ShippingAddress, dict, None],
        presenter: Presenter,
        coupon_code: Optional[str] = None,
        customer_notes: Optional[str] = None,
    ) -> Order:
        """Whole flow in one call, with ``presenter`` standing in for the browser."""
        started = self.start(user, cart, shipping_address, coupon_code, customer_notes)
        outcome = await self.gateway.present(started.handle, customer_info(user, started.order), presenter)
        return self.complete(started.order.id, outcome, cart)

    @staticmethod
    def _as_payment_outcome(outcome: Union[GatewayOutcome, PaymentOutcome]) -> PaymentOutcome:
        if not isinstance(outcome, GatewayOutcome):
            return outcome
        if outcome.kind == SUCCESS:
            return Paid(outcome.callback)
        return Failed(reason=outcome.reason or outcome.kind)
