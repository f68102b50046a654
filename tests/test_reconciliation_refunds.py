"""Tests for the payment housekeeping jobs."""
from datetime import datetime, timedelta

import razorpay
from sqlmodel import select

from storefront.constants.order_status import Actor, OrderStatus, PaymentStatus
from storefront.models.cart import CartItem
from storefront.models.order_event import OrderEvent
from storefront.models.product import Product
from storefront.models.refund import RefundRequest
from storefront.services.cart_repository import load_account_cart
from storefront.services.order_service import Paid
from storefront.services.payment_gateway import WebhookDelivery
from storefront.services.reconciliation import reconcile_pending_orders
from storefront.services.refund_service import MAX_REFUND_ATTEMPTS, process_pending_refunds
from tests.conftest import WEBHOOK_SECRET, sign, signed_callback, webhook_body


def age(session, order, minutes):
    order.created_at = datetime.utcnow() - timedelta(minutes=minutes)
    session.add(order)
    session.commit()


class TestReconcile:
    def test_expired_unpaid_order_is_cancelled(self, session, checkout, place_order, make_product):
        product = make_product(stock=5)
        order = place_order(product, 2)
        checkout.open_session(order)
        age(session, order, 45)

        summary = reconcile_pending_orders(session, checkout.gateway, expiry_minutes=30)

        assert summary == {"checked": 1, "confirmed": 0, "expired": 1, "errors": 0}
        order = checkout.orders.get_order(order.id)
        assert order.status == OrderStatus.cancelled
        assert order.payment_status == PaymentStatus.failed
        session.expire_all()
        assert session.get(Product, product.id).stock_quantity == 5

    def test_recent_orders_are_left_alone(self, session, checkout, place_order, make_product, razorpay_client):
        order = place_order(make_product())
        checkout.open_session(order)

        summary = reconcile_pending_orders(session, checkout.gateway, min_age_minutes=5)

        assert summary["checked"] == 0
        razorpay_client.order.payments.assert_not_called()

    def test_in_flight_payment_is_not_expired(self, session, checkout, place_order, make_product, razorpay_client):
        order = place_order(make_product())
        handle = checkout.open_session(order)
        age(session, order, 45)
        razorpay_client.order.payments.return_value = {
            "items": [{"id": "pay_1", "order_id": handle.gateway_order_id, "status": "authorized"}],
        }

        summary = reconcile_pending_orders(session, checkout.gateway, expiry_minutes=30)

        assert summary["expired"] == 0
        assert checkout.orders.get_order(order.id).status == OrderStatus.pending

    def test_captured_payment_confirms_and_clears_account_cart(self, session, checkout, customer,
                                                               place_order, make_product, razorpay_client):
        product = make_product(stock=5)
        account_cart = load_account_cart(session, customer.id)
        account_cart.add(product, 1)
        order = place_order(product, 1)
        handle = checkout.open_session(order)
        age(session, order, 10)

        payment = {"id": "pay_1", "order_id": handle.gateway_order_id, "status": "captured"}
        razorpay_client.order.payments.return_value = {"items": [payment]}
        razorpay_client.payment.fetch.return_value = payment

        summary = reconcile_pending_orders(session, checkout.gateway)

        assert summary["confirmed"] == 1
        order = checkout.orders.get_order(order.id)
        assert order.payment_status == PaymentStatus.paid
        assert order.gateway_payment_id == "pay_1"
        assert session.exec(select(CartItem).where(CartItem.user_id == customer.id)).all() == []

    def test_gateway_error_is_counted_and_skipped(self, session, checkout, place_order, make_product,
                                                  razorpay_client):
        order = place_order(make_product())
        checkout.open_session(order)
        age(session, order, 45)
        razorpay_client.order.payments.side_effect = razorpay.errors.ServerError("down")

        summary = reconcile_pending_orders(session, checkout.gateway)

        assert summary["errors"] == 1
        assert checkout.orders.get_order(order.id).status == OrderStatus.pending

    def test_payment_lookup_outage_is_retried_not_flagged(self, session, checkout, place_order, make_product,
                                                          razorpay_client):
        order = place_order(make_product())
        handle = checkout.open_session(order)
        age(session, order, 10)
        razorpay_client.order.payments.return_value = {
            "items": [{"id": "pay_1", "order_id": handle.gateway_order_id, "status": "captured"}],
        }
        razorpay_client.payment.fetch.side_effect = razorpay.errors.ServerError("down")

        summary = reconcile_pending_orders(session, checkout.gateway)

        assert summary == {"checked": 1, "confirmed": 0, "expired": 0, "errors": 1}
        assert session.exec(
            select(OrderEvent).where(OrderEvent.event_type == "signature_invalid")
        ).all() == []

        # next run, with the gateway back, confirms the order
        razorpay_client.payment.fetch.side_effect = None
        razorpay_client.payment.fetch.return_value = {
            "id": "pay_1", "order_id": handle.gateway_order_id, "status": "captured",
        }
        assert reconcile_pending_orders(session, checkout.gateway)["confirmed"] == 1

    def test_wrong_amount_capture_does_not_block_expiry(self, session, checkout, place_order, make_product,
                                                        razorpay_client):
        product = make_product(stock=5)
        order = place_order(product, 1)
        handle = checkout.open_session(order)
        body = webhook_body("payment.captured", handle.gateway_order_id, "pay_short", 100)
        checkout.handle_outcome(order.id, Paid(WebhookDelivery(
            body=body, signature=sign(body.decode(), WEBHOOK_SECRET), event="payment.captured",
            gateway_order_id=handle.gateway_order_id, gateway_payment_id="pay_short", amount_minor=100,
        )))
        age(session, order, 45)
        captured = {"id": "pay_short", "order_id": handle.gateway_order_id, "status": "captured"}
        razorpay_client.order.payments.return_value = {"items": [captured]}
        razorpay_client.payment.fetch.return_value = captured

        summary = reconcile_pending_orders(session, checkout.gateway, expiry_minutes=30)

        assert summary["expired"] == 1
        order = checkout.orders.get_order(order.id)
        assert order.status == OrderStatus.cancelled
        assert order.payment_status == PaymentStatus.failed
        assert len(session.exec(select(RefundRequest)).all()) == 1


class TestRefunds:
    def test_refund_for_cancelled_order(self, session, orders, customer, paid_order, gateway, razorpay_client):
        order, _ = paid_order(payment_id="pay_R")
        orders.cancel_order(order.id, Actor.customer, user_id=customer.id)
        razorpay_client.payment.refund.return_value = {"id": "rfnd_1", "status": "processed"}

        summary = process_pending_refunds(session, gateway)

        assert summary == {"processed": 1, "retrying": 0, "failed": 0}
        refund = session.exec(select(RefundRequest)).one()
        assert refund.status == "processed"
        assert refund.gateway_refund_id == "rfnd_1"
        assert orders.get_order(order.id).payment_status == PaymentStatus.refunded

        # nothing left to send
        assert process_pending_refunds(session, gateway) == {"processed": 0, "retrying": 0, "failed": 0}
        razorpay_client.payment.refund.assert_called_once()

    def test_duplicate_capture_refund_leaves_order_paid(self, session, orders, paid_order, gateway,
                                                        razorpay_client):
        order, _ = paid_order(payment_id="pay_A")
        handle = gateway.create_session(order.id, order.total, order_number=order.order_number)
        orders.record_session(order, handle)
        orders.update_order_payment(order.id, Paid(signed_callback(handle.gateway_order_id, "pay_B")))
        razorpay_client.payment.refund.return_value = {"id": "rfnd_B"}

        process_pending_refunds(session, gateway)

        razorpay_client.payment.refund.assert_called_once_with("pay_B", {"amount": handle.amount_minor})
        order = orders.get_order(order.id)
        assert order.status == OrderStatus.confirmed
        assert order.payment_status == PaymentStatus.paid

    def test_gateway_errors_retry_then_fail(self, session, orders, customer, paid_order, gateway,
                                            razorpay_client):
        order, _ = paid_order()
        orders.cancel_order(order.id, Actor.customer, user_id=customer.id)
        razorpay_client.payment.refund.side_effect = razorpay.errors.ServerError("down")

        assert process_pending_refunds(session, gateway)["retrying"] == 1
        for _ in range(MAX_REFUND_ATTEMPTS - 2):
            process_pending_refunds(session, gateway)
        assert process_pending_refunds(session, gateway)["failed"] == 1

        refund = session.exec(select(RefundRequest)).one()
        assert refund.status == "failed"
        assert refund.attempts == MAX_REFUND_ATTEMPTS
        assert orders.get_order(order.id).payment_status == PaymentStatus.paid
