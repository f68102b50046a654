"""HTTP tests for the cart, checkout, webhook and order routes."""
from sqlmodel import select

from storefront.models.order import Order
from storefront.models.order_event import OrderEvent
from storefront.models.refund import RefundRequest
from tests.conftest import ADDRESS, WEBHOOK_SECRET, auth_headers, sign, signed_callback, webhook_body


def add_to_cart(client, user, product, quantity=1):
    return client.post(
        "/cart/add",
        json={"product_id": product.id, "quantity": quantity},
        headers=auth_headers(user),
    )


def open_checkout(client, user, **extra):
    return client.post(
        "/checkout/session",
        json={"shipping_address": ADDRESS, **extra},
        headers=auth_headers(user),
    )


def test_health(test_client):
    response = test_client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "ok"


class TestCartRoutes:
    def test_requires_login(self, test_client):
        assert test_client.get("/cart").status_code == 401

    def test_add_update_remove(self, test_client, customer, make_product):
        product = make_product(price="250.00", stock=3)

        response = add_to_cart(test_client, customer, product, 2)
        assert response.status_code == 200
        line_id = response.json()["line_id"]

        response = test_client.put(f"/cart/update/{line_id}", json={"quantity": 9},
                                   headers=auth_headers(customer))
        assert response.json()["quantity"] == 3

        cart = test_client.get("/cart", headers=auth_headers(customer)).json()
        assert cart["item_count"] == 3
        assert cart["summary"]["subtotal"] == 750.0
        assert cart["summary"]["shipping_cost"] == 0

        response = test_client.delete(f"/cart/remove/{line_id}", headers=auth_headers(customer))
        assert response.status_code == 200
        assert test_client.get("/cart", headers=auth_headers(customer)).json()["items"] == []

    def test_invalid_quantity(self, test_client, customer, make_product):
        response = add_to_cart(test_client, customer, make_product(), 0)
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"

    def test_unknown_product(self, test_client, customer):
        response = test_client.post("/cart/add", json={"product_id": 999, "quantity": 1},
                                    headers=auth_headers(customer))
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_merge_is_idempotent(self, test_client, customer, make_product):
        product = make_product(stock=10)
        add_to_cart(test_client, customer, product, 1)
        payload = {"cart_id": "anon-123", "items": [{"product_id": product.id, "quantity": 2}]}

        test_client.post("/cart/merge", json=payload, headers=auth_headers(customer))
        response = test_client.post("/cart/merge", json=payload, headers=auth_headers(customer))

        assert response.json()["item_count"] == 3

    def test_merge_prices_from_catalog(self, test_client, customer, make_product):
        product = make_product(price="800.00", stock=5)
        payload = {
            "cart_id": "anon-456",
            "items": [{"product_id": product.id, "quantity": 2, "unit_price": 1.00}],
        }

        response = test_client.post("/cart/merge", json=payload, headers=auth_headers(customer))

        body = response.json()
        assert body["items"][0]["unit_price"] == 800.0
        assert body["summary"]["subtotal"] == 1600.0

    def test_quote_with_coupon(self, test_client, customer, make_product, coupon):
        add_to_cart(test_client, customer, make_product(price="1000.00"), 1)
        response = test_client.post("/cart/quote", json={"coupon_code": "GLOW10"},
                                    headers=auth_headers(customer))

        body = response.json()
        assert body["coupon_applied"] is True
        assert body["summary"]["total"] == 1080.0


class TestCheckoutRoutes:
    def test_empty_cart(self, test_client, customer):
        response = open_checkout(test_client, customer)
        assert response.status_code == 400
        assert response.json()["code"] == "empty_cart"

    def test_missing_address_fields(self, test_client, customer, make_product):
        add_to_cart(test_client, customer, make_product())
        response = test_client.post(
            "/checkout/session",
            json={"shipping_address": {**ADDRESS, "state": ""}},
            headers=auth_headers(customer),
        )
        assert response.status_code == 400
        assert response.json()["code"] == "invalid_address"
        assert response.json()["details"]["missing"] == ["state"]

    def test_pay_and_verify(self, test_client, session, customer, make_product):
        add_to_cart(test_client, customer, make_product(price="1000.00", stock=5), 2)

        response = open_checkout(test_client, customer, client_total=2360.0)
        assert response.status_code == 200
        started = response.json()
        assert started["amount_minor"] == 236000
        assert started["checkout_options"]["order_id"] == started["razorpay_order_id"]

        callback = signed_callback(started["razorpay_order_id"], "pay_http")
        response = test_client.post(
            "/checkout/verify",
            json={
                "order_id": started["order_id"],
                "razorpay_order_id": callback.gateway_order_id,
                "razorpay_payment_id": callback.gateway_payment_id,
                "razorpay_signature": callback.signature,
            },
            headers=auth_headers(customer),
        )

        assert response.status_code == 200
        order = response.json()["order"]
        assert order["status"] == "confirmed"
        assert order["payment_status"] == "paid"
        assert test_client.get("/cart", headers=auth_headers(customer)).json()["items"] == []

    def test_forged_signature(self, test_client, customer, make_product):
        add_to_cart(test_client, customer, make_product())
        started = open_checkout(test_client, customer).json()

        response = test_client.post(
            "/checkout/verify",
            json={
                "order_id": started["order_id"],
                "razorpay_order_id": started["razorpay_order_id"],
                "razorpay_payment_id": "pay_forged",
                "razorpay_signature": "0" * 64,
            },
            headers=auth_headers(customer),
        )

        assert response.status_code == 400
        assert response.json()["code"] == "signature_invalid"
        assert len(test_client.get("/cart", headers=auth_headers(customer)).json()["items"]) == 1

    def test_reported_failure_keeps_cart(self, test_client, customer, make_product):
        add_to_cart(test_client, customer, make_product())
        started = open_checkout(test_client, customer).json()

        response = test_client.post(
            "/checkout/failure",
            json={"order_id": started["order_id"], "razorpay_order_id": started["razorpay_order_id"],
                  "cancelled_by_user": True},
            headers=auth_headers(customer),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert len(test_client.get("/cart", headers=auth_headers(customer)).json()["items"]) == 1

    def test_cannot_verify_someone_elses_order(self, test_client, customer, other_customer, make_product):
        add_to_cart(test_client, customer, make_product())
        started = open_checkout(test_client, customer).json()
        callback = signed_callback(started["razorpay_order_id"], "pay_1")

        response = test_client.post(
            "/checkout/verify",
            json={
                "order_id": started["order_id"],
                "razorpay_order_id": callback.gateway_order_id,
                "razorpay_payment_id": callback.gateway_payment_id,
                "razorpay_signature": callback.signature,
            },
            headers=auth_headers(other_customer),
        )
        assert response.status_code == 403

    def test_out_of_stock_at_checkout(self, test_client, session, customer, make_product):
        product = make_product(stock=2)
        add_to_cart(test_client, customer, product, 2)
        product.stock_quantity = 1
        session.add(product)
        session.commit()

        response = open_checkout(test_client, customer)

        assert response.status_code == 409
        assert response.json()["code"] == "insufficient_stock"


class TestWebhook:
    def _post(self, client, body, secret=WEBHOOK_SECRET):
        return client.post(
            "/payments/webhook",
            content=body,
            headers={"Content-Type": "application/json", "X-Razorpay-Signature": sign(body.decode(), secret)},
        )

    def test_capture_confirms_order_once(self, test_client, session, customer, make_product):
        add_to_cart(test_client, customer, make_product(price="1000.00"))
        started = open_checkout(test_client, customer).json()
        body = webhook_body("payment.captured", started["razorpay_order_id"], "pay_wh", started["amount_minor"])

        first = self._post(test_client, body)
        replay = self._post(test_client, body)

        assert first.status_code == 200
        assert first.json()["order_status"] == "confirmed"
        assert replay.status_code == 200
        assert replay.json()["payment_status"] == "paid"
        successes = session.exec(
            select(OrderEvent)
            .where(OrderEvent.order_id == started["order_id"])
            .where(OrderEvent.event_type == "payment_success")
        ).all()
        assert len(successes) == 1
        assert test_client.get("/cart", headers=auth_headers(customer)).json()["items"] == []

    def test_bad_signature(self, test_client, customer, make_product):
        add_to_cart(test_client, customer, make_product())
        started = open_checkout(test_client, customer).json()
        body = webhook_body("payment.captured", started["razorpay_order_id"], "pay_wh", started["amount_minor"])

        response = self._post(test_client, body, secret="wrong")

        assert response.status_code == 400
        assert response.json()["code"] == "signature_invalid"

    def test_failed_event_keeps_order_pending(self, test_client, session, customer, make_product):
        add_to_cart(test_client, customer, make_product())
        started = open_checkout(test_client, customer).json()
        body = webhook_body("payment.failed", started["razorpay_order_id"], "pay_wh", started["amount_minor"],
                            error_description="Card declined")

        response = self._post(test_client, body)

        assert response.status_code == 200
        assert response.json()["order_status"] == "pending"

    def test_wrong_amount_is_acknowledged_and_refunded(self, test_client, session, customer, make_product):
        add_to_cart(test_client, customer, make_product(price="1000.00"))
        started = open_checkout(test_client, customer).json()
        body = webhook_body("payment.captured", started["razorpay_order_id"], "pay_short", 100)

        response = self._post(test_client, body)
        replay = self._post(test_client, body)

        assert response.status_code == 200
        assert response.json()["payment_status"] == "pending"
        assert replay.status_code == 200
        refund = session.exec(select(RefundRequest)).one()
        assert refund.gateway_payment_id == "pay_short"
        assert len(test_client.get("/cart", headers=auth_headers(customer)).json()["items"]) == 1

    def test_unknown_order_is_acknowledged(self, test_client):
        body = webhook_body("payment.captured", "order_unknown", "pay_wh", 100)
        response = self._post(test_client, body)
        assert response.json() == {"status": "ignored"}


class TestOrderRoutes:
    def test_customer_views_and_cancels(self, test_client, session, customer, make_product):
        add_to_cart(test_client, customer, make_product())
        started = open_checkout(test_client, customer).json()
        number = started["order_number"]

        orders = test_client.get("/orders", headers=auth_headers(customer)).json()
        assert orders["total"] == 1

        detail = test_client.get(f"/orders/{number}", headers=auth_headers(customer)).json()
        assert [e["event"] for e in detail["timeline"]][:2] == ["order_placed", "payment_session_created"]

        response = test_client.post(f"/orders/{number}/cancel", json={"reason": "Ordered twice"},
                                    headers=auth_headers(customer))
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    def test_other_customer_cannot_see_order(self, test_client, customer, other_customer, make_product):
        add_to_cart(test_client, customer, make_product())
        number = open_checkout(test_client, customer).json()["order_number"]

        response = test_client.get(f"/orders/{number}", headers=auth_headers(other_customer))
        assert response.status_code == 404


class TestAdminRoutes:
    def test_requires_admin(self, test_client, customer):
        assert test_client.get("/admin/orders", headers=auth_headers(customer)).status_code == 403

    def test_fulfilment_flow(self, test_client, admin, paid_order):
        order, _ = paid_order()
        headers = auth_headers(admin)

        listing = test_client.get("/admin/orders?status=confirmed", headers=headers).json()
        assert listing["total_items"] == 1

        detail = test_client.get(f"/admin/orders/{order.id}", headers=headers).json()
        assert detail["next_statuses"] == ["cancelled", "processing", "refunded"]

        response = test_client.patch(f"/admin/orders/{order.id}/status", json={"status": "processing"},
                                     headers=headers)
        assert response.json()["status"] == "processing"

        response = test_client.patch(f"/admin/orders/{order.id}/status", json={"status": "shipped"},
                                     headers=headers)
        assert response.status_code == 409
        assert response.json()["code"] == "invalid_transition"

        response = test_client.patch(f"/admin/orders/{order.id}/status",
                                     json={"status": "shipped", "tracking_number": "TRK42"}, headers=headers)
        assert response.json()["tracking_number"] == "TRK42"

        stats = test_client.get("/admin/orders/stats", headers=headers).json()
        assert stats["shipped"] == 1

    def test_admin_cannot_confirm(self, test_client, admin, customer, make_product):
        add_to_cart(test_client, customer, make_product())
        started = open_checkout(test_client, customer).json()

        response = test_client.patch(f"/admin/orders/{started['order_id']}/status",
                                     json={"status": "confirmed"}, headers=auth_headers(admin))

        assert response.status_code == 409

    def test_process_refunds(self, test_client, session, admin, paid_order, razorpay_client):
        order, _ = paid_order()
        headers = auth_headers(admin)
        test_client.post(f"/admin/orders/{order.id}/cancel", json={"reason": "Out of stock"}, headers=headers)
        razorpay_client.payment.refund.return_value = {"id": "rfnd_1"}

        response = test_client.post("/admin/orders/refunds/process", headers=headers)

        assert response.json()["processed"] == 1
        session.expire_all()
        assert session.get(Order, order.id).payment_status == "refunded"
