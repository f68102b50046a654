"""
Pytest configuration and shared fixtures for the storefront tests.

Provides an in-memory SQLite database, a Razorpay client whose network
resources are mocked (signature checks use the real SDK), and a FastAPI
test client wired to both.
"""
import hashlib
import hmac
import itertools
import json
import os
from decimal import Decimal
from types import SimpleNamespace
from typing import Generator
from unittest.mock import MagicMock

# must be set before storefront.config is imported
os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite://")
os.environ.setdefault("ENV", "test")

import pytest
import razorpay
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from storefront.database import create_db_and_tables, get_session
from storefront.dependencies.payments import get_gateway, get_pricing_policy
from storefront.main import app
from storefront.models.coupon import Coupon
from storefront.models.product import Product
from storefront.models.user import User
from storefront.services.checkout import CheckoutOrchestrator
from storefront.services.order_service import OrderService, Paid
from storefront.services.payment_gateway import CheckoutCallback, PaymentGatewayAdapter
from storefront.services.pricing import PricingPolicy
from storefront.utils.token import create_access_token

KEY_ID = "rzp_test_key"
KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"

ADDRESS = {
    "full_name": "Asha Rao",
    "phone": "9876543210",
    "address_line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "postal_code": "560001",
    "country": "IN",
}


def sign(message: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def signed_callback(gateway_order_id: str, payment_id: str, secret: str = KEY_SECRET) -> CheckoutCallback:
    return CheckoutCallback(
        gateway_order_id=gateway_order_id,
        gateway_payment_id=payment_id,
        signature=sign(f"{gateway_order_id}|{payment_id}", secret),
    )


def webhook_body(event: str, gateway_order_id: str, payment_id: str, amount_minor: int, **entity) -> bytes:
    payload = {
        "entity": "event",
        "event": event,
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": gateway_order_id,
                    "amount": amount_minor,
                    "currency": "INR",
                    "status": "captured" if event == "payment.captured" else "failed",
                    **entity,
                }
            }
        },
    }
    return json.dumps(payload).encode("utf-8")


# ── Database Fixtures ────────────────────────────────────────────────


@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


@pytest.fixture
def customer(session) -> User:
    user = User(first_name="Asha", last_name="Rao", email="asha@example.com", phone="9876543210")
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def other_customer(session) -> User:
    user = User(first_name="Vik", last_name="Menon", email="vik@example.com")
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def admin(session) -> User:
    user = User(first_name="Store", last_name="Admin", email="admin@example.com", role="admin")
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def make_product(session):
    counter = itertools.count(1)

    def _make(name="Vitamin C Serum", price="1000.00", stock=10, is_active=True) -> Product:
        product = Product(
            name=name,
            sku=f"SKU-{next(counter):03d}",
            price=Decimal(price),
            stock_quantity=stock,
            is_active=is_active,
        )
        session.add(product)
        session.commit()
        session.refresh(product)
        return product

    return _make


@pytest.fixture
def coupon(session) -> Coupon:
    coupon = Coupon(code="GLOW10", percent_off=Decimal("10"))
    session.add(coupon)
    session.commit()
    session.refresh(coupon)
    return coupon


# ── Gateway Fixtures ─────────────────────────────────────────────────


@pytest.fixture
def razorpay_client():
    """Real SDK client (so signatures are checked for real) with network resources mocked."""
    client = razorpay.Client(auth=(KEY_ID, KEY_SECRET))
    client.order = MagicMock()
    client.payment = MagicMock()

    counter = itertools.count(1)

    def create_order(data):
        return {
            "id": f"order_rzp{next(counter):04d}",
            "entity": "order",
            "amount": data["amount"],
            "currency": data["currency"],
            "receipt": data["receipt"],
            "status": "created",
        }

    client.order.create.side_effect = create_order
    client.order.payments.return_value = {"entity": "collection", "count": 0, "items": []}
    return client


@pytest.fixture
def gateway(razorpay_client) -> PaymentGatewayAdapter:
    return PaymentGatewayAdapter(
        client=razorpay_client,
        key_id=KEY_ID,
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
    )


@pytest.fixture
def policy() -> PricingPolicy:
    return PricingPolicy()


@pytest.fixture
def orders(session, gateway, policy) -> OrderService:
    return OrderService(session, gateway, policy)


@pytest.fixture
def checkout(session, gateway, policy) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(session, gateway, policy)


@pytest.fixture
def place_order(orders, customer):
    """Pending order for ``quantity`` of one product."""
    def _place(product, quantity=1, user=None, address=None):
        line = SimpleNamespace(product_id=product.id, quantity=quantity)
        return orders.create_order((user or customer).id, [line], address or dict(ADDRESS))

    return _place


@pytest.fixture
def paid_order(place_order, checkout, make_product):
    """A confirmed order for 2 units, paid with pay_0001."""
    def _paid(product=None, quantity=2, payment_id="pay_0001"):
        product = product or make_product(stock=10)
        order = place_order(product, quantity)
        handle = checkout.open_session(order)
        return checkout.orders.update_order_payment(
            order.id, Paid(signed_callback(handle.gateway_order_id, payment_id))
        ), product

    return _paid


# ── HTTP Fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="function")
def test_client(session, gateway, policy) -> Generator[TestClient, None, None]:
    """FastAPI test client sharing the test session and the mocked gateway."""
    def override_get_session():
        yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_pricing_policy] = lambda: policy

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'user_id': user.id})}"}
