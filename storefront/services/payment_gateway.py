"""
Razorpay behind three operations: create a payment session for an order,
present the hosted checkout, and verify that a success message came from
Razorpay.

Three kinds of proof can back a payment success, and ``verify_signature``
accepts each of them:

- ``CheckoutCallback``: the browser handler payload, signed with the key secret
  over ``"<order_id>|<payment_id>"``
- ``WebhookDelivery``: a server-to-server webhook, signed with the webhook
  secret over the raw body
- ``GatewayRecord``: a payment id we look up ourselves through the
  authenticated API (used by reconciliation)
"""
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Callable, Optional, Union

import razorpay
import requests

from storefront.errors import GatewayUnavailable, SignatureInvalid

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILURE = "failure"
USER_CANCELLED = "userCancelled"

PAID_EVENTS = {"payment.captured", "order.paid"}
FAILED_EVENTS = {"payment.failed"}


@dataclass(frozen=True)
class SessionHandle:
    order_id: int
    order_number: str
    gateway_order_id: str
    amount: Decimal
    amount_minor: int
    currency: str
    key_id: str


@dataclass(frozen=True)
class CustomerInfo:
    name: str
    email: str
    phone: Optional[str] = None


@dataclass(frozen=True)
class CheckoutCallback:
    gateway_order_id: str
    gateway_payment_id: str
    signature: str

    @classmethod
    def from_razorpay(cls, response: dict) -> "CheckoutCallback":
        return cls(
            gateway_order_id=response["razorpay_order_id"],
            gateway_payment_id=response["razorpay_payment_id"],
            signature=response["razorpay_signature"],
        )


@dataclass(frozen=True)
class WebhookDelivery:
    body: bytes
    signature: str
    event: str = ""
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    amount_minor: Optional[int] = None
    error_reason: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.event in PAID_EVENTS

    @property
    def is_failed(self) -> bool:
        return self.event in FAILED_EVENTS


@dataclass(frozen=True)
class GatewayRecord:
    gateway_order_id: str
    gateway_payment_id: str


PaymentProof = Union[CheckoutCallback, WebhookDelivery, GatewayRecord]


@dataclass(frozen=True)
class GatewayOutcome:
    kind: str  # success | failure | userCancelled
    callback: Optional[CheckoutCallback] = None
    reason: Optional[str] = None
    details: dict = field(default_factory=dict)


# Receives the Checkout options, returns what the Razorpay widget handed back
Presenter = Callable[[dict], Awaitable[Optional[dict]]]


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentGatewayAdapter:
    def __init__(
        self,
        client: razorpay.Client,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        store_name: str = "OT-OnlyThing",
        currency: str = "INR",
    ):
        self.client = client
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.store_name = store_name
        self.currency = currency

    @classmethod
    def from_settings(cls, settings) -> "PaymentGatewayAdapter":
        client = razorpay.Client(auth=(settings.razorpay_key_id, settings.razorpay_key_secret))
        return cls(
            client=client,
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            store_name=settings.store_name,
            currency=settings.currency,
        )

    # -------------------------
    # SESSION
    # -------------------------
    def create_session(
        self,
        order_id: int,
        amount: Decimal,
        currency: Optional[str] = None,
        order_number: Optional[str] = None,
        notes: Optional[dict] = None,
    ) -> SessionHandle:
        """
        Ask Razorpay for an order bound to our order and amount.

        ``amount`` must be the server-side order total.
        """
        currency = currency or self.currency
        amount_minor = to_minor_units(amount)
        receipt = order_number or f"order_{order_id}"

        try:
            gateway_order = self.client.order.create({
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "payment_capture": 1,
                "notes": {"order_id": str(order_id), **(notes or {})},
            })
        except (razorpay.errors.ServerError, razorpay.errors.GatewayError, razorpay.errors.BadRequestError) as e:
            logger.error(f"Razorpay rejected session for order {receipt}: {e}")
            raise GatewayUnavailable()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Razorpay unreachable for order {receipt}: {e}")
            raise GatewayUnavailable()

        logger.info(f"Created Razorpay order {gateway_order['id']} for {receipt} ({amount_minor} {currency})")

        return SessionHandle(
            order_id=order_id,
            order_number=receipt,
            gateway_order_id=gateway_order["id"],
            amount=Decimal(str(amount)),
            amount_minor=amount_minor,
            currency=currency,
            key_id=self.key_id,
        )

    def checkout_options(self, handle: SessionHandle, customer: CustomerInfo) -> dict:
        """Options for the Razorpay Checkout widget on the client."""
        return {
            "key": handle.key_id,
            "amount": handle.amount_minor,
            "currency": handle.currency,
            "name": self.store_name,
            "description": f"Order #{handle.order_number}",
            "order_id": handle.gateway_order_id,
            "prefill": {
                "name": customer.name,
                "email": customer.email,
                "contact": customer.phone or "",
            },
            "notes": {"order_number": handle.order_number},
        }

    async def present(self, handle: SessionHandle, customer: CustomerInfo, presenter: Presenter) -> GatewayOutcome:
        """
        Hand the session to the shopper and wait for the widget's answer.

        There is no timeout here: the shopper may take as long as they like
        or never come back. An abandoned session is settled later by the
        webhook or the reconciliation job.
        """
        response = await presenter(self.checkout_options(handle, customer))

        if not response:
            return GatewayOutcome(kind=USER_CANCELLED, reason="Payment cancelled by user")

        if "error" in response:
            error = response["error"] or {}
            return GatewayOutcome(
                kind=FAILURE,
                reason=error.get("description") or error.get("reason") or "Payment failed",
                details=error,
            )

        return GatewayOutcome(kind=SUCCESS, callback=CheckoutCallback.from_razorpay(response))

    # -------------------------
    # VERIFICATION
    # -------------------------
    def verify_signature(self, payload: PaymentProof) -> bool:
        if isinstance(payload, CheckoutCallback):
            return self._verify_checkout(payload)
        if isinstance(payload, WebhookDelivery):
            return self._verify_webhook(payload.body, payload.signature)
        if isinstance(payload, GatewayRecord):
            return self._verify_record(payload)
        return False

    def _verify_checkout(self, callback: CheckoutCallback) -> bool:
        if not self.key_secret or not callback.signature:
            return False
        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": callback.gateway_order_id,
                "razorpay_payment_id": callback.gateway_payment_id,
                "razorpay_signature": callback.signature,
            })
        except razorpay.errors.SignatureVerificationError:
            return False
        return True

    def _verify_webhook(self, body: bytes, signature: str) -> bool:
        if not self.webhook_secret:
            logger.error("Razorpay webhook secret not configured; rejecting webhook")
            return False
        if not signature:
            return False
        try:
            self.client.utility.verify_webhook_signature(
                body.decode("utf-8"), signature, self.webhook_secret
            )
        except razorpay.errors.SignatureVerificationError:
            return False
        return True

    def _verify_record(self, record: GatewayRecord) -> bool:
        try:
            payment = self.client.payment.fetch(record.gateway_payment_id)
        except razorpay.errors.BadRequestError as e:
            # unknown payment id for this account
            logger.warning(f"Razorpay has no payment {record.gateway_payment_id}: {e}")
            return False
        except (razorpay.errors.ServerError, razorpay.errors.GatewayError) as e:
            logger.error(f"Razorpay error fetching payment {record.gateway_payment_id}: {e}")
            raise GatewayUnavailable()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Razorpay unreachable fetching payment {record.gateway_payment_id}: {e}")
            raise GatewayUnavailable()
        return payment.get("order_id") == record.gateway_order_id and payment.get("status") == "captured"

    def parse_webhook(self, body: bytes, signature: str) -> WebhookDelivery:
        """Verify a webhook delivery and pull out the payment it is about."""
        if not self._verify_webhook(body, signature):
            logger.warning("Rejected Razorpay webhook with invalid signature")
            raise SignatureInvalid("Invalid webhook signature")

        data = json.loads(body)
        entity = (data.get("payload", {}).get("payment") or {}).get("entity") or {}

        return WebhookDelivery(
            body=body,
            signature=signature,
            event=data.get("event", ""),
            gateway_order_id=entity.get("order_id"),
            gateway_payment_id=entity.get("id"),
            amount_minor=entity.get("amount"),
            error_reason=entity.get("error_description") or entity.get("error_reason"),
        )

    # -------------------------
    # GATEWAY RECORDS
    # -------------------------
    def fetch_order_payments(self, gateway_order_id: str) -> list:
        try:
            result = self.client.order.payments(gateway_order_id)
        except (razorpay.errors.ServerError, razorpay.errors.GatewayError, razorpay.errors.BadRequestError) as e:
            logger.error(f"Razorpay error fetching payments for {gateway_order_id}: {e}")
            raise GatewayUnavailable()
        except requests.exceptions.RequestException as e:
            logger.warning(f"Razorpay unreachable fetching payments for {gateway_order_id}: {e}")
            raise GatewayUnavailable()
        return result.get("items", [])

    def refund(self, gateway_payment_id: str, amount: Decimal) -> dict:
        try:
            return self.client.payment.refund(gateway_payment_id, {"amount": to_minor_units(amount)})
        except (razorpay.errors.ServerError, razorpay.errors.GatewayError, razorpay.errors.BadRequestError) as e:
            logger.error(f"Razorpay refund failed for {gateway_payment_id}: {e}")
            raise GatewayUnavailable(f"Refund failed: {e}")
        except requests.exceptions.RequestException as e:
            logger.warning(f"Razorpay unreachable for refund {gateway_payment_id}: {e}")
            raise GatewayUnavailable()
