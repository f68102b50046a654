from functools import lru_cache

from fastapi import Depends, Request
from sqlmodel import Session

from storefront.config import settings
from storefront.database import get_session
from storefront.services.checkout import CheckoutOrchestrator
from storefront.services.payment_gateway import PaymentGatewayAdapter
from storefront.services.pricing import PricingPolicy


@lru_cache
def get_gateway() -> PaymentGatewayAdapter:
    return PaymentGatewayAdapter.from_settings(settings)


def get_pricing_policy() -> PricingPolicy:
    return PricingPolicy.from_settings(settings)


def get_checkout(
    session: Session = Depends(get_session),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    policy: PricingPolicy = Depends(get_pricing_policy),
) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(session, gateway, policy)


async def raw_body(request: Request) -> bytes:
    # webhook signatures are computed over the exact bytes received
    return await request.body()
