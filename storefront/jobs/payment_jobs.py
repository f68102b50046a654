"""
Periodic payment housekeeping, meant to run from cron:

    python -m storefront.jobs.payment_jobs reconcile
    python -m storefront.jobs.payment_jobs refunds
"""
import logging
import sys

from sqlmodel import Session

from storefront.config import settings
from storefront.database import engine
from storefront.services.payment_gateway import PaymentGatewayAdapter
from storefront.services.pricing import PricingPolicy
from storefront.services.reconciliation import reconcile_pending_orders
from storefront.services.refund_service import process_pending_refunds

logger = logging.getLogger(__name__)


def run_reconciliation() -> dict:
    with Session(engine) as session:
        return reconcile_pending_orders(
            session,
            PaymentGatewayAdapter.from_settings(settings),
            PricingPolicy.from_settings(settings),
            min_age_minutes=settings.reconcile_min_age_minutes,
            expiry_minutes=settings.payment_expiry_minutes,
        )


def run_refunds() -> dict:
    with Session(engine) as session:
        return process_pending_refunds(session, PaymentGatewayAdapter.from_settings(settings))


JOBS = {
    "reconcile": run_reconciliation,
    "refunds": run_refunds,
}


if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    names = sys.argv[1:] or list(JOBS)
    for name in names:
        if name not in JOBS:
            sys.exit(f"Unknown job {name!r}; choose from {', '.join(JOBS)}")
        print(f"{name}: {JOBS[name]()}")
