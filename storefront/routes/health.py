import logging
from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, func, select, text

from storefront.config import settings
from storefront.database import get_session
from storefront.models.refund import RefundRequest

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
def health_check(session: Session = Depends(get_session)):
    db_status = "ok"
    refunds_pending = None

    try:
        session.exec(text("SELECT 1"))
        refunds_pending = session.exec(
            select(func.count()).select_from(RefundRequest).where(RefundRequest.status == "pending")
        ).one()
    except SQLAlchemyError as e:
        logger.warning(f"Health check database ping failed: {e}")
        db_status = "failed"

    gateway_ready = bool(
        settings.razorpay_key_id and settings.razorpay_key_secret and settings.razorpay_webhook_secret
    )

    return {
        "status": "ok" if db_status == "ok" else "degraded",
        "database": db_status,
        "payments": "configured" if gateway_ready else "missing_keys",
        "refunds_pending": refunds_pending,
        "timestamp": datetime.utcnow().isoformat(),
    }
