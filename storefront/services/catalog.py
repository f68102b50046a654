from datetime import datetime
from typing import Optional

from sqlmodel import Session, select

from storefront.errors import NotFound
from storefront.models.coupon import Coupon
from storefront.models.product import Product
from storefront.services.pricing import CouponTerms


def get_product(session: Session, product_id: int) -> Product:
    """Live catalog record; price and stock_quantity are authoritative."""
    product = session.get(Product, product_id)
    if not product or not product.is_active:
        raise NotFound("Product", product_id)
    return product


def get_coupon(session: Session, code: Optional[str], now: Optional[datetime] = None) -> Optional[CouponTerms]:
    """Resolve a coupon code. Unknown, inactive and expired codes give None."""
    if not code:
        return None

    coupon = session.exec(
        select(Coupon).where(Coupon.code == code.strip().upper())
    ).first()

    if not coupon or not coupon.is_active:
        return None

    now = now or datetime.utcnow()
    if coupon.expires_at and coupon.expires_at <= now:
        return None

    return CouponTerms(code=coupon.code, percent_off=coupon.percent_off)
