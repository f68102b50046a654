"""
Cart and order totals.

Everything here is pure: no database, no clock, no settings lookups. The
policy (tax rate, shipping rule) is passed in so the same numbers come out
when a cart is quoted, when the order is created and when it is displayed.
"""
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional, Protocol

ZERO = Decimal("0")
CENT = Decimal("0.01")
HUNDRED = Decimal("100")


class PricedLine(Protocol):
    unit_price: Decimal
    quantity: int


@dataclass(frozen=True)
class PricingPolicy:
    tax_rate: Decimal = Decimal("0.18")
    free_shipping_threshold: Decimal = Decimal("500")
    shipping_flat_rate: Decimal = Decimal("50")

    @classmethod
    def from_settings(cls, settings) -> "PricingPolicy":
        return cls(
            tax_rate=Decimal(str(settings.tax_rate)),
            free_shipping_threshold=Decimal(str(settings.free_shipping_threshold)),
            shipping_flat_rate=Decimal(str(settings.shipping_flat_rate)),
        )


@dataclass(frozen=True)
class CouponTerms:
    code: str
    percent_off: Decimal


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    discount_amount: Decimal
    total: Decimal
    coupon_code: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def calc_subtotal(line_items: Iterable[PricedLine]) -> Decimal:
    return _money(sum((Decimal(str(i.unit_price)) * i.quantity for i in line_items), ZERO))


def calc_tax(subtotal: Decimal, policy: PricingPolicy) -> Decimal:
    return _money(subtotal * policy.tax_rate)


def calc_shipping(subtotal: Decimal, policy: PricingPolicy) -> Decimal:
    if subtotal >= policy.free_shipping_threshold:
        return ZERO
    return _money(policy.shipping_flat_rate)


def calc_discount(subtotal: Decimal, coupon: Optional[CouponTerms]) -> Decimal:
    if coupon is None:
        return ZERO

    percent = min(max(Decimal(str(coupon.percent_off)), ZERO), HUNDRED)
    return min(_money(percent * subtotal / HUNDRED), subtotal)


def compute_totals(
    line_items: Iterable[PricedLine],
    coupon: Optional[CouponTerms] = None,
    policy: PricingPolicy = PricingPolicy(),
) -> PricingBreakdown:
    """
    Price a list of lines.

    ``coupon`` is the already-resolved coupon or None; unknown and expired
    codes resolve to None upstream and simply price without a discount.
    """
    line_items = list(line_items)
    if not line_items:
        return PricingBreakdown(ZERO, ZERO, ZERO, ZERO, ZERO)

    subtotal = calc_subtotal(line_items)
    tax = calc_tax(subtotal, policy)
    shipping = calc_shipping(subtotal, policy)
    discount = calc_discount(subtotal, coupon)
    total = max(subtotal + tax + shipping - discount, ZERO)

    return PricingBreakdown(
        subtotal=subtotal,
        tax_amount=tax,
        shipping_cost=shipping,
        discount_amount=discount,
        total=total,
        coupon_code=coupon.code if coupon and discount > ZERO else None,
    )
