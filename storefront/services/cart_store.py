import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Callable, Iterable, List, Optional, Tuple
from uuid import uuid4

from storefront.errors import InsufficientStock, NotFound, ValidationError
from storefront.services.pricing import (
    CouponTerms,
    PricingBreakdown,
    PricingPolicy,
    compute_totals,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartLineItem:
    line_id: str
    product_id: int
    name: str
    unit_price: Decimal
    quantity: int
    image_ref: Optional[str] = None
    stock_hint: int = 0  # stock as last seen by the cart, not authoritative


CartListener = Callable[[Tuple[CartLineItem, ...]], None]


class CartStore:
    """
    Line items for one shopper.

    Instances are owned by whoever holds the session (a request, a test) and
    passed to the checkout flow explicitly. Every mutation is pushed to the
    subscribed listeners with the new snapshot of lines.
    """

    def __init__(
        self,
        cart_id: Optional[str] = None,
        items: Iterable[CartLineItem] = (),
        merged_sources: Iterable[str] = (),
    ):
        self.cart_id = cart_id or uuid4().hex
        self._items: List[CartLineItem] = list(items)
        self.merged_sources = set(merged_sources)
        self._listeners: List[CartListener] = []

    # -------------------------
    # OBSERVERS
    # -------------------------
    def subscribe(self, listener: CartListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self):
        snapshot = self.items
        for listener in list(self._listeners):
            listener(snapshot)

    # -------------------------
    # READS
    # -------------------------
    @property
    def items(self) -> Tuple[CartLineItem, ...]:
        return tuple(self._items)

    @property
    def is_empty(self) -> bool:
        return not self._items

    @property
    def item_count(self) -> int:
        return sum(i.quantity for i in self._items)

    def get(self, line_id: str) -> CartLineItem:
        for item in self._items:
            if item.line_id == line_id:
                return item
        raise NotFound("Cart item", line_id)

    def find_by_product(self, product_id: int) -> Optional[CartLineItem]:
        return next((i for i in self._items if i.product_id == product_id), None)

    def summary(self, policy: PricingPolicy, coupon: Optional[CouponTerms] = None) -> PricingBreakdown:
        return compute_totals(self._items, coupon, policy)

    # -------------------------
    # MUTATIONS
    # -------------------------
    def add(self, product, quantity: int = 1) -> CartLineItem:
        """Add ``quantity`` of a catalog product, merging with an existing line."""
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")

        stock = product.stock_quantity or 0
        existing = self.find_by_product(product.id)
        requested = quantity + (existing.quantity if existing else 0)
        new_quantity = min(requested, stock)

        if new_quantity < 1:
            raise InsufficientStock(product.id, requested, stock, product.name)

        if existing:
            line = replace(existing, quantity=new_quantity, stock_hint=stock)
            self._replace(line)
        else:
            line = CartLineItem(
                line_id=uuid4().hex,
                product_id=product.id,
                name=product.name,
                unit_price=Decimal(str(product.price)),
                quantity=new_quantity,
                image_ref=getattr(product, "image_url", None),
                stock_hint=stock,
            )
            self._items.append(line)

        if new_quantity < requested:
            logger.info(f"Clamped product {product.id} to stock {stock} (requested {requested})")

        self._changed()
        return line

    def set_quantity(self, line_id: str, quantity: int) -> CartLineItem:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")

        line = self.get(line_id)
        clamped = min(quantity, line.stock_hint) if line.stock_hint else quantity
        if clamped < 1:
            raise InsufficientStock(line.product_id, quantity, line.stock_hint, line.name)

        line = replace(line, quantity=clamped)
        self._replace(line)
        self._changed()
        return line

    def remove(self, line_id: str) -> None:
        line = self.get(line_id)
        self._items.remove(line)
        self._changed()

    def clear(self) -> None:
        self._items = []
        self._changed()

    def _replace(self, line: CartLineItem):
        self._items = [line if i.line_id == line.line_id else i for i in self._items]


def merge_on_login(anonymous: CartStore, account: CartStore) -> CartStore:
    """
    Fold an anonymous cart into the account cart, summing quantities per
    product and clamping to the best known stock.

    The anonymous cart id is remembered on the account cart, so merging the
    same anonymous cart again leaves the account cart as it is.
    """
    if anonymous.cart_id in account.merged_sources or anonymous.cart_id == account.cart_id:
        return account

    for line in anonymous.items:
        existing = account.find_by_product(line.product_id)
        if existing is None:
            account._items.append(line)
            continue

        stock = max(existing.stock_hint, line.stock_hint)
        quantity = existing.quantity + line.quantity
        if stock:
            quantity = min(quantity, stock)
        account._replace(replace(existing, quantity=quantity, stock_hint=stock))

    account.merged_sources.add(anonymous.cart_id)
    logger.info(f"Merged cart {anonymous.cart_id} into {account.cart_id} ({len(anonymous.items)} lines)")
    account._changed()
    return account
