from decimal import Decimal
from uuid import uuid4

from fastapi import APIRouter, Depends
from sqlmodel import Session

from storefront.database import get_session
from storefront.dependencies.payments import get_pricing_policy
from storefront.errors import ValidationError
from storefront.models.user import User
from storefront.schemas.cart_schemas import CartAddRequest, CartMergeRequest, CartUpdateRequest
from storefront.schemas.checkout_schemas import QuoteRequest
from storefront.services.cart_repository import load_account_cart
from storefront.services.cart_store import CartLineItem, CartStore, merge_on_login
from storefront.services.catalog import get_coupon, get_product
from storefront.services.pricing import PricingPolicy
from storefront.utils.token import get_current_user

router = APIRouter()


def serialize_cart(cart: CartStore, policy: PricingPolicy, coupon=None) -> dict:
    return {
        "cart_id": cart.cart_id,
        "items": [
            {
                "line_id": line.line_id,
                "product_id": line.product_id,
                "name": line.name,
                "unit_price": line.unit_price,
                "quantity": line.quantity,
                "image_ref": line.image_ref,
                "total": line.unit_price * line.quantity,
            }
            for line in cart.items
        ],
        "item_count": cart.item_count,
        "summary": cart.summary(policy, coupon).as_dict(),
    }


# View Cart

@router.get("")
def get_cart(
    session: Session = Depends(get_session),
    policy: PricingPolicy = Depends(get_pricing_policy),
    current_user: User = Depends(get_current_user),
):
    return serialize_cart(load_account_cart(session, current_user.id), policy)


# Add to Cart

@router.post("/add")
def add_to_cart(
    data: CartAddRequest,
    session: Session = Depends(get_session),
    policy: PricingPolicy = Depends(get_pricing_policy),
    current_user: User = Depends(get_current_user),
):
    product = get_product(session, data.product_id)
    cart = load_account_cart(session, current_user.id)
    line = cart.add(product, data.quantity)

    return {
        "message": "Added to cart",
        "line_id": line.line_id,
        "quantity": line.quantity,
        "cart": serialize_cart(cart, policy),
    }


@router.put("/update/{line_id}")
def update_cart_item(
    line_id: str,
    data: CartUpdateRequest,
    session: Session = Depends(get_session),
    policy: PricingPolicy = Depends(get_pricing_policy),
    current_user: User = Depends(get_current_user),
):
    cart = load_account_cart(session, current_user.id)
    line = cart.set_quantity(line_id, data.quantity)
    return {"message": "Cart updated", "quantity": line.quantity, "cart": serialize_cart(cart, policy)}


@router.delete("/remove/{line_id}")
def remove_cart_item(
    line_id: str,
    session: Session = Depends(get_session),
    policy: PricingPolicy = Depends(get_pricing_policy),
    current_user: User = Depends(get_current_user),
):
    cart = load_account_cart(session, current_user.id)
    cart.remove(line_id)
    return {"message": "Item removed", "cart": serialize_cart(cart, policy)}


@router.delete("/clear")
def clear_cart(
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    load_account_cart(session, current_user.id).clear()
    return {"message": "Cart cleared"}


@router.post("/merge")
def merge_cart(
    data: CartMergeRequest,
    session: Session = Depends(get_session),
    policy: PricingPolicy = Depends(get_pricing_policy),
    current_user: User = Depends(get_current_user),
):
    """Fold the cart a shopper built before logging in into their account cart."""
    lines = []
    for item in data.items:
        if item.quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")
        product = get_product(session, item.product_id)
        if not product.in_stock:
            continue
        lines.append(CartLineItem(
            line_id=uuid4().hex,
            product_id=product.id,
            name=product.name,
            unit_price=Decimal(str(product.price)),
            quantity=min(item.quantity, product.stock_quantity),
            image_ref=product.image_url,
            stock_hint=product.stock_quantity,
        ))

    account = load_account_cart(session, current_user.id)
    merge_on_login(CartStore(cart_id=data.cart_id, items=lines), account)
    return serialize_cart(account, policy)


@router.post("/quote")
def quote_cart(
    data: QuoteRequest,
    session: Session = Depends(get_session),
    policy: PricingPolicy = Depends(get_pricing_policy),
    current_user: User = Depends(get_current_user),
):
    coupon = get_coupon(session, data.coupon_code)
    cart = load_account_cart(session, current_user.id)
    return {
        "coupon_applied": coupon is not None,
        **serialize_cart(cart, policy, coupon),
    }
