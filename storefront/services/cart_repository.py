from sqlmodel import Session, select

from storefront.models.cart import CartItem, CartMerge
from storefront.services.cart_store import CartLineItem, CartStore


def account_cart_id(user_id: int) -> str:
    return f"user-{user_id}"


def load_cart(session: Session, user_id: int) -> CartStore:
    rows = session.exec(
        select(CartItem)
        .where(CartItem.user_id == user_id)
        .order_by(CartItem.created_at, CartItem.id)
    ).all()

    merged = session.exec(
        select(CartMerge.source_cart_id).where(CartMerge.user_id == user_id)
    ).all()

    return CartStore(
        cart_id=account_cart_id(user_id),
        items=[
            CartLineItem(
                line_id=row.line_id,
                product_id=row.product_id,
                name=row.name,
                unit_price=row.unit_price,
                quantity=row.quantity,
                image_ref=row.image_ref,
                stock_hint=row.stock_hint,
            )
            for row in rows
        ],
        merged_sources=merged,
    )


def save_cart(session: Session, user_id: int, cart: CartStore):
    existing = session.exec(
        select(CartItem).where(CartItem.user_id == user_id)
    ).all()
    by_line = {row.line_id: row for row in existing}
    keep = set()

    for line in cart.items:
        keep.add(line.line_id)
        row = by_line.get(line.line_id)
        if row is None:
            row = CartItem(user_id=user_id, line_id=line.line_id, product_id=line.product_id,
                           name=line.name, unit_price=line.unit_price)
        row.quantity = line.quantity
        row.stock_hint = line.stock_hint
        row.image_ref = line.image_ref
        session.add(row)

    for line_id, row in by_line.items():
        if line_id not in keep:
            session.delete(row)

    known = set(session.exec(
        select(CartMerge.source_cart_id).where(CartMerge.user_id == user_id)
    ).all())
    for source in cart.merged_sources - known:
        session.add(CartMerge(user_id=user_id, source_cart_id=source))

    session.commit()


def load_account_cart(session: Session, user_id: int) -> CartStore:
    """Account cart that writes itself back on every change."""
    cart = load_cart(session, user_id)
    cart.subscribe(lambda _items: save_cart(session, user_id, cart))
    return cart
