from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from typing import Optional
from datetime import datetime
from decimal import Decimal


class CartItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    line_id: str = Field(index=True)
    product_id: int = Field(foreign_key="product.id")

    # snapshot taken when the product was added
    name: str
    unit_price: Decimal = Field(max_digits=10, decimal_places=2)
    image_ref: Optional[str] = None

    quantity: int = 1
    stock_hint: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)


class CartMerge(SQLModel, table=True):
    """Anonymous carts already folded into an account cart."""
    __tablename__ = "cart_merge"
    __table_args__ = (UniqueConstraint("user_id", "source_cart_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    source_cart_id: str
    merged_at: datetime = Field(default_factory=datetime.utcnow)
