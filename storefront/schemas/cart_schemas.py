from typing import List

from sqlmodel import SQLModel


class CartAddRequest(SQLModel):
    product_id: int
    quantity: int = 1

class CartUpdateRequest(SQLModel):
    quantity: int


class AnonymousCartLine(SQLModel):
    product_id: int
    quantity: int


class CartMergeRequest(SQLModel):
    cart_id: str
    items: List[AnonymousCartLine] = []
