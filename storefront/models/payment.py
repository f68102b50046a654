from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal


class PaymentAttempt(SQLModel, table=True):
    """One gateway session for an order. An order may have several."""
    __tablename__ = "payment_attempt"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)

    gateway_order_id: str = Field(index=True, unique=True)
    gateway_payment_id: Optional[str] = Field(default=None, index=True, unique=True)
    signature: Optional[str] = None

    amount: Decimal = Field(max_digits=12, decimal_places=2)
    currency: str = Field(default="INR")

    outcome: str = Field(default="created")  # created | paid | failed | duplicate | late | mismatch
    source: Optional[str] = None             # client | webhook | reconcile
    failure_reason: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
