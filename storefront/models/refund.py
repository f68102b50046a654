from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal


class RefundRequest(SQLModel, table=True):
    __tablename__ = "refund_request"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    payment_attempt_id: Optional[int] = Field(default=None, foreign_key="payment_attempt.id")
    gateway_payment_id: str = Field(index=True)

    amount: Decimal = Field(max_digits=12, decimal_places=2)
    reason: str
    requested_by: str = Field(default="system")

    status: str = Field(default="pending", index=True)  # pending | processed | failed
    gateway_refund_id: Optional[str] = None
    attempts: int = Field(default=0)
    last_error: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    processed_at: Optional[datetime] = None
