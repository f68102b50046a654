from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class OrderEvent(SQLModel, table=True):
    """One entry in an order's timeline. Rows are only ever inserted."""

    __tablename__ = "order_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)

    # order_placed, payment_success, status_changed, refund_processed, ...
    event_type: str = Field(index=True, max_length=40)
    label: str
    meta: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    # "system", "admin", "webhook" or "user:<id>"
    created_by: str = Field(default="system", max_length=60)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
