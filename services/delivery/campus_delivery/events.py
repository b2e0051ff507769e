"""
Campus Delivery — published event definitions

Facts announced on Redis after a command commits. Past-tense names,
immutable once published.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderCreated(BaseModel):
    """An order was placed and its stock reserved"""
    order_id: str
    customer_id: str
    subtotal_amount: Decimal
    total_amount: Decimal
    items: list[dict]
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """An order moved from one status to another"""
    order_id: str
    from_status: str
    to_status: str
    actor_type: str
    actor_id: str | None = None
    reason: str | None = None
    timestamp: datetime


class InventoryMoved(BaseModel):
    """A product's on-hand quantity changed"""
    product_id: str
    delta_quantity: int
    reason: str
    reference_type: str
    reference_id: str | None = None
    timestamp: datetime
