"""
Campus Delivery — command outcomes

Every command returns either its success model or ``Rejected``. Rejections
are normal results (bad input, business rules, lost races), not errors.

Two conditions are raised instead of returned, because the transaction has
to unwind: ``InsufficientStock`` (commands translate it to OUT_OF_STOCK) and
``InventoryRowMissing`` (integrity failure, propagates to the caller).
"""

from enum import Enum

from pydantic import BaseModel


class FailureKind(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"

    ADDRESS_NOT_FOUND = "ADDRESS_NOT_FOUND"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    RIDER_NOT_FOUND = "RIDER_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    INVENTORY_NOT_FOUND = "INVENTORY_NOT_FOUND"

    PRODUCT_INACTIVE = "PRODUCT_INACTIVE"
    RIDER_INACTIVE = "RIDER_INACTIVE"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    INVENTORY_ALREADY_EXISTS = "INVENTORY_ALREADY_EXISTS"

    ORDER_ALREADY_ASSIGNED = "ORDER_ALREADY_ASSIGNED"
    ORDER_STATUS_INVALID = "ORDER_STATUS_INVALID"
    ORDER_NOT_ASSIGNED = "ORDER_NOT_ASSIGNED"
    ORDER_NOT_ASSIGNED_TO_RIDER = "ORDER_NOT_ASSIGNED_TO_RIDER"
    ALREADY_CANCELLED = "ALREADY_CANCELLED"
    ORDER_NOT_CANCELLABLE = "ORDER_NOT_CANCELLABLE"


class Rejected(BaseModel):
    kind: FailureKind
    product_id: str | None = None
    detail: str | None = None


class OrderPlaced(BaseModel):
    order: dict
    items: list[dict]
    address: dict


class Transitioned(BaseModel):
    order_id: str
    from_status: str
    to_status: str
    payment_id: str | None = None


class StockChanged(BaseModel):
    inventory: dict


class Rejection(Exception):
    """Unwinds a command's transaction and carries the result to return."""

    def __init__(self, kind: FailureKind, product_id: str | None = None, detail: str | None = None):
        super().__init__(kind.value)
        self.rejected = Rejected(kind=kind, product_id=product_id, detail=detail)


class InsufficientStock(Exception):
    def __init__(self, product_id: str):
        super().__init__(f"insufficient stock for product {product_id}")
        self.product_id = product_id


class InventoryRowMissing(Exception):
    def __init__(self, product_id: str):
        super().__init__(f"inventory row missing for product {product_id}")
        self.product_id = product_id
