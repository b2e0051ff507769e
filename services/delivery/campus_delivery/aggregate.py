"""
Campus Delivery — order aggregate and inventory ledger

The order row holds the current status; the order_events table holds every
transition. Replaying the events must land on the same status as the row.
Likewise an inventory row's quantity is the sum of its movement deltas.

State transitions:
    CREATED → CONFIRMED → ASSIGNED_RIDER → OUT_FOR_DELIVERY → DELIVERED
    any non-terminal state → CANCELLED
    DELIVERED → REFUNDED
"""

from enum import Enum


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    PAID = "PAID"
    CONFIRMED = "CONFIRMED"
    ASSIGNED_RIDER = "ASSIGNED_RIDER"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class ActorType(str, Enum):
    ADMIN = "ADMIN"
    RIDER = "RIDER"
    CUSTOMER = "CUSTOMER"
    SYSTEM = "SYSTEM"


class MovementReason(str, Enum):
    INITIAL_STOCK = "INITIAL_STOCK"
    PURCHASE = "PURCHASE"
    ADJUSTMENT = "ADJUSTMENT"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ORDER_PLACED = "ORDER_PLACED"


# Reasons an admin may attach to a manual stock change. ORDER_PLACED rows
# are written only by order placement.
ADMIN_MOVEMENT_REASONS = frozenset(
    {
        MovementReason.INITIAL_STOCK,
        MovementReason.PURCHASE,
        MovementReason.ADJUSTMENT,
        MovementReason.ORDER_CANCELLED,
    }
)


class ReferenceType(str, Enum):
    ORDER = "ORDER"
    PURCHASE = "PURCHASE"
    ADJUSTMENT = "ADJUSTMENT"


class PaymentStatus(str, Enum):
    INITIATED = "INITIATED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


# Riders claim only after an admin has confirmed the order.
CLAIMABLE_STATUS = OrderStatus.CONFIRMED

TERMINAL_STATUSES = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
)

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset(
        {OrderStatus.ASSIGNED_RIDER, OrderStatus.CANCELLED}
    ),
    OrderStatus.ASSIGNED_RIDER: frozenset(
        {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED}
    ),
    OrderStatus.OUT_FOR_DELIVERY: frozenset(
        {OrderStatus.DELIVERED, OrderStatus.CANCELLED}
    ),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

# Named filters accepted by the order list endpoints.
STATUS_FILTERS: dict[str, list[OrderStatus]] = {
    "current": [
        OrderStatus.CREATED,
        OrderStatus.PAID,
        OrderStatus.CONFIRMED,
        OrderStatus.ASSIGNED_RIDER,
        OrderStatus.OUT_FOR_DELIVERY,
    ],
    "cancelled": [OrderStatus.CANCELLED],
    "completed": [OrderStatus.DELIVERED],
}
STATUS_FILTER_ALIASES = {
    "current": "current",
    "active": "current",
    "ongoing": "current",
    "open": "current",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "completed": "completed",
    "done": "completed",
    "closed": "completed",
}


def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    return to_status in TRANSITIONS.get(OrderStatus(from_status), frozenset())


def is_cancellable(status: OrderStatus) -> bool:
    return OrderStatus.CANCELLED in TRANSITIONS[OrderStatus(status)]


class OrderAggregate:
    """
    Order status rebuilt from its event log.

    Every order starts in CREATED; each event moves it from from_status to
    to_status. An event whose from_status does not match the replayed status
    means the log and the order row have diverged.
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.status: OrderStatus = OrderStatus.CREATED
        self.version: int = 0
        self.history: list[tuple[OrderStatus, OrderStatus]] = []

    def apply_event(self, event: dict) -> None:
        from_status = OrderStatus(event["from_status"])
        to_status = OrderStatus(event["to_status"])
        if from_status != self.status:
            raise ValueError(
                f"event log diverged at version {event['version']}: "
                f"expected {self.status.value}, got {from_status.value}"
            )
        self.status = to_status
        self.version = event["version"]
        self.history.append((from_status, to_status))

    @classmethod
    def from_events(cls, order_id: str, events: list[dict]) -> "OrderAggregate":
        """Replay events (any order) by version."""
        agg = cls()
        agg.id = order_id
        for e in sorted(events, key=lambda e: e["version"]):
            agg.apply_event(e)
        return agg


class InventoryLedger:
    """On-hand quantity per product, summed from movement rows."""

    def __init__(self) -> None:
        self.quantities: dict[str, int] = {}

    def apply_movement(self, movement: dict) -> None:
        pid = movement["product_id"]
        self.quantities[pid] = self.quantities.get(pid, 0) + movement["delta_quantity"]

    def quantity(self, product_id: str) -> int:
        return self.quantities.get(product_id, 0)

    @classmethod
    def from_movements(cls, movements: list[dict]) -> "InventoryLedger":
        ledger = cls()
        for m in movements:
            ledger.apply_movement(m)
        return ledger
