"""
Campus Delivery — order command handlers (write side)

Each command is one transaction on the given session:

    place_order            CREATED        (reserves stock)
    confirm_order          CREATED/PAID      → CONFIRMED
    accept_order           CONFIRMED         → ASSIGNED_RIDER
    mark_out_for_delivery  ASSIGNED_RIDER    → OUT_FOR_DELIVERY
    mark_delivered         OUT_FOR_DELIVERY  → DELIVERED  (COD payment)
    cancel_order           non-terminal      → CANCELLED  (restores stock)

A rule violation raises Rejection inside the transaction; the handler rolls
back and returns the Rejected result. Events go to Redis after commit.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import inventory, queries
from .aggregate import (
    CLAIMABLE_STATUS,
    ActorType,
    MovementReason,
    OrderStatus,
    PaymentStatus,
    ReferenceType,
    is_cancellable,
)
from .config import DEFAULT_DELIVERY_FEE, ORDER_EVENTS_CHANNEL
from .db import MAX_INT, MAX_MONEY, MONEY, PERCENT, money
from .event_store import try_transition
from .events import OrderCreated, OrderStatusChanged
from .outcomes import (
    FailureKind,
    InsufficientStock,
    OrderPlaced,
    Rejected,
    Rejection,
    Transitioned,
)
from .publisher import publish

logger = logging.getLogger(__name__)

COD_PROVIDER = "COD"

# Statuses that imply a rider already holds the order.
CLAIMED_STATUSES = frozenset(
    {
        OrderStatus.ASSIGNED_RIDER,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
        OrderStatus.REFUNDED,
    }
)


# ── Order placement ──────────────────────────────


def price_line(unit_price: Decimal, quantity: int, discount_percent: Decimal) -> Decimal:
    """unit × qty × (1 − discount/100), rounded to cents half-up."""
    factor = Decimal(1) - Decimal(discount_percent) / Decimal(100)
    return money(Decimal(unit_price) * quantity * factor)


def _validate_items(items) -> list[dict]:
    if not items:
        raise Rejection(FailureKind.VALIDATION_FAILED, detail="items are required")
    lines = []
    for item in items:
        product_id = str(item.get("product_id") or "").strip()
        quantity = item.get("quantity")
        if not product_id:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail="product_id is required")
        if isinstance(quantity, str) and quantity.strip().isdigit():
            quantity = int(quantity.strip())
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise Rejection(
                FailureKind.VALIDATION_FAILED,
                product_id=product_id,
                detail="quantity must be a positive integer",
            )
        lines.append({"product_id": product_id, "quantity": quantity})
    lines = inventory.normalize_items(lines)
    for li in lines:
        if li["quantity"] > MAX_INT:
            raise Rejection(
                FailureKind.VALIDATION_FAILED,
                product_id=li["product_id"],
                detail="quantity is too large",
            )
    return lines


def _validate_fee(delivery_fee) -> Decimal:
    if delivery_fee is None or (isinstance(delivery_fee, str) and not delivery_fee.strip()):
        return money(DEFAULT_DELIVERY_FEE)
    try:
        fee = Decimal(str(delivery_fee).strip())
    except InvalidOperation:
        raise Rejection(FailureKind.VALIDATION_FAILED, detail="delivery_fee must be a number")
    if not fee.is_finite() or fee < 0:
        raise Rejection(FailureKind.VALIDATION_FAILED, detail="delivery_fee must be non-negative")
    if fee > MAX_MONEY:
        raise Rejection(FailureKind.VALIDATION_FAILED, detail="delivery_fee is too large")
    return money(fee)


async def _resolve_address(
    session: AsyncSession,
    customer_id: str,
    address_id: str | None,
    address: dict | None,
) -> dict:
    if address_id:
        result = await session.execute(
            text("""
                SELECT label, line1, line2 FROM addresses
                WHERE id = :id AND customer_id = :customer_id
            """),
            {"id": address_id, "customer_id": customer_id},
        )
        row = result.fetchone()
        if not row:
            raise Rejection(FailureKind.ADDRESS_NOT_FOUND)
        return {"label": row.label, "line1": row.line1, "line2": row.line2}
    return {
        "label": (address or {}).get("label"),
        "line1": (address or {}).get("line1"),
        "line2": (address or {}).get("line2"),
    }


async def place_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    customer_id: str,
    items: list[dict],
    address_id: str | None = None,
    address: dict | None = None,
    delivery_fee=None,
) -> OrderPlaced | Rejected:
    """
    Price the cart, reserve its stock and persist the order.

    1. Validate items, destination and fee
    2. Resolve the destination to a snapshot
    3. Batch-read price, discount, active flag and stock
    4. Reject missing, inactive or short products
    5. Reserve (a concurrent order may still win the stock here)
    6. Insert order, address, items and ORDER_PLACED movements

    Rejections: VALIDATION_FAILED, CUSTOMER_NOT_FOUND, ADDRESS_NOT_FOUND,
    PRODUCT_NOT_FOUND, PRODUCT_INACTIVE, OUT_OF_STOCK.
    """
    order_id = str(uuid4())
    movement = inventory.Movement(
        reason=MovementReason.ORDER_PLACED,
        reference_type=ReferenceType.ORDER,
        reference_id=order_id,
        actor_type=ActorType.CUSTOMER,
        actor_id=customer_id,
    )

    try:
        lines = _validate_items(items)
        fee = _validate_fee(delivery_fee)
        line1 = str((address or {}).get("line1") or "").strip()
        if not address_id and not line1:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail="address is required")

        found = await session.execute(
            text("SELECT id FROM customers WHERE id = :id"), {"id": customer_id}
        )
        if found.fetchone() is None:
            raise Rejection(FailureKind.CUSTOMER_NOT_FOUND)

        snapshot = await _resolve_address(session, customer_id, address_id, address)

        catalog = await queries.fetch_catalog(session, [li["product_id"] for li in lines])
        for li in lines:
            product = catalog.get(li["product_id"])
            if product is None:
                raise Rejection(FailureKind.PRODUCT_NOT_FOUND, product_id=li["product_id"])
            if not product["is_active"]:
                raise Rejection(FailureKind.PRODUCT_INACTIVE, product_id=li["product_id"])
            if product["quantity"] < li["quantity"]:
                raise Rejection(FailureKind.OUT_OF_STOCK, product_id=li["product_id"])

        try:
            await inventory.reserve(session, lines)
        except InsufficientStock as exc:
            raise Rejection(FailureKind.OUT_OF_STOCK, product_id=exc.product_id)

        priced = []
        for li in lines:
            product = catalog[li["product_id"]]
            priced.append(
                {
                    "id": str(uuid4()),
                    "product_id": li["product_id"],
                    "product_name": product["product_name"],
                    "quantity": li["quantity"],
                    "unit_price": product["selling_price"],
                    "discount_percent": product["discount_percent"],
                    "final_price": price_line(
                        product["selling_price"], li["quantity"], product["discount_percent"]
                    ),
                }
            )
        subtotal = money(sum((p["final_price"] for p in priced), Decimal("0")))
        total = money(subtotal + fee)
        if total > MAX_MONEY:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail="order total is too large")

        try:
            await session.execute(
                text("""
                    INSERT INTO orders
                        (id, customer_id, status, delivery_fee, subtotal_amount, total_amount)
                    VALUES
                        (:id, :customer_id, :status, :fee, :subtotal, :total)
                """).bindparams(
                    bindparam("fee", type_=MONEY),
                    bindparam("subtotal", type_=MONEY),
                    bindparam("total", type_=MONEY),
                ),
                {
                    "id": order_id,
                    "customer_id": customer_id,
                    "status": OrderStatus.CREATED.value,
                    "fee": fee,
                    "subtotal": subtotal,
                    "total": total,
                },
            )
        except IntegrityError:
            # Customer removed after the lookup above.
            raise Rejection(FailureKind.CUSTOMER_NOT_FOUND)
        await session.execute(
            text("""
                INSERT INTO order_addresses (order_id, label, line1, line2)
                VALUES (:order_id, :label, :line1, :line2)
            """),
            {"order_id": order_id, **snapshot},
        )
        for p in priced:
            await session.execute(
                text("""
                    INSERT INTO order_items
                        (id, order_id, product_id, quantity, unit_price,
                         discount_percent, final_price)
                    VALUES
                        (:id, :order_id, :product_id, :quantity, :unit_price,
                         :discount_percent, :final_price)
                """).bindparams(
                    bindparam("unit_price", type_=MONEY),
                    bindparam("discount_percent", type_=PERCENT),
                    bindparam("final_price", type_=MONEY),
                ),
                {
                    "id": p["id"],
                    "order_id": order_id,
                    "product_id": p["product_id"],
                    "quantity": p["quantity"],
                    "unit_price": p["unit_price"],
                    "discount_percent": p["discount_percent"],
                    "final_price": p["final_price"],
                },
            )
        await inventory.record_movements(session, lines, movement, sign=-1)
    except Rejection as exc:
        await session.rollback()
        logger.info(
            "order rejected for customer %s: %s %s",
            customer_id, exc.rejected.kind.value, exc.rejected.product_id or "",
        )
        return exc.rejected

    await session.commit()
    logger.info("order %s created for customer %s, total %s", order_id, customer_id, total)

    items_out = [
        {
            "product_id": p["product_id"],
            "product_name": p["product_name"],
            "quantity": p["quantity"],
            "unit_price": str(p["unit_price"]),
            "discount_percent": str(p["discount_percent"]),
            "final_price": str(p["final_price"]),
        }
        for p in priced
    ]

    await publish(
        redis,
        ORDER_EVENTS_CHANNEL,
        OrderCreated(
            order_id=order_id,
            customer_id=customer_id,
            subtotal_amount=subtotal,
            total_amount=total,
            items=items_out,
            timestamp=datetime.now(timezone.utc),
        ),
    )
    await inventory.publish_movements(redis, lines, movement, sign=-1)

    order = await queries.get_order_summary(session, order_id)
    return OrderPlaced(order=order, items=items_out, address=snapshot)


# ── Status transitions ───────────────────────────


async def _load_status(session: AsyncSession, order_id: str) -> OrderStatus | None:
    result = await session.execute(
        text("SELECT status FROM orders WHERE id = :id"), {"id": order_id}
    )
    row = result.fetchone()
    return OrderStatus(row.status) if row else None


async def _announce(
    redis: aioredis.Redis | None,
    done: Transitioned,
    actor_type: ActorType,
    actor_id: str | None,
    reason: str | None = None,
) -> None:
    await publish(
        redis,
        ORDER_EVENTS_CHANNEL,
        OrderStatusChanged(
            order_id=done.order_id,
            from_status=done.from_status,
            to_status=done.to_status,
            actor_type=actor_type.value,
            actor_id=actor_id,
            reason=reason,
            timestamp=datetime.now(timezone.utc),
        ),
    )


async def confirm_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    admin_id: str,
) -> Transitioned | Rejected:
    """
    Admin gate before riders may claim.

    Rejections: ORDER_NOT_FOUND, ORDER_STATUS_INVALID.
    """
    try:
        status = await _load_status(session, order_id)
        if status is None:
            raise Rejection(FailureKind.ORDER_NOT_FOUND)
        if status not in (OrderStatus.CREATED, OrderStatus.PAID):
            raise Rejection(FailureKind.ORDER_STATUS_INVALID, detail=status.value)
        if not await try_transition(
            session, order_id, status, OrderStatus.CONFIRMED, ActorType.ADMIN, admin_id
        ):
            raise Rejection(FailureKind.ORDER_STATUS_INVALID)
    except Rejection as exc:
        await session.rollback()
        return exc.rejected

    await session.commit()
    done = Transitioned(
        order_id=order_id, from_status=status.value, to_status=OrderStatus.CONFIRMED.value
    )
    await _announce(redis, done, ActorType.ADMIN, admin_id)
    return done


async def accept_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    rider_id: str,
) -> Transitioned | Rejected:
    """
    Rider claims a confirmed order.

    Two guards, both required: the status update only matches a CONFIRMED
    row, and rider_assignments.order_id is a primary key. Losing either
    one rolls the whole claim back.

    Rejections: RIDER_NOT_FOUND, RIDER_INACTIVE, ORDER_NOT_FOUND,
    ORDER_STATUS_INVALID, ORDER_ALREADY_ASSIGNED.
    """
    try:
        result = await session.execute(
            text("SELECT id, is_active FROM riders WHERE id = :id"), {"id": rider_id}
        )
        rider = result.fetchone()
        if not rider:
            raise Rejection(FailureKind.RIDER_NOT_FOUND)
        if not rider.is_active:
            raise Rejection(FailureKind.RIDER_INACTIVE)

        status = await _load_status(session, order_id)
        if status is None:
            raise Rejection(FailureKind.ORDER_NOT_FOUND)
        if status != CLAIMABLE_STATUS and status not in CLAIMED_STATUSES:
            raise Rejection(FailureKind.ORDER_STATUS_INVALID, detail=status.value)

        claimed = await try_transition(
            session,
            order_id,
            CLAIMABLE_STATUS,
            OrderStatus.ASSIGNED_RIDER,
            ActorType.RIDER,
            rider_id,
        )
        if not claimed:
            raise Rejection(FailureKind.ORDER_ALREADY_ASSIGNED)

        try:
            await session.execute(
                text("""
                    INSERT INTO rider_assignments (order_id, rider_id)
                    VALUES (:order_id, :rider_id)
                """),
                {"order_id": order_id, "rider_id": rider_id},
            )
        except IntegrityError:
            raise Rejection(FailureKind.ORDER_ALREADY_ASSIGNED)
    except Rejection as exc:
        await session.rollback()
        logger.info("rider %s could not claim order %s: %s", rider_id, order_id, exc.rejected.kind.value)
        return exc.rejected

    await session.commit()
    logger.info("order %s claimed by rider %s", order_id, rider_id)

    done = Transitioned(
        order_id=order_id,
        from_status=CLAIMABLE_STATUS.value,
        to_status=OrderStatus.ASSIGNED_RIDER.value,
    )
    await _announce(redis, done, ActorType.RIDER, rider_id)
    return done


async def _assigned_order(session: AsyncSession, order_id: str, rider_id: str, expected: OrderStatus):
    """Load the order and check it belongs to the rider and sits in ``expected``."""
    result = await session.execute(
        text("""
            SELECT o.id, o.status, o.total_amount, ra.rider_id AS assigned_rider_id
            FROM orders o
            LEFT JOIN rider_assignments ra ON ra.order_id = o.id
            WHERE o.id = :id
        """),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        raise Rejection(FailureKind.ORDER_NOT_FOUND)
    if not row.assigned_rider_id:
        raise Rejection(FailureKind.ORDER_NOT_ASSIGNED)
    if row.assigned_rider_id != rider_id:
        raise Rejection(FailureKind.ORDER_NOT_ASSIGNED_TO_RIDER)
    if row.status != expected.value:
        raise Rejection(FailureKind.ORDER_STATUS_INVALID, detail=row.status)
    return row


async def mark_out_for_delivery(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    rider_id: str,
) -> Transitioned | Rejected:
    """
    Rejections: ORDER_NOT_FOUND, ORDER_NOT_ASSIGNED,
    ORDER_NOT_ASSIGNED_TO_RIDER, ORDER_STATUS_INVALID.
    """
    try:
        await _assigned_order(session, order_id, rider_id, OrderStatus.ASSIGNED_RIDER)
        if not await try_transition(
            session,
            order_id,
            OrderStatus.ASSIGNED_RIDER,
            OrderStatus.OUT_FOR_DELIVERY,
            ActorType.RIDER,
            rider_id,
        ):
            raise Rejection(FailureKind.ORDER_STATUS_INVALID)
    except Rejection as exc:
        await session.rollback()
        return exc.rejected

    await session.commit()
    done = Transitioned(
        order_id=order_id,
        from_status=OrderStatus.ASSIGNED_RIDER.value,
        to_status=OrderStatus.OUT_FOR_DELIVERY.value,
    )
    await _announce(redis, done, ActorType.RIDER, rider_id)
    return done


async def mark_delivered(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    rider_id: str,
) -> Transitioned | Rejected:
    """
    Complete delivery and settle cash on delivery.

    The payment row is written in the same transaction as the transition.

    Rejections: ORDER_NOT_FOUND, ORDER_NOT_ASSIGNED,
    ORDER_NOT_ASSIGNED_TO_RIDER, ORDER_STATUS_INVALID.
    """
    payment_id = str(uuid4())
    try:
        row = await _assigned_order(session, order_id, rider_id, OrderStatus.OUT_FOR_DELIVERY)
        if not await try_transition(
            session,
            order_id,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
            ActorType.RIDER,
            rider_id,
        ):
            raise Rejection(FailureKind.ORDER_STATUS_INVALID)

        await session.execute(
            text("""
                INSERT INTO payments (id, order_id, amount, status, provider, provider_ref)
                VALUES (:id, :order_id, :amount, :status, :provider, NULL)
            """).bindparams(bindparam("amount", type_=MONEY)),
            {
                "id": payment_id,
                "order_id": order_id,
                "amount": money(row.total_amount),
                "status": PaymentStatus.SUCCESS.value,
                "provider": COD_PROVIDER,
            },
        )
    except Rejection as exc:
        await session.rollback()
        return exc.rejected

    await session.commit()
    logger.info("order %s delivered by rider %s, COD %s", order_id, rider_id, money(row.total_amount))

    done = Transitioned(
        order_id=order_id,
        from_status=OrderStatus.OUT_FOR_DELIVERY.value,
        to_status=OrderStatus.DELIVERED.value,
        payment_id=payment_id,
    )
    await _announce(redis, done, ActorType.RIDER, rider_id)
    return done


# ── Cancellation ─────────────────────────────────


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    actor_type: ActorType,
    actor_id: str | None,
    reason: str | None,
) -> Transitioned | Rejected:
    """
    Cancel an order and put its stock back.

    Every restored product gets an ORDER_CANCELLED ledger row. A missing
    inventory row raises InventoryRowMissing and nothing is committed.

    Rejections: VALIDATION_FAILED, ORDER_NOT_FOUND, ALREADY_CANCELLED,
    ORDER_NOT_CANCELLABLE, ORDER_STATUS_INVALID.
    """
    actor_type = ActorType(actor_type)
    reason = (reason or "").strip()
    movement = inventory.Movement(
        reason=MovementReason.ORDER_CANCELLED,
        reference_type=ReferenceType.ORDER,
        reference_id=order_id,
        actor_type=actor_type,
        actor_id=actor_id,
    )

    try:
        if not reason:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail="reason is required")

        status = await _load_status(session, order_id)
        if status is None:
            raise Rejection(FailureKind.ORDER_NOT_FOUND)
        if status == OrderStatus.CANCELLED:
            raise Rejection(FailureKind.ALREADY_CANCELLED)
        if not is_cancellable(status):
            raise Rejection(FailureKind.ORDER_NOT_CANCELLABLE, detail=status.value)

        if not await try_transition(
            session, order_id, status, OrderStatus.CANCELLED, actor_type, actor_id, reason
        ):
            # Someone moved the order first; classify what it is now.
            current = await _load_status(session, order_id)
            if current == OrderStatus.CANCELLED:
                raise Rejection(FailureKind.ALREADY_CANCELLED)
            if current is not None and not is_cancellable(current):
                raise Rejection(FailureKind.ORDER_NOT_CANCELLABLE, detail=current.value)
            raise Rejection(FailureKind.ORDER_STATUS_INVALID)

        result = await session.execute(
            text("SELECT product_id, quantity FROM order_items WHERE order_id = :id"),
            {"id": order_id},
        )
        items = [{"product_id": r.product_id, "quantity": r.quantity} for r in result.fetchall()]
        restored = await inventory.restore(session, items, movement)
    except Rejection as exc:
        await session.rollback()
        return exc.rejected

    await session.commit()
    logger.info("order %s cancelled by %s %s: %s", order_id, actor_type.value, actor_id, reason)

    done = Transitioned(
        order_id=order_id, from_status=status.value, to_status=OrderStatus.CANCELLED.value
    )
    await _announce(redis, done, actor_type, actor_id, reason)
    await inventory.publish_movements(redis, restored, movement)
    return done
