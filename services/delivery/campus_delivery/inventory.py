"""
Campus Delivery — inventory reservation, restoration and stock commands

Stock only moves through guarded single-statement updates:

    reserve:  UPDATE ... SET quantity = quantity - n WHERE quantity >= n
    restore:  UPDATE ... SET quantity = quantity + n

The sufficiency check lives inside the UPDATE, so two reservations racing on
the same row cannot both pass it. A reservation that fails on any product
raises and the caller's transaction rolls back every earlier decrement.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from uuid import uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import queries
from .aggregate import ADMIN_MOVEMENT_REASONS, ActorType, MovementReason, ReferenceType
from .config import INVENTORY_EVENTS_CHANNEL
from .db import MAX_INT, MAX_MONEY, MONEY, PERCENT
from .events import InventoryMoved
from .outcomes import (
    FailureKind,
    InsufficientStock,
    InventoryRowMissing,
    Rejected,
    Rejection,
    StockChanged,
)
from .publisher import publish

logger = logging.getLogger(__name__)


class Movement(BaseModel):
    """Attribution written to the ledger alongside a quantity change."""
    reason: MovementReason
    reference_type: ReferenceType
    reference_id: str | None = None
    actor_type: ActorType
    actor_id: str | None = None


def normalize_items(items) -> list[dict]:
    """
    Coalesce line items into one entry per product.

    Blank product ids and non-positive or non-integer quantities are dropped.
    First-seen product order is kept.
    """
    totals: dict[str, int] = {}
    for item in items or []:
        product_id = str(item.get("product_id") or "").strip()
        try:
            qty = int(str(item.get("quantity", "")).strip())
        except ValueError:
            continue
        if not product_id or qty <= 0:
            continue
        totals[product_id] = totals.get(product_id, 0) + qty
    return [{"product_id": pid, "quantity": qty} for pid, qty in totals.items()]


# ── Ledger primitives ────────────────────────────


async def reserve(session: AsyncSession, items) -> None:
    """Decrement stock for every product or raise InsufficientStock."""
    for item in normalize_items(items):
        result = await session.execute(
            text("""
                UPDATE inventory
                SET quantity = quantity - :qty, updated_at = CURRENT_TIMESTAMP
                WHERE product_id = :pid AND quantity >= :qty
            """),
            {"pid": item["product_id"], "qty": item["quantity"]},
        )
        if result.rowcount != 1:
            raise InsufficientStock(item["product_id"])


async def restore(
    session: AsyncSession,
    items,
    movement: Movement | None = None,
) -> list[dict]:
    """
    Increment stock for every product, optionally writing a ledger row each.

    Raises InventoryRowMissing when a product has no inventory row. Returns
    the normalized items that were restored.
    """
    normalized = normalize_items(items)
    for item in normalized:
        result = await session.execute(
            text("""
                UPDATE inventory
                SET quantity = quantity + :qty, updated_at = CURRENT_TIMESTAMP
                WHERE product_id = :pid
            """),
            {"pid": item["product_id"], "qty": item["quantity"]},
        )
        if result.rowcount != 1:
            raise InventoryRowMissing(item["product_id"])

        if movement is not None:
            await append_movement(session, item["product_id"], item["quantity"], movement)
    return normalized


async def record_movements(
    session: AsyncSession,
    items,
    movement: Movement,
    sign: int = 1,
) -> list[dict]:
    """Append one ledger row per coalesced product without touching stock."""
    normalized = normalize_items(items)
    for item in normalized:
        await append_movement(session, item["product_id"], sign * item["quantity"], movement)
    return normalized


async def append_movement(
    session: AsyncSession,
    product_id: str,
    delta: int,
    movement: Movement,
) -> None:
    await session.execute(
        text("""
            INSERT INTO inventory_movements
                (id, product_id, delta_quantity, reason, reference_type,
                 reference_id, actor_type, actor_id)
            VALUES
                (:id, :pid, :delta, :reason, :ref_type, :ref_id, :actor_type, :actor_id)
        """),
        {
            "id": str(uuid4()),
            "pid": product_id,
            "delta": delta,
            "reason": movement.reason.value,
            "ref_type": movement.reference_type.value,
            "ref_id": movement.reference_id,
            "actor_type": movement.actor_type.value,
            "actor_id": movement.actor_id,
        },
    )


async def publish_movements(
    redis: aioredis.Redis | None,
    items: list[dict],
    movement: Movement,
    sign: int = 1,
) -> None:
    now = datetime.now(timezone.utc)
    for item in items:
        await publish(
            redis,
            INVENTORY_EVENTS_CHANNEL,
            InventoryMoved(
                product_id=item["product_id"],
                delta_quantity=sign * item["quantity"],
                reason=movement.reason.value,
                reference_type=movement.reference_type.value,
                reference_id=movement.reference_id,
                timestamp=now,
            ),
        )


# ── Admin stock commands ─────────────────────────


def _decimal(value, field: str, required: bool = False) -> Decimal | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail=f"{field} is required")
        return None
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise Rejection(FailureKind.VALIDATION_FAILED, detail=f"{field} must be a number")
    if not number.is_finite() or number < 0:
        raise Rejection(FailureKind.VALIDATION_FAILED, detail=f"{field} must be a non-negative number")
    if number > MAX_MONEY:
        raise Rejection(FailureKind.VALIDATION_FAILED, detail=f"{field} is too large")
    return number


def _int(value, field: str, required: bool = False) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail=f"{field} is required")
        return None
    try:
        number = int(str(value).strip())
    except ValueError:
        raise Rejection(FailureKind.VALIDATION_FAILED, detail=f"{field} must be an integer")
    if abs(number) > MAX_INT:
        raise Rejection(FailureKind.VALIDATION_FAILED, detail=f"{field} is too large")
    return number


async def create_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    admin_id: str,
    cost_price,
    selling_price,
    quantity,
    discount_percent=None,
    min_quantity=None,
) -> StockChanged | Rejected:
    """
    Create the inventory row for a product and its INITIAL_STOCK ledger entry.

    Rejections: VALIDATION_FAILED, PRODUCT_NOT_FOUND, INVENTORY_ALREADY_EXISTS.
    """
    movement = Movement(
        reason=MovementReason.INITIAL_STOCK,
        reference_type=ReferenceType.PURCHASE,
        actor_type=ActorType.ADMIN,
        actor_id=admin_id,
    )
    try:
        cost = _decimal(cost_price, "cost_price", required=True)
        selling = _decimal(selling_price, "selling_price", required=True)
        discount = _decimal(discount_percent, "discount_percent") or Decimal("0")
        qty = _int(quantity, "quantity", required=True)
        min_qty = _int(min_quantity, "min_quantity") or 0
        if discount > 100:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail="discount_percent must be at most 100")
        if qty < 0 or min_qty < 0:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail="quantities must be non-negative")

        found = await session.execute(
            text("SELECT id FROM products WHERE id = :id"), {"id": product_id}
        )
        if found.fetchone() is None:
            raise Rejection(FailureKind.PRODUCT_NOT_FOUND, product_id=product_id)

        try:
            await session.execute(
                text("""
                    INSERT INTO inventory
                        (product_id, cost_price, selling_price, discount_percent,
                         quantity, min_quantity)
                    VALUES
                        (:pid, :cost, :selling, :discount, :qty, :min_qty)
                """).bindparams(
                    bindparam("cost", type_=MONEY),
                    bindparam("selling", type_=MONEY),
                    bindparam("discount", type_=PERCENT),
                ),
                {
                    "pid": product_id,
                    "cost": cost,
                    "selling": selling,
                    "discount": discount,
                    "qty": qty,
                    "min_qty": min_qty,
                },
            )
        except IntegrityError:
            raise Rejection(FailureKind.INVENTORY_ALREADY_EXISTS, product_id=product_id)

        await append_movement(session, product_id, qty, movement)
    except Rejection as exc:
        await session.rollback()
        return exc.rejected

    await session.commit()
    logger.info("inventory created for product %s with %d units", product_id, qty)

    await publish_movements(redis, [{"product_id": product_id, "quantity": qty}], movement)
    return StockChanged(inventory=await queries.get_inventory_item(session, product_id))


async def add_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    product_id: str,
    admin_id: str,
    quantity,
    reason=None,
    reference_type=None,
    reference_id: str | None = None,
) -> StockChanged | Rejected:
    """
    Add units to a product's stock and record the movement.

    Rejections: VALIDATION_FAILED, INVENTORY_NOT_FOUND.
    """
    try:
        qty = _int(quantity, "quantity", required=True)
        if qty <= 0:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail="quantity must be positive")
        try:
            movement = Movement(
                reason=MovementReason(reason or MovementReason.ADJUSTMENT),
                reference_type=ReferenceType(reference_type or ReferenceType.ADJUSTMENT),
                reference_id=reference_id,
                actor_type=ActorType.ADMIN,
                actor_id=admin_id,
            )
        except ValueError:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail="invalid reason or reference_type")
        if movement.reason not in ADMIN_MOVEMENT_REASONS:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail=f"reason {movement.reason.value} is not allowed")

        try:
            restored = await restore(session, [{"product_id": product_id, "quantity": qty}], movement)
        except InventoryRowMissing:
            # A missing row is an ordinary 404 for an admin request.
            raise Rejection(FailureKind.INVENTORY_NOT_FOUND, product_id=product_id)
    except Rejection as exc:
        await session.rollback()
        return exc.rejected

    await session.commit()
    logger.info("added %d units to product %s (%s)", qty, product_id, movement.reason.value)

    await publish_movements(redis, restored, movement)
    return StockChanged(inventory=await queries.get_inventory_item(session, product_id))


async def update_pricing(
    session: AsyncSession,
    product_id: str,
    cost_price=None,
    selling_price=None,
    discount_percent=None,
    min_quantity=None,
) -> StockChanged | Rejected:
    """
    Update price and threshold fields. On-hand quantity is not editable here.

    Rejections: VALIDATION_FAILED, INVENTORY_NOT_FOUND.
    """
    try:
        values = {
            "cost_price": _decimal(cost_price, "cost_price"),
            "selling_price": _decimal(selling_price, "selling_price"),
            "discount_percent": _decimal(discount_percent, "discount_percent"),
            "min_quantity": _int(min_quantity, "min_quantity"),
        }
        values = {k: v for k, v in values.items() if v is not None}
        if not values:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail="nothing to update")
        if values.get("discount_percent", Decimal("0")) > 100:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail="discount_percent must be at most 100")
        if values.get("min_quantity", 0) < 0:
            raise Rejection(FailureKind.VALIDATION_FAILED, detail="min_quantity must be non-negative")

        assignments = ", ".join(f"{column} = :{column}" for column in values)
        stmt = text(f"""
            UPDATE inventory
            SET {assignments}, updated_at = CURRENT_TIMESTAMP
            WHERE product_id = :pid
        """).bindparams(
            *[
                bindparam(column, type_=PERCENT if column == "discount_percent" else MONEY)
                for column in values
                if column != "min_quantity"
            ]
        )
        result = await session.execute(stmt, {"pid": product_id, **values})
        if result.rowcount != 1:
            raise Rejection(FailureKind.INVENTORY_NOT_FOUND, product_id=product_id)
    except Rejection as exc:
        await session.rollback()
        return exc.rejected

    await session.commit()
    return StockChanged(inventory=await queries.get_inventory_item(session, product_id))
