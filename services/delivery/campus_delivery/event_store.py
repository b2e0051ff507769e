"""
Campus Delivery — order event store

Order status changes go through ``try_transition`` only. It performs the
conditional update and appends the matching event in the caller's
transaction, so the status column and the event log cannot diverge.

Events carry a per-order version; UNIQUE(order_id, version) rejects a second
writer that computed the same next version.
"""

import logging
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import ActorType, OrderStatus, can_transition
from .db import iso

logger = logging.getLogger(__name__)


async def try_transition(
    session: AsyncSession,
    order_id: str,
    expected: OrderStatus,
    new: OrderStatus,
    actor_type: ActorType,
    actor_id: str | None = None,
    reason: str | None = None,
) -> bool:
    """
    Move an order from ``expected`` to ``new`` if it is still in ``expected``.

    Returns False when the row is missing or another writer already moved
    it (lost race). Raises ValueError for an edge the state machine forbids.
    """
    expected = OrderStatus(expected)
    new = OrderStatus(new)
    if not can_transition(expected, new):
        raise ValueError(f"illegal transition {expected.value} -> {new.value}")

    result = await session.execute(
        text("""
            UPDATE orders
            SET status = :new
            WHERE id = :id AND status = :expected
        """),
        {"id": order_id, "new": new.value, "expected": expected.value},
    )
    if result.rowcount != 1:
        logger.info(
            "transition %s -> %s lost for order %s", expected.value, new.value, order_id
        )
        return False

    await append_order_event(
        session, order_id, expected, new, actor_type, actor_id, reason
    )
    return True


async def append_order_event(
    session: AsyncSession,
    order_id: str,
    from_status: OrderStatus,
    to_status: OrderStatus,
    actor_type: ActorType,
    actor_id: str | None,
    reason: str | None,
) -> int:
    result = await session.execute(
        text("SELECT COALESCE(MAX(version), 0) AS v FROM order_events WHERE order_id = :id"),
        {"id": order_id},
    )
    new_version = int(result.scalar_one()) + 1
    await session.execute(
        text("""
            INSERT INTO order_events
                (id, order_id, version, from_status, to_status, actor_type, actor_id, reason)
            VALUES
                (:id, :order_id, :version, :from_status, :to_status, :actor_type, :actor_id, :reason)
        """),
        {
            "id": str(uuid4()),
            "order_id": order_id,
            "version": new_version,
            "from_status": OrderStatus(from_status).value,
            "to_status": OrderStatus(to_status).value,
            "actor_type": ActorType(actor_type).value,
            "actor_id": actor_id,
            "reason": reason,
        },
    )
    return new_version


def _event_dict(row) -> dict:
    return {
        "id": row.id,
        "order_id": row.order_id,
        "version": row.version,
        "from_status": row.from_status,
        "to_status": row.to_status,
        "actor_type": row.actor_type,
        "actor_id": row.actor_id,
        "reason": row.reason,
        "created_at": iso(row.created_at),
    }


async def load_order_events(
    session: AsyncSession,
    order_id: str,
    newest_first: bool = False,
) -> list[dict]:
    order = "DESC" if newest_first else "ASC"
    result = await session.execute(
        text(f"""
            SELECT id, order_id, version, from_status, to_status,
                   actor_type, actor_id, reason, created_at
            FROM order_events
            WHERE order_id = :id
            ORDER BY version {order}
        """),
        {"id": order_id},
    )
    return [_event_dict(row) for row in result.fetchall()]
