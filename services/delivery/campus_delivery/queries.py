"""
Campus Delivery — query handlers (read side)

Read-only assembly of order summaries, line items and inventory views.
Amounts are returned as two-decimal strings.
"""

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import (
    CLAIMABLE_STATUS,
    STATUS_FILTER_ALIASES,
    STATUS_FILTERS,
    OrderStatus,
)
from .db import iso, money


def parse_status_filter(status: str | None = None, group: str | None = None) -> list[str] | None:
    """
    ``status`` is a comma list (``CREATED,CONFIRMED``) and wins over ``group``,
    a named filter (``current``, ``cancelled``, ``completed`` and aliases).
    """
    if status and status.strip():
        statuses = [s.strip().upper() for s in status.split(",") if s.strip()]
        if statuses:
            return statuses
    if group and group.strip():
        name = STATUS_FILTER_ALIASES.get(group.strip().lower())
        if name:
            return [s.value for s in STATUS_FILTERS[name]]
    return None


# ── Catalog ──────────────────────────────────────


async def fetch_catalog(session: AsyncSession, product_ids: list[str]) -> dict[str, dict]:
    """Price, discount, active flag and stock for a batch of products."""
    if not product_ids:
        return {}
    result = await session.execute(
        text("""
            SELECT i.product_id, i.selling_price, i.discount_percent, i.quantity,
                   p.name AS product_name, p.is_active AS product_is_active
            FROM inventory i
            JOIN products p ON p.id = i.product_id
            WHERE i.product_id IN :ids
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": list(product_ids)},
    )
    return {
        row.product_id: {
            "product_id": row.product_id,
            "product_name": row.product_name,
            "selling_price": money(row.selling_price),
            "discount_percent": money(row.discount_percent),
            "quantity": row.quantity,
            "is_active": bool(row.product_is_active),
        }
        for row in result.fetchall()
    }


# ── Inventory ────────────────────────────────────

_INVENTORY_SELECT = """
    SELECT i.product_id, i.cost_price, i.selling_price, i.discount_percent,
           i.quantity, i.min_quantity, i.updated_at,
           p.name AS product_name, p.description AS product_description,
           p.img_url AS product_img_url, p.is_active AS product_is_active,
           p.created_at AS product_created_at
    FROM inventory i
    JOIN products p ON p.id = i.product_id
"""


def _inventory_dict(row) -> dict:
    return {
        "product_id": row.product_id,
        "cost_price": str(money(row.cost_price)),
        "selling_price": str(money(row.selling_price)),
        "discount_percent": str(money(row.discount_percent)),
        "quantity": row.quantity,
        "min_quantity": row.min_quantity,
        "updated_at": iso(row.updated_at),
        "product_name": row.product_name,
        "product_description": row.product_description,
        "product_img_url": row.product_img_url,
        "product_is_active": bool(row.product_is_active),
        "product_created_at": iso(row.product_created_at),
    }


async def get_inventory_item(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(
        text(_INVENTORY_SELECT + " WHERE i.product_id = :id"),
        {"id": product_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _inventory_dict(row)


async def list_inventory(session: AsyncSession) -> list[dict]:
    result = await session.execute(text(_INVENTORY_SELECT + " ORDER BY p.name"))
    return [_inventory_dict(row) for row in result.fetchall()]


async def list_low_stock(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text(_INVENTORY_SELECT + " WHERE i.quantity < i.min_quantity ORDER BY p.name")
    )
    return [_inventory_dict(row) for row in result.fetchall()]


async def list_out_of_stock(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text(_INVENTORY_SELECT + " WHERE i.quantity = 0 ORDER BY p.name")
    )
    return [_inventory_dict(row) for row in result.fetchall()]


async def list_movements(
    session: AsyncSession,
    product_id: str | None = None,
    limit: int | None = 100,
) -> list[dict]:
    """Ledger rows, newest first. ``product_id=None`` lists every product."""
    sql = """
        SELECT id, product_id, delta_quantity, reason, reference_type,
               reference_id, actor_type, actor_id, created_at
        FROM inventory_movements
    """
    params: dict = {}
    if product_id is not None:
        sql += " WHERE product_id = :pid"
        params["pid"] = product_id
    sql += " ORDER BY created_at DESC"
    if limit is not None:
        sql += " LIMIT :limit"
        params["limit"] = limit
    result = await session.execute(text(sql), params)
    return [
        {
            "id": row.id,
            "product_id": row.product_id,
            "delta_quantity": row.delta_quantity,
            "reason": row.reason,
            "reference_type": row.reference_type,
            "reference_id": row.reference_id,
            "actor_type": row.actor_type,
            "actor_id": row.actor_id,
            "created_at": iso(row.created_at),
        }
        for row in result.fetchall()
    ]


# ── Orders ───────────────────────────────────────

_ORDER_SUMMARY_SELECT = """
    SELECT o.id, o.status, o.delivery_fee, o.subtotal_amount, o.total_amount,
           o.created_at,
           c.id AS customer_id, c.name AS customer_name,
           c.phone AS customer_phone, c.email AS customer_email,
           r.id AS rider_id, r.name AS rider_name, r.phone AS rider_phone,
           ra.assigned_at
    FROM orders o
    JOIN customers c ON c.id = o.customer_id
    LEFT JOIN rider_assignments ra ON ra.order_id = o.id
    LEFT JOIN riders r ON r.id = ra.rider_id
"""

_ORDER_BRIEF_SELECT = """
    SELECT o.id, o.status, o.delivery_fee, o.subtotal_amount, o.total_amount,
           o.created_at, c.name AS customer_name,
           a.label AS address_label, a.line1 AS address_line1,
           a.line2 AS address_line2
    FROM orders o
    JOIN customers c ON c.id = o.customer_id
    LEFT JOIN order_addresses a ON a.order_id = o.id
"""


def _amounts(row) -> dict:
    return {
        "id": row.id,
        "status": row.status,
        "delivery_fee": str(money(row.delivery_fee)),
        "subtotal_amount": str(money(row.subtotal_amount)),
        "total_amount": str(money(row.total_amount)),
        "created_at": iso(row.created_at),
    }


def _summary_dict(row) -> dict:
    return {
        **_amounts(row),
        "customer_id": row.customer_id,
        "customer_name": row.customer_name,
        "customer_phone": row.customer_phone,
        "customer_email": row.customer_email,
        "rider_id": row.rider_id,
        "rider_name": row.rider_name,
        "rider_phone": row.rider_phone,
        "assigned_at": iso(row.assigned_at),
    }


def _brief_dict(row) -> dict:
    return {
        **_amounts(row),
        "customer_name": row.customer_name,
        "address_label": row.address_label,
        "address_line1": row.address_line1,
        "address_line2": row.address_line2,
    }


async def get_order_summary(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text(_ORDER_SUMMARY_SELECT + " WHERE o.id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _summary_dict(row)


async def get_order_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list[dict]]:
    """Line items grouped by order id."""
    grouped: dict[str, list[dict]] = {oid: [] for oid in order_ids}
    if not order_ids:
        return grouped
    result = await session.execute(
        text("""
            SELECT oi.id, oi.order_id, oi.product_id, p.name AS product_name,
                   p.img_url AS product_img_url, oi.quantity, oi.unit_price,
                   oi.discount_percent, oi.final_price
            FROM order_items oi
            JOIN products p ON p.id = oi.product_id
            WHERE oi.order_id IN :ids
            ORDER BY p.name
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": list(order_ids)},
    )
    for row in result.fetchall():
        grouped.setdefault(row.order_id, []).append(
            {
                "id": row.id,
                "product_id": row.product_id,
                "product_name": row.product_name,
                "product_img_url": row.product_img_url,
                "quantity": row.quantity,
                "unit_price": str(money(row.unit_price)),
                "discount_percent": str(money(row.discount_percent)),
                "final_price": str(money(row.final_price)),
            }
        )
    return grouped


async def get_order_address(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT label, line1, line2 FROM order_addresses WHERE order_id = :id"),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return {"label": row.label, "line1": row.line1, "line2": row.line2}


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """Order summary with items and address snapshot."""
    order = await get_order_summary(session, order_id)
    if order is None:
        return None
    items = await get_order_items(session, [order_id])
    return {
        "order": order,
        "items": items[order_id],
        "address": await get_order_address(session, order_id),
    }


async def list_orders(
    session: AsyncSession,
    statuses: list[str] | None = None,
    customer_id: str | None = None,
) -> list[dict]:
    conditions = []
    params: dict = {}
    stmt_params = []
    if statuses:
        conditions.append("o.status IN :statuses")
        params["statuses"] = list(statuses)
        stmt_params.append(bindparam("statuses", expanding=True))
    if customer_id is not None:
        conditions.append("o.customer_id = :customer_id")
        params["customer_id"] = customer_id

    sql = _ORDER_SUMMARY_SELECT
    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    sql += " ORDER BY o.created_at DESC"

    result = await session.execute(text(sql).bindparams(*stmt_params), params)
    return [_summary_dict(row) for row in result.fetchall()]


async def list_customer_orders(
    session: AsyncSession,
    customer_id: str,
    statuses: list[str] | None = None,
) -> list[dict]:
    return await list_orders(session, statuses=statuses, customer_id=customer_id)


async def _with_items(session: AsyncSession, rows) -> list[dict]:
    orders = [_brief_dict(row) for row in rows]
    items = await get_order_items(session, [o["id"] for o in orders])
    for o in orders:
        o["items"] = items.get(o["id"], [])
    return orders


async def list_available_orders(session: AsyncSession) -> list[dict]:
    """Orders a rider may claim: confirmed and not yet assigned."""
    result = await session.execute(
        text(_ORDER_BRIEF_SELECT + """
            LEFT JOIN rider_assignments ra ON ra.order_id = o.id
            WHERE o.status = :status AND ra.order_id IS NULL
            ORDER BY o.created_at DESC
        """),
        {"status": CLAIMABLE_STATUS.value},
    )
    return await _with_items(session, result.fetchall())


async def list_rider_active_orders(session: AsyncSession, rider_id: str) -> list[dict]:
    result = await session.execute(
        text(_ORDER_BRIEF_SELECT + """
            JOIN rider_assignments ra ON ra.order_id = o.id
            WHERE ra.rider_id = :rider_id AND o.status IN (:assigned, :out)
            ORDER BY o.created_at DESC
        """),
        {
            "rider_id": rider_id,
            "assigned": OrderStatus.ASSIGNED_RIDER.value,
            "out": OrderStatus.OUT_FOR_DELIVERY.value,
        },
    )
    return await _with_items(session, result.fetchall())


async def list_payments(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        text("""
            SELECT id, order_id, amount, status, provider, provider_ref, created_at
            FROM payments
            WHERE order_id = :id
            ORDER BY created_at
        """),
        {"id": order_id},
    )
    return [
        {
            "id": row.id,
            "order_id": row.order_id,
            "amount": str(money(row.amount)),
            "status": row.status,
            "provider": row.provider,
            "provider_ref": row.provider_ref,
            "created_at": iso(row.created_at),
        }
        for row in result.fetchall()
    ]
