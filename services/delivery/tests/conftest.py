"""
Shared pytest fixtures.

Every test gets its own SQLite file (through aiosqlite) with the full schema,
a session on it, and a mocked Redis client whose publish calls can be
inspected.
"""

import os

# Settings are read at import time; point them somewhere harmless first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["REDIS_URL"] = ""
os.environ["INIT_SCHEMA"] = "false"

from typing import AsyncGenerator
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import pytest
import pytest_asyncio
from redis.asyncio import Redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from campus_delivery import commands, db, inventory
from campus_delivery.aggregate import OrderStatus


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def async_engine(tmp_path):
    engine = db.create_engine(f"sqlite+aiosqlite:///{tmp_path / 'delivery.db'}")
    await db.init_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(async_engine):
    return db.create_session_factory(async_engine)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as s:
        yield s


# ============================================================================
# REDIS FIXTURES
# ============================================================================


@pytest.fixture
def redis() -> Mock:
    mock = Mock(spec=Redis)
    mock.publish = AsyncMock(return_value=0)
    return mock


# ============================================================================
# SEED DATA
# ============================================================================

ADMIN_ID = "00000000-0000-0000-0000-00000000a001"


async def stock_of(session: AsyncSession, product_id: str) -> int | None:
    result = await session.execute(
        text("SELECT quantity FROM inventory WHERE product_id = :id"), {"id": product_id}
    )
    row = result.fetchone()
    return row.quantity if row else None


async def status_of(session: AsyncSession, order_id: str) -> str | None:
    result = await session.execute(
        text("SELECT status FROM orders WHERE id = :id"), {"id": order_id}
    )
    row = result.fetchone()
    return row.status if row else None


async def count_rows(session: AsyncSession, table: str, where: str = "", **params) -> int:
    sql = f"SELECT COUNT(*) FROM {table}"
    if where:
        sql += f" WHERE {where}"
    result = await session.execute(text(sql), params)
    return int(result.scalar_one())


@pytest_asyncio.fixture
async def make_customer(session):
    async def _make(name: str = "Asha") -> str:
        customer_id = str(uuid4())
        await session.execute(
            text("INSERT INTO customers (id, name, phone) VALUES (:id, :name, :phone)"),
            {"id": customer_id, "name": name, "phone": customer_id[:20]},
        )
        await session.commit()
        return customer_id

    return _make


@pytest_asyncio.fixture
async def make_rider(session):
    async def _make(name: str = "Ravi", active: bool = True) -> str:
        rider_id = str(uuid4())
        await session.execute(
            text("""
                INSERT INTO riders (id, name, phone, is_active)
                VALUES (:id, :name, :phone, :active)
            """),
            {"id": rider_id, "name": name, "phone": rider_id[:20], "active": active},
        )
        await session.commit()
        return rider_id

    return _make


@pytest_asyncio.fixture
async def make_address(session):
    async def _make(customer_id: str, label: str = "Hostel", line1: str = "Block C, Room 214") -> str:
        address_id = str(uuid4())
        await session.execute(
            text("""
                INSERT INTO addresses (id, customer_id, label, line1, line2)
                VALUES (:id, :customer_id, :label, :line1, NULL)
            """),
            {"id": address_id, "customer_id": customer_id, "label": label, "line1": line1},
        )
        await session.commit()
        return address_id

    return _make


@pytest_asyncio.fixture
async def make_product(session, redis):
    """Insert a product and stock it through create_stock (INITIAL_STOCK movement)."""

    async def _make(
        quantity: int = 10,
        selling_price: str = "10.00",
        discount_percent: str = "0",
        name: str | None = None,
        active: bool = True,
        min_quantity: int = 0,
    ) -> str:
        product_id = str(uuid4())
        await session.execute(
            text("INSERT INTO products (id, name, is_active) VALUES (:id, :name, :active)"),
            {"id": product_id, "name": name or f"Product {product_id[:8]}", "active": active},
        )
        await session.commit()
        result = await inventory.create_stock(
            session,
            redis,
            product_id,
            ADMIN_ID,
            cost_price="1.00",
            selling_price=selling_price,
            quantity=quantity,
            discount_percent=discount_percent,
            min_quantity=min_quantity,
        )
        assert isinstance(result, inventory.StockChanged), result
        return product_id

    return _make


INLINE_ADDRESS = {"label": "Library", "line1": "Central Library, Gate 2", "line2": None}


@pytest_asyncio.fixture
async def make_order(session, redis, make_customer):
    """Place an order and walk it forward to ``status``."""

    async def _make(
        items: list[dict],
        status: OrderStatus = OrderStatus.CREATED,
        rider_id: str | None = None,
        customer_id: str | None = None,
        delivery_fee: str = "0",
    ) -> str:
        customer_id = customer_id or await make_customer()
        placed = await commands.place_order(
            session, redis, customer_id, items, address=INLINE_ADDRESS, delivery_fee=delivery_fee
        )
        assert isinstance(placed, commands.OrderPlaced), placed
        order_id = placed.order["id"]

        path = [
            OrderStatus.CONFIRMED,
            OrderStatus.ASSIGNED_RIDER,
            OrderStatus.OUT_FOR_DELIVERY,
            OrderStatus.DELIVERED,
        ]
        for step in path:
            if status == OrderStatus.CREATED:
                break
            if step == OrderStatus.CONFIRMED:
                result = await commands.confirm_order(session, redis, order_id, ADMIN_ID)
            elif step == OrderStatus.ASSIGNED_RIDER:
                result = await commands.accept_order(session, redis, order_id, rider_id)
            elif step == OrderStatus.OUT_FOR_DELIVERY:
                result = await commands.mark_out_for_delivery(session, redis, order_id, rider_id)
            else:
                result = await commands.mark_delivered(session, redis, order_id, rider_id)
            assert isinstance(result, commands.Transitioned), result
            if step == status:
                break
        return order_id

    return _make


