"""
Campus Delivery — FastAPI entry point

Customer, rider and admin routes over the order and inventory commands.
Callers are authenticated upstream; the acting identity arrives in the
X-Customer-Id, X-Rider-Id or X-Admin-Id header.

Command results map to HTTP here and nowhere else.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import commands, config, db, event_store, inventory, queries
from .aggregate import ActorType
from .outcomes import FailureKind, InventoryRowMissing, Rejected

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = db.create_engine(config.DATABASE_URL)
async_session = db.create_session_factory(engine)
redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    if config.INIT_SCHEMA:
        await db.init_schema(engine)
    if config.REDIS_URL:
        redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)
    yield
    if redis_pool is not None:
        await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Campus Delivery Service", lifespan=lifespan)


# ── Failure mapping ──────────────────────────────

HTTP_STATUS = {
    FailureKind.VALIDATION_FAILED: 400,
    FailureKind.ADDRESS_NOT_FOUND: 404,
    FailureKind.PRODUCT_NOT_FOUND: 404,
    FailureKind.CUSTOMER_NOT_FOUND: 404,
    FailureKind.RIDER_NOT_FOUND: 404,
    FailureKind.ORDER_NOT_FOUND: 404,
    FailureKind.INVENTORY_NOT_FOUND: 404,
    FailureKind.PRODUCT_INACTIVE: 400,
    FailureKind.RIDER_INACTIVE: 403,
    FailureKind.OUT_OF_STOCK: 400,
    FailureKind.INSUFFICIENT_STOCK: 400,
    FailureKind.INVENTORY_ALREADY_EXISTS: 409,
    FailureKind.ORDER_ALREADY_ASSIGNED: 409,
    FailureKind.ORDER_STATUS_INVALID: 409,
    FailureKind.ORDER_NOT_ASSIGNED: 409,
    FailureKind.ORDER_NOT_ASSIGNED_TO_RIDER: 403,
    FailureKind.ALREADY_CANCELLED: 409,
    FailureKind.ORDER_NOT_CANCELLABLE: 400,
}


def _rejected(result: Rejected) -> JSONResponse:
    body: dict[str, Any] = {"error": result.kind.value}
    if result.product_id:
        body["product_id"] = result.product_id
    if result.detail:
        body["detail"] = result.detail
    return JSONResponse(status_code=HTTP_STATUS[result.kind], content=body)


def _require(value: str | None, header: str) -> str:
    if not value or not value.strip():
        raise HTTPException(401, f"{header} header required")
    return value.strip()


@app.exception_handler(InventoryRowMissing)
async def inventory_row_missing(request: Request, exc: InventoryRowMissing):
    logger.exception("integrity failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "INVENTORY_ROW_MISSING"})


# ── Request Models ───────────────────────────────


class OrderItemIn(BaseModel):
    product_id: str | None = None
    quantity: Any = None


class AddressIn(BaseModel):
    label: str | None = None
    line1: str | None = None
    line2: str | None = None


class PlaceOrderRequest(BaseModel):
    items: list[OrderItemIn] = []
    address_id: str | None = None
    address: AddressIn | None = None
    delivery_fee: Any = None


class CancelRequest(BaseModel):
    reason: str | None = None


class CreateStockRequest(BaseModel):
    product_id: str
    cost_price: Any = None
    selling_price: Any = None
    quantity: Any = None
    discount_percent: Any = None
    min_quantity: Any = None


class AddStockRequest(BaseModel):
    quantity: Any = None
    reason: str | None = None
    reference_type: str | None = None
    reference_id: str | None = None


class UpdatePricingRequest(BaseModel):
    cost_price: Any = None
    selling_price: Any = None
    discount_percent: Any = None
    min_quantity: Any = None


# ── Customer ─────────────────────────────────────


@app.post("/customer/orders", status_code=201)
async def customer_place_order(
    req: PlaceOrderRequest,
    customer_id: str | None = Header(None, alias="X-Customer-Id"),
):
    customer_id = _require(customer_id, "X-Customer-Id")
    async with async_session() as session:
        result = await commands.place_order(
            session,
            redis_pool,
            customer_id,
            [item.model_dump() for item in req.items],
            address_id=req.address_id,
            address=req.address.model_dump() if req.address else None,
            delivery_fee=req.delivery_fee,
        )
    if isinstance(result, Rejected):
        return _rejected(result)
    return result.model_dump()


@app.get("/customer/orders")
async def customer_list_orders(
    status: str | None = None,
    filter: str | None = None,
    customer_id: str | None = Header(None, alias="X-Customer-Id"),
):
    customer_id = _require(customer_id, "X-Customer-Id")
    async with async_session() as session:
        orders = await queries.list_customer_orders(
            session, customer_id, queries.parse_status_filter(status, filter)
        )
    return {"orders": orders}


# ── Rider ────────────────────────────────────────


@app.get("/rider/orders/available")
async def rider_available_orders(rider_id: str | None = Header(None, alias="X-Rider-Id")):
    _require(rider_id, "X-Rider-Id")
    async with async_session() as session:
        return {"orders": await queries.list_available_orders(session)}


@app.get("/rider/orders/active")
async def rider_active_orders(rider_id: str | None = Header(None, alias="X-Rider-Id")):
    rider_id = _require(rider_id, "X-Rider-Id")
    async with async_session() as session:
        return {"orders": await queries.list_rider_active_orders(session, rider_id)}


@app.post("/rider/orders/{order_id}/accept")
async def rider_accept(order_id: str, rider_id: str | None = Header(None, alias="X-Rider-Id")):
    rider_id = _require(rider_id, "X-Rider-Id")
    async with async_session() as session:
        result = await commands.accept_order(session, redis_pool, order_id, rider_id)
    if isinstance(result, Rejected):
        return _rejected(result)
    return result.model_dump()


@app.post("/rider/orders/{order_id}/out-for-delivery")
async def rider_out_for_delivery(order_id: str, rider_id: str | None = Header(None, alias="X-Rider-Id")):
    rider_id = _require(rider_id, "X-Rider-Id")
    async with async_session() as session:
        result = await commands.mark_out_for_delivery(session, redis_pool, order_id, rider_id)
    if isinstance(result, Rejected):
        return _rejected(result)
    return result.model_dump()


@app.post("/rider/orders/{order_id}/delivered")
async def rider_delivered(order_id: str, rider_id: str | None = Header(None, alias="X-Rider-Id")):
    rider_id = _require(rider_id, "X-Rider-Id")
    async with async_session() as session:
        result = await commands.mark_delivered(session, redis_pool, order_id, rider_id)
    if isinstance(result, Rejected):
        return _rejected(result)
    return result.model_dump()


# ── Admin: orders ────────────────────────────────


@app.get("/admin/orders")
async def admin_list_orders(
    status: str | None = None,
    filter: str | None = None,
    admin_id: str | None = Header(None, alias="X-Admin-Id"),
):
    _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        orders = await queries.list_orders(session, queries.parse_status_filter(status, filter))
    return {"orders": orders}


@app.get("/admin/orders/{order_id}")
async def admin_get_order(order_id: str, admin_id: str | None = Header(None, alias="X-Admin-Id")):
    _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        order = await queries.get_order(session, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        order["payments"] = await queries.list_payments(session, order_id)
    return order


@app.get("/admin/orders/{order_id}/events")
async def admin_order_events(order_id: str, admin_id: str | None = Header(None, alias="X-Admin-Id")):
    _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        return {"events": await event_store.load_order_events(session, order_id, newest_first=True)}


@app.post("/admin/orders/{order_id}/confirm")
async def admin_confirm(order_id: str, admin_id: str | None = Header(None, alias="X-Admin-Id")):
    admin_id = _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        result = await commands.confirm_order(session, redis_pool, order_id, admin_id)
    if isinstance(result, Rejected):
        return _rejected(result)
    return result.model_dump()


@app.post("/admin/orders/{order_id}/cancel")
async def admin_cancel(
    order_id: str,
    req: CancelRequest,
    admin_id: str | None = Header(None, alias="X-Admin-Id"),
):
    admin_id = _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        result = await commands.cancel_order(
            session, redis_pool, order_id, ActorType.ADMIN, admin_id, req.reason
        )
        if isinstance(result, Rejected):
            return _rejected(result)
        order = await queries.get_order_summary(session, order_id)
    return {"order": order}


# ── Admin: inventory ─────────────────────────────


@app.get("/admin/inventory")
async def admin_list_inventory(admin_id: str | None = Header(None, alias="X-Admin-Id")):
    _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        return {"inventory": await queries.list_inventory(session)}


@app.get("/admin/inventory/low-stock")
async def admin_low_stock(admin_id: str | None = Header(None, alias="X-Admin-Id")):
    _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        return {"inventory": await queries.list_low_stock(session)}


@app.get("/admin/inventory/out-of-stock")
async def admin_out_of_stock(admin_id: str | None = Header(None, alias="X-Admin-Id")):
    _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        return {"inventory": await queries.list_out_of_stock(session)}


@app.post("/admin/inventory", status_code=201)
async def admin_create_stock(
    req: CreateStockRequest,
    admin_id: str | None = Header(None, alias="X-Admin-Id"),
):
    admin_id = _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        result = await inventory.create_stock(
            session,
            redis_pool,
            req.product_id,
            admin_id,
            cost_price=req.cost_price,
            selling_price=req.selling_price,
            quantity=req.quantity,
            discount_percent=req.discount_percent,
            min_quantity=req.min_quantity,
        )
    if isinstance(result, Rejected):
        return _rejected(result)
    return result.model_dump()


@app.get("/admin/inventory/{product_id}")
async def admin_get_stock(product_id: str, admin_id: str | None = Header(None, alias="X-Admin-Id")):
    _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        item = await queries.get_inventory_item(session, product_id)
    if not item:
        raise HTTPException(404, "Inventory not found")
    return {"inventory": item}


@app.patch("/admin/inventory/{product_id}")
async def admin_update_pricing(
    product_id: str,
    req: UpdatePricingRequest,
    admin_id: str | None = Header(None, alias="X-Admin-Id"),
):
    _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        result = await inventory.update_pricing(session, product_id, **req.model_dump())
    if isinstance(result, Rejected):
        return _rejected(result)
    return result.model_dump()


@app.post("/admin/inventory/{product_id}/add")
async def admin_add_stock(
    product_id: str,
    req: AddStockRequest,
    admin_id: str | None = Header(None, alias="X-Admin-Id"),
):
    admin_id = _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        result = await inventory.add_stock(
            session,
            redis_pool,
            product_id,
            admin_id,
            quantity=req.quantity,
            reason=req.reason,
            reference_type=req.reference_type,
            reference_id=req.reference_id,
        )
    if isinstance(result, Rejected):
        return _rejected(result)
    return result.model_dump()


@app.get("/admin/inventory/{product_id}/movements")
async def admin_movements(product_id: str, admin_id: str | None = Header(None, alias="X-Admin-Id")):
    _require(admin_id, "X-Admin-Id")
    async with async_session() as session:
        return {"movements": await queries.list_movements(session, product_id)}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "campus-delivery"}
