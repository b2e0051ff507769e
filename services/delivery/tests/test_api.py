"""
HTTP tests: routes, identity headers and failure-to-status mapping.
"""

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import text

from campus_delivery import main
from campus_delivery.aggregate import OrderStatus

from conftest import ADMIN_ID, INLINE_ADDRESS, stock_of


@pytest_asyncio.fixture
async def client(session_factory, redis, monkeypatch):
    monkeypatch.setattr(main, "async_session", session_factory)
    monkeypatch.setattr(main, "redis_pool", redis)
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


ADMIN = {"X-Admin-Id": ADMIN_ID}


class TestCustomerRoutes:
    @pytest.mark.asyncio
    async def test_place_and_list(self, client, session, make_customer, make_product):
        customer_id = await make_customer()
        pid = await make_product(quantity=5, selling_price="10.00", discount_percent="10")

        resp = await client.post(
            "/customer/orders",
            json={"items": [{"product_id": pid, "quantity": 2}], "address": INLINE_ADDRESS},
            headers={"X-Customer-Id": customer_id},
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["order"]["total_amount"] == "18.00"
        assert await stock_of(session, pid) == 3

        listed = await client.get(
            "/customer/orders", params={"filter": "current"}, headers={"X-Customer-Id": customer_id}
        )
        assert [o["id"] for o in listed.json()["orders"]] == [body["order"]["id"]]

    @pytest.mark.asyncio
    async def test_missing_identity(self, client):
        resp = await client.post("/customer/orders", json={"items": []})
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_out_of_stock(self, client, make_customer, make_product):
        customer_id = await make_customer()
        pid = await make_product(quantity=1)

        resp = await client.post(
            "/customer/orders",
            json={"items": [{"product_id": pid, "quantity": 2}], "address": INLINE_ADDRESS},
            headers={"X-Customer-Id": customer_id},
        )

        assert resp.status_code == 400
        assert resp.json() == {"error": "OUT_OF_STOCK", "product_id": pid}

    @pytest.mark.asyncio
    async def test_unknown_customer(self, client, make_product):
        pid = await make_product()

        resp = await client.post(
            "/customer/orders",
            json={"items": [{"product_id": pid, "quantity": 1}], "address": INLINE_ADDRESS},
            headers={"X-Customer-Id": "stranger"},
        )

        assert resp.status_code == 404
        assert resp.json() == {"error": "CUSTOMER_NOT_FOUND"}

    @pytest.mark.asyncio
    async def test_validation_failure(self, client, make_customer):
        customer_id = await make_customer()

        resp = await client.post(
            "/customer/orders",
            json={"items": [], "address": INLINE_ADDRESS},
            headers={"X-Customer-Id": customer_id},
        )

        assert resp.status_code == 400
        assert resp.json()["error"] == "VALIDATION_FAILED"


class TestRiderRoutes:
    @pytest.mark.asyncio
    async def test_claim_flow(self, client, make_product, make_order, make_rider):
        rider_id = await make_rider()
        rival = await make_rider("Rival")
        pid = await make_product()
        order_id = await make_order([{"product_id": pid, "quantity": 1}], status=OrderStatus.CONFIRMED)
        headers = {"X-Rider-Id": rider_id}

        available = await client.get("/rider/orders/available", headers=headers)
        assert [o["id"] for o in available.json()["orders"]] == [order_id]

        accepted = await client.post(f"/rider/orders/{order_id}/accept", headers=headers)
        assert accepted.status_code == 200
        assert accepted.json()["to_status"] == "ASSIGNED_RIDER"

        lost = await client.post(f"/rider/orders/{order_id}/accept", headers={"X-Rider-Id": rival})
        assert lost.status_code == 409
        assert lost.json()["error"] == "ORDER_ALREADY_ASSIGNED"

        foreign = await client.post(
            f"/rider/orders/{order_id}/out-for-delivery", headers={"X-Rider-Id": rival}
        )
        assert foreign.status_code == 403

        active = await client.get("/rider/orders/active", headers=headers)
        assert [o["id"] for o in active.json()["orders"]] == [order_id]

        assert (await client.post(f"/rider/orders/{order_id}/out-for-delivery", headers=headers)).status_code == 200
        delivered = await client.post(f"/rider/orders/{order_id}/delivered", headers=headers)
        assert delivered.status_code == 200
        assert delivered.json()["payment_id"]

    @pytest.mark.asyncio
    async def test_inactive_rider(self, client, make_product, make_order, make_rider):
        rider_id = await make_rider(active=False)
        pid = await make_product()
        order_id = await make_order([{"product_id": pid, "quantity": 1}], status=OrderStatus.CONFIRMED)

        resp = await client.post(f"/rider/orders/{order_id}/accept", headers={"X-Rider-Id": rider_id})

        assert resp.status_code == 403
        assert resp.json()["error"] == "RIDER_INACTIVE"


class TestAdminOrderRoutes:
    @pytest.mark.asyncio
    async def test_confirm_cancel_and_events(self, client, session, make_product, make_order):
        pid = await make_product(quantity=4)
        order_id = await make_order([{"product_id": pid, "quantity": 3}])

        confirmed = await client.post(f"/admin/orders/{order_id}/confirm", headers=ADMIN)
        assert confirmed.status_code == 200

        no_reason = await client.post(f"/admin/orders/{order_id}/cancel", json={}, headers=ADMIN)
        assert no_reason.status_code == 400

        cancelled = await client.post(
            f"/admin/orders/{order_id}/cancel", json={"reason": "store closed"}, headers=ADMIN
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["order"]["status"] == "CANCELLED"
        assert await stock_of(session, pid) == 4

        again = await client.post(
            f"/admin/orders/{order_id}/cancel", json={"reason": "store closed"}, headers=ADMIN
        )
        assert again.status_code == 409
        assert again.json()["error"] == "ALREADY_CANCELLED"

        events = (await client.get(f"/admin/orders/{order_id}/events", headers=ADMIN)).json()["events"]
        assert [e["to_status"] for e in events] == ["CANCELLED", "CONFIRMED"]

    @pytest.mark.asyncio
    async def test_order_detail_and_list(self, client, make_product, make_order, make_rider):
        rider_id = await make_rider()
        pid = await make_product()
        order_id = await make_order(
            [{"product_id": pid, "quantity": 1}], status=OrderStatus.DELIVERED, rider_id=rider_id
        )

        detail = await client.get(f"/admin/orders/{order_id}", headers=ADMIN)
        assert detail.status_code == 200
        assert detail.json()["order"]["rider_id"] == rider_id
        assert len(detail.json()["payments"]) == 1

        completed = await client.get("/admin/orders", params={"filter": "completed"}, headers=ADMIN)
        assert [o["id"] for o in completed.json()["orders"]] == [order_id]

        assert (await client.get("/admin/orders/missing", headers=ADMIN)).status_code == 404
        assert (await client.post("/admin/orders/missing/confirm", headers=ADMIN)).status_code == 404

    @pytest.mark.asyncio
    async def test_missing_inventory_row_is_server_error(self, client, session, make_product, make_order):
        pid = await make_product()
        order_id = await make_order([{"product_id": pid, "quantity": 1}])
        await session.execute(text("DELETE FROM inventory WHERE product_id = :id"), {"id": pid})
        await session.commit()

        resp = await client.post(
            f"/admin/orders/{order_id}/cancel", json={"reason": "broken"}, headers=ADMIN
        )

        assert resp.status_code == 500
        assert resp.json() == {"error": "INVENTORY_ROW_MISSING"}


class TestAdminInventoryRoutes:
    @pytest.mark.asyncio
    async def test_stock_lifecycle(self, client, session):
        await session.execute(
            text("INSERT INTO products (id, name, is_active) VALUES ('p-1', 'Chai', TRUE)")
        )
        await session.commit()

        created = await client.post(
            "/admin/inventory",
            json={"product_id": "p-1", "cost_price": "4", "selling_price": "6.50", "quantity": 0, "min_quantity": 2},
            headers=ADMIN,
        )
        assert created.status_code == 201
        assert created.json()["inventory"]["selling_price"] == "6.50"

        duplicate = await client.post(
            "/admin/inventory",
            json={"product_id": "p-1", "cost_price": "4", "selling_price": "6.50", "quantity": 1},
            headers=ADMIN,
        )
        assert duplicate.status_code == 409

        out = await client.get("/admin/inventory/out-of-stock", headers=ADMIN)
        assert [i["product_id"] for i in out.json()["inventory"]] == ["p-1"]

        added = await client.post("/admin/inventory/p-1/add", json={"quantity": 5}, headers=ADMIN)
        assert added.json()["inventory"]["quantity"] == 5

        patched = await client.patch("/admin/inventory/p-1", json={"discount_percent": "20"}, headers=ADMIN)
        assert patched.json()["inventory"]["discount_percent"] == "20.00"

        movements = await client.get("/admin/inventory/p-1/movements", headers=ADMIN)
        assert sorted(m["reason"] for m in movements.json()["movements"]) == ["ADJUSTMENT", "INITIAL_STOCK"]

        item = await client.get("/admin/inventory/p-1", headers=ADMIN)
        assert item.json()["inventory"]["quantity"] == 5
        assert len((await client.get("/admin/inventory", headers=ADMIN)).json()["inventory"]) == 1
        assert (await client.get("/admin/inventory/low-stock", headers=ADMIN)).json()["inventory"] == []

    @pytest.mark.asyncio
    async def test_unknown_inventory(self, client):
        assert (await client.get("/admin/inventory/nope", headers=ADMIN)).status_code == 404
        resp = await client.post("/admin/inventory/nope/add", json={"quantity": 1}, headers=ADMIN)
        assert resp.status_code == 404
        assert resp.json() == {"error": "INVENTORY_NOT_FOUND", "product_id": "nope"}

    @pytest.mark.asyncio
    async def test_admin_header_required(self, client):
        assert (await client.get("/admin/inventory")).status_code == 401


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.json() == {"status": "ok", "service": "campus-delivery"}
