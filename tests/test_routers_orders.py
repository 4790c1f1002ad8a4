"""
tests/test_routers_orders.py — Tests for order detail and status endpoints

Called by: pytest
Depends on: routers/orders.py, order_sync.py
"""

import pytest

from channelsync.models import Order, OrderStatusEvent


@pytest.fixture()
def order(db_session, make_account):
    account = make_account()
    order = Order(
        merchant_id=1,
        account_id=account.id,
        channel_order_id="A-1",
        order_number="SHOPEE-A-1",
        status="PENDING",
        tags=[],
    )
    db_session.add(order)
    db_session.flush()
    db_session.add(OrderStatusEvent(order_id=order.id, to_status="PENDING", reason="order imported"))
    db_session.commit()
    return order


def test_get_order_with_timeline(client, order):
    data = client.get(f"/api/orders/{order.id}").json()
    assert data["order_number"] == "SHOPEE-A-1"
    assert data["status"] == "PENDING"
    assert data["timeline"][0]["reason"] == "order imported"
    assert data["items"] == []


def test_get_order_404(client):
    assert client.get("/api/orders/999").status_code == 404


def test_set_status_enqueues_push(client, ctx, fake_adapter, order):
    resp = client.post(f"/api/orders/{order.id}/status", json={"status": "confirmed", "reason": "paid"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "CONFIRMED"
    assert data["changed"] is True
    job = ctx.backlog.get_job(data["job_id"])
    assert job["job_type"] == "process-order"
    assert job["payload"]["status"] == "CONFIRMED"


@pytest.mark.asyncio
async def test_status_push_reaches_channel(client, ctx, fake_adapter, order):
    client.post(f"/api/orders/{order.id}/status", json={"status": "SHIPPED"})
    await ctx.backlog.run_until_idle()
    assert fake_adapter.status_updates == [("A-1", "SHIPPED")]


def test_set_status_without_push(client, order):
    data = client.post(f"/api/orders/{order.id}/status", json={"status": "CONFIRMED", "push": False}).json()
    assert data["changed"] is True
    assert data["job_id"] is None


def test_set_status_rejects_unknown(client, order):
    assert client.post(f"/api/orders/{order.id}/status", json={"status": "TELEPORTED"}).status_code == 422
    assert client.post("/api/orders/999/status", json={"status": "SHIPPED"}).status_code == 404
