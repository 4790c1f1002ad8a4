"""
tests/test_routers_inventory.py — Tests for the inventory endpoints

Called by: pytest
Depends on: routers/inventory.py, schemas/sync.py
"""

import pytest


def test_get_inventory(client, make_product):
    product = make_product(quantity=12, reserved=2, min_threshold=5)
    data = client.get(f"/api/inventory/{product.id}").json()
    assert data["quantity"] == 12
    assert data["available"] == 10
    assert data["min_threshold"] == 5


def test_get_inventory_unknown_product(client):
    resp = client.get("/api/inventory/999")
    assert resp.status_code == 404
    assert resp.json()["error"] == "product 999 not found"


def test_set_quantity_queues_pushes(client, ctx, make_account, make_product, make_listing, make_rule):
    account = make_account()
    product = make_product(quantity=100)
    make_listing(product, account)
    make_rule([account.id])

    resp = client.post(f"/api/inventory/{product.id}/adjust", json={"quantity": 80, "reason": "recount"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["quantity"] == 80
    assert data["pushes_queued"] == 1
    assert ctx.backlog.queue_stats()["push-target"]["waiting"] == 1


def test_delta_adjust(client, make_product):
    product = make_product(quantity=3)
    data = client.post(f"/api/inventory/{product.id}/adjust", json={"delta": -5}).json()
    assert data["available"] == -2
    assert data["oversold"] is True


@pytest.mark.parametrize(
    "body",
    [{}, {"quantity": 1, "delta": 1}, {"delta": 0}, {"quantity": -1}],
)
def test_adjust_body_validation(client, make_product, body):
    product = make_product()
    assert client.post(f"/api/inventory/{product.id}/adjust", json=body).status_code == 422


def test_adjust_unknown_product(client):
    assert client.post("/api/inventory/999/adjust", json={"delta": 1}).status_code == 404
