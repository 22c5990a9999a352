from __future__ import annotations

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from lotledger.deps import session_dep
from lotledger.main import app


@pytest.fixture
def client(session_factory):
    def _session():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[session_dep] = _session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _product(client, code="FRU-001") -> int:
    response = client.post("/products", json={"code": code, "name": "Apple", "unit": "kg", "base_price": "2.5"})
    assert response.status_code == 200
    return response.json()["id"]


def _receipt(client, product_id: int, warehouse_id: int, quantity: str, reference: str = "REM-1"):
    return client.post(
        "/receipts",
        json={
            "supplier_reference": reference,
            "warehouse_id": warehouse_id,
            "lines": [{"product_id": product_id, "total_quantity": quantity, "quantity_type1": quantity}],
        },
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_receive_and_consume_over_http(client, make_warehouse):
    warehouse = make_warehouse()
    product_id = _product(client)

    response = _receipt(client, product_id, warehouse.id, "10")
    assert response.status_code == 200
    assert len(response.json()["lot_ids"]) == 1

    stock = client.get(f"/stock/{product_id}", params={"warehouse_id": warehouse.id}).json()
    assert Decimal(stock["quantity"]) == Decimal("10")

    sale = client.post(
        "/sales/consume",
        json={"product_id": product_id, "quantity": "12", "sale_reference": "V-1"},
    ).json()
    assert Decimal(sale["applied"]) == Decimal("10")
    assert Decimal(sale["pending"]) == Decimal("2")

    pending = client.get("/sales/pending").json()
    assert [Decimal(p["quantity"]) for p in pending] == [Decimal("2")]
    assert Decimal(client.get(f"/stock/{product_id}").json()["quantity"]) == Decimal("0")


def test_receipt_replay_is_idempotent(client, make_warehouse):
    warehouse = make_warehouse()
    product_id = _product(client)

    first = _receipt(client, product_id, warehouse.id, "4").json()
    second = _receipt(client, product_id, warehouse.id, "4").json()

    assert second["idempotent"] is True
    assert second["lot_ids"] == first["lot_ids"]
    assert Decimal(client.get(f"/stock/{product_id}").json()["quantity"]) == Decimal("4")


def test_domain_errors_map_to_json(client, make_warehouse):
    warehouse = make_warehouse()
    product_id = _product(client)
    _receipt(client, product_id, warehouse.id, "1")

    missing = client.get("/stock/999")
    assert missing.status_code == 404
    assert missing.json()["code"] == "not_found"

    rejected = client.post(
        "/sales/consume",
        json={"product_id": product_id, "quantity": "5", "sale_reference": "V-9", "shortfall_policy": "reject"},
    )
    assert rejected.status_code == 409
    assert rejected.json()["code"] == "insufficient_stock"

    duplicate = client.post("/products", json={"code": "FRU-001", "name": "Again"})
    assert duplicate.status_code == 422
    assert duplicate.json()["code"] == "validation_error"


def test_transfer_to_same_warehouse_is_rejected(client, make_warehouse):
    warehouse = make_warehouse()
    product_id = _product(client)

    response = client.post(
        "/transfers",
        json={
            "lines": [
                {
                    "product_id": product_id,
                    "quantity": "1",
                    "source_warehouse_id": warehouse.id,
                    "destination_warehouse_id": warehouse.id,
                }
            ]
        },
    )

    assert response.status_code == 422


def test_product_creation_is_queued_for_sales(client):
    _product(client)

    events = client.get("/outbox", params={"status": "PENDING"}).json()

    assert [e["event_type"] for e in events] == ["PRODUCT_UPSERT"]
    assert events[0]["payload"]["codigo_comercial"] == "FRU-001"


def test_count_adjustment_and_kardex_over_http(client, make_warehouse):
    warehouse = make_warehouse()
    product_id = _product(client)
    _receipt(client, product_id, warehouse.id, "10")

    response = client.post(
        "/adjustments/count",
        json={
            "reference": "INV-1",
            "occurred_at": "2026-03-10T12:00:00Z",
            "lines": [{"product_id": product_id, "warehouse_id": warehouse.id, "counted_quantity": "7.5"}],
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["opening_day"] == "2026-03-11"
    assert Decimal(body["adjustments"][0]["delta"]) == Decimal("-2.5")

    snapshot = client.get("/stock/snapshot/2026-03-11").json()
    assert [Decimal(s["quantity"]) for s in snapshot] == [Decimal("7.5")]

    kardex = client.get(f"/stock/{product_id}/kardex", params={"warehouse_id": warehouse.id}).json()
    assert sorted(r["type"] for r in kardex["rows"]) == ["ADJUSTMENT", "INBOUND"]
    assert Decimal(kardex["balance"]) == Decimal("7.5")

    bad = client.post(
        "/adjustments/count",
        json={"lines": [{"product_id": product_id, "warehouse_id": warehouse.id, "counted_quantity": "1.00001"}]},
    )
    assert bad.status_code == 422
