from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from po_engine.app.api.deps import get_db, get_policy_store
from po_engine.app.main import app, status_code_for
from po_engine.services.errors import (
    AuditAppendFailure,
    OrderLocked,
    PolicyViolation,
    ProcurementError,
    TransitionDenied,
)
from po_engine.services.inventory import SqlStockRepository

SINGLE_APPROVER_POLICY = {
    "thresholds": [
        {"id": "t-manager", "name": "Manager", "min_amount": "0", "max_amount": "50000", "required_roles": ["manager"]},
        {"id": "t-admin", "name": "Admin", "min_amount": "50000", "required_roles": ["admin"]},
    ]
}


@pytest.fixture
def client(db_session, policy_store):
    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_policy_store] = lambda: policy_store
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


def as_actor(user) -> dict:
    return {"X-Actor-Id": str(user.id)}


def create_po(client, supplier, lines, actor):
    r = client.post(
        "/v1/purchase-orders",
        json={
            "supplier_id": supplier.id,
            "lines": [{"product_id": p.id, "qty_ordered": qty, "unit_cost": str(cost)} for p, qty, cost in lines],
        },
        headers=as_actor(actor),
    )
    assert r.status_code == 200, r.text
    return r.json()


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "policy_version": 1}


def test_full_lifecycle_over_http(client, supplier, products, users):
    purchaser, manager, warehouse = users["purchaser"], users["manager"], users["warehouse"]
    body = create_po(client, supplier, [(products[0], 10, "12.50")], purchaser)
    po_id = body["id"]
    assert body["status"] == "draft"
    assert Decimal(body["total"]) == Decimal("125")

    assert client.post(f"/v1/purchase-orders/{po_id}/submit", headers=as_actor(purchaser)).json()["status"] == "pending_approval"
    assert client.get(f"/v1/purchase-orders/{po_id}/transitions").json()["reachable"] == ["approved", "cancelled", "draft"]

    r = client.post(f"/v1/purchase-orders/{po_id}/approve", json={"reason": "ok"}, headers=as_actor(manager))
    assert r.status_code == 200 and r.json()["approved_by"] == str(manager.id)
    assert client.post(f"/v1/purchase-orders/{po_id}/send", headers=as_actor(purchaser)).json()["status"] == "sent_to_supplier"

    receipt = {"lines": [{"product_id": products[0].id, "quantity": 4}]}
    headers = {**as_actor(warehouse), "Idempotency-Key": "dock-1"}
    first = client.post(f"/v1/purchase-orders/{po_id}/receive", json=receipt, headers=headers).json()
    again = client.post(f"/v1/purchase-orders/{po_id}/receive", json=receipt, headers=headers).json()
    assert first["new_status"] == "partially_received" and not first["replayed"]
    assert again["replayed"] and again["receipt_id"] == first["receipt_id"]

    (stock,) = client.get("/v1/stock", params={"product_id": products[0].id}).json()
    assert (stock["qty_on_hand"], stock["qty_on_order"]) == (4, 6)

    history = client.get(f"/v1/purchase-orders/{po_id}/history").json()
    assert [h["action"] for h in history] == ["received", "sent_to_supplier", "approved", "submitted", "created"]
    assert history[2]["diff"] == {"kind": "status_change", "old_status": "pending_approval", "new_status": "approved"}

    only = client.get(f"/v1/purchase-orders/{po_id}/history", params={"action": ["approved", "created"]}).json()
    assert [h["action"] for h in only] == ["approved", "created"]


def test_policy_swap_and_role_denial(client, supplier, products, users):
    r = client.put("/v1/approvals/policy", json=SINGLE_APPROVER_POLICY, headers=as_actor(users["admin"]))
    assert r.status_code == 200 and r.json()["version"] == 2

    (swap,) = client.get("/v1/audit", params={"actor_id": str(users["admin"].id)}).json()
    assert (swap["entity_type"], swap["action"]) == ("approval_policy", "policy_swapped")
    assert (swap["metadata"]["old_version"], swap["metadata"]["new_version"]) == (1, 2)

    po_id = create_po(client, supplier, [(products[0], 60, 1000)], users["purchaser"])["id"]
    client.post(f"/v1/purchase-orders/{po_id}/submit", headers=as_actor(users["purchaser"]))

    denied = client.post(f"/v1/purchase-orders/{po_id}/approve", headers=as_actor(users["manager"]))
    assert denied.status_code == 403
    assert denied.json()["detail"]["code"] == "POLICY_VIOLATION"

    ok = client.post(f"/v1/purchase-orders/{po_id}/approve", headers=as_actor(users["admin"]))
    assert ok.status_code == 200 and ok.json()["status"] == "approved"


def test_invalid_policy_is_refused(client, users):
    bad = {"thresholds": [{"id": "x", "name": "X", "min_amount": "100", "max_amount": "10", "required_roles": ["admin"]}]}
    assert client.put("/v1/approvals/policy", json=bad, headers=as_actor(users["admin"])).status_code == 422
    assert client.get("/v1/approvals/policy").json()["version"] == 1


def test_only_admins_can_swap_the_policy(client, users):
    for headers in ({}, as_actor(users["manager"]), {"X-Actor-Id": "424242"}):
        r = client.put("/v1/approvals/policy", json=SINGLE_APPROVER_POLICY, headers=headers)
        assert r.status_code == 403
        assert r.json()["detail"]["code"] == "POLICY_VIOLATION"

    assert client.get("/v1/approvals/policy").json()["version"] == 1
    assert client.get("/v1/audit/approval_policy/active/count").json()["count"] == 0


def test_approval_stats(client, supplier, products, users):
    ids = []
    for p in products[:3]:
        po_id = create_po(client, supplier, [(p, 1, 100)], users["purchaser"])["id"]
        client.post(f"/v1/purchase-orders/{po_id}/submit", headers=as_actor(users["purchaser"]))
        ids.append(po_id)

    client.post(f"/v1/purchase-orders/{ids[0]}/approve", headers=as_actor(users["manager"]))
    client.post(f"/v1/purchase-orders/{ids[1]}/reject", json={"reason": "duplicate"}, headers=as_actor(users["manager"]))

    stats = client.get("/v1/approvals/stats").json()
    assert stats["pending_approvals"] == 1
    assert (stats["total_approved"], stats["total_rejected"]) == (1, 1)
    assert stats["approval_rate"] == 0.5
    assert stats["votes_recorded"] == 1
    assert stats["average_approval_hours"] is not None


def test_bulk_endpoints(client, supplier, products, users):
    ids = []
    for p in products[:2]:
        po_id = create_po(client, supplier, [(p, 1, 100)], users["purchaser"])["id"]
        client.post(f"/v1/purchase-orders/{po_id}/submit", headers=as_actor(users["purchaser"]))
        ids.append(po_id)

    preview = client.post("/v1/approvals/preview", json={"order_ids": ids}, headers=as_actor(users["manager"])).json()
    assert preview["is_valid"] and preview["risk"]["count"] == 2

    result = client.post(
        "/v1/approvals/reject", json={"order_ids": ids, "reason": "duplicate"}, headers=as_actor(users["manager"])
    ).json()
    assert result["success_count"] == 2
    assert {r["new_status"] for r in result["results"]} == {"cancelled"}


def test_error_mapping(client, supplier, products, users):
    purchaser = as_actor(users["purchaser"])

    assert client.get("/v1/purchase-orders/999999").status_code == 404

    r = client.post(
        "/v1/purchase-orders",
        json={"supplier_id": 424242, "lines": [{"product_id": products[0].id, "qty_ordered": 1, "unit_cost": "1"}]},
        headers=purchaser,
    )
    assert r.status_code == 422 and r.json()["detail"]["code"] == "INVALID_ORDER"

    po_id = create_po(client, supplier, [(products[0], 5, 10)], users["purchaser"])["id"]
    r = client.post(f"/v1/purchase-orders/{po_id}/send", headers=purchaser)
    assert r.status_code == 409
    assert r.json()["detail"]["details"] == {"current": "draft", "proposed": "sent_to_supplier"}

    client.post(f"/v1/purchase-orders/{po_id}/submit", headers=purchaser)
    r = client.post(f"/v1/purchase-orders/{po_id}/reject", json={"reason": " "}, headers=as_actor(users["manager"]))
    assert r.status_code == 403

    client.post(f"/v1/purchase-orders/{po_id}/approve", headers=as_actor(users["manager"]))
    client.post(f"/v1/purchase-orders/{po_id}/send", headers=purchaser)
    r = client.post(
        f"/v1/purchase-orders/{po_id}/receive",
        json={"lines": [{"product_id": products[0].id, "quantity": 6}]},
        headers=as_actor(users["warehouse"]),
    )
    assert r.status_code == 422
    assert r.json()["detail"]["details"]["errors"][0]["code"] == "OVER_RECEIPT"


def test_audit_queries(client, supplier, products, users):
    create_po(client, supplier, [(products[0], 1, 1)], users["purchaser"])

    assert client.get("/v1/audit").status_code == 400

    mine = client.get("/v1/audit", params={"actor_id": str(users["purchaser"].id)}).json()
    assert [r["action"] for r in mine] == ["created"]

    window = client.get("/v1/audit", params={"since": "2000-01-01T00:00:00Z", "until": "2999-01-01T00:00:00Z"}).json()
    assert len(window) == 1

    count = client.get(f"/v1/audit/purchase_order/{mine[0]['entity_id']}/count").json()
    assert count["count"] == 1


@pytest.mark.parametrize(
    "exc,status",
    [
        (PolicyViolation("no"), 403),
        (TransitionDenied("draft", "closed"), 409),
        (OrderLocked("locked"), 409),
        (AuditAppendFailure("down"), 503),
        (ProcurementError("generic"), 400),
    ],
)
def test_status_code_for(exc, status):
    assert status_code_for(exc) == status


def test_stock_movements_listing(client, db_session, products):
    repo = SqlStockRepository(db_session, actor_id="7")
    repo.apply_delta(products[0].id, 3, "GR:test:1", reason="GOODS_RECEIPT")
    repo.apply_delta(products[1].id, 2, "GR:test:2", reason="GOODS_RECEIPT")
    db_session.commit()

    rows = client.get("/v1/stock/movements", params={"product_id": products[0].id}).json()
    assert [(r["movement_type"], r["quantity"], r["qty_after"]) for r in rows] == [("RECEIPT", 3, 3)]


def test_master_data(client, users):
    r = client.post("/v1/suppliers", json={"name": "ACME", "lead_time_days": 3})
    assert r.status_code == 201
    supplier_id = r.json()["id"]
    assert client.post("/v1/suppliers", json={"name": "ACME"}).status_code == 409
    assert client.get(f"/v1/suppliers/{supplier_id}").json()["lead_time_days"] == 3

    r = client.post("/v1/products", json={"sku": "BOLT-8", "name": "Bolt M8"})
    assert r.status_code == 201
    product_id = r.json()["id"]
    assert client.post("/v1/products", json={"sku": "BOLT-8", "name": "again"}).status_code == 409

    assert client.post(f"/v1/products/{product_id}/deactivate").json()["active"] is False
    assert client.get("/v1/products", params={"active_only": True}).json() == []

    r = client.post(
        "/v1/purchase-orders",
        json={"supplier_id": supplier_id, "lines": [{"product_id": product_id, "qty_ordered": 1, "unit_cost": "2"}]},
        headers=as_actor(users["purchaser"]),
    )
    assert r.status_code == 422
    assert "inactive" in r.json()["detail"]["message"]
