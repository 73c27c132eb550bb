"""Integration tests for the Fulfillment API via TestClient."""

from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient

from fulfillment import main
from fulfillment.clients import evidence_client


@pytest.fixture()
def client():
    return TestClient(main.app)


@pytest.fixture()
def admin(token_for):
    return token_for("admin-1", "admin")


@pytest.fixture()
def auditor_headers(token_for):
    return token_for("auditor-1", "auditor")


@pytest.fixture()
def agent_headers(token_for):
    return token_for("agent-1", "agent")


@pytest.fixture()
def stocked_product(client, admin):
    """Helper: create a product with 5 units in one warehouse; returns its id."""
    response = client.post("/products", json={"sku": "HELMET-01", "name": "Casco integral", "price": "10.00"},
                           headers=admin)
    assert response.status_code == 201
    product_id = response.json()["id"]

    response = client.post("/warehouses", json={"name": "W1"}, headers=admin)
    assert response.status_code == 201
    warehouse_id = response.json()["id"]

    response = client.post("/inventory/movements", json={
        "product_id": product_id, "warehouse_id": warehouse_id, "quantity": 5, "type": "IN",
        "reason": "receiving",
    }, headers=admin)
    assert response.status_code == 201
    return product_id


def _create_draft(client, headers, product_id, quantity):
    response = client.post("/orders", json={
        "customer_ref": "CUST-001",
        "items": [{"product_id": product_id, "quantity": quantity}],
    }, headers=headers)
    assert response.status_code == 201
    return response.json()["id"]


def _submit(client, headers, order_id):
    return client.post(f"/orders/{order_id}/submit", json={
        "bank_ref": "TRX-0001",
        "evidence_ref": "https://evidence.local/receipt.png",
    }, headers=headers)


class TestHealthAndAuth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_missing_token(self, client):
        assert client.get("/orders").status_code in (401, 403)

    def test_invalid_token(self, client):
        response = client.get("/orders", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401


class TestOrderLifecycle:
    def test_draft_submit_verify(self, client, agent_headers, auditor_headers, stocked_product):
        order_id = _create_draft(client, agent_headers, stocked_product, 3)

        response = _submit(client, agent_headers, order_id)
        assert response.status_code == 200
        assert response.json()["status"] == "pending_verification"

        response = client.post(f"/orders/{order_id}/verify", headers=auditor_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processing_fulfillment"
        assert Decimal(body["subtotal"]) == Decimal("30.00")
        assert Decimal(body["commission"]["amount"]) == Decimal("3.00")

        stock = client.get(f"/inventory/{stocked_product}", headers=agent_headers).json()
        assert stock["total_stock"] == 2

        for step, expected in (("ready", "ready_for_pickup"), ("ship", "completed")):
            response = client.post(f"/orders/{order_id}/{step}", headers=auditor_headers)
            assert response.status_code == 200
            assert response.json()["status"] == expected

        timeline = client.get(f"/orders/{order_id}/timeline", headers=agent_headers).json()
        assert [e["new_value"] for e in timeline] == [
            "draft", "pending_verification", "processing_fulfillment", "ready_for_pickup", "completed",
        ]

    def test_cancel_verified_order_restocks(self, client, agent_headers, auditor_headers, stocked_product):
        order_id = _create_draft(client, agent_headers, stocked_product, 4)
        _submit(client, agent_headers, order_id)
        client.post(f"/orders/{order_id}/verify", headers=auditor_headers)

        response = client.post(f"/orders/{order_id}/cancel", json={"reason": "duplicate"}, headers=auditor_headers)

        assert response.status_code == 200
        assert response.json()["commission"]["voided"] is True
        assert client.get(f"/inventory/{stocked_product}", headers=agent_headers).json()["total_stock"] == 5


class TestErrorMapping:
    def test_empty_draft_is_validation_error(self, client, agent_headers):
        response = client.post("/orders", json={"customer_ref": "CUST-001", "items": []}, headers=agent_headers)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_unknown_product_is_not_found(self, client, agent_headers):
        response = client.post("/orders", json={
            "customer_ref": "CUST-001", "items": [{"product_id": 999, "quantity": 1}],
        }, headers=agent_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_missing_bank_ref_is_precondition_failure(self, client, agent_headers, stocked_product):
        order_id = _create_draft(client, agent_headers, stocked_product, 1)
        response = client.post(f"/orders/{order_id}/submit", json={
            "bank_ref": "", "evidence_ref": "https://evidence.local/receipt.png",
        }, headers=agent_headers)
        assert response.status_code == 412
        assert response.json()["error"] == "precondition_failed"

    def test_insufficient_stock(self, client, agent_headers, auditor_headers, stocked_product):
        first = _create_draft(client, agent_headers, stocked_product, 3)
        second = _create_draft(client, agent_headers, stocked_product, 4)
        _submit(client, agent_headers, first)
        _submit(client, agent_headers, second)
        assert client.post(f"/orders/{first}/verify", headers=auditor_headers).status_code == 200

        response = client.post(f"/orders/{second}/verify", headers=auditor_headers)

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "insufficient_stock"
        assert body["shortfall"] == 2
        assert body["product_id"] == stocked_product
        order = client.get(f"/orders/{second}", headers=agent_headers).json()
        assert order["status"] == "pending_verification"

    def test_agent_cannot_verify(self, client, agent_headers, stocked_product):
        order_id = _create_draft(client, agent_headers, stocked_product, 1)
        _submit(client, agent_headers, order_id)
        assert client.post(f"/orders/{order_id}/verify", headers=agent_headers).status_code == 403

    def test_other_agent_cannot_read_order(self, client, agent_headers, token_for, stocked_product):
        order_id = _create_draft(client, agent_headers, stocked_product, 1)
        response = client.get(f"/orders/{order_id}", headers=token_for("agent-2"))
        assert response.status_code == 403
        assert response.json()["error"] == "permission_denied"

    def test_out_of_order_transition(self, client, agent_headers, auditor_headers, stocked_product):
        order_id = _create_draft(client, agent_headers, stocked_product, 1)
        response = client.post(f"/orders/{order_id}/ship", headers=auditor_headers)
        assert response.status_code == 412
        assert response.json()["status"] == "draft"

    def test_unknown_order(self, client, auditor_headers):
        response = client.post("/orders/ORD-MISSING/verify", headers=auditor_headers)
        assert response.status_code == 404


class TestOrderListing:
    def test_agents_see_only_their_orders(self, client, agent_headers, auditor_headers, token_for, stocked_product):
        _create_draft(client, agent_headers, stocked_product, 1)
        _create_draft(client, token_for("agent-2"), stocked_product, 1)

        assert len(client.get("/orders", headers=agent_headers).json()) == 1
        assert len(client.get("/orders", headers=auditor_headers).json()) == 2

    def test_csv_export(self, client, agent_headers, stocked_product):
        order_id = _create_draft(client, agent_headers, stocked_product, 2)

        response = client.get("/orders/export/csv", headers=agent_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.strip().splitlines()
        assert lines[0].startswith("id,agent_id,customer_ref,status")
        assert lines[1].startswith(f"{order_id},agent-1,CUST-001,draft")


class TestEvidenceUpload:
    def test_upload_returns_reference(self, client, agent_headers, stocked_product, monkeypatch):
        received = {}

        async def fake_upload(filename, content, content_type=None, token=None):
            received.update(filename=filename, content=content, token=token)
            return "https://evidence.local/receipts/abc.png"

        monkeypatch.setattr(evidence_client, "upload_evidence", fake_upload)
        order_id = _create_draft(client, agent_headers, stocked_product, 1)

        response = client.post(f"/orders/{order_id}/evidence",
                               files={"file": ("receipt.png", b"\x89PNG...", "image/png")},
                               headers=agent_headers)

        assert response.status_code == 200
        assert response.json() == {"order_id": order_id, "evidence_ref": "https://evidence.local/receipts/abc.png"}
        assert received["filename"] == "receipt.png"
        assert received["content"] == b"\x89PNG..."
        assert received["token"]

    def test_store_unavailable(self, client, agent_headers, stocked_product, monkeypatch):
        async def failing_upload(filename, content, content_type=None, token=None):
            raise httpx.ConnectError("connection refused")

        monkeypatch.setattr(evidence_client, "upload_evidence", failing_upload)
        order_id = _create_draft(client, agent_headers, stocked_product, 1)

        response = client.post(f"/orders/{order_id}/evidence",
                               files={"file": ("receipt.png", b"data", "image/png")},
                               headers=agent_headers)

        assert response.status_code == 503

    def test_submitted_order_rejects_evidence(self, client, agent_headers, stocked_product, monkeypatch):
        async def fake_upload(filename, content, content_type=None, token=None):
            return "https://evidence.local/receipts/late.png"

        monkeypatch.setattr(evidence_client, "upload_evidence", fake_upload)
        order_id = _create_draft(client, agent_headers, stocked_product, 1)
        _submit(client, agent_headers, order_id)

        response = client.post(f"/orders/{order_id}/evidence",
                               files={"file": ("receipt.png", b"data", "image/png")},
                               headers=agent_headers)

        assert response.status_code == 412


class TestCatalogAndAgents:
    def test_duplicate_sku(self, client, admin, stocked_product):
        response = client.post("/products", json={"sku": "HELMET-01", "name": "Otro", "price": "1.00"},
                               headers=admin)
        assert response.status_code == 400

    def test_only_admin_creates_products(self, client, agent_headers):
        response = client.post("/products", json={"sku": "X", "name": "X", "price": "1.00"}, headers=agent_headers)
        assert response.status_code == 403

    def test_out_movement_beyond_stock(self, client, admin, stocked_product):
        response = client.post("/inventory/movements", json={
            "product_id": stocked_product, "warehouse_id": 1, "quantity": 9, "type": "OUT",
        }, headers=admin)
        assert response.status_code == 409
        assert response.json()["error"] == "insufficient_stock"

    def test_agent_commission_settings_apply(self, client, admin, agent_headers, auditor_headers, stocked_product):
        response = client.put("/agents/agent-1/commission", json={
            "commission_rate": "0.20", "shipping_commission_mode": "none",
        }, headers=admin)
        assert response.status_code == 200

        order_id = _create_draft(client, agent_headers, stocked_product, 1)
        _submit(client, agent_headers, order_id)
        body = client.post(f"/orders/{order_id}/verify", headers=auditor_headers).json()

        assert Decimal(body["commission"]["amount"]) == Decimal("2.00")


class TestDashboardEndpoints:
    def test_dashboard_summary(self, client, agent_headers, stocked_product):
        for text in ["casco integral", "CASCO INTEGRAL", "llanta 17", "casco integral"]:
            assert client.post("/lost-demand", json={"search_text": text}, headers=agent_headers).status_code == 201

        body = client.get("/dashboard", headers=agent_headers).json()

        assert body["top_lost_demand"] == [
            {"term": "CASCO INTEGRAL", "count": 3},
            {"term": "LLANTA 17", "count": 1},
        ]
        assert body["low_stock_count"] == 1

    def test_agent_and_commission_dashboards(self, client, agent_headers, auditor_headers, stocked_product):
        order_id = _create_draft(client, agent_headers, stocked_product, 2)
        _submit(client, agent_headers, order_id)
        client.post(f"/orders/{order_id}/verify", headers=auditor_headers)

        stats = client.get("/dashboard/agent", headers=agent_headers).json()
        assert stats["total_orders"] == 1
        assert stats["total_items_sold"] == 2

        commissions = client.get("/dashboard/commissions", headers=auditor_headers).json()
        assert [(c["agent_id"], Decimal(c["earned_commission"])) for c in commissions] == [
            ("agent-1", Decimal("2.00")),
        ]


class TestDashboardCacheInvalidation:
    @pytest.fixture()
    def invalidations(self, monkeypatch):
        calls = []
        monkeypatch.setattr(main.cache, "invalidate_dashboard", lambda: calls.append(1))
        return calls

    def test_inventory_movement_invalidates(self, client, admin, stocked_product, invalidations):
        invalidations.clear()
        response = client.post("/inventory/movements", json={
            "product_id": stocked_product, "warehouse_id": 1, "quantity": 2, "type": "OUT",
        }, headers=admin)
        assert response.status_code == 201
        assert len(invalidations) == 1

    def test_lost_demand_invalidates(self, client, agent_headers, invalidations):
        response = client.post("/lost-demand", json={"search_text": "llanta 17"}, headers=agent_headers)
        assert response.status_code == 201
        assert len(invalidations) == 1
