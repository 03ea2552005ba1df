import pytest
from fastapi.testclient import TestClient

from database import get_db
from main import app
from models.collectible import CollectionReport
from utils.reconciliation import reconcile_report

ADMIN_KEY = "admin-test-key"
HEADERS = {"X-Admin-Key": ADMIN_KEY, "X-Operator": "ops@acme"}


@pytest.fixture
def client(db, monkeypatch):
    monkeypatch.setattr("utils.guards.ADMIN_API_KEY", ADMIN_KEY)
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def register(client, ref="AWB1001"):
    return client.post(
        "/api/admin/collectibles",
        headers=HEADERS,
        json={
            "shipment_ref": ref,
            "account_id": "ACC-1",
            "carrier": "velocity",
            "expected_base": 1200_00,
            "expected_handling": 100_00,
            "shipping_cost": 60_00,
        },
    )


@pytest.mark.asyncio
async def test_operator_key_is_required(client):
    assert client.get("/api/admin/health").status_code == 403
    assert client.get("/api/admin/health", headers={"X-Admin-Key": "wrong"}).status_code == 403


@pytest.mark.asyncio
async def test_register_and_inspect_collectible(client):
    created = register(client)
    assert created.status_code == 200
    body = created.json()
    assert body["expected_total"] == 1300_00
    assert body["status"] == "pending"

    duplicate = register(client)
    assert duplicate.status_code == 409
    assert duplicate.json()["ok"] is False

    detail = client.get(f"/api/admin/collectibles/{body['id']}", headers=HEADERS).json()
    assert detail["collectible"]["shipment_ref"] == "AWB1001"
    assert [e["event"] for e in detail["timeline"]] == ["COLLECTIBLE_CREATED"]

    missing = client.get("/api/admin/collectibles/COL-NOPE", headers=HEADERS)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_discrepancy_workflow_over_http(db, now, client):
    register(client)
    outcome = await reconcile_report(
        db,
        CollectionReport(collectible_ref="AWB1001", reported_amount=1100_00, reported_at=now, source="file"),
        now=now,
    )
    discrepancy_id = outcome["discrepancy_id"]

    listing = client.get("/api/admin/discrepancies", headers=HEADERS).json()
    assert listing["count"] == 1
    assert listing["discrepancies"][0]["id"] == discrepancy_id

    review = client.post(f"/api/admin/discrepancies/{discrepancy_id}/review", headers=HEADERS, json={})
    assert review.json()["status"] == "under_review"

    evidence = client.post(
        f"/api/admin/discrepancies/{discrepancy_id}/evidence",
        headers=HEADERS,
        json={"kind": "mis_extract", "reference": "mis/2026-03-10.csv"},
    )
    assert evidence.json()["evidence"][0]["added_by"] == "ops@acme"

    resolved = client.post(
        f"/api/admin/discrepancies/{discrepancy_id}/resolve",
        headers=HEADERS,
        json={"corrected_amount": 1300_00, "note": "courier re-sent MIS"},
    )
    assert resolved.json()["status"] == "resolved"

    again = client.post(f"/api/admin/discrepancies/{discrepancy_id}/accept", headers=HEADERS, json={})
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "INVALID_TRANSITION"

    collectible = await db.collectibles.find_one({"shipment_ref": "AWB1001"})
    assert collectible["status"] == "reconciled"
    assert collectible["reconciled_by"] == "operator"


@pytest.mark.asyncio
async def test_batch_lifecycle_over_http(db, now, account, client, seed_collectibles):
    await seed_collectibles(2, amount=1300_00)

    created = client.post("/api/admin/batches", headers=HEADERS, json={"account_id": "ACC-1"})
    assert created.status_code == 200
    batch = created.json()
    assert batch["status"] == "pending_approval"
    assert batch["created_by"] == "ops@acme"

    approved = client.post(f"/api/admin/batches/{batch['id']}/approve", headers=HEADERS)
    assert approved.json()["status"] == "approved"

    cancelled = client.post(
        f"/api/admin/batches/{batch['id']}/cancel",
        headers=HEADERS,
        json={"reason": "merchant request"},
    )
    assert cancelled.json()["status"] == "cancelled"

    nothing = client.post("/api/admin/batches", headers=HEADERS, json={"account_id": "ACC-1", "tier": "t_plus_1"})
    assert nothing.status_code == 422
    assert nothing.json()["error"]["code"] == "TIER_NOT_ELIGIBLE"


@pytest.mark.asyncio
async def test_blacklist_routes(client):
    added = client.post(
        "/api/admin/risk/blacklist",
        headers=HEADERS,
        json={"phone": "9876543210", "reason": "fraud ring", "expires_in_days": 30},
    )
    assert added.json() == {"ok": True, "risk_score": 100, "risk_level": "critical"}

    lifted = client.delete("/api/admin/risk/blacklist/9876543210", headers=HEADERS)
    assert lifted.json()["ok"] is True

    again = client.delete("/api/admin/risk/blacklist/9876543210", headers=HEADERS)
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_cod_check_blocks_with_generic_message(db, client):
    client.post(
        "/api/admin/risk/blacklist",
        headers=HEADERS,
        json={"phone": "9876543210", "reason": "fraud ring"},
    )

    response = client.post(
        "/api/risk/cod-check",
        json={
            "order_id": "ORD-1",
            "account_id": "ACC-1",
            "phone": "9876543210",
            "order_value": 1300_00,
            "address": {"city": "Pune", "pincode": "411001"},
        },
    )

    assert response.status_code == 403
    error = response.json()["error"]
    assert error["code"] == "COD_UNAVAILABLE"
    assert "fraud" not in response.text
    assert "score" not in response.text


@pytest.mark.asyncio
async def test_forecast_and_health(db, now, account, client, seed_collectibles):
    await seed_collectibles(2, amount=1000_00)

    forecast = client.get("/api/admin/accounts/ACC-1/forecast", headers=HEADERS).json()
    assert forecast["stages"]["reconciled_unbatched"] == 2000_00

    health = client.get("/api/admin/health", headers=HEADERS).json()
    assert health["open_discrepancies"]["critical"] == 0
    assert "alerts" in health
