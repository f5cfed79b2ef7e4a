from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from conftest import MARKETPLACE, FakeReportsClient, completed, processing
from routes.channel_inventory_routes import register_channel_inventory_routes
from routes.channel_mapping_routes import register_channel_mapping_routes
from services import report_batches
from services.catalog_service import upsert_catalog_variant
from services.spapi_reports import SpApiQuotaError


@pytest.fixture
def app_client(inventory_db):
    app = FastAPI()
    register_channel_inventory_routes(app)
    register_channel_mapping_routes(app)
    return TestClient(app)


def _use_client(monkeypatch, client):
    monkeypatch.setattr(report_batches, "get_spapi_client", lambda: client)
    return client


ROWS = [
    {"seller-sku": "A1", "afn-fulfillable-quantity": "5", "fulfillment-center-id": "BLR7"},
    {"seller-sku": "B2", "afn-fulfillable-quantity": "2", "fulfillment-center-id": "BLR7", "asin": "B0B2"},
]


def test_snapshot_poll_and_rows_flow(app_client, monkeypatch):
    _use_client(monkeypatch, FakeReportsClient([processing(), completed(ROWS)]))

    resp = app_client.post("/api/channel-inventory/snapshots", json={"marketplace_id": MARKETPLACE})
    assert resp.status_code == 200
    batch_id = resp.json()["batch_id"]

    first = app_client.get(f"/api/channel-inventory/batches/{batch_id}/poll").json()
    assert first["ok"] is True and first["status"] == "processing"
    second = app_client.get(f"/api/channel-inventory/batches/{batch_id}/poll").json()
    assert second["status"] == "completed"
    assert second["unmatched"] == 2

    rows = app_client.get(f"/api/channel-inventory/batches/{batch_id}/rows", params={"unmatched_only": True}).json()
    assert rows["total"] == 2

    rollup = app_client.get(f"/api/channel-inventory/batches/{batch_id}/rollups/locations").json()
    assert rollup["items"][0]["available_total"] == 7
    assert rollup["unmapped_locations"] == ["BLR7"]

    latest = app_client.get("/api/channel-inventory/batches/latest", params={"marketplace_id": MARKETPLACE}).json()
    assert latest["batch"]["id"] == batch_id


def test_map_sku_endpoint_rematches(app_client, monkeypatch):
    _use_client(monkeypatch, FakeReportsClient([completed(ROWS)]))
    batch_id = app_client.post("/api/channel-inventory/snapshots", json={"marketplace_id": MARKETPLACE}).json()["batch_id"]
    app_client.get(f"/api/channel-inventory/batches/{batch_id}/poll")
    upsert_catalog_variant("V2", "MUG-2")

    resp = app_client.post(f"/api/channel-inventory/batches/{batch_id}/map-sku", json={"external_sku": "b2", "variant_id": "V2"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["rematch"]["matched"] == 1
    assert body["mapping"]["asin"] == "B0B2"

    bad = app_client.post(f"/api/channel-inventory/batches/{batch_id}/map-sku", json={"external_sku": "A1", "variant_id": "NOPE"})
    assert bad.status_code == 400

    csv_resp = app_client.get(f"/api/channel-inventory/batches/{batch_id}/unmatched.csv")
    assert csv_resp.status_code == 200
    lines = csv_resp.text.splitlines()
    assert lines[0].startswith("external_sku,external_location_code,asin,fnsku")
    assert len(lines) == 2
    assert lines[1].startswith("A1,BLR7")


def test_quota_errors_are_reported_not_raised(app_client, monkeypatch):
    client = _use_client(monkeypatch, FakeReportsClient([SpApiQuotaError("QuotaExceeded")]))
    batch_id = app_client.post("/api/channel-inventory/snapshots", json={"marketplace_id": MARKETPLACE}).json()["batch_id"]

    resp = app_client.get(f"/api/channel-inventory/batches/{batch_id}/poll")
    assert resp.status_code == 200
    assert resp.json() == {"ok": False, "status": "quota_error", "error": "QuotaExceeded"}
    assert report_batches.get_batch(batch_id)["status"] == "requested"
    assert client.polls == ["RPT-1"]


def test_failed_snapshot_request_returns_batch_id(app_client, monkeypatch):
    _use_client(monkeypatch, FakeReportsClient(request_error=SpApiQuotaError("QuotaExceeded")))
    body = app_client.post("/api/channel-inventory/snapshots", json={"marketplace_id": MARKETPLACE}).json()
    assert body["ok"] is False
    assert body["status"] == "quota_error"
    assert report_batches.get_batch(body["batch_id"])["status"] == "failed"


def test_unknown_batch_and_bad_kind(app_client):
    assert app_client.get("/api/channel-inventory/batches/missing").status_code == 404
    assert app_client.get("/api/channel-inventory/batches/missing/rollups/locations").status_code == 404
    assert app_client.get("/api/channel-inventory/batches/missing/unmatched.csv").status_code == 404
    resp = app_client.post("/api/channel-inventory/snapshots", json={"snapshot_kind": "weekly"})
    assert resp.status_code == 400


def test_mapping_import_endpoint(app_client):
    upsert_catalog_variant("V1", "SHIRT-1")
    resp = app_client.post(
        "/api/channel-mappings/skus/import",
        json={
            "marketplace_id": MARKETPLACE,
            "csv_text": "seller_sku,erp_sku\nAMZ-1,shirt-1\nAMZ-2,\n",
        },
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is False
    assert body["summary"] == {"total": 2, "upserted": 1, "skipped": 0, "error": 1}

    listed = app_client.get("/api/channel-mappings/skus", params={"marketplace_id": MARKETPLACE}).json()
    assert [m["external_sku"] for m in listed["items"]] == ["AMZ-1"]

    deactivated = app_client.post(
        "/api/channel-mappings/skus/deactivate",
        json={"marketplace_id": MARKETPLACE, "codes": ["amz-1"]},
    ).json()
    assert deactivated["updated"] == 1


def test_location_mapping_endpoints(app_client):
    resp = app_client.post(
        "/api/channel-mappings/locations",
        json={"marketplace_id": MARKETPLACE, "location_code": "blr7", "state_code": "KA"},
    )
    assert resp.json()["mapping"]["location_code_norm"] == "BLR7"
    listed = app_client.get("/api/channel-mappings/locations", params={"marketplace_id": MARKETPLACE}).json()
    assert listed["total"] == 1
    assert app_client.post("/api/channel-mappings/locations", json={"location_code": " "}).status_code == 400
