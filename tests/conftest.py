from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import pytest

from services import db as db_service

os.environ.setdefault("LWA_CLIENT_ID", "dummy")
os.environ.setdefault("LWA_CLIENT_SECRET", "dummy")
os.environ.setdefault("LWA_REFRESH_TOKEN", "dummy")

CHANNEL = "amazon"
MARKETPLACE = "TEST-MKT"


class FakeReportsClient:
    """Stands in for the SP-API Reports client; replays scripted status results."""

    def __init__(self, statuses: Optional[List[Any]] = None, report_id: str = "RPT-1", request_error: Exception = None):
        self.statuses = list(statuses or [])
        self.report_id = report_id
        self.request_error = request_error
        self.requests: List[Dict[str, Any]] = []
        self.polls: List[str] = []

    def request_report(self, params: Dict[str, Any]) -> Dict[str, Any]:
        self.requests.append(params)
        if self.request_error is not None:
            raise self.request_error
        return {"report_id": self.report_id, "request": params, "response": {"reportId": self.report_id}}

    def fetch_report_status(self, report_id: str) -> Dict[str, Any]:
        self.polls.append(report_id)
        item = self.statuses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def completed(rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "status": "completed",
        "external_status": "DONE",
        "message": "Report completed.",
        "payload": {"processingStatus": "DONE"},
        "rows": rows,
    }


def processing(external_status: str = "IN_PROGRESS") -> Dict[str, Any]:
    return {
        "status": "processing",
        "external_status": external_status,
        "message": "Report still processing.",
        "payload": {"processingStatus": external_status},
    }


@pytest.fixture
def inventory_db(tmp_path, monkeypatch):
    db_path = tmp_path / "channel_inventory.db"
    monkeypatch.setattr(db_service, "INVENTORY_DB_PATH", db_path)
    db_service.ensure_inventory_schema()
    return db_path


@pytest.fixture
def fake_client():
    return FakeReportsClient


@pytest.fixture
def ingested_batch(inventory_db):
    """Build a completed batch from raw rows; returns (batch_id, poll_result)."""
    from services import report_batches

    def _build(rows: List[Dict[str, Any]], kind: str = "per-location"):
        client = FakeReportsClient([completed(rows)])
        batch_id = report_batches.request_snapshot(CHANNEL, MARKETPLACE, kind, client=client)
        result = report_batches.poll_once(batch_id, client=client)
        return batch_id, result

    return _build
