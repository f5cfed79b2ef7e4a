"""Channel inventory snapshot API routes (batches, rows, rollups, rematch)."""
# DB-FIRST: batches and rows live in SQLite; the channel is only asked for reports.

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from config import CHANNEL_KEY, MARKETPLACE_ID, STUCK_BATCH_MINUTES
from services import inventory_rollups, inventory_rows, rematch, report_batches
from services.db import ensure_inventory_schema
from services.report_batches import BatchNotFoundError, SnapshotRequestError
from services.spapi_reports import ReportApiError, SpApiQuotaError

router = APIRouter(prefix="/api/channel-inventory")
logger = logging.getLogger(__name__)


class SnapshotRequest(BaseModel):
    snapshot_kind: str = Field("per-location", description="marketplace-totals | per-location")
    channel_key: Optional[str] = None
    marketplace_id: Optional[str] = None


class MapSkuRequest(BaseModel):
    external_sku: str
    variant_id: str
    notes: Optional[str] = None


class AbandonRequest(BaseModel):
    reason: Optional[str] = None


def _transport_error(exc: ReportApiError) -> Dict[str, Any]:
    status = "quota_error" if isinstance(exc, SpApiQuotaError) else "transport_error"
    logger.warning("[ChannelInventory] %s from %s: %s", status, exc.collaborator, exc)
    return {"ok": False, "status": status, "error": str(exc)}


def _call(label: str, fn: Callable[[], Any]) -> Any:
    try:
        return fn()
    except BatchNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ReportApiError as exc:
        return _transport_error(exc)
    except HTTPException:
        raise
    except Exception as exc:
        logger.error("[ChannelInventory] %s failed: %s", label, exc, exc_info=True)
        raise HTTPException(status_code=500, detail=f"{label} failed: {exc}") from exc


@router.post("/snapshots")
def pull_snapshot(payload: SnapshotRequest):
    channel_key = payload.channel_key or CHANNEL_KEY
    marketplace_id = payload.marketplace_id or MARKETPLACE_ID
    try:
        batch_id = report_batches.request_snapshot(channel_key, marketplace_id, payload.snapshot_kind)
    except SnapshotRequestError as exc:
        cause = exc.__cause__
        status = "quota_error" if isinstance(cause, SpApiQuotaError) else "request_failed"
        logger.warning("[ChannelInventory] Snapshot request failed (batch=%s): %s", exc.batch_id, exc)
        return {"ok": False, "status": status, "batch_id": exc.batch_id, "error": str(exc)}
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "status": "requested", "batch_id": batch_id}


@router.get("/batches")
def list_batches(
    limit: int = Query(50, ge=1, le=500),
    status: Optional[str] = Query(None),
    channel_key: Optional[str] = Query(None),
    marketplace_id: Optional[str] = Query(None),
):
    items = _call(
        "list batches",
        lambda: report_batches.list_batches(
            limit=limit, status=status, channel_key=channel_key, marketplace_id=marketplace_id
        ),
    )
    return {"ok": True, "items": items}


@router.get("/batches/latest")
def latest_batch(channel_key: Optional[str] = Query(None), marketplace_id: Optional[str] = Query(None)):
    batch = _call(
        "latest batch",
        lambda: report_batches.get_latest_batch_with_rows(channel_key or CHANNEL_KEY, marketplace_id or MARKETPLACE_ID),
    )
    return {"ok": True, "batch": batch}


@router.get("/batches/stuck")
def stuck_batches(older_than_minutes: int = Query(STUCK_BATCH_MINUTES, ge=1)):
    items = _call("stuck batches", lambda: report_batches.list_stuck_batches(older_than_minutes))
    return {"ok": True, "items": items}


@router.get("/batches/{batch_id}")
def get_batch(batch_id: str):
    return {"ok": True, "batch": _call("get batch", lambda: report_batches.get_batch(batch_id))}


@router.get("/batches/{batch_id}/poll")
def poll_batch(batch_id: str):
    result = _call("poll batch", lambda: report_batches.poll_once(batch_id))
    if result.get("ok") is False:
        return result
    return {"ok": True, **result}


@router.post("/batches/{batch_id}/abandon")
def abandon_batch(batch_id: str, payload: Optional[AbandonRequest] = None):
    reason = payload.reason if payload else None
    return {"ok": True, "batch": _call("abandon batch", lambda: report_batches.abandon_batch(batch_id, reason))}


@router.get("/batches/{batch_id}/rows")
def list_rows(
    batch_id: str,
    unmatched_only: bool = Query(False),
    q: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    result = _call(
        "list rows",
        lambda: inventory_rows.list_rows(batch_id, unmatched_only=unmatched_only, q=q, limit=limit, offset=offset),
    )
    return {"ok": True, **result}


@router.get("/batches/{batch_id}/rollups/locations")
def location_rollup(batch_id: str):
    items = _call("location rollup", lambda: inventory_rollups.location_rollup(batch_id))
    unmapped = [item["location_code"] for item in items if item["location_code"] and not item["is_mapped"]]
    return {"ok": True, "items": items, "unmapped_locations": unmapped}


@router.get("/batches/{batch_id}/rollups/locations/skus")
def location_sku_rollup(batch_id: str, location_code: Optional[str] = Query(None)):
    items = _call("location sku rollup", lambda: inventory_rollups.location_sku_rollup(batch_id, location_code))
    return {"ok": True, "location_code": location_code, "items": items}


@router.post("/batches/{batch_id}/map-sku")
def map_sku(batch_id: str, payload: MapSkuRequest):
    result = _call(
        "map sku",
        lambda: rematch.map_sku_and_rematch(batch_id, payload.external_sku, payload.variant_id, notes=payload.notes),
    )
    return {"ok": True, **result}


@router.post("/batches/{batch_id}/rematch")
def rematch_batch(batch_id: str, external_sku: Optional[str] = Query(None)):
    if external_sku:
        result = _call("rematch sku", lambda: rematch.rematch_external_sku(batch_id, external_sku))
    else:
        result = _call("rematch batch", lambda: rematch.rematch_batch(batch_id))
    return {"ok": True, **result}


@router.get("/batches/{batch_id}/unmatched.csv")
def export_unmatched(batch_id: str):
    lines = _call("export unmatched", lambda: inventory_rows.iter_unmatched_csv(batch_id))
    return StreamingResponse(
        lines,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="unmatched-{batch_id}.csv"'},
    )


def register_channel_inventory_routes(app: FastAPI) -> None:
    ensure_inventory_schema()
    app.include_router(router)
