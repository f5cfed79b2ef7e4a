"""Channel SKU / location mapping endpoints (operator-approved mappings only)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from config import CHANNEL_KEY, COMPANY_ID, MARKETPLACE_ID
from services import location_mappings, mapping_import, sku_mappings
from services.db import ensure_inventory_schema

router = APIRouter(prefix="/api/channel-mappings")
logger = logging.getLogger(__name__)


class SkuMappingIn(BaseModel):
    external_sku: str
    variant_id: str
    channel_key: Optional[str] = None
    marketplace_id: Optional[str] = None
    asin: Optional[str] = None
    fnsku: Optional[str] = None
    notes: Optional[str] = None
    active: bool = True


class SkuImportRequest(BaseModel):
    channel_key: Optional[str] = None
    marketplace_id: Optional[str] = None
    company_id: Optional[str] = None
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    csv_text: Optional[str] = None


class DeactivateRequest(BaseModel):
    codes: List[str] = Field(default_factory=list, description="External SKUs or location codes")
    channel_key: Optional[str] = None
    marketplace_id: Optional[str] = None
    active: bool = False


class LocationMappingIn(BaseModel):
    location_code: str
    channel_key: Optional[str] = None
    marketplace_id: Optional[str] = None
    state_code: Optional[str] = None
    state_name: Optional[str] = None
    city: Optional[str] = None
    display_name: Optional[str] = None
    notes: Optional[str] = None
    active: bool = True


@router.get("/skus")
def list_sku_mappings(
    channel_key: Optional[str] = Query(None),
    marketplace_id: Optional[str] = Query(None),
    active: Optional[bool] = Query(None),
    q: Optional[str] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    result = sku_mappings.list_sku_mappings(
        channel_key or CHANNEL_KEY,
        marketplace_id or MARKETPLACE_ID,
        active=active,
        q=q,
        limit=limit,
        offset=offset,
    )
    return {"ok": True, **result}


@router.post("/skus")
def upsert_sku_mapping(payload: SkuMappingIn):
    try:
        mapping = sku_mappings.upsert_sku_mapping(
            payload.channel_key or CHANNEL_KEY,
            payload.marketplace_id or MARKETPLACE_ID,
            payload.external_sku,
            payload.variant_id,
            asin=payload.asin,
            fnsku=payload.fnsku,
            notes=payload.notes,
            active=payload.active,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "mapping": mapping}


@router.post("/skus/import")
def import_sku_mappings(payload: SkuImportRequest):
    rows = list(payload.rows)
    if payload.csv_text:
        rows.extend(mapping_import.parse_mapping_csv(payload.csv_text))
    if not rows:
        raise HTTPException(status_code=400, detail="No rows submitted")
    try:
        result = mapping_import.import_sku_mappings(
            payload.channel_key or CHANNEL_KEY,
            payload.marketplace_id or MARKETPLACE_ID,
            rows,
            company_id=payload.company_id or COMPANY_ID,
        )
    except Exception as exc:
        logger.error("[MappingImport] Import failed: %s", exc, exc_info=True)
        raise HTTPException(status_code=500, detail=f"Import failed: {exc}") from exc
    return {"ok": result["summary"]["error"] == 0, **result}


@router.post("/skus/deactivate")
def deactivate_sku_mappings(payload: DeactivateRequest):
    changed = sku_mappings.set_sku_mapping_active(
        payload.channel_key or CHANNEL_KEY,
        payload.marketplace_id or MARKETPLACE_ID,
        payload.codes,
        payload.active,
    )
    return {"ok": True, "updated": changed}


@router.get("/locations")
def list_location_mappings(
    channel_key: Optional[str] = Query(None),
    marketplace_id: Optional[str] = Query(None),
    active: Optional[bool] = Query(None),
    q: Optional[str] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    result = location_mappings.list_location_mappings(
        channel_key or CHANNEL_KEY,
        marketplace_id or MARKETPLACE_ID,
        active=active,
        q=q,
        limit=limit,
        offset=offset,
    )
    return {"ok": True, **result}


@router.post("/locations")
def upsert_location_mapping(payload: LocationMappingIn):
    try:
        mapping = location_mappings.upsert_location_mapping(
            payload.channel_key or CHANNEL_KEY,
            payload.marketplace_id or MARKETPLACE_ID,
            payload.location_code,
            state_code=payload.state_code,
            state_name=payload.state_name,
            city=payload.city,
            display_name=payload.display_name,
            notes=payload.notes,
            active=payload.active,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"ok": True, "mapping": mapping}


@router.post("/locations/deactivate")
def deactivate_location_mappings(payload: DeactivateRequest):
    changed = location_mappings.set_location_mapping_active(
        payload.channel_key or CHANNEL_KEY,
        payload.marketplace_id or MARKETPLACE_ID,
        payload.codes,
        payload.active,
    )
    return {"ok": True, "updated": changed}


def register_channel_mapping_routes(app: FastAPI) -> None:
    ensure_inventory_schema()
    app.include_router(router)
