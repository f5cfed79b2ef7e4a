"""
Per-location and per-location-per-SKU aggregates over one batch.

Read-only: computed on every request, never stored. Quantity sums skip rows
with a data error; row counts include them.
"""

import logging
from typing import Any, Dict, List, Optional

from services.catalog_service import get_variants_by_ids
from services.db import ensure_inventory_schema, get_db_connection
from services.location_mappings import load_location_labels, normalize_location_code
from services.report_batches import BatchNotFoundError

logger = logging.getLogger(__name__)

_EMPTY_LABELS = {"state_code": None, "state_name": None, "city": None, "display_name": None}

_SUMS_SQL = """
    COUNT(*) AS row_count,
    SUM(CASE WHEN match_status = 'matched' THEN 1 ELSE 0 END) AS matched_count,
    SUM(CASE WHEN match_status = 'unmatched' THEN 1 ELSE 0 END) AS unmatched_count,
    SUM(CASE WHEN data_error IS NOT NULL THEN 1 ELSE 0 END) AS error_row_count,
    SUM(CASE WHEN data_error IS NULL THEN available_qty ELSE 0 END) AS available_total,
    SUM(CASE WHEN data_error IS NULL THEN inbound_qty ELSE 0 END) AS inbound_total,
    SUM(CASE WHEN data_error IS NULL THEN reserved_qty ELSE 0 END) AS reserved_total
"""


def _load_batch(conn, batch_id: str):
    batch = conn.execute(
        "SELECT id, channel_key, marketplace_id, status FROM inventory_batches WHERE id = ?",
        (batch_id,),
    ).fetchone()
    if batch is None:
        raise BatchNotFoundError(f"Batch {batch_id} not found")
    return batch


def _sums(row) -> Dict[str, int]:
    return {
        key: int(row[key] or 0)
        for key in (
            "row_count",
            "matched_count",
            "unmatched_count",
            "error_row_count",
            "available_total",
            "inbound_total",
            "reserved_total",
        )
    }


def location_rollup(batch_id: str) -> List[Dict[str, Any]]:
    ensure_inventory_schema()
    with get_db_connection() as conn:
        batch = _load_batch(conn, batch_id)
        labels = load_location_labels(conn, batch["channel_key"], batch["marketplace_id"])
        rows = conn.execute(
            f"""
            SELECT external_location_code AS location_code, {_SUMS_SQL}
            FROM inventory_rows
            WHERE batch_id = ?
            GROUP BY external_location_code
            ORDER BY (external_location_code IS NULL), external_location_code
            """,
            (batch_id,),
        ).fetchall()

    result: List[Dict[str, Any]] = []
    for row in rows:
        code = row["location_code"]
        label = labels.get(normalize_location_code(code)) if code else None
        result.append(
            {
                "location_code": code,
                **(label or _EMPTY_LABELS),
                "is_mapped": label is not None,
                **_sums(row),
            }
        )
    logger.debug("[Rollup] batch=%s locations=%s", batch_id, len(result))
    return result


def location_sku_rollup(batch_id: str, location_code: Optional[str]) -> List[Dict[str, Any]]:
    """
    Rows inside one location grouped by resolved variant (matched rows) or by
    normalised external SKU (unmatched rows). ``location_code=None`` selects the
    rows that carry no location.
    """
    ensure_inventory_schema()
    code = normalize_location_code(location_code) or None
    location_filter = "external_location_code IS NULL" if code is None else "external_location_code = ?"
    params: List[Any] = [batch_id] if code is None else [batch_id, code]
    with get_db_connection() as conn:
        _load_batch(conn, batch_id)
        rows = conn.execute(
            f"""
            SELECT
                CASE WHEN match_status = 'matched' THEN 'variant' ELSE 'external_sku' END AS group_kind,
                CASE WHEN match_status = 'matched' THEN variant_id ELSE external_sku_norm END AS group_key,
                MAX(variant_id) AS variant_id,
                MIN(external_sku) AS external_sku,
                COUNT(DISTINCT external_sku_norm) AS external_sku_count,
                {_SUMS_SQL}
            FROM inventory_rows
            WHERE batch_id = ? AND {location_filter}
            GROUP BY group_kind, group_key
            ORDER BY group_kind DESC, group_key
            """,
            params,
        ).fetchall()

    variants = get_variants_by_ids([row["variant_id"] for row in rows if row["variant_id"]])
    result: List[Dict[str, Any]] = []
    for row in rows:
        sums = _sums(row)
        variant = variants.get(row["variant_id"]) if row["group_kind"] == "variant" else None
        result.append(
            {
                "location_code": code,
                "group_kind": row["group_kind"],
                "group_key": row["group_key"],
                "variant_id": row["variant_id"] if row["group_kind"] == "variant" else None,
                "external_sku": row["external_sku"],
                "external_sku_count": int(row["external_sku_count"] or 0),
                "internal_sku": variant["sku"] if variant else None,
                "title": variant["title"] if variant else None,
                "unmatched_row_count": sums["unmatched_count"],
                **sums,
            }
        )
    return result


def list_unmapped_locations(batch_id: str) -> List[str]:
    ensure_inventory_schema()
    with get_db_connection() as conn:
        batch = _load_batch(conn, batch_id)
        labels = load_location_labels(conn, batch["channel_key"], batch["marketplace_id"])
        rows = conn.execute(
            """
            SELECT DISTINCT external_location_code FROM inventory_rows
            WHERE batch_id = ? AND external_location_code IS NOT NULL
            ORDER BY external_location_code
            """,
            (batch_id,),
        ).fetchall()
    return [
        row["external_location_code"]
        for row in rows
        if normalize_location_code(row["external_location_code"]) not in labels
    ]
