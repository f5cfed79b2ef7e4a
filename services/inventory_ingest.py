import logging
import sqlite3
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import INGEST_CHUNK_SIZE
from services.db import dumps_payload, utc_now_iso
from services.report_parser import SKU_HEADER_CANDIDATES, has_any_column, normalize_header_name, pick_value
from services.sku_mappings import load_active_mapping_snapshot, normalize_external_sku

logger = logging.getLogger(__name__)

__all__ = [
    "MatchInvariantError",
    "ReportFormatError",
    "build_inventory_row",
    "ingest_report_rows",
    "match_variant",
    "normalize_external_sku",
    "recount_batch",
]

ASIN_CANDIDATES = ("asin",)
FNSKU_CANDIDATES = ("fnsku",)
CONDITION_CANDIDATES = ("condition", "condition-type", "item-condition")
AVAILABLE_CANDIDATES = ("available", "afn-fulfillable-quantity", "afn-warehouse-quantity", "quantity", "qty")
RESERVED_CANDIDATES = ("reserved", "afn-reserved-quantity")
INBOUND_WORKING_CANDIDATES = ("afn-inbound-working-quantity", "inbound-working")
INBOUND_SHIPPED_CANDIDATES = ("afn-inbound-shipped-quantity", "inbound-shipped")
INBOUND_RECEIVING_CANDIDATES = ("afn-inbound-receiving-quantity", "inbound-receiving")
INBOUND_TOTAL_CANDIDATES = ("inbound", "inbound-quantity")
LOCATION_CANDIDATES = ("fulfillment-center-id", "fulfillment center id", "location")

# Anything larger is a corrupt cell, and keeps SUM() over a batch inside SQLite INTEGER.
MAX_QUANTITY = 1_000_000_000

QUANTITY_FIELDS = (
    "available_qty",
    "reserved_qty",
    "inbound_qty",
    "inbound_working_qty",
    "inbound_shipped_qty",
    "inbound_receiving_qty",
)

_INSERT_SQL = """
    INSERT INTO inventory_rows (
        batch_id, external_sku, external_sku_norm, asin, fnsku, condition,
        external_location_code, available_qty, inbound_qty, reserved_qty,
        inbound_working_qty, inbound_shipped_qty, inbound_receiving_qty,
        match_status, variant_id, data_error, raw_json, matched_at
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


class ReportFormatError(ValueError):
    """The report document does not have the shape we can ingest."""


class MatchInvariantError(AssertionError):
    """matched/variant_id disagree on a persisted row. Never coerced."""


def parse_quantity(value: Any) -> Tuple[int, Optional[str]]:
    """
    Returns (quantity, error). Blank -> 0; integral numbers ("5", "5.0") -> int;
    negative, fractional, non-numeric or above MAX_QUANTITY -> error.
    """
    if value is None:
        return 0, None
    if isinstance(value, bool):
        return 0, f"non-numeric quantity {value!r}"
    if isinstance(value, int):
        qty = value
    else:
        text = str(value).strip().replace(",", "")
        if not text:
            return 0, None
        try:
            qty = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                return 0, f"non-numeric quantity {text!r}"
            if number != number or number in (float("inf"), float("-inf")) or not number.is_integer():
                return 0, f"non-integral quantity {text!r}"
            qty = int(number)
    if qty < 0:
        return 0, f"negative quantity {qty}"
    if qty > MAX_QUANTITY:
        return 0, f"quantity {qty} out of range"
    return qty, None


def match_variant(external_sku_norm: str, data_error: Optional[str], mapping_snapshot: Dict[str, str]) -> Optional[str]:
    """Rows with a data error stay unmatched regardless of mappings."""
    if data_error or not external_sku_norm:
        return None
    return mapping_snapshot.get(external_sku_norm)


def build_inventory_row(raw: Dict[str, Any], mapping_snapshot: Dict[str, str]) -> Dict[str, Any]:
    record = {normalize_header_name(k): v for k, v in (raw or {}).items()}

    external_sku = pick_value(record, SKU_HEADER_CANDIDATES)
    sku_norm = normalize_external_sku(external_sku)
    errors: List[str] = []
    if not sku_norm:
        errors.append("missing external SKU")

    quantities: Dict[str, int] = {}
    for field, candidates in (
        ("available_qty", AVAILABLE_CANDIDATES),
        ("reserved_qty", RESERVED_CANDIDATES),
        ("inbound_working_qty", INBOUND_WORKING_CANDIDATES),
        ("inbound_shipped_qty", INBOUND_SHIPPED_CANDIDATES),
        ("inbound_receiving_qty", INBOUND_RECEIVING_CANDIDATES),
    ):
        qty, err = parse_quantity(pick_value(record, candidates))
        quantities[field] = qty
        if err:
            errors.append(f"{field}: {err}")

    inbound_detail = (
        quantities["inbound_working_qty"] + quantities["inbound_shipped_qty"] + quantities["inbound_receiving_qty"]
    )
    if inbound_detail > 0:
        quantities["inbound_qty"] = inbound_detail
    else:
        qty, err = parse_quantity(pick_value(record, INBOUND_TOTAL_CANDIDATES))
        quantities["inbound_qty"] = qty
        if err:
            errors.append(f"inbound_qty: {err}")

    data_error = "; ".join(errors) if errors else None
    if data_error:
        quantities = {field: 0 for field in QUANTITY_FIELDS}

    variant_id = match_variant(sku_norm, data_error, mapping_snapshot)
    location = pick_value(record, LOCATION_CANDIDATES)
    return {
        "external_sku": external_sku,
        "external_sku_norm": sku_norm,
        "asin": pick_value(record, ASIN_CANDIDATES) or None,
        "fnsku": pick_value(record, FNSKU_CANDIDATES) or None,
        "condition": pick_value(record, CONDITION_CANDIDATES) or None,
        "external_location_code": location.upper() if location else None,
        **quantities,
        "match_status": "matched" if variant_id else "unmatched",
        "variant_id": variant_id,
        "data_error": data_error,
        "raw": raw,
    }


def _insert_params(batch_id: str, row: Dict[str, Any], now: str) -> tuple:
    return (
        batch_id,
        row["external_sku"],
        row["external_sku_norm"],
        row["asin"],
        row["fnsku"],
        row["condition"],
        row["external_location_code"],
        row["available_qty"],
        row["inbound_qty"],
        row["reserved_qty"],
        row["inbound_working_qty"],
        row["inbound_shipped_qty"],
        row["inbound_receiving_qty"],
        row["match_status"],
        row["variant_id"],
        row["data_error"],
        dumps_payload(row["raw"]),
        now if row["variant_id"] else None,
    )


def recount_batch(conn: sqlite3.Connection, batch_id: str) -> Dict[str, int]:
    """Recompute batch counters from persisted rows. Counters are never incremented in place."""
    broken = conn.execute(
        """
        SELECT COUNT(*) FROM inventory_rows
        WHERE batch_id = ?
          AND ((match_status = 'matched' AND variant_id IS NULL)
               OR (match_status != 'matched' AND variant_id IS NOT NULL))
        """,
        (batch_id,),
    ).fetchone()[0]
    if broken:
        raise MatchInvariantError(f"{broken} row(s) in batch {batch_id} disagree on match_status/variant_id")

    row = conn.execute(
        """
        SELECT
            COUNT(*) AS row_count,
            COALESCE(SUM(CASE WHEN match_status = 'matched' THEN 1 ELSE 0 END), 0) AS matched_count,
            COALESCE(SUM(CASE WHEN match_status = 'unmatched' THEN 1 ELSE 0 END), 0) AS unmatched_count,
            COALESCE(SUM(CASE WHEN data_error IS NOT NULL THEN 1 ELSE 0 END), 0) AS error_row_count
        FROM inventory_rows
        WHERE batch_id = ?
        """,
        (batch_id,),
    ).fetchone()
    counts = {
        "row_count": int(row["row_count"]),
        "matched_count": int(row["matched_count"]),
        "unmatched_count": int(row["unmatched_count"]),
        "error_row_count": int(row["error_row_count"]),
    }
    if counts["matched_count"] + counts["unmatched_count"] != counts["row_count"]:
        raise MatchInvariantError(f"batch {batch_id} has rows outside matched/unmatched: {counts}")

    conn.execute(
        """
        UPDATE inventory_batches
        SET row_count = ?, matched_count = ?, unmatched_count = ?, error_row_count = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            counts["row_count"],
            counts["matched_count"],
            counts["unmatched_count"],
            counts["error_row_count"],
            utc_now_iso(),
            batch_id,
        ),
    )
    return counts


def ingest_report_rows(
    conn: sqlite3.Connection,
    batch: Dict[str, Any],
    raw_rows: Sequence[Dict[str, Any]],
    *,
    mapping_snapshot: Optional[Dict[str, str]] = None,
) -> Dict[str, int]:
    """
    Classify and insert every raw report row for ``batch`` on the caller's
    transaction, then recount. Row-level problems are stored on the row; only a
    document with no recognisable SKU column raises.
    """
    batch_id = batch["id"]
    raw_rows = list(raw_rows or [])
    if raw_rows:
        keyed = [{normalize_header_name(k): v for k, v in (r or {}).items()} for r in raw_rows]
        if not has_any_column(keyed, SKU_HEADER_CANDIDATES):
            sample = sorted(keyed[0].keys())[:20] if keyed else []
            raise ReportFormatError(f"No SKU column found in report (columns: {sample})")

    if mapping_snapshot is None:
        mapping_snapshot = load_active_mapping_snapshot(conn, batch["channel_key"], batch["marketplace_id"])

    now = utc_now_iso()
    built = [build_inventory_row(raw, mapping_snapshot) for raw in raw_rows]
    for start in range(0, len(built), INGEST_CHUNK_SIZE):
        chunk = built[start : start + INGEST_CHUNK_SIZE]
        conn.executemany(_INSERT_SQL, [_insert_params(batch_id, row, now) for row in chunk])

    counts = recount_batch(conn, batch_id)
    stats = {
        "rows_inserted": len(built),
        "matched": counts["matched_count"],
        "unmatched": counts["unmatched_count"],
        "error_rows": counts["error_row_count"],
    }
    logger.info(
        "[Ingest] batch=%s inserted=%s matched=%s unmatched=%s error_rows=%s",
        batch_id,
        stats["rows_inserted"],
        stats["matched"],
        stats["unmatched"],
        stats["error_rows"],
    )
    return stats
