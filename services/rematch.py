import logging
from typing import Any, Dict, Optional

from services.catalog_service import get_variants_by_ids
from services.db import ensure_inventory_schema, get_db_connection, utc_now_iso, write_connection
from services.inventory_ingest import match_variant, recount_batch
from services.report_batches import BatchNotFoundError
from services.sku_mappings import load_active_mapping_snapshot, normalize_external_sku, upsert_sku_mapping

logger = logging.getLogger(__name__)


def _rematch(batch_id: str, external_sku_norm: Optional[str] = None) -> Dict[str, Any]:
    ensure_inventory_schema()
    with write_connection() as conn:
        batch = conn.execute(
            "SELECT id, channel_key, marketplace_id FROM inventory_batches WHERE id = ?",
            (batch_id,),
        ).fetchone()
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        snapshot = load_active_mapping_snapshot(conn, batch["channel_key"], batch["marketplace_id"])

        sql = "SELECT id, external_sku_norm, data_error, variant_id FROM inventory_rows WHERE batch_id = ?"
        params: list = [batch_id]
        if external_sku_norm is not None:
            sql += " AND external_sku_norm = ?"
            params.append(external_sku_norm)
        rows = conn.execute(sql, params).fetchall()

        now = utc_now_iso()
        updates = []
        for row in rows:
            variant_id = match_variant(row["external_sku_norm"], row["data_error"], snapshot)
            if variant_id == row["variant_id"]:
                continue
            updates.append(
                (
                    "matched" if variant_id else "unmatched",
                    variant_id,
                    now if variant_id else None,
                    row["id"],
                )
            )
        if updates:
            conn.executemany(
                "UPDATE inventory_rows SET match_status = ?, variant_id = ?, matched_at = ? WHERE id = ?",
                updates,
            )
        counts = recount_batch(conn, batch_id)

    logger.info(
        "[Rematch] batch=%s sku=%s checked=%s changed=%s matched=%s unmatched=%s",
        batch_id,
        external_sku_norm or "*",
        len(rows),
        len(updates),
        counts["matched_count"],
        counts["unmatched_count"],
    )
    return {
        "batch_id": batch_id,
        "rows_checked": len(rows),
        "rows_changed": len(updates),
        "matched": counts["matched_count"],
        "unmatched": counts["unmatched_count"],
        "row_count": counts["row_count"],
    }


def rematch_external_sku(batch_id: str, external_sku: str) -> Dict[str, Any]:
    norm = normalize_external_sku(external_sku)
    if not norm:
        raise ValueError("external_sku is required")
    return _rematch(batch_id, norm)


def rematch_batch(batch_id: str) -> Dict[str, Any]:
    return _rematch(batch_id)


def map_sku_and_rematch(
    batch_id: str,
    external_sku: str,
    variant_id: str,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Map one external SKU seen in a batch to a catalog variant, then rematch its rows."""
    norm = normalize_external_sku(external_sku)
    variant_id = (variant_id or "").strip()
    if not norm or not variant_id:
        raise ValueError("external_sku and variant_id are required")
    if variant_id not in get_variants_by_ids([variant_id]):
        raise ValueError(f"Unknown variant_id {variant_id}")

    ensure_inventory_schema()
    with get_db_connection() as conn:
        batch = conn.execute(
            "SELECT channel_key, marketplace_id FROM inventory_batches WHERE id = ?",
            (batch_id,),
        ).fetchone()
        if batch is None:
            raise BatchNotFoundError(f"Batch {batch_id} not found")
        sample = conn.execute(
            """
            SELECT external_sku, asin, fnsku FROM inventory_rows
            WHERE batch_id = ? AND external_sku_norm = ?
            ORDER BY (asin IS NULL), id
            LIMIT 1
            """,
            (batch_id, norm),
        ).fetchone()

    mapping = upsert_sku_mapping(
        batch["channel_key"],
        batch["marketplace_id"],
        sample["external_sku"] if sample else external_sku,
        variant_id,
        asin=sample["asin"] if sample else None,
        fnsku=sample["fnsku"] if sample else None,
        notes=notes,
    )
    result = rematch_external_sku(batch_id, norm)
    return {"mapping": mapping, "rematch": result}
