import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from services.db import ensure_inventory_schema, get_db_connection, row_to_dict, utc_now_iso, write_connection

logger = logging.getLogger(__name__)

_UPSERT_SQL = """
    INSERT INTO channel_sku_mappings (
        channel_key, marketplace_id, external_sku, external_sku_norm,
        asin, fnsku, variant_id, active, notes, created_at, updated_at, deactivated_at
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(channel_key, marketplace_id, external_sku_norm) DO UPDATE SET
        external_sku = excluded.external_sku,
        asin = COALESCE(excluded.asin, channel_sku_mappings.asin),
        fnsku = COALESCE(excluded.fnsku, channel_sku_mappings.fnsku),
        variant_id = excluded.variant_id,
        active = excluded.active,
        notes = COALESCE(excluded.notes, channel_sku_mappings.notes),
        updated_at = excluded.updated_at,
        deactivated_at = excluded.deactivated_at
"""


def normalize_external_sku(value: Any) -> str:
    """Trim and upper-case fold; the single normalisation used for matching."""
    if value is None:
        return ""
    return str(value).strip().upper()


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _mapping_params(row: Dict[str, Any], now: str) -> tuple:
    active = bool(row.get("active", True))
    return (
        row["channel_key"],
        row["marketplace_id"],
        str(row["external_sku"]).strip(),
        normalize_external_sku(row["external_sku"]),
        _clean(row.get("asin")),
        _clean(row.get("fnsku")),
        str(row["variant_id"]).strip(),
        1 if active else 0,
        _clean(row.get("notes")),
        now,
        now,
        None if active else now,
    )


def _serialize(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    item = row_to_dict(row)
    if item is not None:
        item["active"] = bool(item.get("active"))
    return item


def get_sku_mapping(channel_key: str, marketplace_id: str, external_sku: str) -> Optional[Dict[str, Any]]:
    ensure_inventory_schema()
    with get_db_connection() as conn:
        row = conn.execute(
            """
            SELECT * FROM channel_sku_mappings
            WHERE channel_key = ? AND marketplace_id = ? AND external_sku_norm = ?
            """,
            (channel_key, marketplace_id, normalize_external_sku(external_sku)),
        ).fetchone()
    return _serialize(row)


def upsert_sku_mapping(
    channel_key: str,
    marketplace_id: str,
    external_sku: str,
    variant_id: str,
    asin: Optional[str] = None,
    fnsku: Optional[str] = None,
    notes: Optional[str] = None,
    active: bool = True,
) -> Dict[str, Any]:
    """Create or replace the mapping for one external SKU (last writer wins)."""
    if not normalize_external_sku(external_sku):
        raise ValueError("external_sku is required")
    if not _clean(variant_id):
        raise ValueError("variant_id is required")
    ensure_inventory_schema()
    row = {
        "channel_key": channel_key,
        "marketplace_id": marketplace_id,
        "external_sku": external_sku,
        "variant_id": variant_id,
        "asin": asin,
        "fnsku": fnsku,
        "notes": notes,
        "active": active,
    }
    with write_connection() as conn:
        conn.execute(_UPSERT_SQL, _mapping_params(row, utc_now_iso()))
    logger.info(
        "[SkuMapping] Upserted %s/%s %s -> %s (active=%s)",
        channel_key,
        marketplace_id,
        normalize_external_sku(external_sku),
        variant_id,
        active,
    )
    return get_sku_mapping(channel_key, marketplace_id, external_sku)


def bulk_upsert_sku_mappings(conn: sqlite3.Connection, rows: List[Dict[str, Any]]) -> int:
    """Upsert many mappings on the caller's transaction; all or nothing with it."""
    if not rows:
        return 0
    now = utc_now_iso()
    conn.executemany(_UPSERT_SQL, [_mapping_params(row, now) for row in rows])
    return len(rows)


def resolve_variant(channel_key: str, marketplace_id: str, external_sku: str) -> Optional[str]:
    norm = normalize_external_sku(external_sku)
    if not norm:
        return None
    ensure_inventory_schema()
    with get_db_connection() as conn:
        row = conn.execute(
            """
            SELECT variant_id FROM channel_sku_mappings
            WHERE channel_key = ? AND marketplace_id = ? AND external_sku_norm = ? AND active = 1
            """,
            (channel_key, marketplace_id, norm),
        ).fetchone()
    return row["variant_id"] if row else None


def load_active_mapping_snapshot(conn: sqlite3.Connection, channel_key: str, marketplace_id: str) -> Dict[str, str]:
    rows = conn.execute(
        """
        SELECT external_sku_norm, variant_id FROM channel_sku_mappings
        WHERE channel_key = ? AND marketplace_id = ? AND active = 1
        """,
        (channel_key, marketplace_id),
    ).fetchall()
    return {row["external_sku_norm"]: row["variant_id"] for row in rows}


def list_sku_mappings(
    channel_key: str,
    marketplace_id: str,
    active: Optional[bool] = None,
    q: Optional[str] = None,
    limit: int = 200,
    offset: int = 0,
) -> Dict[str, Any]:
    ensure_inventory_schema()
    where = ["channel_key = ?", "marketplace_id = ?"]
    params: List[Any] = [channel_key, marketplace_id]
    if active is not None:
        where.append("active = ?")
        params.append(1 if active else 0)
    if q and q.strip():
        like = f"%{q.strip()}%"
        where.append(
            "(external_sku LIKE ? OR IFNULL(asin, '') LIKE ? OR IFNULL(fnsku, '') LIKE ?"
            " OR IFNULL(notes, '') LIKE ? OR variant_id LIKE ?)"
        )
        params.extend([like] * 5)
    where_sql = " AND ".join(where)
    with get_db_connection() as conn:
        total = conn.execute(f"SELECT COUNT(*) FROM channel_sku_mappings WHERE {where_sql}", params).fetchone()[0]
        rows = conn.execute(
            f"""
            SELECT * FROM channel_sku_mappings
            WHERE {where_sql}
            ORDER BY updated_at DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            [*params, int(limit), int(offset)],
        ).fetchall()
    return {"items": [_serialize(row) for row in rows], "total": total}


def set_sku_mapping_active(
    channel_key: str,
    marketplace_id: str,
    external_skus: Iterable[str],
    active: bool,
) -> int:
    """Soft (de)activate mappings. Rows are never deleted."""
    norms = sorted({normalize_external_sku(s) for s in external_skus if normalize_external_sku(s)})
    if not norms:
        return 0
    ensure_inventory_schema()
    now = utc_now_iso()
    placeholders = ",".join(["?"] * len(norms))
    with write_connection() as conn:
        cur = conn.execute(
            f"""
            UPDATE channel_sku_mappings
            SET active = ?, updated_at = ?, deactivated_at = ?
            WHERE channel_key = ? AND marketplace_id = ? AND external_sku_norm IN ({placeholders})
            """,
            (1 if active else 0, now, None if active else now, channel_key, marketplace_id, *norms),
        )
        changed = cur.rowcount
    logger.info("[SkuMapping] Set active=%s on %s mapping(s) for %s/%s", active, changed, channel_key, marketplace_id)
    return changed
