"""Fulfillment-center code -> internal location labels (state / city)."""

import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from services.db import ensure_inventory_schema, get_db_connection, row_to_dict, utc_now_iso, write_connection

logger = logging.getLogger(__name__)


def normalize_location_code(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().upper()


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _serialize(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    item = row_to_dict(row)
    if item is not None:
        item["active"] = bool(item.get("active"))
    return item


def upsert_location_mapping(
    channel_key: str,
    marketplace_id: str,
    location_code: str,
    state_code: Optional[str] = None,
    state_name: Optional[str] = None,
    city: Optional[str] = None,
    display_name: Optional[str] = None,
    notes: Optional[str] = None,
    active: bool = True,
) -> Dict[str, Any]:
    norm = normalize_location_code(location_code)
    if not norm:
        raise ValueError("location_code is required")
    ensure_inventory_schema()
    now = utc_now_iso()
    state = _clean(state_code)
    with write_connection() as conn:
        conn.execute(
            """
            INSERT INTO channel_location_mappings (
                channel_key, marketplace_id, location_code, location_code_norm,
                state_code, state_name, city, display_name, active, notes,
                created_at, updated_at, deactivated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(channel_key, marketplace_id, location_code_norm) DO UPDATE SET
                location_code = excluded.location_code,
                state_code = excluded.state_code,
                state_name = excluded.state_name,
                city = excluded.city,
                display_name = excluded.display_name,
                active = excluded.active,
                notes = excluded.notes,
                updated_at = excluded.updated_at,
                deactivated_at = excluded.deactivated_at
            """,
            (
                channel_key,
                marketplace_id,
                str(location_code).strip(),
                norm,
                state.upper() if state else None,
                _clean(state_name),
                _clean(city),
                _clean(display_name),
                1 if active else 0,
                _clean(notes),
                now,
                now,
                None if active else now,
            ),
        )
        row = conn.execute(
            """
            SELECT * FROM channel_location_mappings
            WHERE channel_key = ? AND marketplace_id = ? AND location_code_norm = ?
            """,
            (channel_key, marketplace_id, norm),
        ).fetchone()
    logger.info("[LocationMapping] Upserted %s/%s %s (state=%s)", channel_key, marketplace_id, norm, state)
    return _serialize(row)


def list_location_mappings(
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
            "(location_code LIKE ? OR IFNULL(state_code, '') LIKE ? OR IFNULL(state_name, '') LIKE ?"
            " OR IFNULL(city, '') LIKE ? OR IFNULL(display_name, '') LIKE ?)"
        )
        params.extend([like] * 5)
    where_sql = " AND ".join(where)
    with get_db_connection() as conn:
        total = conn.execute(f"SELECT COUNT(*) FROM channel_location_mappings WHERE {where_sql}", params).fetchone()[0]
        rows = conn.execute(
            f"""
            SELECT * FROM channel_location_mappings
            WHERE {where_sql}
            ORDER BY location_code_norm
            LIMIT ? OFFSET ?
            """,
            [*params, int(limit), int(offset)],
        ).fetchall()
    return {"items": [_serialize(row) for row in rows], "total": total}


def set_location_mapping_active(
    channel_key: str,
    marketplace_id: str,
    location_codes: Iterable[str],
    active: bool,
) -> int:
    norms = sorted({normalize_location_code(c) for c in location_codes if normalize_location_code(c)})
    if not norms:
        return 0
    ensure_inventory_schema()
    now = utc_now_iso()
    placeholders = ",".join(["?"] * len(norms))
    with write_connection() as conn:
        cur = conn.execute(
            f"""
            UPDATE channel_location_mappings
            SET active = ?, updated_at = ?, deactivated_at = ?
            WHERE channel_key = ? AND marketplace_id = ? AND location_code_norm IN ({placeholders})
            """,
            (1 if active else 0, now, None if active else now, channel_key, marketplace_id, *norms),
        )
        changed = cur.rowcount
    logger.info("[LocationMapping] Set active=%s on %s location(s)", active, changed)
    return changed


def load_location_labels(conn: sqlite3.Connection, channel_key: str, marketplace_id: str) -> Dict[str, Dict[str, Any]]:
    """Active location labels keyed by normalised location code."""
    rows = conn.execute(
        """
        SELECT location_code_norm, state_code, state_name, city, display_name
        FROM channel_location_mappings
        WHERE channel_key = ? AND marketplace_id = ? AND active = 1
        """,
        (channel_key, marketplace_id),
    ).fetchall()
    return {
        row["location_code_norm"]: {
            "state_code": row["state_code"],
            "state_name": row["state_name"],
            "city": row["city"],
            "display_name": row["display_name"],
        }
        for row in rows
    }
