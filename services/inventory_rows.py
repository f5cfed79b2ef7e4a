import csv
import io
import logging
from typing import Any, Dict, Iterator, List, Optional

from services.db import ensure_inventory_schema, get_db_connection
from services.report_batches import BatchNotFoundError

logger = logging.getLogger(__name__)

EXPORT_PAGE_SIZE = 1000

UNMATCHED_CSV_COLUMNS = [
    "external_sku",
    "external_location_code",
    "asin",
    "fnsku",
    "condition",
    "qty_available",
    "qty_reserved",
    "qty_inbound_working",
    "qty_inbound_shipped",
    "qty_inbound_receiving",
    "data_error",
]

_ROW_COLUMNS = """
    id, batch_id, external_sku, external_sku_norm, asin, fnsku, condition,
    external_location_code, available_qty, inbound_qty, reserved_qty,
    inbound_working_qty, inbound_shipped_qty, inbound_receiving_qty,
    match_status, variant_id, data_error, matched_at
"""


def _require_batch(conn, batch_id: str) -> None:
    if conn.execute("SELECT 1 FROM inventory_batches WHERE id = ?", (batch_id,)).fetchone() is None:
        raise BatchNotFoundError(f"Batch {batch_id} not found")


def list_rows(
    batch_id: str,
    unmatched_only: bool = False,
    q: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> Dict[str, Any]:
    ensure_inventory_schema()
    where = ["batch_id = ?"]
    params: List[Any] = [batch_id]
    if unmatched_only:
        where.append("match_status = 'unmatched'")
    if q and q.strip():
        like = f"%{q.strip()}%"
        where.append(
            "(external_sku LIKE ? OR IFNULL(asin, '') LIKE ? OR IFNULL(fnsku, '') LIKE ?"
            " OR IFNULL(external_location_code, '') LIKE ? OR IFNULL(variant_id, '') LIKE ?)"
        )
        params.extend([like] * 5)
    where_sql = " AND ".join(where)
    with get_db_connection() as conn:
        _require_batch(conn, batch_id)
        total = conn.execute(f"SELECT COUNT(*) FROM inventory_rows WHERE {where_sql}", params).fetchone()[0]
        rows = conn.execute(
            f"SELECT {_ROW_COLUMNS} FROM inventory_rows WHERE {where_sql} ORDER BY id LIMIT ? OFFSET ?",
            [*params, int(limit), int(offset)],
        ).fetchall()
    return {"items": [dict(row) for row in rows], "total": total, "limit": limit, "offset": offset}


def iter_unmatched_csv(batch_id: str) -> Iterator[str]:
    """Stream the batch's unmatched rows as CSV text, header first."""
    ensure_inventory_schema()
    with get_db_connection() as conn:
        _require_batch(conn, batch_id)

    def _line(values: List[Any]) -> str:
        buf = io.StringIO()
        csv.writer(buf).writerow(values)
        return buf.getvalue()

    def _generate() -> Iterator[str]:
        yield _line(UNMATCHED_CSV_COLUMNS)
        exported = 0
        last_id = 0
        while True:
            # Page by id with a short-lived connection per page; the response may be
            # iterated from different worker threads.
            with get_db_connection() as conn:
                page = conn.execute(
                    f"""
                    SELECT {_ROW_COLUMNS} FROM inventory_rows
                    WHERE batch_id = ? AND match_status = 'unmatched' AND id > ?
                    ORDER BY id
                    LIMIT ?
                    """,
                    (batch_id, last_id, EXPORT_PAGE_SIZE),
                ).fetchall()
            if not page:
                break
            for row in page:
                exported += 1
                yield _line(
                    [
                        row["external_sku"],
                        row["external_location_code"] or "",
                        row["asin"] or "",
                        row["fnsku"] or "",
                        row["condition"] or "",
                        row["available_qty"],
                        row["reserved_qty"],
                        row["inbound_working_qty"],
                        row["inbound_shipped_qty"],
                        row["inbound_receiving_qty"],
                        row["data_error"] or "",
                    ]
                )
            last_id = page[-1]["id"]
        logger.info("[InventoryRows] Exported %s unmatched row(s) for batch=%s", exported, batch_id)

    return _generate()
