"""
Inventory snapshot batches: request a report, poll it once at a time, ingest it.

Lifecycle: requested -> processing* -> completed | failed. Terminal batches are
never touched again. There is no background worker; whoever wants progress
calls ``poll_once`` (the CLI poller, the UI timer, an operator).
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from config import STUCK_BATCH_MINUTES
from services.db import (
    dumps_payload,
    ensure_inventory_schema,
    get_db_connection,
    loads_payload,
    utc_now_iso,
    write_connection,
)
from services.inventory_ingest import MatchInvariantError, ingest_report_rows
from services.spapi_reports import get_spapi_client

logger = logging.getLogger(__name__)

SNAPSHOT_REPORT_TYPES = {
    "marketplace-totals": "GET_FBA_MYI_UNSUPPRESSED_INVENTORY_DATA",
    "per-location": "GET_FBA_MYI_ALL_INVENTORY_DATA",
}
TERMINAL_STATUSES = {"completed", "failed"}
ACTIVE_STATUSES = {"requested", "processing"}
DIAGNOSTIC_SAMPLE_ROWS = 5


class BatchNotFoundError(LookupError):
    pass


class SnapshotRequestError(RuntimeError):
    """The report request was rejected; a failed batch was recorded for it."""

    def __init__(self, message: str, batch_id: str):
        super().__init__(message)
        self.batch_id = batch_id


def report_type_for_kind(snapshot_kind: str) -> str:
    try:
        return SNAPSHOT_REPORT_TYPES[snapshot_kind]
    except KeyError:
        raise ValueError(
            f"Unknown snapshot kind {snapshot_kind!r}; expected one of {sorted(SNAPSHOT_REPORT_TYPES)}"
        ) from None


def _serialize_batch(row, *, include_payloads: bool = True) -> Dict[str, Any]:
    batch = dict(row)
    report_request = batch.pop("report_request", None)
    status_payload = batch.pop("status_payload", None)
    if include_payloads:
        batch["report_request"] = loads_payload(report_request)
        batch["status_payload"] = loads_payload(status_payload)
    return batch


def _load_batch_row(conn, batch_id: str):
    row = conn.execute("SELECT * FROM inventory_batches WHERE id = ?", (batch_id,)).fetchone()
    if row is None:
        raise BatchNotFoundError(f"Batch {batch_id} not found")
    return row


def _poll_result(row, message: Optional[str] = None) -> Dict[str, Any]:
    return {
        "batch_id": row["id"],
        "status": row["status"],
        "external_status": row["external_status"],
        "message": message if message is not None else (row["last_error"] or row["status"]),
        "matched": row["matched_count"],
        "unmatched": row["unmatched_count"],
        "row_count": row["row_count"],
        "error_rows": row["error_row_count"],
    }


def request_snapshot(channel_key: str, marketplace_id: str, snapshot_kind: str, *, client=None) -> str:
    """
    Ask the channel for a new inventory report and record a batch for it.

    Returns the new batch id. If the channel rejects the request a ``failed``
    batch is still recorded (so the attempt is visible) and SnapshotRequestError
    is raised carrying its id.
    """
    channel_key = (channel_key or "").strip()
    marketplace_id = (marketplace_id or "").strip()
    if not channel_key or not marketplace_id:
        raise ValueError("channel_key and marketplace_id are required")
    report_type = report_type_for_kind(snapshot_kind)
    ensure_inventory_schema()

    params = {"reportType": report_type, "marketplaceIds": [marketplace_id]}
    batch_id = uuid.uuid4().hex
    client = client or get_spapi_client()
    try:
        created = client.request_report(params)
        report_id = created["report_id"]
    except Exception as exc:
        now = utc_now_iso()
        with write_connection() as conn:
            conn.execute(
                """
                INSERT INTO inventory_batches (
                    id, channel_key, marketplace_id, snapshot_kind, report_type, status,
                    requested_at, completed_at, updated_at, last_error, report_request, status_payload
                )
                VALUES (?, ?, ?, ?, ?, 'failed', ?, ?, ?, ?, ?, ?)
                """,
                (
                    batch_id,
                    channel_key,
                    marketplace_id,
                    snapshot_kind,
                    report_type,
                    now,
                    now,
                    now,
                    str(exc),
                    dumps_payload(params),
                    dumps_payload({"error": str(exc), "raw": getattr(exc, "raw", None)}),
                ),
            )
        logger.error("[ReportBatch] createReport failed for %s (batch=%s): %s", report_type, batch_id, exc)
        raise SnapshotRequestError(f"Report request failed: {exc}", batch_id=batch_id) from exc

    now = utc_now_iso()
    with write_connection() as conn:
        conn.execute(
            """
            INSERT INTO inventory_batches (
                id, channel_key, marketplace_id, snapshot_kind, report_type, report_id,
                status, requested_at, updated_at, report_request, status_payload
            )
            VALUES (?, ?, ?, ?, ?, ?, 'requested', ?, ?, ?, ?)
            """,
            (
                batch_id,
                channel_key,
                marketplace_id,
                snapshot_kind,
                report_type,
                report_id,
                now,
                now,
                dumps_payload(created.get("request") or params),
                dumps_payload(created.get("response")),
            ),
        )
    logger.info("[ReportBatch] Requested %s batch=%s reportId=%s", report_type, batch_id, report_id)
    return batch_id


def _mark_failed(conn, batch_id: str, message: str, payload: Any, external_status: Optional[str]) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        UPDATE inventory_batches
        SET status = 'failed', external_status = ?, last_error = ?, status_payload = ?,
            last_polled_at = ?, completed_at = ?, updated_at = ?
        WHERE id = ?
        """,
        (external_status, message, dumps_payload(payload), now, now, now, batch_id),
    )


def poll_once(batch_id: str, *, client=None, mapping_snapshot: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Advance one batch by exactly one external status check.

    Terminal batches return their stored state without calling the channel.
    ReportApiError (and SpApiQuotaError) propagate with the batch left as it was.
    """
    ensure_inventory_schema()
    with get_db_connection() as conn:
        row = _load_batch_row(conn, batch_id)
    if row["status"] in TERMINAL_STATUSES:
        return _poll_result(row)

    if not row["report_id"]:
        with write_connection() as conn:
            _mark_failed(conn, batch_id, "Batch has no report handle.", None, row["external_status"])
            row = _load_batch_row(conn, batch_id)
        return _poll_result(row)

    client = client or get_spapi_client()
    result = client.fetch_report_status(row["report_id"])
    status = result.get("status")
    external_status = result.get("external_status")
    message = result.get("message") or ""
    payload = result.get("payload")
    now = utc_now_iso()

    with write_connection() as conn:
        # Another poller may have finished this batch while we were waiting on the channel.
        row = _load_batch_row(conn, batch_id)
        if row["status"] in TERMINAL_STATUSES:
            logger.info("[ReportBatch] batch=%s already %s; ignoring late poll", batch_id, row["status"])
            return _poll_result(row)

        if status == "failed":
            _mark_failed(conn, batch_id, message, payload, external_status)
            logger.warning("[ReportBatch] batch=%s failed externally: %s", batch_id, message)
        elif status == "completed":
            raw_rows = result.get("rows") or []
            batch = dict(row)
            conn.execute("SAVEPOINT ingest")
            try:
                ingest_report_rows(conn, batch, raw_rows, mapping_snapshot=mapping_snapshot)
            except MatchInvariantError:
                raise
            except Exception as exc:
                conn.execute("ROLLBACK TO SAVEPOINT ingest")
                conn.execute("RELEASE SAVEPOINT ingest")
                diagnostic = {
                    "status_payload": payload,
                    "sample_rows": list(raw_rows[:DIAGNOSTIC_SAMPLE_ROWS]),
                    "error": str(exc),
                }
                _mark_failed(conn, batch_id, f"Ingestion failed: {exc}", diagnostic, external_status)
                logger.error("[ReportBatch] batch=%s ingestion failed: %s", batch_id, exc, exc_info=True)
            else:
                conn.execute("RELEASE SAVEPOINT ingest")
                conn.execute(
                    """
                    UPDATE inventory_batches
                    SET status = 'completed', external_status = ?, last_error = NULL, status_payload = ?,
                        last_polled_at = ?, completed_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (external_status, dumps_payload(payload), now, now, now, batch_id),
                )
        else:
            conn.execute(
                """
                UPDATE inventory_batches
                SET status = 'processing', external_status = ?, status_payload = ?,
                    last_polled_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (external_status, dumps_payload(payload), now, now, batch_id),
            )
        row = _load_batch_row(conn, batch_id)

    logger.info(
        "[ReportBatch] poll batch=%s external=%s -> %s (matched=%s unmatched=%s rows=%s)",
        batch_id,
        external_status,
        row["status"],
        row["matched_count"],
        row["unmatched_count"],
        row["row_count"],
    )
    return _poll_result(row, message if row["status"] != "failed" else row["last_error"])


def get_batch(batch_id: str) -> Dict[str, Any]:
    ensure_inventory_schema()
    with get_db_connection() as conn:
        return _serialize_batch(_load_batch_row(conn, batch_id))


def list_batches(
    limit: int = 50,
    status: Optional[str] = None,
    channel_key: Optional[str] = None,
    marketplace_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    ensure_inventory_schema()
    where: List[str] = []
    params: List[Any] = []
    if status:
        where.append("status = ?")
        params.append(status)
    if channel_key:
        where.append("channel_key = ?")
        params.append(channel_key)
    if marketplace_id:
        where.append("marketplace_id = ?")
        params.append(marketplace_id)
    where_sql = f"WHERE {' AND '.join(where)}" if where else ""
    with get_db_connection() as conn:
        rows = conn.execute(
            f"SELECT * FROM inventory_batches {where_sql} ORDER BY requested_at DESC, rowid DESC LIMIT ?",
            [*params, int(limit)],
        ).fetchall()
    return [_serialize_batch(row, include_payloads=False) for row in rows]


def get_latest_batch_with_rows(channel_key: str, marketplace_id: str) -> Optional[Dict[str, Any]]:
    """Most recent completed batch that actually has rows (the default UI view)."""
    ensure_inventory_schema()
    with get_db_connection() as conn:
        row = conn.execute(
            """
            SELECT * FROM inventory_batches
            WHERE channel_key = ? AND marketplace_id = ? AND status = 'completed' AND row_count > 0
            ORDER BY completed_at DESC, requested_at DESC, rowid DESC
            LIMIT 1
            """,
            (channel_key, marketplace_id),
        ).fetchone()
    return _serialize_batch(row) if row else None


def list_stuck_batches(older_than_minutes: int = STUCK_BATCH_MINUTES) -> List[Dict[str, Any]]:
    ensure_inventory_schema()
    cutoff = (datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)).replace(microsecond=0).isoformat()
    with get_db_connection() as conn:
        rows = conn.execute(
            """
            SELECT * FROM inventory_batches
            WHERE status IN ('requested', 'processing') AND requested_at <= ?
            ORDER BY requested_at
            """,
            (cutoff,),
        ).fetchall()
    return [_serialize_batch(row, include_payloads=False) for row in rows]


def abandon_batch(batch_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    """Operator give-up: a non-terminal batch becomes failed. Terminal batches are returned unchanged."""
    ensure_inventory_schema()
    message = f"Abandoned by operator: {reason}" if reason else "Abandoned by operator"
    with write_connection() as conn:
        row = _load_batch_row(conn, batch_id)
        if row["status"] not in TERMINAL_STATUSES:
            _mark_failed(conn, batch_id, message, loads_payload(row["status_payload"]), row["external_status"])
            logger.warning("[ReportBatch] batch=%s abandoned (%s)", batch_id, reason or "no reason")
        row = _load_batch_row(conn, batch_id)
    return _serialize_batch(row)
