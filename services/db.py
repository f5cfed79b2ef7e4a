import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Optional

from config import INVENTORY_DB_PATH as _DEFAULT_DB_PATH

logger = logging.getLogger(__name__)
INVENTORY_DB_PATH = _DEFAULT_DB_PATH

# ====================================================================
# SQLITE HARDENING WITH WAL MODE + TIMEOUT + WRITE LOCK
# - WAL mode allows concurrent reads (rollups) while writes are serialized
# - 10s timeout prevents infinite hangs on database locks
# - _db_write_lock serializes every write transaction in this process
# ====================================================================

_db_write_lock = Lock()
_db_timeout = 10  # seconds


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


@contextmanager
def get_db_connection():
    """
    Context manager for safe SQLite connection.
    - Enforces timeout to prevent infinite waits
    - Enables WAL mode for better concurrency
    - Ensures cleanup even on exception
    """
    conn = None
    try:
        conn = sqlite3.connect(INVENTORY_DB_PATH, timeout=_db_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        yield conn
    except sqlite3.DatabaseError as e:
        logger.error(f"[DB] Database error: {e}", exc_info=True)
        raise
    finally:
        if conn:
            try:
                conn.close()
            except Exception as e:
                logger.warning(f"[DB] Error closing connection: {e}")


@contextmanager
def write_connection():
    """
    Serialized write transaction: holds the process write lock, commits when the
    block exits cleanly and rolls back on any exception.
    """
    with _db_write_lock:
        with get_db_connection() as conn:
            try:
                # IMMEDIATE takes the SQLite write lock up front so other processes
                # cannot interleave between our status re-read and our writes.
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except sqlite3.OperationalError as e:
                conn.rollback()
                if "database is locked" in str(e):
                    logger.error(f"[DB] Database locked after {_db_timeout}s timeout: {e}")
                raise
            except BaseException:
                conn.rollback()
                raise


def dumps_payload(value: Any) -> Optional[str]:
    if value is None:
        return None
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return json.dumps({"unserializable": str(value)}, ensure_ascii=False)


def loads_payload(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        logger.warning("[DB] Stored payload is not valid JSON; returning raw text")
        return value


def row_to_dict(row: Optional[sqlite3.Row]) -> Optional[dict]:
    return dict(row) if row is not None else None


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS inventory_batches (
        id TEXT PRIMARY KEY,
        channel_key TEXT NOT NULL,
        marketplace_id TEXT NOT NULL,
        snapshot_kind TEXT NOT NULL,
        report_type TEXT,
        report_id TEXT,
        status TEXT NOT NULL,
        external_status TEXT,
        requested_at TEXT NOT NULL,
        last_polled_at TEXT,
        completed_at TEXT,
        updated_at TEXT NOT NULL,
        row_count INTEGER NOT NULL DEFAULT 0,
        matched_count INTEGER NOT NULL DEFAULT 0,
        unmatched_count INTEGER NOT NULL DEFAULT 0,
        error_row_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        report_request TEXT,
        status_payload TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_inventory_batches_channel
    ON inventory_batches (channel_key, marketplace_id, requested_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS inventory_rows (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        batch_id TEXT NOT NULL REFERENCES inventory_batches(id),
        external_sku TEXT NOT NULL DEFAULT '',
        external_sku_norm TEXT NOT NULL DEFAULT '',
        asin TEXT,
        fnsku TEXT,
        condition TEXT,
        external_location_code TEXT,
        available_qty INTEGER NOT NULL DEFAULT 0,
        inbound_qty INTEGER NOT NULL DEFAULT 0,
        reserved_qty INTEGER NOT NULL DEFAULT 0,
        inbound_working_qty INTEGER NOT NULL DEFAULT 0,
        inbound_shipped_qty INTEGER NOT NULL DEFAULT 0,
        inbound_receiving_qty INTEGER NOT NULL DEFAULT 0,
        match_status TEXT NOT NULL,
        variant_id TEXT,
        data_error TEXT,
        raw_json TEXT,
        matched_at TEXT,
        CHECK (available_qty >= 0 AND inbound_qty >= 0 AND reserved_qty >= 0),
        CHECK ((match_status = 'matched') = (variant_id IS NOT NULL))
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_inventory_rows_batch_sku
    ON inventory_rows (batch_id, external_sku_norm)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_inventory_rows_batch_location
    ON inventory_rows (batch_id, external_location_code)
    """,
    """
    CREATE TABLE IF NOT EXISTS channel_sku_mappings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        channel_key TEXT NOT NULL,
        marketplace_id TEXT NOT NULL,
        external_sku TEXT NOT NULL,
        external_sku_norm TEXT NOT NULL,
        asin TEXT,
        fnsku TEXT,
        variant_id TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1,
        notes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        deactivated_at TEXT,
        UNIQUE (channel_key, marketplace_id, external_sku_norm)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS channel_location_mappings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        channel_key TEXT NOT NULL,
        marketplace_id TEXT NOT NULL,
        location_code TEXT NOT NULL,
        location_code_norm TEXT NOT NULL,
        state_code TEXT,
        state_name TEXT,
        city TEXT,
        display_name TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        notes TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        deactivated_at TEXT,
        UNIQUE (channel_key, marketplace_id, location_code_norm)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS catalog_variants (
        id TEXT PRIMARY KEY,
        company_id TEXT NOT NULL,
        sku TEXT NOT NULL,
        title TEXT,
        size TEXT,
        color TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_catalog_variants_sku
    ON catalog_variants (company_id, sku COLLATE NOCASE)
    """,
]


_schema_ready: set = set()


def ensure_inventory_schema() -> None:
    """Create every reconciliation table and index if missing (once per DB path)."""
    key = str(INVENTORY_DB_PATH)
    if key in _schema_ready:
        return
    try:
        with write_connection() as conn:
            for sql in _SCHEMA:
                conn.execute(sql)
    except Exception as exc:
        logger.error(f"[DB] Failed to ensure inventory schema: {exc}", exc_info=True)
        raise
    _schema_ready.add(key)
    logger.info(f"[DB] Inventory schema ready at {key}")
