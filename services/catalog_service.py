import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from config import CATALOG_CHUNK_SIZE, COMPANY_ID
from services.db import ensure_inventory_schema, get_db_connection, utc_now_iso, write_connection

logger = logging.getLogger(__name__)


class CatalogLookupError(RuntimeError):
    """Raised when the internal catalog cannot be queried."""


def _chunked(seq: Sequence[str], size: Optional[int] = None) -> Iterable[Sequence[str]]:
    size = size or CATALOG_CHUNK_SIZE
    for idx in range(0, len(seq), size):
        yield seq[idx : idx + size]


def _variant_dict(row) -> Dict[str, Any]:
    return {
        "variant_id": row["id"],
        "sku": row["sku"],
        "title": row["title"],
        "size": row["size"],
        "color": row["color"],
    }


def resolve_variants_by_sku(company_id: Optional[str], skus: Iterable[str]) -> List[Dict[str, Any]]:
    """
    Resolve internal SKUs (case-insensitive) to catalog variants.

    Unresolved SKUs are simply absent from the result; the returned ``sku`` is
    the catalog's own spelling.
    """
    company = (company_id or COMPANY_ID).strip()
    normalized = sorted({(sku or "").strip().upper() for sku in skus if isinstance(sku, str) and sku.strip()})
    if not normalized:
        return []

    ensure_inventory_schema()
    results: List[Dict[str, Any]] = []
    try:
        with get_db_connection() as conn:
            for chunk in _chunked(normalized):
                placeholders = ",".join(["?"] * len(chunk))
                rows = conn.execute(
                    f"""
                    SELECT id, sku, title, size, color
                    FROM catalog_variants
                    WHERE company_id = ? AND UPPER(sku) IN ({placeholders})
                    """,
                    (company, *chunk),
                ).fetchall()
                results.extend(_variant_dict(row) for row in rows)
    except Exception as exc:
        logger.error("[Catalog] Failed to resolve %s SKUs for company %s: %s", len(normalized), company, exc)
        raise CatalogLookupError(f"Catalog lookup failed: {exc}") from exc
    logger.info("[Catalog] Resolved %s/%s internal SKUs", len(results), len(normalized))
    return results


def get_variants_by_ids(variant_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
    ids = sorted({str(v).strip() for v in variant_ids if v is not None and str(v).strip()})
    if not ids:
        return {}
    ensure_inventory_schema()
    found: Dict[str, Dict[str, Any]] = {}
    try:
        with get_db_connection() as conn:
            for chunk in _chunked(ids):
                placeholders = ",".join(["?"] * len(chunk))
                rows = conn.execute(
                    f"SELECT id, sku, title, size, color FROM catalog_variants WHERE id IN ({placeholders})",
                    tuple(chunk),
                ).fetchall()
                for row in rows:
                    found[row["id"]] = _variant_dict(row)
    except Exception as exc:
        logger.error("[Catalog] Failed to load variants by id: %s", exc)
        raise CatalogLookupError(f"Catalog lookup failed: {exc}") from exc
    return found


def upsert_catalog_variant(
    variant_id: str,
    sku: str,
    *,
    company_id: Optional[str] = None,
    title: Optional[str] = None,
    size: Optional[str] = None,
    color: Optional[str] = None,
) -> Dict[str, Any]:
    variant_id = (variant_id or "").strip()
    sku = (sku or "").strip()
    if not variant_id or not sku:
        raise ValueError("variant_id and sku are required")
    ensure_inventory_schema()
    with write_connection() as conn:
        conn.execute(
            """
            INSERT INTO catalog_variants (id, company_id, sku, title, size, color, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                company_id = excluded.company_id,
                sku = excluded.sku,
                title = excluded.title,
                size = excluded.size,
                color = excluded.color,
                updated_at = excluded.updated_at
            """,
            (variant_id, (company_id or COMPANY_ID).strip(), sku, title, size, color, utc_now_iso()),
        )
    return {"variant_id": variant_id, "sku": sku, "title": title, "size": size, "color": color}
