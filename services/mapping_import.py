"""
Bulk SKU mapping import (JSON rows or an uploaded CSV).

Every submitted row gets exactly one outcome: ``upserted``, ``skipped`` or
``error``. Rows that pass validation are written together in one transaction,
so a store failure reports all of them as errors and writes none.
"""

import csv
import io
import logging
from typing import Any, Callable, Dict, List, Optional

from config import COMPANY_ID
from services.catalog_service import get_variants_by_ids, resolve_variants_by_sku
from services.db import ensure_inventory_schema, write_connection
from services.sku_mappings import bulk_upsert_sku_mappings, normalize_external_sku

logger = logging.getLogger(__name__)

TRUE_TOKENS = {"true", "1", "yes", "y", "active"}
FALSE_TOKENS = {"false", "0", "no", "n", "inactive"}

HEADER_ALIASES = {
    "sku": "external_sku",
    "seller_sku": "external_sku",
    "erp_sku": "internal_sku",
    "erp_variant_id": "variant_id",
}


def normalize_import_header(name: Any) -> str:
    key = str(name or "").replace("\ufeff", "").strip().lower().replace(" ", "_").replace("-", "_")
    return HEADER_ALIASES.get(key, key)


def parse_bool_token(value: Any) -> Optional[bool]:
    """True/False for a recognised token, blank -> True, anything else -> None."""
    if value is None or isinstance(value, bool):
        return True if value is None else value
    text = str(value).strip().lower()
    if not text or text in TRUE_TOKENS:
        return True
    if text in FALSE_TOKENS:
        return False
    return None


def parse_mapping_csv(text: str) -> List[Dict[str, Any]]:
    reader = csv.DictReader(io.StringIO(text or ""))
    if reader.fieldnames is None:
        return []
    reader.fieldnames = [normalize_import_header(name) for name in reader.fieldnames]
    rows = []
    for row in reader:
        rows.append({key: value for key, value in row.items() if key})
    return rows


def _text(row: Dict[str, Any], key: str) -> str:
    value = row.get(key)
    return str(value).strip() if value is not None else ""


def import_sku_mappings(
    channel_key: str,
    marketplace_id: str,
    rows: List[Dict[str, Any]],
    *,
    company_id: Optional[str] = None,
    resolver: Optional[Callable[[str, List[str]], List[Dict[str, Any]]]] = None,
    variant_lookup: Optional[Callable[[List[str]], Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """
    Internal SKUs are resolved case-insensitively in one catalog call; a SKU
    that matches several variants is an error, never a guess. Direct
    variant_ids must exist in the catalog.
    """
    resolver = resolver or resolve_variants_by_sku
    variant_lookup = variant_lookup or get_variants_by_ids
    company = company_id or COMPANY_ID
    results: List[Dict[str, Any]] = []
    pending: List[Dict[str, Any]] = []
    seen: Dict[str, int] = {}

    for index, raw in enumerate(rows or [], start=1):
        row = {normalize_import_header(k): v for k, v in (raw or {}).items()}
        external_sku = _text(row, "external_sku")
        outcome: Dict[str, Any] = {"row": index, "external_sku": external_sku or None}
        results.append(outcome)

        if not any(_text(row, key) for key in row):
            outcome.update(status="skipped", reason="blank row")
            continue
        if not external_sku:
            outcome.update(status="error", reason="external_sku is required")
            continue
        internal_sku = _text(row, "internal_sku")
        variant_id = _text(row, "variant_id")
        if not internal_sku and not variant_id:
            outcome.update(status="error", reason="internal_sku or variant_id is required")
            continue
        active = parse_bool_token(row.get("active"))
        if active is None:
            outcome.update(status="error", reason=f"invalid active value {row.get('active')!r}")
            continue
        norm = normalize_external_sku(external_sku)
        if norm in seen:
            outcome.update(status="skipped", reason=f"duplicate of row {seen[norm]}")
            continue
        seen[norm] = index
        pending.append(
            {
                "outcome": outcome,
                "internal_sku": internal_sku,
                "mapping": {
                    "channel_key": channel_key,
                    "marketplace_id": marketplace_id,
                    "external_sku": external_sku,
                    "variant_id": variant_id or None,
                    "asin": _text(row, "asin") or None,
                    "fnsku": _text(row, "fnsku") or None,
                    "notes": _text(row, "notes") or None,
                    "active": active,
                },
            }
        )

    accepted = []
    direct_ids = sorted({p["mapping"]["variant_id"] for p in pending if p["mapping"]["variant_id"]})
    to_resolve = sorted({p["internal_sku"].upper() for p in pending if not p["mapping"]["variant_id"]})
    known_ids: Dict[str, Any] = {}
    matches: Dict[str, List[str]] = {}
    lookup_error = None
    try:
        if direct_ids:
            known_ids = variant_lookup(direct_ids)
        if to_resolve:
            for variant in resolver(company, to_resolve):
                matches.setdefault(str(variant["sku"]).strip().upper(), []).append(variant["variant_id"])
    except Exception as exc:
        logger.error("[MappingImport] Catalog lookup failed for %s row(s): %s", len(pending), exc)
        lookup_error = f"catalog lookup failed: {exc}"

    for item in pending:
        mapping = item["mapping"]
        if lookup_error:
            item["outcome"].update(status="error", reason=lookup_error)
            continue
        if mapping["variant_id"]:
            if mapping["variant_id"] not in known_ids:
                item["outcome"].update(status="error", reason=f"unknown variant_id {mapping['variant_id']!r}")
                continue
        else:
            candidates = sorted(set(matches.get(item["internal_sku"].upper(), [])))
            if not candidates:
                item["outcome"].update(status="error", reason="unable to resolve internal SKU")
                continue
            if len(candidates) > 1:
                item["outcome"].update(
                    status="error",
                    reason=f"ambiguous internal SKU: matches {len(candidates)} variants",
                    candidates=candidates,
                )
                continue
            mapping["variant_id"] = candidates[0]
        accepted.append(item)
    pending = accepted

    if pending:
        ensure_inventory_schema()
        try:
            with write_connection() as conn:
                bulk_upsert_sku_mappings(conn, [item["mapping"] for item in pending])
        except Exception as exc:
            logger.error("[MappingImport] Bulk upsert of %s mapping(s) failed: %s", len(pending), exc, exc_info=True)
            for item in pending:
                item["outcome"].update(status="error", reason=str(exc))
        else:
            for item in pending:
                item["outcome"].update(status="upserted", variant_id=item["mapping"]["variant_id"])

    summary = {"total": len(results), "upserted": 0, "skipped": 0, "error": 0}
    for outcome in results:
        summary[outcome["status"]] += 1
    logger.info(
        "[MappingImport] %s/%s rows=%s upserted=%s skipped=%s error=%s",
        channel_key,
        marketplace_id,
        summary["total"],
        summary["upserted"],
        summary["skipped"],
        summary["error"],
    )
    return {"results": results, "summary": summary}
