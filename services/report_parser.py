"""
Flat-file parsing for SP-API inventory report documents.

FBA inventory reports arrive as tab-separated text most of the time, but
comma and pipe delimited exports show up too (manual uploads, re-exports), so
the delimiter is sniffed from the first lines instead of being assumed.
"""

import csv
import gzip
import io
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

DELIMITER_CANDIDATES = (",", "\t", "|")
SNIFF_LINES = 10

SKU_HEADER_CANDIDATES = (
    "seller-sku",
    "seller_sku",
    "seller sku",
    "merchant-sku",
    "merchant sku",
    "sku",
)


def decode_document(content: bytes, compression: Optional[str] = None) -> str:
    """Decompress (GZIP) and decode a report document to text."""
    if compression and compression.upper() == "GZIP":
        try:
            content = gzip.decompress(content)
        except OSError:
            # Not actually gzip, treat as plain
            logger.warning("[ReportParser] Document flagged GZIP but is not compressed; using raw bytes")
    return content.decode("utf-8-sig", errors="replace")


def normalize_header_name(header: Any) -> str:
    return str(header or "").replace("\ufeff", "").strip().lower()


def detect_delimiter(sample_lines: Sequence[str]) -> str:
    """Pick the candidate delimiter that occurs most often in the sample."""
    best, best_score = ",", -1
    for delimiter in DELIMITER_CANDIDATES:
        score = sum(line.count(delimiter) for line in sample_lines)
        if score > best_score:
            best, best_score = delimiter, score
    return best


def _is_skippable(row: Sequence[str]) -> bool:
    if all(not (cell or "").strip() for cell in row):
        return True
    if len(row) == 1 and (row[0] or "").replace("\ufeff", "").strip().startswith("#"):
        return True
    return False


def _find_header_index(rows: List[List[str]]) -> int:
    for idx, row in enumerate(rows):
        normalized = [normalize_header_name(cell) for cell in row]
        if len(normalized) < 2:
            continue
        if any(header in SKU_HEADER_CANDIDATES for header in normalized):
            return idx
    return 0


def parse_report_text(text: str) -> List[Dict[str, str]]:
    """
    Parse delimited report text into one dict per data row, keyed by the
    normalized (lower-cased, trimmed) header names.

    Blank lines and single-cell ``#`` comment lines are dropped; the header row is
    the first row that carries a recognised SKU column (falls back to row 0).
    """
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        return []
    delimiter = detect_delimiter(lines[:SNIFF_LINES])
    reader = csv.reader(io.StringIO(text), delimiter=delimiter)
    rows = [row for row in reader if not _is_skippable(row)]
    if not rows:
        return []

    header_idx = _find_header_index(rows)
    headers = [normalize_header_name(cell) for cell in rows[header_idx]]
    records: List[Dict[str, str]] = []
    for row in rows[header_idx + 1:]:
        record: Dict[str, str] = {}
        for idx, header in enumerate(headers):
            if not header:
                continue
            record[header] = (row[idx] if idx < len(row) else "") or ""
        records.append(record)

    logger.info(
        "[ReportParser] Parsed %s rows (delimiter=%r, header_row=%s, columns=%s)",
        len(records),
        delimiter,
        header_idx,
        headers[:20],
    )
    return records


def pick_value(record: Dict[str, Any], candidates: Iterable[str]) -> str:
    """Return the first non-empty value among candidate column names."""
    for candidate in candidates:
        value = record.get(candidate)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


def has_any_column(records: Iterable[Dict[str, Any]], candidates: Iterable[str]) -> bool:
    wanted = set(candidates)
    return any(wanted.intersection(record.keys()) for record in records)
