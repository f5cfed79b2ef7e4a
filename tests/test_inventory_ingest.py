import pytest

from conftest import CHANNEL, MARKETPLACE
from services.db import get_db_connection, write_connection
from services.inventory_ingest import (
    MatchInvariantError,
    ReportFormatError,
    build_inventory_row,
    ingest_report_rows,
    normalize_external_sku,
    parse_quantity,
    recount_batch,
)
from services.inventory_rows import list_rows
from services.inventory_rollups import location_rollup
from services.rematch import rematch_batch, rematch_external_sku
from services.report_batches import get_batch
from services.sku_mappings import upsert_sku_mapping


def test_normalize_external_sku():
    assert normalize_external_sku("  ab-12 ") == "AB-12"
    assert normalize_external_sku(None) == ""


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("", (0, None)),
        (None, (0, None)),
        ("5", (5, None)),
        ("5.0", (5, None)),
        (7, (7, None)),
        ("1,200", (1200, None)),
    ],
)
def test_parse_quantity_accepts_integral_values(raw, expected):
    assert parse_quantity(raw) == expected


@pytest.mark.parametrize("raw", ["-1", -3, "abc", "2.5", "nan", "1e19", "99999999999999999999", 10**12])
def test_parse_quantity_flags_bad_values(raw):
    qty, error = parse_quantity(raw)
    assert qty == 0
    assert error


def test_build_row_is_pure_and_matches_active_mapping():
    raw = {
        "seller-sku": " a1 ",
        "ASIN": "B01",
        "afn-fulfillable-quantity": "4",
        "afn-reserved-quantity": "1",
        "afn-inbound-working-quantity": "2",
        "afn-inbound-shipped-quantity": "3",
        "fulfillment-center-id": "blr7",
    }
    snapshot = {"A1": "V1"}
    first = build_inventory_row(raw, snapshot)
    second = build_inventory_row(raw, snapshot)
    assert first == second
    assert first["external_sku"] == "a1"
    assert first["external_sku_norm"] == "A1"
    assert first["asin"] == "B01"
    assert first["available_qty"] == 4
    assert first["reserved_qty"] == 1
    assert first["inbound_qty"] == 5
    assert first["external_location_code"] == "BLR7"
    assert first["match_status"] == "matched"
    assert first["variant_id"] == "V1"
    assert first["data_error"] is None


def test_build_row_inbound_total_fallback():
    row = build_inventory_row({"sku": "X", "inbound": "9"}, {})
    assert row["inbound_qty"] == 9
    assert row["match_status"] == "unmatched"
    assert row["variant_id"] is None


def test_build_row_missing_sku_is_data_error():
    row = build_inventory_row({"sku": "  ", "available": "3"}, {"": "V9"})
    assert row["data_error"] == "missing external SKU"
    assert row["available_qty"] == 0
    assert row["match_status"] == "unmatched"


def test_bad_quantity_holds_row_unmatched_even_with_mapping():
    row = build_inventory_row({"sku": "B2", "available": "-1", "reserved": "4"}, {"B2": "V2"})
    assert row["data_error"]
    assert row["variant_id"] is None
    assert row["available_qty"] == 0 and row["reserved_qty"] == 0


def test_ingest_rejects_document_without_sku_column(inventory_db):
    with pytest.raises(ReportFormatError):
        with write_connection() as conn:
            conn.execute(
                "INSERT INTO inventory_batches (id, channel_key, marketplace_id, snapshot_kind, status, requested_at, updated_at)"
                " VALUES ('b1', ?, ?, 'per-location', 'processing', 'x', 'x')",
                (CHANNEL, MARKETPLACE),
            )
            ingest_report_rows(conn, {"id": "b1", "channel_key": CHANNEL, "marketplace_id": MARKETPLACE}, [{"foo": "1"}])
    with get_db_connection() as conn:
        assert conn.execute("SELECT COUNT(*) FROM inventory_batches").fetchone()[0] == 0


def test_recount_refuses_inconsistent_rows(inventory_db):
    with write_connection() as conn:
        conn.execute(
            "INSERT INTO inventory_batches (id, channel_key, marketplace_id, snapshot_kind, status, requested_at, updated_at)"
            " VALUES ('b1', ?, ?, 'per-location', 'processing', 'x', 'x')",
            (CHANNEL, MARKETPLACE),
        )
        # The table CHECK blocks this shape, so drop it on a scratch copy to prove recount catches it too.
        conn.execute("CREATE TEMP TABLE inventory_rows AS SELECT * FROM main.inventory_rows WHERE 0")
        conn.execute(
            "INSERT INTO temp.inventory_rows (batch_id, external_sku, external_sku_norm, match_status, variant_id)"
            " VALUES ('b1', 'A', 'A', 'matched', NULL)"
        )
        with pytest.raises(MatchInvariantError):
            recount_batch(conn, "b1")
        conn.execute("DROP TABLE temp.inventory_rows")


def test_scenario_a1_b2_c3(inventory_db, ingested_batch):
    upsert_sku_mapping(CHANNEL, MARKETPLACE, "A1", "V1")
    batch_id, result = ingested_batch(
        [{"sku": "A1", "qty": 5}, {"sku": "B2", "qty": -1}, {"sku": "C3", "qty": 3}],
        kind="marketplace-totals",
    )
    assert result["status"] == "completed"
    assert (result["matched"], result["unmatched"], result["row_count"]) == (1, 2, 3)

    rows = {row["external_sku"]: row for row in list_rows(batch_id)["items"]}
    assert rows["A1"]["match_status"] == "matched" and rows["A1"]["variant_id"] == "V1"
    assert rows["A1"]["available_qty"] == 5
    assert rows["B2"]["match_status"] == "unmatched" and rows["B2"]["data_error"]
    assert rows["C3"]["match_status"] == "unmatched" and rows["C3"]["available_qty"] == 3

    totals = location_rollup(batch_id)
    assert len(totals) == 1
    assert totals[0]["location_code"] is None
    assert totals[0]["available_total"] == 8
    assert totals[0]["error_row_count"] == 1

    upsert_sku_mapping(CHANNEL, MARKETPLACE, "C3", "V2")
    rematched = rematch_external_sku(batch_id, "C3")
    assert (rematched["matched"], rematched["unmatched"]) == (2, 1)

    # A mapping for B2 does not rescue a row with a data error.
    upsert_sku_mapping(CHANNEL, MARKETPLACE, "B2", "V3")
    rematch_batch(batch_id)
    batch = get_batch(batch_id)
    assert (batch["matched_count"], batch["unmatched_count"], batch["row_count"]) == (2, 1, 3)
    assert batch["matched_count"] + batch["unmatched_count"] == batch["row_count"]
    assert batch["error_row_count"] == 1


def test_oversized_quantity_is_a_row_error_not_a_batch_failure(inventory_db, ingested_batch):
    batch_id, result = ingested_batch(
        [
            {"seller-sku": "A1", "afn-fulfillable-quantity": "5"},
            {"seller-sku": "HUGE", "afn-fulfillable-quantity": "1e19"},
        ]
    )
    assert result["status"] == "completed"
    assert (result["row_count"], result["error_rows"]) == (2, 1)

    rows = {row["external_sku"]: row for row in list_rows(batch_id)["items"]}
    assert rows["HUGE"]["available_qty"] == 0
    assert "out of range" in rows["HUGE"]["data_error"]
    assert location_rollup(batch_id)[0]["available_total"] == 5
