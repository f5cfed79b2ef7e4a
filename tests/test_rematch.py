import pytest

from conftest import CHANNEL, MARKETPLACE
from services import rematch
from services.catalog_service import upsert_catalog_variant
from services.inventory_rows import list_rows
from services.report_batches import BatchNotFoundError, get_batch
from services.sku_mappings import get_sku_mapping, set_sku_mapping_active, upsert_sku_mapping

ROWS = [
    {"seller-sku": "A1", "asin": "B0A1", "fnsku": "X0A1", "available": "2", "fulfillment-center-id": "BLR7"},
    {"seller-sku": "A1", "asin": "B0A1", "available": "3", "fulfillment-center-id": "DEL4"},
    {"seller-sku": "B2", "available": "1", "fulfillment-center-id": "BLR7"},
]


def test_rematch_converges_and_is_idempotent(inventory_db, ingested_batch):
    batch_id, result = ingested_batch(ROWS)
    assert result["matched"] == 0

    upsert_sku_mapping(CHANNEL, MARKETPLACE, "A1", "V1")
    upsert_sku_mapping(CHANNEL, MARKETPLACE, "B2", "V2")
    first = rematch.rematch_batch(batch_id)
    assert first["rows_checked"] == 3
    assert first["rows_changed"] == 3
    assert (first["matched"], first["unmatched"]) == (3, 0)

    second = rematch.rematch_batch(batch_id)
    assert second["rows_changed"] == 0
    assert (second["matched"], second["unmatched"]) == (3, 0)


def test_deactivated_mapping_unmatches_on_rematch(inventory_db, ingested_batch):
    upsert_sku_mapping(CHANNEL, MARKETPLACE, "A1", "V1")
    batch_id, result = ingested_batch(ROWS)
    assert result["matched"] == 2

    set_sku_mapping_active(CHANNEL, MARKETPLACE, ["A1"], False)
    outcome = rematch.rematch_external_sku(batch_id, "a1")
    assert outcome["rows_checked"] == 2
    assert (outcome["matched"], outcome["unmatched"]) == (0, 3)
    rows = list_rows(batch_id)["items"]
    assert all(row["variant_id"] is None and row["matched_at"] is None for row in rows)


def test_rematch_only_touches_requested_sku(inventory_db, ingested_batch):
    batch_id, _ = ingested_batch(ROWS)
    upsert_sku_mapping(CHANNEL, MARKETPLACE, "A1", "V1")
    upsert_sku_mapping(CHANNEL, MARKETPLACE, "B2", "V2")
    outcome = rematch.rematch_external_sku(batch_id, "A1")
    assert outcome["rows_changed"] == 2
    assert get_batch(batch_id)["unmatched_count"] == 1


def test_map_sku_and_rematch_copies_identifiers(inventory_db, ingested_batch):
    batch_id, _ = ingested_batch(ROWS)
    upsert_catalog_variant("V1", "SHIRT-RED", title="Red shirt")

    result = rematch.map_sku_and_rematch(batch_id, "a1", "V1", notes="mapped from batch view")
    assert result["rematch"]["matched"] == 2
    mapping = get_sku_mapping(CHANNEL, MARKETPLACE, "A1")
    assert mapping["variant_id"] == "V1"
    assert mapping["asin"] == "B0A1"
    assert mapping["fnsku"] == "X0A1"
    assert mapping["external_sku"] == "A1"


def test_map_sku_rejects_unknown_variant_and_batch(inventory_db, ingested_batch):
    batch_id, _ = ingested_batch(ROWS)
    with pytest.raises(ValueError):
        rematch.map_sku_and_rematch(batch_id, "A1", "NOPE")
    upsert_catalog_variant("V1", "SHIRT-RED")
    with pytest.raises(BatchNotFoundError):
        rematch.map_sku_and_rematch("missing", "A1", "V1")
    with pytest.raises(BatchNotFoundError):
        rematch.rematch_batch("missing")
