import pytest

from services import catalog_service
from services.catalog_service import get_variants_by_ids, resolve_variants_by_sku, upsert_catalog_variant


def test_resolve_is_case_insensitive_and_skips_unknown(inventory_db):
    upsert_catalog_variant("V1", "Shirt-Red", title="Red shirt", size="M")
    upsert_catalog_variant("V2", "MUG", company_id="other-co")

    found = resolve_variants_by_sku(None, ["shirt-red", "MUG", "missing", ""])
    assert found == [{"variant_id": "V1", "sku": "Shirt-Red", "title": "Red shirt", "size": "M", "color": None}]
    assert resolve_variants_by_sku("other-co", ["mug"])[0]["variant_id"] == "V2"
    assert resolve_variants_by_sku(None, []) == []


def test_resolve_chunks_large_lookups(inventory_db, monkeypatch):
    monkeypatch.setattr(catalog_service, "CATALOG_CHUNK_SIZE", 2)
    for idx in range(5):
        upsert_catalog_variant(f"V{idx}", f"SKU-{idx}")
    found = resolve_variants_by_sku(None, [f"sku-{idx}" for idx in range(5)])
    assert sorted(v["variant_id"] for v in found) == ["V0", "V1", "V2", "V3", "V4"]


def test_get_variants_by_ids(inventory_db):
    upsert_catalog_variant("V1", "SKU-1", title="One")
    assert get_variants_by_ids(["V1", "V9"]) == {
        "V1": {"variant_id": "V1", "sku": "SKU-1", "title": "One", "size": None, "color": None}
    }
    with pytest.raises(ValueError):
        upsert_catalog_variant("", "SKU")
