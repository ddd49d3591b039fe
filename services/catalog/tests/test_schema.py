"""
Tests for services.catalog.pipeline.schema

Covers:
- wire shape of dumped places (camelCase, None omitted)
- tag dedupe
- loading stored catalogs leniently
- advisory place/catalog validation
"""

import pytest
from pydantic import ValidationError

from services.catalog.pipeline.schema import (
    Catalog,
    CatalogMetadata,
    EnrichmentStatus,
    Place,
    places_from_catalog,
    validate_catalog,
    validate_place,
)


def _place(**overrides) -> Place:
    data = {
        "id": "blue-moon-cafe",
        "name": "Blue Moon Cafe",
        "type": "dining",
        "origText": "**blue moon cafe**",
        "category": "Restaurants & Food",
        "enrichmentStatus": {"enriched": True, "enrichmentVersion": "2.0.0"},
    }
    data.update(overrides)
    return Place.model_validate(data)


class TestPlace:
    def test_dump_omits_unset_fields(self):
        d = _place().to_dict()
        assert "address" not in d
        assert "coordinates" not in d
        assert d["origText"] == "**blue moon cafe**"
        assert d["enrichmentStatus"] == {"enriched": True, "enrichmentVersion": "2.0.0"}
        assert d["tags"] == []

    def test_coordinates_round_trip(self):
        p = _place(coordinates={"lat": 43.9, "lng": -69.2})
        assert p.to_dict()["coordinates"] == {"lat": 43.9, "lng": -69.2}

    def test_tags_deduped_in_order(self):
        p = _place(tags=["breakfast", "harbor", "breakfast"])
        assert p.tags == ["breakfast", "harbor"]

    def test_hours_accepts_string_list_and_mapping(self):
        assert _place(hours="Every day from 8a to 5p").hours == "Every day from 8a to 5p"
        assert _place(hours=["Monday 8a-5p"]).hours == ["Monday 8a-5p"]
        assert _place(hours={"Monday": "8a-5p"}).hours == {"Monday": "8a-5p"}

    def test_empty_orig_text_rejected(self):
        with pytest.raises(ValidationError):
            _place(origText="")

    def test_bad_price_range_rejected(self):
        with pytest.raises(ValidationError):
            _place(priceRange="$$$$$")

    def test_unknown_keys_ignored(self):
        p = _place(googlePlacesTypes=["cafe"])
        assert "googlePlacesTypes" not in p.to_dict()

    def test_is_enriched(self):
        assert _place().is_enriched
        assert not _place(enrichmentStatus={"enriched": False, "reason": "no results"}).is_enriched
        assert not _place(enrichmentStatus=None).is_enriched


class TestPlacesFromCatalog:
    def test_none(self):
        assert places_from_catalog(None) == ([], [])

    def test_invalid_entries_dropped_with_error(self):
        data = {"places": [_place().to_dict(), {"name": "Broken"}]}
        places, errors = places_from_catalog(data)
        assert [p.id for p in places] == ["blue-moon-cafe"]
        assert len(errors) == 1
        assert "Broken" in errors[0]

    def test_missing_places_array(self):
        places, errors = places_from_catalog({"metadata": {}})
        assert places == []
        assert errors


class TestValidation:
    def test_valid_place(self):
        assert validate_place(_place()) == []

    def test_missing_id_and_status(self):
        errors = validate_place(_place(id=None, enrichmentStatus=None))
        assert any("missing id" in e for e in errors)
        assert any("enrichmentStatus" in e for e in errors)

    def test_uppercase_tag_flagged(self):
        p = _place()
        p.tags = ["Seafood"]
        assert any("lowercase" in e for e in validate_place(p))

    def test_constructed_invalid_place_reports_errors(self):
        p = Place.model_construct(
            id="x", name="X", type="nightlife", origText="x", category="Food",
            tags=[], enrichmentStatus=EnrichmentStatus(enriched=False),
        )
        errors = validate_place(p)
        assert any("type" in e for e in errors)

    def test_catalog_checks_count_and_duplicate_ids(self):
        catalog = Catalog(
            metadata=CatalogMetadata(
                generatedAt="2026-01-01T00:00:00+00:00",
                sourceDocId="doc",
                totalPlaces=3,
                parserVersion="1.0.0",
            ),
            places=[_place(), _place()],
        )
        errors = validate_catalog(catalog)
        assert any("totalPlaces" in e for e in errors)
        assert any("duplicate id" in e for e in errors)
