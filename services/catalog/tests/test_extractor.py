"""
Tests for services.catalog.pipeline.extractor

Covers:
- response parsing (plain JSON, code fences, bare array, garbage)
- category canonicalization + per-run dedupe
- lenient candidate handling (bad type, missing origText, no name)
- fatal conditions: empty result, truncation, timeout, API error
- location context passed verbatim, explicit token budget
- summary fallback
"""

import asyncio
import json

import anthropic
import httpx
import pytest

from services.catalog.pipeline.completion import CompletionTruncatedError
from services.catalog.pipeline.errors import ExtractionError
from services.catalog.pipeline.extractor import (
    DEFAULT_CATEGORY,
    CategoryCanonicalizer,
    _parse_extraction_response,
    canonicalize_category,
    extract_places,
    generate_summary,
)
from services.catalog.pipeline.segmenter import segment_document


def _response(*places: dict) -> str:
    return json.dumps({"places": list(places)})


BLUE_MOON = {
    "name": "Blue Moon Cafe",
    "type": "dining",
    "description": "Amazing breakfast spot on the harbor",
    "url": "https://bluemooncafe.com",
    "notes": "Try the blueberry pancakes.",
    "origText": "**blue moon cafe** - https://bluemooncafe.com\nAmazing breakfast spot on the harbor!",
    "category": "## Restaurants & Food",
}


# ===================================================================
# Response parsing
# ===================================================================


class TestParseExtractionResponse:
    def test_valid_json(self):
        result = _parse_extraction_response(_response(BLUE_MOON))
        assert result[0]["name"] == "Blue Moon Cafe"

    def test_markdown_code_block(self):
        text = "Here you go:\n```json\n" + _response(BLUE_MOON) + "\n```"
        assert len(_parse_extraction_response(text)) == 1

    def test_bare_array(self):
        assert len(_parse_extraction_response(json.dumps([BLUE_MOON]))) == 1

    def test_non_dict_items_skipped(self):
        assert _parse_extraction_response(json.dumps({"places": [BLUE_MOON, "junk", 3]})) == [BLUE_MOON]

    def test_invalid_json(self):
        with pytest.raises(ExtractionError, match="not valid JSON"):
            _parse_extraction_response("not json at all")

    def test_partial_json(self):
        with pytest.raises(ExtractionError):
            _parse_extraction_response('{"places": [{"name": "Test"')

    def test_missing_places_key(self):
        with pytest.raises(ExtractionError, match="no 'places' array"):
            _parse_extraction_response(json.dumps({"venues": []}))


# ===================================================================
# Category canonicalization
# ===================================================================


class TestCanonicalizeCategory:
    @pytest.mark.parametrize("raw,expected", [
        ("## Restaurants & Food", "Restaurants & Food"),
        ("**beaches**", "Beaches"),
        ("things to do:", "Things to Do"),
        ("  the   best   of   st george  ", "The Best of St George"),
        ("BBQ spots", "BBQ Spots"),
    ])
    def test_cleaning(self, raw, expected):
        assert canonicalize_category(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "###", "  :  "])
    def test_empty_maps_to_default(self, raw):
        assert canonicalize_category(raw) == DEFAULT_CATEGORY

    def test_first_spelling_wins(self):
        canon = CategoryCanonicalizer()
        assert canon("BBQ Spots") == "BBQ Spots"
        assert canon("bbq spots") == "BBQ Spots"
        assert canon("Beaches") == "Beaches"
        assert canon.categories == ["BBQ Spots", "Beaches"]


# ===================================================================
# extract_places
# ===================================================================


class TestExtractPlaces:
    @pytest.mark.asyncio
    async def test_blue_moon_scenario(self, fake_completion_cls, sample_guide):
        completion = fake_completion_cls({"extract_places": _response(BLUE_MOON)})
        places = await extract_places(segment_document(sample_guide), "Maine, United States", completion)

        assert len(places) == 1
        p = places[0]
        assert p.name == "Blue Moon Cafe"
        assert p.type == "dining"
        assert p.category == "Restaurants & Food"
        assert p.origText.startswith("**blue moon cafe**")
        assert p.id is None
        assert p.address is None

    @pytest.mark.asyncio
    async def test_location_context_and_budget_passed(self, fake_completion_cls, sample_guide):
        completion = fake_completion_cls({"extract_places": _response(BLUE_MOON)})
        await extract_places(
            segment_document(sample_guide), "Port Clyde, Maine", completion, max_tokens=12000,
        )
        call = completion.calls[0]
        assert "Port Clyde, Maine" in call["user"]
        assert "<guide_document>" in call["user"]
        assert "**tonys pizza express**" in call["user"]
        assert call["max_tokens"] == 12000

    @pytest.mark.asyncio
    async def test_model_supplied_id_and_business_fields_ignored(self, fake_completion_cls):
        raw = dict(BLUE_MOON, id="made-up", address="1 Fake St", phone="555")
        completion = fake_completion_cls({"extract_places": _response(raw)})
        places = await extract_places(segment_document("# Food\nx"), "Maine", completion)
        assert places[0].id is None
        assert places[0].address is None
        assert places[0].phone is None

    @pytest.mark.asyncio
    async def test_lenient_candidates(self, fake_completion_cls):
        completion = fake_completion_cls({"extract_places": _response(
            {"name": "Odd Place", "type": "nightlife", "origText": "odd", "category": "Misc"},
            {"name": "No Text", "type": "activity", "category": "Misc"},
            {"type": "dining", "origText": "nameless"},
            {"name": "No Category", "origText": "x"},
        )})
        places = await extract_places(segment_document("# Misc\nx"), "Maine", completion)

        assert [p.name for p in places] == ["Odd Place", "No Text", "No Category"]
        assert places[0].type == "other"
        assert places[1].origText == "No Text"
        assert places[2].category == DEFAULT_CATEGORY

    @pytest.mark.asyncio
    async def test_categories_deduped_across_places(self, fake_completion_cls):
        completion = fake_completion_cls({"extract_places": _response(
            dict(BLUE_MOON, name="A", category="BBQ Spots"),
            dict(BLUE_MOON, name="B", category="**bbq spots**"),
        )})
        places = await extract_places(segment_document("# x\ny"), "Maine", completion)
        assert {p.category for p in places} == {"BBQ Spots"}

    @pytest.mark.asyncio
    async def test_zero_places_is_error(self, fake_completion_cls):
        completion = fake_completion_cls({"extract_places": _response()})
        with pytest.raises(ExtractionError, match="No places found"):
            await extract_places(segment_document("# Food\nnothing here"), "Maine", completion)

    @pytest.mark.asyncio
    async def test_only_nameless_candidates_is_error(self, fake_completion_cls):
        completion = fake_completion_cls({"extract_places": _response({"origText": "x"})})
        with pytest.raises(ExtractionError):
            await extract_places(segment_document("# Food\nx"), "Maine", completion)

    @pytest.mark.asyncio
    async def test_truncation_is_error(self, fake_completion_cls):
        completion = fake_completion_cls({"extract_places": CompletionTruncatedError("cut off")})
        with pytest.raises(ExtractionError, match="truncated"):
            await extract_places(segment_document("# Food\nx"), "Maine", completion)

    @pytest.mark.asyncio
    async def test_timeout_is_error(self, fake_completion_cls):
        completion = fake_completion_cls({"extract_places": asyncio.TimeoutError()})
        with pytest.raises(ExtractionError, match="timed out"):
            await extract_places(segment_document("# Food\nx"), "Maine", completion)

    @pytest.mark.asyncio
    async def test_api_error_is_error(self, fake_completion_cls):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        completion = fake_completion_cls({
            "extract_places": anthropic.APIConnectionError(request=request),
        })
        with pytest.raises(ExtractionError, match="failed"):
            await extract_places(segment_document("# Food\nx"), "Maine", completion)

    @pytest.mark.asyncio
    async def test_blank_document_is_error_without_model_call(self, fake_completion_cls):
        completion = fake_completion_cls()
        with pytest.raises(ExtractionError):
            await extract_places(segment_document("   "), "Maine", completion)
        assert completion.calls == []


# ===================================================================
# Summary
# ===================================================================


class TestGenerateSummary:
    @pytest.mark.asyncio
    async def test_uses_model_text(self, fake_completion_cls):
        completion = fake_completion_cls({"summary": "  A harbor town guide.  "})
        text = await generate_summary(completion, "Maine", [], ["Food"])
        assert text == "A harbor town guide."

    @pytest.mark.asyncio
    async def test_fallback_on_failure(self, fake_completion_cls):
        completion = fake_completion_cls({"summary": asyncio.TimeoutError()})
        text = await generate_summary(completion, "Maine", [], ["Food"])
        assert text == "Guide to 0 places in Maine."
