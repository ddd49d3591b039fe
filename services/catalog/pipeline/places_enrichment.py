"""
Enrich extracted places with business data from the Google Places API (v1).

Per place:
  1. Text search with name + category + a few description words + location
  2. Take the top-ranked result (the API's ranking is trusted as-is)
  3. Fetch details for that result; detail fields win over search fields.
     A failed detail fetch degrades to the search fields at medium confidence.
  4. Apply only the allow-listed business fields to the place

Results are cached for the lifetime of one EnrichmentCache (one run): by
name + location context, and detail payloads by external id, so two mentions
of the same business cost one detail fetch.

Every outbound call goes through a fixed-delay Throttle and has a timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import ValidationError

from services.catalog.pipeline.errors import EnrichmentError
from services.catalog.pipeline.schema import ENRICHMENT_FIELDS, Coordinates, EnrichmentStatus, Place

logger = logging.getLogger(__name__)

SEARCH_URL = "https://places.googleapis.com/v1/places:searchText"
DETAILS_URL = "https://places.googleapis.com/v1/places/{place_id}"
SOURCE_NAME = "google_places"

SEARCH_FIELD_MASK = ",".join([
    "places.id",
    "places.displayName",
    "places.formattedAddress",
    "places.location",
    "places.rating",
    "places.userRatingCount",
    "places.priceLevel",
    "places.types",
    "places.nationalPhoneNumber",
    "places.websiteUri",
    "places.regularOpeningHours.weekdayDescriptions",
])

DETAILS_FIELD_MASK = ",".join([
    "id",
    "displayName",
    "formattedAddress",
    "nationalPhoneNumber",
    "internationalPhoneNumber",
    "websiteUri",
    "regularOpeningHours.weekdayDescriptions",
    "rating",
    "userRatingCount",
    "priceLevel",
    "location",
    "types",
    "googleMapsUri",
])

PRICE_LEVELS: dict[Any, Optional[str]] = {
    "PRICE_LEVEL_FREE": None,
    "PRICE_LEVEL_INEXPENSIVE": "$",
    "PRICE_LEVEL_MODERATE": "$$",
    "PRICE_LEVEL_EXPENSIVE": "$$$",
    "PRICE_LEVEL_VERY_EXPENSIVE": "$$$$",
    # Legacy numeric levels
    0: "$",
    1: "$",
    2: "$$",
    3: "$$$",
    4: "$$$$",
}

# First matching rule wins. Dining is checked before the generic "store"
# because bakeries and cafes often carry both.
TYPE_RULES: tuple[tuple[str, frozenset[str]], ...] = (
    ("dining", frozenset({
        "restaurant", "food", "meal_takeaway", "meal_delivery", "cafe",
        "coffee_shop", "bakery", "bar", "pub", "brewery", "ice_cream_shop",
    })),
    ("accommodation", frozenset({
        "lodging", "hotel", "motel", "inn", "bed_and_breakfast",
        "campground", "rv_park", "resort_hotel",
    })),
    ("activity", frozenset({
        "tourist_attraction", "park", "museum", "art_gallery", "beach",
        "hiking_area", "natural_feature", "amusement_park", "zoo",
        "aquarium", "marina", "state_park", "national_park",
    })),
    ("shopping", frozenset({
        "store", "shopping_mall", "grocery_store", "supermarket",
        "clothing_store", "book_store", "gift_shop", "market",
    })),
)

SEARCH_DESCRIPTION_WORDS = 5


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Field mapping
# ---------------------------------------------------------------------------

def map_price_level(value: Any) -> Optional[str]:
    """Map a Places price level (enum name or legacy int) to $..$$$$."""
    if value is None:
        return None
    return PRICE_LEVELS.get(value)


def map_place_type(types: Optional[list[str]]) -> Optional[str]:
    """Map external type tags to an internal place type, or None if nothing matches."""
    if not types:
        return None
    type_set = set(types)
    for internal, external in TYPE_RULES:
        if type_set & external:
            return internal
    return None


def extract_fields(payload: dict[str, Any]) -> dict[str, Any]:
    """Map one Places API place object onto Place business fields. Unset keys are omitted."""
    fields: dict[str, Any] = {}

    if payload.get("formattedAddress"):
        fields["address"] = payload["formattedAddress"]
    phone = payload.get("nationalPhoneNumber") or payload.get("internationalPhoneNumber")
    if phone:
        fields["phone"] = phone
    if payload.get("websiteUri"):
        fields["website"] = payload["websiteUri"]

    weekday = (payload.get("regularOpeningHours") or {}).get("weekdayDescriptions")
    if weekday:
        fields["rawHours"] = list(weekday)

    if payload.get("rating") is not None:
        fields["rating"] = float(payload["rating"])
    if payload.get("userRatingCount") is not None:
        fields["reviewCount"] = int(payload["userRatingCount"])

    price = map_price_level(payload.get("priceLevel"))
    if price:
        fields["priceRange"] = price

    loc = payload.get("location") or {}
    if loc.get("latitude") is not None and loc.get("longitude") is not None:
        fields["coordinates"] = {"lat": loc["latitude"], "lng": loc["longitude"]}

    types = payload.get("types")
    if types:
        fields["placeTaxonomy"] = list(types)
        mapped = map_place_type(types)
        if mapped:
            fields["type"] = mapped

    if payload.get("googleMapsUri"):
        fields["mapsLink"] = payload["googleMapsUri"]

    return fields


def build_search_query(place: Place, location_context: str) -> str:
    parts = [place.name, place.category]
    if place.description:
        parts.append(" ".join(place.description.split()[:SEARCH_DESCRIPTION_WORDS]))
    parts.append(location_context)
    return " ".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Throttle + cache
# ---------------------------------------------------------------------------

class Throttle:
    """Enforce a fixed minimum delay between consecutive outbound calls."""

    def __init__(
        self,
        delay_s: float,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.delay_s = delay_s
        self._sleep = sleep
        self._clock = clock
        self._last: Optional[float] = None

    async def wait(self) -> None:
        if self._last is not None and self.delay_s > 0:
            remaining = self.delay_s - (self._clock() - self._last)
            if remaining > 0:
                await self._sleep(remaining)
        self._last = self._clock()


@dataclass
class LookupResult:
    """Outcome of looking up one name. fields is None when the search found nothing."""
    fields: Optional[dict[str, Any]]
    confidence: Optional[str] = None
    external_id: Optional[str] = None


@dataclass
class EnrichmentCache:
    """Run-scoped lookup cache. Create one per pipeline run."""
    results: dict[str, LookupResult] = field(default_factory=dict)
    details: dict[str, dict[str, Any]] = field(default_factory=dict)

    @staticmethod
    def key(name: str, location_context: str) -> str:
        return f"{name.strip().lower()}|{location_context.strip().lower()}"


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

class PlacesLookupAPI:
    """Thin wrapper over the two Places API v1 endpoints the pipeline uses."""

    def __init__(self, client: httpx.AsyncClient, api_key: str, timeout_s: float = 10.0):
        self._client = client
        self._api_key = api_key
        self.timeout_s = timeout_s

    async def search(self, query: str, max_results: int = 5) -> list[dict[str, Any]]:
        resp = await self._client.post(
            SEARCH_URL,
            headers={
                "X-Goog-Api-Key": self._api_key,
                "X-Goog-FieldMask": SEARCH_FIELD_MASK,
            },
            json={"textQuery": query, "pageSize": min(max_results, 20)},
            timeout=self.timeout_s,
        )
        resp.raise_for_status()
        return resp.json().get("places", [])

    async def details(self, external_id: str) -> dict[str, Any]:
        resp = await self._client.get(
            DETAILS_URL.format(place_id=external_id),
            headers={
                "X-Goog-Api-Key": self._api_key,
                "X-Goog-FieldMask": DETAILS_FIELD_MASK,
            },
            timeout=self.timeout_s,
        )
        resp.raise_for_status()
        return resp.json()


# ---------------------------------------------------------------------------
# Enrichment client
# ---------------------------------------------------------------------------

class PlacesEnrichmentClient:
    """Enrich one place at a time. Never touches fields outside ENRICHMENT_FIELDS."""

    def __init__(
        self,
        lookup: PlacesLookupAPI,
        location_context: str,
        enrichment_version: str,
        cache: Optional[EnrichmentCache] = None,
        throttle: Optional[Throttle] = None,
        max_results: int = 5,
    ):
        self.lookup = lookup
        self.location_context = location_context
        self.enrichment_version = enrichment_version
        self.cache = cache if cache is not None else EnrichmentCache()
        self.throttle = throttle if throttle is not None else Throttle(1.0)
        self.max_results = max_results

        self.search_calls = 0
        self.detail_calls = 0
        self.cache_hits = 0

    async def _search(self, place: Place) -> list[dict[str, Any]]:
        query = build_search_query(place, self.location_context)
        await self.throttle.wait()
        self.search_calls += 1
        try:
            return await self.lookup.search(query, self.max_results)
        except (httpx.HTTPError, ValueError) as exc:
            raise EnrichmentError(f"search failed for {place.name!r}: {exc}") from exc

    async def _details(self, external_id: str, name: str) -> Optional[dict[str, Any]]:
        if external_id in self.cache.details:
            self.cache_hits += 1
            return self.cache.details[external_id]
        await self.throttle.wait()
        self.detail_calls += 1
        try:
            detail = await self.lookup.details(external_id)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Detail fetch failed for %s (%s), using search fields: %s", name, external_id, exc)
            return None
        self.cache.details[external_id] = detail
        return detail

    async def _lookup(self, place: Place) -> LookupResult:
        key = EnrichmentCache.key(place.name, self.location_context)
        cached = self.cache.results.get(key)
        if cached is not None:
            self.cache_hits += 1
            logger.debug("Enrichment cache hit for %s", place.name)
            return cached

        results = await self._search(place)
        if not results:
            result = LookupResult(fields=None)
        else:
            best = results[0]
            fields = extract_fields(best)
            external_id = best.get("id")
            confidence = "medium"
            if external_id:
                detail = await self._details(external_id, place.name)
                if detail is not None:
                    fields.update(extract_fields(detail))
                    confidence = "high"
            result = LookupResult(fields=fields, confidence=confidence, external_id=external_id)

        self.cache.results[key] = result
        return result

    async def enrich(self, place: Place) -> Place:
        """
        Return a copy of place with business fields and enrichmentStatus set.

        Zero search results is not an error: the copy is marked
        enriched=False with reason "no results". Search transport failures
        raise EnrichmentError.
        """
        result = await self._lookup(place)

        if result.fields is None:
            logger.info("No Places results for %s", place.name)
            return place.model_copy(update={
                "enrichmentStatus": EnrichmentStatus(
                    enriched=False,
                    enrichedAt=_now(),
                    enrichmentVersion=self.enrichment_version,
                    reason="no results",
                    source=SOURCE_NAME,
                ),
            })

        update: dict[str, Any] = {
            k: v for k, v in result.fields.items() if k in ENRICHMENT_FIELDS
        }
        update["enrichmentStatus"] = EnrichmentStatus(
            enriched=True,
            enrichedAt=_now(),
            enrichmentVersion=self.enrichment_version,
            sourceConfidence=result.confidence,
            source=SOURCE_NAME,
            externalId=result.external_id,
        )
        if "coordinates" in update:
            update["coordinates"] = Coordinates(**update["coordinates"])
        try:
            enriched = Place.model_validate({**place.model_dump(), **update})
        except ValidationError as exc:
            logger.warning("Enriched %s failed validation (%d errors), keeping as-is", place.name, exc.error_count())
            enriched = place.model_copy(update=update)
        logger.info(
            "Enriched %s (confidence=%s, fields=%s)",
            place.name, result.confidence, ",".join(sorted(k for k in update if k != "enrichmentStatus")),
        )
        return enriched
