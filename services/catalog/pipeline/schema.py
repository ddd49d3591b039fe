"""
Place and Catalog models.

Field names match the persisted JSON keys so downstream consumers (the
guide front end, search indexer) read the catalog without a mapping layer.
Everything enrichment-owned is optional and omitted from the dump when unset.

validate_place / validate_catalog are advisory: they return a list of
human-readable problems rather than raising, and the orchestrator only logs
them.
"""

from __future__ import annotations

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

PlaceType = Literal["dining", "activity", "accommodation", "shopping", "other"]
PLACE_TYPES: frozenset[str] = frozenset({"dining", "activity", "accommodation", "shopping", "other"})

# Fields the enrichment client may write. Everything else on a Place is
# owned by extraction or identity assignment.
ENRICHMENT_FIELDS: tuple[str, ...] = (
    "address",
    "phone",
    "website",
    "hours",
    "rawHours",
    "rating",
    "reviewCount",
    "priceRange",
    "coordinates",
    "mapsLink",
    "placeTaxonomy",
    "type",
)


class Coordinates(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class EnrichmentStatus(BaseModel):
    enriched: bool
    enrichedAt: Optional[str] = None
    enrichmentVersion: Optional[str] = None
    reason: Optional[str] = None
    sourceConfidence: Optional[Literal["high", "medium"]] = None
    source: Optional[str] = None
    externalId: Optional[str] = None


class Place(BaseModel):
    """A single named, visitable place extracted from the guide."""

    id: Optional[str] = None
    name: str = Field(min_length=1)
    type: PlaceType = "other"
    description: Optional[str] = None
    notes: Optional[str] = None
    url: Optional[str] = None
    origText: str = Field(min_length=1)
    category: str = Field(min_length=1)

    address: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    hours: Optional[Union[str, list[str], dict[str, str]]] = None
    rawHours: Optional[list[str]] = None
    rating: Optional[float] = Field(default=None, ge=0, le=5)
    reviewCount: Optional[int] = Field(default=None, ge=0)
    priceRange: Optional[str] = Field(default=None, pattern=r"^\${1,4}$")
    coordinates: Optional[Coordinates] = None
    mapsLink: Optional[str] = None
    placeTaxonomy: Optional[list[str]] = None

    tags: list[str] = Field(default_factory=list)
    enrichmentStatus: Optional[EnrichmentStatus] = None

    model_config = {"extra": "ignore"}

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: list[str]) -> list[str]:
        seen: set[str] = set()
        out: list[str] = []
        for tag in v:
            if tag not in seen:
                seen.add(tag)
                out.append(tag)
        return out

    @property
    def is_enriched(self) -> bool:
        return bool(self.enrichmentStatus and self.enrichmentStatus.enriched)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class EnrichmentStats(BaseModel):
    totalPlaces: int = 0
    enrichedPlaces: int = 0
    skippedPlaces: int = 0
    failureReasons: dict[str, int] = Field(default_factory=dict)


class CatalogMetadata(BaseModel):
    generatedAt: str
    sourceDocId: str
    sourceDocTitle: Optional[str] = None
    revisionId: Optional[str] = None
    totalPlaces: int
    categories: list[str] = Field(default_factory=list)
    enrichmentStats: EnrichmentStats = Field(default_factory=EnrichmentStats)
    parserVersion: str
    enrichmentVersion: Optional[str] = None
    locationContext: Optional[str] = None
    summary: Optional[str] = None


class Catalog(BaseModel):
    metadata: CatalogMetadata
    places: list[Place] = Field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata.model_dump(exclude_none=True),
            "places": [p.to_dict() for p in self.places],
        }


# ---------------------------------------------------------------------------
# Loading stored catalogs
# ---------------------------------------------------------------------------

def places_from_catalog(data: Optional[dict[str, Any]]) -> tuple[list[Place], list[str]]:
    """
    Parse the places array of a stored catalog dict.

    Returns (places, errors). Entries that fail validation are dropped and
    described in errors so the caller can log them; a dropped entry is
    simply treated as new on the next run.
    """
    if not data:
        return [], []
    raw_places = data.get("places")
    if not isinstance(raw_places, list):
        return [], ["stored catalog has no places array"]

    places: list[Place] = []
    errors: list[str] = []
    for idx, raw in enumerate(raw_places):
        try:
            places.append(Place.model_validate(raw))
        except ValidationError as exc:
            name = raw.get("name") if isinstance(raw, dict) else None
            errors.append(f"places[{idx}] ({name!r}): {exc.error_count()} error(s)")
    return places, errors


# ---------------------------------------------------------------------------
# Advisory validation
# ---------------------------------------------------------------------------

def _format_validation_error(prefix: str, exc: ValidationError) -> list[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        out.append(f"{prefix}{loc}: {err.get('msg')}")
    return out


def validate_place(place: Place) -> list[str]:
    """Return schema problems for one place. Empty list means valid."""
    label = place.id or place.name or "<unnamed>"
    prefix = f"{label}: "
    errors: list[str] = []
    try:
        Place.model_validate(place.model_dump())
    except ValidationError as exc:
        errors.extend(_format_validation_error(prefix, exc))

    if not place.id:
        errors.append(f"{prefix}missing id")
    if place.type not in PLACE_TYPES:
        errors.append(f"{prefix}unknown type {place.type!r}")
    bad_tags = [t for t in place.tags if not isinstance(t, str) or t != t.lower()]
    if bad_tags:
        errors.append(f"{prefix}tags must be lowercase: {bad_tags}")
    if place.enrichmentStatus is None:
        errors.append(f"{prefix}missing enrichmentStatus")
    return errors


def validate_catalog(catalog: Catalog) -> list[str]:
    """Return schema problems for the whole catalog. Empty list means valid."""
    errors: list[str] = []
    if catalog.metadata.totalPlaces != len(catalog.places):
        errors.append(
            f"metadata.totalPlaces={catalog.metadata.totalPlaces} "
            f"but catalog has {len(catalog.places)} places"
        )

    seen: set[str] = set()
    for place in catalog.places:
        errors.extend(validate_place(place))
        if place.id:
            if place.id in seen:
                errors.append(f"duplicate id {place.id!r}")
            seen.add(place.id)
    return errors
