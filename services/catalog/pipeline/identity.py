"""
Stable place identifiers.

An id is derived from the place name once and never regenerated, so links
and bookmarks into the catalog survive re-runs.
"""

from __future__ import annotations

import logging
import re

from services.catalog.pipeline.schema import Place

logger = logging.getLogger(__name__)


def slugify(name: str) -> str:
    """
    Generate a URL-safe slug from a place name.

    >>> slugify("Tony's Pizza Express")
    'tonys-pizza-express'
    """
    if not name or not name.strip():
        raise ValueError("cannot slugify an empty name")
    slug = name.lower()
    # Drop anything that isn't a lowercase letter, digit, whitespace or hyphen
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    slug = slug.strip("-")
    if not slug:
        raise ValueError(f"name {name!r} has no slug-able characters")
    return slug


def assign_ids(places: list[Place]) -> list[Place]:
    """
    Give every place without an id a slug of its name. Mutates in place.

    Existing ids are kept as-is. Colliding slugs get -2, -3, ... in
    encounter order so the same document always yields the same ids.
    """
    taken: set[str] = {p.id for p in places if p.id}
    for place in places:
        if place.id:
            continue
        try:
            base = slugify(place.name)
        except ValueError:
            logger.warning("Name %r has no slug-able characters, using 'place'", place.name)
            base = "place"
        candidate = base
        n = 2
        while candidate in taken:
            candidate = f"{base}-{n}"
            n += 1
        if candidate != base:
            logger.info("Id collision for %r, using %s", place.name, candidate)
        place.id = candidate
        taken.add(candidate)
    return places
