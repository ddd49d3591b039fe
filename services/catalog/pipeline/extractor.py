"""
Extract candidate places from a segmented guide with the completion model.

Failure policy:
  - Model call fails, times out, or is truncated -> ExtractionError
  - Response is not JSON or has no places list     -> ExtractionError
  - Zero places                                    -> ExtractionError
  - A single candidate fails schema validation     -> logged, kept best-effort
  - A candidate without a name                     -> logged, dropped
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Optional

import anthropic
from pydantic import ValidationError

from services.catalog.pipeline.completion import CompletionClient, CompletionTruncatedError
from services.catalog.pipeline.errors import ExtractionError
from services.catalog.pipeline.prompts import (
    EXTRACT_PROMPT_VERSION,
    EXTRACT_SYSTEM_PROMPT,
    SUMMARY_PROMPT_VERSION,
    SUMMARY_SYSTEM_PROMPT,
    build_extract_prompt,
    build_summary_prompt,
)
from services.catalog.pipeline.schema import PLACE_TYPES, Place
from services.catalog.pipeline.segmenter import Section, render_sections

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Uncategorized"

# Words kept lowercase in category titles unless they come first
_SMALL_WORDS = frozenset({
    "a", "an", "the", "and", "but", "or", "nor", "for", "of", "in", "on",
    "at", "to", "by", "with", "from",
})
_MARKDOWN_CHARS_RE = re.compile(r"[#*_`]+")
_TRAILING_PUNCT_RE = re.compile(r"[\s:;,.!?\-]+$")

# Keys the extractor is allowed to take from the model. Business data and
# ids come from later phases even if the model volunteers them.
_TEXT_FIELDS = ("description", "notes", "url")


# ---------------------------------------------------------------------------
# Category canonicalization
# ---------------------------------------------------------------------------

def _title_word(word: str, first: bool) -> str:
    if not word:
        return word
    lower = word.lower()
    if not first and lower in _SMALL_WORDS:
        return lower
    # Leave words with inner capitals alone ("McDonald's", "BBQ")
    if any(c.isupper() for c in word[1:]):
        return word
    return word[0].upper() + word[1:].lower()


def canonicalize_category(raw: Optional[str]) -> str:
    """
    Clean a section label for display.

    Strips markdown markers and trailing punctuation, collapses whitespace,
    and title-cases. Empty input maps to DEFAULT_CATEGORY.
    """
    if not raw:
        return DEFAULT_CATEGORY
    text = _MARKDOWN_CHARS_RE.sub(" ", str(raw))
    text = " ".join(text.split())
    text = _TRAILING_PUNCT_RE.sub("", text)
    if not text:
        return DEFAULT_CATEGORY
    words = text.split(" ")
    return " ".join(_title_word(w, i == 0) for i, w in enumerate(words))


class CategoryCanonicalizer:
    """
    Map category spellings onto one canonical form per run.

    The first spelling seen for a case-insensitive key wins, so "bbq spots"
    seen after "BBQ Spots" resolves to "BBQ Spots".
    """

    def __init__(self) -> None:
        self._by_key: dict[str, str] = {}

    def __call__(self, raw: Optional[str]) -> str:
        cleaned = canonicalize_category(raw)
        key = cleaned.casefold()
        if key not in self._by_key:
            self._by_key[key] = cleaned
        return self._by_key[key]

    @property
    def categories(self) -> list[str]:
        return list(self._by_key.values())


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def _extract_places_list(data: Any) -> Optional[list]:
    if isinstance(data, dict):
        places = data.get("places")
        if isinstance(places, list):
            return places
        return None
    if isinstance(data, list):
        return data
    return None


def _parse_extraction_response(text: str) -> list[dict]:
    """
    Parse the model response into a list of candidate dicts.

    Tolerates markdown code fences and a bare array. Raises ExtractionError
    when no places list can be recovered.
    """
    text = (text or "").strip()
    candidates: list[str] = [text]
    if "```" in text:
        for block in text.split("```"):
            block = block.strip()
            if block.startswith("json"):
                block = block[4:].strip()
            if block:
                candidates.append(block)

    saw_json = False
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        saw_json = True
        places = _extract_places_list(data)
        if places is not None:
            return [p for p in places if isinstance(p, dict)]

    if saw_json:
        raise ExtractionError("model response has no 'places' array")
    logger.error("Failed to parse extraction response: %s", text[:200])
    raise ExtractionError("model response is not valid JSON")


# ---------------------------------------------------------------------------
# Candidate validation
# ---------------------------------------------------------------------------

def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    value = value.strip()
    return value or None


def _build_place(raw: dict, canonicalize: CategoryCanonicalizer) -> Optional[Place]:
    """Coerce one model candidate into a Place. Returns None if it has no name."""
    name = _as_text(raw.get("name"))
    if not name:
        logger.warning("Dropping extracted candidate without a name: %s", str(raw)[:200])
        return None

    place_type = (_as_text(raw.get("type")) or "other").lower()
    if place_type not in PLACE_TYPES:
        logger.info("Unknown type %r for %s, using 'other'", place_type, name)
        place_type = "other"

    orig_text = raw.get("origText")
    if not isinstance(orig_text, str) or not orig_text.strip():
        logger.warning("No origText for %s, falling back to name", name)
        orig_text = name

    fields: dict[str, Any] = {
        "name": name,
        "type": place_type,
        "origText": orig_text,
        "category": canonicalize(_as_text(raw.get("category"))),
    }
    for key in _TEXT_FIELDS:
        fields[key] = _as_text(raw.get(key))

    try:
        return Place.model_validate(fields)
    except ValidationError as exc:
        # Lenient: the entry stays in the catalog in unvalidated form.
        logger.warning("Place %s failed validation (%d errors), keeping as-is", name, exc.error_count())
        return Place.model_construct(**fields)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def extract_places(
    sections: list[Section],
    location_context: str,
    completion: CompletionClient,
    max_tokens: Optional[int] = None,
) -> list[Place]:
    """
    Extract every place mentioned in the guide, in document order.

    `location_context` is passed to the model verbatim. Raises ExtractionError
    on any whole-response failure, including an empty result.
    """
    text = render_sections(sections)
    if not text.strip():
        raise ExtractionError("document has no text to extract from")

    user_prompt = build_extract_prompt(text, location_context)
    try:
        response_text = await completion.complete(
            EXTRACT_SYSTEM_PROMPT,
            user_prompt,
            max_tokens=max_tokens,
            context="extract_places",
            prompt_version=EXTRACT_PROMPT_VERSION,
        )
    except CompletionTruncatedError as exc:
        raise ExtractionError(f"extraction output truncated: {exc}") from exc
    except asyncio.TimeoutError as exc:
        raise ExtractionError("extraction call timed out") from exc
    except anthropic.APIError as exc:
        raise ExtractionError(f"extraction call failed: {exc}") from exc

    raw_places = _parse_extraction_response(response_text)

    canonicalize = CategoryCanonicalizer()
    places: list[Place] = []
    for raw in raw_places:
        place = _build_place(raw, canonicalize)
        if place is not None:
            places.append(place)

    if not places:
        raise ExtractionError("No places found in document")

    logger.info(
        "Extracted %d places across %d categories",
        len(places), len(canonicalize.categories),
    )
    return places


async def generate_summary(
    completion: CompletionClient,
    location_context: str,
    places: list[Place],
    categories: list[str],
) -> str:
    """One-paragraph overview of the catalog. Never raises."""
    fallback = f"Guide to {len(places)} places in {location_context}."
    prompt = build_summary_prompt(
        location_context,
        categories,
        [(p.name, p.type) for p in places],
    )
    try:
        text = await completion.complete(
            SUMMARY_SYSTEM_PROMPT, prompt, max_tokens=300, context="summary",
            prompt_version=SUMMARY_PROMPT_VERSION,
        )
    except (asyncio.TimeoutError, anthropic.APIError, CompletionTruncatedError) as exc:
        logger.warning("Summary generation failed, using fallback: %s", exc)
        return fallback
    return text.strip() or fallback
