"""
Search tags and human-readable hours for enriched places.

Tags come from the completion model, combining the guide's own words with the
external place taxonomy. Any failure falls back to deterministic tags built
from the place type and taxonomy, so tagging never blocks a run.

Hours are summarized without a model: the weekday lines returned by the
places API are compressed to "Every day from 8a to 5p" when all seven days
match, else to one short line per day.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Union

import anthropic

from services.catalog.pipeline.completion import CompletionClient, CompletionTruncatedError
from services.catalog.pipeline.errors import TagSynthesisError
from services.catalog.pipeline.prompts import (
    TAGS_PROMPT_VERSION,
    TAGS_SYSTEM_PROMPT,
    build_tags_prompt,
)
from services.catalog.pipeline.schema import Place

logger = logging.getLogger(__name__)

MAX_TAGS = 10
GENERIC_TAXONOMY = frozenset({"point_of_interest", "establishment"})


# ---------------------------------------------------------------------------
# Tag normalization
# ---------------------------------------------------------------------------

def normalize_tag(tag: str) -> str:
    tag = tag.lower().replace("_", " ").replace("-", " ")
    return " ".join(tag.split())


def normalize_tags(tags: list[str], limit: int = MAX_TAGS) -> list[str]:
    """Lowercase, flatten separators, drop empties and duplicates, keep order."""
    seen: set[str] = set()
    out: list[str] = []
    for raw in tags:
        if not isinstance(raw, str):
            continue
        tag = normalize_tag(raw)
        if tag and tag not in seen:
            seen.add(tag)
            out.append(tag)
        if len(out) >= limit:
            break
    return out


def fallback_tags(place: Place) -> list[str]:
    """[type] plus the non-generic taxonomy terms."""
    raw = [place.type or "other"]
    for term in place.placeTaxonomy or []:
        if term not in GENERIC_TAXONOMY:
            raw.append(term)
    return normalize_tags(raw)


def _parse_tags_response(text: str) -> list[str]:
    text = (text or "").strip()
    if text.startswith("```"):
        text = text.strip("`").strip()
        if text.startswith("json"):
            text = text[4:].strip()
    start, end = text.find("["), text.rfind("]")
    if start == -1 or end <= start:
        raise TagSynthesisError(f"no JSON array in tag response: {text[:120]}")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as exc:
        raise TagSynthesisError(f"unparseable tag response: {exc}") from exc
    tags = normalize_tags([t for t in data if isinstance(t, str)])
    if not tags:
        raise TagSynthesisError("tag response contained no usable tags")
    return tags


# ---------------------------------------------------------------------------
# Hours summary
# ---------------------------------------------------------------------------

_DAY_LINE_RE = re.compile(r"^\s*([A-Za-z]+)\s*:\s*(.*?)\s*$")
_RANGE_RE = re.compile(
    r"(\d{1,2})(?::(\d{2}))?\s*([AP]M)?\s*[\u2013\u2014-]\s*(\d{1,2})(?::(\d{2}))?\s*([AP]M)?",
    re.IGNORECASE,
)
_THIN_SPACES = str.maketrans({"\u202f": " ", "\u2009": " ", "\xa0": " "})

CLOSED = "Closed"
OPEN_24H = "Open 24 hours"


def _short_time(hour: str, minute: Optional[str], meridiem: Optional[str]) -> str:
    out = str(int(hour))
    if minute and minute != "00":
        out += f":{minute}"
    if meridiem:
        out += meridiem[0].lower()
    return out


def _summarize_day(day_text: str) -> Optional[str]:
    """Compress one day's hours ("8:00 AM – 5:00 PM") to "8a-5p". None if unrecognized."""
    day_text = day_text.translate(_THIN_SPACES).strip()
    lower = day_text.lower()
    if lower == "closed":
        return CLOSED
    if "open 24 hours" in lower:
        return OPEN_24H

    ranges = _RANGE_RE.findall(day_text)
    if not ranges:
        return None
    parts = []
    for sh, sm, smer, eh, em, emer in ranges:
        # "5:00 – 9:00 PM": the start inherits the end's meridiem
        start = _short_time(sh, sm, smer or emer)
        end = _short_time(eh, em, emer or smer)
        parts.append(f"{start}-{end}")
    return ", ".join(parts)


def summarize_hours(weekday_descriptions: Optional[list[str]]) -> Optional[Union[str, list[str]]]:
    """
    Summarize weekday opening lines.

    Seven identical days -> one sentence, e.g. "Every day from 8a to 5p".
    Otherwise a list such as ["Monday 8a-5p", "Sunday Closed"]. Lines that
    can't be parsed are kept verbatim.
    """
    if not weekday_descriptions:
        return None

    summaries: list[Optional[str]] = []
    lines: list[str] = []
    for raw in weekday_descriptions:
        m = _DAY_LINE_RE.match(raw.translate(_THIN_SPACES))
        if not m:
            summaries.append(None)
            lines.append(raw.strip())
            continue
        day, day_text = m.group(1), m.group(2)
        summary = _summarize_day(day_text)
        summaries.append(summary)
        lines.append(f"{day} {summary}" if summary else raw.strip())

    if len(summaries) == 7 and summaries[0] is not None and len(set(summaries)) == 1:
        only = summaries[0]
        if only == CLOSED:
            return "Closed every day"
        if only == OPEN_24H:
            return "Open 24 hours every day"
        if "," not in only:
            start, end = only.split("-", 1)
            return f"Every day from {start} to {end}"
        return f"Every day {only}"
    return lines


# ---------------------------------------------------------------------------
# Synthesizer
# ---------------------------------------------------------------------------

@dataclass
class TagResult:
    tags: list[str] = field(default_factory=list)
    hours: Optional[Union[str, list[str]]] = None
    used_fallback: bool = False


class TagSynthesizer:
    """Produce tags and an hours summary for one place. synthesize() never raises."""

    def __init__(self, completion: Optional[CompletionClient]):
        self.completion = completion
        self.calls = 0
        self.fallbacks = 0

    async def generate_tags(self, place: Place) -> list[str]:
        """Ask the model for tags. Raises TagSynthesisError on any failure."""
        if self.completion is None:
            raise TagSynthesisError("no completion client configured")
        text = "\n".join(t for t in (place.origText, place.description, place.notes) if t)
        prompt = build_tags_prompt(place.name, place.type, text, place.placeTaxonomy)
        self.calls += 1
        try:
            response = await self.completion.complete(
                TAGS_SYSTEM_PROMPT,
                prompt,
                context=f"tags:{place.id or place.name}",
                prompt_version=TAGS_PROMPT_VERSION,
            )
        except (asyncio.TimeoutError, anthropic.APIError, CompletionTruncatedError) as exc:
            raise TagSynthesisError(f"tag call failed for {place.name!r}: {exc}") from exc
        return _parse_tags_response(response)

    async def synthesize(self, place: Place) -> TagResult:
        hours = summarize_hours(place.rawHours)
        try:
            tags = await self.generate_tags(place)
        except TagSynthesisError as exc:
            self.fallbacks += 1
            logger.warning("Tag synthesis failed for %s, using fallback tags: %s", place.name, exc)
            return TagResult(tags=fallback_tags(place), hours=hours, used_fallback=True)
        return TagResult(tags=tags, hours=hours)
