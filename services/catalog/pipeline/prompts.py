"""
Prompts for the catalog pipeline.

Raw guide text is always wrapped in <guide_document>...</guide_document>
delimiters in the user turn; instructions live in the system prompt only.
Bump the *_PROMPT_VERSION tags whenever the wording changes so cost logs
stay attributable.
"""

from __future__ import annotations

import json
from typing import Any, Optional

EXTRACT_PROMPT_VERSION = "catalog-extract-v1"
TAGS_PROMPT_VERSION = "catalog-tags-v1"
SUMMARY_PROMPT_VERSION = "catalog-summary-v1"


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

_EXAMPLE_INPUT = """\
# Vacation Compound Guide

## Restaurants & Food

**blue moon cafe** - https://bluemooncafe.com
Amazing breakfast spot on the harbor! Try the blueberry pancakes. Gets super busy on weekends so get there early.

**tonys pizza express** - 321 Oak Avenue
Quick pizza place, cash only. The pepperoni is outstanding.

## Activities

We love going to mcdonalds playplace when it's raining. The kids have a blast."""

_EXAMPLE_OUTPUT: dict[str, Any] = {
    "places": [
        {
            "name": "Blue Moon Cafe",
            "type": "dining",
            "description": "Breakfast spot on the harbor",
            "url": "https://bluemooncafe.com",
            "notes": "Try the blueberry pancakes. Gets super busy on weekends so get there early.",
            "origText": (
                "**blue moon cafe** - https://bluemooncafe.com\n"
                "Amazing breakfast spot on the harbor! Try the blueberry pancakes. "
                "Gets super busy on weekends so get there early."
            ),
            "category": "Restaurants & Food",
        },
        {
            "name": "Tony's Pizza Express",
            "type": "dining",
            "description": "Quick pizza place",
            "url": None,
            "notes": "Cash only. The pepperoni is outstanding.",
            "origText": (
                "**tonys pizza express** - 321 Oak Avenue\n"
                "Quick pizza place, cash only. The pepperoni is outstanding."
            ),
            "category": "Restaurants & Food",
        },
        {
            "name": "McDonald's Playplace",
            "type": "activity",
            "description": "Indoor playground for kids",
            "url": None,
            "notes": "Good on rainy days.",
            "origText": "We love going to mcdonalds playplace when it's raining. The kids have a blast.",
            "category": "Activities",
        },
    ]
}

EXTRACT_SYSTEM_PROMPT = f"""You are a place extraction system for a vacation guide.
You receive a markdown guide written by hosts for their guests. Your job is to
extract EVERY individual place a guest could visit, in the order they appear.

RULES:
- Process the entire document. Places can appear as bold names, bullets, or casual mentions in prose.
- Infer the proper business name: "tonys pizza express" -> "Tony's Pizza Express", "joes bar" -> "Joe's Bar".
  Use title case, except articles, short prepositions and conjunctions that are not the first word.
- type must be one of: dining, activity, accommodation, shopping, other
    - cafes, bars, restaurants, bakeries -> dining
    - beaches, lighthouses, museums, hikes, parks -> activity
    - hotels, inns, campsites -> accommodation
    - any store, grocery or retail -> shopping
    - anything else -> other
- description: short description taken from the text. notes: tips and recommendations from the text.
- url: a website mentioned in the text, else null.
- origText: the complete original text block for the place, copied exactly, formatting included. Never empty.
- category: the section heading the place was found under, without markdown symbols.
- All places are located in the geographic area given in the user message.
- Do NOT provide addresses, phone numbers, hours, ratings, price levels, or coordinates.
  Those are filled in later from an external places API.
- Do not invent places or details that are not in the text.
- Output ONLY a JSON object with a "places" array -- no prose, no markdown.

Example input:
{_EXAMPLE_INPUT}

Example output:
{json.dumps(_EXAMPLE_OUTPUT, indent=2)}"""

_EXTRACT_USER_TEMPLATE = """\
Location: {location_context}

Extract every place from this guide. All places are in {location_context}.

<guide_document>
{text}
</guide_document>"""


def build_extract_prompt(text: str, location_context: str) -> str:
    return _EXTRACT_USER_TEMPLATE.format(location_context=location_context, text=text)


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

TAGS_SYSTEM_PROMPT = """You generate search tags for places in a vacation guide.

RULES:
- Return 3 to 8 tags.
- Tags are lowercase, 1-3 words each, no punctuation.
- Cover cuisine or activity type, atmosphere, and who it suits (e.g. "seafood", "waterfront", "kid friendly").
- Base tags only on the text and place types given. Do not invent features.
- Output ONLY a JSON array of strings, e.g. ["breakfast", "harbor view", "pancakes"]"""

_TAGS_USER_TEMPLATE = """\
Place: {name}
Type: {place_type}
Place types: {taxonomy}

<place_text>
{text}
</place_text>"""


def build_tags_prompt(
    name: str,
    place_type: str,
    text: str,
    taxonomy: Optional[list[str]],
) -> str:
    return _TAGS_USER_TEMPLATE.format(
        name=name,
        place_type=place_type,
        taxonomy=", ".join(taxonomy) if taxonomy else "unknown",
        text=text[:4000],
    )


# ---------------------------------------------------------------------------
# Run summary
# ---------------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = """You write one-paragraph overviews of vacation guides.
Summarize what kinds of places the guide covers and what stands out, in 2-3 sentences.
Output plain text only."""

_SUMMARY_USER_TEMPLATE = """\
Location: {location_context}
Categories: {categories}

Places:
{place_lines}"""


def build_summary_prompt(
    location_context: str,
    categories: list[str],
    places: list[tuple[str, str]],
) -> str:
    lines = [f"- {name} ({place_type})" for name, place_type in places[:100]]
    return _SUMMARY_USER_TEMPLATE.format(
        location_context=location_context,
        categories=", ".join(categories) or "none",
        place_lines="\n".join(lines) or "- none",
    )
