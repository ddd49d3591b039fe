"""
Split a guide document into heading-delimited sections.

A line of one to six `#` characters followed by whitespace and a title opens
a new section; every other line belongs to the most recent heading. Text
before the first heading forms an anonymous section (category None, level 0).

segment_document never raises. Whatever it is given, the caller gets back at
least one section covering the text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

_HEADING_RE = re.compile(r"^\s{0,3}(#{1,6})\s+(.*?)(?:\s+#+)?\s*$")


@dataclass
class Section:
    category: Optional[str]
    heading_level: int
    body_text: str


def _parse_heading(line: str) -> Optional[tuple[int, str]]:
    m = _HEADING_RE.match(line)
    if not m:
        return None
    title = m.group(2).strip()
    if not title:
        return None
    return len(m.group(1)), title


def _segment(text: str) -> list[Section]:
    sections: list[Section] = []
    category: Optional[str] = None
    level = 0
    body: list[str] = []

    def _flush() -> None:
        body_text = "\n".join(body).strip("\n")
        if category is None and not body_text.strip():
            return
        sections.append(Section(category=category, heading_level=level, body_text=body_text))

    for line in text.splitlines():
        heading = _parse_heading(line)
        if heading is None:
            body.append(line)
            continue
        _flush()
        level, category = heading
        body = []
    _flush()
    return sections


def segment_document(text: Optional[str]) -> list[Section]:
    """Split text into sections. Total: never raises, never returns []."""
    text = text or ""
    try:
        sections = _segment(text)
    except Exception as exc:  # segmenter must be total
        logger.warning("Segmentation failed, using whole document as one section: %s", exc)
        sections = []
    if not sections:
        return [Section(category=None, heading_level=0, body_text=text)]
    return sections


def render_sections(sections: list[Section]) -> str:
    """Re-join sections into the markdown text sent to the extractor."""
    parts: list[str] = []
    for section in sections:
        if section.category is not None:
            parts.append(f"{'#' * max(section.heading_level, 1)} {section.category}")
        if section.body_text:
            parts.append(section.body_text)
        parts.append("")
    return "\n".join(parts).strip() + "\n"
