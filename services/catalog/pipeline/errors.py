"""
Error taxonomy for the catalog pipeline.

Fatal errors (source, extraction, persistence) abort the run and carry the
phase that failed. Enrichment and tag synthesis errors are per place and are
recorded on the entity instead of propagating.
"""

from __future__ import annotations

from typing import Optional


class CatalogPipelineError(Exception):
    """Base class. `phase` names the pipeline state the failure happened in."""

    def __init__(self, message: str, phase: Optional[str] = None):
        super().__init__(message)
        self.phase = phase

    def __str__(self) -> str:
        msg = super().__str__()
        if self.phase:
            return f"[{self.phase}] {msg}"
        return msg


class SourceUnavailableError(CatalogPipelineError):
    """The source document could not be fetched or was empty."""


class ExtractionError(CatalogPipelineError):
    """The model response was unusable: unparseable, truncated, or empty."""


class EnrichmentError(CatalogPipelineError):
    """External lookup failed for one place."""


class TagSynthesisError(CatalogPipelineError):
    """Tag generation failed for one place. Fallback tags are used instead."""


class CatalogValidationError(CatalogPipelineError):
    """Advisory schema violations. Logged, never raised by the orchestrator."""

    def __init__(self, errors: list[str], phase: Optional[str] = None):
        super().__init__(f"{len(errors)} validation error(s)", phase)
        self.errors = errors


class PersistenceError(CatalogPipelineError):
    """A catalog, backup, or snapshot write failed."""
