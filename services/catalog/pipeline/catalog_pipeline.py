"""
Document -> place catalog pipeline.

Flow:
  1. SEGMENTING  -- fetch the guide, split it on headings, load the stored catalog
  2. EXTRACTING  -- completion model pulls out every place; ids assigned
  3. ENRICHING   -- Places lookup per place, unless the stored copy is fresh
  4. TAGGING     -- search tags + hours summary per place
  5. PERSISTING  -- back up the stored catalog, write the new one, write a snapshot

State machine:
  IDLE -> SEGMENTING -> EXTRACTING -> ENRICHING -> TAGGING -> PERSISTING -> COMPLETED
  any phase -> FAILED (error re-raised with .phase set)

Per-place failures in ENRICHING/TAGGING are recorded on the place and never
abort the run. Phase-level failures always abort; there is no partially
persisted catalog.

Usage:
    python -m services.catalog.pipeline.catalog_pipeline parse <doc-id>
    python -m services.catalog.pipeline.catalog_pipeline parse --local-file guide.md
    python -m services.catalog.pipeline.catalog_pipeline stats
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

import httpx

from services.catalog.config import Settings, resolve_service_account_info, settings
from services.catalog.pipeline.catalog_store import CatalogStore, build_store
from services.catalog.pipeline.completion import AnthropicCompletion, CompletionClient
from services.catalog.pipeline.document_source import (
    DocumentSource,
    GoogleDocsSource,
    LocalDocumentSource,
    SourceDocument,
)
from services.catalog.pipeline.errors import (
    CatalogPipelineError,
    EnrichmentError,
    PersistenceError,
    SourceUnavailableError,
)
from services.catalog.pipeline.extractor import extract_places, generate_summary
from services.catalog.pipeline.identity import assign_ids
from services.catalog.pipeline.places_enrichment import (
    EnrichmentCache,
    PlacesEnrichmentClient,
    PlacesLookupAPI,
    Throttle,
)
from services.catalog.pipeline.prompts import EXTRACT_PROMPT_VERSION, TAGS_PROMPT_VERSION
from services.catalog.pipeline.schema import (
    Catalog,
    CatalogMetadata,
    EnrichmentStats,
    EnrichmentStatus,
    Place,
    places_from_catalog,
    validate_catalog,
)
from services.catalog.pipeline.tagging import TagSynthesizer, fallback_tags

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# States, decisions, events
# ---------------------------------------------------------------------------

class PipelineState(str, Enum):
    IDLE = "idle"
    SEGMENTING = "segmenting"
    EXTRACTING = "extracting"
    ENRICHING = "enriching"
    TAGGING = "tagging"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    FAILED = "failed"


class SkipDecision(str, Enum):
    """Per-place enrichment decision, computed once before the ENRICHING loop."""
    NEW = "new"                      # no stored copy with this id
    UNENRICHED = "unenriched"        # stored copy exists but was never enriched
    FRESH = "fresh"                  # stored copy enriched at the current version
    STALE_VERSION = "stale_version"  # stored copy enriched at another version
    FORCED = "forced"                # full refresh requested

    @property
    def carries_forward(self) -> bool:
        return self is SkipDecision.FRESH


def decide_skip(prior: Optional[Place], enrichment_version: str, full_refresh: bool) -> SkipDecision:
    if full_refresh:
        return SkipDecision.FORCED
    if prior is None:
        return SkipDecision.NEW
    if not prior.is_enriched:
        return SkipDecision.UNENRICHED
    if prior.enrichmentStatus.enrichmentVersion != enrichment_version:
        return SkipDecision.STALE_VERSION
    return SkipDecision.FRESH


@dataclass
class ProgressEvent:
    phase: str
    message: str
    timestamp: str


@dataclass
class RunStats:
    """Run-scoped counters. Logged and attached to the final event, not persisted."""
    document_id: str = ""
    sections: int = 0
    places_extracted: int = 0
    decisions: dict[str, int] = field(default_factory=dict)
    enrichment_calls: int = 0
    enriched: int = 0
    not_found: int = 0
    enrichment_errors: int = 0
    search_calls: int = 0
    detail_calls: int = 0
    cache_hits: int = 0
    tag_calls: int = 0
    tag_fallbacks: int = 0
    backup_key: Optional[str] = None
    snapshot_key: Optional[str] = None
    latency_seconds: float = 0.0
    errors: list[str] = field(default_factory=list)

    @property
    def enrichment_success_rate(self) -> Optional[float]:
        if not self.enrichment_calls:
            return None
        return self.enriched / self.enrichment_calls


ProgressCallback = Callable[[ProgressEvent], None]


def _reason_key(reason: Optional[str]) -> str:
    if not reason:
        return "unknown"
    return reason.split(":", 1)[0].strip() or "unknown"


def compute_enrichment_stats(places: list[Place]) -> EnrichmentStats:
    """Catalog-level stats. Derived only from the places so reruns agree."""
    enriched = sum(1 for p in places if p.is_enriched)
    reasons = Counter(
        _reason_key(p.enrichmentStatus.reason if p.enrichmentStatus else None)
        for p in places if not p.is_enriched
    )
    return EnrichmentStats(
        totalPlaces=len(places),
        enrichedPlaces=enriched,
        skippedPlaces=len(places) - enriched,
        failureReasons=dict(sorted(reasons.items())),
    )


def _distinct_categories(places: list[Place]) -> list[str]:
    seen: dict[str, None] = {}
    for p in places:
        seen.setdefault(p.category, None)
    return list(seen)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class CatalogPipeline:
    def __init__(
        self,
        source: DocumentSource,
        store: CatalogStore,
        extraction_completion: CompletionClient,
        tag_synthesizer: TagSynthesizer,
        lookup: Optional[PlacesLookupAPI],
        catalog_key: str,
        location_context: str,
        enrichment_version: str,
        parser_version: str = "1.0.0",
        extraction_max_tokens: Optional[int] = None,
        max_results: int = 5,
        request_delay_s: float = 1.0,
        min_enrichment_success_rate: float = 0.0,
        summary_completion: Optional[CompletionClient] = None,
        on_progress: Optional[ProgressCallback] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.source = source
        self.store = store
        self.extraction_completion = extraction_completion
        self.tag_synthesizer = tag_synthesizer
        self.lookup = lookup
        self.catalog_key = catalog_key
        self.location_context = location_context
        self.enrichment_version = enrichment_version
        self.parser_version = parser_version
        self.extraction_max_tokens = extraction_max_tokens
        self.max_results = max_results
        self.request_delay_s = request_delay_s
        self.min_enrichment_success_rate = min_enrichment_success_rate
        self.summary_completion = summary_completion
        self.on_progress = on_progress
        self._sleep = sleep

        self.state = PipelineState.IDLE
        self.events: list[ProgressEvent] = []
        self.stats = RunStats()
        self._prior_unreadable = False

    # -- progress -----------------------------------------------------------

    def _emit(self, message: str) -> None:
        event = ProgressEvent(phase=self.state.value, message=message, timestamp=_now())
        self.events.append(event)
        logger.info("[%s] %s", event.phase, message)
        if self.on_progress is not None:
            try:
                self.on_progress(event)
            except Exception as exc:
                logger.warning("Progress callback raised: %s", exc)

    def _transition(self, state: PipelineState, message: str) -> None:
        self.state = state
        self._emit(message)

    # -- phases -------------------------------------------------------------

    async def _fetch(self, document_id: str) -> SourceDocument:
        document = await self.source.fetch_document(document_id)
        if not document.content or not document.content.strip():
            raise SourceUnavailableError(f"document {document_id} is empty")
        return document

    async def _load_prior(self) -> Optional[dict[str, Any]]:
        try:
            data = await self.store.download(self.catalog_key)
        except PersistenceError as exc:
            logger.warning("Could not load stored catalog, treating all places as new: %s", exc)
            self._prior_unreadable = True
            return None
        if data is None:
            logger.info("No stored catalog at %s", self.catalog_key)
        return data

    def _new_enrichment_client(self) -> Optional[PlacesEnrichmentClient]:
        if self.lookup is None:
            return None
        return PlacesEnrichmentClient(
            self.lookup,
            location_context=self.location_context,
            enrichment_version=self.enrichment_version,
            cache=EnrichmentCache(),
            throttle=Throttle(self.request_delay_s, sleep=self._sleep),
            max_results=self.max_results,
        )

    def _mark_unenriched(self, place: Place, reason: str) -> Place:
        return place.model_copy(update={
            "enrichmentStatus": EnrichmentStatus(
                enriched=False,
                enrichedAt=_now(),
                enrichmentVersion=self.enrichment_version,
                reason=reason,
            ),
        })

    async def _enrich_all(
        self,
        places: list[Place],
        prior_by_id: dict[str, Place],
        full_refresh: bool,
    ) -> tuple[list[Place], set[str]]:
        """Returns (places, ids carried forward unchanged)."""
        client = self._new_enrichment_client()
        stats = self.stats
        decisions: Counter[str] = Counter()
        carried: set[str] = set()
        out: list[Place] = []

        for i, place in enumerate(places, 1):
            decision = decide_skip(prior_by_id.get(place.id), self.enrichment_version, full_refresh)
            decisions[decision.value] += 1

            if decision.carries_forward:
                out.append(prior_by_id[place.id])
                carried.add(place.id)
                self._emit(f"({i}/{len(places)}) {place.name}: up to date, skipped")
                continue

            if client is None:
                out.append(self._mark_unenriched(place, "enrichment disabled"))
                continue

            stats.enrichment_calls += 1
            try:
                enriched = await client.enrich(place)
            except EnrichmentError as exc:
                stats.enrichment_errors += 1
                stats.errors.append(str(exc))
                logger.warning("Enrichment failed for %s: %s", place.name, exc)
                enriched = self._mark_unenriched(place, f"error: {exc}")
            except Exception as exc:
                stats.enrichment_errors += 1
                stats.errors.append(f"{place.name}: {exc}")
                logger.exception("Unexpected enrichment failure for %s", place.name)
                enriched = self._mark_unenriched(place, f"error: {exc}")

            if enriched.is_enriched:
                stats.enriched += 1
            elif enriched.enrichmentStatus and enriched.enrichmentStatus.reason == "no results":
                stats.not_found += 1
            out.append(enriched)
            self._emit(
                f"({i}/{len(places)}) {place.name}: {decision.value}, "
                f"{'enriched' if enriched.is_enriched else enriched.enrichmentStatus.reason}"
            )

        stats.decisions = dict(decisions)
        if client is not None:
            stats.search_calls = client.search_calls
            stats.detail_calls = client.detail_calls
            stats.cache_hits = client.cache_hits
        return out, carried

    def _check_success_rate(self) -> None:
        rate = self.stats.enrichment_success_rate
        if rate is None:
            return
        if rate < 0.5:
            logger.warning(
                "Low enrichment success rate: %d/%d places enriched",
                self.stats.enriched, self.stats.enrichment_calls,
            )
        if self.min_enrichment_success_rate and rate < self.min_enrichment_success_rate:
            raise EnrichmentError(
                f"enrichment success rate {rate:.0%} below required "
                f"{self.min_enrichment_success_rate:.0%}"
            )

    async def _tag_all(self, places: list[Place], carried: set[str]) -> list[Place]:
        out: list[Place] = []
        for place in places:
            if place.id in carried and place.tags:
                out.append(place)
                continue
            try:
                result = await self.tag_synthesizer.synthesize(place)
            except Exception as exc:
                logger.exception("Tag synthesis raised for %s", place.name)
                self.stats.errors.append(f"{place.name}: tags: {exc}")
                out.append(place.model_copy(update={"tags": fallback_tags(place)}))
                self.stats.tag_fallbacks += 1
                continue

            self.stats.tag_calls += 1
            if result.used_fallback:
                self.stats.tag_fallbacks += 1
            update: dict[str, Any] = {"tags": result.tags}
            # Carried-forward places only gain tags
            if place.id not in carried and result.hours is not None:
                update["hours"] = result.hours
            out.append(place.model_copy(update=update))
        self._emit(f"Tagged {len(places)} places ({self.stats.tag_fallbacks} fallbacks)")
        return out

    async def _summary(
        self,
        places: list[Place],
        categories: list[str],
        prior: Optional[dict[str, Any]],
        carried: set[str],
    ) -> Optional[str]:
        prior_summary = ((prior or {}).get("metadata") or {}).get("summary")
        if prior_summary and len(carried) == len(places):
            return prior_summary
        if self.summary_completion is None:
            return prior_summary
        return await generate_summary(self.summary_completion, self.location_context, places, categories)

    async def _backup_existing(self) -> Optional[str]:
        if not self._prior_unreadable:
            try:
                existing = await self.store.download(self.catalog_key)
            except PersistenceError as exc:
                logger.warning("Stored catalog unreadable at backup time, copying it raw: %s", exc)
            else:
                if existing is None:
                    return None
                return await self.store.create_backup(existing, self.catalog_key)
        return await self.store.copy_to_backup(self.catalog_key)

    async def _persist(self, catalog: Catalog) -> None:
        data = catalog.to_dict()
        if await self.store.exists(self.catalog_key):
            self.stats.backup_key = await self._backup_existing()
        await self.store.upload(data, self.catalog_key)
        self.stats.snapshot_key = await self.store.write_snapshot(data, self.catalog_key)

    # -- entry point --------------------------------------------------------

    async def run(self, document_id: str, full_refresh: bool = False) -> Catalog:
        """
        Run every phase for one document and return the persisted catalog.

        Raises a CatalogPipelineError subclass with .phase set on any
        phase-level failure.
        """
        t0 = time.monotonic()
        self.state = PipelineState.IDLE
        self.events = []
        self.stats = RunStats(document_id=document_id)
        self._prior_unreadable = False

        try:
            self._transition(PipelineState.SEGMENTING, f"Fetching document {document_id}")
            document = await self._fetch(document_id)
            self.stats.sections = len(document.sections)
            self._emit(f"Document {document.title!r}: {len(document.sections)} sections")

            prior = await self._load_prior()
            prior_places, prior_errors = places_from_catalog(prior)
            for err in prior_errors:
                logger.warning("Stored catalog entry ignored: %s", err)
            prior_by_id = {p.id: p for p in prior_places if p.id}

            self._transition(PipelineState.EXTRACTING, "Extracting places")
            places = await extract_places(
                document.sections,
                self.location_context,
                self.extraction_completion,
                max_tokens=self.extraction_max_tokens,
            )
            assign_ids(places)
            self.stats.places_extracted = len(places)
            self._emit(f"Extracted {len(places)} places")

            self._transition(
                PipelineState.ENRICHING,
                f"Enriching {len(places)} places" + (" (full refresh)" if full_refresh else ""),
            )
            places, carried = await self._enrich_all(places, prior_by_id, full_refresh)
            self._check_success_rate()

            self._transition(PipelineState.TAGGING, "Synthesizing tags")
            places = await self._tag_all(places, carried)

            self._transition(PipelineState.PERSISTING, f"Saving catalog to {self.catalog_key}")
            categories = _distinct_categories(places)
            metadata = CatalogMetadata(
                generatedAt=_now(),
                sourceDocId=document.document_id,
                sourceDocTitle=document.title,
                revisionId=document.revision_id,
                totalPlaces=len(places),
                categories=categories,
                enrichmentStats=compute_enrichment_stats(places),
                parserVersion=self.parser_version,
                enrichmentVersion=self.enrichment_version,
                locationContext=self.location_context,
                summary=await self._summary(places, categories, prior, carried),
            )
            catalog = Catalog(metadata=metadata, places=places)

            validation_errors = validate_catalog(catalog)
            if validation_errors:
                logger.warning(
                    "Catalog has %d validation issue(s), saving anyway: %s",
                    len(validation_errors), validation_errors[:10],
                )

            await self._persist(catalog)
        except CatalogPipelineError as exc:
            if exc.phase is None:
                exc.phase = self.state.value
            self._fail(exc)
            raise
        except Exception as exc:
            phase = self.state.value
            self._fail(exc)
            raise CatalogPipelineError(f"unexpected error: {exc}", phase=phase) from exc

        self.stats.latency_seconds = time.monotonic() - t0
        stats = metadata.enrichmentStats
        self._transition(
            PipelineState.COMPLETED,
            f"Saved {stats.totalPlaces} places ({stats.enrichedPlaces} enriched, "
            f"{stats.skippedPlaces} not enriched, {len(carried)} carried forward)",
        )
        logger.info("Run stats: %s", self.stats)
        return catalog

    def _fail(self, exc: BaseException) -> None:
        failed_in = self.state.value
        self.stats.errors.append(str(exc))
        self.state = PipelineState.FAILED
        self._emit(f"Failed during {failed_in}: {exc}")


# ---------------------------------------------------------------------------
# Read-back
# ---------------------------------------------------------------------------

async def get_catalog_stats(store: CatalogStore, key: str) -> dict[str, Any]:
    """Summary of the stored catalog for status displays."""
    data = await store.download(key)
    if data is None:
        return {"exists": False, "message": "No catalog has been generated yet"}
    metadata = data.get("metadata") or {}
    return {
        "exists": True,
        "lastParsed": metadata.get("generatedAt"),
        "totalPlaces": metadata.get("totalPlaces", len(data.get("places") or [])),
        "sourceDocId": metadata.get("sourceDocId"),
        "sourceDocTitle": metadata.get("sourceDocTitle"),
        "parserVersion": metadata.get("parserVersion"),
        "enrichmentVersion": metadata.get("enrichmentVersion"),
        "categories": metadata.get("categories", []),
        "enrichmentStats": metadata.get("enrichmentStats", {}),
    }


# ---------------------------------------------------------------------------
# Wiring from settings
# ---------------------------------------------------------------------------

def build_store_from_settings(cfg: Settings = settings) -> CatalogStore:
    credentials = resolve_service_account_info(cfg) if cfg.catalog_backend == "gcs" else None
    return build_store(
        cfg.catalog_backend,
        bucket_name=cfg.catalog_bucket,
        project_id=cfg.gcs_project_id,
        local_dir=cfg.local_output_dir,
        credentials_info=credentials,
    )


async def run_pipeline(
    document_id: str,
    full_refresh: bool = False,
    local_file: Optional[str] = None,
    cfg: Settings = settings,
    on_progress: Optional[ProgressCallback] = None,
) -> Catalog:
    """Build every collaborator from settings and run once."""
    extraction = AnthropicCompletion(
        model=cfg.extraction_model,
        max_tokens=cfg.extraction_max_tokens,
        timeout_s=cfg.extraction_timeout_s,
        prompt_version=EXTRACT_PROMPT_VERSION,
        temperature=cfg.llm_temperature,
        api_key=cfg.anthropic_api_key,
    )
    tagging = AnthropicCompletion(
        model=cfg.tagging_model,
        max_tokens=cfg.tagging_max_tokens,
        timeout_s=cfg.tagging_timeout_s,
        prompt_version=TAGS_PROMPT_VERSION,
        temperature=cfg.llm_temperature,
        api_key=cfg.anthropic_api_key,
    )

    async with httpx.AsyncClient() as client:
        source: DocumentSource
        if local_file:
            source = LocalDocumentSource(path=local_file)
        else:
            source = GoogleDocsSource(
                client,
                credentials_info=resolve_service_account_info(cfg),
                timeout_s=cfg.docs_timeout_s,
            )

        lookup = None
        if cfg.google_places_api_key:
            lookup = PlacesLookupAPI(client, cfg.google_places_api_key, timeout_s=cfg.places_timeout_s)
        else:
            logger.warning("No Google Places API key -- places will not be enriched")

        pipeline = CatalogPipeline(
            source=source,
            store=build_store_from_settings(cfg),
            extraction_completion=extraction,
            tag_synthesizer=TagSynthesizer(tagging),
            lookup=lookup,
            catalog_key=cfg.catalog_key,
            location_context=cfg.location_context,
            enrichment_version=cfg.enrichment_version,
            parser_version=cfg.parser_version,
            extraction_max_tokens=cfg.extraction_max_tokens,
            max_results=cfg.places_max_results,
            request_delay_s=cfg.places_request_delay_s,
            min_enrichment_success_rate=cfg.min_enrichment_success_rate,
            summary_completion=tagging,
            on_progress=on_progress,
        )
        catalog = await pipeline.run(document_id, full_refresh=full_refresh)

    logger.info(
        "LLM usage: %d calls, %d input / %d output tokens, ~$%.4f",
        extraction.calls + tagging.calls,
        extraction.total_input_tokens + tagging.total_input_tokens,
        extraction.total_output_tokens + tagging.total_output_tokens,
        extraction.estimated_cost_usd + tagging.estimated_cost_usd,
    )
    return catalog


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """CLI entry point for the catalog pipeline."""
    import argparse
    import json
    import sys

    import sentry_sdk

    from services.catalog.monitoring import setup_sentry

    parser = argparse.ArgumentParser(description="Build the place catalog from the guide document")
    parser.add_argument("--verbose", "-v", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    parse_cmd = sub.add_parser("parse", help="Run the full pipeline")
    parse_cmd.add_argument("document_id", nargs="?", default=settings.source_document_id)
    parse_cmd.add_argument("--full-refresh", action="store_true", help="Re-enrich every place")
    parse_cmd.add_argument("--local-file", help="Read the guide from a markdown file instead of Google Docs")

    sub.add_parser("stats", help="Show stats for the stored catalog")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    setup_sentry()

    if args.command == "stats":
        stats = await get_catalog_stats(build_store_from_settings(), settings.catalog_key)
        print(json.dumps(stats, indent=2))
        return

    if not args.document_id and not args.local_file:
        logger.error("No document id given and SOURCE_DOCUMENT_ID not set")
        sys.exit(1)

    try:
        catalog = await run_pipeline(
            args.document_id or "",
            full_refresh=args.full_refresh,
            local_file=args.local_file,
        )
    except CatalogPipelineError as exc:
        sentry_sdk.capture_exception(exc)
        logger.error("Pipeline failed in %s: %s", exc.phase, exc)
        sys.exit(1)

    stats = catalog.metadata.enrichmentStats
    logger.info(
        "Completed: %d places, %d enriched, %d not enriched",
        stats.totalPlaces, stats.enrichedPlaces, stats.skippedPlaces,
    )


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
