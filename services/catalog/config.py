"""
Application configuration via pydantic-settings.
All config read from environment variables with sensible defaults for local dev.

Credentials for the document source and the storage bucket can arrive in
several shapes depending on where the job runs (raw JSON in an env var,
base64 JSON for platforms that mangle newlines, or a key file on disk).
`resolve_service_account_info` walks those in a fixed order and returns the
first one that produces something usable.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    # App
    app_name: str = "place-catalog"
    app_version: str = "0.1.0"
    environment: str = Field(default="development", pattern=r"^(development|staging|production)$")

    # Sentry
    sentry_dsn: str = ""
    sentry_traces_sample_rate: float = Field(default=0.0, ge=0.0, le=1.0)

    # Anthropic
    anthropic_api_key: str = ""
    extraction_model: str = "claude-sonnet-4-6"
    extraction_max_tokens: int = Field(default=16_000, ge=1024)
    extraction_timeout_s: float = 180.0
    tagging_model: str = "claude-haiku-4-5-20251001"
    tagging_max_tokens: int = 512
    tagging_timeout_s: float = 20.0
    llm_temperature: float = Field(default=0.1, ge=0.0, le=1.0)

    # Google Places
    google_places_api_key: str = ""
    places_max_results: int = Field(default=5, ge=1, le=20)
    places_timeout_s: float = 10.0
    places_request_delay_s: float = Field(default=1.0, ge=0.0)

    # Location context the guide is written about
    location_context: str = "Maine, United States"

    # Versions written into every catalog
    parser_version: str = "1.0.0"
    enrichment_version: str = "2.0.0"

    # Fail the run when fewer than this share of attempted places enrich.
    # 0.0 disables the check.
    min_enrichment_success_rate: float = Field(default=0.0, ge=0.0, le=1.0)

    # Document source
    source_document_id: str = ""
    docs_timeout_s: float = 30.0

    # Storage
    catalog_backend: str = Field(default="gcs", pattern=r"^(gcs|local)$")
    gcs_project_id: str = ""
    catalog_bucket: str = "compound-places-storage"
    catalog_key: str = "compound-places.json"
    local_output_dir: str = "./output"

    # Credentials (see resolve_service_account_info)
    google_service_account_json: str = ""
    google_service_account_b64: str = ""
    google_application_credentials: str = ""

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}


settings = Settings()


# ---------------------------------------------------------------------------
# Credential resolution
# ---------------------------------------------------------------------------

CredentialResolver = Callable[[], Optional[dict[str, Any]]]


def _from_json_env(value: str) -> CredentialResolver:
    def _resolve() -> Optional[dict[str, Any]]:
        if not value:
            return None
        return json.loads(value)
    return _resolve


def _from_base64_env(value: str) -> CredentialResolver:
    def _resolve() -> Optional[dict[str, Any]]:
        if not value:
            return None
        return json.loads(base64.b64decode(value).decode("utf-8"))
    return _resolve


def _from_key_file(path: str) -> CredentialResolver:
    def _resolve() -> Optional[dict[str, Any]]:
        if not path or not os.path.exists(path):
            return None
        return json.loads(Path(path).read_text(encoding="utf-8"))
    return _resolve


def resolve_first(resolvers: list[tuple[str, CredentialResolver]]) -> Optional[dict[str, Any]]:
    """
    Return the first non-empty result from an ordered list of named resolvers.

    A resolver that raises (bad JSON, bad base64, unreadable file) is logged
    and skipped so a stale env var does not mask a valid key file.
    """
    for name, resolver in resolvers:
        try:
            info = resolver()
        except (ValueError, OSError) as exc:
            logger.warning("Credential source %s unusable: %s", name, exc)
            continue
        if info:
            logger.debug("Using credentials from %s", name)
            return info
    return None


def resolve_service_account_info(cfg: Optional[Settings] = None) -> Optional[dict[str, Any]]:
    """
    Resolve service-account JSON from settings.

    Returns None when nothing is configured; callers then fall back to
    Application Default Credentials.
    """
    cfg = cfg or settings
    return resolve_first([
        ("GOOGLE_SERVICE_ACCOUNT_JSON", _from_json_env(cfg.google_service_account_json)),
        ("GOOGLE_SERVICE_ACCOUNT_B64", _from_base64_env(cfg.google_service_account_b64)),
        ("GOOGLE_APPLICATION_CREDENTIALS", _from_key_file(cfg.google_application_credentials)),
    ])
