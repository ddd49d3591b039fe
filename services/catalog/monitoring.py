"""
Sentry instrumentation for the catalog job.
Strips API keys and credential blobs before events leave the process.
"""

from typing import Any

import sentry_sdk

from services.catalog.config import settings

SENSITIVE_KEYS = {
    "x-api-key",
    "x-goog-api-key",
    "authorization",
    "anthropic_api_key",
    "google_places_api_key",
    "google_service_account_json",
    "google_service_account_b64",
}


def _scrub(mapping: Any) -> None:
    if not isinstance(mapping, dict):
        return
    for key in list(mapping.keys()):
        if str(key).lower() in SENSITIVE_KEYS:
            mapping[key] = "[FILTERED]"
        else:
            _scrub(mapping[key])


def _strip_sensitive_data(event: dict[str, Any], hint: dict[str, Any]) -> dict[str, Any] | None:
    """before_send hook: strip API keys from breadcrumbs, request data and extras."""
    if "breadcrumbs" in event:
        for breadcrumb in event["breadcrumbs"].get("values", []):
            _scrub(breadcrumb.get("data", {}))
    _scrub(event.get("request", {}))
    _scrub(event.get("extra", {}))
    return event


def setup_sentry() -> bool:
    """Initialise Sentry when a DSN is configured. Returns whether it did."""
    if not settings.sentry_dsn:
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"{settings.app_name}@{settings.app_version}",
        traces_sample_rate=settings.sentry_traces_sample_rate,
        before_send=_strip_sensitive_data,
        send_default_pii=False,
    )
    return True
