"""
Tests for services.catalog.config and services.catalog.monitoring

Covers:
- credential resolver ordering and skip-on-bad-source
- Sentry before_send scrubbing
- setup_sentry is a no-op without a DSN
"""

import base64
import json
from unittest.mock import patch

from services.catalog.config import Settings, resolve_first, resolve_service_account_info
from services.catalog.monitoring import _strip_sensitive_data, setup_sentry

INFO = {"type": "service_account", "project_id": "compound", "client_email": "svc@compound.iam"}


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


class TestResolveFirst:
    def test_first_non_empty_wins(self):
        result = resolve_first([
            ("a", lambda: None),
            ("b", lambda: {"from": "b"}),
            ("c", lambda: {"from": "c"}),
        ])
        assert result == {"from": "b"}

    def test_failing_resolver_skipped(self):
        def _bad():
            raise ValueError("bad json")

        assert resolve_first([("bad", _bad), ("good", lambda: {"ok": True})]) == {"ok": True}

    def test_nothing_configured(self):
        assert resolve_first([("a", lambda: None)]) is None


class TestResolveServiceAccountInfo:
    def test_json_env(self):
        cfg = _settings(google_service_account_json=json.dumps(INFO))
        assert resolve_service_account_info(cfg) == INFO

    def test_base64_env(self):
        encoded = base64.b64encode(json.dumps(INFO).encode()).decode()
        cfg = _settings(google_service_account_b64=encoded)
        assert resolve_service_account_info(cfg) == INFO

    def test_key_file(self, tmp_path):
        path = tmp_path / "key.json"
        path.write_text(json.dumps(INFO))
        cfg = _settings(google_application_credentials=str(path))
        assert resolve_service_account_info(cfg) == INFO

    def test_json_env_preferred_over_file(self, tmp_path):
        path = tmp_path / "key.json"
        path.write_text(json.dumps({"project_id": "from-file"}))
        cfg = _settings(
            google_service_account_json=json.dumps(INFO),
            google_application_credentials=str(path),
        )
        assert resolve_service_account_info(cfg)["project_id"] == "compound"

    def test_invalid_json_falls_through_to_base64(self):
        encoded = base64.b64encode(json.dumps(INFO).encode()).decode()
        cfg = _settings(google_service_account_json="{broken", google_service_account_b64=encoded)
        assert resolve_service_account_info(cfg) == INFO

    def test_missing_file_is_none(self, tmp_path):
        cfg = _settings(google_application_credentials=str(tmp_path / "missing.json"))
        assert resolve_service_account_info(cfg) is None


class TestSentry:
    def test_strips_api_keys(self):
        event = {
            "breadcrumbs": {"values": [{"data": {"headers": {"X-Goog-Api-Key": "secret", "Accept": "json"}}}]},
            "request": {"headers": {"x-api-key": "secret"}},
            "extra": {"settings": {"anthropic_api_key": "secret", "catalog_key": "compound-places.json"}},
        }
        result = _strip_sensitive_data(event, {})
        assert result["breadcrumbs"]["values"][0]["data"]["headers"]["X-Goog-Api-Key"] == "[FILTERED]"
        assert result["breadcrumbs"]["values"][0]["data"]["headers"]["Accept"] == "json"
        assert result["request"]["headers"]["x-api-key"] == "[FILTERED]"
        assert result["extra"]["settings"]["anthropic_api_key"] == "[FILTERED]"
        assert result["extra"]["settings"]["catalog_key"] == "compound-places.json"

    def test_no_dsn_no_init(self):
        with patch("services.catalog.monitoring.sentry_sdk.init") as init:
            with patch("services.catalog.monitoring.settings") as cfg:
                cfg.sentry_dsn = ""
                assert setup_sentry() is False
        init.assert_not_called()

    def test_dsn_initialises(self):
        with patch("services.catalog.monitoring.sentry_sdk.init") as init:
            with patch("services.catalog.monitoring.settings") as cfg:
                cfg.sentry_dsn = "https://key@sentry.example/1"
                cfg.environment = "production"
                cfg.app_name = "place-catalog"
                cfg.app_version = "0.1.0"
                cfg.sentry_traces_sample_rate = 0.0
                assert setup_sentry() is True
        kwargs = init.call_args.kwargs
        assert kwargs["before_send"] is _strip_sensitive_data
        assert kwargs["send_default_pii"] is False
