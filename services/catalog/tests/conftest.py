"""
Shared fixtures for the catalog pipeline tests.

Provides:
- scripted completion model (no network)
- scripted Places lookup with call recording
- in-memory catalog store and in-memory GCS client
- a small sample guide document
"""

import os
from typing import Any, Optional

import pytest

# Ensure test env vars before any app imports
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("SENTRY_DSN", "")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-key")

from services.catalog.pipeline.catalog_store import CatalogStore  # noqa: E402
from services.catalog.pipeline.document_source import SourceDocument  # noqa: E402


SAMPLE_GUIDE = """\
# Vacation Compound Guide

Welcome! Everything below is within a short drive.

## Restaurants & Food

**blue moon cafe** - https://bluemooncafe.com
Amazing breakfast spot on the harbor! Try the blueberry pancakes.

**tonys pizza express** - 321 Oak Avenue
Quick pizza place, cash only.

## Activities

We love going to the marshall point lighthouse at sunset.
"""


def place_dict(name: str, category: str = "Restaurants & Food", **extra: Any) -> dict[str, Any]:
    d = {
        "name": name,
        "type": "dining",
        "description": f"{name} description",
        "origText": f"**{name.lower()}** original text",
        "category": category,
    }
    d.update(extra)
    return d


# ---------------------------------------------------------------------------
# Completion model
# ---------------------------------------------------------------------------

class FakeCompletion:
    """
    Scripted completion client.

    `responses` maps a context prefix ("extract_places", "tags:", "summary")
    to either a string, an exception instance, or a callable(user_prompt).
    """

    def __init__(self, responses: Optional[dict[str, Any]] = None):
        self.responses = responses or {}
        self.calls: list[dict[str, Any]] = []

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: Optional[int] = None,
        context: str = "",
        prompt_version: Optional[str] = None,
    ) -> str:
        self.calls.append({
            "system": system_prompt,
            "user": user_prompt,
            "max_tokens": max_tokens,
            "context": context,
            "prompt_version": prompt_version,
        })
        for prefix, response in self.responses.items():
            if context.startswith(prefix):
                if isinstance(response, BaseException):
                    raise response
                if callable(response):
                    return response(user_prompt)
                return response
        return "[]"

    def calls_for(self, prefix: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["context"].startswith(prefix)]


@pytest.fixture
def fake_completion_cls():
    return FakeCompletion


# ---------------------------------------------------------------------------
# Places lookup
# ---------------------------------------------------------------------------

def places_result(
    place_id: str,
    name: str,
    types: Optional[list[str]] = None,
    **extra: Any,
) -> dict[str, Any]:
    d = {
        "id": place_id,
        "displayName": {"text": name},
        "formattedAddress": "1 Main St, Port Clyde, ME",
        "location": {"latitude": 43.92, "longitude": -69.26},
        "rating": 4.5,
        "userRatingCount": 120,
        "priceLevel": "PRICE_LEVEL_MODERATE",
        "types": types or ["restaurant", "food", "point_of_interest", "establishment"],
    }
    d.update(extra)
    return d


class FakeLookup:
    """
    Scripted Places lookup. `search_results` maps a lowercase substring of the
    query to a result list; unmatched queries return [].
    """

    def __init__(
        self,
        search_results: Optional[dict[str, list[dict[str, Any]]]] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.search_results = search_results or {}
        self.details_by_id = details or {}
        self.search_queries: list[str] = []
        self.detail_ids: list[str] = []

    async def search(self, query: str, max_results: int = 5) -> list[dict[str, Any]]:
        self.search_queries.append(query)
        q = query.lower()
        for needle, results in self.search_results.items():
            if needle in q:
                if isinstance(results, BaseException):
                    raise results
                return results[:max_results]
        return []

    async def details(self, external_id: str) -> dict[str, Any]:
        self.detail_ids.append(external_id)
        detail = self.details_by_id.get(external_id, {})
        if isinstance(detail, BaseException):
            raise detail
        return detail

    @property
    def total_calls(self) -> int:
        return len(self.search_queries) + len(self.detail_ids)


@pytest.fixture
def fake_lookup_cls():
    return FakeLookup


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class InMemoryCatalogStore(CatalogStore):
    def __init__(self, initial: Optional[dict[str, dict[str, Any]]] = None):
        self.objects: dict[str, dict[str, Any]] = dict(initial or {})
        self.writes: list[str] = []
        self.fail_uploads = False

    async def upload(self, data: dict[str, Any], key: str) -> None:
        from services.catalog.pipeline.errors import PersistenceError

        if self.fail_uploads:
            raise PersistenceError(f"upload of {key} failed")
        self.objects[key] = data
        self.writes.append(key)

    async def download(self, key: str) -> Optional[dict[str, Any]]:
        return self.objects.get(key)

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def copy(self, src_key: str, dst_key: str) -> None:
        self.objects[dst_key] = self.objects[src_key]
        self.writes.append(dst_key)


@pytest.fixture
def memory_store():
    return InMemoryCatalogStore()


class _InMemoryBlob:
    """Simulates a single GCS blob with upload/download/exists."""

    def __init__(self, exists: bool = False, content: bytes = b""):
        self._exists = exists
        self._content = content
        self.content_type = ""

    def exists(self) -> bool:
        return self._exists

    def download_as_bytes(self) -> bytes:
        return self._content

    def upload_from_string(self, data: Any, content_type: str = "") -> None:
        self._content = data.encode("utf-8") if isinstance(data, str) else data
        self.content_type = content_type
        self._exists = True


class _InMemoryBucket:
    def __init__(self):
        self._blobs: dict[str, _InMemoryBlob] = {}

    def blob(self, path: str) -> _InMemoryBlob:
        if path not in self._blobs:
            self._blobs[path] = _InMemoryBlob()
        return self._blobs[path]

    def copy_blob(self, blob: _InMemoryBlob, destination_bucket: "_InMemoryBucket", new_name: str) -> _InMemoryBlob:
        copied = destination_bucket.blob(new_name)
        copied.upload_from_string(blob.download_as_bytes(), content_type=blob.content_type)
        return copied


class _InMemoryGCSClient:
    def __init__(self):
        self._buckets: dict[str, _InMemoryBucket] = {}

    def bucket(self, name: str) -> _InMemoryBucket:
        if name not in self._buckets:
            self._buckets[name] = _InMemoryBucket()
        return self._buckets[name]


@pytest.fixture
def gcs_client():
    return _InMemoryGCSClient()


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class FakeSource:
    def __init__(self, content: str = SAMPLE_GUIDE, title: str = "Vacation Compound Guide"):
        self.content = content
        self.title = title
        self.fetches: list[str] = []
        self.error: Optional[BaseException] = None

    async def fetch_document(self, document_id: str) -> SourceDocument:
        self.fetches.append(document_id)
        if self.error is not None:
            raise self.error
        return SourceDocument(
            document_id=document_id,
            title=self.title,
            content=self.content,
            revision_id="rev-1",
        )


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def sample_guide() -> str:
    return SAMPLE_GUIDE


@pytest.fixture
def make_place_dict():
    return place_dict


@pytest.fixture
def make_places_result():
    return places_result
