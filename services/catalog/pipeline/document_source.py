"""
Fetch the source guide document.

The pipeline only needs `fetch_document(id) -> SourceDocument`. Two adapters:
  - GoogleDocsSource: Google Docs REST API over httpx, paragraph styles
    rendered as markdown heading markers so the segmenter can split them
  - LocalDocumentSource: a markdown file on disk, for local runs and tests

Any failure to produce the document raises SourceUnavailableError.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol

import httpx

from services.catalog.pipeline.errors import SourceUnavailableError
from services.catalog.pipeline.segmenter import Section, segment_document

logger = logging.getLogger(__name__)

DOCS_URL = "https://docs.googleapis.com/v1/documents/{document_id}"
DOCS_SCOPES = ["https://www.googleapis.com/auth/documents.readonly"]

_HEADING_LEVELS = {
    "TITLE": 1,
    "HEADING_1": 1,
    "HEADING_2": 2,
    "HEADING_3": 3,
    "HEADING_4": 4,
    "HEADING_5": 5,
    "HEADING_6": 6,
}


@dataclass
class SourceDocument:
    document_id: str
    title: str
    content: str
    revision_id: Optional[str] = None
    sections: list[Section] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.sections:
            self.sections = segment_document(self.content)


class DocumentSource(Protocol):
    async def fetch_document(self, document_id: str) -> SourceDocument:
        ...


# ---------------------------------------------------------------------------
# Google Docs -> markdown
# ---------------------------------------------------------------------------

def _paragraph_text(paragraph: dict[str, Any]) -> str:
    parts: list[str] = []
    for elem in paragraph.get("elements", []):
        run = elem.get("textRun")
        if not run:
            continue
        text = run.get("content", "")
        stripped = text.strip()
        if stripped and run.get("textStyle", {}).get("bold"):
            # Keep surrounding whitespace outside the markers
            lead = text[: len(text) - len(text.lstrip())]
            trail = text[len(text.rstrip()):]
            text = f"{lead}**{stripped}**{trail}"
        parts.append(text)
    return "".join(parts).rstrip("\n")


def _render_elements(elements: list[dict[str, Any]], out: list[str]) -> None:
    for element in elements:
        paragraph = element.get("paragraph")
        if paragraph is not None:
            text = _paragraph_text(paragraph)
            style = paragraph.get("paragraphStyle", {}).get("namedStyleType", "")
            level = _HEADING_LEVELS.get(style, 0)
            if level and text.strip():
                out.append(f"{'#' * level} {text.strip().strip('*').strip()}")
            elif paragraph.get("bullet") is not None and text.strip():
                out.append(f"- {text.strip()}")
            else:
                out.append(text)
            continue

        table = element.get("table")
        if table is not None:
            for row in table.get("tableRows", []):
                for cell in row.get("tableCells", []):
                    _render_elements(cell.get("content", []), out)


def document_to_markdown(document: dict[str, Any]) -> str:
    """Render a Docs API document resource as markdown text."""
    out: list[str] = []
    _render_elements(document.get("body", {}).get("content", []), out)
    return "\n".join(out).strip() + "\n"


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

TokenProvider = Callable[[], Awaitable[str]]


def _credentials_token_provider(credentials_info: Optional[dict[str, Any]]) -> TokenProvider:
    """
    Build an access-token provider from service-account info, falling back to
    Application Default Credentials. Token refresh is blocking, so it runs in
    a worker thread.
    """
    import google.auth
    from google.auth.transport.requests import Request
    from google.oauth2 import service_account

    if credentials_info:
        credentials = service_account.Credentials.from_service_account_info(
            credentials_info, scopes=DOCS_SCOPES,
        )
    else:
        credentials, _ = google.auth.default(scopes=DOCS_SCOPES)

    async def _token() -> str:
        if not credentials.valid:
            await asyncio.to_thread(credentials.refresh, Request())
        return credentials.token

    return _token


class GoogleDocsSource:
    def __init__(
        self,
        client: httpx.AsyncClient,
        token_provider: Optional[TokenProvider] = None,
        credentials_info: Optional[dict[str, Any]] = None,
        timeout_s: float = 30.0,
    ):
        self._client = client
        self._token_provider = token_provider
        self._credentials_info = credentials_info
        self.timeout_s = timeout_s

    async def _token(self) -> str:
        if self._token_provider is None:
            self._token_provider = _credentials_token_provider(self._credentials_info)
        return await self._token_provider()

    async def fetch_document(self, document_id: str) -> SourceDocument:
        if not document_id:
            raise SourceUnavailableError("no document id given")
        logger.info("Fetching Google Doc %s", document_id)
        try:
            token = await self._token()
            resp = await self._client.get(
                DOCS_URL.format(document_id=document_id),
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout_s,
            )
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SourceUnavailableError(f"failed to fetch document {document_id}: {exc}") from exc
        except Exception as exc:
            # google.auth raises its own hierarchy (DefaultCredentialsError, RefreshError)
            raise SourceUnavailableError(f"failed to authenticate for document {document_id}: {exc}") from exc

        content = document_to_markdown(body)
        title = body.get("title") or document_id
        logger.info("Document fetched: %r (%d chars)", title, len(content))
        return SourceDocument(
            document_id=document_id,
            title=title,
            content=content,
            revision_id=body.get("revisionId"),
        )


class LocalDocumentSource:
    """
    Read a markdown guide from disk.

    With `path`, the document id is ignored and that file is read. Otherwise
    the id is resolved as a file name under `base_dir`.
    """

    def __init__(self, path: Optional[str | Path] = None, base_dir: str | Path = "."):
        self.path = Path(path) if path else None
        self.base_dir = Path(base_dir)

    async def fetch_document(self, document_id: str) -> SourceDocument:
        path = self.path or self.base_dir / document_id
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise SourceUnavailableError(f"failed to read {path}: {exc}") from exc

        title = path.stem
        for line in content.splitlines():
            if line.startswith("# "):
                title = line[2:].strip()
                break
        revision = hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]
        return SourceDocument(
            document_id=document_id or path.name,
            title=title,
            content=content,
            revision_id=revision,
        )
