"""
Persist catalogs as JSON objects in GCS or on local disk.

Key conventions (for key "compound-places.json"):
  compound-places.json                       -- current catalog
  compound-places-backup-{unix_ms}.json      -- previous catalog, written before overwrite
  compound-places-{unix_ms}.json             -- per-run snapshot

Both backends have the same semantics: download of a missing key returns
None, any failed write raises PersistenceError.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from services.catalog.pipeline.errors import PersistenceError

logger = logging.getLogger(__name__)

_CONTENT_TYPE = "application/json"

_ts_lock = threading.Lock()
_last_ts_ms = 0


def _timestamp_ms() -> int:
    """Unix ms, strictly increasing within this process."""
    global _last_ts_ms
    with _ts_lock:
        ts = max(int(time.time() * 1000), _last_ts_ms + 1)
        _last_ts_ms = ts
        return ts


def _splice(key: str, suffix: str) -> str:
    stem, ext = os.path.splitext(key)
    return f"{stem}-{suffix}{ext}"


def backup_key(key: str, ts_ms: Optional[int] = None) -> str:
    """compound-places.json -> compound-places-backup-1700000000000.json"""
    return _splice(key, f"backup-{ts_ms if ts_ms is not None else _timestamp_ms()}")


def snapshot_key(key: str, ts_ms: Optional[int] = None) -> str:
    """compound-places.json -> compound-places-1700000000000.json"""
    return _splice(key, str(ts_ms if ts_ms is not None else _timestamp_ms()))


def _encode(data: dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


class CatalogStore(ABC):
    @abstractmethod
    async def upload(self, data: dict[str, Any], key: str) -> None:
        ...

    @abstractmethod
    async def download(self, key: str) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def copy(self, src_key: str, dst_key: str) -> None:
        """Byte-for-byte copy of one object. The source is never parsed."""
        ...

    async def create_backup(self, data: dict[str, Any], key: str) -> str:
        """Write data under a timestamped backup name derived from key. Returns the backup key."""
        target = backup_key(key)
        await self.upload(data, target)
        logger.info("Backed up %s to %s", key, target)
        return target

    async def copy_to_backup(self, key: str) -> str:
        """Back up the stored object as-is, for when it cannot be read as a catalog."""
        target = backup_key(key)
        await self.copy(key, target)
        logger.info("Backed up unreadable %s to %s", key, target)
        return target

    async def write_snapshot(self, data: dict[str, Any], key: str) -> str:
        target = snapshot_key(key)
        await self.upload(data, target)
        return target


# ---------------------------------------------------------------------------
# GCS
# ---------------------------------------------------------------------------

def _get_client(project_id: str = "", credentials_info: Optional[dict[str, Any]] = None) -> Any:
    """
    Return a google.cloud.storage.Client.

    Uses explicit service-account info when given, else Application Default
    Credentials.
    """
    from google.cloud import storage  # type: ignore[import-untyped]

    if credentials_info:
        return storage.Client.from_service_account_info(
            credentials_info, project=project_id or credentials_info.get("project_id"),
        )
    kwargs: dict[str, Any] = {}
    if project_id:
        kwargs["project"] = project_id
    return storage.Client(**kwargs)


class GCSCatalogStore(CatalogStore):
    def __init__(
        self,
        bucket_name: str,
        project_id: str = "",
        credentials_info: Optional[dict[str, Any]] = None,
    ):
        self.bucket_name = bucket_name
        self.project_id = project_id
        self._credentials_info = credentials_info
        self._client: Any = None

    def _bucket(self) -> Any:
        if self._client is None:
            self._client = _get_client(self.project_id, self._credentials_info)
        return self._client.bucket(self.bucket_name)

    async def upload(self, data: dict[str, Any], key: str) -> None:
        try:
            blob = self._bucket().blob(key)
            blob.upload_from_string(_encode(data), content_type=_CONTENT_TYPE)
        except Exception as exc:
            raise PersistenceError(f"upload to gs://{self.bucket_name}/{key} failed: {exc}") from exc
        logger.info("GCS: wrote gs://%s/%s", self.bucket_name, key)

    async def download(self, key: str) -> Optional[dict[str, Any]]:
        try:
            blob = self._bucket().blob(key)
            if not blob.exists():
                return None
            raw = blob.download_as_bytes()
        except Exception as exc:
            raise PersistenceError(f"download of gs://{self.bucket_name}/{key} failed: {exc}") from exc
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"gs://{self.bucket_name}/{key} is not valid JSON: {exc}") from exc

    async def exists(self, key: str) -> bool:
        try:
            return bool(self._bucket().blob(key).exists())
        except Exception as exc:
            raise PersistenceError(f"exists check on gs://{self.bucket_name}/{key} failed: {exc}") from exc

    async def copy(self, src_key: str, dst_key: str) -> None:
        try:
            bucket = self._bucket()
            bucket.copy_blob(bucket.blob(src_key), bucket, dst_key)
        except Exception as exc:
            raise PersistenceError(
                f"copy of gs://{self.bucket_name}/{src_key} to {dst_key} failed: {exc}"
            ) from exc
        logger.info("GCS: copied gs://%s/%s to %s", self.bucket_name, src_key, dst_key)


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------

class LocalCatalogStore(CatalogStore):
    """Same contract as GCSCatalogStore, rooted at a local directory."""

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)

    def _path(self, key: str) -> Path:
        return self.base_dir / key

    async def upload(self, data: dict[str, Any], key: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            tmp.write_text(_encode(data), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            raise PersistenceError(f"write to {path} failed: {exc}") from exc
        logger.info("Local: wrote %s", path)

    async def download(self, key: str) -> Optional[dict[str, Any]]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"read of {path} failed: {exc}") from exc

    async def exists(self, key: str) -> bool:
        return self._path(key).exists()

    async def copy(self, src_key: str, dst_key: str) -> None:
        src, dst = self._path(src_key), self._path(dst_key)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)
        except OSError as exc:
            raise PersistenceError(f"copy of {src} to {dst} failed: {exc}") from exc


def build_store(
    backend: str,
    bucket_name: str = "",
    project_id: str = "",
    local_dir: str = "./output",
    credentials_info: Optional[dict[str, Any]] = None,
) -> CatalogStore:
    if backend == "local":
        return LocalCatalogStore(local_dir)
    if backend == "gcs":
        return GCSCatalogStore(bucket_name, project_id=project_id, credentials_info=credentials_info)
    raise ValueError(f"unknown catalog backend {backend!r}")
