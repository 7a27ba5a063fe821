"""Object storage gateway: byte objects plus versioned manifest documents."""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Protocol

from portable_content.http.fetcher import HttpFetcher
from portable_content.pipeline.errors import (
    ManifestNotFound,
    ManifestVersionConflict,
    NetworkError,
)
from portable_content.pipeline.manifest import ContentItem
from portable_content.pipeline.naming import manifest_key, sha256_hex

logger = logging.getLogger(__name__)

STORE_SCHEME = "store://"
_LOCKS_DIR = ".locks"


class ObjectNotFound(LookupError):
    """No stored object exists under the key."""


class StorageGateway(Protocol):
    """Operations the pipeline needs from object storage."""

    def put_bytes(self, key: str, data: bytes) -> str:
        """Store bytes under key and return the uri recorded in manifests."""

    def get_bytes(self, key: str) -> bytes:
        """Read bytes stored under key."""

    def exists(self, key: str) -> bool:
        """True when an object is stored under key."""

    def download(self, uri: str) -> bytes:
        """Fetch bytes for a store key, ``store://`` uri, or http(s) URL."""

    def read_manifest(self, content_id: str) -> tuple[ContentItem, str]:
        """Return manifest and its version token."""

    def write_manifest(self, item: ContentItem, *, expected_version: str | None) -> str:
        """Write manifest only when the stored version matches expected_version."""


class LocalObjectStore:
    """Filesystem-backed object store with conditional manifest writes.

    The manifest version token is the sha256 of the stored document bytes.
    Conditional writes take an exclusive ``flock`` per content item, compare
    tokens, and replace the document atomically.
    """

    def __init__(self, root: Path, *, fetcher: HttpFetcher | None = None) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self._fetcher = fetcher

    def close(self) -> None:
        if self._fetcher is not None:
            self._fetcher.close()

    def put_bytes(self, key: str, data: bytes) -> str:
        path = self._path_for(key)
        if path.exists() and path.stat().st_size == len(data) and path.read_bytes() == data:
            return key
        _atomic_write(path, data)
        return key

    def get_bytes(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except FileNotFoundError as error:
            raise ObjectNotFound(f"No stored object under key: {key}") from error

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def download(self, uri: str) -> bytes:
        if uri.startswith(("http://", "https://")):
            return self._download_remote(uri)
        key = uri.removeprefix(STORE_SCHEME)
        return self.get_bytes(key)

    def read_manifest(self, content_id: str) -> tuple[ContentItem, str]:
        raw = self._read_manifest_bytes(content_id)
        if raw is None:
            raise ManifestNotFound(f"No manifest for content item: {content_id}")
        return ContentItem.from_dict(json.loads(raw.decode("utf-8"))), sha256_hex(raw)

    def write_manifest(self, item: ContentItem, *, expected_version: str | None) -> str:
        payload = _serialize_manifest(item)
        with self._manifest_lock(item.id):
            current = self._read_manifest_bytes(item.id)
            actual = sha256_hex(current) if current is not None else None
            if actual != expected_version:
                raise ManifestVersionConflict(
                    item.id,
                    expected=expected_version,
                    actual=actual,
                )
            _atomic_write(self._path_for(manifest_key(item.id)), payload)
        token = sha256_hex(payload)
        logger.debug("Manifest %s written (version %s)", item.id, token[:12])
        return token

    def _download_remote(self, url: str) -> bytes:
        if self._fetcher is None:
            self._fetcher = HttpFetcher()
        result = self._fetcher.fetch(url)
        if not result.is_success:
            raise NetworkError(f"Failed to download {url}: {result.error}")
        return result.content

    def _read_manifest_bytes(self, content_id: str) -> bytes | None:
        path = self._path_for(manifest_key(content_id))
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    @contextmanager
    def _manifest_lock(self, content_id: str) -> Iterator[None]:
        lock_path = self.root / _LOCKS_DIR / f"{sha256_hex(content_id.encode('utf-8'))}.lock"
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with lock_path.open("a+b") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _path_for(self, key: str) -> Path:
        normalized = PurePosixPath(key)
        if (
            not key
            or normalized.is_absolute()
            or any(part in {"..", ""} for part in normalized.parts)
            or normalized.parts[0] == _LOCKS_DIR
        ):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.root.joinpath(*normalized.parts)


def _serialize_manifest(item: ContentItem) -> bytes:
    return (json.dumps(item.to_dict(), ensure_ascii=False, indent=2) + "\n").encode("utf-8")


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
