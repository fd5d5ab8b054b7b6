from __future__ import annotations

import hashlib
import hmac
import logging
import os
import shutil
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from urllib.parse import quote, urlencode

from wbs_ingest.config.loader import StorageConfig

"""Key-addressable blob store with signed-URL reads.

Two adapters are shipped:
- LocalBlobStore: filesystem-backed, used by the CLI, the worker and the API in a
  single-host deployment. Signed URLs point at the API's ``/blobs/{key}`` route.
- InMemoryBlobStore: dict-backed, for tests.

Signed URLs carry ``expires`` (unix seconds) and an HMAC-SHA256 ``signature`` over
``"{key}:{expires}"``; ``verify_signature`` is the matching check on the serving side.
"""

__all__ = [
    "BlobStoreError",
    "BlobNotFoundError",
    "BlobStore",
    "LocalBlobStore",
    "InMemoryBlobStore",
    "create_blob_store",
]

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class BlobStoreError(Exception):
    """Storage operation failed (transient or not)."""


class BlobNotFoundError(BlobStoreError):
    """No object stored under the requested key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"blob not found: {key}")
        self.key = key


def _check_key(key: str) -> str:
    if not key or key.startswith("/") or "\\" in key:
        raise BlobStoreError(f"invalid key: {key!r}")
    if any(part in ("", ".", "..") for part in key.split("/")):
        raise BlobStoreError(f"invalid key: {key!r}")
    return key


class BlobStore(ABC):
    """Blob store interface. Implementations must be safe for concurrent ``put`` calls."""

    def __init__(self, signing_secret: str, public_base_url: str) -> None:
        self._secret = signing_secret.encode("utf-8")
        self._base_url = public_base_url.rstrip("/")

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> int:
        """Store ``data`` under ``key`` (overwriting). Returns the stored size in bytes."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the object bytes. Raises BlobNotFoundError."""

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def content_type(self, key: str) -> str: ...

    def put_file(self, key: str, path: Path, content_type: str = DEFAULT_CONTENT_TYPE) -> int:
        return self.put(key, path.read_bytes(), content_type)

    def download_to(self, key: str, path: Path) -> Path:
        """Copy an object to a local file (used to spool the source workbook)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.get(key))
        return path

    def signature(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode()
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def get_signed_url(self, key: str, ttl: int = 3600, now: float | None = None) -> str:
        """Time-limited read URL for ``key``."""
        _check_key(key)
        expires = int(now if now is not None else time.time()) + int(ttl)
        query = urlencode({"expires": expires, "signature": self.signature(key, expires)})
        return f"{self._base_url}/{quote(key)}?{query}"

    def verify_signature(self, key: str, expires: int, signature: str, now: float | None = None) -> bool:
        current = now if now is not None else time.time()
        if expires < current:
            return False
        return hmac.compare_digest(self.signature(key, expires), signature)


class LocalBlobStore(BlobStore):
    """Filesystem blob store rooted at ``root``; keys map to relative paths."""

    def __init__(self, root: Path, signing_secret: str, public_base_url: str) -> None:
        super().__init__(signing_secret, public_base_url)
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root.joinpath(*PurePosixPath(_check_key(key)).parts)

    def put(self, key: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> int:
        target = self._path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # 一時ファイル経由で置き換え (読み手に書きかけを見せない)
            fd, tmp = tempfile.mkstemp(dir=target.parent, prefix=".tmp-")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, target)
        except OSError as e:
            raise BlobStoreError(f"failed to write {key}: {e}") from e
        logger.debug("stored %s (%d bytes, %s)", key, len(data), content_type)
        return len(data)

    def put_file(self, key: str, path: Path, content_type: str = DEFAULT_CONTENT_TYPE) -> int:
        target = self._path(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target)
        except OSError as e:
            raise BlobStoreError(f"failed to copy {path} to {key}: {e}") from e
        return target.stat().st_size

    def get(self, key: str) -> bytes:
        target = self._path(key)
        try:
            return target.read_bytes()
        except FileNotFoundError as e:
            raise BlobNotFoundError(key) from e
        except OSError as e:
            raise BlobStoreError(f"failed to read {key}: {e}") from e

    def download_to(self, key: str, path: Path) -> Path:
        source = self._path(key)
        if not source.is_file():
            raise BlobNotFoundError(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copyfile(source, path)
        except OSError as e:
            raise BlobStoreError(f"failed to download {key}: {e}") from e
        return path

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def content_type(self, key: str) -> str:
        suffix = PurePosixPath(key).suffix.lower()
        return {
            ".json": "application/json",
            ".gz": "application/gzip",
            ".webp": "image/webp",
            ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        }.get(suffix, DEFAULT_CONTENT_TYPE)


class InMemoryBlobStore(BlobStore):
    """Dict-backed blob store (tests, local experiments)."""

    def __init__(
        self,
        signing_secret: str = "in-memory-secret",
        public_base_url: str = "http://testserver/blobs",
    ) -> None:
        super().__init__(signing_secret, public_base_url)
        self._objects: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str = DEFAULT_CONTENT_TYPE) -> int:
        _check_key(key)
        with self._lock:
            self._objects[key] = (bytes(data), content_type)
        return len(data)

    def get(self, key: str) -> bytes:
        with self._lock:
            entry = self._objects.get(key)
        if entry is None:
            raise BlobNotFoundError(key)
        return entry[0]

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def content_type(self, key: str) -> str:
        with self._lock:
            entry = self._objects.get(key)
        if entry is None:
            raise BlobNotFoundError(key)
        return entry[1]

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._objects if k.startswith(prefix))


def create_blob_store(config: StorageConfig) -> BlobStore:
    """Build the configured blob store adapter."""
    if config.backend == "memory":
        return InMemoryBlobStore(config.signing_secret, config.public_base_url)
    return LocalBlobStore(Path(config.root), config.signing_secret, config.public_base_url)
