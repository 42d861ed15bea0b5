"""Object-store backends.

The engine only needs a flat key/value blob interface with side-channel string
metadata and a creation timestamp per object. ``MemoryBackend`` keeps
everything in process (tests, embedding); ``LocalBackend`` maps keys onto a
directory tree with a JSON sidecar per blob and is what the CLI uses.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Tuple

from .errors import IoError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class BlobProperties:
    size: int
    metadata: Dict[str, str] = field(default_factory=dict)
    created_at: float = 0.0


@dataclass
class BlobListing:
    key: str
    created_at: float


def _check_key(key: str) -> str:
    if not key or key.startswith("/") or "\\" in key:
        raise ValueError(f"Invalid blob key: {key!r}")
    if any(part in ("", ".", "..") for part in key.split("/")):
        raise ValueError(f"Invalid blob key: {key!r}")
    return key


class BlobBackend(ABC):
    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None: ...

    @abstractmethod
    def get_properties(self, key: str) -> BlobProperties: ...

    @abstractmethod
    def download(self, key: str) -> bytes: ...

    @abstractmethod
    def list_keys(self, prefix: str = "") -> Iterator[BlobListing]: ...


class MemoryBackend(BlobBackend):
    """In-process backend. Counts uploads so callers can observe dedup."""

    def __init__(self):
        self._blobs: Dict[str, Tuple[bytes, Dict[str, str], float]] = {}
        self._lock = threading.Lock()
        self._last_created = 0.0
        self.put_count = 0

    def _next_created(self) -> float:
        # creation times are strictly increasing even within one clock tick
        now = time.time()
        if now <= self._last_created:
            now = self._last_created + 1e-6
        self._last_created = now
        return now

    def exists(self, key: str) -> bool:
        return key in self._blobs

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None:
        _check_key(key)
        with self._lock:
            self._blobs[key] = (bytes(data), dict(metadata or {}), self._next_created())
            self.put_count += 1

    def get_properties(self, key: str) -> BlobProperties:
        try:
            data, meta, created = self._blobs[key]
        except KeyError:
            raise NotFoundError(key) from None
        return BlobProperties(size=len(data), metadata=dict(meta), created_at=created)

    def download(self, key: str) -> bytes:
        try:
            return self._blobs[key][0]
        except KeyError:
            raise NotFoundError(key) from None

    def list_keys(self, prefix: str = "") -> Iterator[BlobListing]:
        with self._lock:
            items = [(k, v[2]) for k, v in self._blobs.items() if k.startswith(prefix)]
        for key, created in sorted(items):
            yield BlobListing(key=key, created_at=created)

    def delete(self, key: str) -> None:
        self._blobs.pop(key, None)


class LocalBackend(BlobBackend):
    """Directory-backed store: ``<root>/<key>`` plus ``<root>/<key>.meta.json``.

    Writes go through a temporary file and ``os.replace`` so a blob is either
    absent or complete. The creation time is recorded in the sidecar at upload
    instead of trusting filesystem ctime.
    """

    _META_SUFFIX = ".meta.json"

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        try:
            os.makedirs(self.root, exist_ok=True)
        except OSError as exc:
            raise IoError(f"Cannot create store directory {self.root}: {exc}") from exc

    def _path(self, key: str) -> str:
        _check_key(key)
        if key.endswith(self._META_SUFFIX):
            raise ValueError(f"Reserved key suffix: {key!r}")
        return os.path.join(self.root, *key.split("/"))

    def _write_atomic(self, path: str, data: bytes) -> None:
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.remove(tmp)
            except OSError:
                pass
            raise

    def exists(self, key: str) -> bool:
        path = self._path(key)
        return os.path.isfile(path) and os.path.isfile(path + self._META_SUFFIX)

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None:
        path = self._path(key)
        sidecar = {"metadata": dict(metadata or {}), "createdAt": time.time()}
        try:
            self._write_atomic(path, bytes(data))
            # sidecar last: exists() only reports complete blobs
            self._write_atomic(path + self._META_SUFFIX, json.dumps(sidecar).encode("utf-8"))
        except OSError as exc:
            raise IoError(f"Upload of {key} failed: {exc}") from exc

    def _read_sidecar(self, key: str, path: str) -> dict:
        try:
            with open(path + self._META_SUFFIX, "rb") as fh:
                return json.loads(fh.read().decode("utf-8"))
        except FileNotFoundError:
            raise NotFoundError(key) from None
        except (OSError, ValueError) as exc:
            raise IoError(f"Unreadable metadata for {key}: {exc}") from exc

    def get_properties(self, key: str) -> BlobProperties:
        path = self._path(key)
        sidecar = self._read_sidecar(key, path)
        try:
            size = os.path.getsize(path)
        except FileNotFoundError:
            raise NotFoundError(key) from None
        except OSError as exc:
            raise IoError(f"Cannot stat {key}: {exc}") from exc
        return BlobProperties(
            size=size,
            metadata={str(k): str(v) for k, v in sidecar.get("metadata", {}).items()},
            created_at=float(sidecar.get("createdAt", 0.0)),
        )

    def download(self, key: str) -> bytes:
        path = self._path(key)
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except FileNotFoundError:
            raise NotFoundError(key) from None
        except OSError as exc:
            raise IoError(f"Download of {key} failed: {exc}") from exc

    def list_keys(self, prefix: str = "") -> Iterator[BlobListing]:
        base = self.root
        # walk only the directory that can contain the prefix
        head = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        start = os.path.join(base, *head.split("/")) if head else base
        if not os.path.isdir(start):
            return
        for dirpath, dirnames, filenames in os.walk(start):
            dirnames.sort()
            for name in sorted(filenames):
                if not name.endswith(self._META_SUFFIX):
                    continue
                blob_path = os.path.join(dirpath, name[: -len(self._META_SUFFIX)])
                key = os.path.relpath(blob_path, base).replace(os.sep, "/")
                if not key.startswith(prefix) or not os.path.isfile(blob_path):
                    continue
                try:
                    created = self.get_properties(key).created_at
                except (NotFoundError, IoError) as exc:
                    logger.warning("Skipping unreadable blob %s: %s", key, exc)
                    continue
                yield BlobListing(key=key, created_at=created)
